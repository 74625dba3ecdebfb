from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageObservation(BaseModel):
    """What the vision models return for tongue / face / body images."""

    model_config = ConfigDict(extra="allow")

    is_valid_image: bool = True
    confidence: float = 100
    image_description: Optional[str] = None
    observation: Optional[str] = None
    analysis: Optional[str] = None
    description: Optional[str] = None
    analysis_tags: List[Any] = Field(default_factory=list)
    tcm_indicators: List[Any] = Field(default_factory=list)
    pattern_suggestions: List[Any] = Field(default_factory=list)
    potential_issues: List[Any] = Field(default_factory=list)
    notes: Optional[str] = None

    def observation_text(self) -> Optional[str]:
        return self.observation or self.analysis or self.description


class SoundFinding(BaseModel):
    model_config = ConfigDict(extra="allow")

    observation: str = ""
    severity: str = "normal"
    tcm_indicators: List[str] = Field(default_factory=list)


class AudioObservation(BaseModel):
    model_config = ConfigDict(extra="allow")

    overall_observation: Optional[str] = None
    voice_quality_analysis: Optional[SoundFinding] = None
    breathing_patterns: Optional[SoundFinding] = None
    speech_patterns: Optional[SoundFinding] = None
    cough_sounds: Optional[SoundFinding] = None
    pattern_suggestions: List[str] = Field(default_factory=list)
    confidence: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)

    def has_findings(self) -> bool:
        return bool(self.overall_observation or self.voice_quality_analysis)
