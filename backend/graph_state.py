from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ConsultState(BaseModel):
    """
    Runtime snapshot for the final-consultation pipeline.

    Inputs are set from the request; every node only fills in what comes after it.
    """

    # ---- Identity ----
    user_id: Optional[str] = None
    is_guest: bool = False

    # ---- Inputs ----
    language: str = "en"
    model: Optional[str] = None
    fallback_models: List[str] = Field(default_factory=list)
    wizard_data: Dict[str, Any] = Field(default_factory=dict)
    report_options: Optional[Dict[str, Any]] = None
    verified_summaries: Optional[Dict[str, Any]] = None
    persist: bool = True

    # ---- Prompting ----
    custom_prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    user_prompt: Optional[str] = None

    # ---- LLM outputs ----
    raw_output: Optional[str] = None
    model_used: Optional[int] = None
    model_id: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None

    # ---- Report ----
    report: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    overall_score: Optional[int] = None

    # ---- Persistence ----
    session_doc: Optional[Dict[str, Any]] = None
    persist_error: Optional[str] = None

    @property
    def basic_info(self) -> Dict[str, Any]:
        info = self.wizard_data.get("basic_info")
        return info if isinstance(info, dict) else {}

    def reset_outputs(self) -> None:
        """
        Clear everything downstream of the inputs so the state can be rerun.
        """
        self.system_prompt = None
        self.user_prompt = None
        self.raw_output = None
        self.model_used = None
        self.model_id = None
        self.usage = None
        self.report = None
        self.error_code = None
        self.overall_score = None
        self.session_doc = None
        self.persist_error = None
