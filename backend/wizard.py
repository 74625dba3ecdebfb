from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

DiagnosisStep = Literal[
    "basic_info",
    "wen_inquiry",
    "wang_tongue",
    "wang_face",
    "wang_part",
    "wen_audio",
    "qie",
    "smart_connect",
    "summary",
    "processing",
    "report",
]
AnalysisType = Literal["tongue", "face", "part"]

STEPS: Tuple[str, ...] = (
    "basic_info",
    "wen_inquiry",
    "wang_tongue",
    "wang_face",
    "wang_part",
    "wen_audio",
    "qie",
    "smart_connect",
    "summary",
    "processing",
    "report",
)

PROGRESS = dict(zip(STEPS, (0, 15, 29, 43, 50, 57, 71, 85, 95, 98, 100)))

# The visible stepper: (step id, label key)
STEPPER: Tuple[Tuple[str, str], ...] = (
    ("basic_info", "basics"),
    ("wen_inquiry", "inquiry"),
    ("wang_tongue", "tongue"),
    ("wang_face", "face"),
    ("wen_audio", "audio"),
    ("qie", "pulse"),
    ("smart_connect", "smartConnect"),
    ("summary", "summary"),
)
_STEPPER_IDS = [sid for sid, _ in STEPPER]

_STEPPER_ALIASES = {
    "wang_part": "wang_face",
    "processing": "smart_connect",
    "report": "smart_connect",
}

ANALYSIS_STEPS: Dict[str, str] = {
    "tongue": "wang_tongue",
    "face": "wang_face",
    "part": "wang_part",
}

# Steps that draw their own navigation controls
CUSTOM_NAV_STEPS = frozenset(
    {"basic_info", "wen_inquiry", "qie", "wang_tongue", "wang_face", "wang_part", "wen_audio"}
)

SKIPPED_OBSERVATION = "Analysis skipped"
PENDING_OBSERVATION = "Analysis pending."
FAILED_OBSERVATION = "Analysis failed, will be reviewed in final report."

WizardData = Dict[str, Any]


def _check(step: str) -> str:
    if step not in PROGRESS:
        raise ValueError(f"Unknown diagnosis step: {step}")
    return step


def next_step(step: str) -> Optional[str]:
    idx = STEPS.index(_check(step))
    return STEPS[idx + 1] if idx + 1 < len(STEPS) else None


def prev_step(step: str) -> Optional[str]:
    _check(step)
    if step in ("basic_info", "processing", "report"):
        return None
    return STEPS[STEPS.index(step) - 1]


def progress(step: str) -> int:
    return PROGRESS[_check(step)]


def stepper_id(step: str) -> str:
    return _STEPPER_ALIASES.get(_check(step), step)


def stepper_index(step: str) -> int:
    return _STEPPER_IDS.index(stepper_id(step))


def navigation(step: str) -> Dict[str, Any]:
    _check(step)
    return {
        "show_back": step != "report",
        "show_next": step not in ("processing", "report"),
        "show_skip": False,
        "custom": step in CUSTOM_NAV_STEPS,
    }


def stepper_labels() -> List[Dict[str, str]]:
    return [{"id": sid, "label_key": key} for sid, key in STEPPER]


@dataclass(frozen=True)
class ResumeDecision:
    can_resume: bool
    step: str
    max_step_reached: int


def resume_from(saved_step: Optional[str]) -> ResumeDecision:
    """
    A saved basic_info (or nothing) means there is nothing to resume. A run that
    was submitting or showing its report resumes at the summary.
    """
    if not saved_step or saved_step == "basic_info":
        return ResumeDecision(can_resume=False, step="basic_info", max_step_reached=0)
    _check(saved_step)
    step = "summary" if saved_step in ("processing", "report") else saved_step
    return ResumeDecision(can_resume=True, step=step, max_step_reached=stepper_index(saved_step))


@dataclass
class DiagnosisWizard:
    """Server-side copy of the wizard's navigation state."""

    step: str = "basic_info"
    max_step_reached: int = 0
    data: WizardData = field(default_factory=dict)
    submit_requested: bool = False

    def __post_init__(self) -> None:
        _check(self.step)
        self._track()

    def _track(self) -> None:
        idx = stepper_index(self.step)
        if idx > self.max_step_reached:
            self.max_step_reached = idx

    def go_to(self, step: str) -> str:
        self.step = _check(step)
        self._track()
        return self.step

    def next(self) -> str:
        target = next_step(self.step)
        if target is None:
            return self.step
        if self.step == "summary":
            self.submit_requested = True
        return self.go_to(target)

    def back(self) -> str:
        target = prev_step(self.step)
        return self.step if target is None else self.go_to(target)

    def set_step_data(self, step: str, value: Any) -> None:
        self.data[_check(step)] = value

    def merge_step_data(self, step: str, values: Dict[str, Any]) -> Dict[str, Any]:
        current = self.data.get(_check(step))
        merged = dict(current) if isinstance(current, dict) else {}
        merged.update(values)
        self.data[step] = merged
        return merged

    def record_analysis(self, analysis_type: str, result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Store an image analysis result on its step; a blank observation counts as pending."""
        step = ANALYSIS_STEPS[analysis_type]
        if result is None:
            return self.merge_step_data(step, {"observation": FAILED_OBSERVATION, "potential_issues": []})
        observation = result.get("observation") or PENDING_OBSERVATION
        return self.merge_step_data(
            step,
            {"observation": observation, "potential_issues": list(result.get("potential_issues") or [])},
        )

    def skip_analysis(self, analysis_type: str) -> str:
        step = ANALYSIS_STEPS[analysis_type]
        self.merge_step_data(step, {"observation": SKIPPED_OBSERVATION, "skipped": True})
        self.step = step
        return self.next()

    def reset(self, profile: Optional[Dict[str, Any]] = None) -> None:
        """Start over, seeding basic_info from the user's profile when there is one."""
        self.step = "basic_info"
        self.max_step_reached = 0
        self.submit_requested = False
        self.data = {}
        if profile:
            self.data["basic_info"] = {
                "name": profile.get("full_name"),
                "age": profile.get("age"),
                "gender": profile.get("gender"),
                "height": profile.get("height"),
                "weight": profile.get("weight"),
            }

    @classmethod
    def resume(cls, saved: Dict[str, Any]) -> "DiagnosisWizard":
        decision = resume_from(saved.get("step"))
        if not decision.can_resume:
            return cls()
        data = saved.get("data")
        return cls(
            step=decision.step,
            max_step_reached=decision.max_step_reached,
            data=dict(data) if isinstance(data, dict) else {},
        )

    def snapshot(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "progress": progress(self.step),
            "max_step_reached": self.max_step_reached,
            "stepper_step": stepper_id(self.step),
            "navigation": navigation(self.step),
            "submit_requested": self.submit_requested,
        }


__all__ = [
    "STEPS",
    "STEPPER",
    "PROGRESS",
    "ANALYSIS_STEPS",
    "next_step",
    "prev_step",
    "progress",
    "stepper_id",
    "stepper_index",
    "navigation",
    "stepper_labels",
    "ResumeDecision",
    "resume_from",
    "DiagnosisWizard",
]
