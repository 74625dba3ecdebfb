from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Literal, Optional, Sequence

from llm import ADVANCED_FALLBACK_MODELS, DEFAULT_FALLBACK_MODELS

ComplexityType = Literal["simple", "moderate", "complex", "advanced"]

ADVANCED_MODELS = ["gemini-2.5-pro", "gemini-3-pro-preview"]
COMPLEX_MODELS = ["gemini-2.5-pro", "gemini-2.5-flash"]
KNOWN_MODELS = set(
    ADVANCED_MODELS + COMPLEX_MODELS + DEFAULT_FALLBACK_MODELS + ["gemini-2.0-flash-exp", "gemini-1.5-pro"]
)
DOCTOR_LEVEL_MODELS = {
    "master": "gemini-2.5-pro",
    "expert": "gemini-2.5-flash",
    "physician": "gemini-2.0-flash",
}

MAX_HISTORY = 100
STATS_WINDOW = 50
LONG_HISTORY_MESSAGES = 10

_WEIGHTS = {
    "has_images": 25,
    "has_multiple_files": 20,
    "has_long_history": 15,
    "requires_analysis": 25,
    "requires_personalization": 15,
}


@dataclass(frozen=True)
class Complexity:
    type: ComplexityType
    score: int
    factors: Dict[str, bool]
    reasoning: List[str]


@dataclass(frozen=True)
class ModelSelection:
    primary_model: str
    fallback_models: List[str]
    complexity: Complexity
    reasoning: List[str]


@dataclass(frozen=True)
class PerformanceRecord:
    model_id: str
    response_time_ms: float
    success: bool
    ts: float = field(default_factory=time.time)


def _complexity_type(score: int) -> ComplexityType:
    if score >= 75:
        return "advanced"
    if score >= 50:
        return "complex"
    if score >= 25:
        return "moderate"
    return "simple"


def analyze_complexity(request: Dict[str, Any]) -> Complexity:
    """
    request keys: messages, images, files, requires_analysis, requires_personalization.
    """
    messages = request.get("messages") or []
    files = request.get("files") or []
    factors = {
        "has_images": bool(request.get("images")),
        "has_multiple_files": len(files) > 1,
        "has_long_history": len(messages) > LONG_HISTORY_MESSAGES,
        "requires_analysis": bool(request.get("requires_analysis")),
        "requires_personalization": bool(request.get("requires_personalization")),
    }
    score = sum(_WEIGHTS[name] for name, on in factors.items() if on)
    reasoning = [f"{name.replace('_', ' ')} (+{_WEIGHTS[name]})" for name, on in factors.items() if on]
    return Complexity(type=_complexity_type(score), score=score, factors=factors, reasoning=reasoning)


class ModelRouter:
    def __init__(self) -> None:
        self._history: Deque[PerformanceRecord] = deque(maxlen=MAX_HISTORY)
        self._lock = threading.Lock()

    def record_performance(self, model_id: str, response_time_ms: float, success: bool) -> None:
        with self._lock:
            self._history.append(PerformanceRecord(model_id, float(response_time_ms), bool(success)))

    def model_performance(self, model_id: str) -> Dict[str, Any]:
        with self._lock:
            records = [r for r in self._history if r.model_id == model_id][-STATS_WINDOW:]
        if not records:
            return {"model_id": model_id, "requests": 0, "success_rate": None, "avg_response_time_ms": None}
        successes = sum(1 for r in records if r.success)
        return {
            "model_id": model_id,
            "requests": len(records),
            "success_rate": successes / len(records),
            "avg_response_time_ms": sum(r.response_time_ms for r in records) / len(records),
        }

    def best_performing(self, candidates: Sequence[str]) -> str:
        """
        score = success_rate * 100 - avg_ms / 1000. The first candidate wins unless
        another one has history and a positive, strictly higher score.
        """
        best = candidates[0]
        best_score = 0.0
        for model_id in candidates:
            stats = self.model_performance(model_id)
            if not stats["requests"]:
                continue
            score = stats["success_rate"] * 100 - stats["avg_response_time_ms"] / 1000
            if score > best_score:
                best, best_score = model_id, score
        return best

    def select_model(
        self,
        request: Dict[str, Any],
        *,
        preferred_model: Optional[str] = None,
        doctor_level: Optional[str] = None,
        requires_vision: bool = False,
    ) -> ModelSelection:
        complexity = analyze_complexity(request)
        is_advanced = complexity.type == "advanced"
        reasoning = [f"complexity {complexity.type} (score {complexity.score})"]

        primary: Optional[str] = None
        if preferred_model and preferred_model in KNOWN_MODELS:
            if not is_advanced or preferred_model in ADVANCED_MODELS:
                primary = preferred_model
                reasoning.append(f"preferred model {preferred_model}")
            else:
                reasoning.append(f"preferred model {preferred_model} not suitable for advanced request")

        if primary is None and doctor_level in DOCTOR_LEVEL_MODELS:
            primary = DOCTOR_LEVEL_MODELS[doctor_level]
            reasoning.append(f"doctor level {doctor_level}")

        if primary is None:
            if is_advanced or requires_vision:
                candidates = ADVANCED_MODELS
            elif complexity.type == "complex":
                candidates = COMPLEX_MODELS
            else:
                candidates = DEFAULT_FALLBACK_MODELS
            primary = self.best_performing(candidates)
            reasoning.append(f"best performing of {', '.join(candidates)}")

        pool = ADVANCED_FALLBACK_MODELS if (is_advanced or complexity.factors["has_images"]) else DEFAULT_FALLBACK_MODELS
        fallbacks = [m for m in pool if m != primary]
        return ModelSelection(primary_model=primary, fallback_models=fallbacks, complexity=complexity, reasoning=reasoning)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._history)
        model_ids = sorted({r.model_id for r in records})
        successes = sum(1 for r in records if r.success)
        return {
            "total_requests": len(records),
            "success_rate": (successes / len(records)) if records else None,
            "models": {model_id: self.model_performance(model_id) for model_id in model_ids},
        }

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


_ROUTER: Optional[ModelRouter] = None


def get_router() -> ModelRouter:
    global _ROUTER
    if _ROUTER is None:
        _ROUTER = ModelRouter()
    return _ROUTER
