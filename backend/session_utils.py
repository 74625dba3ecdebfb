from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from graph_state import ConsultState
from prompts import normalize_language

DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en")


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def consult_state_from_payload(
    payload: Dict[str, Any],
    *,
    user_id: Optional[str] = None,
    is_guest: bool = False,
) -> ConsultState:
    """
    Initialize ConsultState from a /consult request body.

    Accepts both the wizard's own shape ({"data": {...}}) and a bare wizard dict.
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {k: v for k, v in payload.items() if isinstance(v, dict)}
    report_options = payload.get("report_options") or payload.get("reportOptions")
    verified = payload.get("verified_summaries") or payload.get("verifiedSummaries")
    return ConsultState(
        user_id=user_id,
        is_guest=is_guest,
        language=normalize_language(payload.get("language") or DEFAULT_LANGUAGE),
        model=str(payload.get("model") or "").strip() or None,
        fallback_models=_str_list(payload.get("fallback_models")),
        wizard_data=dict(data),
        report_options=report_options if isinstance(report_options, dict) else None,
        verified_summaries=verified if isinstance(verified, dict) else None,
        custom_prompt=str(payload.get("prompt") or "").strip() or None,
        persist=bool(payload.get("save", True)),
    )


def coerce_state(values: Any, fallback: ConsultState) -> ConsultState:
    """Graph runs hand back either the state object or a plain dict of its values."""
    if isinstance(values, ConsultState):
        return values
    if isinstance(values, dict):
        try:
            return ConsultState.model_validate(values)
        except ValueError:
            return fallback.model_copy(update=values)
    return fallback
