from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, StateGraph

import llm
from consult import build_final_prompt
from db import SupabaseError
from graph_state import ConsultState
from prompts import resolve_prompt
from report_utils import (
    build_session_input,
    calculate_overall_score,
    fallback_report,
    parse_model_json,
    wizard_medicines,
    with_patient_profile,
)
from repos import DiagnosisSessionRepo, InquiryRepo, SystemPromptRepo
from session_utils import coerce_state

logger = logging.getLogger(__name__)

CONSULT_MODEL = os.getenv("CONSULT_MODEL", "gemini-2.5-pro")
CONSULT_TEMPERATURE = float(os.getenv("CONSULT_TEMPERATURE", "0.4"))
PARSE_ERROR_CODE = "PARSE_ERROR"
PARSE_ERROR_MESSAGE = "The AI response could not be read as a report. Please try again."
_RAW_DETAIL_CHARS = 500


def _inquiry_symptoms(state: ConsultState) -> str:
    """basic_info.symptoms as reported, else the complaint fields, else "Not provided"."""
    info = state.basic_info
    symptoms = info.get("symptoms")
    if isinstance(symptoms, (list, tuple)):
        symptoms = ", ".join(str(s).strip() for s in symptoms if str(s).strip())
    text = str(symptoms or "").strip()
    if text:
        return text
    parts = [str(info.get(k) or "").strip() for k in ("mainComplaint", "otherSymptoms")]
    return ", ".join(p for p in parts if p) or "Not provided"


def load_prompt(state: ConsultState, db) -> ConsultState:
    if state.custom_prompt:
        return state
    repo = SystemPromptRepo(db) if db is not None else None
    state.custom_prompt = resolve_prompt("final", repo)
    return state


def build_prompt(state: ConsultState) -> ConsultState:
    system, user = build_final_prompt(
        state.wizard_data,
        language=state.language,
        report_options=state.report_options,
        verified_summaries=state.verified_summaries,
        custom_prompt=state.custom_prompt,
    )
    state.system_prompt = system
    state.user_prompt = user
    return state


def generate_report(state: ConsultState) -> ConsultState:
    models = llm.fallback_order(
        state.model or CONSULT_MODEL,
        state.fallback_models or llm.ADVANCED_FALLBACK_MODELS,
    )
    try:
        res = llm.generate_with_fallback(
            state.user_prompt or "",
            models=models,
            system=state.system_prompt,
            temperature=CONSULT_TEMPERATURE,
            json_mode=True,
            context="consult",
        )
    except Exception as exc:
        cause = exc.__cause__ if isinstance(exc, llm.AllModelsFailedError) and exc.__cause__ else exc
        code, message = llm.parse_api_error(cause)
        logger.error("[consult] report generation failed (%s): %s", code, exc)
        state.error_code = code
        state.report = fallback_report(code, message, str(exc))
        return state

    state.raw_output = res.text
    state.model_used = res.model_used
    state.model_id = res.model_id
    state.usage = res.usage
    logger.info("[consult] report generated by %s (%s)", res.model_id, res.status)
    return state


def parse_report(state: ConsultState) -> ConsultState:
    raw = state.raw_output or ""
    try:
        report = parse_model_json(raw)
    except ValueError as exc:
        logger.warning("[consult] unparseable report from %s: %s", state.model_id, exc)
        state.error_code = PARSE_ERROR_CODE
        state.report = fallback_report(PARSE_ERROR_CODE, PARSE_ERROR_MESSAGE, raw[:_RAW_DETAIL_CHARS])
        return state

    state.report = with_patient_profile(report, state.basic_info, wizard_medicines(state.wizard_data))
    return state


def score_report(state: ConsultState) -> ConsultState:
    state.overall_score = calculate_overall_score(state.report or {})
    return state


def persist_report(state: ConsultState, db) -> ConsultState:
    report = state.report or {}
    try:
        if state.user_id and not state.is_guest:
            InquiryRepo(db).insert(state.user_id, _inquiry_symptoms(state), report)
        data = build_session_input(
            report,
            state.wizard_data,
            overall_score=state.overall_score,
            is_guest=state.is_guest or not state.user_id,
        )
        state.session_doc = DiagnosisSessionRepo(db).save(None if state.is_guest else state.user_id, data)
    except SupabaseError as exc:
        # The report is still returned; only the history entry is missing.
        logger.error("[consult] failed to persist report: %s", exc)
        state.persist_error = str(exc)
    return state


def _should_persist(state: ConsultState, db) -> bool:
    return bool(state.persist and db is not None and not state.error_code)


def build_consult_graph(db, *, use_checkpointer: bool = False):
    g = StateGraph(ConsultState)

    g.add_node("load_prompt", lambda s: load_prompt(s, db))
    g.add_node("build_prompt", build_prompt)
    g.add_node("generate_report", generate_report)
    g.add_node("parse_report", parse_report)
    g.add_node("score_report", score_report)
    g.add_node("persist_report", lambda s: persist_report(s, db))

    g.set_entry_point("load_prompt")

    g.add_edge("load_prompt", "build_prompt")
    g.add_edge("build_prompt", "generate_report")

    # A failed generation already carries its fallback report.
    g.add_conditional_edges(
        "generate_report",
        lambda s: "score_report" if s.error_code else "parse_report",
        {
            "parse_report": "parse_report",
            "score_report": "score_report",
        },
    )
    g.add_edge("parse_report", "score_report")

    g.add_conditional_edges(
        "score_report",
        lambda s: "persist_report" if _should_persist(s, db) else END,
        {
            "persist_report": "persist_report",
            END: END,
        },
    )
    g.add_edge("persist_report", END)

    checkpointer = MemorySaver() if use_checkpointer else None
    return g.compile(checkpointer=checkpointer)


def run_consultation(graph, state: ConsultState, config: Optional[Dict[str, Any]] = None) -> ConsultState:
    values = graph.invoke(state, config) if config else graph.invoke(state)
    return coerce_state(values, state)


def build_graph(db):
    return build_consult_graph(db)
