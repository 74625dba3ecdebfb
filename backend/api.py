from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request, stream_with_context
from flask_cors import CORS
from pydantic import ValidationError

import llm
from analysis import AnalysisError, analyze_audio, analyze_image, summarize_inquiry
from dashboard import DashboardFilters, dashboard_stats, filter_inquiries, join_inquiries
from db import SupabaseError, get_db, ping
from graph import build_consult_graph, run_consultation
from health import health_report, system_health_dashboard
from heart_rate import SAMPLE_RATE, check_torch_capability, estimate, extract_green_channel_mean
from llm import QuotaExhaustedError
from model_router import get_router
from models import PATIENT_FLAGS, SUPPORTED_LANGUAGES, MedicalReportModel, SaveDiagnosisInput, SystemErrorInput
from prompts import build_chat_prompt, build_report_chat_system, language_instruction, resolve_prompt
from repos import (
    DiagnosisSessionRepo,
    InquiryRepo,
    MedicalReportRepo,
    NotFoundError,
    ProfileRepo,
    SystemErrorRepo,
    SystemPromptRepo,
)
from session_utils import consult_state_from_payload
from voice_commands import VoiceCommandDispatcher
from wizard import DiagnosisWizard, resume_from, stepper_labels

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "50"))
TRENDS_DAYS = int(os.getenv("TRENDS_DAYS", "30"))
DASHBOARD_LIMIT = int(os.getenv("DASHBOARD_SESSION_LIMIT", "50"))
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemini-2.0-flash")
_ROLES = ("patient", "doctor", "admin")
_PROFILE_FIELDS = {"full_name", "role", "age", "gender", "height", "weight", "flag", "phone", "email"}
_WIZARD_ACTIONS = {"next", "back", "go_to", "skip", "reset"}


def _error(message: str, status: int) -> Any:
    return jsonify({"error": message}), status


class AuthError(RuntimeError):
    pass


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _verify_supabase_jwt(token: str) -> Dict[str, Any]:
    secret = os.getenv("SUPABASE_JWT_SECRET") or os.getenv("JWT_SECRET")
    if not secret:
        raise AuthError("Missing SUPABASE_JWT_SECRET")

    parts = token.split(".")
    if len(parts) != 3:
        raise AuthError("Malformed JWT")

    try:
        header_raw = _b64url_decode(parts[0])
        payload_raw = _b64url_decode(parts[1])
    except ValueError as exc:
        raise AuthError("Invalid JWT encoding") from exc
    try:
        header = json.loads(header_raw.decode("utf-8"))
        payload = json.loads(payload_raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AuthError("Invalid JWT JSON") from exc

    if header.get("alg") != "HS256":
        raise AuthError("Unsupported JWT alg")

    signing_input = f"{parts[0]}.{parts[1]}".encode("utf-8")
    expected_sig = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(_b64url_encode(expected_sig), parts[2].rstrip("=")):
        raise AuthError("Invalid JWT signature")

    exp = payload.get("exp")
    if exp is not None:
        try:
            exp_val = int(exp)
        except (TypeError, ValueError):
            raise AuthError("Invalid JWT exp") from None
        if int(time.time()) >= exp_val:
            raise AuthError("JWT expired")

    aud = (os.getenv("SUPABASE_JWT_AUD") or os.getenv("JWT_AUD") or "").strip()
    if aud:
        payload_aud = payload.get("aud")
        valid = aud in payload_aud if isinstance(payload_aud, list) else payload_aud == aud
        if not valid:
            raise AuthError("JWT aud mismatch")

    return payload


def _identity() -> Tuple[Optional[str], bool]:
    """
    (user_id, is_guest). A bearer token wins; X-Guest-Id marks a guest. A bad
    token raises AuthError.
    """
    auth_header = request.headers.get("Authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        token = auth_header.split(None, 1)[1].strip()
        if not token:
            raise AuthError("Missing bearer token")
        claims = _verify_supabase_jwt(token)
        user_id = str(claims.get("sub") or claims.get("user_id") or "").strip()
        if not user_id:
            raise AuthError("JWT missing user id")
        return user_id, False

    guest_id = (request.headers.get("X-Guest-Id") or "").strip()
    if guest_id:
        return guest_id, True

    return None, True


def _require_user_id() -> str:
    user_id, is_guest = _identity()
    if not user_id or is_guest:
        raise AuthError("Missing Authorization Bearer token")
    return user_id


def _parse_json_body() -> Optional[Dict[str, Any]]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        return None
    return payload


def _int_arg(name: str, default: int, *, lo: int = 0, hi: Optional[int] = None) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None
    value = max(lo, value)
    return min(hi, value) if hi is not None else value


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg") or "Invalid request")


def _messages(value: Any) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for m in value or []:
        if isinstance(m, dict) and m.get("content"):
            role = "assistant" if m.get("role") in ("assistant", "model") else "user"
            out.append({"role": role, "content": str(m["content"])})
    return out


def _uploaded(payload: Dict[str, Any], kind: str) -> Any:
    files = payload.get("uploadedFiles")
    return files.get(kind) if isinstance(files, dict) else None


def _text_stream(chunks: Any) -> Response:
    resp = Response(stream_with_context(chunks), mimetype="text/plain; charset=utf-8")
    resp.headers["X-Accel-Buffering"] = "no"
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _green_samples(payload: Dict[str, Any]) -> List[float]:
    samples = payload.get("samples")
    frames = payload.get("frames")
    if isinstance(samples, list):
        return [float(v) for v in samples]
    if isinstance(frames, list):
        return [extract_green_channel_mean([int(v) for v in frame]) for frame in frames]
    raise ValueError("Provide samples (green means) or frames (flat RGBA arrays)")


def create_app(*, init_db: bool = True, db: Any = None) -> Flask:
    app = Flask(__name__)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    @app.errorhandler(SupabaseError)
    def _handle_supabase_error(exc: SupabaseError) -> Any:
        logger.error("[api] supabase error: %s", exc)
        return _error("Backend database is unavailable. Try again shortly.", 503)

    @app.errorhandler(AuthError)
    def _handle_auth_error(exc: AuthError) -> Any:
        return _error(str(exc), 401)

    @app.errorhandler(NotFoundError)
    def _handle_not_found(exc: NotFoundError) -> Any:
        return _error(str(exc) or "Not found", 404)

    @app.errorhandler(QuotaExhaustedError)
    def _handle_quota(exc: QuotaExhaustedError) -> Any:
        return _error(str(exc), 429)

    @app.errorhandler(AnalysisError)
    def _handle_analysis_error(exc: AnalysisError) -> Any:
        return jsonify(exc.to_dict()), exc.status

    db = db if db is not None else get_db()
    if init_db:
        ping(db)

    session_repo = DiagnosisSessionRepo(db)
    inquiry_repo = InquiryRepo(db)
    report_repo = MedicalReportRepo(db)
    prompt_repo = SystemPromptRepo(db)
    profile_repo = ProfileRepo(db)
    error_repo = SystemErrorRepo(db)
    consult_graph = build_consult_graph(db)

    def require_role(*roles: str) -> Tuple[Optional[str], Optional[Tuple[str, int]]]:
        user_id = _require_user_id()
        role = profile_repo.get_role(user_id)
        if role not in roles:
            return None, (f"{' or '.join(r.capitalize() for r in roles)} access required", 403)
        return user_id, None

    # ---- health ----

    @app.route(f"{API_PREFIX}/health", methods=["GET"])
    def health() -> Any:
        report = health_report(db)
        return jsonify(report), 503 if report["status"] == "unhealthy" else 200

    # ---- AI ----

    @app.route(f"{API_PREFIX}/consult", methods=["POST"])
    def consult() -> Any:
        user_id, is_guest = _identity()
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        state = consult_state_from_payload(payload, user_id=user_id, is_guest=is_guest)
        if not state.wizard_data:
            return _error("Missing diagnosis data", 400)

        started = time.monotonic()
        result = run_consultation(consult_graph, state)
        session = result.session_doc or {}
        logger.info(
            "[consult] done in %.0f ms (model=%s, error=%s)",
            (time.monotonic() - started) * 1000,
            result.model_id,
            result.error_code,
        )
        return jsonify(
            {
                "report": result.report,
                "overall_score": result.overall_score,
                "model_used": result.model_used,
                "model_id": result.model_id,
                "error_code": result.error_code,
                "session_id": session.get("id"),
                "session_token": session.get("session_token"),
                "persist_error": result.persist_error,
            }
        )

    @app.route(f"{API_PREFIX}/analyze-image", methods=["POST"])
    def analyze_image_route() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        context = payload.get("patient_context") or payload.get("patientContext")
        result = analyze_image(
            payload.get("image"),
            payload.get("type") or "tongue",
            patient_context=context if isinstance(context, dict) else None,
            language=payload.get("language"),
            prompt_repo=prompt_repo,
        )
        return jsonify(result), 400 if result.get("status") == "error" else 200

    @app.route(f"{API_PREFIX}/analyze-audio", methods=["POST"])
    def analyze_audio_route() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        result = analyze_audio(payload.get("audio"), language=payload.get("language"), prompt_repo=prompt_repo)
        return jsonify(result), 400 if result.get("status") == "error" else 200

    @app.route(f"{API_PREFIX}/summarize-inquiry", methods=["POST"])
    def summarize_inquiry_route() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        result = summarize_inquiry(
            payload.get("chat_history") or payload.get("chatHistory"),
            basic_info=payload.get("basic_info") or payload.get("basicInfo"),
            report_files=payload.get("report_files") or _uploaded(payload, "reports"),
            medicine_files=payload.get("medicine_files") or _uploaded(payload, "medicines"),
            language=payload.get("language"),
            model=payload.get("model"),
            prompt_repo=prompt_repo,
        )
        return jsonify(result)

    @app.route(f"{API_PREFIX}/chat", methods=["POST"])
    def inquiry_chat() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        messages = _messages(payload.get("messages"))
        if not messages or messages[-1]["role"] != "user":
            return _error("messages must end with a user message", 400)
        basic_info = payload.get("basic_info") or payload.get("basicInfo")
        system = build_chat_prompt(basic_info, base=resolve_prompt("chat", prompt_repo))
        system += "\n\n" + language_instruction(payload.get("language"))
        chunks = llm.stream_with_fallback(
            messages[-1]["content"],
            models=llm.fallback_order(payload.get("model") or CHAT_MODEL, llm.DEFAULT_FALLBACK_MODELS),
            system=system,
            history=messages[:-1],
            context="chat",
        )
        return _text_stream(chunks)

    @app.route(f"{API_PREFIX}/report-chat", methods=["POST"])
    def report_chat() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        messages = _messages(payload.get("messages"))
        report = payload.get("report") or payload.get("reportData")
        if not messages or messages[-1]["role"] != "user":
            return _error("messages must end with a user message", 400)
        if not isinstance(report, dict):
            return _error("Missing report", 400)
        system = build_report_chat_system(
            report,
            payload.get("patient_info") or payload.get("patientInfo"),
            payload.get("language"),
        )
        chunks = llm.stream_with_fallback(
            messages[-1]["content"],
            models=llm.fallback_order(payload.get("model") or CHAT_MODEL, llm.DEFAULT_FALLBACK_MODELS),
            system=system,
            history=messages[:-1],
            context="report-chat",
        )
        return _text_stream(chunks)

    # ---- wizard / signals / voice ----

    @app.route(f"{API_PREFIX}/wizard/steps", methods=["GET"])
    def wizard_steps() -> Any:
        return jsonify({"stepper": stepper_labels()})

    @app.route(f"{API_PREFIX}/wizard/navigate", methods=["POST"])
    def wizard_navigate() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        action = str(payload.get("action") or "").strip()
        if action not in _WIZARD_ACTIONS:
            return _error(f"action must be one of: {', '.join(sorted(_WIZARD_ACTIONS))}", 400)
        current = payload.get("state") if isinstance(payload.get("state"), dict) else {}
        data = current.get("data")
        try:
            wizard = DiagnosisWizard(
                step=str(current.get("step") or "basic_info"),
                max_step_reached=int(current.get("max_step_reached") or 0),
                data=dict(data) if isinstance(data, dict) else {},
            )
            if isinstance(payload.get("step_data"), dict):
                wizard.merge_step_data(wizard.step, payload["step_data"])
            if action == "next":
                wizard.next()
            elif action == "back":
                wizard.back()
            elif action == "go_to":
                wizard.go_to(str(payload.get("target") or ""))
            elif action == "skip":
                wizard.skip_analysis(str(payload.get("analysis_type") or ""))
            else:
                profile = payload.get("profile")
                wizard.reset(profile if isinstance(profile, dict) else None)
        except (ValueError, KeyError) as exc:
            return _error(f"Invalid wizard transition: {exc}", 400)
        return jsonify({"wizard": wizard.snapshot(), "data": wizard.data})

    @app.route(f"{API_PREFIX}/wizard/resume", methods=["POST"])
    def wizard_resume() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        try:
            decision = resume_from(payload.get("step"))
        except ValueError as exc:
            return _error(str(exc), 400)
        wizard = DiagnosisWizard.resume(payload)
        return jsonify(
            {
                "can_resume": decision.can_resume,
                "step": decision.step,
                "max_step_reached": decision.max_step_reached,
                "wizard": wizard.snapshot(),
            }
        )

    @app.route(f"{API_PREFIX}/heart-rate/estimate", methods=["POST"])
    def heart_rate_estimate() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        try:
            samples = _green_samples(payload)
            sample_rate = float(payload.get("sample_rate") or SAMPLE_RATE)
        except (TypeError, ValueError) as exc:
            return _error(str(exc), 400)
        if sample_rate <= 0:
            return _error("sample_rate must be positive", 400)
        return jsonify(estimate(samples, sample_rate))

    @app.route(f"{API_PREFIX}/heart-rate/capability", methods=["POST"])
    def heart_rate_capability() -> Any:
        payload = _parse_json_body() or {}
        user_agent = payload.get("user_agent") or request.headers.get("User-Agent")
        return jsonify(check_torch_capability(user_agent).to_dict())

    @app.route(f"{API_PREFIX}/voice/command", methods=["POST"])
    def voice_command() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        transcript = str(payload.get("transcript") or "").strip()
        if not transcript:
            return _error("Missing transcript", 400)
        try:
            confidence = float(payload.get("confidence") or 0.0)
        except (TypeError, ValueError):
            return _error("confidence must be a number", 400)
        dispatcher = VoiceCommandDispatcher(
            language=str(payload.get("language") or "en-US"),
            enable_feedback=bool(payload.get("enable_feedback", True)),
            enable_commands=bool(payload.get("enable_commands", True)),
        )
        dispatcher.is_dictation_mode = bool(payload.get("dictation", False))
        dictated: List[str] = []
        dispatcher.add_listener("dictation", lambda event: dictated.append(event.data["transcript"]))
        match = dispatcher.handle_result(
            transcript,
            confidence=confidence,
            is_final=bool(payload.get("is_final", True)),
            alternatives=payload.get("alternatives") or [],
        )
        return jsonify(
            {
                "match": match.to_dict() if match else None,
                "actions": dispatcher.actions,
                "feedback": dispatcher.feedback,
                "dictation": dispatcher.is_dictation_mode,
                "dictated_text": dictated[0] if dictated else None,
            }
        )

    # ---- records ----

    @app.route(f"{API_PREFIX}/sessions", methods=["GET"])
    def list_sessions() -> Any:
        user_id = _require_user_id()
        try:
            limit = _int_arg("limit", HISTORY_LIMIT, lo=1, hi=200)
            offset = _int_arg("offset", 0)
        except ValueError as exc:
            return _error(str(exc), 400)
        sessions, total = session_repo.history(user_id, limit=limit, offset=offset)
        return jsonify({"sessions": sessions, "total": total, "limit": limit, "offset": offset})

    @app.route(f"{API_PREFIX}/sessions", methods=["POST"])
    def save_session() -> Any:
        user_id, is_guest = _identity()
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        try:
            data = SaveDiagnosisInput.model_validate(payload)
        except ValidationError as exc:
            return _error(_validation_message(exc), 400)
        if is_guest:
            data.is_guest_session = True
        doc = session_repo.save(None if is_guest else user_id, data)
        return jsonify({"session": doc}), 201

    @app.route(f"{API_PREFIX}/sessions/<session_id>", methods=["GET"])
    def get_session(session_id: str) -> Any:
        user_id = _require_user_id()
        return jsonify({"session": session_repo.get(session_id, user_id)})

    @app.route(f"{API_PREFIX}/guest-sessions/<session_token>", methods=["GET"])
    def get_guest_session(session_token: str) -> Any:
        return jsonify({"session": session_repo.get_guest(session_token)})

    @app.route(f"{API_PREFIX}/sessions/<session_id>", methods=["PATCH"])
    def update_session(session_id: str) -> Any:
        user_id = _require_user_id()
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        values: Dict[str, Any] = {}
        if "notes" in payload:
            values["notes"] = str(payload.get("notes") or "")
        if "is_hidden" in payload:
            values["is_hidden"] = bool(payload.get("is_hidden"))
        if not values:
            return _error("Nothing to update: send notes or is_hidden", 400)
        return jsonify({"session": session_repo.update(session_id, user_id, values)})

    @app.route(f"{API_PREFIX}/sessions/<session_id>", methods=["DELETE"])
    def delete_session(session_id: str) -> Any:
        user_id = _require_user_id()
        if not session_repo.delete(session_id, user_id):
            return _error("Session not found", 404)
        return jsonify({"deleted": True, "session_id": session_id})

    @app.route(f"{API_PREFIX}/trends", methods=["GET"])
    def trends() -> Any:
        user_id = _require_user_id()
        try:
            days = _int_arg("days", TRENDS_DAYS, lo=1, hi=365)
        except ValueError as exc:
            return _error(str(exc), 400)
        return jsonify(session_repo.trends(user_id, days).model_dump())

    @app.route(f"{API_PREFIX}/symptoms/last", methods=["GET"])
    def last_symptoms() -> Any:
        user_id = _require_user_id()
        return jsonify({"symptoms": inquiry_repo.last_symptoms(user_id)})

    @app.route(f"{API_PREFIX}/medicines/last", methods=["GET"])
    def last_medicines() -> Any:
        user_id = _require_user_id()
        return jsonify({"medicines": session_repo.last_medicines(user_id)})

    @app.route(f"{API_PREFIX}/medical-reports", methods=["GET"])
    def list_medical_reports() -> Any:
        user_id = _require_user_id()
        return jsonify({"reports": report_repo.list(user_id)})

    @app.route(f"{API_PREFIX}/medical-reports", methods=["POST"])
    def save_medical_report() -> Any:
        user_id = _require_user_id()
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        try:
            report = MedicalReportModel.model_validate({**payload, "user_id": user_id})
        except ValidationError as exc:
            return _error(_validation_message(exc), 400)
        return jsonify({"report": report_repo.save(report)}), 201

    @app.route(f"{API_PREFIX}/medical-reports/<report_id>", methods=["DELETE"])
    def delete_medical_report(report_id: str) -> Any:
        user_id = _require_user_id()
        if not report_repo.delete(report_id, user_id):
            return _error("Report not found", 404)
        return jsonify({"deleted": True, "report_id": report_id})

    # ---- doctor ----

    @app.route(f"{API_PREFIX}/doctor/patients", methods=["GET"])
    def doctor_patients() -> Any:
        _doctor_id, err = require_role("doctor", "admin")
        if err:
            return _error(err[0], err[1])
        try:
            filters = DashboardFilters.from_args(request.args)
            sessions = session_repo.recent(limit=DASHBOARD_LIMIT)
            user_ids = sorted({str(s["user_id"]) for s in sessions if s.get("user_id")})
            patient_ids = sorted({str(s["patient_id"]) for s in sessions if s.get("patient_id")})
            inquiries = join_inquiries(
                sessions,
                profile_repo.profiles_by_ids(user_ids),
                profile_repo.patients_by_ids(patient_ids),
            )
            filtered = filter_inquiries(inquiries, filters)
        except ValueError as exc:
            return _error(str(exc), 400)
        return jsonify(
            {
                "inquiries": filtered,
                "stats": dashboard_stats(inquiries),
                "has_active_filters": filters.active,
            }
        )

    @app.route(f"{API_PREFIX}/doctor/sessions/<session_id>/flag", methods=["PATCH"])
    def flag_session(session_id: str) -> Any:
        _doctor_id, err = require_role("doctor", "admin")
        if err:
            return _error(err[0], err[1])
        payload = _parse_json_body() or {}
        flag = payload.get("flag")
        if flag is not None and flag not in PATIENT_FLAGS:
            return _error(f"flag must be one of: {', '.join(PATIENT_FLAGS)}", 400)
        session_repo.set_flag(session_id, flag)
        return jsonify({"session_id": session_id, "flag": flag})

    # ---- admin ----

    @app.route(f"{API_PREFIX}/admin/system-health", methods=["GET"])
    def admin_system_health() -> Any:
        _admin_id, err = require_role("admin")
        if err:
            return _error(err[0], err[1])
        return jsonify(system_health_dashboard(db, error_repo, router_stats=get_router().stats()))

    @app.route(f"{API_PREFIX}/admin/system-health", methods=["POST"])
    def log_system_error() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        if not payload.get("error_type") or not payload.get("message"):
            return _error("error_type and message are required", 400)
        try:
            err = SystemErrorInput.model_validate(payload)
        except ValidationError as exc:
            return _error(_validation_message(exc), 400)
        row = error_repo.log(err)
        if err.severity == "critical":
            logger.critical("[system-health] critical error logged from %s: %s", err.component, err.message)
        return jsonify({"success": True, "error_id": row.get("id")})

    @app.route(f"{API_PREFIX}/admin/users", methods=["GET"])
    def admin_list_users() -> Any:
        _admin_id, err = require_role("admin")
        if err:
            return _error(err[0], err[1])
        role = (request.args.get("role") or "patient").strip()
        if role not in _ROLES:
            return _error(f"role must be one of: {', '.join(_ROLES)}", 400)
        return jsonify({"users": profile_repo.list_by_role(role)})

    @app.route(f"{API_PREFIX}/admin/users/<user_id>", methods=["PATCH"])
    def admin_update_user(user_id: str) -> Any:
        _admin_id, err = require_role("admin")
        if err:
            return _error(err[0], err[1])
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        values = {k: v for k, v in payload.items() if k in _PROFILE_FIELDS}
        if not values:
            return _error(f"Nothing to update: allowed fields are {', '.join(sorted(_PROFILE_FIELDS))}", 400)
        if "role" in values and values["role"] not in _ROLES:
            return _error(f"role must be one of: {', '.join(_ROLES)}", 400)
        return jsonify({"user": profile_repo.update(user_id, values)})

    @app.route(f"{API_PREFIX}/admin/users/<user_id>", methods=["DELETE"])
    def admin_delete_user(user_id: str) -> Any:
        _admin_id, err = require_role("admin")
        if err:
            return _error(err[0], err[1])
        profile_repo.delete(user_id)
        return jsonify({"deleted": True, "user_id": user_id})

    # ---- model router ----

    @app.route(f"{API_PREFIX}/router/select", methods=["POST"])
    def router_select() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Invalid JSON body", 400)
        criteria = payload.get("request") if isinstance(payload.get("request"), dict) else {}
        selection = get_router().select_model(
            criteria,
            preferred_model=payload.get("preferred_model"),
            doctor_level=payload.get("doctor_level"),
            requires_vision=bool(payload.get("requires_vision", False)),
        )
        return jsonify(
            {
                "primary_model": selection.primary_model,
                "fallback_models": selection.fallback_models,
                "complexity": {
                    "type": selection.complexity.type,
                    "score": selection.complexity.score,
                    "factors": selection.complexity.factors,
                    "reasoning": selection.complexity.reasoning,
                },
                "reasoning": selection.reasoning,
            }
        )

    @app.route(f"{API_PREFIX}/router/stats", methods=["GET"])
    def router_stats() -> Any:
        return jsonify(get_router().stats())

    @app.route(f"{API_PREFIX}/languages", methods=["GET"])
    def languages() -> Any:
        return jsonify({"languages": list(SUPPORTED_LANGUAGES)})

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
