from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time

import pytest

import llm
from heart_rate import generate_ppg_signal
from models import TBL_GUEST_SESSIONS, TBL_PROFILES, TBL_SESSIONS, TBL_SYSTEM_ERRORS

SECRET = "test-jwt-secret"


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _jwt(claims, secret=SECRET) -> str:
    header = _b64(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64(json.dumps(claims).encode())
    sig = hmac.new(secret.encode(), f"{header}.{payload}".encode(), hashlib.sha256).digest()
    return f"{header}.{payload}.{_b64(sig)}"


def _bearer(user_id: str) -> dict:
    return {"Authorization": f"Bearer {_jwt({'sub': user_id})}"}


USER = _bearer("u1")
DOCTOR = _bearer("d1")
ADMIN = _bearer("a1")


@pytest.fixture(autouse=True)
def _jwt_secret(_isolated_env, monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)


@pytest.fixture
def staff(fake_db):
    fake_db.seed(
        TBL_PROFILES,
        [
            {"id": "u1", "role": "patient", "full_name": "Mei Ling"},
            {"id": "d1", "role": "doctor", "full_name": "Dr Tan"},
            {"id": "a1", "role": "admin", "full_name": "Admin"},
        ],
    )


# ---- health ----


def test_health_without_ai_keys_is_unhealthy(client):
    resp = client.get("/api/health")
    assert resp.status_code == 503
    body = resp.get_json()
    assert body["status"] == "unhealthy"
    assert body["checks"]["database"]["status"] in ("ok", "slow")


def test_health_with_keys_is_served(client, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "k")
    monkeypatch.setenv("OPENAI_API_KEY", "k")
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] in ("healthy", "degraded")


# ---- identity ----


def test_records_require_identity(client):
    assert client.get("/api/sessions").status_code == 401
    resp = client.get("/api/sessions", headers={"X-Guest-Id": "g-1"})
    assert resp.status_code == 401


def test_unsigned_user_header_is_not_an_identity(client, fake_db, staff):
    fake_db.seed(TBL_PROFILES, [{"id": "victim", "role": "patient"}])
    assert client.get("/api/admin/users", headers={"X-User-Id": "a1"}).status_code == 401
    assert client.delete("/api/admin/users/victim", headers={"X-User-Id": "a1"}).status_code == 401
    assert any(row["id"] == "victim" for row in fake_db.rows(TBL_PROFILES))


def test_bearer_token_identifies_user(client, fake_db, monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)
    fake_db.seed(TBL_SESSIONS, [{"id": "s1", "user_id": "jwt-user", "created_at": "2024-03-01T00:00:00Z"}])
    token = _jwt({"sub": "jwt-user", "exp": int(time.time()) + 60})
    resp = client.get("/api/sessions", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.get_json()["total"] == 1


@pytest.mark.parametrize(
    "token",
    [
        _jwt({"sub": "u1"}, secret="wrong"),
        _jwt({"sub": "u1", "exp": 1}),
        _jwt({"role": "anon"}),
        "not-a-jwt",
    ],
)
def test_bad_tokens_are_rejected(client, monkeypatch, token):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)
    resp = client.get("/api/sessions", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.get_json()["error"]


def test_audience_is_checked_when_configured(client, monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)
    monkeypatch.setenv("SUPABASE_JWT_AUD", "authenticated")
    token = _jwt({"sub": "u1", "aud": "anon"})
    resp = client.get("/api/sessions", headers={"Authorization": f"Bearer {token}"})
    assert resp.get_json()["error"] == "JWT aud mismatch"


# ---- consultation ----


def test_consult_returns_and_saves_report(client, fake_db, fake_llm, wizard_data):
    fake_llm.push_json({"diagnosis": {"primary_pattern": "Heart Yin Deficiency"}, "constitution": "Yin deficient"})
    resp = client.post("/api/consult", json={"data": wizard_data, "language": "en"}, headers=USER)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["report"]["patient_profile"]["name"] == "Mei Ling"
    assert body["model_used"] == 1
    assert body["error_code"] is None
    assert body["session_id"] == fake_db.rows(TBL_SESSIONS)[0]["id"]


def test_guest_consult_returns_session_token(client, fake_db, fake_llm, wizard_data):
    fake_llm.push_json({"diagnosis": "Qi Deficiency"})
    resp = client.post("/api/consult", json={"data": wizard_data}, headers={"X-Guest-Id": "g-1"})
    body = resp.get_json()
    assert body["session_token"]
    assert fake_db.rows(TBL_GUEST_SESSIONS)[0]["session_token"] == body["session_token"]

    fetched = client.get(f"/api/guest-sessions/{body['session_token']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["session"]["primary_diagnosis"] == "Qi Deficiency"


def test_consult_failure_still_returns_a_report(client, fake_db, fake_llm, wizard_data):
    fake_llm.push(*[RuntimeError("API key not valid")] * 3)
    resp = client.post("/api/consult", json={"data": wizard_data}, headers=USER)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["error_code"] == "API_KEY_INVALID"
    assert body["report"]["diagnosis"] == "Analysis Error"
    assert body["session_id"] is None


def test_consult_requires_wizard_data(client):
    resp = client.post("/api/consult", json={"language": "en"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing diagnosis data"
    assert client.post("/api/consult", json=[1, 2]).status_code == 400


def test_analyze_image_without_image_is_bad_request(client):
    resp = client.post("/api/analyze-image", json={"type": "tongue"})
    assert resp.status_code == 400
    assert resp.get_json()["status"] == "error"


def test_summarize_without_history(client):
    resp = client.post("/api/summarize-inquiry", json={"chat_history": []})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "NO_HISTORY"


def test_chat_streams_text(client, monkeypatch):
    seen = {}

    def fake_stream(prompt, *, model=None, system=None, history=None, temperature=0.7):
        seen.update(prompt=prompt, model=model, system=system, history=history)
        yield "Hello "
        yield "there"

    monkeypatch.setattr(llm, "stream_text", fake_stream)
    resp = client.post(
        "/api/chat",
        json={
            "messages": [
                {"role": "assistant", "content": "How can I help?"},
                {"role": "user", "content": "I sweat at night"},
            ],
            "basic_info": {"name": "Mei"},
            "language": "zh",
        },
    )
    assert resp.status_code == 200
    assert resp.mimetype == "text/plain"
    assert resp.get_data(as_text=True) == "Hello there"
    assert seen["prompt"] == "I sweat at night"
    assert seen["history"] == [{"role": "assistant", "content": "How can I help?"}]
    assert "Patient Name: Mei" in seen["system"]


def test_chat_validation(client):
    resp = client.post("/api/chat", json={"messages": [{"role": "assistant", "content": "hi"}]})
    assert resp.status_code == 400
    resp = client.post("/api/report-chat", json={"messages": [{"role": "user", "content": "why?"}]})
    assert resp.get_json()["error"] == "Missing report"


# ---- wizard / signals / voice ----


def test_wizard_navigation(client):
    resp = client.post(
        "/api/wizard/navigate",
        json={"action": "next", "state": {"step": "basic_info"}, "step_data": {"name": "Mei"}},
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["wizard"]["step"] == "wen_inquiry"
    assert body["wizard"]["progress"] == 15
    assert body["data"]["basic_info"] == {"name": "Mei"}

    skipped = client.post(
        "/api/wizard/navigate",
        json={"action": "skip", "analysis_type": "face", "state": {"step": "wang_face", "max_step_reached": 3}},
    ).get_json()
    assert skipped["wizard"]["step"] == "wang_part"
    assert skipped["data"]["wang_face"]["skipped"] is True

    odd_keys = client.post(
        "/api/wizard/navigate",
        json={"action": "next", "state": {"step": "basic_info"}, "step_data": {"step": 1}},
    )
    assert odd_keys.status_code == 200
    assert odd_keys.get_json()["data"]["basic_info"] == {"step": 1}


@pytest.mark.parametrize(
    "body",
    [
        {"action": "fly"},
        {"action": "go_to", "target": "nowhere"},
        {"action": "skip", "analysis_type": "ear"},
        {"action": "next", "state": {"step": "limbo"}},
    ],
)
def test_wizard_rejects_bad_transitions(client, body):
    assert client.post("/api/wizard/navigate", json=body).status_code == 400


def test_wizard_resume_and_steps(client):
    body = client.post("/api/wizard/resume", json={"step": "report", "data": {"basic_info": {}}}).get_json()
    assert body["can_resume"] is True
    assert body["step"] == "summary"
    assert body["wizard"]["step"] == "summary"
    assert client.post("/api/wizard/resume", json={}).get_json()["can_resume"] is False
    steps = client.get("/api/wizard/steps").get_json()["stepper"]
    assert steps[0] == {"id": "basic_info", "label_key": "basics"}


def test_heart_rate_estimate(client):
    resp = client.post("/api/heart-rate/estimate", json={"samples": generate_ppg_signal(72, duration_s=10)})
    assert resp.status_code == 200
    assert 65 <= resp.get_json()["bpm"] <= 80
    assert client.post("/api/heart-rate/estimate", json={}).status_code == 400
    assert client.post("/api/heart-rate/estimate", json={"samples": [1.0], "sample_rate": -1}).status_code == 400


def test_heart_rate_capability_uses_user_agent_header(client):
    resp = client.post("/api/heart-rate/capability", headers={"User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4)"})
    assert resp.get_json()["is_supported"] is False


def test_voice_command(client):
    body = client.post("/api/voice/command", json={"transcript": "next"}).get_json()
    assert body["match"]["command"] == "navigate_next"
    assert body["actions"] == [{"type": "navigation", "action": "next"}]
    assert body["feedback"]

    dictated = client.post("/api/voice/command", json={"transcript": "my head hurts", "dictation": True}).get_json()
    assert dictated["match"] is None
    assert dictated["dictated_text"] == "my head hurts"
    assert client.post("/api/voice/command", json={"transcript": " "}).status_code == 400
    bad = client.post("/api/voice/command", json={"transcript": "next", "confidence": "high"})
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "confidence must be a number"


# ---- records ----


def test_session_crud(client, fake_db):
    created = client.post(
        "/api/sessions",
        json={"primary_diagnosis": "Qi Deficiency", "full_report": {"diagnosis": "Qi Deficiency"}},
        headers=USER,
    )
    assert created.status_code == 201
    session_id = created.get_json()["session"]["id"]

    listed = client.get("/api/sessions?limit=10", headers=USER).get_json()
    assert listed["total"] == 1 and listed["limit"] == 10

    patched = client.patch(f"/api/sessions/{session_id}", json={"notes": "better"}, headers=USER)
    assert patched.get_json()["session"]["notes"] == "better"
    assert client.patch(f"/api/sessions/{session_id}", json={}, headers=USER).status_code == 400

    assert client.get(f"/api/sessions/{session_id}", headers=_bearer("other")).status_code == 404
    assert client.delete(f"/api/sessions/{session_id}", headers=USER).get_json()["deleted"] is True
    assert client.delete(f"/api/sessions/{session_id}", headers=USER).status_code == 404


def test_session_validation_and_paging_errors(client):
    resp = client.post("/api/sessions", json={"primary_diagnosis": "X"}, headers=USER)
    assert resp.status_code == 400
    assert "full_report" in resp.get_json()["error"]
    assert client.get("/api/sessions?limit=abc", headers=USER).get_json()["error"] == "limit must be an integer"


def test_database_outage_is_503(client, fake_db):
    fake_db.failing.add(TBL_SESSIONS)
    assert client.get("/api/sessions", headers=USER).status_code == 503


def test_trends_and_last_entries(client):
    assert client.get("/api/trends", headers=USER).get_json()["session_count"] == 0
    assert client.get("/api/symptoms/last", headers=USER).get_json() == {"symptoms": "No previous symptoms found."}
    assert client.get("/api/medicines/last", headers=USER).get_json() == {"medicines": []}


def test_last_symptoms_come_from_reported_symptoms(client, fake_llm, wizard_data):
    wizard_data["basic_info"]["symptoms"] = "headache, insomnia"
    fake_llm.push_json({"diagnosis": "Liver Qi Stagnation"})
    assert client.post("/api/consult", json={"data": wizard_data}, headers=USER).status_code == 200
    resp = client.get("/api/symptoms/last", headers=USER)
    assert resp.get_json() == {"symptoms": "headache, insomnia"}


def test_medical_reports(client):
    created = client.post("/api/medical-reports", json={"name": "Blood panel", "type": "Lab"}, headers=USER)
    assert created.status_code == 201
    report_id = created.get_json()["report"]["id"]
    assert len(client.get("/api/medical-reports", headers=USER).get_json()["reports"]) == 1
    assert client.delete(f"/api/medical-reports/{report_id}", headers=_bearer("u2")).status_code == 404
    assert client.delete(f"/api/medical-reports/{report_id}", headers=USER).status_code == 200


# ---- doctor / admin ----


def test_doctor_routes_require_role(client, staff):
    resp = client.get("/api/doctor/patients", headers=USER)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "Doctor or Admin access required"
    assert client.get("/api/admin/system-health", headers=DOCTOR).get_json()["error"] == "Admin access required"


def test_doctor_dashboard(client, fake_db, staff):
    fake_db.seed(
        TBL_SESSIONS,
        [
            {"id": "s1", "user_id": "u1", "created_at": "2024-03-01T00:00:00Z", "symptoms": ["Night sweats"], "full_report": {}},
            {"id": "s2", "user_id": "u1", "created_at": "2024-03-02T00:00:00Z", "symptoms": ["Cough"], "full_report": {}},
        ],
    )
    body = client.get("/api/doctor/patients?symptom=cough", headers=DOCTOR).get_json()
    assert [i["id"] for i in body["inquiries"]] == ["s2"]
    assert body["inquiries"][0]["profile"]["full_name"] == "Mei Ling"
    assert body["stats"]["total"] == 2
    assert body["has_active_filters"] is True
    assert client.get("/api/doctor/patients?flag=Urgent", headers=DOCTOR).status_code == 400


def test_doctor_can_flag_session(client, fake_db, staff):
    fake_db.seed(TBL_SESSIONS, [{"id": "s1", "user_id": "u1"}])
    resp = client.patch("/api/doctor/sessions/s1/flag", json={"flag": "Watch"}, headers=DOCTOR)
    assert resp.get_json() == {"session_id": "s1", "flag": "Watch"}
    assert fake_db.rows(TBL_SESSIONS)[0]["flag"] == "Watch"
    assert client.patch("/api/doctor/sessions/s1/flag", json={"flag": "Meh"}, headers=DOCTOR).status_code == 400


def test_system_error_logging_and_dashboard(client, fake_db, staff):
    assert client.post("/api/admin/system-health", json={"message": "x"}).status_code == 400
    resp = client.post(
        "/api/admin/system-health",
        json={"error_type": "RenderError", "message": "boom", "severity": "critical", "component": "report"},
    )
    assert resp.get_json()["success"] is True
    assert fake_db.rows(TBL_SYSTEM_ERRORS)[0]["error_type"] == "RenderError"
    bad = client.post("/api/admin/system-health", json={"error_type": "E", "message": "m", "severity": "apocalyptic"})
    assert bad.status_code == 400

    dashboard = client.get("/api/admin/system-health", headers=ADMIN).get_json()
    assert dashboard["error_statistics"]["critical_errors"] == 1
    assert dashboard["overall_status"] in ("degraded", "unhealthy")
    assert dashboard["recent_errors"][0]["message"] == "boom"


def test_admin_user_management(client, fake_db, staff):
    users = client.get("/api/admin/users?role=doctor", headers=ADMIN).get_json()["users"]
    assert [u["id"] for u in users] == ["d1"]
    assert client.get("/api/admin/users?role=wizard", headers=ADMIN).status_code == 400

    updated = client.patch("/api/admin/users/u1", json={"role": "doctor", "password": "x"}, headers=ADMIN)
    assert updated.get_json()["user"]["role"] == "doctor"
    assert "password" not in updated.get_json()["user"]
    assert client.patch("/api/admin/users/u1", json={"role": "king"}, headers=ADMIN).status_code == 400
    assert client.patch("/api/admin/users/ghost", json={"age": 3}, headers=ADMIN).status_code == 404

    assert client.delete("/api/admin/users/u1", headers=ADMIN).get_json()["deleted"] is True
    assert [p["id"] for p in fake_db.rows(TBL_PROFILES)] == ["d1", "a1"]


# ---- router ----


def test_router_select_and_stats(client):
    body = client.post("/api/router/select", json={"request": {"images": ["t.jpg"]}, "requires_vision": True}).get_json()
    assert body["primary_model"] == "gemini-2.5-pro"
    assert body["complexity"]["factors"]["has_images"] is True
    assert client.get("/api/router/stats").get_json()["total_requests"] == 0
    assert client.get("/api/languages").get_json() == {"languages": ["en", "zh", "ms"]}
