from __future__ import annotations

from datetime import timedelta

import pytest

from db import SupabaseError
from models import (
    TBL_GUEST_SESSIONS,
    TBL_INQUIRIES,
    TBL_PATIENTS,
    TBL_PROFILES,
    TBL_SESSIONS,
    TBL_SYSTEM_ERRORS,
    MedicalReportModel,
    SaveDiagnosisInput,
    SystemErrorInput,
    utcnow,
)
from repos import (
    DiagnosisSessionRepo,
    InquiryRepo,
    MedicalReportRepo,
    NotFoundError,
    ProfileRepo,
    SystemErrorRepo,
    SystemPromptRepo,
)


def _session(days_ago: int, score: int, diagnosis: str, user_id: str = "u1") -> dict:
    return {
        "id": f"s-{days_ago}-{score}",
        "user_id": user_id,
        "created_at": (utcnow() - timedelta(days=days_ago)).isoformat(),
        "overall_score": score,
        "primary_diagnosis": diagnosis,
        "full_report": {"diagnosis": diagnosis},
    }


def test_save_derives_symptoms_and_medicines(fake_db):
    repo = DiagnosisSessionRepo(fake_db)
    doc = repo.save(
        "u1",
        SaveDiagnosisInput(
            primary_diagnosis="Qi Deficiency",
            full_report={"diagnosis": "Qi Deficiency"},
            guest_email="ignored@example.com",
        ),
    )
    assert doc["user_id"] == "u1"
    assert "Fatigue" in doc["symptoms"]
    assert doc["medicines"] == ["Si Jun Zi Tang", "Bu Zhong Yi Qi Tang"]
    assert "guest_email" not in fake_db.rows(TBL_SESSIONS)[0]


def test_guest_save_uses_token_table(fake_db):
    repo = DiagnosisSessionRepo(fake_db)
    doc = repo.save(None, SaveDiagnosisInput(primary_diagnosis="X", full_report={}, guest_name="Mei"))
    assert doc["is_guest_session"] is True
    assert doc["session_token"]
    assert fake_db.rows(TBL_SESSIONS) == []
    fetched = repo.get_guest(doc["session_token"])
    assert fetched["guest_name"] == "Mei"
    with pytest.raises(NotFoundError):
        repo.get_guest("missing")


def test_history_pages_newest_first(fake_db):
    fake_db.seed(TBL_SESSIONS, [_session(d, 60 + d, "Qi Deficiency") for d in range(5)])
    fake_db.seed(TBL_SESSIONS, [_session(1, 99, "Other", user_id="u2")])
    rows, total = DiagnosisSessionRepo(fake_db).history("u1", limit=2, offset=1)
    assert total == 5
    assert [r["overall_score"] for r in rows] == [61, 62]


def test_get_update_delete_are_scoped_to_owner(fake_db):
    fake_db.seed(TBL_SESSIONS, [_session(0, 70, "A")])
    repo = DiagnosisSessionRepo(fake_db)
    with pytest.raises(NotFoundError):
        repo.get("s-0-70", "someone-else")
    assert repo.update_notes("s-0-70", "u1", "feeling better")["notes"] == "feeling better"
    assert repo.set_hidden("s-0-70", "u1", True)["is_hidden"] is True
    with pytest.raises(NotFoundError):
        repo.update_notes("s-0-70", "u2", "nope")
    assert repo.delete("s-0-70", "u2") is False
    assert repo.delete("s-0-70", "u1") is True
    assert fake_db.rows(TBL_SESSIONS) == []


def test_trends_summarize_window(fake_db):
    fake_db.seed(
        TBL_SESSIONS,
        [
            _session(40, 10, "Old"),
            _session(20, 50, "Qi Deficiency"),
            _session(10, 60, "Qi Deficiency"),
            _session(1, 80, "Balanced"),
        ],
    )
    trends = DiagnosisSessionRepo(fake_db).trends("u1", 30)
    assert trends.session_count == 3
    assert trends.average_score == 63
    assert trends.improvement == 30
    assert trends.diagnosis_counts == {"Qi Deficiency": 2, "Balanced": 1}
    assert [s["score"] for s in trends.sessions] == [50, 60, 80]
    assert DiagnosisSessionRepo(fake_db).trends("nobody").session_count == 0


def test_last_medicines_prefers_report_input_data(fake_db):
    repo = DiagnosisSessionRepo(fake_db)
    assert repo.last_medicines("u1") == []
    row = _session(0, 70, "A")
    row["full_report"] = {"input_data": {"medicines": ["Ginseng"]}}
    row["medicines"] = ["Fallback"]
    fake_db.seed(TBL_SESSIONS, [row])
    assert repo.last_medicines("u1") == ["Ginseng"]


def test_inquiries(fake_db):
    repo = InquiryRepo(fake_db)
    assert repo.last_symptoms("u1") == "No previous symptoms found."
    repo.insert("u1", "", {"diagnosis": "A"})
    assert repo.last_symptoms("u1") == "Not provided"
    assert fake_db.rows(TBL_INQUIRIES)[0]["diagnosis_report"] == {"diagnosis": "A"}


def test_medical_reports(fake_db):
    repo = MedicalReportRepo(fake_db)
    saved = repo.save(MedicalReportModel(user_id="u1", name="Blood panel", file_url="https://x/b.pdf"))
    assert saved["date"]
    assert [r["name"] for r in repo.list("u1")] == ["Blood panel"]
    assert repo.delete(saved["id"], "u2") is False
    assert repo.delete(saved["id"], "u1") is True


def test_system_prompt_lookup(fake_db):
    fake_db.seed("system_prompts", [{"role": "doctor_final", "prompt_text": "  Be thorough.  "}, {"role": "doctor_chat", "prompt_text": " "}])
    repo = SystemPromptRepo(fake_db)
    assert repo.get("doctor_final") == "Be thorough."
    assert repo.get("doctor_chat") is None
    assert repo.get("missing") is None


def test_profiles_and_flag_column_fallback(fake_db):
    fake_db.seed(TBL_PROFILES, [{"id": "d1", "role": "doctor", "full_name": "Dr Tan"}, {"id": "p1", "role": "patient", "full_name": "Mei"}])
    fake_db.seed(TBL_PATIENTS, [{"id": "x1", "first_name": "Ah", "last_name": "Kow"}])
    fake_db.missing_columns[TBL_PATIENTS] = {"flag"}
    repo = ProfileRepo(fake_db)

    assert repo.get_role("d1") == "doctor"
    assert repo.get_role("ghost") is None
    assert [p["id"] for p in repo.list_by_role("patient")] == ["p1"]
    assert repo.patients_by_ids(["x1"])["x1"]["last_name"] == "Kow"
    assert repo.profiles_by_ids([]) == {}

    assert repo.update("p1", {"full_name": "Mei Ling"})["full_name"] == "Mei Ling"
    with pytest.raises(NotFoundError):
        repo.update("ghost", {"full_name": "x"})


def test_profile_delete_removes_inquiries_first(fake_db):
    fake_db.seed(TBL_PROFILES, [{"id": "p1", "role": "patient"}])
    fake_db.seed(TBL_INQUIRIES, [{"user_id": "p1", "symptoms": "x"}, {"user_id": "p2", "symptoms": "y"}])
    ProfileRepo(fake_db).delete("p1")
    assert fake_db.rows(TBL_PROFILES) == []
    assert [r["user_id"] for r in fake_db.rows(TBL_INQUIRIES)] == ["p2"]
    deletes = [c[1] for c in fake_db.calls if c[0] == "delete"]
    assert deletes == [TBL_INQUIRIES, TBL_PROFILES]


def test_system_errors_window(fake_db):
    repo = SystemErrorRepo(fake_db)
    repo.log(SystemErrorInput(error_type="ApiError", message="boom", severity="critical"))
    fake_db.seed(
        TBL_SYSTEM_ERRORS,
        [{"id": "old", "error_type": "Old", "message": "x", "timestamp": (utcnow() - timedelta(hours=30)).isoformat()}],
    )
    recent = repo.since(24)
    assert [r["error_type"] for r in recent] == ["ApiError"]
    assert len(repo.recent(10)) == 2


def test_database_errors_propagate(fake_db):
    fake_db.failing.add(TBL_SESSIONS)
    with pytest.raises(SupabaseError):
        DiagnosisSessionRepo(fake_db).history("u1")
    assert fake_db.rows(TBL_GUEST_SESSIONS) == []
