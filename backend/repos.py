# repos.py
from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from db import SupabaseClient, SupabaseError
from models import (
    TBL_GUEST_SESSIONS,
    TBL_INQUIRIES,
    TBL_MEDICAL_REPORTS,
    TBL_PATIENTS,
    TBL_PROFILES,
    TBL_SESSIONS,
    TBL_SYSTEM_ERRORS,
    TBL_SYSTEM_PROMPTS,
    HealthTrends,
    MedicalReportModel,
    SaveDiagnosisInput,
    SystemErrorInput,
    utcnow,
)
from report_utils import (
    extract_medicines_from_report,
    extract_symptoms_from_report,
    extract_treatment_plan_from_report,
    extract_vital_signs_from_report,
)

# Postgres "undefined column"; older schemas lack the flag column.
_UNDEFINED_COLUMN = "42703"


class NotFoundError(LookupError):
    pass


def _session_row_to_doc(row: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(row)
    doc["symptoms"] = list(row.get("symptoms") or [])
    doc["medicines"] = list(row.get("medicines") or [])
    doc["is_hidden"] = bool(row.get("is_hidden", False))
    return doc


def _with_derived_fields(data: SaveDiagnosisInput) -> Dict[str, Any]:
    row = data.model_dump(exclude_none=True)
    report = data.full_report
    row["symptoms"] = data.symptoms or extract_symptoms_from_report(report)
    row["medicines"] = data.medicines or extract_medicines_from_report(report)
    vital_signs = data.vital_signs or extract_vital_signs_from_report(report)
    if vital_signs:
        row["vital_signs"] = vital_signs
    treatment_plan = data.treatment_plan or extract_treatment_plan_from_report(report)
    if treatment_plan:
        row["treatment_plan"] = treatment_plan
    return row


@dataclass
class DiagnosisSessionRepo:
    db: SupabaseClient

    def save(self, user_id: Optional[str], data: SaveDiagnosisInput) -> Dict[str, Any]:
        """
        Authenticated users land in diagnosis_sessions; guests get a row in
        guest_diagnosis_sessions keyed by a fresh session token.
        """
        row = _with_derived_fields(data)
        now = utcnow().isoformat()
        row["created_at"] = now
        row["updated_at"] = now

        if data.is_guest_session or not user_id:
            token = str(uuid.uuid4())
            row.pop("is_guest_session", None)
            row["session_token"] = token
            inserted = self.db.table(TBL_GUEST_SESSIONS).insert(row)
            doc = _session_row_to_doc(inserted[0] if inserted else row)
            doc["session_token"] = token
            doc["is_guest_session"] = True
            return doc

        row["user_id"] = user_id
        row.pop("guest_email", None)
        row.pop("guest_name", None)
        inserted = self.db.table(TBL_SESSIONS).insert(row)
        return _session_row_to_doc(inserted[0] if inserted else row)

    def history(self, user_id: str, *, limit: int = 50, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        rows, total = self.db.table(TBL_SESSIONS).select_with_count(
            filters={"user_id": user_id},
            order=("created_at", "desc"),
            limit=limit,
            offset=offset,
        )
        return [_session_row_to_doc(r) for r in rows], total

    def get(self, session_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"id": session_id}
        if user_id:
            filters["user_id"] = user_id
        try:
            row = self.db.table(TBL_SESSIONS).select_one(filters=filters)
        except SupabaseError as exc:
            if exc.is_not_found:
                raise NotFoundError("Session not found") from exc
            raise
        return _session_row_to_doc(row)

    def get_guest(self, session_token: str) -> Dict[str, Any]:
        rows = self.db.table(TBL_GUEST_SESSIONS).select(filters={"session_token": session_token}, limit=1)
        if not rows:
            raise NotFoundError("Session not found")
        doc = _session_row_to_doc(rows[0])
        doc["is_guest_session"] = True
        return doc

    def update(self, session_id: str, user_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(values)
        values["updated_at"] = utcnow().isoformat()
        rows = self.db.table(TBL_SESSIONS).update(
            values,
            filters={"id": session_id, "user_id": user_id},
            returning=True,
        )
        if not rows:
            raise NotFoundError("Session not found")
        return _session_row_to_doc(rows[0])

    def update_notes(self, session_id: str, user_id: str, notes: str) -> Dict[str, Any]:
        return self.update(session_id, user_id, {"notes": notes})

    def set_hidden(self, session_id: str, user_id: str, hidden: bool) -> Dict[str, Any]:
        return self.update(session_id, user_id, {"is_hidden": bool(hidden)})

    def set_flag(self, session_id: str, flag: Optional[str]) -> None:
        self.db.table(TBL_SESSIONS).update(
            {"flag": flag, "updated_at": utcnow().isoformat()},
            filters={"id": session_id},
        )

    def delete(self, session_id: str, user_id: str) -> bool:
        rows = self.db.table(TBL_SESSIONS).delete(
            filters={"id": session_id, "user_id": user_id},
            returning=True,
        )
        return bool(rows)

    def trends(self, user_id: str, days: int = 30) -> HealthTrends:
        since = (utcnow() - timedelta(days=int(days))).isoformat()
        rows = self.db.table(TBL_SESSIONS).select(
            filters={"user_id": user_id, "created_at": ("gte", since)},
            columns="id,created_at,overall_score,primary_diagnosis",
            order=("created_at", "asc"),
        )
        if not rows:
            return HealthTrends()

        scores = [int(r["overall_score"]) for r in rows if r.get("overall_score") is not None]
        average = round(sum(scores) / len(scores)) if scores else None
        improvement = scores[-1] - scores[0] if len(scores) >= 2 else None
        diagnosis_counts = Counter(str(r.get("primary_diagnosis") or "Unknown") for r in rows)
        return HealthTrends(
            session_count=len(rows),
            average_score=average,
            improvement=improvement,
            diagnosis_counts=dict(diagnosis_counts),
            sessions=[
                {
                    "date": r.get("created_at"),
                    "score": r.get("overall_score"),
                    "diagnosis": r.get("primary_diagnosis"),
                }
                for r in rows
            ],
        )

    def last_medicines(self, user_id: str) -> List[str]:
        rows = self.db.table(TBL_SESSIONS).select(
            filters={"user_id": user_id},
            columns="full_report,medicines",
            order=("created_at", "desc"),
            limit=1,
        )
        if not rows:
            return []
        report = rows[0].get("full_report") or {}
        input_data = report.get("input_data") if isinstance(report, dict) else None
        meds = input_data.get("medicines") if isinstance(input_data, dict) else None
        if isinstance(meds, list) and meds:
            return [str(m) for m in meds if m]
        return list(rows[0].get("medicines") or [])

    def recent(self, *, limit: int = 50) -> List[Dict[str, Any]]:
        return self.db.table(TBL_SESSIONS).select(
            columns="id,created_at,primary_diagnosis,full_report,symptoms,user_id,patient_id,flag",
            order=("created_at", "desc"),
            limit=limit,
        )


@dataclass
class InquiryRepo:
    db: SupabaseClient

    def insert(self, user_id: str, symptoms: str, report: Dict[str, Any]) -> None:
        self.db.table(TBL_INQUIRIES).insert(
            {
                "user_id": user_id,
                "symptoms": symptoms or "Not provided",
                "diagnosis_report": report,
                "created_at": utcnow().isoformat(),
            },
            returning=False,
        )

    def last_symptoms(self, user_id: str) -> str:
        rows = self.db.table(TBL_INQUIRIES).select(
            filters={"user_id": user_id},
            columns="symptoms,created_at",
            order=("created_at", "desc"),
            limit=1,
        )
        if not rows or not rows[0].get("symptoms"):
            return "No previous symptoms found."
        return str(rows[0]["symptoms"])

    def delete_for_user(self, user_id: str) -> None:
        self.db.table(TBL_INQUIRIES).delete(filters={"user_id": user_id})


@dataclass
class MedicalReportRepo:
    db: SupabaseClient

    def list(self, user_id: str) -> List[Dict[str, Any]]:
        return self.db.table(TBL_MEDICAL_REPORTS).select(
            filters={"user_id": user_id},
            order=("created_at", "desc"),
        )

    def save(self, report: MedicalReportModel) -> Dict[str, Any]:
        row = report.model_dump(exclude_none=True)
        row.pop("id", None)
        row.setdefault("date", utcnow().date().isoformat())
        inserted = self.db.table(TBL_MEDICAL_REPORTS).insert(row)
        return inserted[0] if inserted else row

    def delete(self, report_id: str, user_id: str) -> bool:
        rows = self.db.table(TBL_MEDICAL_REPORTS).delete(
            filters={"id": report_id, "user_id": user_id},
            returning=True,
        )
        return bool(rows)


@dataclass
class SystemPromptRepo:
    db: SupabaseClient

    def get(self, role: str) -> Optional[str]:
        rows = self.db.table(TBL_SYSTEM_PROMPTS).select(
            filters={"role": role},
            columns="prompt_text",
            limit=1,
        )
        if not rows:
            return None
        text = str(rows[0].get("prompt_text") or "").strip()
        return text or None


@dataclass
class ProfileRepo:
    db: SupabaseClient

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self.db.table(TBL_PROFILES).select(filters={"id": user_id}, limit=1)
        return rows[0] if rows else None

    def get_role(self, user_id: str) -> Optional[str]:
        profile = self.get(user_id)
        if not profile:
            return None
        return str(profile.get("role") or "") or None

    def list_by_role(self, role: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        return self.db.table(TBL_PROFILES).select(
            filters={"role": role},
            order=("updated_at", "desc"),
            limit=limit,
        )

    def update(self, user_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(values)
        values["updated_at"] = utcnow().isoformat()
        rows = self.db.table(TBL_PROFILES).update(values, filters={"id": user_id}, returning=True)
        if not rows:
            raise NotFoundError("User not found")
        return rows[0]

    def delete(self, user_id: str) -> None:
        # Inquiries reference the profile, remove them first.
        InquiryRepo(self.db).delete_for_user(user_id)
        self.db.table(TBL_PROFILES).delete(filters={"id": user_id})

    def _by_ids(self, table: str, ids: List[str], columns: str, fallback_columns: str) -> Dict[str, Dict[str, Any]]:
        if not ids:
            return {}
        try:
            rows = self.db.table(table).select(filters={"id": ("in", ids)}, columns=columns)
        except SupabaseError as exc:
            if exc.code != _UNDEFINED_COLUMN:
                raise
            rows = self.db.table(table).select(filters={"id": ("in", ids)}, columns=fallback_columns)
        return {str(r.get("id")): r for r in rows}

    def profiles_by_ids(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        return self._by_ids(TBL_PROFILES, ids, "id,full_name,age,gender,flag", "id,full_name,age,gender")

    def patients_by_ids(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        return self._by_ids(
            TBL_PATIENTS,
            ids,
            "id,first_name,last_name,birth_date,gender,flag",
            "id,first_name,last_name,birth_date,gender",
        )


@dataclass
class SystemErrorRepo:
    db: SupabaseClient

    def log(self, err: SystemErrorInput) -> Dict[str, Any]:
        row = err.model_dump(exclude_none=True)
        row["timestamp"] = utcnow().isoformat()
        inserted = self.db.table(TBL_SYSTEM_ERRORS).insert(row)
        return inserted[0] if inserted else row

    def since(self, hours: int = 24) -> List[Dict[str, Any]]:
        since = (utcnow() - timedelta(hours=hours)).isoformat()
        return self.db.table(TBL_SYSTEM_ERRORS).select(
            filters={"timestamp": ("gte", since)},
            columns="id,error_type,message,component,severity,resolved,timestamp",
            order=("timestamp", "asc"),
        )

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.db.table(TBL_SYSTEM_ERRORS).select(order=("timestamp", "desc"), limit=limit)

