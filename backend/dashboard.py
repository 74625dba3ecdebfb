from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from models import PATIENT_FLAGS, parse_dt

RECENT_DAYS = 7
NO_SYMPTOMS = "No symptoms recorded"


@dataclass(frozen=True)
class DashboardFilters:
    search: str = ""
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    symptom: str = ""
    flag: str = "All"

    @classmethod
    def from_args(cls, args: Any) -> "DashboardFilters":
        flag = (args.get("flag") or "All").strip()
        if flag != "All" and flag not in PATIENT_FLAGS:
            raise ValueError(f"flag must be one of: All, {', '.join(PATIENT_FLAGS)}")
        return cls(
            search=(args.get("search") or "").strip(),
            date_from=(args.get("date_from") or "").strip() or None,
            date_to=(args.get("date_to") or "").strip() or None,
            symptom=(args.get("symptom") or "").strip(),
            flag=flag,
        )

    @property
    def active(self) -> bool:
        return bool(self.search or self.date_from or self.date_to or self.symptom or self.flag != "All")


def _day(value: str) -> date:
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {value}") from None


def _symptom_text(session: Dict[str, Any]) -> str:
    symptoms = session.get("symptoms")
    if isinstance(symptoms, list) and symptoms:
        return ", ".join(str(s) for s in symptoms)
    if isinstance(symptoms, str) and symptoms:
        return symptoms
    report = session.get("full_report") if isinstance(session.get("full_report"), dict) else {}
    analysis = report.get("analysis") if isinstance(report.get("analysis"), dict) else {}
    findings = analysis.get("key_findings") if isinstance(analysis.get("key_findings"), dict) else {}
    return str(findings.get("from_inquiry") or NO_SYMPTOMS)


def join_inquiries(
    sessions: List[Dict[str, Any]],
    profiles: Dict[str, Dict[str, Any]],
    patients: Dict[str, Dict[str, Any]],
) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for s in sessions:
        user_id = s.get("user_id")
        patient_id = s.get("patient_id")
        out.append(
            {
                "id": s.get("id"),
                "created_at": s.get("created_at"),
                "symptoms": _symptom_text(s),
                "diagnosis_report": s.get("full_report") or {},
                "primary_diagnosis": s.get("primary_diagnosis"),
                "profile": profiles.get(str(user_id)) if user_id else None,
                "patient": patients.get(str(patient_id)) if patient_id else None,
            }
        )
    return out


def patient_name(inquiry: Dict[str, Any]) -> str:
    report = inquiry.get("diagnosis_report") or {}
    report_profile = report.get("patient_profile") if isinstance(report, dict) else None
    profile = inquiry.get("profile") or {}
    patient = inquiry.get("patient") or {}
    name = (report_profile or {}).get("name") or profile.get("full_name")
    if not name and patient:
        name = " ".join(p for p in (patient.get("first_name"), patient.get("last_name")) if p)
    return str(name or "")


def patient_flag(inquiry: Dict[str, Any]) -> Optional[str]:
    return (inquiry.get("profile") or {}).get("flag") or (inquiry.get("patient") or {}).get("flag")


def filter_inquiries(inquiries: List[Dict[str, Any]], filters: DashboardFilters) -> List[Dict[str, Any]]:
    start = datetime.combine(_day(filters.date_from), time.min, tzinfo=timezone.utc) if filters.date_from else None
    end = datetime.combine(_day(filters.date_to), time.max, tzinfo=timezone.utc) if filters.date_to else None
    needle = filters.search.lower()
    symptom = filters.symptom.lower()

    out: List[Dict[str, Any]] = []
    for inquiry in inquiries:
        symptoms = str(inquiry.get("symptoms") or "").lower()
        if filters.flag != "All" and patient_flag(inquiry) != filters.flag:
            continue
        if needle:
            haystacks = (
                patient_name(inquiry).lower(),
                symptoms,
                json.dumps(inquiry.get("diagnosis_report") or {}, ensure_ascii=False).lower(),
            )
            if not any(needle in h for h in haystacks):
                continue
        created = parse_dt(inquiry.get("created_at"))
        if start and (created is None or created < start):
            continue
        if end and (created is None or created > end):
            continue
        if symptom and symptom not in symptoms:
            continue
        out.append(inquiry)
    return out


def dashboard_stats(inquiries: List[Dict[str, Any]], *, now: Optional[datetime] = None) -> Dict[str, int]:
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=RECENT_DAYS)
    recent = 0
    for inquiry in inquiries:
        created = parse_dt(inquiry.get("created_at"))
        if created is not None and created >= cutoff:
            recent += 1
    names = {patient_name(i) for i in inquiries} - {""}
    return {"total": len(inquiries), "recent": recent, "unique_patients": len(names)}
