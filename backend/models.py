# models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Language = Literal["en", "zh", "ms"]
Role = Literal["patient", "doctor", "admin"]
PatientFlag = Literal["Critical", "High Priority", "Watch", "Normal"]
Severity = Literal["low", "medium", "high", "critical"]
DoctorLevel = Literal["master", "expert", "physician"]

SUPPORTED_LANGUAGES = ("en", "zh", "ms")
PATIENT_FLAGS = ("Critical", "High Priority", "Watch", "Normal")
SEVERITIES = ("low", "medium", "high", "critical")


class _Loose(BaseModel):
    """AI-produced payloads: keep unknown keys, never fail on extras."""

    model_config = ConfigDict(extra="allow")


class VitalSigns(_Loose):
    bmi: Optional[float] = None
    blood_pressure: Optional[str] = None
    heart_rate: Optional[int] = None
    temperature: Optional[float] = None
    respiratory_rate: Optional[int] = None
    oxygen_saturation: Optional[int] = None


class PatientProfile(_Loose):
    name: str = "Anonymous"
    age: Optional[Any] = None
    gender: Optional[str] = None
    height: Optional[Any] = None
    weight: Optional[Any] = None


class HerbalFormula(_Loose):
    name: str = ""
    ingredients: List[str] = Field(default_factory=list)
    dosage: Optional[str] = None
    purpose: Optional[str] = None


class Recommendations(_Loose):
    food: List[str] = Field(default_factory=list)
    avoid: List[str] = Field(default_factory=list)
    lifestyle: List[str] = Field(default_factory=list)
    acupoints: List[Any] = Field(default_factory=list)
    exercise: List[Any] = Field(default_factory=list)
    herbal_formulas: List[HerbalFormula] = Field(default_factory=list)


class DiagnosisReport(_Loose):
    """
    Final report returned by the consultation model. Only the keys the backend
    reads are declared; the rest is carried through untouched.
    """

    diagnosis: Any = None
    constitution: Any = None
    analysis: Any = None
    recommendations: Optional[Recommendations] = None
    precautions: Any = None
    follow_up: Any = None
    patient_summary: Optional[Dict[str, Any]] = None
    patient_profile: Optional[PatientProfile] = None
    input_data: Optional[Dict[str, Any]] = None
    disclaimer: Optional[str] = None


class SaveDiagnosisInput(BaseModel):
    primary_diagnosis: str
    constitution: Optional[str] = None
    overall_score: Optional[int] = None
    full_report: Dict[str, Any]
    notes: Optional[str] = None
    symptoms: Optional[List[str]] = None
    medicines: Optional[List[str]] = None
    vital_signs: Optional[Dict[str, Any]] = None
    clinical_notes: Optional[str] = None
    treatment_plan: Optional[str] = None
    follow_up_date: Optional[str] = None
    inquiry_summary: Optional[str] = None
    inquiry_chat_history: Optional[List[Dict[str, Any]]] = None
    inquiry_report_files: Optional[List[Dict[str, Any]]] = None
    inquiry_medicine_files: Optional[List[Dict[str, Any]]] = None
    tongue_analysis: Optional[Dict[str, Any]] = None
    face_analysis: Optional[Dict[str, Any]] = None
    body_analysis: Optional[Dict[str, Any]] = None
    audio_analysis: Optional[Dict[str, Any]] = None
    pulse_data: Optional[Dict[str, Any]] = None
    is_guest_session: bool = False
    guest_email: Optional[str] = None
    guest_name: Optional[str] = None


class DiagnosisSessionModel(SaveDiagnosisInput):
    id: str
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    is_hidden: bool = False
    flag: Optional[PatientFlag] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class MedicalReportModel(BaseModel):
    id: Optional[str] = None
    user_id: str
    name: str
    date: Optional[str] = None
    type: str = "Other"
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    extracted_text: Optional[str] = None
    created_at: Optional[str] = None


class HealthTrends(BaseModel):
    session_count: int = 0
    average_score: Optional[int] = None
    improvement: Optional[int] = None
    diagnosis_counts: Dict[str, int] = Field(default_factory=dict)
    sessions: List[Dict[str, Any]] = Field(default_factory=list)


class SystemErrorInput(BaseModel):
    error_type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    stack_trace: Optional[str] = None
    component: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    url: Optional[str] = None
    user_agent: Optional[str] = None
    severity: Severity = "medium"
    metadata: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------
# Tables (single source of truth)
# -----------------------------
TBL_SESSIONS = "diagnosis_sessions"
TBL_GUEST_SESSIONS = "guest_diagnosis_sessions"
TBL_INQUIRIES = "inquiries"
TBL_MEDICAL_REPORTS = "medical_reports"
TBL_SYSTEM_PROMPTS = "system_prompts"
TBL_PROFILES = "profiles"
TBL_PATIENTS = "patients"
TBL_SYSTEM_ERRORS = "system_errors"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    # Supabase/Postgres (and JS) emit a "Z" suffix.
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
