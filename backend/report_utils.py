from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from models import SaveDiagnosisInput

logger = logging.getLogger(__name__)

MAX_REPAIR_PASSES = 20
DEFAULT_SCORE = 70

# A string sitting right after the "summary" value (or a closing brace) with no key.
_SUMMARY_ORPHAN = re.compile(r'("summary"\s*:\s*"(?:[^"\\]|\\.)*")\s*,\s*"(?:[^"\\]|\\.)*"(?!\s*:)')
_OBJECT_ORPHAN = re.compile(r'(\})\s*,\s*"(?:[^"\\]|\\.)*"(?!\s*:)')
_CODE_FENCE = re.compile(r"```(?:json)?\n?|\n?```")

_DIAGNOSIS_KEYWORDS = (
    (("yin deficiency", "阴虚"), ["Night sweats", "Insomnia", "Dry mouth", "Hot palms and soles"], ["Liu Wei Di Huang Wan", "Zhi Bai Di Huang Wan"]),
    (("yang deficiency", "阳虚"), ["Cold extremities", "Lower back pain", "Fatigue", "Frequent urination"], ["Jin Gui Shen Qi Wan", "You Gui Wan"]),
    (("qi deficiency", "气虚"), ["Fatigue", "Shortness of breath", "Weak voice", "Spontaneous sweating"], ["Si Jun Zi Tang", "Bu Zhong Yi Qi Tang"]),
    (("qi stagnation", "气滞"), ["Chest tightness", "Irritability", "Bloating", "Sighing"], ["Xiao Yao San", "Chai Hu Shu Gan San"]),
    (("blood deficiency", "血虚"), ["Dizziness", "Palpitations", "Poor memory", "Pale complexion"], ["Si Wu Tang", "Gui Pi Tang"]),
    (("damp heat", "湿热"), ["Heavy feeling", "Sticky mouth", "Yellow discharge", "Urinary discomfort"], ["Ba Zheng San", "Long Dan Xie Gan Tang"]),
    (("wind-cold", "风寒"), ["Chills", "Runny nose", "Body aches", "Headache"], ["Gui Zhi Tang", "Ma Huang Tang"]),
    (("phlegm", "痰"), ["Chest oppression", "Cough with phlegm", "Heaviness", "Foggy thinking"], ["Er Chen Tang", "Wen Dan Tang"]),
)
_DEFAULT_SYMPTOMS = ["Fatigue", "General discomfort", "Sleep issues"]
_DEFAULT_MEDICINES = ["General TCM Formula"]


def repair_json(text: str) -> str:
    """
    Drop orphan strings the model sometimes leaves inside objects, e.g.
    `"summary": "a", "stray paragraph"` or `}, "stray paragraph"`.
    """
    current = text
    for _ in range(MAX_REPAIR_PASSES):
        repaired = _SUMMARY_ORPHAN.sub(r"\1", current, count=1)
        repaired = _OBJECT_ORPHAN.sub(r"\1", repaired, count=1)
        if repaired == current:
            break
        current = repaired
    return current


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text or "").strip()


def parse_model_json(text: str) -> Dict[str, Any]:
    """Parse a JSON object out of model output, repairing orphans on failure."""
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        data = json.loads(repair_json(cleaned))
    if not isinstance(data, dict):
        raise ValueError("Model output was not a JSON object")
    return data


def _text_of(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def calculate_overall_score(report: Dict[str, Any]) -> int:
    try:
        score = DEFAULT_SCORE
        diagnosis_text = _text_of(report.get("diagnosis")).lower()
        if "severe" in diagnosis_text or "deficiency" in diagnosis_text:
            score -= 15
        elif "mild" in diagnosis_text or "minor" in diagnosis_text:
            score += 10

        diagnosis = report.get("diagnosis")
        organs = diagnosis.get("affected_organs") if isinstance(diagnosis, dict) else None
        if isinstance(organs, list):
            score -= min(len(organs) * 5, 20)

        constitution_text = _text_of(report.get("constitution")).lower()
        if "balanced" in constitution_text or "harmonious" in constitution_text:
            score += 15
        elif "deficient" in constitution_text or "stagnant" in constitution_text:
            score -= 10

        return max(0, min(100, score))
    except Exception:
        logger.exception("[score] failed to score report")
        return DEFAULT_SCORE


def extract_primary_diagnosis(report: Dict[str, Any]) -> str:
    diagnosis = report.get("diagnosis")
    if isinstance(diagnosis, str) and diagnosis:
        return diagnosis
    if isinstance(diagnosis, dict):
        for key in ("primary_pattern", "pattern"):
            if diagnosis.get(key):
                return str(diagnosis[key])
    return "Diagnosis pending"


def extract_constitution(report: Dict[str, Any]) -> Optional[str]:
    constitution = report.get("constitution")
    if isinstance(constitution, str) and constitution:
        return constitution
    if isinstance(constitution, dict) and constitution.get("type"):
        return str(constitution["type"])
    return None


def _diagnosis_defaults(diagnosis: str) -> tuple[List[str], List[str]]:
    lowered = (diagnosis or "").lower()
    for keywords, symptoms, medicines in _DIAGNOSIS_KEYWORDS:
        if any(k in lowered for k in keywords):
            return list(symptoms), list(medicines)
    return list(_DEFAULT_SYMPTOMS), list(_DEFAULT_MEDICINES)


def symptoms_for_diagnosis(diagnosis: str) -> List[str]:
    return _diagnosis_defaults(diagnosis)[0]


def medicines_for_diagnosis(diagnosis: str) -> List[str]:
    return _diagnosis_defaults(diagnosis)[1]


def extract_symptoms_from_report(report: Dict[str, Any]) -> List[str]:
    summary = report.get("patient_summary")
    if isinstance(summary, dict):
        listed = summary.get("symptoms")
        if isinstance(listed, list) and listed:
            return [str(s) for s in listed if s]
    return symptoms_for_diagnosis(extract_primary_diagnosis(report))


def extract_medicines_from_report(report: Dict[str, Any]) -> List[str]:
    input_data = report.get("input_data")
    if isinstance(input_data, dict):
        meds = input_data.get("medicines")
        if isinstance(meds, list) and meds:
            return [str(m) for m in meds if m]
    recs = report.get("recommendations")
    formulas = recs.get("herbal_formulas") if isinstance(recs, dict) else None
    if isinstance(formulas, list):
        names = [str(f.get("name")) for f in formulas if isinstance(f, dict) and f.get("name")]
        if names:
            return names
    return medicines_for_diagnosis(extract_primary_diagnosis(report))


def extract_vital_signs_from_report(report: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    summary = report.get("patient_summary")
    if isinstance(summary, dict) and isinstance(summary.get("vital_signs"), dict):
        return dict(summary["vital_signs"])
    return None


def extract_treatment_plan_from_report(report: Dict[str, Any]) -> Optional[str]:
    recs = report.get("recommendations")
    if not isinstance(recs, dict):
        return None
    parts: List[str] = []
    food = recs.get("food")
    if not food and isinstance(recs.get("food_therapy"), dict):
        food = recs["food_therapy"].get("beneficial")
    if isinstance(food, list) and food:
        parts.append(f"Diet: {', '.join(str(f) for f in food[:3])}")
    lifestyle = recs.get("lifestyle")
    if isinstance(lifestyle, list) and lifestyle:
        parts.append(f"Lifestyle: {', '.join(str(item) for item in lifestyle[:2])}")
    formulas = recs.get("herbal_formulas")
    if isinstance(formulas, list):
        names = [str(f.get("name")) for f in formulas if isinstance(f, dict) and f.get("name")]
        if names:
            parts.append(f"Herbs: {', '.join(names)}")
    return " | ".join(parts) or None


def with_patient_profile(
    report: Dict[str, Any],
    basic_info: Optional[Dict[str, Any]],
    medicines: Optional[List[str]] = None,
) -> Dict[str, Any]:
    info = basic_info or {}
    enriched = dict(report)
    enriched["patient_profile"] = {
        "name": info.get("name") or "Anonymous",
        "age": info.get("age"),
        "gender": info.get("gender"),
        "height": info.get("height"),
        "weight": info.get("weight"),
    }
    enriched["input_data"] = {"medicines": list(medicines or [])}
    return enriched


def _file_meta(files: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for f in files or []:
        if not isinstance(f, dict):
            continue
        url = f.get("url") or f.get("publicUrl") or ""
        if not url:
            continue
        out.append(
            {
                "name": f.get("name") or "Unknown",
                "url": url,
                "type": f.get("type") or "application/octet-stream",
                "size": f.get("size"),
                "extracted_text": f.get("extractedText"),
            }
        )
    return out


def _labels(items: Any, *keys: str) -> List[str]:
    out: List[str] = []
    for item in items or []:
        if isinstance(item, str):
            out.append(item)
            continue
        if isinstance(item, dict):
            for key in keys:
                if item.get(key):
                    out.append(str(item[key]))
                    break
    return out


def _visual_analysis(step: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(step, dict):
        return None
    return {
        "image_url": step.get("image"),
        "observation": step.get("observation"),
        "analysis_tags": _labels(step.get("analysis_tags"), "title", "description"),
        "tcm_indicators": _labels(step.get("tcm_indicators"), "pattern", "description"),
        "pattern_suggestions": _labels(step.get("pattern_suggestions"), "name", "reasoning"),
        "potential_issues": step.get("potential_issues"),
    }


def wizard_symptoms(basic_info: Optional[Dict[str, Any]]) -> Optional[List[str]]:
    info = basic_info or {}
    symptoms: List[str] = []
    main = str(info.get("mainComplaint") or "").strip()
    if main:
        symptoms.append(main)
    other = str(info.get("otherSymptoms") or "")
    symptoms.extend(s.strip() for s in other.split(",") if s.strip())
    return symptoms or None


def wizard_medicines(wizard_data: Dict[str, Any]) -> List[str]:
    inquiry = wizard_data.get("wen_inquiry") or {}
    files = inquiry.get("medicineFiles") if isinstance(inquiry, dict) else None
    return [str(f["extractedText"]) for f in files or [] if isinstance(f, dict) and f.get("extractedText")]


def build_session_input(
    report: Dict[str, Any],
    wizard_data: Dict[str, Any],
    *,
    overall_score: Optional[int] = None,
    is_guest: bool = False,
) -> SaveDiagnosisInput:
    inquiry = wizard_data.get("wen_inquiry") if isinstance(wizard_data.get("wen_inquiry"), dict) else {}
    audio = wizard_data.get("wen_audio") if isinstance(wizard_data.get("wen_audio"), dict) else None
    qie = wizard_data.get("qie") if isinstance(wizard_data.get("qie"), dict) else None
    basic_info = wizard_data.get("basic_info") if isinstance(wizard_data.get("basic_info"), dict) else {}
    chat = inquiry.get("chat") or (wizard_data.get("wen_chat") or {}).get("chat") or []
    medicines = wizard_medicines(wizard_data)

    return SaveDiagnosisInput(
        primary_diagnosis=extract_primary_diagnosis(report),
        constitution=extract_constitution(report),
        overall_score=calculate_overall_score(report) if overall_score is None else overall_score,
        full_report=report,
        symptoms=wizard_symptoms(basic_info),
        medicines=medicines or None,
        inquiry_summary=inquiry.get("inquiryText") or inquiry.get("summary"),
        inquiry_chat_history=chat if isinstance(chat, list) else [],
        inquiry_report_files=_file_meta(inquiry.get("reportFiles")),
        inquiry_medicine_files=_file_meta(inquiry.get("medicineFiles")),
        tongue_analysis=_visual_analysis(wizard_data.get("wang_tongue")),
        face_analysis=_visual_analysis(wizard_data.get("wang_face")),
        body_analysis=_visual_analysis(wizard_data.get("wang_part")),
        audio_analysis=(
            {
                "audio_url": audio.get("audio"),
                "observation": audio.get("observation"),
                "analysis": audio.get("analysis"),
            }
            if audio
            else None
        ),
        pulse_data={"bpm": qie.get("bpm"), "quality": qie.get("quality")} if qie else None,
        is_guest_session=is_guest,
        guest_email=basic_info.get("email") if is_guest else None,
        guest_name=basic_info.get("name") if is_guest else None,
    )


def fallback_report(error_code: str, message: str, details: Optional[str] = None) -> Dict[str, Any]:
    """Valid report shape returned when the consultation model fails."""
    report: Dict[str, Any] = {
        "diagnosis": "Analysis Error",
        "constitution": "Unable to determine",
        "analysis": message,
        "error_code": error_code,
        "recommendations": {
            "food": ["Please retry the analysis"],
            "avoid": ["N/A"],
            "lifestyle": ["Please try again with the diagnosis"],
        },
    }
    if details:
        report["details"] = details
    return report
