from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from prompts import FINAL_ANALYSIS_PROMPT, calculate_bmi, final_instruction, normalize_language

# Below this length the inquiry text is treated as notes and the chat transcript is sent too.
MIN_INQUIRY_SUMMARY_CHARS = 50

_CLOSING = {
    "en": "Please provide a comprehensive diagnosis based on the above data.\nALL RESPONSE TEXT MUST BE IN ENGLISH",
    "zh": "请根据以上资料进行综合诊断\n所有回复内容必须使用中文",
    "ms": "Sila berikan diagnosis komprehensif berdasarkan data di atas\nSEMUA TEKS RESPONS MESTI DALAM BAHASA MALAYSIA",
}

_DEFAULT_REQUIREMENTS = [
    "Patient information summary",
    "Primary diagnosis and constitution assessment",
    "Detailed analysis with key findings",
    "Dietary recommendations (foods to eat and avoid)",
    "Lifestyle suggestions",
    "Herbal medicine formulas",
    "Acupuncture points for self-care",
    "Precautions and follow-up guidance",
]

# (option, included text, omitted text). An empty omitted text means the line is dropped.
_REPORT_OPTIONS: Sequence[Tuple[str, Sequence[Tuple[str, str, str]]]] = (
    (
        "Patient Information",
        (
            ("includePatientName", "Include patient name", "OMIT patient name"),
            ("includePatientAge", "Include patient age", "OMIT patient age"),
            ("includePatientGender", "Include patient gender", "OMIT patient gender"),
            ("includePatientContact", "Include contact information", ""),
            ("includePatientAddress", "Include patient address", ""),
            ("includeEmergencyContact", "Include emergency contact", ""),
        ),
    ),
    (
        "Vital Signs & Measurements",
        (
            ("includeVitalSigns", "Include vital signs (BP, HR, Temperature)", "OMIT vital signs"),
            ("includeBMI", "Include BMI & body measurements", "OMIT BMI"),
            ("includeSmartConnectData", "Include smart device health data", "OMIT smart device data"),
        ),
    ),
    (
        "Medical History",
        (
            ("includeMedicalHistory", "Include past medical history", ""),
            ("includeAllergies", "Include known allergies", ""),
            ("includeCurrentMedications", "Include current medications", ""),
            ("includePastDiagnoses", "Include past TCM diagnoses", ""),
            ("includeFamilyHistory", "Include family medical history", ""),
        ),
    ),
    (
        "TCM Recommendations (required)",
        (
            ("suggestMedicine", "MUST suggest herbal medicine formulas with detailed prescriptions", "DO NOT suggest specific herbal medicines"),
            ("suggestDoctor", "MUST recommend consulting a nearby TCM doctor", "DO NOT suggest consulting doctors"),
            ("includeDietary", "MUST include comprehensive dietary advice with specific foods and recipes", "OMIT dietary advice"),
            ("includeLifestyle", "MUST include lifestyle recommendations", "OMIT lifestyle advice"),
            ("includeAcupuncture", "MUST include acupuncture points with locations and self-massage techniques", "OMIT acupuncture points"),
            ("includeExercise", "MUST include exercise recommendations", "OMIT exercise advice"),
            ("includeSleepAdvice", "MUST include sleep and rest guidance", "OMIT sleep advice"),
            ("includeEmotionalWellness", "MUST include emotional wellness guidance", "OMIT emotional wellness"),
        ),
    ),
    (
        "Report Format & Extras",
        (
            ("includePrecautions", "MUST include precautions and warning signs", "OMIT precautions"),
            ("includeFollowUp", "MUST include follow-up guidance with timeline", "OMIT follow-up guidance"),
            ("includeTimestamp", "Include report timestamp", ""),
            ("includeQRCode", "Include QR code reference", ""),
            ("includeDoctorSignature", "Include doctor signature placeholder", ""),
        ),
    ),
)

# Smart device field -> (label, unit suffix)
_SMART_FIELDS = (
    ("pulseRate", "Pulse Rate (Heart Rate)", " BPM"),
    ("bloodPressure", "Blood Pressure", " mmHg"),
    ("bloodOxygen", "Blood Oxygen (SpO2)", "%"),
    ("bodyTemp", "Body Temperature", "°C"),
    ("hrv", "Heart Rate Variability (HRV)", " ms"),
    ("stressLevel", "Stress Level", ""),
)

_AUDIO_FIELDS = (
    ("voice_quality_analysis", "Voice Quality"),
    ("breathing_patterns", "Breathing"),
    ("speech_patterns", "Speech"),
    ("cough_sounds", "Cough"),
)


def _header(title: str) -> str:
    return f"\n==== {title} ====\n"


def _dict(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _profile_section(data: Dict[str, Any]) -> List[str]:
    info = _dict(data, "basic_info")
    lines = [
        f"Name: {info.get('name') or 'Unknown'}",
        f"Age: {info.get('age') or 'Unknown'}",
        f"Gender: {info.get('gender') or 'Unknown'}",
        f"Weight: {info.get('weight') or 'Unknown'} kg",
        f"Height: {info.get('height') or 'Unknown'} cm",
    ]
    bmi = calculate_bmi(info.get("height"), info.get("weight"))
    if bmi is not None:
        lines.append(f"BMI: {bmi:.1f}")
    lines.append(f"Reported Symptoms: {info.get('symptoms') or info.get('mainComplaint') or 'None'}")
    lines.append(f"Symptom Duration: {info.get('symptomDuration') or 'Not specified'}")
    return lines


def _inquiry_section(data: Dict[str, Any]) -> List[str]:
    inquiry_text = str(_dict(data, "wen_inquiry").get("inquiryText") or "")
    if len(inquiry_text) > MIN_INQUIRY_SUMMARY_CHARS:
        return [
            f"Inquiry Summary: {inquiry_text}",
            "(Full chat history omitted as summary is provided)",
        ]

    lines: List[str] = []
    if inquiry_text:
        lines.append(f"Notes: {inquiry_text}")
    chat = _dict(data, "wen_chat").get("chat")
    if isinstance(chat, list):
        transcript = "\n".join(
            f"{m.get('role')}: {m.get('content')}" for m in chat if isinstance(m, dict)
        )
        lines.append(f"\nChat History:\n{transcript}")
    else:
        lines.append("Chat History: No chat recorded")
    return lines


def _visual_lines(step: Dict[str, Any], label: str, verified: Optional[str], required: bool) -> List[str]:
    if verified:
        return [f"\n{label} Observation:\n{verified}"]
    if step.get("observation"):
        lines = [f"\n{label} Observation:\n{step['observation']}"]
        issues = step.get("potential_issues")
        if isinstance(issues, list) and issues:
            lines.append(f"{label} Indications: {', '.join(str(i) for i in issues)}")
        return lines
    return [f"{label}: No observation recorded"] if required else []


def _audio_section(data: Dict[str, Any]) -> List[str]:
    audio = _dict(data, "wen_audio")
    if not audio.get("audio"):
        return ["Voice Recording: Not provided"]

    lines = ["Voice Recording: ✓ Provided"]
    analysis = audio.get("analysis")
    if isinstance(analysis, dict):
        lines.append("\n--- AUDIO ANALYSIS RESULTS ---")
        lines.append(f"Overall Observation: {analysis.get('overall_observation') or 'N/A'}")
        for key, label in _AUDIO_FIELDS:
            finding = analysis.get(key)
            if isinstance(finding, dict):
                lines.append(f"{label}: {finding.get('observation')} (Severity: {finding.get('severity')})")
        patterns = analysis.get("pattern_suggestions")
        if isinstance(patterns, list) and patterns:
            lines.append(f"Audio-suggested Patterns: {', '.join(str(p) for p in patterns)}")
    elif audio.get("observation"):
        lines.append(f"Voice Analysis: {audio['observation']}")

    if audio.get("transcription"):
        lines.append(f"Voice Transcription: {audio['transcription']}")
    return lines


def _smart_section(smart: Dict[str, Any]) -> List[str]:
    return [f"{label}: {smart[key]}{unit}" for key, label, unit in _SMART_FIELDS if smart.get(key)]


def _availability(data: Dict[str, Any]) -> List[str]:
    checks = (
        (bool(_dict(data, "wang_tongue").get("image")), "Tongue image provided", "No tongue image"),
        (bool(_dict(data, "wang_face").get("image")), "Face image provided", "No face image"),
        (bool(_dict(data, "wang_part").get("image")), "Body area image provided", "No body area image"),
        (bool(_dict(data, "wen_audio").get("audio")), "Voice recording provided", "No voice recording"),
        (bool(_dict(data, "qie").get("bpm")), "Pulse measurement taken", "No pulse measurement"),
        (bool(data.get("smart_connect")), "Smart health device data connected", "No smart device data"),
    )
    return [f"✓ {yes}" if ok else f"✗ {no}" for ok, yes, no in checks]


def report_requirements(report_options: Optional[Dict[str, Any]]) -> List[str]:
    if not report_options:
        return ["Include a comprehensive TCM diagnosis with:"] + [f"- {r}" for r in _DEFAULT_REQUIREMENTS]

    lines = ["IMPORTANT: Generate the report following EXACTLY these user-selected options."]
    for section, options in _REPORT_OPTIONS:
        lines.append(f"\n[{section}]")
        for key, included, omitted in options:
            if report_options.get(key):
                lines.append(f"✓ {included}")
            elif omitted:
                lines.append(f"✗ {omitted}")
    return lines


def build_diagnosis_info(
    data: Dict[str, Any],
    report_options: Optional[Dict[str, Any]] = None,
    verified_summaries: Optional[Dict[str, Any]] = None,
    language: Optional[str] = None,
) -> str:
    """
    Turn the wizard data into the user message for the final diagnosis.

    A verified summary (edited by the patient on the summary step) replaces the
    generated text of its section.
    """
    verified = dict(verified_summaries or data.get("verified_summaries") or {})
    if report_options is None and isinstance(data.get("report_options"), dict):
        report_options = data["report_options"]

    out: List[str] = [_header("PATIENT PROFILE")]
    out += [verified["basic_info"]] if verified.get("basic_info") else _profile_section(data)

    out.append(_header("INQUIRY DATA"))
    out += [verified["wen_inquiry"]] if verified.get("wen_inquiry") else _inquiry_section(data)

    out.append(_header("PULSE DATA"))
    if verified.get("qie"):
        out.append(verified["qie"])
    else:
        qie = _dict(data, "qie")
        out.append(f"Pulse BPM: {qie.get('bpm')}" if qie else "Pulse not measured")

    out.append(_header("VISUAL OBSERVATIONS"))
    out += _visual_lines(_dict(data, "wang_tongue"), "Tongue", verified.get("wang_tongue"), True)
    out += _visual_lines(_dict(data, "wang_face"), "Face", verified.get("wang_face"), True)
    out += _visual_lines(_dict(data, "wang_part"), "Body Part", verified.get("wang_part"), False)

    out.append(_header("LISTENING DATA"))
    out += [verified["wen_audio"]] if verified.get("wen_audio") else _audio_section(data)

    smart = data.get("smart_connect")
    if smart:
        out.append(_header("SMART HEALTH DEVICE DATA"))
        if verified.get("smart_connect"):
            out.append(verified["smart_connect"])
        elif isinstance(smart, dict):
            out += _smart_section(smart)

    out.append(_header("DIAGNOSTIC DATA SUMMARY"))
    out.append("Data Availability Status:")
    out += _availability(data)

    out.append(_header("REPORT REQUIREMENTS"))
    out += report_requirements(report_options)

    out.append(_header(_CLOSING[normalize_language(language)]))
    return "\n".join(out)


def build_final_system_prompt(language: Optional[str], custom_prompt: Optional[str] = None) -> str:
    return final_instruction(language) + "\n\n" + (custom_prompt or FINAL_ANALYSIS_PROMPT)


def build_final_prompt(
    data: Dict[str, Any],
    *,
    language: Optional[str] = None,
    report_options: Optional[Dict[str, Any]] = None,
    verified_summaries: Optional[Dict[str, Any]] = None,
    custom_prompt: Optional[str] = None,
) -> Tuple[str, str]:
    """Return (system prompt, user message) for the final diagnosis."""
    system = build_final_system_prompt(language, custom_prompt)
    user = build_diagnosis_info(data, report_options, verified_summaries, language)
    return system, user


__all__ = [
    "MIN_INQUIRY_SUMMARY_CHARS",
    "report_requirements",
    "build_diagnosis_info",
    "build_final_system_prompt",
    "build_final_prompt",
]
