from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

# Custom prompts stored in system_prompts.role
PROMPT_ROLES = {
    "chat": "doctor_chat",
    "image": "doctor_image",
    "listening": "doctor_listening",
    "inquiry_summary": "doctor_inquiry_summary",
    "final": "doctor_final",
}

INTERACTIVE_CHAT_PROMPT = (
    "# CONTEXT\n"
    "You are an experienced TCM physician conducting the inquiry (wen zhen) part of the Four Examinations.\n"
    "The patient has already given basic information and a chief complaint.\n"
    "\n"
    "# OBJECTIVE\n"
    "Gather the information needed for pattern differentiation using the Ten Questions:\n"
    "cold/heat, sweating, head and body, stool and urine, appetite, chest, hearing, thirst, sleep, "
    "and menstruation for women.\n"
    "\n"
    "# RULES\n"
    "1) Ask exactly ONE question per message.\n"
    "2) Reply in the same language the patient uses (English, Chinese or Malay).\n"
    "3) Keep each message short and plain; avoid jargon unless you explain it.\n"
    "4) If the patient reports chest pain, difficulty breathing, fainting or heavy bleeding, advise "
    "emergency care immediately.\n"
    "5) After 6-10 questions, or when enough is known, thank the patient and tell them they can "
    "continue to the next step.\n"
    "6) Never give a final diagnosis during the inquiry.\n"
)

_IMAGE_OUTPUT_SCHEMA = {
    "is_valid_image": "boolean",
    "confidence": "number 0-100",
    "image_description": "string",
    "observation": "string (at least two sentences)",
    "analysis_tags": [{"title": "string", "description": "string"}],
    "tcm_indicators": [{"pattern": "string", "description": "string"}],
    "pattern_suggestions": [{"name": "string", "reasoning": "string"}],
    "potential_issues": ["string"],
    "notes": "string",
}

_IMAGE_FOCUS = {
    "tongue": (
        "tongue diagnosis (she zhen)",
        "tongue body colour, shape, coating colour and thickness, moisture, cracks, teeth marks, "
        "sublingual veins and the organ zones (tip: heart/lung, center: spleen/stomach, "
        "sides: liver/gallbladder, root: kidney)",
    ),
    "face": (
        "face diagnosis (mian zhen)",
        "complexion colour and lustre, the five-organ zones of the face, eyes, lips, "
        "and any puffiness, dark circles or spots",
    ),
    "body": (
        "body area inspection",
        "skin colour, texture, swelling, rashes, lesions and anything else visible in the area shown",
    ),
}

LISTENING_ANALYSIS_PROMPT = (
    "# CONTEXT\n"
    "You are an expert TCM practitioner performing wen zhen, the listening examination.\n"
    "The recording may contain voice, breathing, cough and speech.\n"
    "\n"
    "# OBJECTIVE\n"
    "Analyse four categories: voice quality, breathing patterns, speech patterns and cough sounds.\n"
    "Rate each one as normal, mild, moderate or significant and list TCM indicators.\n"
    "Give at least three indicators overall and suggest likely patterns.\n"
    "If the audio is unclear, say so in notes and give your best assessment.\n"
    "\n"
    "# RESPONSE\n"
    "Return ONLY a JSON object, no markdown, with this shape:\n"
    + json.dumps(
        {
            "overall_observation": "string",
            "voice_quality_analysis": {"observation": "string", "severity": "string", "tcm_indicators": ["string"]},
            "breathing_patterns": {"observation": "string", "severity": "string", "tcm_indicators": ["string"]},
            "speech_patterns": {"observation": "string", "severity": "string", "tcm_indicators": ["string"]},
            "cough_sounds": {"observation": "string", "severity": "string", "tcm_indicators": ["string"]},
            "pattern_suggestions": ["string"],
            "confidence": "low | medium | high",
            "recommendations": ["string"],
            "notes": "string",
        },
        indent=2,
    )
    + "\n"
)

INQUIRY_SUMMARY_PROMPT = (
    "# CONTEXT\n"
    "You are a TCM physician assistant summarising a patient inquiry for the lead physician.\n"
    "You have the patient's basic information, the inquiry chat and any uploaded reports or medicine lists.\n"
    "\n"
    "# OBJECTIVE\n"
    "Write a structured clinical summary with these headings:\n"
    "Chief Complaint, History of Present Illness, Ten Questions Summary, Medical History, "
    "Current Medications, Key Findings.\n"
    "Include durations and severity where the patient gave them. Do not invent findings.\n"
    "Write in the same language the patient used.\n"
)

FINAL_ANALYSIS_PROMPT = (
    "# CONTEXT\n"
    "You are a senior TCM physician combining the Four Examinations (si zhen he can): inspection, "
    "listening, inquiry and palpation, plus any smart-device readings.\n"
    "\n"
    "# OBJECTIVE\n"
    "Differentiate the pattern using the Eight Principles and organ patterns, assess the constitution "
    "(nine constitution types), and give food, lifestyle, acupoint and herbal guidance.\n"
    "Base every conclusion on the data provided. When data is missing, say so and lower confidence.\n"
    "\n"
    "# RESPONSE\n"
    "Return ONLY a JSON object, no markdown, with this shape:\n"
    + json.dumps(
        {
            "diagnosis": {
                "primary_pattern": "string",
                "secondary_patterns": ["string"],
                "affected_organs": ["string"],
                "pathomechanism": "string",
            },
            "constitution": {"type": "string", "description": "string"},
            "analysis": {"summary": "string", "key_findings": {}, "pattern_rationale": "string"},
            "recommendations": {
                "food_therapy": {"beneficial": ["string"], "avoid": ["string"], "recipes": ["string"]},
                "lifestyle": ["string"],
                "acupoints": ["string"],
                "exercise": ["string"],
                "sleep_guidance": "string",
                "emotional_care": "string",
                "herbal_formulas": [{"name": "string", "ingredients": ["string"], "dosage": "string", "purpose": "string"}],
            },
            "precautions": {"warning_signs": ["string"], "contraindications": ["string"]},
            "follow_up": {"timeline": "string", "expected_improvement": "string"},
            "patient_summary": {"symptoms": ["string"], "vital_signs": {}},
            "disclaimer": "string",
        },
        indent=2,
    )
    + "\n"
)

REPORT_CHAT_PROMPT = (
    "You are a helpful TCM assistant helping a patient understand their diagnosis report.\n"
    "\n"
    "PATIENT'S TCM DIAGNOSIS REPORT\n"
    "{report_context}\n"
    "\n"
    "YOUR ROLE:\n"
    "1. Answer questions about the diagnosis in an easy-to-understand way.\n"
    "2. Explain TCM terminology simply, using analogies where they help.\n"
    "3. Clarify the reasoning behind the food, lifestyle and treatment advice.\n"
    "4. If asked about something not in the report, explain that you can only discuss this diagnosis.\n"
    "\n"
    "GUIDELINES:\n"
    "- Keep responses to 2-4 short paragraphs.\n"
    "- Do not give medical advice beyond the report and never change the assessment.\n"
    "- Encourage the patient to consult a licensed TCM practitioner for treatment.\n"
)

# Strict instructions for the final report; the model must not mix languages.
FINAL_INSTRUCTIONS = {
    "en": (
        "IMPORTANT: You MUST respond entirely in English. All text, including section headers, diagnosis "
        "terms, food names and recommendations must be in English.\n"
        "- DO NOT use any Chinese characters.\n"
        "- DO NOT use Pinyin.\n"
        "- DO NOT provide bilingual terms; write \"Qi Deficiency\", not \"Qi Deficiency (气虚)\".\n"
    ),
    "zh": (
        "重要提示：你必须完全使用中文回复。所有文字，包括标题、诊断术语、食物名称和建议都必须使用中文。\n"
        "- 不要使用英文。\n"
        "- 不要使用拼音。\n"
        "请使用简体中文。\n"
    ),
    "ms": (
        "PENTING: Anda MESTI menjawab sepenuhnya dalam Bahasa Malaysia. Semua teks, termasuk tajuk, terma "
        "diagnosis, nama makanan dan cadangan mesti dalam Bahasa Malaysia. Jangan gunakan huruf Cina atau "
        "perkataan Inggeris.\n"
    ),
}

LANGUAGE_INSTRUCTIONS = {
    "en": "You MUST respond entirely in English. Be clear, friendly, and educational.",
    "zh": "你必须完全使用简体中文回复。语言要清晰、友好、有教育性。",
    "ms": "Anda MESTI menjawab sepenuhnya dalam Bahasa Malaysia. Jelas, mesra, dan bersifat mendidik.",
}


def normalize_language(language: Optional[str]) -> str:
    lang = (language or "").strip().lower()
    return lang if lang in LANGUAGE_INSTRUCTIONS else DEFAULT_LANGUAGE


def language_instruction(language: Optional[str]) -> str:
    return LANGUAGE_INSTRUCTIONS[normalize_language(language)]


def final_instruction(language: Optional[str]) -> str:
    return FINAL_INSTRUCTIONS[normalize_language(language)]


def default_prompt(kind: str, image_type: str = "tongue") -> str:
    if kind == "chat":
        return INTERACTIVE_CHAT_PROMPT
    if kind == "image":
        return image_prompt(image_type)
    if kind == "listening":
        return LISTENING_ANALYSIS_PROMPT
    if kind == "inquiry_summary":
        return INQUIRY_SUMMARY_PROMPT
    if kind == "final":
        return FINAL_ANALYSIS_PROMPT
    raise ValueError(f"Unknown prompt kind: {kind}")


def resolve_prompt(kind: str, repo: Any = None, *, image_type: str = "tongue") -> str:
    """
    Admin-edited prompt from system_prompts when one exists, else the built-in default.
    Lookup failures are logged and fall back to the default.
    """
    if repo is not None:
        role = PROMPT_ROLES.get(kind)
        try:
            custom = repo.get(role) if role else None
        except Exception as e:
            logger.warning("[prompts] custom prompt lookup failed for %s: %s", role, e)
            custom = None
        if custom:
            return custom
    return default_prompt(kind, image_type)


def image_prompt(image_type: str) -> str:
    title, focus = _IMAGE_FOCUS.get(image_type, _IMAGE_FOCUS["body"])
    return (
        "# CONTEXT\n"
        f"You are an expert TCM practitioner performing {title} as part of wang zhen (inspection).\n"
        "\n"
        "# OBJECTIVE\n"
        f"Describe {focus}.\n"
        "First decide whether the image actually shows what was requested. If it does not, set "
        "is_valid_image to false and explain what you see in image_description.\n"
        "Rate your confidence from 0 to 100.\n"
        "\n"
        "# RESPONSE\n"
        "Return ONLY a JSON object, no markdown, with this shape:\n"
        f"{json.dumps(_IMAGE_OUTPUT_SCHEMA, indent=2)}\n"
    )


def calculate_bmi(height: Any, weight: Any) -> Optional[float]:
    try:
        h = float(height)
        w = float(weight)
    except (TypeError, ValueError):
        return None
    if h <= 0 or w <= 0:
        return None
    return round(w / ((h / 100.0) ** 2), 1)


def build_chat_prompt(basic_info: Optional[Dict[str, Any]] = None, *, base: Optional[str] = None) -> str:
    """Inquiry chat system prompt, with the patient's basic information appended."""
    prompt = base or INTERACTIVE_CHAT_PROMPT
    if not basic_info:
        return prompt

    height = basic_info.get("height")
    weight = basic_info.get("weight")
    bmi = calculate_bmi(height, weight)
    lines = [
        "",
        "CURRENT PATIENT INFORMATION",
        f"Patient Name: {basic_info.get('name') or 'Not provided'}",
        f"Age: {basic_info.get('age') or 'Not provided'}",
        f"Gender: {basic_info.get('gender') or 'Not provided'}",
        f"Height: {str(height) + ' cm' if height else 'Not provided'}",
        f"Weight: {str(weight) + ' kg' if weight else 'Not provided'}",
    ]
    if bmi is not None:
        lines.append(f"BMI: {bmi}")
    lines += [
        "",
        f"Chief Complaint: {basic_info.get('symptoms') or basic_info.get('mainComplaint') or 'Not provided'}",
        f"Duration: {basic_info.get('symptomDuration') or 'Not provided'}",
        "",
        "INSTRUCTION",
        "1. Detect the language of the chief complaint and respond in that same language.",
        "2. Acknowledge the chief complaint briefly.",
        "3. Ask your first relevant follow-up question (one question only).",
        "4. Do not repeat their basic information back to them or greet them.",
    ]
    return prompt + "\n".join(lines) + "\n"


def _join(items: Any, sep: str = ", ") -> str:
    if not isinstance(items, list):
        return ""
    return sep.join(str(i.get("name") if isinstance(i, dict) else i) for i in items if i)


def _text_or_key(value: Any, key: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return str(value.get(key) or json.dumps(value, ensure_ascii=False))
    return json.dumps(value, ensure_ascii=False)


def build_report_context(report: Dict[str, Any], patient_info: Optional[Dict[str, Any]] = None) -> str:
    lines: List[str] = []
    if patient_info:
        lines += [
            "PATIENT INFORMATION:",
            f"- Name: {patient_info.get('name') or 'Not provided'}",
            f"- Age: {patient_info.get('age') or 'Not provided'}",
            f"- Gender: {patient_info.get('gender') or 'Not provided'}",
            f"- Chief Complaint: {patient_info.get('symptoms') or 'Not provided'}",
        ]

    diagnosis = report.get("diagnosis")
    if diagnosis:
        lines.append(f"MAIN DIAGNOSIS: {_text_or_key(diagnosis, 'primary_pattern')}")
        if isinstance(diagnosis, dict):
            if diagnosis.get("secondary_patterns"):
                lines.append(f"Secondary Patterns: {_join(diagnosis['secondary_patterns'])}")
            if diagnosis.get("affected_organs"):
                lines.append(f"Affected Organs: {_join(diagnosis['affected_organs'])}")

    constitution = report.get("constitution")
    if constitution:
        lines.append(f"CONSTITUTION TYPE: {_text_or_key(constitution, 'type')}")
        if isinstance(constitution, dict) and constitution.get("description"):
            lines.append(f"Description: {constitution['description']}")

    analysis = report.get("analysis")
    if analysis:
        lines.append(f"FINAL ANALYSIS: {_text_or_key(analysis, 'summary')}")
        if isinstance(analysis, dict) and analysis.get("pattern_rationale"):
            lines.append(f"Rationale: {analysis['pattern_rationale']}")

    recs = report.get("recommendations")
    if isinstance(recs, dict):
        lines.append("RECOMMENDATIONS:")
        food_therapy = recs.get("food_therapy") if isinstance(recs.get("food_therapy"), dict) else {}
        entries = [
            ("Beneficial Foods", _join(food_therapy.get("beneficial"))),
            ("Recommended Foods", _join(recs.get("food"))),
            ("Foods to Avoid", _join(food_therapy.get("avoid"))),
            ("Avoid", _join(recs.get("avoid"))),
            ("Lifestyle Advice", _join(recs.get("lifestyle"), "; ")),
            ("Acupressure Points", _join(recs.get("acupoints"))),
            ("Exercise", _join(recs.get("exercise"), "; ")),
            ("Sleep Guidance", str(recs.get("sleep_guidance") or "")),
            ("Emotional Wellness", str(recs.get("emotional_care") or "")),
            ("Herbal Formulas", _join(recs.get("herbal_formulas"))),
        ]
        lines += [f"- {label}: {value}" for label, value in entries if value]

    precautions = report.get("precautions")
    if isinstance(precautions, dict):
        lines.append("PRECAUTIONS:")
        if precautions.get("warning_signs"):
            lines.append(f"- Warning Signs: {_join(precautions['warning_signs'], '; ')}")
        if precautions.get("contraindications"):
            lines.append(f"- Contraindications: {_join(precautions['contraindications'], '; ')}")

    follow_up = report.get("follow_up")
    if isinstance(follow_up, dict):
        lines.append("FOLLOW-UP:")
        if follow_up.get("timeline"):
            lines.append(f"- Timeline: {follow_up['timeline']}")
        if follow_up.get("expected_improvement"):
            lines.append(f"- Expected Improvement: {follow_up['expected_improvement']}")

    return "\n".join(lines)


def build_report_chat_system(
    report: Dict[str, Any],
    patient_info: Optional[Dict[str, Any]] = None,
    language: Optional[str] = None,
) -> str:
    context = build_report_context(report, patient_info)
    return language_instruction(language) + "\n\n" + REPORT_CHAT_PROMPT.format(report_context=context)


__all__ = [
    "PROMPT_ROLES",
    "INTERACTIVE_CHAT_PROMPT",
    "LISTENING_ANALYSIS_PROMPT",
    "INQUIRY_SUMMARY_PROMPT",
    "FINAL_ANALYSIS_PROMPT",
    "LANGUAGE_INSTRUCTIONS",
    "FINAL_INSTRUCTIONS",
    "normalize_language",
    "language_instruction",
    "final_instruction",
    "default_prompt",
    "resolve_prompt",
    "image_prompt",
    "calculate_bmi",
    "build_chat_prompt",
    "build_report_context",
    "build_report_chat_system",
]
