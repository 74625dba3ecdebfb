from __future__ import annotations

import base64
import binascii
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

import llm
from llm import AllModelsFailedError, Part, QuotaExhaustedError, parse_api_error
from llm_models import AudioObservation, ImageObservation
from prompts import language_instruction, normalize_language, resolve_prompt

logger = logging.getLogger(__name__)

IMAGE_MODELS = ["gemini-3-pro-preview", "gemini-2.5-pro", "gemini-2.0-flash"]
AUDIO_MODELS = ["gemini-2.5-pro", "gemini-2.0-flash"]
SUMMARY_MODEL = "gemini-1.5-pro"
SUMMARY_FALLBACK_MODEL = "gemini-1.5-flash"

MIN_OBSERVATION_CHARS = 50
MIN_IMAGE_CONFIDENCE = 60
MIN_PARTIAL_AUDIO_CHARS = 50

IMAGE_STATUS = {
    "gemini-3-pro-preview": "Using master-level comprehensive analysis...",
    "gemini-2.5-pro": "Using expert-level analysis...",
    "gemini-2.0-flash": "Using rapid analysis...",
}

_REFUSALS = (
    "cannot analyze",
    "unable to analyze",
    "no observation",
    "unclear image",
    "cannot see",
    "not visible",
    "i cannot",
    "i'm unable",
    "sorry",
)

_DATA_URL = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

_LANGUAGE_NAMES = {"en": "English", "zh": "Chinese (Simplified)", "ms": "Malay (Bahasa Malaysia)"}

_ERROR_STEPS = {
    "API_KEY_LEAKED": "api_key",
    "API_KEY_INVALID": "api_key",
    "API_QUOTA_EXCEEDED": "rate_limit",
    "CONNECTION_ERROR": "connection",
    "TIMEOUT": "timeout",
    "MODEL_NOT_FOUND": "model",
}


class AnalysisError(RuntimeError):
    """Failure reported to the client as {error, code, step}."""

    def __init__(self, message: str, *, code: str, step: str, status: int = 500) -> None:
        super().__init__(message)
        self.code = code
        self.step = step
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "code": self.code, "step": self.step}


def is_valid_observation(text: Optional[str]) -> bool:
    if not text or len(text.strip()) < MIN_OBSERVATION_CHARS:
        return False
    lowered = text.lower()
    return not any(p in lowered for p in _REFUSALS)


def decode_media(value: str, default_mime: str) -> Part:
    """
    Accept a data URL or bare base64. Raises ValueError on undecodable input.
    """
    match = _DATA_URL.match(value.strip())
    mime_type, payload = (match.group(1), match.group(2)) if match else (default_mime, value.strip())
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 media: {e}") from e
    if not data:
        raise ValueError("Empty media payload")
    return Part(mime_type=mime_type, data=data)


def _image_type(kind: Optional[str]) -> str:
    return kind if kind in ("tongue", "face") else "body"


def _image_user_prompt(image_type: str, patient_context: Optional[Dict[str, Any]], language: Optional[str] = None) -> str:
    prompt = f"Analyze this {image_type} image for TCM inspection and respond with the JSON object only."
    ctx = patient_context or {}
    if ctx.get("symptoms") or ctx.get("mainComplaint"):
        prompt += (
            "\n\nPATIENT CONTEXT:\n"
            f"Main Complaint: {ctx.get('mainComplaint') or 'Not provided'}\n"
            f"Symptoms: {ctx.get('symptoms') or 'Not provided'}"
        )
    if language:
        prompt += "\n\n" + language_instruction(language)
    return prompt


def _image_observation(parsed: Optional[Dict[str, Any]]) -> Optional[ImageObservation]:
    if parsed is None:
        return None
    try:
        return ImageObservation.model_validate(parsed)
    except ValidationError:
        return None


def _image_accepted(text: str, parsed: Optional[Dict[str, Any]]) -> bool:
    obs = _image_observation(parsed)
    if obs is None:
        return is_valid_observation(text)
    if not obs.is_valid_image or obs.confidence < MIN_IMAGE_CONFIDENCE:
        return True
    return is_valid_observation(obs.observation_text() or text)


def analyze_image(
    image: Optional[str],
    image_type: Optional[str] = "tongue",
    *,
    patient_context: Optional[Dict[str, Any]] = None,
    language: Optional[str] = None,
    prompt_repo: Any = None,
    models: Sequence[str] = IMAGE_MODELS,
) -> Dict[str, Any]:
    """
    Inspect a tongue / face / body photo.

    Status is one of: a model status line on success, "invalid_image" when the
    model says the photo is not what was asked for, "Analysis pending" when every
    model failed, "error" when no usable image was sent.
    """
    if not image:
        return {
            "observation": "No image was provided. Please take a photo.",
            "potential_issues": [],
            "model_used": 0,
            "status": "error",
        }
    kind = _image_type(image_type)
    try:
        part = decode_media(image, "image/jpeg")
    except ValueError as e:
        logger.error("[analyze-image] bad image payload: %s", e)
        return {
            "observation": "Analysis encountered an issue. Please continue and we'll review the image later.",
            "potential_issues": [],
            "model_used": 0,
            "status": "error",
            "error": str(e),
        }

    system = resolve_prompt("image", prompt_repo, image_type=kind)
    try:
        res = llm.generate_with_fallback(
            _image_user_prompt(kind, patient_context, language),
            models=models,
            system=system,
            parts=[part],
            parse_json=True,
            validator=_image_accepted,
            context="analyze-image",
        )
    except (AllModelsFailedError, QuotaExhaustedError) as e:
        logger.warning("[analyze-image] all models failed: %s", e)
        return {
            "observation": (
                "Unable to analyze the image at this time. "
                "The visual inspection results will be reviewed manually."
            ),
            "potential_issues": [],
            "model_used": 0,
            "status": "Analysis pending",
        }

    status = IMAGE_STATUS.get(res.model_id, "Analysis complete")
    obs = _image_observation(res.parsed)
    if obs is None:
        return {
            "observation": res.text,
            "potential_issues": [],
            "model_used": res.model_used,
            "status": status,
            "confidence": 100,
        }

    if not obs.is_valid_image or obs.confidence < MIN_IMAGE_CONFIDENCE:
        return {
            "observation": "",
            "potential_issues": [],
            "model_used": res.model_used,
            "status": "invalid_image",
            "confidence": obs.confidence,
            "image_description": obs.image_description or "",
            "message": (
                f"This image does not appear to contain a {kind}. "
                f"Detected: {obs.image_description or 'unrecognized content'}"
            ),
        }

    extra = res.parsed or {}
    return {
        "observation": obs.observation_text() or res.text,
        "potential_issues": obs.potential_issues or extra.get("issues") or extra.get("indications") or obs.pattern_suggestions,
        "model_used": res.model_used,
        "status": status,
        "confidence": obs.confidence,
        "image_description": obs.image_description or "",
        "analysis_tags": obs.analysis_tags,
        "tcm_indicators": obs.tcm_indicators,
        "pattern_suggestions": obs.pattern_suggestions,
        "notes": obs.notes or "",
    }


AUDIO_USER_PROMPT = (
    "Please analyze this audio recording for TCM diagnostic purposes.\n"
    "Listen for voice quality, breathing patterns, speech patterns and cough sounds.\n"
    "If the recording is silent or contains only background noise, return a JSON object with "
    "\"status\": \"silence\" and \"overall_observation\": \"No clear voice or breathing sounds detected. "
    "Please record again.\". Do not invent findings for silence.\n"
    "Provide your analysis in the specified JSON format."
)


def _pending_finding(observation: str, significance: str, indicators: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "observation": observation,
        "severity": "pending",
        "tcm_indicators": list(indicators or []),
        "clinical_significance": significance,
    }


def _audio_pending() -> Dict[str, Any]:
    return {
        "overall_observation": "Audio analysis will be processed with your final diagnosis report.",
        "voice_quality_analysis": _pending_finding(
            "Voice recording received",
            "Will be integrated with other diagnostic data",
            ["Audio recorded successfully"],
        ),
        "breathing_patterns": _pending_finding("Pending analysis", "Pending comprehensive analysis"),
        "speech_patterns": _pending_finding("Pending analysis", "Will be evaluated alongside other findings"),
        "cough_sounds": _pending_finding("Pending analysis", "Pending"),
        "pattern_suggestions": ["Analysis pending"],
        "recommendations": ["Continue with remaining diagnostic steps"],
        "confidence": "low",
        "notes": (
            "Real-time audio analysis temporarily unavailable. Your recording has been saved "
            "and will be analyzed in your final diagnosis."
        ),
        "model_used": 0,
        "status": "pending",
    }


def _audio_findings(parsed: Optional[Dict[str, Any]]) -> bool:
    if parsed is None:
        return False
    try:
        return AudioObservation.model_validate(parsed).has_findings()
    except ValidationError:
        return bool(parsed.get("overall_observation") or parsed.get("voice_quality_analysis"))


def _audio_accepted(text: str, parsed: Optional[Dict[str, Any]]) -> bool:
    if parsed is not None:
        return _audio_findings(parsed)
    return len(text) > MIN_PARTIAL_AUDIO_CHARS


def analyze_audio(
    audio: Optional[str],
    *,
    language: Optional[str] = None,
    prompt_repo: Any = None,
    models: Sequence[str] = AUDIO_MODELS,
) -> Dict[str, Any]:
    """Listening examination over a data-URL audio clip."""
    if not audio:
        return {
            "overall_observation": "No audio was provided. Please record your voice.",
            "voice_quality_analysis": None,
            "breathing_patterns": None,
            "speech_patterns": None,
            "cough_sounds": None,
            "status": "error",
        }

    match = _DATA_URL.match(audio.strip())
    if not match:
        logger.error("[analyze-audio] invalid audio data format")
        return _audio_pending()
    try:
        part = Part(mime_type=match.group(1), data=base64.b64decode(match.group(2)))
    except (binascii.Error, ValueError) as e:
        logger.error("[analyze-audio] undecodable audio payload: %s", e)
        return _audio_pending()

    system = resolve_prompt("listening", prompt_repo)
    try:
        res = llm.generate_with_fallback(
            AUDIO_USER_PROMPT + "\n\n" + language_instruction(language),
            models=models,
            system=system,
            parts=[part],
            parse_json=True,
            validator=_audio_accepted,
            context="analyze-audio",
        )
    except (AllModelsFailedError, QuotaExhaustedError) as e:
        logger.warning("[analyze-audio] all models failed, returning placeholder: %s", e)
        return _audio_pending()

    if res.parsed is not None:
        out = dict(res.parsed)
        out["model_used"] = res.model_used
        out["status"] = out.get("status") or "success"
        return out

    return {
        "overall_observation": res.text,
        "voice_quality_analysis": {
            "observation": "Analysis available in overall observation",
            "severity": "normal",
            "tcm_indicators": [],
            "clinical_significance": "See overall observation for details",
        },
        "breathing_patterns": None,
        "speech_patterns": None,
        "cough_sounds": None,
        "model_used": res.model_used,
        "status": "partial",
        "notes": "Full structured analysis unavailable",
    }


def _files_block(files: Any, empty_text: str, sep: str) -> str:
    if not isinstance(files, list) or not files:
        return "None uploaded"
    rows = [
        f"- {f.get('name') or 'Unnamed'}:{sep}{f.get('extractedText') or empty_text}"
        for f in files
        if isinstance(f, dict)
    ]
    return ("\n\n" if sep == "\n" else "\n").join(rows) or "None uploaded"


def build_inquiry_summary_prompt(
    chat_history: Sequence[Dict[str, Any]],
    basic_info: Optional[Dict[str, Any]] = None,
    report_files: Any = None,
    medicine_files: Any = None,
    language: Optional[str] = None,
) -> str:
    info = basic_info or {}
    transcript = "\n\n".join(
        f"[{str(m.get('role') or 'user').upper()}]: {m.get('content') or ''}" for m in chat_history
    )
    return (
        "PATIENT DATA FOR SUMMARY\n\n"
        "## Patient Basic Info:\n"
        f"- Name: {info.get('name') or 'Not provided'}\n"
        f"- Age: {info.get('age') or 'Not provided'}\n"
        f"- Gender: {info.get('gender') or 'Not provided'}\n"
        f"- Chief Complaint: {info.get('symptoms') or 'Not provided'}\n"
        f"- Symptom Duration: {info.get('symptomDuration') or 'Not provided'}\n\n"
        "## Uploaded Medical Reports:\n"
        f"{_files_block(report_files, 'No text extracted', chr(10))}\n\n"
        "## Current Medications (from uploaded images):\n"
        f"{_files_block(medicine_files, 'No medication info extracted', ' ')}\n\n"
        "## Complete Chat History:\n"
        f"{transcript}\n\n"
        "INSTRUCTIONS\n"
        "Please generate a comprehensive yet concise medical summary based on the above data.\n"
        f"Respond in {_LANGUAGE_NAMES[normalize_language(language)]}.\n"
        "Follow the structured format specified in your system prompt.\n"
    )


def summarize_inquiry(
    chat_history: Optional[Sequence[Dict[str, Any]]],
    *,
    basic_info: Optional[Dict[str, Any]] = None,
    report_files: Any = None,
    medicine_files: Any = None,
    language: Optional[str] = None,
    model: Optional[str] = None,
    prompt_repo: Any = None,
) -> Dict[str, Any]:
    """
    Returns {"summary", "timing": {"total", "generation"}} in milliseconds.
    Raises AnalysisError (400 NO_HISTORY, or 500 with a classified code).
    """
    started = time.monotonic()
    if not chat_history:
        raise AnalysisError(
            "No consultation history found. Please complete the consultation first.",
            code="NO_HISTORY",
            step="validation",
            status=400,
        )

    system = resolve_prompt("inquiry_summary", prompt_repo)
    prompt = build_inquiry_summary_prompt(chat_history, basic_info, report_files, medicine_files, language)

    gen_started = time.monotonic()
    try:
        res = llm.generate_with_fallback(
            prompt,
            models=[model or SUMMARY_MODEL, SUMMARY_FALLBACK_MODEL],
            system=system,
            context="summarize-inquiry",
        )
    except (AllModelsFailedError, QuotaExhaustedError) as e:
        cause = e.__cause__ or e
        code, message = parse_api_error(cause)
        logger.error("[summarize-inquiry] failed after %.0fms: %s", (time.monotonic() - started) * 1000, cause)
        raise AnalysisError(
            message,
            code="GENERATION_FAILED" if code == "UNKNOWN_ERROR" else code,
            step=_ERROR_STEPS.get(code, "generation"),
        ) from e

    done = time.monotonic()
    return {
        "summary": res.text,
        "model_used": res.model_used,
        "timing": {
            "total": round((done - started) * 1000),
            "generation": round((done - gen_started) * 1000),
        },
    }


__all__ = [
    "IMAGE_MODELS",
    "AUDIO_MODELS",
    "AnalysisError",
    "is_valid_observation",
    "decode_media",
    "analyze_image",
    "analyze_audio",
    "build_inquiry_summary_prompt",
    "summarize_inquiry",
]
