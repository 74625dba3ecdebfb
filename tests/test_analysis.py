from __future__ import annotations

import base64
import json

import pytest

from analysis import (
    AnalysisError,
    analyze_audio,
    analyze_image,
    decode_media,
    is_valid_observation,
    summarize_inquiry,
)
from llm import QuotaExhaustedError

IMAGE = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake image bytes").decode("ascii")
AUDIO = "data:audio/webm;base64," + base64.b64encode(b"fake audio bytes").decode("ascii")
GOOD_OBSERVATION = "The tongue body is pale with a thin white coating and visible teeth marks along the edges."


def test_observation_validation():
    assert is_valid_observation(GOOD_OBSERVATION)
    assert not is_valid_observation("Pale tongue.")
    assert not is_valid_observation("Sorry, the photo is too dark for me to describe anything useful here at all.")


def test_decode_media_accepts_data_urls_and_bare_base64():
    part = decode_media(IMAGE, "image/jpeg")
    assert part.mime_type == "image/png"
    bare = decode_media(base64.b64encode(b"abc").decode("ascii"), "image/jpeg")
    assert bare.mime_type == "image/jpeg" and bare.data == b"abc"
    with pytest.raises(ValueError):
        decode_media("data:image/png;base64,!!!!", "image/jpeg")


def test_image_success_uses_first_model(fake_llm):
    fake_llm.push_json(
        {
            "is_valid_image": True,
            "confidence": 88,
            "observation": GOOD_OBSERVATION,
            "potential_issues": ["Spleen Qi Deficiency"],
            "analysis_tags": [{"title": "Pale"}],
        }
    )
    result = analyze_image(IMAGE, "tongue", language="zh")
    assert result["observation"] == GOOD_OBSERVATION
    assert result["potential_issues"] == ["Spleen Qi Deficiency"]
    assert result["model_used"] == 1
    assert result["status"] == "Using master-level comprehensive analysis..."
    assert result["confidence"] == 88
    assert "简体中文" in fake_llm.calls[0]["prompt"]
    assert fake_llm.calls[0]["parts"][0].mime_type == "image/png"


def test_image_refusal_falls_back_to_next_model(fake_llm):
    fake_llm.push("Sorry, I cannot analyze this image.", json.dumps({"observation": GOOD_OBSERVATION}))
    result = analyze_image(IMAGE, "face")
    assert result["model_used"] == 2
    assert result["status"] == "Using expert-level analysis..."
    assert fake_llm.calls[1]["model"] == "gemini-2.5-pro"


def test_image_of_the_wrong_thing_is_flagged(fake_llm):
    fake_llm.push_json({"is_valid_image": False, "confidence": 15, "image_description": "a cat on a sofa"})
    result = analyze_image(IMAGE, "tongue")
    assert result["status"] == "invalid_image"
    assert "a cat on a sofa" in result["message"]
    assert result["observation"] == ""


def test_image_all_models_failing_is_pending(fake_llm):
    fake_llm.push(RuntimeError("boom"), RuntimeError("boom"), RuntimeError("boom"))
    result = analyze_image(IMAGE, "tongue")
    assert result["status"] == "Analysis pending"
    assert result["model_used"] == 0


def test_image_input_errors(fake_llm):
    assert analyze_image(None)["status"] == "error"
    assert analyze_image("data:image/png;base64,!!!!")["status"] == "error"
    assert fake_llm.calls == []


def test_audio_structured_result(fake_llm):
    fake_llm.push_json(
        {
            "overall_observation": "Weak, low voice with shallow breathing.",
            "voice_quality_analysis": {"observation": "Weak", "severity": "mild", "tcm_indicators": ["Qi deficiency"]},
        }
    )
    result = analyze_audio(AUDIO, language="ms")
    assert result["status"] == "success"
    assert result["model_used"] == 1
    assert "Bahasa Malaysia" in fake_llm.calls[0]["prompt"]


def test_audio_free_text_is_partial(fake_llm):
    fake_llm.push("The voice sounds weak and breathy, consistent with lung qi deficiency patterns overall.")
    result = analyze_audio(AUDIO)
    assert result["status"] == "partial"
    assert result["overall_observation"].startswith("The voice sounds weak")


def test_audio_failures_return_placeholder(fake_llm):
    assert analyze_audio(None)["status"] == "error"
    assert analyze_audio("not a data url")["status"] == "pending"
    fake_llm.push(QuotaExhaustedError("quota"), QuotaExhaustedError("quota"))
    assert analyze_audio(AUDIO)["status"] == "pending"


def test_summarize_requires_history(fake_llm):
    with pytest.raises(AnalysisError) as info:
        summarize_inquiry([])
    assert info.value.code == "NO_HISTORY"
    assert info.value.status == 400


def test_summarize_success(fake_llm):
    fake_llm.push("## Chief Complaint\nNight sweats for two months.")
    result = summarize_inquiry(
        [{"role": "user", "content": "I sweat at night"}, {"role": "assistant", "content": "How long?"}],
        basic_info={"name": "Mei", "symptoms": "Night sweats"},
        medicine_files=[{"name": "rx.jpg", "extractedText": "Melatonin"}],
        language="en",
    )
    assert result["summary"].startswith("## Chief Complaint")
    assert set(result["timing"]) == {"total", "generation"}
    prompt = fake_llm.calls[0]["prompt"]
    assert "[USER]: I sweat at night" in prompt
    assert "- rx.jpg: Melatonin" in prompt
    assert fake_llm.calls[0]["model"] == "gemini-1.5-pro"


def test_summarize_classifies_errors(fake_llm):
    fake_llm.push(RuntimeError("API key not valid"), RuntimeError("API key not valid"))
    with pytest.raises(AnalysisError) as info:
        summarize_inquiry([{"role": "user", "content": "hi"}])
    assert info.value.code == "API_KEY_INVALID"
    assert info.value.step == "api_key"
    assert info.value.to_dict()["error"].startswith("Invalid API key")
