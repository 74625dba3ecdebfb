from __future__ import annotations

import json

import pytest

from report_utils import (
    build_session_input,
    calculate_overall_score,
    extract_medicines_from_report,
    extract_primary_diagnosis,
    extract_symptoms_from_report,
    fallback_report,
    parse_model_json,
    repair_json,
    with_patient_profile,
    wizard_symptoms,
)


def test_parse_model_json_strips_fences():
    assert parse_model_json('```json\n{"diagnosis": "Qi Deficiency"}\n```') == {"diagnosis": "Qi Deficiency"}


def test_repair_drops_orphan_strings():
    broken = '{"analysis": {"summary": "Heat pattern", "The patient also shows"}, "x": 1}'
    fixed = json.loads(repair_json(broken))
    assert fixed["analysis"] == {"summary": "Heat pattern"}
    assert fixed["x"] == 1

    after_object = '{"a": {"b": 1}, "stray paragraph", "c": 2}'
    assert json.loads(repair_json(after_object)) == {"a": {"b": 1}, "c": 2}


def test_parse_model_json_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_model_json("[1, 2, 3]")
    with pytest.raises(ValueError):
        parse_model_json("not json at all")


def test_overall_score_rules():
    assert calculate_overall_score({}) == 70
    assert calculate_overall_score({"diagnosis": "Mild qi stagnation", "constitution": "Balanced"}) == 95
    report = {
        "diagnosis": {"primary_pattern": "Kidney Yin Deficiency", "affected_organs": ["Kidney", "Liver", "Heart", "Lung", "Spleen"]},
        "constitution": "Deficient",
    }
    # 70 - 15 (deficiency) - 20 (organ cap) - 10 (constitution)
    assert calculate_overall_score(report) == 25


def test_primary_diagnosis_and_defaults():
    assert extract_primary_diagnosis({"diagnosis": {"primary_pattern": "Damp Heat"}}) == "Damp Heat"
    assert extract_primary_diagnosis({}) == "Diagnosis pending"
    symptoms = extract_symptoms_from_report({"diagnosis": "Liver Qi Stagnation"})
    assert "Irritability" in symptoms
    medicines = extract_medicines_from_report({"diagnosis": "Liver Qi Stagnation"})
    assert "Xiao Yao San" in medicines


def test_with_patient_profile_overrides_model_profile():
    enriched = with_patient_profile({"patient_profile": {"name": "Invented"}}, {"name": "Mei", "age": 30}, ["Aspirin"])
    assert enriched["patient_profile"]["name"] == "Mei"
    assert enriched["input_data"] == {"medicines": ["Aspirin"]}
    assert with_patient_profile({}, None)["patient_profile"]["name"] == "Anonymous"


def test_wizard_symptoms_split_other_symptoms():
    assert wizard_symptoms({"mainComplaint": "Headache", "otherSymptoms": "nausea, , fatigue"}) == [
        "Headache",
        "nausea",
        "fatigue",
    ]
    assert wizard_symptoms({}) is None


def test_build_session_input_for_guest(wizard_data):
    wizard_data["basic_info"]["email"] = "mei@example.com"
    report = {"diagnosis": {"primary_pattern": "Heart Yin Deficiency"}, "constitution": {"type": "Yin deficient"}}
    data = build_session_input(report, wizard_data, is_guest=True)
    assert data.primary_diagnosis == "Heart Yin Deficiency"
    assert data.constitution == "Yin deficient"
    assert data.is_guest_session is True
    assert data.guest_email == "mei@example.com"
    assert data.medicines == ["Melatonin 3mg"]
    assert data.pulse_data == {"bpm": 78, "quality": 82}
    assert data.tongue_analysis["observation"].startswith("Red tongue")
    assert data.inquiry_medicine_files[0]["extracted_text"] == "Melatonin 3mg"
    assert data.overall_score == calculate_overall_score(report)


def test_fallback_report_shape():
    report = fallback_report("TIMEOUT", "Too slow", "details here")
    assert report["diagnosis"] == "Analysis Error"
    assert report["error_code"] == "TIMEOUT"
    assert report["details"] == "details here"
    assert "food" in report["recommendations"]
