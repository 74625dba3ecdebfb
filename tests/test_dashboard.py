from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dashboard import DashboardFilters, dashboard_stats, filter_inquiries, join_inquiries, patient_name

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def inquiries():
    sessions = [
        {
            "id": "s1",
            "created_at": "2024-03-09T08:00:00Z",
            "symptoms": ["Night sweats", "Insomnia"],
            "full_report": {"diagnosis": "Heart Yin Deficiency", "patient_profile": {"name": "Mei Ling"}},
            "user_id": "u1",
        },
        {
            "id": "s2",
            "created_at": "2024-02-01T08:00:00Z",
            "symptoms": [],
            "full_report": {"analysis": {"key_findings": {"from_inquiry": "Chronic cough"}}},
            "patient_id": "p1",
        },
        {
            "id": "s3",
            "created_at": "2024-03-08T23:30:00Z",
            "symptoms": "Headache",
            "full_report": {"diagnosis": "Liver Yang Rising"},
            "user_id": "u2",
        },
    ]
    profiles = {
        "u1": {"id": "u1", "full_name": "Mei", "flag": "Watch"},
        "u2": {"id": "u2", "full_name": "Ahmad", "flag": "Critical"},
    }
    patients = {"p1": {"id": "p1", "first_name": "Tan", "last_name": "Wei", "flag": "Normal"}}
    return join_inquiries(sessions, profiles, patients)


def test_join_resolves_symptoms_and_names(inquiries):
    assert inquiries[0]["symptoms"] == "Night sweats, Insomnia"
    assert inquiries[1]["symptoms"] == "Chronic cough"
    assert inquiries[1]["profile"] is None
    assert [patient_name(i) for i in inquiries] == ["Mei Ling", "Tan Wei", "Ahmad"]


def test_filters_from_args():
    filters = DashboardFilters.from_args({"search": "  mei ", "flag": "Watch"})
    assert filters.search == "mei"
    assert filters.active
    assert not DashboardFilters.from_args({}).active
    with pytest.raises(ValueError):
        DashboardFilters.from_args({"flag": "Urgent"})


def test_search_matches_name_symptoms_or_report(inquiries):
    assert [i["id"] for i in filter_inquiries(inquiries, DashboardFilters(search="mei"))] == ["s1"]
    assert [i["id"] for i in filter_inquiries(inquiries, DashboardFilters(search="cough"))] == ["s2"]
    assert [i["id"] for i in filter_inquiries(inquiries, DashboardFilters(search="yang rising"))] == ["s3"]


def test_date_range_is_inclusive_of_whole_days(inquiries):
    found = filter_inquiries(inquiries, DashboardFilters(date_from="2024-03-08", date_to="2024-03-08"))
    assert [i["id"] for i in found] == ["s3"]
    with pytest.raises(ValueError):
        filter_inquiries(inquiries, DashboardFilters(date_from="March"))


def test_symptom_and_flag_filters(inquiries):
    assert [i["id"] for i in filter_inquiries(inquiries, DashboardFilters(symptom="insomnia"))] == ["s1"]
    assert [i["id"] for i in filter_inquiries(inquiries, DashboardFilters(flag="Critical"))] == ["s3"]
    assert [i["id"] for i in filter_inquiries(inquiries, DashboardFilters(flag="Normal"))] == ["s2"]


def test_stats(inquiries):
    stats = dashboard_stats(inquiries, now=NOW)
    assert stats == {"total": 3, "recent": 2, "unique_patients": 3}
