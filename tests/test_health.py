from __future__ import annotations

from db import SupabaseError
from health import (
    check_ai_keys,
    check_database,
    dashboard_status,
    error_statistics,
    health_report,
    hour_bucket,
    memory_status,
    overall_status,
)


def _checks(database="ok", gemini="ok", openai="ok", memory="ok"):
    return {
        "database": {"status": database},
        "ai_api": {"gemini": {"status": gemini}, "openai": {"status": openai}},
        "memory": {"status": memory},
    }


def test_overall_status_rules():
    assert overall_status(_checks()) == "healthy"
    assert overall_status(_checks(database="down")) == "unhealthy"
    assert overall_status(_checks(gemini="down", openai="down")) == "unhealthy"
    assert overall_status(_checks(openai="down")) == "degraded"
    assert overall_status(_checks(database="slow")) == "degraded"
    assert overall_status(_checks(memory="warning")) == "degraded"


def test_memory_thresholds():
    assert memory_status(50) == "ok"
    assert memory_status(80) == "warning"
    assert memory_status(95) == "critical"


def test_database_check_reports_down_on_error():
    def failing(_db):
        raise SupabaseError("connection refused", status_code=503)

    result = check_database(object(), pinger=failing)
    assert result["status"] == "down"
    assert "connection refused" in result["message"]
    assert check_database(object(), pinger=lambda _db: True)["status"] == "ok"


def test_ai_key_presence(monkeypatch):
    keys = check_ai_keys()
    assert keys["gemini"]["status"] == "down"
    assert keys["openai"]["message"] == "OPENAI_API_KEY not configured"
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    keys = check_ai_keys()
    assert keys["gemini"]["status"] == "ok"
    assert keys["openai"]["status"] == "ok"


def test_health_report_without_keys_is_unhealthy():
    report = health_report(object(), pinger=lambda _db: True)
    assert report["status"] == "unhealthy"
    assert set(report["checks"]) == {"database", "ai_api", "memory"}


def test_hour_bucket():
    assert hour_bucket("2024-03-01T10:45:12Z") == "2024-03-01T10:00:00Z"
    assert hour_bucket("2024-03-01T10:45:12+08:00") == "2024-03-01T02:00:00Z"
    assert hour_bucket("garbage") is None


def test_error_statistics():
    rows = [
        {"error_type": "ApiError", "severity": "critical", "component": "consult", "timestamp": "2024-03-01T10:05:00Z"},
        {"error_type": "ApiError", "severity": "high", "component": "consult", "timestamp": "2024-03-01T10:30:00Z", "resolved": True},
        {"error_type": "RenderError", "severity": "low", "component": "wizard", "timestamp": "2024-03-01T11:00:00Z"},
        {"error_type": "Unknown", "timestamp": None},
    ]
    stats = error_statistics(rows)
    assert stats["total_errors"] == 4
    assert stats["critical_errors"] == 1
    assert stats["medium_errors"] == 1
    assert stats["resolved_errors"] == 1
    assert stats["unresolved_errors"] == 3
    assert stats["most_common_errors"][0] == {"error_type": "ApiError", "count": 2, "percentage": 50.0}
    assert stats["errors_by_component"][0] == {"component": "consult", "count": 2, "critical_count": 1}
    assert stats["hourly_error_trend"] == [
        {"hour": "2024-03-01T10:00:00Z", "count": 2, "critical_count": 1},
        {"hour": "2024-03-01T11:00:00Z", "count": 1, "critical_count": 0},
    ]
    assert error_statistics([])["most_common_errors"] == []


def test_dashboard_status():
    stats = {"critical_errors": 0, "high_errors": 0}
    memory = {"percentage": 40}
    assert dashboard_status({"status": "ok"}, stats, memory) == "healthy"
    assert dashboard_status({"status": "ok"}, {"critical_errors": 1, "high_errors": 0}, memory) == "degraded"
    assert dashboard_status({"status": "ok"}, {"critical_errors": 6, "high_errors": 0}, memory) == "unhealthy"
    assert dashboard_status({"status": "ok"}, {"critical_errors": 0, "high_errors": 11}, memory) == "degraded"
    assert dashboard_status({"status": "down"}, stats, memory) == "unhealthy"
    assert dashboard_status({"status": "ok"}, stats, {"percentage": 92}) == "unhealthy"
