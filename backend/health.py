from __future__ import annotations

import logging
import os
import platform
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import psutil

from db import SupabaseError, ping
from llm import has_gemini_key
from models import parse_dt, utcnow

logger = logging.getLogger(__name__)

SLOW_DB_MS = 2000
MEMORY_WARNING_PCT = 75
MEMORY_CRITICAL_PCT = 90
ERROR_WINDOW_HOURS = 24
RECENT_ERROR_LIMIT = 20
TOP_ERROR_TYPES = 5
TOP_COMPONENTS = 10
CRITICAL_ERRORS_UNHEALTHY = 5
HIGH_ERRORS_DEGRADED = 10

_STARTED_AT = time.time()


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


def check_database(db: Any, *, pinger: Callable[[Any], Any] = ping) -> Dict[str, Any]:
    started = time.perf_counter()
    try:
        pinger(db)
    except (SupabaseError, RuntimeError) as exc:
        logger.warning("[health] database check failed: %s", exc)
        return {"status": "down", "response_time": _elapsed_ms(started), "message": str(exc)}
    elapsed = _elapsed_ms(started)
    return {"status": "slow" if elapsed > SLOW_DB_MS else "ok", "response_time": elapsed}


def check_ai_keys() -> Dict[str, Dict[str, Any]]:
    """Key presence only; no billable calls are made."""
    gemini = has_gemini_key()
    openai_key = bool((os.getenv("OPENAI_API_KEY") or "").strip())
    return {
        "gemini": {"status": "ok" if gemini else "down", "message": None if gemini else "GEMINI_API_KEY not configured"},
        "openai": {"status": "ok" if openai_key else "down", "message": None if openai_key else "OPENAI_API_KEY not configured"},
    }


def memory_status(percentage: float) -> str:
    if percentage > MEMORY_CRITICAL_PCT:
        return "critical"
    if percentage > MEMORY_WARNING_PCT:
        return "warning"
    return "ok"


def memory_usage() -> Dict[str, Any]:
    vm = psutil.virtual_memory()
    rss = psutil.Process(os.getpid()).memory_info().rss
    return {
        "used": round(vm.used / 1024 / 1024),
        "total": round(vm.total / 1024 / 1024),
        "process_rss": round(rss / 1024 / 1024),
        "percentage": round(float(vm.percent), 2),
        "status": memory_status(float(vm.percent)),
    }


def overall_status(checks: Dict[str, Any]) -> str:
    database = checks["database"]["status"]
    ai = checks["ai_api"]
    ai_down = [name for name, check in ai.items() if check["status"] == "down"]
    if database == "down" or len(ai_down) == len(ai):
        return "unhealthy"
    if database == "slow" or ai_down or checks["memory"]["status"] in ("warning", "critical"):
        return "degraded"
    return "healthy"


def health_report(db: Any, *, pinger: Callable[[Any], Any] = ping) -> Dict[str, Any]:
    started = time.perf_counter()
    checks = {
        "database": check_database(db, pinger=pinger),
        "ai_api": check_ai_keys(),
        "memory": memory_usage(),
    }
    return {
        "status": overall_status(checks),
        "timestamp": utcnow().isoformat(),
        "environment": os.getenv("APP_ENV", "development"),
        "checks": checks,
        "response_time": _elapsed_ms(started),
    }


def hour_bucket(value: Any) -> Optional[str]:
    dt = parse_dt(value)
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:00:00Z")


def error_statistics(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Aggregate system_errors rows (already limited to the window) for the
    admin dashboard.
    """
    total = len(rows)
    severities = Counter(str(r.get("severity") or "medium") for r in rows)
    resolved = sum(1 for r in rows if r.get("resolved"))

    type_counts = Counter(str(r.get("error_type") or "unknown") for r in rows)
    most_common = [
        {"error_type": name, "count": count, "percentage": (count / total * 100) if total else 0}
        for name, count in type_counts.most_common(TOP_ERROR_TYPES)
    ]

    components: Dict[str, Dict[str, int]] = {}
    for r in rows:
        component = r.get("component")
        if not component:
            continue
        entry = components.setdefault(str(component), {"count": 0, "critical_count": 0})
        entry["count"] += 1
        if r.get("severity") == "critical":
            entry["critical_count"] += 1
    by_component = sorted(
        ({"component": name, **counts} for name, counts in components.items()),
        key=lambda c: c["count"],
        reverse=True,
    )[:TOP_COMPONENTS]

    trend: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        hour = hour_bucket(r.get("timestamp"))
        if hour is None:
            continue
        entry = trend.setdefault(hour, {"hour": hour, "count": 0, "critical_count": 0})
        entry["count"] += 1
        if r.get("severity") == "critical":
            entry["critical_count"] += 1

    return {
        "total_errors": total,
        "critical_errors": severities.get("critical", 0),
        "high_errors": severities.get("high", 0),
        "medium_errors": severities.get("medium", 0),
        "low_errors": severities.get("low", 0),
        "resolved_errors": resolved,
        "unresolved_errors": total - resolved,
        "error_rate_24h": total,
        "most_common_errors": most_common,
        "errors_by_component": by_component,
        "hourly_error_trend": [trend[h] for h in sorted(trend)],
    }


def dashboard_status(database: Dict[str, Any], stats: Dict[str, Any], memory: Dict[str, Any]) -> str:
    if (
        database["status"] == "down"
        or stats["critical_errors"] > CRITICAL_ERRORS_UNHEALTHY
        or memory["percentage"] > MEMORY_CRITICAL_PCT
    ):
        return "unhealthy"
    if (
        database["status"] == "slow"
        or stats["critical_errors"] > 0
        or stats["high_errors"] > HIGH_ERRORS_DEGRADED
        or memory["percentage"] > MEMORY_WARNING_PCT
    ):
        return "degraded"
    return "healthy"


def system_info() -> Dict[str, Any]:
    return {
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "environment": os.getenv("APP_ENV", "development"),
        "uptime": round(time.time() - _STARTED_AT, 1),
        "python_version": platform.python_version(),
    }


def system_health_dashboard(
    db: Any,
    error_repo: Any,
    *,
    router_stats: Optional[Dict[str, Any]] = None,
    pinger: Callable[[Any], Any] = ping,
) -> Dict[str, Any]:
    database = check_database(db, pinger=pinger)
    stats = error_statistics(error_repo.since(ERROR_WINDOW_HOURS))
    memory = memory_usage()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "overall_status": dashboard_status(database, stats, memory),
        "error_statistics": stats,
        "health_metrics": {
            "database": database,
            "ai_service": {"keys": check_ai_keys(), "router": router_stats or {}},
            "memory": memory,
        },
        "recent_errors": error_repo.recent(RECENT_ERROR_LIMIT),
        "system_info": system_info(),
    }
