from __future__ import annotations

"""
Idempotent backfill for the derived columns on diagnosis_sessions.

Older rows were saved with only `full_report`; the history, trends and doctor
views read `overall_score`, `primary_diagnosis`, `constitution`, `symptoms`,
`medicines`, `vital_signs` and `treatment_plan` directly. This recomputes the
missing ones from the stored report. Existing values are never overwritten.
"""

import argparse
import os
import sys
from typing import Any, Dict, List

_HERE = os.path.dirname(__file__)
sys.path.insert(0, os.path.dirname(_HERE))  # allow `import db`, `import report_utils`

from db import SupabaseError, get_db  # noqa: E402
from models import TBL_SESSIONS  # noqa: E402
from report_utils import (  # noqa: E402
    calculate_overall_score,
    extract_constitution,
    extract_medicines_from_report,
    extract_primary_diagnosis,
    extract_symptoms_from_report,
    extract_treatment_plan_from_report,
    extract_vital_signs_from_report,
)

_COLUMNS = (
    "id,full_report,overall_score,primary_diagnosis,constitution,"
    "symptoms,medicines,vital_signs,treatment_plan"
)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)) and not value:
        return True
    return False


def build_updates(row: Dict[str, Any]) -> Dict[str, Any]:
    report = row.get("full_report")
    if not isinstance(report, dict) or not report:
        return {}

    derived = {
        "overall_score": lambda: calculate_overall_score(report),
        "primary_diagnosis": lambda: extract_primary_diagnosis(report),
        "constitution": lambda: extract_constitution(report),
        "symptoms": lambda: extract_symptoms_from_report(report),
        "medicines": lambda: extract_medicines_from_report(report),
        "vital_signs": lambda: extract_vital_signs_from_report(report),
        "treatment_plan": lambda: extract_treatment_plan_from_report(report),
    }
    updates: Dict[str, Any] = {}
    for column, compute in derived.items():
        if not _is_missing(row.get(column)):
            continue
        value = compute()
        if not _is_missing(value):
            updates[column] = value
    return updates


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill derived diagnosis session columns (idempotent).")
    parser.add_argument("--dry-run", action="store_true", help="Print changes without writing to DB.")
    parser.add_argument("--limit", type=int, default=None, help="Max rows to scan (useful for testing).")
    args = parser.parse_args()

    table = get_db().table(TBL_SESSIONS)
    rows: List[Dict[str, Any]] = table.select(columns=_COLUMNS, order=("created_at", "asc"), limit=args.limit)

    updated = 0
    skipped = 0
    failed = 0
    for row in rows:
        session_id = row.get("id")
        updates = build_updates(row)
        if not session_id or not updates:
            skipped += 1
            continue

        if args.dry_run:
            print(f"[DRY RUN] would update {session_id}: {sorted(updates.keys())}")
            updated += 1
            continue

        try:
            table.update(updates, filters={"id": session_id}, returning=False)
        except SupabaseError as exc:
            print(f"[warn] {session_id}: {exc}")
            failed += 1
            continue
        updated += 1

    print(f"Done. updated={updated} skipped={skipped} failed={failed} scanned={len(rows)}")
    return 0 if not failed else 1


if __name__ == "__main__":
    raise SystemExit(main())
