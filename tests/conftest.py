from __future__ import annotations

import copy
import json
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

import db as db_module
import llm
from db import NOT_FOUND_CODE, SupabaseError
from model_router import get_router
from models import parse_dt

_KEY_ENV = (
    "GEMINI_API_KEYS",
    "GOOGLE_API_KEYS",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
    "OPENAI_API_KEY",
    "SUPABASE_JWT_SECRET",
    "JWT_SECRET",
    "SUPABASE_JWT_AUD",
    "JWT_AUD",
)


def _compare(a: Any, b: Any) -> Tuple[Any, Any]:
    da, dbt = parse_dt(a) if isinstance(a, str) else None, parse_dt(b) if isinstance(b, str) else None
    if da is not None and dbt is not None:
        return da, dbt
    return a, b


def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for key, value in (filters or {}).items():
        actual = row.get(key)
        if isinstance(value, tuple) and len(value) == 2:
            op, expected = value
            if op == "in":
                if str(actual) not in {str(v) for v in expected}:
                    return False
                continue
            if actual is None:
                return False
            left, right = _compare(actual, expected)
            if op == "gte" and not left >= right:
                return False
            if op == "lte" and not left <= right:
                return False
            if op == "gt" and not left > right:
                return False
            if op == "lt" and not left < right:
                return False
            continue
        if actual != value:
            return False
    return True


class FakeTable:
    """Mirrors SupabaseTable over an in-memory list of rows."""

    def __init__(self, store: "FakeSupabase", name: str) -> None:
        self._store = store
        self._name = name

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return self._store.tables.setdefault(self._name, [])

    def _check(self, columns: str = "*") -> None:
        if self._name in self._store.failing:
            raise SupabaseError(f"{self._name} is unavailable", status_code=500)
        missing = self._store.missing_columns.get(self._name) or set()
        requested = {c.strip() for c in columns.split(",")} if columns != "*" else set()
        if requested & missing:
            raise SupabaseError("column does not exist", status_code=400, code="42703")

    def _select(
        self,
        filters: Optional[Dict[str, Any]],
        columns: str,
        order: Optional[Any],
    ) -> List[Dict[str, Any]]:
        self._check(columns)
        self._store.calls.append(("select", self._name, filters))
        rows = [r for r in self.rows if _matches(r, filters)]
        if order:
            col, direction = order if isinstance(order, tuple) else (order, "asc")
            rows.sort(key=lambda r: str(r.get(col) or ""), reverse=direction == "desc")
        if columns != "*":
            keep = [c.strip() for c in columns.split(",")]
            rows = [{c: r.get(c) for c in keep} for r in rows]
        return [copy.deepcopy(r) for r in rows]

    def select(
        self,
        *,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[Any] = None,
    ) -> List[Dict[str, Any]]:
        rows = self._select(filters, columns, order)
        start = offset or 0
        return rows[start : start + limit] if limit is not None else rows[start:]

    def select_one(self, *, filters: Optional[Dict[str, Any]] = None, columns: str = "*") -> Dict[str, Any]:
        rows = self.select(filters=filters, columns=columns, limit=1)
        if not rows:
            raise SupabaseError(f"No rows returned from {self._name}", status_code=406, code=NOT_FOUND_CODE)
        return rows[0]

    def select_with_count(
        self,
        *,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[Any] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        rows = self._select(filters, columns, order)
        start = offset or 0
        page = rows[start : start + limit] if limit is not None else rows[start:]
        return page, len(rows)

    def insert(self, rows: Any, *, returning: bool = True) -> List[Dict[str, Any]]:
        self._check()
        payload = rows if isinstance(rows, list) else [rows]
        inserted = []
        for row in payload:
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid.uuid4()))
            self.rows.append(stored)
            inserted.append(copy.deepcopy(stored))
        self._store.calls.append(("insert", self._name, None))
        return inserted if returning else []

    def update(
        self,
        values: Dict[str, Any],
        *,
        filters: Dict[str, Any],
        returning: bool = False,
    ) -> List[Dict[str, Any]]:
        self._check()
        changed = []
        for row in self.rows:
            if _matches(row, filters):
                row.update(copy.deepcopy(values))
                changed.append(copy.deepcopy(row))
        self._store.calls.append(("update", self._name, filters))
        return changed if returning else []

    def delete(self, *, filters: Dict[str, Any], returning: bool = False) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        self._check()
        removed = [r for r in self.rows if _matches(r, filters)]
        self._store.tables[self._name] = [r for r in self.rows if not _matches(r, filters)]
        self._store.calls.append(("delete", self._name, filters))
        return copy.deepcopy(removed) if returning else []


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.failing: set = set()
        self.missing_columns: Dict[str, set] = {}
        self.calls: List[Tuple[str, str, Any]] = []

    def table(self, name: str) -> FakeTable:
        return FakeTable(self, name)

    def seed(self, name: str, rows: Sequence[Dict[str, Any]]) -> None:
        self.tables.setdefault(name, []).extend(copy.deepcopy(list(rows)))

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.get(name, [])


class FakeLLM:
    """
    Scripted stand-in for llm.generate. Each queued item is either the text to
    return or an exception to raise; an empty queue returns `default`.
    """

    def __init__(self) -> None:
        self.queue: List[Any] = []
        self.default: Any = "{}"
        self.calls: List[Dict[str, Any]] = []

    def push(self, *items: Any) -> None:
        self.queue.extend(items)

    def push_json(self, payload: Dict[str, Any]) -> None:
        self.queue.append(json.dumps(payload))

    def __call__(self, prompt: str, *, model: Optional[str] = None, **kwargs: Any) -> llm.LLMResult:
        self.calls.append({"prompt": prompt, "model": model, **kwargs})
        item = self.queue.pop(0) if self.queue else self.default
        if isinstance(item, BaseException):
            raise item
        return llm.LLMResult(text=item, model=model or llm.DEFAULT_MODEL)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in _KEY_ENV:
        monkeypatch.delenv(name, raising=False)
    for idx in range(1, 11):
        monkeypatch.delenv(f"GEMINI_API_KEY{idx}", raising=False)
    get_router().clear()
    yield
    get_router().clear()


@pytest.fixture
def fake_db():
    client = FakeSupabase()
    db_module.set_db(client)
    yield client
    db_module.set_db(None)


@pytest.fixture
def fake_llm(monkeypatch):
    fake = FakeLLM()
    monkeypatch.setattr(llm, "generate", fake)
    return fake


@pytest.fixture
def app(fake_db, fake_llm):
    from api import create_app

    flask_app = create_app(init_db=False, db=fake_db)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def wizard_data() -> Dict[str, Any]:
    return {
        "basic_info": {
            "name": "Mei Ling",
            "age": 34,
            "gender": "female",
            "height": 160,
            "weight": 52,
            "mainComplaint": "Night sweats",
            "otherSymptoms": "insomnia, dry mouth",
            "symptomDuration": "2 months",
        },
        "wen_inquiry": {
            "inquiryText": "Patient reports night sweats and restless sleep for two months, worse after late meals.",
            "medicineFiles": [{"name": "rx.jpg", "url": "https://x/rx.jpg", "extractedText": "Melatonin 3mg"}],
        },
        "wang_tongue": {"image": "https://x/t.jpg", "observation": "Red tongue body with scanty coating."},
        "qie": {"bpm": 78, "quality": 82},
    }
