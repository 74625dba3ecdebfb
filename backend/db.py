# db.py
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests import RequestException
from dotenv import load_dotenv

_ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(_ENV_PATH)

logger = logging.getLogger(__name__)

# PostgREST code for ".single()" style lookups that matched zero rows.
NOT_FOUND_CODE = "PGRST116"
# PostgREST code for a table missing from the schema cache.
MISSING_TABLE_CODE = "PGRST205"

_TRANSIENT_STATUS = frozenset({502, 503, 504})
_DEFAULT_TIMEOUT_S = 10.0


def _env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


def _env_number(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[supabase] ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    service_role_key: str
    timeout_s: float = _DEFAULT_TIMEOUT_S
    # Extra attempts for idempotent reads that hit a gateway error.
    read_retries: int = 1

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        url = _env("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL")
        key = _env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_ROLE")
        if not url:
            raise RuntimeError("Missing required env var: SUPABASE_URL")
        if not key:
            raise RuntimeError("Missing required env var: SUPABASE_SERVICE_ROLE_KEY")
        return cls(
            url=url,
            service_role_key=key,
            timeout_s=_env_number("SUPABASE_TIMEOUT_S", _DEFAULT_TIMEOUT_S),
            read_retries=max(0, int(_env_number("SUPABASE_READ_RETRIES", 1))),
        )


class SupabaseError(RuntimeError):
    """A failed PostgREST call. `code` carries the PostgREST/Postgres error code when known."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text
        self.code = code

    @classmethod
    def from_response(cls, resp: requests.Response, label: str) -> "SupabaseError":
        code = None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("code"):
            code = str(body["code"])
        return cls(f"Supabase request failed ({label})", resp.status_code, resp.text, code)

    def __str__(self) -> str:
        details = [
            f"{name}={value}"
            for name, value in (("code", self.code), ("status", self.status_code), ("response", self.response_text))
            if value not in (None, "")
        ]
        base = super().__str__()
        return f"{base} ({', '.join(details)})" if details else base

    @property
    def is_not_found(self) -> bool:
        return self.code == NOT_FOUND_CODE

    @property
    def is_missing_table(self) -> bool:
        text = (self.response_text or "").lower()
        return self.code == MISSING_TABLE_CODE or "could not find the table" in text


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def filter_params(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Translate the repo filter dict into PostgREST query params.

      {"user_id": "u1"}                    -> user_id=eq.u1
      {"created_at": ("gte", "2024-...")}  -> created_at=gte.2024-...
      {"id": ("in", ["a", "b"])}           -> id=in.(a,b)
    """
    params: Dict[str, str] = {}
    for column, value in (filters or {}).items():
        if not (isinstance(value, tuple) and len(value) == 2):
            params[column] = f"eq.{_literal(value)}"
            continue
        op, operand = value
        if op == "in":
            items = operand if isinstance(operand, (list, tuple, set)) else [operand]
            params[column] = "in.(" + ",".join(_literal(v) for v in items) + ")"
        else:
            params[column] = f"{op}.{_literal(operand)}"
    return params


def _order_param(order: Any) -> str:
    if isinstance(order, (tuple, list)) and len(order) == 2:
        return f"{order[0]}.{order[1]}"
    return str(order)


def _returning(flag: bool) -> str:
    return "return=representation" if flag else "return=minimal"


def _total_from_range(header: Optional[str], fallback: int) -> int:
    # Content-Range: 0-24/312
    if header and "/" in header:
        total = header.rsplit("/", 1)[-1].strip()
        if total.isdigit():
            return int(total)
    return fallback


class SupabaseClient:
    """PostgREST over requests, authenticated with the service role key."""

    def __init__(self, cfg: SupabaseConfig) -> None:
        self._cfg = cfg
        self._rest_url = cfg.url.rstrip("/") + "/rest/v1"
        self._http = requests.Session()
        self._http.headers.update(
            {
                "apikey": cfg.service_role_key,
                "Authorization": f"Bearer {cfg.service_role_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        attempts = 1 + (self._cfg.read_retries if method == "GET" else 0)
        for attempt in range(1, attempts + 1):
            try:
                resp = self._http.request(method, url, timeout=self._cfg.timeout_s, **kwargs)
            except RequestException as exc:
                if attempt == attempts:
                    logger.warning("[supabase] %s %s failed: %s", method, url, exc)
                    raise SupabaseError(f"Supabase request failed ({method} {url})", response_text=str(exc)) from exc
                logger.info("[supabase] retrying %s %s after %s", method, url, exc)
            else:
                if resp.status_code not in _TRANSIENT_STATUS or attempt == attempts:
                    return resp
                logger.info("[supabase] retrying %s %s after HTTP %s", method, url, resp.status_code)
            time.sleep(0.25 * attempt)
        raise SupabaseError(f"Supabase request failed ({method} {url})")

    def request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
        prefer: Optional[str] = None,
    ) -> Tuple[Any, Dict[str, str]]:
        """Returns (decoded body or None, response headers)."""
        url = f"{self._rest_url}/{table}"
        resp = self._send(
            method,
            url,
            params=params,
            json=body,
            headers={"Prefer": prefer} if prefer else None,
        )
        if not resp.ok:
            raise SupabaseError.from_response(resp, f"{method} {table}")
        if not resp.text:
            return None, dict(resp.headers)
        try:
            return resp.json(), dict(resp.headers)
        except ValueError:
            return resp.text, dict(resp.headers)

    def table(self, name: str) -> "SupabaseTable":
        return SupabaseTable(self, name)


class SupabaseTable:
    def __init__(self, client: SupabaseClient, name: str) -> None:
        self._client = client
        self._name = name

    def _read_params(
        self,
        filters: Optional[Dict[str, Any]],
        columns: str,
        limit: Optional[int],
        offset: Optional[int],
        order: Optional[Any],
    ) -> Dict[str, str]:
        params = {"select": columns, **filter_params(filters)}
        if order:
            params["order"] = _order_param(order)
        if limit is not None:
            params["limit"] = str(int(limit))
        if offset is not None:
            params["offset"] = str(int(offset))
        return params

    def select(
        self,
        *,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[Any] = None,
    ) -> List[Dict[str, Any]]:
        rows, _ = self._client.request("GET", self._name, params=self._read_params(filters, columns, limit, offset, order))
        return rows or []

    def select_one(self, *, filters: Optional[Dict[str, Any]] = None, columns: str = "*") -> Dict[str, Any]:
        """Raises SupabaseError with code PGRST116 when nothing matches."""
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
        """One page of rows plus the exact total for the filter (history paging)."""
        rows, headers = self._client.request(
            "GET",
            self._name,
            params=self._read_params(filters, columns, limit, offset, order),
            prefer="count=exact",
        )
        rows = rows if isinstance(rows, list) else []
        content_range = headers.get("Content-Range") or headers.get("content-range")
        return rows, _total_from_range(content_range, len(rows))

    def insert(self, rows: Any, *, returning: bool = True) -> List[Dict[str, Any]]:
        payload = rows if isinstance(rows, list) else [rows]
        body, _ = self._client.request("POST", self._name, body=payload, prefer=_returning(returning))
        return body or []

    def update(
        self,
        values: Dict[str, Any],
        *,
        filters: Dict[str, Any],
        returning: bool = False,
    ) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to update without filters")
        body, _ = self._client.request(
            "PATCH",
            self._name,
            params=filter_params(filters),
            body=values,
            prefer=_returning(returning),
        )
        return body or []

    def delete(self, *, filters: Dict[str, Any], returning: bool = False) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        body, _ = self._client.request("DELETE", self._name, params=filter_params(filters), prefer=_returning(returning))
        return body or []


_client: Optional[Any] = None


def get_db() -> Any:
    global _client
    if _client is None:
        _client = SupabaseClient(SupabaseConfig.from_env())
    return _client


def set_db(client: Optional[Any]) -> None:
    """Swap the process-wide client (used by the CLI and tests)."""
    global _client
    _client = client


def ping(db: Optional[Any] = None) -> bool:
    """
    Cheapest possible read against diagnosis_sessions. A missing table is
    reported as a setup problem rather than an outage.
    """
    client = db or get_db()
    try:
        client.table("diagnosis_sessions").select(columns="id", limit=1)
    except SupabaseError as exc:
        if exc.status_code == 404 and exc.is_missing_table:
            raise RuntimeError(
                "Supabase schema is missing required tables. "
                "Apply the migrations in the Supabase SQL editor, then re-run the app."
            ) from exc
        raise
    return True
