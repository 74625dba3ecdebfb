from __future__ import annotations

import base64
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from google import genai
from google.genai import types as genai_types
from openai import OpenAI

from ai_provider import OPENAI, is_gemini_provider, provider_for_model
from report_utils import parse_model_json

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
DEFAULT_FALLBACK_MODELS = ["gemini-2.0-flash", "gemini-1.5-flash"]
# Consultation and image work fall back to the strongest flash model first.
ADVANCED_FALLBACK_MODELS = ["gemini-2.5-flash", "gemini-2.0-flash"]

MODEL_STATUS_MESSAGES = {
    1: "Primary model responded",
    2: "Responded with backup model",
    3: "Responded with fallback model",
}

ERROR_MESSAGES = {
    "API_KEY_LEAKED": "API key has been flagged as leaked. Please generate a new API key from Google AI Studio.",
    "API_KEY_INVALID": "Invalid API key. Please check the GEMINI_API_KEY configuration.",
    "API_QUOTA_EXCEEDED": "API quota exceeded. Please wait a moment or check your Google AI Studio billing.",
    "MODEL_NOT_FOUND": "AI model not available. Please try again or contact support.",
    "CONNECTION_ERROR": "Unable to reach the AI service. Please check your connection and try again.",
    "TIMEOUT": "The AI service took too long to respond. Please try again.",
    "UNKNOWN_ERROR": "An error occurred. Please try again.",
}


@dataclass(frozen=True)
class Part:
    """Inline binary input (image or audio) sent alongside the prompt."""

    mime_type: str
    data: bytes

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class LLMResult:
    text: str
    model: str
    usage: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class FallbackResult:
    text: str
    model_used: int
    model_id: str
    status: str
    parsed: Optional[Dict[str, Any]] = None
    usage: Optional[Dict[str, Any]] = None


class QuotaExhaustedError(RuntimeError):
    pass


class AllModelsFailedError(RuntimeError):
    def __init__(self, message: str, errors: Optional[List[Tuple[str, str]]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass
class _Attempts:
    last_err: Optional[Exception] = None
    quota_only: bool = True
    errors: List[Tuple[str, str]] = field(default_factory=list)


def _env(name: str, default: Optional[str] = None) -> str:
    v = os.getenv(name, default)
    if v is None or v == "":
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def _split_env_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    parts = [item.strip() for item in re.split(r"[,\n;]+", raw) if item.strip()]
    return parts


def _numbered_env_values(prefix: str, max_items: int = 10) -> List[str]:
    values: List[str] = []
    for idx in range(1, max_items + 1):
        val = os.getenv(f"{prefix}{idx}")
        if val and val.strip():
            values.append(val.strip())
    return values


def _dedupe_list(values: Sequence[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def _gemini_api_keys() -> List[str]:
    raw = os.getenv("GEMINI_API_KEYS") or os.getenv("GOOGLE_API_KEYS")
    keys = _split_env_list(raw)
    if keys:
        return keys
    keys = []
    for name in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY"):
        val = os.getenv(name)
        if val and val.strip():
            keys.append(val.strip())
    keys.extend(_numbered_env_values("GEMINI_API_KEY"))
    keys = _dedupe_list(keys)
    if not keys:
        raise RuntimeError("Missing required env var: set GEMINI_API_KEY or GOOGLE_API_KEY")
    return keys


def has_gemini_key() -> bool:
    try:
        return bool(_gemini_api_keys())
    except RuntimeError:
        return False


def _timeout_ms(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return int(seconds * 1000)


def _max_retries() -> int:
    return int(os.getenv("GEMINI_MAX_RETRIES") or os.getenv("LLM_MAX_RETRIES", "1"))


_GEMINI_CLIENTS: Dict[str, genai.Client] = {}
_OPENAI_CLIENT: Optional[OpenAI] = None


def _get_gemini_client(api_key: str) -> genai.Client:
    cached = _GEMINI_CLIENTS.get(api_key)
    if cached is not None:
        return cached
    api_version = (os.getenv("GEMINI_API_VERSION") or "v1beta").strip() or "v1beta"
    http_kwargs: Dict[str, Any] = {"api_version": api_version}
    timeout_val = _timeout_ms(os.getenv("GEMINI_TIMEOUT_S")) or _timeout_ms("60")
    if timeout_val is not None:
        http_kwargs["timeout"] = timeout_val
    client = genai.Client(api_key=api_key, http_options=genai_types.HttpOptions(**http_kwargs))
    _GEMINI_CLIENTS[api_key] = client
    return client


def _get_openai_client() -> OpenAI:
    global _OPENAI_CLIENT
    if _OPENAI_CLIENT is not None:
        return _OPENAI_CLIENT
    kwargs: Dict[str, Any] = {"api_key": _env("OPENAI_API_KEY")}
    base_url = os.getenv("OPENAI_BASE_URL")
    if base_url:
        kwargs["base_url"] = base_url
    _OPENAI_CLIENT = OpenAI(**kwargs)
    return _OPENAI_CLIENT


def _gemini_usage_dict(response: Any) -> Optional[Dict[str, Any]]:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None
    if isinstance(usage, dict):
        return usage
    dump_fn = getattr(usage, "model_dump", None)
    if callable(dump_fn):
        data = dump_fn(exclude_none=True)
        if isinstance(data, dict):
            return data
    return {"usage_raw": str(usage)}


def _extract_gemini_text(response: Any) -> str:
    text = getattr(response, "text", None)
    if isinstance(text, str) and text.strip():
        return text

    pieces: List[str] = []
    candidates = getattr(response, "candidates", None) or []
    for cand in candidates:
        content = getattr(cand, "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            part_text = getattr(part, "text", None)
            if part_text:
                pieces.append(str(part_text))
    return "\n".join(pieces).strip()


def _raise_if_blocked(response: Any) -> None:
    feedback = getattr(response, "prompt_feedback", None)
    if not feedback:
        return
    block_reason = getattr(feedback, "block_reason", None)
    if not block_reason:
        return
    reason_str = str(block_reason).upper()
    if "UNSPECIFIED" in reason_str:
        return
    raise RuntimeError(f"Gemini blocked the request: {reason_str}")


def _gemini_contents(prompt: str, parts: Optional[Sequence[Part]]) -> Any:
    if not parts:
        return prompt
    contents: List[Any] = [genai_types.Part.from_bytes(data=p.data, mime_type=p.mime_type) for p in parts]
    contents.append(prompt)
    return contents


def _gemini_config(system: Optional[str], temperature: float, json_mode: bool) -> Dict[str, Any]:
    config: Dict[str, Any] = {"temperature": temperature}
    if system:
        config["system_instruction"] = system
    if json_mode:
        config["response_mime_type"] = "application/json"
    return config


def _gemini_generate(
    prompt: str,
    *,
    model_name: str,
    api_key: str,
    system: Optional[str],
    parts: Optional[Sequence[Part]],
    temperature: float,
    json_mode: bool,
) -> Tuple[str, Optional[Dict[str, Any]]]:
    client = _get_gemini_client(api_key)
    response = client.models.generate_content(
        model=model_name,
        contents=_gemini_contents(prompt, parts),
        config=_gemini_config(system, temperature, json_mode),
    )
    _raise_if_blocked(response)
    return _extract_gemini_text(response), _gemini_usage_dict(response)


def _openai_input(prompt: str, parts: Optional[Sequence[Part]]) -> Any:
    if not parts:
        return prompt
    content: List[Dict[str, Any]] = [{"type": "input_text", "text": prompt}]
    for p in parts:
        if p.is_audio:
            raise RuntimeError("Audio analysis requires the Gemini provider")
        content.append({"type": "input_image", "image_url": p.data_url()})
    return [{"role": "user", "content": content}]


def _openai_generate(
    prompt: str,
    *,
    model_name: str,
    system: Optional[str],
    parts: Optional[Sequence[Part]],
    temperature: float,
) -> Tuple[str, Optional[Dict[str, Any]]]:
    client = _get_openai_client()
    kwargs: Dict[str, Any] = {
        "model": model_name,
        "input": _openai_input(prompt, parts),
        "temperature": temperature,
        "timeout": float(os.getenv("OPENAI_TIMEOUT_S", "60")),
    }
    if system:
        kwargs["instructions"] = system
    resp = client.responses.create(**kwargs)
    usage = None
    resp_usage = getattr(resp, "usage", None)
    if resp_usage is not None:
        dump_fn = getattr(resp_usage, "model_dump", None)
        usage = dump_fn() if callable(dump_fn) else {"usage_raw": str(resp_usage)}
    return resp.output_text or "", usage


def _is_quota_error(err: Exception) -> bool:
    code = getattr(err, "code", None) or getattr(err, "status_code", None)
    if isinstance(code, int) and code == 429:
        return True
    name = err.__class__.__name__.lower()
    if "resourceexhausted" in name or "toomanyrequests" in name or "ratelimit" in name:
        return True
    text = str(err).lower()
    return (
        "resource_exhausted" in text
        or "quota" in text
        or "rate limit" in text
        or "rate_limit" in text
        or "429" in text
    )


def parse_api_error(err: Any) -> Tuple[str, str]:
    """
    Classify a provider error into (error_code, user-facing message).
    """
    text = str(err or "")
    lowered = text.lower()
    if "leaked" in lowered or "api key was reported" in lowered:
        code = "API_KEY_LEAKED"
    elif "api_key_invalid" in lowered or "api key not valid" in lowered or "invalid api key" in lowered:
        code = "API_KEY_INVALID"
    elif isinstance(err, Exception) and _is_quota_error(err):
        code = "API_QUOTA_EXCEEDED"
    elif "quota" in lowered or "rate_limit" in lowered or "429" in lowered:
        code = "API_QUOTA_EXCEEDED"
    elif "not found" in lowered or "does not exist" in lowered or "404" in lowered:
        code = "MODEL_NOT_FOUND"
    elif "timeout" in lowered or "timed out" in lowered or "deadline" in lowered:
        code = "TIMEOUT"
    elif "fetch" in lowered or "network" in lowered or "connection" in lowered:
        code = "CONNECTION_ERROR"
    else:
        code = "UNKNOWN_ERROR"
    return code, ERROR_MESSAGES[code]


def _uses_openai(model: Optional[str]) -> bool:
    # With only an OpenAI key every call goes there; gpt-* ids always do.
    return not is_gemini_provider() or provider_for_model(model) == OPENAI


def fallback_order(primary: Optional[str], fallbacks: Optional[Sequence[str]] = None) -> List[str]:
    models: List[str] = []
    if primary:
        models.append(primary)
    models.extend(m for m in (fallbacks or []) if m != primary)
    return _dedupe_list(models) or [DEFAULT_MODEL]


def generate(
    prompt: str,
    *,
    model: Optional[str] = None,
    system: Optional[str] = None,
    parts: Optional[Sequence[Part]] = None,
    temperature: float = 0.4,
    json_mode: bool = False,
) -> LLMResult:
    """
    One model, every configured key. Quota errors move on to the next key;
    other errors are retried with backoff.
    """
    if _uses_openai(model):
        model_name = model if model and not model.startswith("gemini") else os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        text, usage = _openai_generate(
            prompt,
            model_name=model_name,
            system=system,
            parts=parts,
            temperature=temperature,
        )
        return LLMResult(text=text, model=model_name, usage=usage)

    model_name = model or DEFAULT_MODEL
    max_retries = _max_retries()
    attempts = _Attempts()

    for api_key in _gemini_api_keys():
        quota_error = False
        for attempt in range(max_retries + 1):
            try:
                text, usage = _gemini_generate(
                    prompt,
                    model_name=model_name,
                    api_key=api_key,
                    system=system,
                    parts=parts,
                    temperature=temperature,
                    json_mode=json_mode,
                )
                return LLMResult(text=text, model=model_name, usage=usage)
            except Exception as e:
                attempts.last_err = e
                if _is_quota_error(e):
                    quota_error = True
                    break
                if attempt >= max_retries:
                    break
                time.sleep(0.5 * (2**attempt))
        if quota_error:
            continue
        attempts.quota_only = False
        # Non-quota failures are not key specific.
        break

    if attempts.quota_only and attempts.last_err is not None:
        raise QuotaExhaustedError(
            f"Gemini quota reached for all configured keys ({model_name})."
        ) from attempts.last_err
    raise RuntimeError(f"LLM call failed after retries: {attempts.last_err}") from attempts.last_err


def generate_with_fallback(
    prompt: str,
    *,
    models: Sequence[str],
    system: Optional[str] = None,
    parts: Optional[Sequence[Part]] = None,
    temperature: float = 0.4,
    json_mode: bool = False,
    parse_json: bool = False,
    validator: Optional[Callable[[str, Optional[Dict[str, Any]]], bool]] = None,
    context: str = "generation",
) -> FallbackResult:
    """
    Try each model in order; empty or rejected responses fall through to the next.
    """
    order = _dedupe_list(models) or [DEFAULT_MODEL]
    attempts = _Attempts()

    for idx, model_name in enumerate(order, start=1):
        started = time.monotonic()
        try:
            res = generate(
                prompt,
                model=model_name,
                system=system,
                parts=parts,
                temperature=temperature,
                json_mode=json_mode,
            )
        except Exception as e:
            attempts.last_err = e
            attempts.errors.append((model_name, str(e)))
            if not isinstance(e, QuotaExhaustedError):
                attempts.quota_only = False
            logger.warning("[%s] model %s failed: %s", context, model_name, e)
            _record(model_name, started, success=False)
            continue

        text = (res.text or "").strip()
        if not text:
            attempts.quota_only = False
            attempts.errors.append((model_name, "empty response"))
            logger.warning("[%s] model %s returned an empty response", context, model_name)
            _record(model_name, started, success=False)
            continue

        parsed: Optional[Dict[str, Any]] = None
        if parse_json:
            try:
                parsed = parse_model_json(text)
            except ValueError:
                parsed = None

        if validator is not None and not validator(text, parsed):
            attempts.quota_only = False
            attempts.errors.append((model_name, "rejected by validator"))
            logger.info("[%s] model %s output rejected by validator", context, model_name)
            _record(model_name, started, success=False)
            continue

        _record(model_name, started, success=True)
        logger.info("[%s] success with model %s (%d/%d)", context, model_name, idx, len(order))
        return FallbackResult(
            text=text,
            parsed=parsed,
            model_used=idx,
            model_id=model_name,
            status=MODEL_STATUS_MESSAGES.get(idx, f"Responded with fallback model {idx}"),
            usage=res.usage,
        )

    if attempts.quota_only and attempts.last_err is not None:
        raise QuotaExhaustedError(
            "Gemini quota reached for all configured keys/models. Please try again later."
        ) from attempts.last_err
    raise AllModelsFailedError(f"All models failed for {context}", attempts.errors) from attempts.last_err


def _record(model_name: str, started: float, *, success: bool) -> None:
    from model_router import get_router

    elapsed_ms = (time.monotonic() - started) * 1000.0
    get_router().record_performance(model_name, elapsed_ms, success)


def stream_text(
    prompt: str,
    *,
    model: Optional[str] = None,
    system: Optional[str] = None,
    history: Optional[Sequence[Dict[str, str]]] = None,
    temperature: float = 0.7,
) -> Iterator[str]:
    """Yield text chunks. History items are {"role": "user"|"assistant", "content": str}."""
    model_name = model or DEFAULT_MODEL
    turns = list(history or [])

    if _uses_openai(model):
        client = _get_openai_client()
        messages = [{"role": t.get("role", "user"), "content": t.get("content", "")} for t in turns]
        messages.append({"role": "user", "content": prompt})
        kwargs: Dict[str, Any] = {
            "model": model_name if not model_name.startswith("gemini") else os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            "input": messages,
            "temperature": temperature,
            "stream": True,
        }
        if system:
            kwargs["instructions"] = system
        for event in client.responses.create(**kwargs):
            if getattr(event, "type", "") == "response.output_text.delta":
                yield str(getattr(event, "delta", "") or "")
        return

    contents: List[Dict[str, Any]] = []
    for t in turns:
        role = "model" if t.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": str(t.get("content", ""))}]})
    contents.append({"role": "user", "parts": [{"text": prompt}]})

    client = _get_gemini_client(_gemini_api_keys()[0])
    for chunk in client.models.generate_content_stream(
        model=model_name,
        contents=contents,
        config=_gemini_config(system, temperature, False),
    ):
        piece = getattr(chunk, "text", None)
        if piece:
            yield piece


def stream_with_fallback(
    prompt: str,
    *,
    models: Sequence[str],
    system: Optional[str] = None,
    history: Optional[Sequence[Dict[str, str]]] = None,
    temperature: float = 0.7,
    context: str = "stream",
) -> Iterator[str]:
    """
    Stream from the first model that produces output. A model is only abandoned
    before its first chunk; once text has been sent, errors propagate.
    """
    order = _dedupe_list(models) or [DEFAULT_MODEL]
    errors: List[Tuple[str, str]] = []
    last_err: Optional[Exception] = None
    for model_name in order:
        chunks = stream_text(prompt, model=model_name, system=system, history=history, temperature=temperature)
        try:
            first = next(chunks)
        except StopIteration:
            errors.append((model_name, "empty response"))
            logger.warning("[%s] model %s streamed nothing", context, model_name)
            continue
        except Exception as e:
            last_err = e
            errors.append((model_name, str(e)))
            logger.warning("[%s] model %s failed before streaming: %s", context, model_name, e)
            continue
        logger.info("[%s] streaming with model %s", context, model_name)
        yield first
        yield from chunks
        return
    raise AllModelsFailedError(f"All models failed for {context}", errors) from last_err
