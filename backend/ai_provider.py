from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

GEMINI = "gemini"
OPENAI = "openai"

_ALIASES = {
    "gemini": GEMINI,
    "google": GEMINI,
    "googleai": GEMINI,
    "default": GEMINI,
    "openai": OPENAI,
    "oai": OPENAI,
}

# Model ids that only one provider can serve.
_OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4")


@lru_cache(maxsize=1)
def get_ai_provider() -> str:
    """
    LLM_PROVIDER / AI_PROVIDER when set; otherwise Gemini unless only an
    OpenAI key is configured.
    """
    explicit = (os.getenv("LLM_PROVIDER") or os.getenv("AI_PROVIDER") or "").strip()
    if explicit:
        provider = _ALIASES.get(explicit.lower())
        if provider is None:
            raise RuntimeError(f"Unknown AI provider specified: {explicit}")
        return provider

    gemini_configured = any(
        os.getenv(name) for name in ("GEMINI_API_KEY", "GEMINI_API_KEYS", "GOOGLE_API_KEY", "GOOGLE_API_KEYS")
    )
    if os.getenv("OPENAI_API_KEY") and not gemini_configured:
        return OPENAI
    return GEMINI


def provider_for_model(model: Optional[str]) -> str:
    """A model id pins its provider; gemini-* and gpt-* ids never cross over."""
    name = (model or "").strip().lower()
    if name.startswith("gemini"):
        return GEMINI
    if name.startswith(_OPENAI_PREFIXES):
        return OPENAI
    return get_ai_provider()


def is_gemini_provider() -> bool:
    return get_ai_provider() == GEMINI
