from __future__ import annotations

from collections.abc import Mapping
import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def real_providers_required(environ: Mapping[str, str] | None = None) -> bool:
    """True when silent fallbacks (memory queue, mock LLM, static scraper) are forbidden."""
    env = os.environ if environ is None else environ
    return _as_bool(env.get("SPA_REQUIRE_REAL_PROVIDERS", "false"))
