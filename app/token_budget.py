"""Token accounting for prompts sent to the model.

  - optimization prompt  <= PROMPT_TOKEN_BUDGET (default 12 000)
  - category proposal preview trimmed to PREVIEW_TOKEN_BUDGET (default 1 500)
"""

from __future__ import annotations

import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

PROMPT_TOKEN_BUDGET = int(os.environ.get("PROMPT_TOKEN_BUDGET", "12000"))
PREVIEW_TOKEN_BUDGET = int(os.environ.get("PREVIEW_TOKEN_BUDGET", "1500"))

_encoder: Any = None
_encoder_loaded = False


def _get_encoder() -> Any:
    global _encoder, _encoder_loaded
    if not _encoder_loaded:
        try:
            import tiktoken
            _encoder = tiktoken.get_encoding("cl100k_base")
        except Exception:
            # encoding files are fetched lazily; offline hosts fall back to the estimate
            _encoder = None
        _encoder_loaded = True
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens. Uses tiktoken (cl100k_base) when available, else ~4 bytes/token."""
    enc = _get_encoder()
    if enc is None:
        return max(1, len(text.encode("utf-8")) // 4)
    return len(enc.encode(text))


def max_tokens_for_services(service_count: int, *, floor: int = 1024, per_service: int = 120) -> int:
    """Completion budget large enough for one output line per service."""
    return max(floor, service_count * per_service)


def check_prompt_budget(prompt: str, *, budget: int = 0) -> int:
    limit = budget or PROMPT_TOKEN_BUDGET
    tokens = count_tokens(prompt)
    if tokens > limit:
        logger.warning("prompt_over_budget tokens=%s budget=%s", tokens, limit)
    return tokens


def trim_lines_to_budget(lines: list[str], *, budget: int = 0, min_lines: int = 1) -> list[str]:
    """Keep leading lines until the budget is spent, never fewer than ``min_lines``."""
    limit = budget or PREVIEW_TOKEN_BUDGET
    kept: list[str] = []
    total = 0
    for line in lines:
        tokens = count_tokens(line)
        if total + tokens > limit and len(kept) >= min_lines:
            break
        kept.append(line)
        total += tokens
    return kept
