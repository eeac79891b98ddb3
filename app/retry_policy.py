from __future__ import annotations

from dataclasses import dataclass

from app.errors import ExternalServiceError

RETRY_DELAYS_MS: tuple[int, ...] = (30_000, 120_000, 300_000)
DEFAULT_MAX_RETRIES = 3

ERROR_CLASS_TRANSIENT = "transient"
ERROR_CLASS_PERMANENT = "permanent"


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay_ms: int
    attempt: int

    def as_dict(self) -> dict[str, object]:
        return {
            "should_retry": self.should_retry,
            "delay_ms": self.delay_ms,
            "attempt": self.attempt,
        }


def decide_retry(
    retry_count: int,
    *,
    error_class: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> RetryDecision:
    """Decide whether a failed step gets another attempt.

    ``retry_count`` is the number of failures already recorded for the job,
    so the failure being decided on is attempt ``retry_count + 1``.
    """
    attempt = max(0, int(retry_count)) + 1
    if error_class != ERROR_CLASS_TRANSIENT:
        return RetryDecision(should_retry=False, delay_ms=0, attempt=attempt)
    if attempt > max(0, int(max_retries)):
        return RetryDecision(should_retry=False, delay_ms=0, attempt=attempt)
    idx = min(attempt, len(RETRY_DELAYS_MS)) - 1
    return RetryDecision(should_retry=True, delay_ms=RETRY_DELAYS_MS[idx], attempt=attempt)


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, ExternalServiceError):
        return exc.error_class
    return ERROR_CLASS_PERMANENT


def error_detail(exc: BaseException) -> str:
    if isinstance(exc, ExternalServiceError):
        return exc.detail
    return f"{type(exc).__name__}: {exc}"


_FRIENDLY_MESSAGES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("overloaded", "503", "unavailable"),
        "Serwis AI jest chwilowo przeciążony. Spróbuj ponownie za kilka minut.",
    ),
    (
        ("rate limit", "429", "quota"),
        "Przekroczono limit zapytań do AI. Spróbuj ponownie za chwilę.",
    ),
    (
        ("timeout", "timed out"),
        "Przekroczono czas oczekiwania na odpowiedź. Spróbuj ponownie.",
    ),
    (
        ("json", "parse", "format", "count mismatch"),
        "AI zwróciło odpowiedź w nieoczekiwanym formacie. Spróbuj ponownie.",
    ),
    (
        ("api key", "api_key", "unauthorized", "401"),
        "Błąd konfiguracji serwisu. Skontaktuj się z pomocą techniczną.",
    ),
)

DEFAULT_FRIENDLY_MESSAGE = "Wystąpił nieoczekiwany błąd podczas przetwarzania. Spróbuj ponownie później."


def user_facing_message(raw: str) -> str:
    """Map a technical error text onto a message safe to show the salon owner."""
    lowered = (raw or "").lower()
    for needles, message in _FRIENDLY_MESSAGES:
        if any(needle in lowered for needle in needles):
            return message
    return DEFAULT_FRIENDLY_MESSAGE
