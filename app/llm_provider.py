"""
LLM provider access for audit analysis and price-list optimization.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, etc.)
  - Degradation chain: primary model -> fallback model; mock only when no
    real provider is configured
  - Every provider failure leaves this module as TransientExternalError or
    PermanentExternalError
  - Supports: OpenAI, Ollama, any OpenAI-compatible API (vLLM, LiteLLM, etc.)

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                (primary model)
  LLM_FALLBACK_MODEL    = gpt-4o                     (fallback on primary failure)
  LLM_TEMPERATURE       = 0.3
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1   (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
  MOCK_LLM_ENABLED      = true                       (force mock mode)
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from app.errors import ExternalServiceError, PermanentExternalError, TransientExternalError
from app.pricing import PriceListService, ScrapedData
from app.runtime_profile import real_providers_required
from app.token_budget import check_prompt_budget, trim_lines_to_budget

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504, 529}
_TRANSIENT_NAMES = {"APITimeoutError", "APIConnectionError", "RateLimitError", "InternalServerError"}


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = ""
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.3
    max_tokens: int = 2048

    def __post_init__(self) -> None:
        if not self.model:
            self.model = os.environ.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


_call_usage_log: list[LLMUsage] = []


def get_usage_log() -> list[LLMUsage]:
    return list(_call_usage_log)


def reset_usage_log() -> None:
    _call_usage_log.clear()


def _get_provider_config() -> ProviderConfig:
    provider = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
    fallback = os.environ.get("LLM_FALLBACK_MODEL", "").strip()
    try:
        temperature = float(os.environ.get("LLM_TEMPERATURE", "0.3").strip())
    except ValueError:
        temperature = 0.3

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=os.environ.get("OLLAMA_MODEL", os.environ.get("LLM_MODEL", "")).strip(),
            fallback_model=fallback,
            api_key=os.environ.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
        )

    return ProviderConfig(
        provider=provider,
        model=os.environ.get("LLM_MODEL", "").strip(),
        fallback_model=fallback,
        api_key=os.environ.get("OPENAI_API_KEY", "").strip(),
        base_url=os.environ.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
    )


def is_real_llm_available() -> bool:
    from app.mock_llm import MOCK_LLM_ENABLED

    if MOCK_LLM_ENABLED:
        return False
    config = _get_provider_config()
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"

    return openai.OpenAI(**kwargs)


def classify_provider_exception(exc: Exception) -> ExternalServiceError:
    """Map any provider/client exception onto the closed external error taxonomy."""
    if isinstance(exc, ExternalServiceError):
        return exc
    detail = f"{type(exc).__name__}: {exc}"
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status in _TRANSIENT_STATUS:
            return TransientExternalError(f"LLM provider error {status}", code="LLM_UNAVAILABLE", detail=detail)
        return PermanentExternalError(f"LLM provider rejected request ({status})", code="LLM_REJECTED", detail=detail)
    if type(exc).__name__ in _TRANSIENT_NAMES or isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientExternalError("LLM provider unavailable", code="LLM_UNAVAILABLE", detail=detail)
    if "overloaded" in str(exc).lower():
        return TransientExternalError("LLM provider overloaded", code="LLM_OVERLOADED", detail=detail)
    return PermanentExternalError("LLM call failed", code="LLM_FAILED", detail=detail)


def _call_chat(
    *,
    client,
    model: str,
    messages: list[dict[str, str]],
    temperature: float = 0.3,
    max_tokens: int = 2048,
    json_mode: bool = False,
) -> tuple[str, LLMUsage]:
    """Call chat completions and return (content, usage)."""
    t0 = time.monotonic()
    kwargs: dict[str, Any] = {
        "model": model,
        "temperature": temperature,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    response = client.chat.completions.create(**kwargs)
    elapsed_ms = (time.monotonic() - t0) * 1000

    content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )
    _call_usage_log.append(usage)
    return content, usage


def _call_with_degradation(
    *,
    config: ProviderConfig,
    messages: list[dict[str, str]],
    temperature: float,
    json_mode: bool = False,
    max_tokens: int = 2048,
) -> tuple[str, LLMUsage]:
    """Try primary model, then fallback model, raising on total failure."""
    client = _create_client(config)

    try:
        return _call_chat(
            client=client,
            model=config.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
    except Exception as primary_exc:
        if not config.fallback_model:
            raise

        logger.warning(
            "Primary model %s failed (%s), degrading to %s",
            config.model,
            type(primary_exc).__name__,
            config.fallback_model,
        )
        content, usage = _call_chat(
            client=client,
            model=config.fallback_model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        usage.degraded = True
        usage.degrade_reason = f"primary_failed:{type(primary_exc).__name__}"
        return content, usage


def complete(
    prompt: str,
    *,
    temperature: float | None = None,
    max_tokens: int = 2048,
    system_prompt: str | None = None,
    json_mode: bool = False,
) -> str:
    """One blocking model call. Raises only TransientExternalError / PermanentExternalError."""
    config = _get_provider_config()
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    prompt_tokens = check_prompt_budget(prompt)
    try:
        content, usage = _call_with_degradation(
            config=config,
            messages=messages,
            temperature=config.temperature if temperature is None else temperature,
            json_mode=json_mode,
            max_tokens=max_tokens,
        )
    except Exception as exc:
        raise classify_provider_exception(exc) from exc
    logger.info(
        "llm_call model=%s prompt_tokens_est=%s total_tokens=%s latency_ms=%s degraded=%s",
        usage.model,
        prompt_tokens,
        usage.total_tokens,
        usage.latency_ms,
        usage.degraded,
    )
    if not content.strip():
        raise PermanentExternalError("LLM returned an empty response", code="LLM_EMPTY_RESPONSE")
    return content


_AUDIT_SYSTEM_PROMPT = """Jesteś ekspertem od cenników salonów beauty na platformie Booksy.
Oceniasz nazwy usług, opisy, strukturę kategorii i przejrzystość cen.
Odpowiadasz wyłącznie poprawnym JSON, po polsku, bez emoji."""

_AUDIT_USER_TEMPLATE = """Salon: {salon_name}
Liczba usług: {total_services}, kategorii: {total_categories}
Usługi z opisem: {with_description}/{total_services}
Usługi z czasem trwania: {with_duration}/{total_services}
Powtarzające się nazwy: {duplicates}

CENNIK:
{services_preview}

Zwróć JSON:
{{
  "naming_score": <0-20>,
  "descriptions_score": <0-20>,
  "structure_score": <0-15>,
  "pricing_score": <0-15>,
  "issues": [{{"severity": "critical|major|minor", "dimension": "<obszar>", "issue": "<problem>", "fix": "<poprawka>"}}],
  "missing_seo_keywords": [{{"keyword": "<fraza>", "search_volume": "high|medium|low", "suggested_placement": "<gdzie>"}}],
  "quick_wins": [{{"action": "<działanie>", "effort": "low|medium|high", "impact": "low|medium|high"}}],
  "summary": "<2-3 zdania podsumowania>",
  "recommendations": ["<rekomendacja>"]
}}"""

_KEYWORDS_PROMPT_TEMPLATE = """Jesteś ekspertem SEO dla salonów beauty na platformie Booksy.

KONTEKST:
- Salon: {salon_name}
- Kategorie: {categories}
- Znalezione słowa kluczowe: {found}
- Liczba usług: {total_services}

Zasugeruj 5-8 słów kluczowych, których BRAKUJE w cenniku, a które klientki wyszukują.

FORMAT ODPOWIEDZI:
- [słowo kluczowe]: [krótkie uzasadnienie]

Nie powtarzaj słów obecnych w cenniku. Używaj polskich nazw."""

_PROPOSAL_PROMPT_TEMPLATE = """Jesteś ekspertem UX salonów beauty. Zaproponuj optymalną strukturę kategorii.

OBECNA STRUKTURA:
{category_summary}

PRZYKŁADOWE USŁUGI:
{services_preview}

TOP SŁOWA KLUCZOWE:
{top_keywords}

Zasady: 8-12 kategorii, kategorie z sensem sprzedażowym, nie usuwaj usług, max 10 zmian, bez emoji.

FORMAT ODPOWIEDZI:
PROPOSED_CATEGORIES:
- [nazwa kategorii]

CHANGES:
CHANGE: [move_service/merge_categories/split_category/rename_category/reorder_categories/create_category]
FROM: [obecna kategoria lub N/A]
TO: [docelowa kategoria]
SERVICES: [nazwy usług oddzielone przecinkami, tylko dla move_service]
DESCRIPTION: [co zmienić]
REASON: [dlaczego]
---"""


def _services_preview(scraped: ScrapedData, *, per_category: int = 5) -> str:
    lines: list[str] = []
    for category in scraped.categories:
        lines.append(f"## {category.name}")
        for service in category.services[:per_category]:
            desc = f" - {service.description[:120]}" if service.description else ""
            lines.append(f"- {service.name} | {service.price}{desc}")
        if len(category.services) > per_category:
            lines.append(f"... i {len(category.services) - per_category} więcej")
    return "\n".join(trim_lines_to_budget(lines))


class LLMGateway:
    """Purpose-level model calls used by the pipelines.

    With ``use_mock`` the deterministic mock answers instead of the provider;
    this is chosen once at construction, never as a reaction to a failure.
    """

    def __init__(self, *, use_mock: bool) -> None:
        self.use_mock = use_mock

    def audit_narrative(self, scraped: ScrapedData, stats: dict[str, Any]) -> str:
        if self.use_mock:
            from app.mock_llm import mock_audit_narrative

            return mock_audit_narrative(scraped, stats)
        prompt = _AUDIT_USER_TEMPLATE.format(
            salon_name=scraped.salon_name or "Nieznany",
            total_services=stats["total_services"],
            total_categories=stats["total_categories"],
            with_description=stats["services_with_description"],
            with_duration=stats["services_with_duration"],
            duplicates=", ".join(stats["duplicate_names"]) or "brak",
            services_preview=_services_preview(scraped, per_category=8),
        )
        return complete(
            prompt,
            temperature=0.2,
            max_tokens=3000,
            system_prompt=_AUDIT_SYSTEM_PROMPT,
            json_mode=True,
        )

    def keyword_suggestions(self, scraped: ScrapedData, found_keywords: Sequence[str]) -> str:
        if self.use_mock:
            from app.mock_llm import mock_keyword_suggestions

            return mock_keyword_suggestions(scraped, found_keywords)
        prompt = _KEYWORDS_PROMPT_TEMPLATE.format(
            salon_name=scraped.salon_name or "Nieznany",
            categories=", ".join(category.name for category in scraped.categories) or "brak",
            found=", ".join(found_keywords) or "brak",
            total_services=scraped.total_services,
        )
        return complete(prompt, temperature=0.5, max_tokens=1024)

    def category_proposal(self, scraped: ScrapedData, top_keywords: Sequence[str]) -> str:
        if self.use_mock:
            from app.mock_llm import mock_category_proposal

            return mock_category_proposal(scraped)
        prompt = _PROPOSAL_PROMPT_TEMPLATE.format(
            category_summary="\n".join(f"- {c.name}: {len(c.services)} usług" for c in scraped.categories),
            services_preview=_services_preview(scraped),
            top_keywords=", ".join(top_keywords[:10]) or "brak",
        )
        return complete(prompt, temperature=0.4, max_tokens=3000)

    def optimize_services(
        self,
        *,
        prompt: str,
        services: Sequence[PriceListService],
        options: Sequence[str],
        temperature: float,
        max_tokens: int,
        system_prompt: str | None = None,
    ) -> str:
        if self.use_mock:
            from app.mock_llm import mock_optimize_services

            return mock_optimize_services(services, options)
        return complete(
            prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )


def create_llm_gateway_from_env(environ: Mapping[str, str] | None = None) -> LLMGateway:
    env = os.environ if environ is None else environ
    if is_real_llm_available():
        return LLMGateway(use_mock=False)
    if real_providers_required(env):
        raise RuntimeError("a real LLM provider is required when SPA_REQUIRE_REAL_PROVIDERS=true")
    logger.warning("llm_provider_unavailable using deterministic mock")
    return LLMGateway(use_mock=True)


def get_provider_info() -> dict[str, Any]:
    """Return current provider configuration (safe for logging, no secrets)."""
    config = _get_provider_config()
    return {
        "provider": config.provider,
        "model": config.model,
        "fallback_model": config.fallback_model or None,
        "base_url": config.base_url or "(default)",
        "has_api_key": bool(config.api_key),
        "real_llm_available": is_real_llm_available(),
        "temperature": config.temperature,
    }
