"""Salon profile scrapers.

Configuration via environment variables:
  SCRAPER_BACKEND      = booksy | static        (default: booksy)
  BOOKSY_API_BASE      = https://pl.booksy.com/core/v2/customer_api
  BOOKSY_API_KEY       = web-...                 (x-api-key header)
  BOOKSY_ACCESS_TOKEN  = ...                     (x-access-token header)
  SCRAPER_TIMEOUT_S    = 30
  SCRAPER_FIXTURE_PATH = path to a JSON profile served by the static backend
"""

from __future__ import annotations

import json
import logging
import os
import re
import socket
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib import parse, request
from urllib.error import HTTPError, URLError

from pydantic import ValidationError

from app.errors import ExternalServiceError, PermanentExternalError, TransientExternalError
from app.pricing import ScrapedCategory, ScrapedData, ScrapedService, ServiceVariant
from app.runtime_profile import real_providers_required

logger = logging.getLogger(__name__)

DEFAULT_BOOKSY_API_BASE = "https://pl.booksy.com/core/v2/customer_api"
MAX_DESCRIPTION_CHARS = 500
MIN_SERVICES = 3

_BUSINESS_ID_RE = re.compile(r"/[a-z]{2}-[a-z]{2}/(\d+)_")
_TRANSIENT_HTTP = {408, 425, 429, 500, 502, 503, 504}


def is_valid_booksy_url(url: str) -> bool:
    try:
        parsed = parse.urlparse(url.strip())
    except ValueError:
        return False
    if parsed.scheme not in {"http", "https"}:
        return False
    host = (parsed.hostname or "").lower()
    return host == "booksy.com" or host.endswith(".booksy.com")


def normalize_profile_url(url: str) -> str:
    parsed = parse.urlparse(url.strip())
    path = parsed.path.rstrip("/")
    return f"{(parsed.hostname or '').lower()}{path}"


def extract_business_id(url: str) -> str | None:
    match = _BUSINESS_ID_RE.search(url)
    return match.group(1) if match else None


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}min"
    hours, mins = divmod(minutes, 60)
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}min"


def _price_text(service_price: Any, price: Any, *, default: str = "") -> str:
    if isinstance(service_price, str) and service_price.strip():
        return service_price.strip()
    if isinstance(price, (int, float)) and price:
        return f"{price:g} zł"
    return default


def convert_booksy_business(payload: dict[str, Any]) -> ScrapedData:
    """Map the Booksy customer API business document onto ``ScrapedData``.

    Price variants are kept one-to-one; the service duration is taken from
    its first variant.
    """
    business = payload.get("business")
    if not isinstance(business, dict):
        raise PermanentExternalError(
            "Nie znaleziono danych salonu w odpowiedzi Booksy",
            code="SCRAPE_NO_BUSINESS",
        )
    categories: list[ScrapedCategory] = []
    for raw_category in business.get("service_categories") or []:
        services: list[ScrapedService] = []
        for raw_service in raw_category.get("services") or []:
            raw_variants = raw_service.get("variants") or []
            variants = [
                ServiceVariant(
                    label=str(v.get("label") or ""),
                    price=_price_text(v.get("service_price"), v.get("price")),
                    duration=format_duration(int(v["duration"])) if v.get("duration") else None,
                )
                for v in raw_variants
            ]
            first = raw_variants[0] if raw_variants else {}
            description = raw_service.get("description")
            services.append(
                ScrapedService(
                    name=str(raw_service.get("name") or "").strip(),
                    price=_price_text(raw_service.get("service_price"), raw_service.get("price"), default="Darmowa"),
                    duration=format_duration(int(first["duration"])) if first.get("duration") else None,
                    description=description[:MAX_DESCRIPTION_CHARS] if isinstance(description, str) else None,
                    variants=variants or None,
                )
            )
        categories.append(ScrapedCategory(name=str(raw_category.get("name") or ""), services=services))
    location = business.get("location") or {}
    return ScrapedData(
        salon_name=business.get("name"),
        salon_address=location.get("address") if isinstance(location, dict) else None,
        salon_logo_url=business.get("photo"),
        categories=categories,
    )


def validate_scraped_data(data: ScrapedData) -> None:
    if not data.categories:
        raise PermanentExternalError(
            "Nie znaleziono kategorii usług na stronie Booksy",
            code="SCRAPE_NO_CATEGORIES",
        )
    if data.total_services < MIN_SERVICES:
        raise PermanentExternalError(
            f"Za mało usług do analizy (znaleziono: {data.total_services}, minimum: {MIN_SERVICES})",
            code="SCRAPE_TOO_FEW_SERVICES",
        )
    empty = sum(1 for category in data.categories if not category.services)
    if empty > len(data.categories) * 0.5:
        raise PermanentExternalError(
            "Dane niekompletne - zbyt wiele pustych kategorii",
            code="SCRAPE_TOO_MANY_EMPTY_CATEGORIES",
        )


class BooksyApiScraper:
    def __init__(
        self,
        *,
        api_base: str = DEFAULT_BOOKSY_API_BASE,
        api_key: str = "",
        access_token: str = "",
        timeout_s: float = 30.0,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout_s = timeout_s

    def _headers(self) -> dict[str, str]:
        headers = {
            "accept": "application/json, text/plain, */*",
            "accept-language": "pl-PL, pl",
            "x-app-version": "3.0",
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        if self.access_token:
            headers["x-access-token"] = self.access_token
        return headers

    def _get_json(self, url: str) -> dict[str, Any]:
        req = request.Request(url, method="GET", headers=self._headers())
        try:
            with request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as exc:
            if exc.code in _TRANSIENT_HTTP:
                raise TransientExternalError(
                    f"Booksy API error: {exc.code}", code="SCRAPE_HTTP_TRANSIENT", detail=str(exc)
                ) from exc
            if exc.code == 404:
                raise PermanentExternalError(
                    "Nie znaleziono profilu salonu na Booksy", code="SCRAPE_PROFILE_NOT_FOUND", detail=str(exc)
                ) from exc
            raise PermanentExternalError(
                f"Booksy API error: {exc.code}", code="SCRAPE_HTTP_REJECTED", detail=str(exc)
            ) from exc
        except (TimeoutError, socket.timeout) as exc:
            raise TransientExternalError("Booksy API timeout", code="SCRAPE_TIMEOUT", detail=str(exc)) from exc
        except URLError as exc:
            raise TransientExternalError(
                "Booksy API unreachable", code="SCRAPE_CONNECTION", detail=str(exc.reason)
            ) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PermanentExternalError(
                "Booksy API returned malformed JSON", code="SCRAPE_MALFORMED", detail=str(exc)
            ) from exc
        if not isinstance(data, dict):
            raise PermanentExternalError("Booksy API returned malformed JSON", code="SCRAPE_MALFORMED")
        return data

    def scrape(self, profile_url: str) -> ScrapedData:
        business_id = extract_business_id(profile_url)
        if business_id is None:
            raise PermanentExternalError(
                "Nie rozpoznano identyfikatora salonu w adresie Booksy",
                code="SCRAPE_BAD_URL",
                detail=f"no business id in {profile_url}",
            )
        url = f"{self.api_base}/businesses/{business_id}/?no_thumbs=true&with_markdown=1&with_combos=1"
        logger.info("booksy_fetch business_id=%s", business_id)
        payload = self._get_json(url)
        try:
            return convert_booksy_business(payload)
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            raise PermanentExternalError(
                "Nie udało się odczytać cennika z Booksy", code="SCRAPE_MALFORMED", detail=str(exc)
            ) from exc


SAMPLE_PROFILE: dict[str, Any] = {
    "salon_name": "Studio Urody Przykład",
    "salon_address": "ul. Przykładowa 1, Warszawa",
    "categories": [
        {
            "name": "Twarz",
            "services": [
                {"name": "Oczyszczanie wodorowe", "price": "180 zł", "duration": "1h"},
                {"name": "Mezoterapia mikroigłowa", "price": "od 350 zł", "duration": "1h 30min"},
                {"name": "Peeling kawitacyjny", "price": "120 zł"},
            ],
        },
        {
            "name": "Dłonie",
            "services": [
                {"name": "Manicure hybrydowy", "price": "110 zł", "duration": "1h"},
                {
                    "name": "Pedicure",
                    "price": "od 140 zł",
                    "variants": [
                        {"label": "klasyczny", "price": "140 zł", "duration": "1h"},
                        {"label": "hybrydowy", "price": "170 zł", "duration": "1h 15min"},
                    ],
                },
            ],
        },
    ],
}


class StaticScraper:
    """Serves fixed profiles; used for local runs and tests."""

    def __init__(self, profiles: Mapping[str, Any] | None = None, *, default: Any = None) -> None:
        self._profiles = {normalize_profile_url(url): value for url, value in (profiles or {}).items()}
        self._default = default
        self.calls: list[str] = []

    def scrape(self, profile_url: str) -> ScrapedData:
        self.calls.append(profile_url)
        value = self._profiles.get(normalize_profile_url(profile_url), self._default)
        if isinstance(value, ExternalServiceError):
            raise value
        if callable(value):
            value = value(profile_url)
        if value is None:
            raise PermanentExternalError("Nie znaleziono profilu salonu", code="SCRAPE_PROFILE_NOT_FOUND")
        return value if isinstance(value, ScrapedData) else ScrapedData.model_validate(value)


def create_scraper_from_env(environ: Mapping[str, str] | None = None) -> BooksyApiScraper | StaticScraper:
    env = os.environ if environ is None else environ
    backend = env.get("SCRAPER_BACKEND", "booksy").strip().lower()
    if backend == "static":
        if real_providers_required(env):
            raise RuntimeError("SCRAPER_BACKEND=static is not allowed when SPA_REQUIRE_REAL_PROVIDERS=true")
        fixture_path = env.get("SCRAPER_FIXTURE_PATH", "").strip()
        default: Any = SAMPLE_PROFILE
        if fixture_path:
            default = json.loads(Path(fixture_path).read_text(encoding="utf-8"))
        return StaticScraper(default=default)
    if backend == "booksy":
        try:
            timeout_s = float(env.get("SCRAPER_TIMEOUT_S", "30") or "30")
        except ValueError:
            timeout_s = 30.0
        return BooksyApiScraper(
            api_base=env.get("BOOKSY_API_BASE", DEFAULT_BOOKSY_API_BASE).strip() or DEFAULT_BOOKSY_API_BASE,
            api_key=env.get("BOOKSY_API_KEY", "").strip(),
            access_token=env.get("BOOKSY_ACCESS_TOKEN", "").strip(),
            timeout_s=max(1.0, timeout_s),
        )
    raise RuntimeError(f"unsupported scraper backend: {backend}")
