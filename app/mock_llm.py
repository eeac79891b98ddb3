"""
Mock LLM - deterministic model output for local runs and end-to-end tests.

Used when MOCK_LLM_ENABLED=true or when no real provider is configured.
Every function returns the same text for the same input.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Sequence
from typing import Any

from app.analysis_engine import BEAUTY_KEYWORDS
from app.pricing import PriceListService, ScrapedData

MOCK_LLM_ENABLED = os.getenv("MOCK_LLM_ENABLED", "false").lower() == "true"


def _deterministic_float(seed: str, min_val: float = 0.0, max_val: float = 1.0) -> float:
    """Deterministic float in [min_val, max_val] derived from ``seed``."""
    h = hashlib.sha256(seed.encode()).hexdigest()
    val = int(h[:8], 16) / 0xFFFFFFFF
    return min_val + val * (max_val - min_val)


def mock_audit_narrative(scraped: ScrapedData, stats: dict[str, Any]) -> str:
    seed = scraped.salon_name or "salon"
    total = max(1, int(stats.get("total_services", 0)))
    desc_rate = int(stats.get("services_with_description", 0)) / total
    missing = [kw for kw in ("mezoterapia", "oczyszczanie", "konsultacja") if kw not in json.dumps(
        scraped.model_dump(), ensure_ascii=False
    ).lower()]
    payload = {
        "naming_score": round(_deterministic_float(f"{seed}:naming", 10, 18)),
        "descriptions_score": round(4 + desc_rate * 14),
        "structure_score": round(_deterministic_float(f"{seed}:structure", 8, 14)),
        "pricing_score": round(_deterministic_float(f"{seed}:pricing", 9, 14)),
        "issues": [
            {
                "severity": "major" if desc_rate < 0.5 else "minor",
                "dimension": "descriptions",
                "issue": f"Opisy ma {stats.get('services_with_description', 0)} z {total} usług",
                "fix": "Dodaj opisy z korzyściami dla klientki",
            }
        ],
        "missing_seo_keywords": [
            {"keyword": kw, "search_volume": "medium", "suggested_placement": "nazwa usługi"}
            for kw in missing[:2]
        ],
        "quick_wins": [{"action": "Uzupełnij czas trwania usług", "effort": "low", "impact": "medium"}],
        "summary": f"Cennik salonu {seed} jest czytelny, ale wymaga uzupełnienia opisów.",
        "recommendations": ["Dodaj opisy usług", "Ujednolić format cen"],
    }
    return json.dumps(payload, ensure_ascii=False)


def mock_keyword_suggestions(scraped: ScrapedData, found_keywords: Sequence[str]) -> str:
    found = set(found_keywords)
    picks = [kw for kw in BEAUTY_KEYWORDS if kw not in found and len(kw) > 4][:5]
    return "\n".join(f"- {kw}: często wyszukiwane przez klientki" for kw in picks)


def mock_category_proposal(scraped: ScrapedData) -> str:
    names = [category.name for category in scraped.categories]
    lines = ["PROPOSED_CATEGORIES:", "- Bestsellery"]
    lines.extend(f"- {name}" for name in names)
    lines.extend(
        [
            "",
            "CHANGES:",
            "CHANGE: create_category",
            "FROM: N/A",
            "TO: Bestsellery",
            "DESCRIPTION: Dodaj kategorię z najpopularniejszymi usługami na początku cennika",
            "REASON: Nowe klientki szybciej znajdują sprawdzone zabiegi",
        ]
    )
    return "\n".join(lines)


def mock_optimize_services(services: Sequence[PriceListService], options: Sequence[str]) -> str:
    lines: list[str] = []
    for idx, service in enumerate(services, start=1):
        name = " ".join(service.name.split())
        name = name[:1].upper() + name[1:]
        description = service.description or "-"
        if "descriptions" in options and not service.description:
            description = f"{name} - zabieg dopasowany do potrzeb klientki, widoczny efekt po pierwszej wizycie."
        duration = service.duration or "-"
        if "duration" in options and not service.duration:
            duration = "1h"
        tags = "-"
        if "tags" in options and idx == 1:
            tags = "Bestseller"
        lines.append(f"{idx} | {name} | {service.price} | {description} | {duration} | {tags}")
    return "\n".join(lines)
