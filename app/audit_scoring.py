from __future__ import annotations

import json
from typing import Any

from jsonschema import ValidationError, validate

from app.errors import PermanentExternalError
from app.pricing import ScrapedData

OVERSIZED_CATEGORY = 20
UNDERSIZED_CATEGORY = 3
SCORE_CAP_WITH_RECOMMENDATIONS = 95
MAX_TOP_ISSUES = 10

DIMENSION_MAX: dict[str, int] = {
    "completeness": 15,
    "naming": 20,
    "descriptions": 20,
    "structure": 15,
    "pricing": 15,
    "seo": 10,
    "ux": 5,
}

_SEVERITY_ORDER = {"critical": 0, "major": 1, "minor": 2}

AUDIT_NARRATIVE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "naming_score",
        "descriptions_score",
        "structure_score",
        "pricing_score",
        "issues",
        "missing_seo_keywords",
        "quick_wins",
        "summary",
    ],
    "properties": {
        "naming_score": {"type": "number"},
        "descriptions_score": {"type": "number"},
        "structure_score": {"type": "number"},
        "pricing_score": {"type": "number"},
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["severity", "dimension", "issue"],
                "properties": {
                    "severity": {"enum": ["critical", "major", "minor"]},
                    "dimension": {"type": "string"},
                    "issue": {"type": "string"},
                    "fix": {"type": "string"},
                },
            },
        },
        "missing_seo_keywords": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["keyword", "search_volume"],
                "properties": {
                    "keyword": {"type": "string"},
                    "search_volume": {"enum": ["high", "medium", "low"]},
                    "suggested_placement": {"type": "string"},
                },
            },
        },
        "quick_wins": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["action"],
                "properties": {
                    "action": {"type": "string"},
                    "effort": {"type": "string"},
                    "impact": {"type": "string"},
                },
            },
        },
        "summary": {"type": "string"},
        "recommendations": {"type": "array", "items": {"type": "string"}},
    },
}


def is_fixed_price(price: str) -> bool:
    lowered = price.lower().strip()
    if lowered.startswith("od ") or (lowered.startswith("od") and lowered[2:3].isdigit()):
        return False
    return not any(marker in lowered for marker in ("od ", "from ", " - ", "–"))


def calculate_audit_stats(scraped: ScrapedData) -> dict[str, Any]:
    """Hard numbers about the scraped profile; no model involved."""
    services = [service for category in scraped.categories for service in category.services]
    total_services = len(services)
    total_categories = len(scraped.categories)

    sizes = [(category.name, len(category.services)) for category in scraped.categories]
    by_size = sorted(sizes, key=lambda item: -item[1])
    largest = by_size[0] if by_size else ("Brak", 0)
    smallest = by_size[-1] if by_size else ("Brak", 0)

    name_counts: dict[str, int] = {}
    for service in services:
        key = service.name.lower().strip()
        name_counts[key] = name_counts.get(key, 0) + 1

    return {
        "total_services": total_services,
        "total_categories": total_categories,
        "services_with_description": sum(1 for s in services if (s.description or "").strip()),
        "services_with_duration": sum(1 for s in services if (s.duration or "").strip()),
        "services_with_fixed_price": sum(1 for s in services if s.price and is_fixed_price(s.price)),
        "avg_services_per_category": round(total_services / total_categories, 1) if total_categories else 0,
        "largest_category": {"name": largest[0], "count": largest[1]},
        "smallest_category": {"name": smallest[0], "count": smallest[1]},
        "duplicate_names": [name for name, count in name_counts.items() if count > 1],
        "empty_categories": [name for name, count in sizes if count == 0],
        "oversized_categories": [name for name, count in sizes if count > OVERSIZED_CATEGORY],
        "undersized_categories": [name for name, count in sizes if 0 < count < UNDERSIZED_CATEGORY],
    }


def completeness_score(stats: dict[str, Any]) -> int:
    total = stats["total_services"]
    if total <= 0:
        return 0
    score = round(
        stats["services_with_description"] / total * 6
        + stats["services_with_duration"] / total * 5
        + stats["services_with_fixed_price"] / total * 4
    )
    return min(DIMENSION_MAX["completeness"], score)


def seo_score(missing_keywords: list[dict[str, Any]]) -> int:
    weights = {"high": 2.0, "medium": 1.0, "low": 0.5}
    score = DIMENSION_MAX["seo"] - sum(weights.get(str(k.get("search_volume")), 0.0) for k in missing_keywords)
    if missing_keywords and score > DIMENSION_MAX["seo"] - 1:
        score = DIMENSION_MAX["seo"] - 1
    return max(0, min(DIMENSION_MAX["seo"], round(score)))


def ux_score(stats: dict[str, Any]) -> int:
    score = DIMENSION_MAX["ux"]
    if stats["empty_categories"]:
        score -= 1
    if stats["oversized_categories"]:
        score -= 1
    if len(stats["undersized_categories"]) > 2:
        score -= 1
    if stats["duplicate_names"]:
        score -= 1
    if stats["largest_category"]["count"] > stats["smallest_category"]["count"] * 10:
        score -= 1
    return max(0, score)


def _clamp_dimension(name: str, value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = DIMENSION_MAX[name] / 2
    return int(max(0, min(DIMENSION_MAX[name], round(number))))


def parse_audit_narrative(raw: str | dict[str, Any]) -> dict[str, Any]:
    """Decode and schema-check the model's narrative; bad output is permanent."""
    if isinstance(raw, dict):
        payload = raw
    else:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PermanentExternalError(
                "AI analysis returned malformed JSON",
                code="LLM_OUTPUT_MALFORMED",
                detail=f"json decode failed: {exc}",
            ) from exc
    try:
        validate(instance=payload, schema=AUDIT_NARRATIVE_SCHEMA)
    except ValidationError as exc:
        raise PermanentExternalError(
            "AI analysis returned an unexpected format",
            code="LLM_OUTPUT_SCHEMA_INVALID",
            detail=f"schema validation failed: {exc.message}",
        ) from exc
    return payload


def _fallback_issues(stats: dict[str, Any]) -> list[dict[str, Any]]:
    issues: list[dict[str, Any]] = []
    total = stats["total_services"]
    if total and stats["services_with_description"] / total < 0.5:
        issues.append(
            {
                "severity": "major",
                "dimension": "descriptions",
                "issue": f"Tylko {stats['services_with_description']} z {total} usług ma opis",
                "fix": "Dodaj krótkie opisy z korzyściami dla klienta",
            }
        )
    if stats["duplicate_names"]:
        issues.append(
            {
                "severity": "minor",
                "dimension": "naming",
                "issue": f"Powtarzające się nazwy usług: {', '.join(stats['duplicate_names'][:3])}",
                "fix": "Rozróżnij nazwy usług",
            }
        )
    if stats["empty_categories"]:
        issues.append(
            {
                "severity": "minor",
                "dimension": "structure",
                "issue": f"Puste kategorie: {', '.join(stats['empty_categories'])}",
                "fix": "Usuń puste kategorie",
            }
        )
    return issues


def build_audit_report(stats: dict[str, Any], narrative: dict[str, Any]) -> dict[str, Any]:
    missing_keywords = list(narrative.get("missing_seo_keywords") or [])
    breakdown = {
        "completeness": completeness_score(stats),
        "naming": _clamp_dimension("naming", narrative.get("naming_score")),
        "descriptions": _clamp_dimension("descriptions", narrative.get("descriptions_score")),
        "structure": _clamp_dimension("structure", narrative.get("structure_score")),
        "pricing": _clamp_dimension("pricing", narrative.get("pricing_score")),
        "seo": seo_score(missing_keywords),
        "ux": ux_score(stats),
    }
    total = sum(breakdown.values())

    issues = list(narrative.get("issues") or []) or _fallback_issues(stats)
    top_issues = sorted(issues, key=lambda item: _SEVERITY_ORDER.get(str(item.get("severity")), 3))[:MAX_TOP_ISSUES]
    quick_wins = list(narrative.get("quick_wins") or [])
    if (top_issues or quick_wins or missing_keywords) and total > SCORE_CAP_WITH_RECOMMENDATIONS:
        total = SCORE_CAP_WITH_RECOMMENDATIONS

    recommendations = list(narrative.get("recommendations") or [])
    if not recommendations:
        recommendations = [str(issue.get("fix") or issue.get("issue")) for issue in top_issues[:5]]

    return {
        "version": "v2",
        "total_score": total,
        "score_breakdown": breakdown,
        "stats": stats,
        "top_issues": top_issues,
        "missing_seo_keywords": missing_keywords,
        "quick_wins": quick_wins,
        "summary": str(narrative.get("summary") or "").strip(),
        "weaknesses": [str(issue.get("issue")) for issue in top_issues[:5]],
        "recommendations": recommendations,
    }
