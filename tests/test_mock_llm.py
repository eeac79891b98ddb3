"""Tests for Mock LLM module."""

import json

from app.analysis_engine import (
    extract_keywords,
    parse_category_proposal,
    parse_keyword_suggestions,
    parse_optimization_response,
)
from app.audit_scoring import calculate_audit_stats, parse_audit_narrative
from app.mock_llm import (
    mock_audit_narrative,
    mock_category_proposal,
    mock_keyword_suggestions,
    mock_optimize_services,
)
from app.pricing import PriceListService, ScrapedData
from app.scraper import SAMPLE_PROFILE


def _scraped() -> ScrapedData:
    return ScrapedData.model_validate(SAMPLE_PROFILE)


def test_mock_narrative_is_deterministic():
    scraped = _scraped()
    stats = calculate_audit_stats(scraped)
    assert mock_audit_narrative(scraped, stats) == mock_audit_narrative(scraped, stats)


def test_mock_narrative_reports_missing_keywords_only():
    scraped = _scraped()
    narrative = json.loads(mock_audit_narrative(scraped, calculate_audit_stats(scraped)))
    keywords = [item["keyword"] for item in narrative["missing_seo_keywords"]]
    # the sample profile already mentions mezoterapia and oczyszczanie
    assert keywords == ["konsultacja"]
    assert 0 <= narrative["naming_score"] <= 20


def test_mock_narrative_survives_parsing():
    scraped = _scraped()
    parsed = parse_audit_narrative(mock_audit_narrative(scraped, calculate_audit_stats(scraped)))
    assert parsed["summary"].startswith("Cennik salonu Studio Urody Przykład")


def test_mock_keyword_suggestions_skip_found_keywords():
    scraped = _scraped()
    found = [item["keyword"] for item in extract_keywords(scraped)]
    suggestions = parse_keyword_suggestions(mock_keyword_suggestions(scraped, found))
    assert len(suggestions) == 5
    assert not any(s.split(":")[0] in found for s in suggestions)


def test_mock_category_proposal_adds_bestsellers():
    scraped = _scraped()
    proposal = parse_category_proposal(mock_category_proposal(scraped), scraped.categories)
    assert proposal["proposed_categories"] == ["Bestsellery", "Twarz", "Dłonie"]
    assert [c["type"] for c in proposal["changes"]] == ["create_category"]


def test_mock_optimization_returns_one_line_per_service():
    services = [
        PriceListService(name="manicure  klasyczny", price="80 zł"),
        PriceListService(name="Henna brwi", price="40 zł", description="Koloryzacja", duration="30min"),
    ]
    raw = mock_optimize_services(services, ["descriptions", "duration"])
    lines, category = parse_optimization_response(raw, expected_count=2)
    assert category is None
    assert lines[0].name == "Manicure klasyczny"
    assert lines[0].price == "80 zł"
    assert lines[0].duration == "1h"
    assert lines[0].description.startswith("Manicure klasyczny")
    assert lines[1].description == "Koloryzacja"
    assert lines[1].tags == []
