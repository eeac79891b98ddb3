from __future__ import annotations

import pytest

from app.analysis_engine import (
    MAX_KEYWORD_SUGGESTIONS,
    SECTION_MARKERS,
    build_optimization_prompt,
    calculate_category_distribution,
    extract_keywords,
    parse_category_proposal,
    parse_keyword_suggestions,
    parse_optimization_response,
    sanitize_text,
    strip_markdown,
    suggestion_keyword,
    validate_optimization_options,
)
from app.errors import PermanentExternalError
from app.mock_llm import mock_category_proposal
from app.pricing import PriceListService, ScrapedData


def _profile() -> ScrapedData:
    return ScrapedData.model_validate(
        {
            "salon_name": "Salon Test",
            "categories": [
                {
                    "name": "Twarz",
                    "services": [
                        {"name": "Mezoterapia igłowa", "price": "300 zł", "description": "Mezoterapia poprawia nawilżanie"},
                        {"name": "Peeling i mezoterapia bezigłowa", "price": "200 zł"},
                    ],
                },
                {
                    "name": "Paznokcie",
                    "services": [
                        {"name": "Manicure hybrydowy", "price": "100 zł"},
                        {"name": "Pedicure klasyczny", "price": "120 zł"},
                    ],
                },
            ],
        }
    )


def test_extract_keywords_counts_each_service_once_and_ranks_by_count():
    keywords = extract_keywords(_profile())
    assert keywords[0] == {
        "keyword": "mezoterapia",
        "count": 2,
        "categories": ["Twarz"],
        "services": ["Mezoterapia igłowa", "Peeling i mezoterapia bezigłowa"],
    }
    # ties keep vocabulary order
    assert [k["keyword"] for k in keywords[1:]] == ["peeling", "nawilżanie", "peel", "manicure", "pedicure"]


def test_extract_keywords_on_empty_profile_is_empty():
    assert extract_keywords(ScrapedData()) == []


def test_category_distribution_sorted_by_keyword_count():
    profile = _profile()
    distribution = calculate_category_distribution(profile, extract_keywords(profile))
    assert [d["category_name"] for d in distribution] == ["Twarz", "Paznokcie"]
    assert distribution[0]["keyword_count"] == 4
    assert distribution[0]["top_keywords"][0] == "mezoterapia"
    assert distribution[1]["top_keywords"] == ["manicure", "pedicure"]


def test_extract_keywords_without_vocabulary_matches_is_empty():
    profile = ScrapedData.model_validate(
        {
            "categories": [
                {"name": "Inne", "services": [{"name": "Tatuaż czarny", "price": "400 zł"}]},
                {"name": "Piercing", "services": [{"name": "Przekłucie uszu", "price": "80 zł"}]},
            ]
        }
    )
    assert extract_keywords(profile) == []


def test_category_distribution_with_no_keywords_or_no_categories():
    profile = _profile()
    distribution = calculate_category_distribution(profile, [])
    assert [(d["category_name"], d["keyword_count"], d["top_keywords"]) for d in distribution] == [
        ("Twarz", 0, []),
        ("Paznokcie", 0, []),
    ]
    assert calculate_category_distribution(ScrapedData(), extract_keywords(profile)) == []


def test_category_distribution_caps_top_keywords_and_orders_descending():
    profile = ScrapedData.model_validate(
        {
            "categories": [
                {"name": "Inne", "services": [{"name": "Przekłucie uszu", "price": "80 zł"}]},
                {
                    "name": "Włosy",
                    "services": [
                        {"name": "Strzyżenie damskie", "price": "90 zł"},
                        {"name": "Koloryzacja balayage", "price": "400 zł"},
                    ],
                },
                {
                    "name": "Twarz",
                    "services": [
                        {"name": "Mezoterapia", "price": "300 zł"},
                        {"name": "Peeling kawitacyjny", "price": "150 zł"},
                        {"name": "Lifting", "price": "500 zł"},
                        {"name": "Botox", "price": "800 zł"},
                        {"name": "Kolagen", "price": "250 zł"},
                        {"name": "Retinol", "price": "200 zł"},
                        {"name": "Laser frakcyjny", "price": "600 zł"},
                    ],
                },
            ]
        }
    )
    distribution = calculate_category_distribution(profile, extract_keywords(profile))
    counts = [d["keyword_count"] for d in distribution]
    assert counts == sorted(counts, reverse=True)
    assert [d["category_name"] for d in distribution] == ["Twarz", "Włosy", "Inne"]
    assert distribution[0]["keyword_count"] == 8
    assert all(len(d["top_keywords"]) <= 5 for d in distribution)
    assert len(distribution[0]["top_keywords"]) == 5
    assert distribution[2]["top_keywords"] == []


@pytest.mark.parametrize(
    ("options", "has_proposal", "valid"),
    [
        ([], False, False),
        (["descriptions"], False, True),
        (["categories"], False, False),
        (["categories", "seo"], True, True),
        (["colors"], True, False),
    ],
)
def test_validate_optimization_options(options, has_proposal, valid):
    result = validate_optimization_options(options, has_proposal)
    assert result.valid is valid
    assert (result.error is None) is valid


def test_prompt_contains_selected_sections_and_exact_count():
    services = [
        PriceListService(name="Manicure", price="100 zł"),
        PriceListService(name="Pedicure", price="120 zł", description="Pielęgnacja stóp"),
        PriceListService(name="Henna brwi", price="40 zł", duration="30min"),
    ]
    prompt = build_optimization_prompt(["descriptions", "seo"], {}, services)
    assert SECTION_MARKERS["descriptions"] in prompt
    assert SECTION_MARKERS["seo"] in prompt
    assert SECTION_MARKERS["prices"] not in prompt
    assert "DOKŁADNIE 3 usług" in prompt
    assert "Salon: Nieznany" in prompt
    assert "Słabe strony: brak" in prompt
    assert "None" not in prompt
    assert "2 | Pedicure | 120 zł | Pielęgnacja stóp | -" in prompt


def test_prompt_skips_category_section_without_proposal():
    services = [PriceListService(name="Manicure", price="100 zł")]
    assert SECTION_MARKERS["categories"] not in build_optimization_prompt(["categories"], {}, services)

    context = {
        "category_proposal": {
            "proposed_structure": [{"name": "Bestsellery"}, {"name": "Dłonie"}],
            "changes": [{"type": "create_category", "description": "Nowa kategoria"}],
        }
    }
    prompt = build_optimization_prompt(["categories"], context, services)
    assert SECTION_MARKERS["categories"] in prompt
    assert "Bestsellery, Dłonie" in prompt


def test_parse_optimization_response_handles_markdown_and_category_line():
    text = "\n".join(
        [
            "**1** | Manicure hybrydowy | 100 zł | Trwały kolor do 3 tygodni | 1h | Bestseller",
            "2 | Pedicure | 120 zł | - | - | -",
            "KATEGORIA: Dłonie i stopy",
        ]
    )
    lines, category = parse_optimization_response(text, 2)
    assert category == "Dłonie i stopy"
    assert lines[0].number == 1
    assert lines[0].tags == ["Bestseller"]
    assert lines[1].description is None
    assert lines[1].tags == []


def test_parse_optimization_response_rejects_count_mismatch():
    with pytest.raises(PermanentExternalError) as exc_info:
        parse_optimization_response("1 | Manicure | 100 zł | - | - | -", 2)
    assert exc_info.value.code == "LLM_OUTPUT_COUNT_MISMATCH"


def test_keyword_suggestions_capped_and_keyword_extracted():
    text = "\n".join(f"- **fraza {i}**: uzasadnienie" for i in range(12))
    suggestions = parse_keyword_suggestions(text)
    assert len(suggestions) == MAX_KEYWORD_SUGGESTIONS
    assert suggestion_keyword(suggestions[0]) == "fraza 0"


def test_category_proposal_builds_structure_from_changes():
    profile = _profile()
    proposal = parse_category_proposal(mock_category_proposal(profile), profile.categories)
    assert proposal["proposed_categories"][0] == "Bestsellery"
    assert proposal["changes"][0]["type"] == "create_category"
    assert proposal["changes"][0]["from_category"] is None
    names = [c["name"] for c in proposal["proposed_structure"]]
    assert names == ["Bestsellery", "Twarz", "Paznokcie"]
    assert len(proposal["proposed_structure"][0]["services"]) == 4
    # original structure is untouched
    assert [c["name"] for c in proposal["original_structure"]] == ["Twarz", "Paznokcie"]


def test_category_proposal_applies_rename_and_move():
    profile = _profile()
    text = "\n".join(
        [
            "PROPOSED_CATEGORIES:",
            "- Twarz i skóra",
            "- Paznokcie",
            "",
            "CHANGES:",
            "CHANGE: rename_category",
            "FROM: Twarz",
            "TO: Twarz i skóra",
            "DESCRIPTION: Bardziej opisowa nazwa",
            "REASON: Lepsze SEO",
            "---",
            "CHANGE: move_service",
            "FROM: Paznokcie",
            "TO: Twarz i skóra",
            "SERVICES: Pedicure klasyczny",
            "DESCRIPTION: Przenieś pedicure",
            "REASON: Test",
            "---",
            "CHANGE: paint_walls",
            "DESCRIPTION: nieznany typ",
            "REASON: brak",
        ]
    )
    proposal = parse_category_proposal(text, profile.categories)
    assert [c["type"] for c in proposal["changes"]] == ["rename_category", "move_service"]
    structure = {c["name"]: [s["name"] for s in c["services"]] for c in proposal["proposed_structure"]}
    assert "Twarz" not in structure
    assert "Pedicure klasyczny" in structure["Twarz i skóra"]
    # moved services are copied, the source category keeps its list
    assert "Pedicure klasyczny" in structure["Paznokcie"]


def test_strip_markdown_and_sanitize():
    assert strip_markdown("**Manicure** `japoński`") == "Manicure japoński"
    assert strip_markdown("## Nagłówek") == "Nagłówek"
    assert sanitize_text("**Manicure** 💅") == "Manicure"
