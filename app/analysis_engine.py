"""Keyword and category analysis over salon price lists.

Everything in this module is pure: no store access, no network, no clock.
Both pipelines call into it and its output is fully determined by its input.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from app.errors import PermanentExternalError
from app.pricing import PriceListService, ScrapedCategory, ScrapedData

BEAUTY_KEYWORDS: tuple[str, ...] = (
    # twarz
    "lifting",
    "mezoterapia",
    "botox",
    "kwas hialuronowy",
    "peeling",
    "mikrodermabrazja",
    "oczyszczanie",
    "nawilżanie",
    "odmładzanie",
    "redukcja zmarszczek",
    "ujędrnianie",
    "kolagen",
    "retinol",
    "witamina c",
    "hydrafacial",
    "peel",
    "laser",
    "rf",
    # ciało
    "endermologia",
    "lipoliza",
    "kriolipoliza",
    "masaż",
    "drenaż limfatyczny",
    "cellulit",
    "rozstępy",
    "wyszczuplanie",
    "modelowanie",
    "ujędrnianie ciała",
    "karboksyterapia",
    "liposukcja",
    "cavitation",
    "ultradźwięki",
    # depilacja
    "depilacja laserowa",
    "depilacja",
    "woskowanie",
    "ipl",
    "shr",
    "bikini",
    "nogi",
    "pachy",
    "twarz",
    "wąsik",
    "broda",
    # paznokcie
    "manicure",
    "pedicure",
    "hybryda",
    "żel",
    "przedłużanie",
    "paznokcie",
    "stylizacja paznokci",
    "japoński",
    # włosy
    "strzyżenie",
    "koloryzacja",
    "balayage",
    "ombre",
    "keratyna",
    "botox na włosy",
    "regeneracja",
    "laminowanie",
    "prostowanie",
    # brwi i rzęsy
    "brwi",
    "rzęsy",
    "henna",
    "laminowanie brwi",
    "przedłużanie rzęs",
    "microblading",
    "pmu",
    "makijaż permanentny",
    # ogólne
    "konsultacja",
    "pakiet",
    "promocja",
    "bestseller",
    "nowość",
    "premium",
    "relaks",
    "spa",
    "wellness",
    "detoks",
    "kroplówka",
    "infuzja",
)

MAX_KEYWORDS = 50
MAX_TOP_KEYWORDS_PER_CATEGORY = 5
MAX_KEYWORD_SUGGESTIONS = 8
MAX_CATEGORY_CHANGES = 10

OPTIMIZATION_OPTIONS: tuple[str, ...] = (
    "descriptions",
    "seo",
    "categories",
    "order",
    "prices",
    "duplicates",
    "duration",
    "tags",
)

CATEGORY_CHANGE_TYPES: tuple[str, ...] = (
    "move_service",
    "merge_categories",
    "split_category",
    "rename_category",
    "reorder_categories",
    "create_category",
)

_CATEGORY_PRIORITY = ("bestsellery", "promocje", "nowości", "zabiegi na twarz", "depilacja")

_EMOJI_RE = re.compile(
    "[\U0001F300-\U0001F9FF\U00002600-\U000026FF\U00002700-\U000027BF"
    "\U0001F000-\U0001F02F\U0001F0A0-\U0001F0FF]"
)


def strip_markdown(text: str) -> str:
    out = re.sub(r"\*\*(.+?)\*\*", r"\1", text)
    out = re.sub(r"__(.+?)__", r"\1", out)
    out = re.sub(r"(?<!\w)\*([^*]+)\*(?!\w)", r"\1", out)
    out = re.sub(r"(?<!\w)_([^_]+)_(?!\w)", r"\1", out)
    out = re.sub(r"`([^`]+)`", r"\1", out)
    out = re.sub(r"^#{1,6}\s+", "", out, flags=re.MULTILINE)
    out = re.sub(r"~~(.+?)~~", r"\1", out)
    out = re.sub(r"^\*+|\*+$", "", out.strip())
    return out.strip()


def sanitize_text(text: str) -> str:
    """Drop emoji and markdown decoration the model sometimes adds."""
    return strip_markdown(_EMOJI_RE.sub("", text or "")).strip()


def _service_text(name: str, description: str | None) -> str:
    return f"{name} {description or ''}".lower()


def extract_keywords(profile: ScrapedData) -> list[dict[str, Any]]:
    """Rank vocabulary terms found in service names and descriptions.

    A term counts once per service it occurs in. Ties keep vocabulary order.
    """
    found: dict[str, dict[str, Any]] = {}
    for category in profile.categories:
        for service in category.services:
            text = _service_text(service.name, service.description)
            for keyword in BEAUTY_KEYWORDS:
                if keyword not in text:
                    continue
                entry = found.setdefault(
                    keyword,
                    {"keyword": keyword, "count": 0, "categories": [], "services": []},
                )
                entry["count"] += 1
                if category.name not in entry["categories"]:
                    entry["categories"].append(category.name)
                if service.name not in entry["services"]:
                    entry["services"].append(service.name)

    vocab_rank = {keyword: idx for idx, keyword in enumerate(BEAUTY_KEYWORDS)}
    ranked = sorted(found.values(), key=lambda item: (-item["count"], vocab_rank[item["keyword"]]))
    return ranked[:MAX_KEYWORDS]


def calculate_category_distribution(
    profile: ScrapedData,
    keywords: Sequence[dict[str, Any]],
) -> list[dict[str, Any]]:
    global_rank = {str(item["keyword"]): idx for idx, item in enumerate(keywords)}
    distribution: list[dict[str, Any]] = []
    for category in profile.categories:
        local_counts: dict[str, int] = {}
        for service in category.services:
            text = _service_text(service.name, service.description)
            for keyword in global_rank:
                if keyword in text:
                    local_counts[keyword] = local_counts.get(keyword, 0) + 1
        top = sorted(local_counts, key=lambda kw: (-local_counts[kw], global_rank[kw]))
        distribution.append(
            {
                "category_name": category.name,
                "keyword_count": len(local_counts),
                "top_keywords": top[:MAX_TOP_KEYWORDS_PER_CATEGORY],
            }
        )
    distribution.sort(key=lambda item: -item["keyword_count"])
    return distribution


@dataclass(frozen=True)
class OptionsValidation:
    valid: bool
    error: str | None = None


def validate_optimization_options(options: Sequence[str], has_proposal: bool) -> OptionsValidation:
    if not options:
        return OptionsValidation(valid=False, error="Wybierz co najmniej jeden obszar optymalizacji")
    unknown = [opt for opt in options if opt not in OPTIMIZATION_OPTIONS]
    if unknown:
        return OptionsValidation(valid=False, error=f"Nieznany obszar optymalizacji: {', '.join(unknown)}")
    if "categories" in options and not has_proposal:
        return OptionsValidation(
            valid=False,
            error="Optymalizacja kategorii wymaga propozycji reorganizacji z audytu",
        )
    return OptionsValidation(valid=True)


_SECTION_TEXT: dict[str, str] = {
    "descriptions": (
        "[OPISY USŁUG]\n"
        "- Dodaj język korzyści: co klient zyskuje i jakiego efektu może się spodziewać\n"
        "- Wskaż, dla kogo jest usługa\n"
        "- Maksymalnie 2-3 zdania na opis; usługom bez opisu dopisz go\n"
    ),
    "seo": (
        "[SŁOWA KLUCZOWE SEO]\n"
        "- Wpleć w nazwy i opisy słowa kluczowe: {keywords}\n"
        "- Używaj ich naturalnie, bez upychania\n"
    ),
    "categories": (
        "[STRUKTURA KATEGORII]\n"
        "- Zastosuj propozycję reorganizacji kategorii z audytu\n"
        "- Proponowane kategorie: {proposed_categories}\n"
        "- Zmiany: {proposed_changes}\n"
    ),
    "order": (
        "[KOLEJNOŚĆ USŁUG]\n"
        "- Najpopularniejsze usługi na początku, potem usługi premium\n"
        "- Podobne usługi obok siebie\n"
    ),
    "prices": (
        "[FORMATOWANIE CEN]\n"
        "- Ujednolić format cen, np. \"od 50 zł\" albo \"50-100 zł\"\n"
        "- Popraw literówki w cenach, nie zmieniaj kwot\n"
    ),
    "duplicates": (
        "[DUPLIKATY I BŁĘDY]\n"
        "- Wskaż usługi wyglądające na duplikaty i dopisz notatkę w opisie\n"
        "- Popraw oczywiste literówki w nazwach\n"
    ),
    "duration": (
        "[CZAS TRWANIA]\n"
        "- Usługom bez czasu trwania dodaj szacowany czas\n"
        "- Format: \"30min\", \"1h\", \"1h 30min\"\n"
    ),
    "tags": (
        "[TAGI I OZNACZENIA]\n"
        "- Dodaj tagi Bestseller, Nowość lub Premium, najwyżej 2 na usługę\n"
        "- Oznacz co najwyżej 30% usług\n"
    ),
}

SECTION_MARKERS: dict[str, str] = {
    option: text.split("\n", 1)[0] for option, text in _SECTION_TEXT.items()
}


def _proposal_summary(proposal: dict[str, Any]) -> tuple[str, str]:
    names = [str(cat.get("name", "")) for cat in proposal.get("proposed_structure") or [] if cat.get("name")]
    changes = [
        f"{change.get('type')}: {change.get('description', '')}".strip()
        for change in proposal.get("changes") or []
    ]
    return ", ".join(names) or "brak", "; ".join(changes) or "brak"


def _field(service: Any, name: str) -> Any:
    if isinstance(service, dict):
        return service.get(name)
    return getattr(service, name, None)


def build_optimization_prompt(
    options: Sequence[str],
    context: dict[str, Any],
    services: Sequence[PriceListService | dict[str, Any]],
) -> str:
    """Assemble the single rewrite prompt sent to the model.

    Only selected options get a section; the category section additionally
    needs a proposal in ``context``. Missing context values render as
    placeholders so the prompt never carries ``None``.
    """
    count = len(services)
    salon_name = context.get("salon_name") or "Nieznany"
    score = context.get("overall_score")
    score_text = f"{score}/100" if score is not None else "brak"
    weaknesses = ", ".join(str(w) for w in context.get("weaknesses") or []) or "brak"
    keywords = ", ".join(str(k) for k in (context.get("suggested_keywords") or [])[:MAX_KEYWORD_SUGGESTIONS]) or "brak"
    proposal = context.get("category_proposal")

    lines = [
        "Jesteś ekspertem od optymalizacji cenników dla salonów beauty.",
        "Zoptymalizuj poniższą listę usług zgodnie z WYBRANYMI OBSZARAMI.",
        "",
        "KONTEKST AUDYTU:",
        f"- Salon: {salon_name}",
        f"- Ocena ogólna: {score_text}",
        f"- Słabe strony: {weaknesses}",
        "",
        "ZASADY:",
        f"1. Zachowaj DOKŁADNIE {count} usług, nie dodawaj i nie usuwaj żadnej",
        "2. Nie zmieniaj cen, chyba że wybrano formatowanie cen",
        "3. Nie używaj emoji ani formatowania markdown",
        "4. Zachowaj kolejność usług, chyba że wybrano kolejność",
        "",
        "WYBRANE OBSZARY OPTYMALIZACJI:",
    ]
    for option in OPTIMIZATION_OPTIONS:
        if option not in options:
            continue
        if option == "categories":
            if not proposal:
                continue
            names, changes = _proposal_summary(proposal)
            lines.append(_SECTION_TEXT[option].format(proposed_categories=names, proposed_changes=changes))
        elif option == "seo":
            lines.append(_SECTION_TEXT[option].format(keywords=keywords))
        else:
            lines.append(_SECTION_TEXT[option])

    lines.append(f"USŁUGI DO OPTYMALIZACJI ({count}), format: NUMER | NAZWA | CENA | OPIS | CZAS")
    for idx, service in enumerate(services, start=1):
        lines.append(
            f"{idx} | {_field(service, 'name')} | {_field(service, 'price') or '-'} | "
            f"{_field(service, 'description') or '-'} | {_field(service, 'duration') or '-'}"
        )
    lines.extend(
        [
            "",
            "ODPOWIEDŹ:",
            f"Zwróć DOKŁADNIE {count} linii, każda w formacie:",
            "NUMER | ZOPTYMALIZOWANA_NAZWA | CENA | NOWY_OPIS | CZAS | TAGI",
            "TAGI to lista oddzielona przecinkami albo \"-\".",
        ]
    )
    if context.get("category_name"):
        lines.append("Na końcu dodaj linię: KATEGORIA: zoptymalizowana nazwa kategorii")
    lines.append("Odpowiedz wyłącznie liniami w tym formacie, bez dodatkowego tekstu.")
    return "\n".join(lines)


@dataclass
class ParsedServiceLine:
    number: int
    name: str
    price: str
    description: str | None
    duration: str | None
    tags: list[str]


def _dash_to_none(value: str) -> str | None:
    cleaned = sanitize_text(value)
    if not cleaned or cleaned == "-":
        return None
    return cleaned


def parse_optimization_response(text: str, expected_count: int) -> tuple[list[ParsedServiceLine], str | None]:
    """Parse ``N | name | price | desc | duration | tags`` lines.

    Returns the parsed lines ordered by number and the optional category name.
    Raises ``PermanentExternalError`` when the model did not return exactly
    ``expected_count`` services.
    """
    parsed: dict[int, ParsedServiceLine] = {}
    category_name: str | None = None
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.upper().startswith("KATEGORIA:"):
            category_name = _dash_to_none(line.split(":", 1)[1])
            continue
        parts = [part.strip() for part in line.split("|")]
        if len(parts) < 3:
            continue
        number_raw = strip_markdown(parts[0]).rstrip(".")
        if not number_raw.isdigit():
            continue
        number = int(number_raw)
        padded = parts + [""] * (6 - len(parts))
        tags_raw = _dash_to_none(padded[5]) or ""
        parsed[number] = ParsedServiceLine(
            number=number,
            name=sanitize_text(padded[1]),
            price=sanitize_text(padded[2]),
            description=_dash_to_none(padded[3]),
            duration=_dash_to_none(padded[4]),
            tags=[tag.strip() for tag in tags_raw.split(",") if tag.strip()],
        )
    expected_numbers = set(range(1, expected_count + 1))
    if set(parsed) != expected_numbers:
        raise PermanentExternalError(
            "LLM output count mismatch",
            code="LLM_OUTPUT_COUNT_MISMATCH",
            detail=f"expected {expected_count} services, parsed {len(parsed)}",
        )
    return [parsed[n] for n in sorted(parsed)], category_name


def parse_keyword_suggestions(text: str) -> list[str]:
    suggestions: list[str] = []
    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped.startswith("-"):
            continue
        suggestion = strip_markdown(stripped.lstrip("-").strip())
        if suggestion:
            suggestions.append(suggestion)
    return suggestions[:MAX_KEYWORD_SUGGESTIONS]


def suggestion_keyword(suggestion: str) -> str:
    """``"mezoterapia igłowa: bo..."`` -> ``"mezoterapia igłowa"``."""
    return suggestion.split(":", 1)[0].strip()


def _block_field(block: str, name: str) -> str | None:
    match = re.search(rf"^\s*{name}:\s*(.+?)\s*$", block, flags=re.IGNORECASE | re.MULTILINE)
    if match is None:
        return None
    value = strip_markdown(match.group(1))
    return value or None


def parse_category_proposal(text: str, categories: Sequence[ScrapedCategory]) -> dict[str, Any]:
    """Turn the model's PROPOSED_CATEGORIES / CHANGES answer into a proposal."""
    proposed_names: list[str] = []
    section = re.search(r"PROPOSED_CATEGORIES:(.*?)(?=CHANGES:|$)", text or "", flags=re.IGNORECASE | re.DOTALL)
    if section:
        for line in section.group(1).splitlines():
            stripped = line.strip()
            if stripped.startswith("-"):
                name = strip_markdown(stripped.lstrip("-").strip())
                if name:
                    proposed_names.append(name)

    changes: list[dict[str, Any]] = []
    blocks = re.split(r"---|\n(?=\s*CHANGE:)", text or "", flags=re.IGNORECASE)
    for block in blocks:
        change_type = _block_field(block, "CHANGE")
        description = _block_field(block, "DESCRIPTION")
        reason = _block_field(block, "REASON")
        if not change_type or not description or not reason:
            continue
        change_type = change_type.split()[0].lower()
        if change_type not in CATEGORY_CHANGE_TYPES:
            continue
        from_category = _block_field(block, "FROM")
        services_raw = _block_field(block, "SERVICES") or ""
        changes.append(
            {
                "type": change_type,
                "description": description,
                "from_category": None if (from_category or "").upper() == "N/A" else from_category,
                "to_category": _block_field(block, "TO"),
                "services": [s.strip() for s in services_raw.split(",") if s.strip()],
                "reason": reason,
            }
        )
    changes = changes[:MAX_CATEGORY_CHANGES]
    original = [category.model_dump() for category in categories]
    return {
        "original_structure": original,
        "proposed_structure": build_proposed_structure(original, changes, proposed_names),
        "proposed_categories": proposed_names,
        "changes": changes,
    }


def _priority(name: str) -> int:
    lowered = name.lower()
    for idx, marker in enumerate(_CATEGORY_PRIORITY):
        if marker in lowered:
            return idx
    return len(_CATEGORY_PRIORITY)


def _append_unique(services: list[dict[str, Any]], service: dict[str, Any]) -> None:
    if all(existing.get("name") != service.get("name") for existing in services):
        services.append(copy.deepcopy(service))


def build_proposed_structure(
    original: Iterable[dict[str, Any]],
    changes: Sequence[dict[str, Any]],
    proposed_names: Sequence[str],
) -> list[dict[str, Any]]:
    source = [copy.deepcopy(category) for category in original]
    proposed = copy.deepcopy(source)
    by_name = {
        str(service.get("name", "")).lower().strip(): service
        for category in source
        for service in category.get("services", [])
    }

    for change in changes:
        if change["type"] == "rename_category" and change.get("from_category") and change.get("to_category"):
            for category in proposed:
                if category["name"] == change["from_category"]:
                    category["name"] = change["to_category"]
                    break

    existing = {str(category["name"]).lower() for category in proposed}
    for name in proposed_names:
        if name.lower() in existing:
            continue
        new_category: dict[str, Any] = {"name": name, "services": []}
        lowered = name.lower()
        if "bestseller" in lowered or "popularn" in lowered:
            largest = sorted(source, key=lambda c: -len(c.get("services", [])))
            for category in largest[:3]:
                for service in category.get("services", [])[:2]:
                    _append_unique(new_category["services"], service)
        elif any(marker in lowered for marker in ("promocj", "świąt", "ofert")):
            for category in source:
                for service in category.get("services", []):
                    text = _service_text(str(service.get("name", "")), service.get("description"))
                    if any(marker in text for marker in ("promo", "pakiet", "zestaw", "rabat")):
                        _append_unique(new_category["services"], service)
        proposed.append(new_category)
        existing.add(lowered)

    for change in changes:
        if change["type"] != "move_service" or not change.get("to_category"):
            continue
        target = next((c for c in proposed if c["name"] == change["to_category"]), None)
        if target is None:
            continue
        for service_name in change.get("services") or []:
            service = by_name.get(service_name.lower().strip())
            if service is not None:
                _append_unique(target["services"], service)

    proposed.sort(key=lambda category: _priority(str(category["name"])))
    return proposed
