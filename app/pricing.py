"""Typed price-list documents shared by both pipelines.

Scraped profiles and price lists stay as pydantic models while they move
between pipeline steps; they are dumped to plain dicts only when written to
the store.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ServiceVariant(BaseModel):
    label: str = ""
    price: str = ""
    duration: str | None = None


class ScrapedService(BaseModel):
    name: str
    price: str = ""
    duration: str | None = None
    description: str | None = None
    variants: list[ServiceVariant] | None = None


class ScrapedCategory(BaseModel):
    name: str
    services: list[ScrapedService] = Field(default_factory=list)


class ScrapedData(BaseModel):
    salon_name: str | None = None
    salon_address: str | None = None
    salon_logo_url: str | None = None
    categories: list[ScrapedCategory] = Field(default_factory=list)
    total_services: int = 0

    def model_post_init(self, __context: Any) -> None:
        if self.total_services <= 0:
            self.total_services = count_scraped_services(self)


class PriceListService(BaseModel):
    name: str
    price: str = ""
    description: str | None = None
    duration: str | None = None
    is_promo: bool = False
    tags: list[str] = Field(default_factory=list)
    variants: list[ServiceVariant] | None = None


class PriceListCategory(BaseModel):
    category_name: str
    services: list[PriceListService] = Field(default_factory=list)


class PricingData(BaseModel):
    salon_name: str | None = None
    categories: list[PriceListCategory] = Field(default_factory=list)


def count_scraped_services(scraped: ScrapedData) -> int:
    """Count bookable services; each price variant counts as one service."""
    total = 0
    for category in scraped.categories:
        for service in category.services:
            total += len(service.variants) if service.variants else 1
    return total


def pricing_from_scraped(scraped: ScrapedData) -> PricingData:
    return PricingData(
        salon_name=scraped.salon_name,
        categories=[
            PriceListCategory(
                category_name=category.name,
                services=[
                    PriceListService(
                        name=service.name,
                        price=service.price,
                        description=service.description,
                        duration=service.duration,
                        variants=(
                            [variant.model_copy() for variant in service.variants]
                            if service.variants
                            else None
                        ),
                    )
                    for service in category.services
                ],
            )
            for category in scraped.categories
        ],
    )


def pricing_counts(pricing: PricingData) -> tuple[int, int]:
    services = sum(len(category.services) for category in pricing.categories)
    return services, len(pricing.categories)


def load_pricing(raw: dict[str, Any] | PricingData | None) -> PricingData:
    if isinstance(raw, PricingData):
        return raw
    return PricingData.model_validate(raw or {})


def load_scraped(raw: dict[str, Any] | ScrapedData | None) -> ScrapedData:
    if isinstance(raw, ScrapedData):
        return raw
    return ScrapedData.model_validate(raw or {})
