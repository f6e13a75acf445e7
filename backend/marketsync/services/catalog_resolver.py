"""Catalog membership and marketplace price computation.

Filters are evaluated against the local product cache (``SourceProduct`` rows
or plain dicts with the same keys); nothing here performs I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Iterable, List, Optional

from marketsync.models.catalog import CatalogFilters, MarkupType, PricingStrategy, RoundingRule


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class PriceResult:
    price: Decimal
    # True when the strategy drove the price below zero; such prices must
    # not be published.
    clamped: bool = False


@dataclass(frozen=True)
class ChannelPrice:
    effective: Any  # EffectiveCatalog
    result: PriceResult


def _get(product, name: str, default=None):
    if isinstance(product, dict):
        return product.get(name, default)
    return getattr(product, name, default)


def _as_filters(filters) -> CatalogFilters:
    if isinstance(filters, CatalogFilters):
        return filters
    return CatalogFilters(**(filters or {}))


def _as_strategy(strategy) -> PricingStrategy:
    if isinstance(strategy, PricingStrategy):
        return strategy
    return PricingStrategy(**(strategy or {}))


def matches(product, filters) -> bool:
    f = _as_filters(filters)

    if f.collections:
        product_collections = {str(c) for c in _get(product, "collections") or []}
        if not product_collections.intersection(str(c) for c in f.collections):
            return False

    if f.tags:
        product_tags = {str(t).strip().lower() for t in _get(product, "tags") or []}
        if not product_tags.intersection(str(t).strip().lower() for t in f.tags):
            return False

    if f.vendor:
        vendor = _get(product, "vendor") or ""
        if vendor.strip().lower() != f.vendor.strip().lower():
            return False

    return True


def compute_price(source_price, strategy) -> PriceResult:
    """Markup first, then rounding, then the non-negative clamp.

    >>> compute_price(Decimal("20.00"), {"markup_type": "percentage", "markup_value": 10, "rounding_rule": "to_99"})
    PriceResult(price=Decimal('21.99'), clamped=False)
    """
    s = _as_strategy(strategy)
    price = Decimal(str(source_price))
    markup = Decimal(str(s.markup_value))

    if s.markup_type == MarkupType.percentage:
        price = price * (Decimal("1") + markup / Decimal("100"))
    else:
        price = price + markup

    if s.rounding_rule == RoundingRule.to_99:
        price = price.to_integral_value(rounding=ROUND_FLOOR) - CENT
    elif s.rounding_rule == RoundingRule.to_dollar:
        price = price.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    price = price.quantize(CENT, rounding=ROUND_HALF_UP)

    if price < 0:
        return PriceResult(price=ZERO, clamped=True)
    return PriceResult(price=price)


def source_price(product, variant_id: Optional[str] = None) -> Optional[Decimal]:
    variants = _get(product, "variants") or []
    chosen = None
    if variant_id is not None:
        chosen = next((v for v in variants if str(v.get("id")) == str(variant_id)), None)
    if chosen is None and variants:
        chosen = variants[0]
    if not chosen or chosen.get("price") in (None, ""):
        return None
    return Decimal(str(chosen["price"]))


def eligible_products(products: Iterable, catalog) -> List:
    if not _get(catalog, "is_active", True):
        return []
    filters = _as_filters(_get(catalog, "filters"))
    return [p for p in products if matches(p, filters)]


def price_for_channel(product, effective_catalogs, variant_id: Optional[str] = None) -> Optional[ChannelPrice]:
    """Price ``product`` with the first effective catalog (priority order) that selects it."""
    base = source_price(product, variant_id)
    if base is None:
        return None
    for effective in effective_catalogs:
        if matches(product, effective.catalog.filters):
            return ChannelPrice(effective=effective, result=compute_price(base, effective.pricing_strategy))
    return None
