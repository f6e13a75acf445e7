from decimal import Decimal

import pytest

from marketsync.models.catalog import PricingStrategy
from marketsync.services.catalog_resolver import (
    compute_price,
    eligible_products,
    matches,
    price_for_channel,
    source_price,
)
from marketsync.services.channel_composer import EffectiveCatalog


def _strategy(markup_type="percentage", markup_value="0", rounding_rule="none"):
    return PricingStrategy(markup_type=markup_type, markup_value=Decimal(markup_value), rounding_rule=rounding_rule)


@pytest.mark.parametrize("source, strategy, expected", [
    ("20.00", _strategy("percentage", "10", "to_99"), "21.99"),
    ("19.40", _strategy("percentage", "0", "to_99"), "18.99"),
    ("10.00", _strategy("fixed", "2.50", "none"), "12.50"),
    ("10.40", _strategy("percentage", "0", "to_dollar"), "10.00"),
    ("10.50", _strategy("percentage", "0", "to_dollar"), "11.00"),
    ("9.99", _strategy("percentage", "15", "none"), "11.49"),
])
def test_compute_price_pinned_cases(source, strategy, expected):
    result = compute_price(Decimal(source), strategy)
    assert result.price == Decimal(expected)
    assert result.clamped is False


def test_markup_is_applied_before_rounding():
    # 18.50 + 10% = 20.35 -> 19.99; rounding first would give 17.99 * 1.1
    assert compute_price(Decimal("18.50"), _strategy("percentage", "10", "to_99")).price == Decimal("19.99")


def test_negative_result_is_clamped_and_flagged():
    result = compute_price(Decimal("5.00"), _strategy("fixed", "-10", "none"))
    assert result.price == Decimal("0.00")
    assert result.clamped is True


def test_compute_price_is_pure():
    strategy = {"markup_type": "percentage", "markup_value": "12.5", "rounding_rule": "none"}
    first = compute_price(Decimal("40.00"), strategy)
    second = compute_price(Decimal("40.00"), strategy)
    assert first == second
    assert strategy == {"markup_type": "percentage", "markup_value": "12.5", "rounding_rule": "none"}


def test_result_always_has_two_decimal_places():
    assert compute_price(Decimal("3.333"), _strategy()).price.as_tuple().exponent == -2


def test_matches_requires_every_set_filter():
    product = {"collections": ["summer"], "tags": ["Sale", "Cotton"], "vendor": "Acme"}
    assert matches(product, {})
    assert matches(product, {"collections": ["summer", "winter"]})
    assert matches(product, {"tags": ["sale"]})
    assert matches(product, {"vendor": "ACME"})
    assert matches(product, {"collections": ["summer"], "tags": ["cotton"], "vendor": "acme"})
    assert not matches(product, {"collections": ["winter"]})
    assert not matches(product, {"tags": ["wool"]})
    assert not matches(product, {"collections": ["summer"], "vendor": "Other"})


def test_source_price_prefers_requested_variant():
    product = {"variants": [{"id": "1", "price": "10.00"}, {"id": "2", "price": "12.00"}]}
    assert source_price(product) == Decimal("10.00")
    assert source_price(product, "2") == Decimal("12.00")
    assert source_price(product, "missing") == Decimal("10.00")
    assert source_price({"variants": []}) is None


def test_inactive_catalog_selects_nothing():
    products = [{"tags": ["sale"]}, {"tags": []}]
    assert eligible_products(products, {"is_active": True, "filters": {"tags": ["sale"]}}) == [products[0]]
    assert eligible_products(products, {"is_active": False, "filters": {}}) == []


class _Catalog:
    def __init__(self, name, filters):
        self.name = name
        self.filters = filters


def test_first_matching_effective_catalog_prices_the_product():
    product = {"tags": ["sale"], "variants": [{"id": "1", "price": "20.00"}]}
    wide = EffectiveCatalog(catalog=_Catalog("All", {}), link=None, pricing_strategy=_strategy("fixed", "1"))
    sale = EffectiveCatalog(catalog=_Catalog("Sale", {"tags": ["sale"]}), link=None, pricing_strategy=_strategy("percentage", "10", "to_99"))
    other = EffectiveCatalog(catalog=_Catalog("Other", {"tags": ["wool"]}), link=None, pricing_strategy=_strategy())

    priced = price_for_channel(product, [other, sale, wide])
    assert priced.effective is sale
    assert priced.result.price == Decimal("21.99")

    assert price_for_channel(product, [other]) is None
