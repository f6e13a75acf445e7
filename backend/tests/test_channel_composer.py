from decimal import Decimal

from marketsync.models.catalog import PricingOverrides, PricingStrategy
from marketsync.models_sqlalchemy.models import (
    ChannelCatalogLink,
    ProductCatalog,
    SalesChannel,
    TenantChannelLink,
    TenantRole,
)
from marketsync.services.channel_composer import (
    merge_pricing_strategy,
    resolve_effective_catalogs,
    resolve_effective_permissions,
)

from conftest import make_shop


BASE = {"markup_type": "percentage", "markup_value": "10", "rounding_rule": "to_99"}


def test_empty_override_returns_base_strategy():
    assert merge_pricing_strategy(BASE, {}) == PricingStrategy(**BASE)
    assert merge_pricing_strategy(BASE, None) == PricingStrategy(**BASE)
    assert merge_pricing_strategy(BASE, PricingOverrides()) == PricingStrategy(**BASE)


def test_override_replaces_only_the_fields_it_sets():
    merged = merge_pricing_strategy(BASE, {"markup_value": "25"})
    assert merged.markup_value == Decimal("25")
    assert merged.markup_type.value == "percentage"
    assert merged.rounding_rule.value == "to_99"


def _catalog(db, shop, name, *, active=True, strategy=None):
    catalog = ProductCatalog(
        shop_id=shop.id,
        name=name,
        filters={},
        pricing_strategy=strategy or BASE,
        is_active=active,
    )
    db.add(catalog)
    db.commit()
    return catalog


def test_effective_catalogs_are_active_and_ordered(db):
    shop = make_shop(db)
    channel = SalesChannel(shop_id=shop.id, name="Main", configuration={})
    db.add(channel)
    db.commit()

    beta = _catalog(db, shop, "Beta")
    alpha = _catalog(db, shop, "Alpha")
    top = _catalog(db, shop, "Top")
    retired = _catalog(db, shop, "Retired", active=False)
    unlinked = _catalog(db, shop, "Unlinked")

    db.add_all([
        ChannelCatalogLink(channel_id=channel.id, catalog_id=beta.id, priority=1, overrides={}),
        ChannelCatalogLink(channel_id=channel.id, catalog_id=alpha.id, priority=1, overrides={"markup_value": "5"}),
        ChannelCatalogLink(channel_id=channel.id, catalog_id=top.id, priority=9, overrides={}),
        ChannelCatalogLink(channel_id=channel.id, catalog_id=retired.id, priority=20, overrides={}),
        ChannelCatalogLink(channel_id=channel.id, catalog_id=unlinked.id, priority=30, overrides={}, is_active=False),
    ])
    db.commit()
    db.refresh(channel)

    effective = resolve_effective_catalogs(channel)

    assert [e.catalog.name for e in effective] == ["Top", "Alpha", "Beta"]
    assert effective[1].pricing_strategy.markup_value == Decimal("5")
    assert effective[2].pricing_strategy == PricingStrategy(**BASE)


class _Link:
    def __init__(self, role, permissions=None):
        self.role = role
        self.permissions = permissions


def test_role_defaults_and_explicit_permissions():
    viewer = resolve_effective_permissions(_Link(TenantRole.viewer))
    assert viewer.can_view_reports is True
    assert viewer.can_manage_products is False

    owner = resolve_effective_permissions(_Link(TenantRole.owner, {"can_manage_settings": False}))
    assert owner.can_manage_products is True
    assert owner.can_manage_settings is False

    manager = resolve_effective_permissions(_Link(TenantRole.manager, {"can_manage_settings": True}))
    assert manager.can_manage_settings is True
    assert manager.can_manage_orders is True


def test_tenant_link_row_resolves(db):
    shop = make_shop(db)
    channel = SalesChannel(shop_id=shop.id, name="Wholesale", configuration={})
    db.add(channel)
    db.commit()
    link = TenantChannelLink(shop_id=shop.id, channel_id=channel.id, role=TenantRole.viewer,
                             permissions={"can_manage_orders": True}, settings={})
    db.add(link)
    db.commit()

    permissions = resolve_effective_permissions(link)
    assert permissions.can_manage_orders is True
    assert permissions.can_manage_products is False
