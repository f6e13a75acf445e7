"""Effective configuration of a sales channel.

Catalog links are resolved into an ordered list of catalogs with their merged
pricing strategies; tenant links into a permission set. Both merges are
field by field: a set override field wins, an unset one inherits.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from marketsync.models.catalog import PricingOverrides, PricingStrategy
from marketsync.models.channel import PermissionOverrides, PermissionSet
from marketsync.models_sqlalchemy.models import ChannelCatalogLink, ProductCatalog, TenantRole


ROLE_PERMISSIONS = {
    TenantRole.owner: PermissionSet(
        can_manage_products=True,
        can_manage_orders=True,
        can_manage_settings=True,
        can_view_reports=True,
    ),
    TenantRole.manager: PermissionSet(
        can_manage_products=True,
        can_manage_orders=True,
        can_manage_settings=False,
        can_view_reports=True,
    ),
    TenantRole.viewer: PermissionSet(
        can_manage_products=False,
        can_manage_orders=False,
        can_manage_settings=False,
        can_view_reports=True,
    ),
}


@dataclass
class EffectiveCatalog:
    catalog: ProductCatalog
    link: ChannelCatalogLink
    pricing_strategy: PricingStrategy


def merge_pricing_strategy(base, overrides) -> PricingStrategy:
    base_strategy = base if isinstance(base, PricingStrategy) else PricingStrategy(**(base or {}))
    if isinstance(overrides, PricingOverrides):
        patch = overrides.model_dump(exclude_none=True)
    else:
        patch = PricingOverrides(**(overrides or {})).model_dump(exclude_none=True)
    if not patch:
        return base_strategy
    return base_strategy.model_copy(update=patch)


def resolve_effective_catalogs(channel, links: Optional[Iterable[ChannelCatalogLink]] = None) -> List[EffectiveCatalog]:
    """Active links to active catalogs, priority desc then catalog name asc."""
    if links is None:
        links = channel.catalog_links
    usable = [
        link for link in links
        if link.is_active and link.catalog is not None and link.catalog.is_active
    ]
    usable.sort(key=lambda link: (-(link.priority or 0), link.catalog.name))
    return [
        EffectiveCatalog(
            catalog=link.catalog,
            link=link,
            pricing_strategy=merge_pricing_strategy(link.catalog.pricing_strategy, link.overrides),
        )
        for link in usable
    ]


def resolve_effective_permissions(link) -> PermissionSet:
    defaults = ROLE_PERMISSIONS[TenantRole(link.role or TenantRole.viewer)]
    explicit = link.permissions
    if not explicit:
        return defaults.model_copy()
    if isinstance(explicit, PermissionOverrides):
        patch = explicit.model_dump(exclude_none=True)
    else:
        patch = PermissionOverrides(**explicit).model_dump(exclude_none=True)
    return defaults.model_copy(update=patch)
