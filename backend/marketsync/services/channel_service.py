from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketsync.errors import ConflictError, NotFoundError
from marketsync.models.catalog import PricingOverrides
from marketsync.models.channel import (
    CatalogLinkCreate,
    CatalogLinkUpdate,
    ChannelConfiguration,
    PermissionOverrides,
    PermissionSet,
    SalesChannelCreate,
    SalesChannelUpdate,
    TenantLinkCreate,
    TenantLinkUpdate,
)
from marketsync.models_sqlalchemy.models import (
    ChannelCatalogLink,
    ProductCatalog,
    SalesChannel,
    Shop,
    TenantChannelLink,
)
from marketsync.services.channel_composer import (
    EffectiveCatalog,
    resolve_effective_catalogs,
    resolve_effective_permissions,
)
from marketsync.utils.logger import logger


def _commit_link(db: Session, conflict_message: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(conflict_message) from exc


class ChannelService:

    def list_channels(self, db: Session, shop_id: str) -> List[SalesChannel]:
        return (
            db.query(SalesChannel)
            .filter(SalesChannel.shop_id == shop_id)
            .order_by(SalesChannel.priority.desc(), SalesChannel.name.asc())
            .all()
        )

    def get_channel(self, db: Session, shop_id: str, channel_id: str) -> SalesChannel:
        channel = (
            db.query(SalesChannel)
            .filter(SalesChannel.id == channel_id, SalesChannel.shop_id == shop_id)
            .first()
        )
        if channel is None:
            raise NotFoundError("Sales channel not found")
        return channel

    def create_channel(self, db: Session, shop_id: str, data: SalesChannelCreate) -> SalesChannel:
        channel = SalesChannel(
            shop_id=shop_id,
            name=data.name,
            description=data.description,
            channel_type=data.channel_type,
            configuration=data.configuration.model_dump(mode="json"),
            priority=data.priority,
            is_active=True,
        )
        db.add(channel)
        db.commit()
        db.refresh(channel)
        logger.info(f"Created sales channel id={channel.id} shop={shop_id} name={channel.name!r}")
        return channel

    def update_channel(self, db: Session, shop_id: str, channel_id: str, data: SalesChannelUpdate) -> SalesChannel:
        """Configuration sections merge key by key; other fields are replaced."""
        channel = self.get_channel(db, shop_id, channel_id)
        for key in ("name", "description", "channel_type", "priority", "is_active"):
            value = getattr(data, key)
            if value is not None:
                setattr(channel, key, value)

        if data.configuration is not None:
            current = ChannelConfiguration(**(channel.configuration or {})).model_dump(mode="json")
            for section, values in data.configuration.items():
                current[section] = {**(current.get(section) or {}), **(values or {})}
            channel.configuration = ChannelConfiguration(**current).model_dump(mode="json")

        db.commit()
        db.refresh(channel)
        return channel

    def delete_channel(self, db: Session, shop_id: str, channel_id: str) -> Dict[str, Any]:
        channel = self.get_channel(db, shop_id, channel_id)
        db.delete(channel)
        db.commit()
        logger.info(f"Deleted sales channel id={channel_id}")
        return {"success": True, "channel_id": channel_id}

    def effective_catalogs(self, db: Session, shop_id: str, channel_id: str) -> List[EffectiveCatalog]:
        return resolve_effective_catalogs(self.get_channel(db, shop_id, channel_id))

    def add_catalog_link(self, db: Session, shop_id: str, channel_id: str, data: CatalogLinkCreate) -> ChannelCatalogLink:
        channel = self.get_channel(db, shop_id, channel_id)
        catalog = (
            db.query(ProductCatalog)
            .filter(ProductCatalog.id == data.catalog_id, ProductCatalog.shop_id == shop_id)
            .first()
        )
        if catalog is None:
            raise NotFoundError("Catalog not found")

        existing = (
            db.query(ChannelCatalogLink.id)
            .filter(ChannelCatalogLink.channel_id == channel.id, ChannelCatalogLink.catalog_id == catalog.id)
            .first()
        )
        if existing:
            raise ConflictError("Catalog already linked to this channel")

        link = ChannelCatalogLink(
            channel_id=channel.id,
            catalog_id=catalog.id,
            overrides=data.overrides.model_dump(mode="json", exclude_none=True),
            priority=data.priority,
            is_active=True,
        )
        db.add(link)
        _commit_link(db, "Catalog already linked to this channel")
        db.refresh(link)
        return link

    def _catalog_link(self, db: Session, shop_id: str, channel_id: str, catalog_id: str) -> ChannelCatalogLink:
        channel = self.get_channel(db, shop_id, channel_id)
        link = (
            db.query(ChannelCatalogLink)
            .filter(ChannelCatalogLink.channel_id == channel.id, ChannelCatalogLink.catalog_id == catalog_id)
            .first()
        )
        if link is None:
            raise NotFoundError("Catalog link not found")
        return link

    def update_catalog_link(
        self,
        db: Session,
        shop_id: str,
        channel_id: str,
        catalog_id: str,
        data: CatalogLinkUpdate,
    ) -> ChannelCatalogLink:
        link = self._catalog_link(db, shop_id, channel_id, catalog_id)
        if data.overrides is not None:
            current = PricingOverrides(**(link.overrides or {}))
            patch = data.overrides.model_dump(exclude_none=True)
            link.overrides = current.model_copy(update=patch).model_dump(mode="json", exclude_none=True)
        if data.priority is not None:
            link.priority = data.priority
        if data.is_active is not None:
            link.is_active = data.is_active
        db.commit()
        db.refresh(link)
        return link

    def remove_catalog_link(self, db: Session, shop_id: str, channel_id: str, catalog_id: str) -> Dict[str, Any]:
        link = self._catalog_link(db, shop_id, channel_id, catalog_id)
        db.delete(link)
        db.commit()
        return {"success": True}

    def add_tenant_link(self, db: Session, shop_id: str, channel_id: str, data: TenantLinkCreate) -> TenantChannelLink:
        channel = self.get_channel(db, shop_id, channel_id)
        tenant = db.query(Shop).filter(Shop.id == data.shop_id).first()
        if tenant is None:
            raise NotFoundError("Shop not found")

        existing = (
            db.query(TenantChannelLink.id)
            .filter(TenantChannelLink.channel_id == channel.id, TenantChannelLink.shop_id == tenant.id)
            .first()
        )
        if existing:
            raise ConflictError("Tenant already linked to this channel")

        link = TenantChannelLink(
            shop_id=tenant.id,
            channel_id=channel.id,
            role=data.role,
            permissions=data.permissions.model_dump(exclude_none=True) if data.permissions else None,
            settings=data.settings,
            is_active=True,
        )
        db.add(link)
        _commit_link(db, "Tenant already linked to this channel")
        db.refresh(link)
        return link

    def _tenant_link(self, db: Session, shop_id: str, channel_id: str, tenant_id: str) -> TenantChannelLink:
        channel = self.get_channel(db, shop_id, channel_id)
        link = (
            db.query(TenantChannelLink)
            .filter(TenantChannelLink.channel_id == channel.id, TenantChannelLink.shop_id == tenant_id)
            .first()
        )
        if link is None:
            raise NotFoundError("Tenant link not found")
        return link

    def update_tenant_link(
        self,
        db: Session,
        shop_id: str,
        channel_id: str,
        tenant_id: str,
        data: TenantLinkUpdate,
    ) -> TenantChannelLink:
        link = self._tenant_link(db, shop_id, channel_id, tenant_id)
        if data.role is not None:
            link.role = data.role
        if data.permissions is not None:
            current = PermissionOverrides(**(link.permissions or {}))
            patch = data.permissions.model_dump(exclude_none=True)
            link.permissions = current.model_copy(update=patch).model_dump(exclude_none=True) or None
        if data.settings is not None:
            link.settings = {**(link.settings or {}), **data.settings}
        if data.is_active is not None:
            link.is_active = data.is_active
        db.commit()
        db.refresh(link)
        return link

    def remove_tenant_link(self, db: Session, shop_id: str, channel_id: str, tenant_id: str) -> Dict[str, Any]:
        link = self._tenant_link(db, shop_id, channel_id, tenant_id)
        db.delete(link)
        db.commit()
        return {"success": True}

    def tenant_permissions(self, db: Session, shop_id: str, channel_id: str, tenant_id: str) -> PermissionSet:
        link = self._tenant_link(db, shop_id, channel_id, tenant_id)
        if not link.is_active:
            return PermissionSet(can_view_reports=False)
        return resolve_effective_permissions(link)


channel_service = ChannelService()
