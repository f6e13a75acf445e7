"""Marketplace connection lifecycle.

This is the only place that changes a connection's credentials, settings or
status. Listing syncs report their outcomes through
:meth:`ConnectionService.record_sync_outcome`, which owns the
consecutive-failure counter and automatic-sync suspension.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketsync.adapters.registry import get_adapter, missing_credentials, registry
from marketsync.adapters.types import ConnectionTestResult
from marketsync.config import settings
from marketsync.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    RemoteError,
    TransientRemoteError,
    ValidationError,
)
from marketsync.models.connection import ConnectionCreate, ConnectionSettings, ConnectionUpdate
from marketsync.models_sqlalchemy.models import (
    ConnectionStatus,
    MarketplaceConnection,
    Order,
    ProductListing,
    SalesChannel,
)
from marketsync.utils.crypto import decrypt_credentials, encrypt_credentials
from marketsync.utils.logger import logger
from marketsync.utils.timeutil import utc_now


class ConnectionService:

    def __init__(self, adapter_factory=get_adapter):
        self.adapter_factory = adapter_factory

    def list_connections(
        self,
        db: Session,
        shop_id: str,
        include_inactive: bool = False,
    ) -> List[MarketplaceConnection]:
        query = db.query(MarketplaceConnection).filter(MarketplaceConnection.shop_id == shop_id)
        if not include_inactive:
            query = query.filter(MarketplaceConnection.is_active == True)  # noqa: E712
        return query.order_by(MarketplaceConnection.created_at.desc()).all()

    def get_connection(self, db: Session, shop_id: str, connection_id: str) -> MarketplaceConnection:
        connection = (
            db.query(MarketplaceConnection)
            .filter(MarketplaceConnection.id == connection_id, MarketplaceConnection.shop_id == shop_id)
            .first()
        )
        if connection is None:
            raise NotFoundError("Connection not found")
        return connection

    def connection_stats(self, db: Session, connection_id: str) -> Dict[str, int]:
        listing_count = db.query(ProductListing).filter(ProductListing.connection_id == connection_id).count()
        order_count = db.query(Order).filter(Order.connection_id == connection_id).count()
        return {"listing_count": listing_count, "order_count": order_count}

    def _check_sales_channel(self, db: Session, shop_id: str, sales_channel_id: Optional[str]) -> None:
        if sales_channel_id is None:
            return
        exists = (
            db.query(SalesChannel.id)
            .filter(SalesChannel.id == sales_channel_id, SalesChannel.shop_id == shop_id)
            .first()
        )
        if not exists:
            raise ValidationError(f"Sales channel {sales_channel_id} not found")

    def _existing_connection(
        self,
        db: Session,
        shop_id: str,
        data: ConnectionCreate,
    ) -> Optional[MarketplaceConnection]:
        account_filter = (
            MarketplaceConnection.marketplace_account_id.is_(None)
            if data.marketplace_account_id is None
            else MarketplaceConnection.marketplace_account_id == data.marketplace_account_id
        )
        return (
            db.query(MarketplaceConnection)
            .filter(
                MarketplaceConnection.shop_id == shop_id,
                MarketplaceConnection.marketplace == data.marketplace,
                account_filter,
            )
            .with_for_update()
            .first()
        )

    def create_connection(self, db: Session, shop_id: str, data: ConnectionCreate) -> MarketplaceConnection:
        # Unsupported kinds are rejected here rather than at first sync.
        registry.get(data.marketplace)
        missing = missing_credentials(data.marketplace, data.credentials)
        if missing:
            raise ValidationError(f"Missing required credentials: {', '.join(missing)}")
        self._check_sales_channel(db, shop_id, data.sales_channel_id)

        existing = self._existing_connection(db, shop_id, data)
        if existing is not None and existing.is_active:
            db.rollback()
            raise ConflictError("Connection already exists for this marketplace")

        if existing is not None:
            # A deactivated connection for the same account is revived rather
            # than duplicated; it must pass a test again before syncing.
            connection = existing
            connection.is_active = True
            connection.error_message = None
            connection.consecutive_failures = 0
            connection.auto_sync_suspended = False
        else:
            connection = MarketplaceConnection(
                shop_id=shop_id,
                marketplace=data.marketplace,
                marketplace_account_id=data.marketplace_account_id,
            )
            db.add(connection)

        connection.credentials = encrypt_credentials(data.credentials)
        connection.settings = data.settings.model_dump()
        connection.sales_channel_id = data.sales_channel_id
        connection.status = ConnectionStatus.pending
        try:
            db.commit()
        except IntegrityError as exc:
            # A concurrent create won the unique index.
            db.rollback()
            raise ConflictError("Connection already exists for this marketplace") from exc
        db.refresh(connection)
        logger.info(
            f"Created marketplace connection id={connection.id} shop={shop_id} marketplace={connection.marketplace.value}"
        )
        return connection

    def update_connection(
        self,
        db: Session,
        shop_id: str,
        connection_id: str,
        data: ConnectionUpdate,
    ) -> MarketplaceConnection:
        """Field-level merge of credentials and settings into the stored values.

        The row is locked for the read-merge-write so concurrent partial
        updates from different admin actions do not clobber each other.
        """
        connection = (
            db.query(MarketplaceConnection)
            .filter(MarketplaceConnection.id == connection_id, MarketplaceConnection.shop_id == shop_id)
            .with_for_update()
            .first()
        )
        if connection is None:
            db.rollback()
            raise NotFoundError("Connection not found")

        fields = data.model_dump(exclude_unset=True)

        if data.credentials:
            try:
                current = decrypt_credentials(connection.credentials)
            except ValueError as exc:
                db.rollback()
                raise ValidationError(f"Stored credentials are unreadable: {exc}") from exc
            merged = {**current, **data.credentials}
            connection.credentials = encrypt_credentials(merged)
            # New credentials have not been verified yet.
            connection.status = ConnectionStatus.pending
            connection.error_message = None

        if data.settings is not None:
            current_settings = ConnectionSettings(**(connection.settings or {}))
            patch = data.settings.model_dump(exclude_none=True)
            connection.settings = current_settings.model_copy(update=patch).model_dump()

        if "sales_channel_id" in fields:
            try:
                self._check_sales_channel(db, shop_id, data.sales_channel_id)
            except ValidationError:
                db.rollback()
                raise
            connection.sales_channel_id = data.sales_channel_id

        db.commit()
        db.refresh(connection)
        logger.info(f"Updated marketplace connection id={connection_id} fields={sorted(fields)}")
        return connection

    async def test_connection(
        self,
        db: Session,
        shop_id: str,
        connection_id: str,
    ) -> Tuple[MarketplaceConnection, ConnectionTestResult]:
        """Run the adapter's connectivity test and apply the result.

        Success activates the connection and lifts any automatic-sync
        suspension. A rejected test leaves it in ``error`` with the remote
        message. Transport failures also mark it ``error`` and propagate.
        """
        connection = self.get_connection(db, shop_id, connection_id)
        if not connection.is_active:
            raise ValidationError("Connection has been deactivated")
        adapter = self.adapter_factory(connection)

        try:
            result = await asyncio.wait_for(adapter.test_connection(), settings.ADAPTER_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            self._mark_error(db, connection, "Connection test timed out")
            raise TransientRemoteError(
                "Connection test timed out", marketplace=connection.marketplace.value
            ) from exc
        except RemoteError as exc:
            self._mark_error(db, connection, exc.message)
            raise

        if result.success:
            connection.status = ConnectionStatus.active
            connection.error_message = None
            connection.consecutive_failures = 0
            connection.auto_sync_suspended = False
            logger.info(f"Connection test passed id={connection.id} marketplace={connection.marketplace.value}")
        else:
            connection.status = ConnectionStatus.error
            connection.error_message = result.message
            logger.warning(
                f"Connection test failed id={connection.id} marketplace={connection.marketplace.value}: {result.message}"
            )
        db.commit()
        db.refresh(connection)
        return connection, result

    async def activate_connection(
        self,
        db: Session,
        shop_id: str,
        connection_id: str,
    ) -> Tuple[MarketplaceConnection, ConnectionTestResult]:
        """Re-enable a deactivated connection; it goes active only if the test passes."""
        connection = self.get_connection(db, shop_id, connection_id)
        if not connection.is_active:
            connection.is_active = True
            connection.status = ConnectionStatus.pending
            connection.consecutive_failures = 0
            connection.auto_sync_suspended = False
            db.commit()
        return await self.test_connection(db, shop_id, connection_id)

    def deactivate_connection(self, db: Session, shop_id: str, connection_id: str) -> Dict[str, Any]:
        """Soft-delete: listings go, orders stay with their connection reference nulled."""
        connection = self.get_connection(db, shop_id, connection_id)

        orders_detached = (
            db.query(Order)
            .filter(Order.connection_id == connection.id)
            .update({Order.connection_id: None}, synchronize_session=False)
        )
        listings_deleted = (
            db.query(ProductListing)
            .filter(ProductListing.connection_id == connection.id)
            .delete(synchronize_session=False)
        )
        connection.is_active = False
        connection.status = ConnectionStatus.inactive
        db.commit()
        db.expire_all()
        logger.info(
            f"Deactivated connection id={connection_id} listings_deleted={listings_deleted} "
            f"orders_detached={orders_detached}"
        )
        return {
            "success": True,
            "connection_id": connection_id,
            "listings_deleted": listings_deleted,
            "orders_detached": orders_detached,
        }

    def record_sync_outcome(
        self,
        db: Session,
        connection: MarketplaceConnection,
        *,
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Feed one final listing outcome into the connection's failure counter.

        Does not commit; the caller commits together with the listing.
        """
        if success:
            connection.consecutive_failures = 0
            connection.last_sync_at = utc_now()
            return

        message = getattr(error, "message", None) or str(error)
        if isinstance(error, AuthError):
            connection.status = ConnectionStatus.error
            connection.auto_sync_suspended = True
            connection.error_message = message
            logger.warning(f"Connection id={connection.id} failed authentication: {message}")
            return

        connection.consecutive_failures = (connection.consecutive_failures or 0) + 1
        if connection.consecutive_failures >= settings.CONNECTION_ERROR_THRESHOLD:
            if connection.status != ConnectionStatus.error or not connection.auto_sync_suspended:
                logger.warning(
                    f"Connection id={connection.id} suspended after "
                    f"{connection.consecutive_failures} consecutive listing failures"
                )
            connection.status = ConnectionStatus.error
            connection.auto_sync_suspended = True
            connection.error_message = message

    def _mark_error(self, db: Session, connection: MarketplaceConnection, message: str) -> None:
        connection.status = ConnectionStatus.error
        connection.error_message = message
        db.commit()

    def dashboard(self, db: Session, shop_id: str) -> Dict[str, Any]:
        connections = self.list_connections(db, shop_id)

        listing_rows = (
            db.query(ProductListing.connection_id, ProductListing.status, func.count(ProductListing.id))
            .filter(ProductListing.shop_id == shop_id)
            .group_by(ProductListing.connection_id, ProductListing.status)
            .all()
        )
        order_rows = (
            db.query(Order.source, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
            .filter(Order.shop_id == shop_id)
            .group_by(Order.source)
            .all()
        )
        return {
            "connections": [
                {
                    "id": c.id,
                    "marketplace": c.marketplace.value,
                    "status": c.status.value,
                    "last_sync_at": c.last_sync_at,
                    "auto_sync_suspended": c.auto_sync_suspended,
                }
                for c in connections
            ],
            "listing_stats": [
                {"connection_id": connection_id, "status": status.value, "count": count}
                for connection_id, status, count in listing_rows
            ],
            "order_stats": [
                {"source": source.value, "order_count": count, "total_revenue": str(revenue)}
                for source, count, revenue in order_rows
            ],
        }


connection_service = ConnectionService()
