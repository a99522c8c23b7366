from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, NotFoundError
from backoffice.models.product import ProductVariant
from backoffice.models.waitlist import WaitlistEntry, WaitlistStatus
from backoffice.services.plugin_service import PluginEvents, PluginService, dispatch_plugin_delivery

logger = structlog.get_logger()


class WaitlistService:
    def __init__(self, db: Session, tenant_id: str, plugins: Optional[PluginService] = None):
        self.db = db
        self.tenant_id = tenant_id
        self.plugins = plugins or PluginService(db)

    def join(
        self,
        customer_id: int,
        product_id: int,
        variant_id: int,
        source: str = "manual",
        commit: bool = True,
    ) -> WaitlistEntry:
        """
        Record a wait-list signal for one unit of a variant.

        With `commit=False` the entry joins the caller's transaction (the
        cart's out-of-stock fallback commits it together with its own work).
        """
        variant = (
            self.db.query(ProductVariant)
            .filter(ProductVariant.id == variant_id, ProductVariant.product_id == product_id)
            .first()
        )
        if not variant:
            raise NotFoundError("Product variant")

        entry = WaitlistEntry(
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            product_id=product_id,
            variant_id=variant_id,
            status=WaitlistStatus.WAITING,
            source=source,
        )
        self.db.add(entry)
        self.db.flush()

        self.plugins.emit(
            self.tenant_id,
            PluginEvents.WAITLIST_ITEM_ADDED,
            {
                "waitlist_entry_id": entry.id,
                "customer_id": customer_id,
                "product_id": product_id,
                "variant_id": variant_id,
                "sku": variant.sku,
                "source": source,
            },
        )
        logger.info("waitlist_joined", customer_id=customer_id, variant_id=variant_id, source=source)

        if commit:
            self.db.commit()
            self.db.refresh(entry)
            dispatch_plugin_delivery()
        return entry

    def leave(self, customer_id: int, entry_id: int) -> WaitlistEntry:
        entry = self._get_entry(entry_id, customer_id=customer_id)
        if entry.status == WaitlistStatus.REMOVED:
            return entry

        entry.status = WaitlistStatus.REMOVED
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.WAITLIST_ITEM_REMOVED,
            {"waitlist_entry_id": entry.id, "customer_id": customer_id, "variant_id": entry.variant_id},
        )
        self.db.commit()
        self.db.refresh(entry)
        dispatch_plugin_delivery()
        logger.info("waitlist_left", customer_id=customer_id, entry_id=entry_id)
        return entry

    def authorize(self, entry_id: int) -> WaitlistEntry:
        """Mark a waiting entry as pre-authorized for purchase when stock returns."""
        entry = self._get_entry(entry_id)
        if entry.status != WaitlistStatus.WAITING:
            raise ConflictError("waitlist_not_waiting", f"Waitlist entry is {entry.status.value}")

        entry.status = WaitlistStatus.AUTHORIZED
        entry.authorized_at = datetime.utcnow()
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.WAITLIST_ITEM_PREAUTHORIZED,
            {
                "waitlist_entry_id": entry.id,
                "customer_id": entry.customer_id,
                "variant_id": entry.variant_id,
                "authorized_at": entry.authorized_at,
            },
        )
        self.db.commit()
        self.db.refresh(entry)
        dispatch_plugin_delivery()
        logger.info("waitlist_authorized", entry_id=entry_id, customer_id=entry.customer_id)
        return entry

    def list_for_customer(self, customer_id: int, include_removed: bool = False) -> List[WaitlistEntry]:
        query = self.db.query(WaitlistEntry).filter(
            WaitlistEntry.tenant_id == self.tenant_id,
            WaitlistEntry.customer_id == customer_id,
        )
        if not include_removed:
            query = query.filter(WaitlistEntry.status != WaitlistStatus.REMOVED)
        return query.order_by(WaitlistEntry.created_at.desc(), WaitlistEntry.id.desc()).all()

    def _get_entry(self, entry_id: int, customer_id: Optional[int] = None) -> WaitlistEntry:
        query = self.db.query(WaitlistEntry).filter(
            WaitlistEntry.id == entry_id,
            WaitlistEntry.tenant_id == self.tenant_id,
        )
        if customer_id is not None:
            query = query.filter(WaitlistEntry.customer_id == customer_id)
        entry = query.first()
        if not entry:
            raise NotFoundError("Waitlist entry")
        return entry
