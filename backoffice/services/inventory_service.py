from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import case, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.models.inventory import InventoryLevel, InventoryReconciliation, ReconciliationStatus

logger = structlog.get_logger()
LOW_STOCK_WARNING_THRESHOLD = 5


@dataclass
class Reservation:
    success: bool
    location_id: Optional[str] = None
    new_available: int = 0


class InventoryService:
    """
    Per-variant, per-location stock counters.

    Every mutation is a single conditional UPDATE so concurrent requests on
    other connections or other server instances cannot oversell. Nothing here
    commits; callers own the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_available(self, variant_id: int) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(InventoryLevel.available), 0))
            .filter(InventoryLevel.variant_id == variant_id)
            .scalar()
        )
        return int(total or 0)

    def reserve_one(self, variant_id: int) -> Reservation:
        """Take one unit from the best-stocked location, or report none left."""
        candidates = (
            self.db.query(InventoryLevel.id, InventoryLevel.location_id)
            .filter(InventoryLevel.variant_id == variant_id, InventoryLevel.available > 0)
            .order_by(InventoryLevel.available.desc(), InventoryLevel.id.asc())
            .all()
        )
        for level_id, location_id in candidates:
            result = self.db.execute(
                update(InventoryLevel)
                .where(InventoryLevel.id == level_id, InventoryLevel.available > 0)
                .values(
                    available=InventoryLevel.available - 1,
                    reserved=InventoryLevel.reserved + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                new_available = self.get_available(variant_id)
                self._log_stock_depletion_warning(variant_id, new_available)
                return Reservation(success=True, location_id=location_id, new_available=new_available)
            # Lost the race at this location; try the next one
            logger.info("inventory_reserve_race_lost", variant_id=variant_id, location_id=location_id)

        return Reservation(success=False, new_available=0)

    def release_one(self, variant_id: int, location_id: str) -> None:
        result = self.db.execute(
            update(InventoryLevel)
            .where(InventoryLevel.variant_id == variant_id, InventoryLevel.location_id == location_id)
            .values(
                available=InventoryLevel.available + 1,
                reserved=case((InventoryLevel.reserved > 0, InventoryLevel.reserved - 1), else_=0),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LookupError(f"No inventory level for variant {variant_id} at {location_id}")

    def commit_reserved(self, variant_id: int, location_id: str) -> None:
        """Turn a cart reservation into committed stock at order completion."""
        result = self.db.execute(
            update(InventoryLevel)
            .where(
                InventoryLevel.variant_id == variant_id,
                InventoryLevel.location_id == location_id,
                InventoryLevel.reserved > 0,
            )
            .values(
                reserved=InventoryLevel.reserved - 1,
                committed=InventoryLevel.committed + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LookupError(f"No reserved unit for variant {variant_id} at {location_id}")

    def queue_release(self, variant_id: int, location_id: str, reason: str) -> InventoryReconciliation:
        entry = InventoryReconciliation(
            variant_id=variant_id,
            location_id=location_id,
            quantity=1,
            reason=reason,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def reconcile_pending(self, limit: int = 100) -> int:
        """Apply queued restorations. Each one commits on its own."""
        pending = (
            self.db.query(InventoryReconciliation)
            .filter(InventoryReconciliation.status == ReconciliationStatus.PENDING)
            .order_by(InventoryReconciliation.id.asc())
            .limit(limit)
            .all()
        )
        applied = 0
        for entry in pending:
            entry.attempts += 1
            try:
                with self.db.begin_nested():
                    for _ in range(entry.quantity):
                        self.release_one(entry.variant_id, entry.location_id)
                entry.status = ReconciliationStatus.APPLIED
                entry.applied_at = datetime.utcnow()
                entry.last_error = None
                applied += 1
            except (LookupError, SQLAlchemyError) as exc:
                entry.last_error = str(exc)
                logger.warning(
                    "inventory_reconciliation_failed",
                    reconciliation_id=entry.id,
                    variant_id=entry.variant_id,
                    attempts=entry.attempts,
                    error=str(exc),
                )
            self.db.commit()
        return applied

    def _log_stock_depletion_warning(self, variant_id: int, available: int) -> None:
        if available <= 0:
            logger.warning("stock_depleted", variant_id=variant_id, available=available)
        elif available <= LOW_STOCK_WARNING_THRESHOLD:
            logger.warning("stock_depletion_warning", variant_id=variant_id, available=available)
