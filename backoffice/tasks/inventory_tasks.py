from celery import shared_task

from backoffice.db.session import SessionLocal
from backoffice.models.cart import CartItem
from backoffice.services.cart_service import CartService
from backoffice.services.inventory_service import InventoryService


@shared_task(bind=True, max_retries=3)
def reconcile_inventory(self):
    """Apply inventory restorations that could not be written inline."""
    db = SessionLocal()
    try:
        applied = InventoryService(db).reconcile_pending()
        return {"applied": applied}
    except Exception as exc:
        db.rollback()
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()


@shared_task(bind=True, max_retries=3)
def release_expired_cart_holds(self):
    """
    Give back units that have sat in carts longer than CART_HOLD_HOURS.
    Runs periodically via Celery Beat.
    """
    db = SessionLocal()
    try:
        tenant_ids = [row[0] for row in db.query(CartItem.tenant_id).distinct().all()]
        released = 0
        for tenant_id in tenant_ids:
            released += CartService(db, tenant_id).release_expired_holds()
        return {"released": released}
    except Exception as exc:
        db.rollback()
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
