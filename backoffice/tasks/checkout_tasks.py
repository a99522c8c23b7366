from celery import shared_task

from backoffice.db.session import SessionLocal
from backoffice.models.checkout import CheckoutSession
from backoffice.services.checkout_service import OPEN_STATES, CheckoutService
from backoffice.services.payment_service import get_payment_provider


@shared_task(bind=True, max_retries=3)
def expire_checkout_sessions(self):
    """
    Close checkout sessions whose payment window has passed.
    Runs periodically via Celery Beat.
    """
    db = SessionLocal()
    try:
        provider = get_payment_provider()
        tenant_ids = [
            row[0]
            for row in db.query(CheckoutSession.tenant_id)
            .filter(CheckoutSession.state.in_(OPEN_STATES))
            .distinct()
            .all()
        ]
        totals = {"expired": 0, "completed": 0, "skipped": 0}
        for tenant_id in tenant_ids:
            summary = CheckoutService(db, tenant_id, provider).expire_stale_sessions()
            for key, value in summary.items():
                totals[key] += value
        return totals
    except Exception as exc:
        db.rollback()
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
