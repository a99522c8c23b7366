from celery import shared_task

from backoffice.db.session import SessionLocal
from backoffice.models.credit import CreditTransaction
from backoffice.services.credit_service import CreditService


@shared_task(bind=True, max_retries=3)
def expire_credits(self):
    """Expire store-credit grants past their expiry date."""
    db = SessionLocal()
    try:
        tenant_ids = [row[0] for row in db.query(CreditTransaction.tenant_id).distinct().all()]
        expired = 0
        for tenant_id in tenant_ids:
            expired += CreditService(db, tenant_id).expire_due()
        return {"expired": expired}
    except Exception as exc:
        db.rollback()
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
