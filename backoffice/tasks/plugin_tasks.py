from celery import shared_task

from backoffice.db.session import SessionLocal
from backoffice.services.plugin_service import PluginService


@shared_task(bind=True, max_retries=3)
def deliver_plugin_events(self, limit: int = 50):
    """Push pending plugin events to their webhooks. Runs every minute and after commits."""
    db = SessionLocal()
    try:
        return PluginService(db).deliver_pending(limit=limit)
    except Exception as exc:
        db.rollback()
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
