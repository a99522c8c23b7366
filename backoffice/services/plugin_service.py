import hashlib
import hmac
import json
import secrets
from datetime import datetime
from typing import Iterable, List, Optional

import httpx
import structlog
from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import ConflictError, ValidationError
from backoffice.models.plugin import Plugin, PluginEvent, PluginEventStatus, PluginStatus
from backoffice.services.feature_flags import FeatureFlagService

logger = structlog.get_logger()

PLUGIN_EVENTS_FLAG = "plugin_events"
SIGNATURE_HEADER = "X-Plugin-Signature"


class PluginEvents:
    CART_ITEM_ADDED = "cart.item_added"
    CART_ITEM_REMOVED = "cart.item_removed"
    CART_CLEARED = "cart.cleared"
    WAITLIST_ITEM_ADDED = "waitlist.item_added"
    WAITLIST_ITEM_REMOVED = "waitlist.item_removed"
    WAITLIST_ITEM_PREAUTHORIZED = "waitlist.item_preauthorized"
    FAVORITE_ADDED = "favorite.added"
    FAVORITE_REMOVED = "favorite.removed"
    CHECKOUT_STARTED = "checkout.started"
    CHECKOUT_COMPLETED = "checkout.completed"
    CHECKOUT_FAILED = "checkout.failed"
    ORDER_CREATED = "order.created"
    ORDER_PAID = "order.paid"

    @classmethod
    def all(cls) -> List[str]:
        return [value for key, value in vars(cls).items() if key.isupper()]


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class PluginService:
    """
    Plugin registry and outbound event outbox.

    `emit` only writes outbox rows inside the caller's transaction, so an
    event is published if and only if the mutation that produced it commits.
    Delivery happens later in `deliver_pending`, at least once per plugin.
    """

    def __init__(self, db: Session, flags: Optional[FeatureFlagService] = None):
        self.db = db
        self.flags = flags or FeatureFlagService(db)

    def register_plugin(
        self,
        tenant_id: str,
        slug: str,
        name: str,
        webhook_url: str,
        events: Iterable[str],
    ) -> Plugin:
        events = list(dict.fromkeys(events))
        unknown = sorted(set(events) - set(PluginEvents.all()))
        if unknown:
            raise ValidationError("Unknown plugin events", errors=unknown)
        if not webhook_url.startswith(("https://", "http://")):
            raise ValidationError("webhook_url must be an http(s) URL")

        existing = (
            self.db.query(Plugin)
            .filter(Plugin.tenant_id == tenant_id, Plugin.slug == slug)
            .first()
        )
        if existing:
            raise ConflictError("plugin_exists", f"Plugin '{slug}' already registered")

        plugin = Plugin(
            tenant_id=tenant_id,
            slug=slug,
            name=name,
            webhook_url=webhook_url,
            secret=secrets.token_hex(32),
            events=events,
            status=PluginStatus.ACTIVE,
        )
        self.db.add(plugin)
        self.db.commit()
        self.db.refresh(plugin)
        logger.info("plugin_registered", tenant_id=tenant_id, slug=slug, events=events)
        return plugin

    def emit(self, tenant_id: str, event_type: str, payload: dict) -> int:
        """Queue `event_type` for every subscribed plugin. Never raises."""
        try:
            if not self.flags.is_enabled(PLUGIN_EVENTS_FLAG, tenant_id, default=True):
                return 0

            plugins = (
                self.db.query(Plugin)
                .filter(Plugin.tenant_id == tenant_id, Plugin.status == PluginStatus.ACTIVE)
                .all()
            )
            subscribed = [p for p in plugins if event_type in (p.events or [])]
            if not subscribed:
                return 0

            body = {
                "event": event_type,
                "tenant_id": tenant_id,
                "timestamp": f"{datetime.utcnow().isoformat()}Z",
                "data": jsonable_encoder(payload),
            }
            with self.db.begin_nested():
                for plugin in subscribed:
                    self.db.add(
                        PluginEvent(
                            plugin_id=plugin.id,
                            tenant_id=tenant_id,
                            event_type=event_type,
                            payload=body,
                        )
                    )
            return len(subscribed)
        except SQLAlchemyError:
            logger.exception("plugin_event_enqueue_failed", tenant_id=tenant_id, event_type=event_type)
            return 0

    def deliver_pending(self, limit: int = 10, client: Optional[httpx.Client] = None) -> dict:
        events = (
            self.db.query(PluginEvent)
            .join(Plugin, Plugin.id == PluginEvent.plugin_id)
            .filter(
                PluginEvent.status == PluginEventStatus.PENDING,
                PluginEvent.retry_count < settings.PLUGIN_MAX_RETRIES,
                Plugin.status == PluginStatus.ACTIVE,
            )
            .order_by(PluginEvent.created_at.asc(), PluginEvent.id.asc())
            .limit(limit)
            .all()
        )
        summary = {"delivered": 0, "retrying": 0, "failed": 0}
        if not events:
            return summary

        owns_client = client is None
        client = client or httpx.Client(timeout=settings.PLUGIN_WEBHOOK_TIMEOUT_SECONDS)
        try:
            for event in events:
                outcome = self._send(client, event)
                summary[outcome] += 1
                self.db.commit()
        finally:
            if owns_client:
                client.close()

        logger.info("plugin_events_processed", **summary)
        return summary

    def _send(self, client: httpx.Client, event: PluginEvent) -> str:
        plugin = event.plugin
        body = json.dumps(event.payload, separators=(",", ":")).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Plugin-Event": event.event_type,
            SIGNATURE_HEADER: sign_payload(plugin.secret, body),
        }
        try:
            response = client.post(plugin.webhook_url, content=body, headers=headers)
            event.response_status = response.status_code
            if response.is_success:
                event.status = PluginEventStatus.DELIVERED
                event.processed_at = datetime.utcnow()
                event.error_message = None
                return "delivered"
            event.error_message = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            event.error_message = str(exc) or type(exc).__name__

        event.retry_count += 1
        logger.warning(
            "plugin_webhook_failed",
            plugin=plugin.slug,
            event_id=event.id,
            retry_count=event.retry_count,
            error=event.error_message,
        )
        if event.retry_count >= settings.PLUGIN_MAX_RETRIES:
            event.status = PluginEventStatus.FAILED
            event.processed_at = datetime.utcnow()
            return "failed"
        return "retrying"


def dispatch_plugin_delivery() -> None:
    """Kick the delivery worker after a commit; the beat schedule covers misses."""
    if not settings.PLUGIN_EVENTS_DISPATCH:
        return
    try:
        from backoffice.tasks.plugin_tasks import deliver_plugin_events

        deliver_plugin_events.delay()
    except Exception:
        logger.exception("plugin_delivery_dispatch_failed")
