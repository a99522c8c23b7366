import pytest
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, NotFoundError
from backoffice.models.plugin import PluginEvent
from backoffice.models.waitlist import WaitlistStatus
from backoffice.services.plugin_service import PluginEvents, PluginService
from backoffice.services.waitlist_service import WaitlistService

TENANT = "default"


def test_join_leave_and_listing(db_session: Session, customer, make_variant):
    variant = make_variant(available=0)
    service = WaitlistService(db_session, TENANT)

    entry = service.join(customer.id, variant.product_id, variant.id)
    assert entry.status == WaitlistStatus.WAITING
    assert entry.source == "manual"
    assert [e.id for e in service.list_for_customer(customer.id)] == [entry.id]

    left = service.leave(customer.id, entry.id)
    assert left.status == WaitlistStatus.REMOVED
    assert service.list_for_customer(customer.id) == []
    assert len(service.list_for_customer(customer.id, include_removed=True)) == 1

    # Leaving twice is harmless
    assert service.leave(customer.id, entry.id).status == WaitlistStatus.REMOVED


def test_join_with_mismatched_product(db_session: Session, customer, make_variant):
    variant, other = make_variant(), make_variant()

    with pytest.raises(NotFoundError):
        WaitlistService(db_session, TENANT).join(customer.id, other.product_id, variant.id)


def test_customers_cannot_touch_each_others_entries(db_session: Session, make_customer, make_variant):
    owner, stranger = make_customer(), make_customer()
    variant = make_variant()
    service = WaitlistService(db_session, TENANT)
    entry = service.join(owner.id, variant.product_id, variant.id)

    with pytest.raises(NotFoundError):
        service.leave(stranger.id, entry.id)


def test_authorize_only_waiting_entries(db_session: Session, customer, make_variant):
    variant = make_variant()
    service = WaitlistService(db_session, TENANT)
    entry = service.join(customer.id, variant.product_id, variant.id)

    authorized = service.authorize(entry.id)
    assert authorized.status == WaitlistStatus.AUTHORIZED
    assert authorized.authorized_at is not None

    with pytest.raises(ConflictError) as exc_info:
        service.authorize(entry.id)
    assert exc_info.value.reason == "waitlist_not_waiting"


def test_waitlist_changes_emit_events(db_session: Session, customer, make_variant):
    PluginService(db_session).register_plugin(
        TENANT,
        "restock-alerts",
        "Restock alerts",
        "https://hooks.example.com/restock",
        [PluginEvents.WAITLIST_ITEM_ADDED, PluginEvents.WAITLIST_ITEM_PREAUTHORIZED, PluginEvents.WAITLIST_ITEM_REMOVED],
    )
    variant = make_variant()
    service = WaitlistService(db_session, TENANT)

    entry = service.join(customer.id, variant.product_id, variant.id)
    service.authorize(entry.id)
    service.leave(customer.id, entry.id)

    event_types = [e.event_type for e in db_session.query(PluginEvent).order_by(PluginEvent.id.asc())]
    assert event_types == [
        PluginEvents.WAITLIST_ITEM_ADDED,
        PluginEvents.WAITLIST_ITEM_PREAUTHORIZED,
        PluginEvents.WAITLIST_ITEM_REMOVED,
    ]
