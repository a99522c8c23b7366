from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, NotFoundError
from backoffice.models.cart import AppliedDiscount, CartItem
from backoffice.models.checkout import CheckoutSession, CheckoutState
from backoffice.models.discount import Discount, DiscountValueType
from backoffice.models.inventory import InventoryLevel, InventoryReconciliation, ReconciliationStatus
from backoffice.models.waitlist import WaitlistEntry, WaitlistStatus
from backoffice.services.cart_service import CartService
from backoffice.services.credit_service import CreditService
from backoffice.services.inventory_service import InventoryService

TENANT = "default"


def _level(db: Session, variant_id: int, location_id: str = "main") -> InventoryLevel:
    db.expire_all()
    return (
        db.query(InventoryLevel)
        .filter(InventoryLevel.variant_id == variant_id, InventoryLevel.location_id == location_id)
        .one()
    )


def _create_discount(db: Session, code: str, value: str, **kwargs) -> Discount:
    discount = Discount(
        tenant_id=TENANT,
        code=code,
        title=f"{code} promo",
        value_type=kwargs.pop("value_type", DiscountValueType.PERCENTAGE),
        value=Decimal(value),
        **kwargs,
    )
    db.add(discount)
    db.commit()
    db.refresh(discount)
    return discount


def test_add_then_remove_is_inventory_neutral(db_session: Session, customer, make_variant):
    variant = make_variant(available=5)
    service = CartService(db_session, TENANT)

    added = [service.add_item(customer.id, variant.product_id, variant.id) for _ in range(3)]
    assert all(result.outcome == "added" for result in added)
    level = _level(db_session, variant.id)
    assert level.available == 2
    assert level.reserved == 3

    for result in added:
        service.remove_item(customer.id, result.cart_item.id)

    level = _level(db_session, variant.id)
    assert level.available == 5
    assert level.reserved == 0
    assert service.get_items(customer.id) == []


def test_each_unit_is_its_own_line(db_session: Session, customer, make_variant):
    variant = make_variant(price="12.50", available=3)
    service = CartService(db_session, TENANT)

    service.add_item(customer.id, variant.product_id, variant.id)
    view = service.add_item(customer.id, variant.product_id, variant.id).cart

    assert len(view.items) == 2
    assert all(item.quantity == 1 for item in view.items)
    assert view.pricing.subtotal == Decimal("25.00")


def test_add_unknown_variant_is_not_found(db_session: Session, customer, make_variant):
    variant = make_variant()
    service = CartService(db_session, TENANT)

    with pytest.raises(NotFoundError):
        service.add_item(customer.id, variant.product_id, variant.id + 100)


def test_last_unit_goes_to_one_customer_and_the_other_is_waitlisted(db_session: Session, make_customer, make_variant):
    variant = make_variant(available=1)
    first, second = make_customer("First"), make_customer("Second")
    service = CartService(db_session, TENANT)

    won = service.add_item(first.id, variant.product_id, variant.id)
    lost = service.add_item(second.id, variant.product_id, variant.id)

    assert won.outcome == "added"
    assert lost.outcome == "waitlisted"
    assert lost.cart_item is None
    assert lost.waitlist_entry.status == WaitlistStatus.WAITING
    assert lost.waitlist_entry.source == "cart"
    assert _level(db_session, variant.id).available == 0
    assert db_session.query(CartItem).filter(CartItem.customer_id == second.id).count() == 0


def test_losing_the_reservation_race_falls_back_to_waitlist(db_session: Session, customer, make_variant):
    """Another buyer takes the last unit between our read and our conditional update."""
    variant = make_variant(available=1)
    engine = db_session.get_bind()
    state = {"raced": False}

    def steal_last_unit(conn, cursor, statement, parameters, context, executemany):
        if not state["raced"] and statement.lstrip().upper().startswith("UPDATE INVENTORY_LEVELS"):
            state["raced"] = True
            cursor.connection.execute(
                "UPDATE inventory_levels SET available = available - 1, reserved = reserved + 1 WHERE variant_id = ?",
                (variant.id,),
            )

    event.listen(engine, "before_cursor_execute", steal_last_unit)
    try:
        result = CartService(db_session, TENANT).add_item(customer.id, variant.product_id, variant.id)
    finally:
        event.remove(engine, "before_cursor_execute", steal_last_unit)

    assert state["raced"] is True
    assert result.outcome == "waitlisted"
    level = _level(db_session, variant.id)
    assert level.available == 0
    assert db_session.query(WaitlistEntry).count() == 1


def test_reserve_prefers_best_stocked_location(db_session: Session, make_variant):
    variant = make_variant(available=2, locations=("north", "south"))
    south = _level(db_session, variant.id, "south")
    south.available = 7
    db_session.commit()

    reservation = InventoryService(db_session).reserve_one(variant.id)
    db_session.commit()

    assert reservation.success is True
    assert reservation.location_id == "south"
    assert reservation.new_available == 8


def test_discount_dropped_when_minimum_no_longer_met(db_session: Session, customer, make_variant):
    big = make_variant(price="60.00")
    small = make_variant(price="50.00")
    _create_discount(db_session, "BIG10", "10", minimum_amount=Decimal("100.00"))
    service = CartService(db_session, TENANT)

    service.add_item(customer.id, big.product_id, big.id)
    removable = service.add_item(customer.id, small.product_id, small.id).cart_item
    view = service.apply_discount(customer.id, "BIG10")
    assert view.pricing.discount_amount == Decimal("11.00")

    view = service.remove_item(customer.id, removable.id)

    assert view.applied_discount is None
    assert view.discount_error["reason"] == "minimum_not_met"
    assert view.discount_error["code"] == "BIG10"
    assert view.pricing.discount_amount == Decimal("0.00")
    assert view.pricing.total == view.pricing.subtotal + view.pricing.tax + view.pricing.shipping - view.pricing.credits_applied
    assert db_session.query(AppliedDiscount).count() == 0

    # Reported once, then simply absent
    assert service.get_cart(customer.id).discount_error is None


def test_rejected_discount_returns_reason_and_cart(db_session: Session, customer, make_variant):
    variant = make_variant(price="20.00")
    service = CartService(db_session, TENANT)
    service.add_item(customer.id, variant.product_id, variant.id)

    with pytest.raises(ConflictError) as exc_info:
        service.apply_discount(customer.id, "NOPE")

    assert exc_info.value.reason == "not_found"
    assert exc_info.value.cart["total_items"] == 1
    assert exc_info.value.cart["pricing"]["subtotal"] == Decimal("20.00")


def test_apply_credits_clamps_to_balance_and_amount_owed(db_session: Session, customer, make_variant):
    variant = make_variant(price="10.00")
    CreditService(db_session, TENANT).issue(customer.id, "100.00", "Goodwill")
    service = CartService(db_session, TENANT)
    service.add_item(customer.id, variant.product_id, variant.id)

    view = service.apply_credits(customer.id, Decimal("40.00"))

    assert view.pricing.credits_applied == Decimal("10.80")
    assert view.pricing.total == Decimal("0.00")


def test_apply_credits_without_balance_is_rejected(db_session: Session, customer, make_variant):
    variant = make_variant(price="10.00")
    service = CartService(db_session, TENANT)
    service.add_item(customer.id, variant.product_id, variant.id)

    with pytest.raises(ConflictError) as exc_info:
        service.apply_credits(customer.id, Decimal("5.00"))

    assert exc_info.value.reason == "credits_unavailable"
    assert exc_info.value.cart["pricing"]["credits_applied"] == Decimal("0.00")


def test_failed_restore_is_queued_for_reconciliation(db_session: Session, customer, make_variant):
    variant = make_variant(available=2)
    service = CartService(db_session, TENANT)
    item = service.add_item(customer.id, variant.product_id, variant.id).cart_item

    # Stock row disappears (e.g. location retired) while the unit sits in the cart
    db_session.query(InventoryLevel).filter(InventoryLevel.variant_id == variant.id).delete()
    db_session.commit()

    view = service.remove_item(customer.id, item.id)

    assert view.items == []
    pending = db_session.query(InventoryReconciliation).one()
    assert pending.status == ReconciliationStatus.PENDING
    assert pending.reason == "cart_item_removed"

    # Location comes back; the queued restoration is applied
    db_session.add(InventoryLevel(variant_id=variant.id, location_id="main", available=1, on_hand=2, reserved=1))
    db_session.commit()
    applied = InventoryService(db_session).reconcile_pending()

    assert applied == 1
    db_session.refresh(pending)
    assert pending.status == ReconciliationStatus.APPLIED
    assert _level(db_session, variant.id).available == 2


def test_clear_returns_all_units(db_session: Session, customer, make_variant):
    variant = make_variant(available=4)
    service = CartService(db_session, TENANT)
    for _ in range(3):
        service.add_item(customer.id, variant.product_id, variant.id)

    view = service.clear(customer.id)

    assert view.items == []
    assert _level(db_session, variant.id).available == 4


def test_expired_holds_are_released_except_items_in_checkout(db_session: Session, make_customer, make_variant):
    variant = make_variant(available=5)
    idle, paying = make_customer("Idle"), make_customer("Paying")
    service = CartService(db_session, TENANT)
    service.add_item(idle.id, variant.product_id, variant.id)
    in_checkout = service.add_item(paying.id, variant.product_id, variant.id).cart_item

    db_session.add(
        CheckoutSession(
            id="sess-hold",
            tenant_id=TENANT,
            customer_id=paying.id,
            state=CheckoutState.AWAITING_PAYMENT,
            currency="USD",
            subtotal=Decimal("100.00"),
            tax=Decimal("8.00"),
            shipping=Decimal("0.00"),
            discount_amount=Decimal("0.00"),
            credits_applied=Decimal("0.00"),
            total=Decimal("108.00"),
            cart_item_ids=[in_checkout.id],
        )
    )
    db_session.commit()

    released = service.release_expired_holds(now=datetime.utcnow() + timedelta(hours=25))

    assert released == 1
    assert service.get_items(idle.id) == []
    assert len(service.get_items(paying.id)) == 1
    assert _level(db_session, variant.id).available == 4


def test_hold_sweep_rechecks_each_item_under_the_customer_lock(db_session: Session, make_customer, make_variant, monkeypatch):
    variant = make_variant(available=5)
    idle, paying = make_customer("Idle"), make_customer("Paying")
    service = CartService(db_session, TENANT)
    service.add_item(idle.id, variant.product_id, variant.id)
    held_id = service.add_item(paying.id, variant.product_id, variant.id).cart_item.id
    gone_id = service.add_item(paying.id, variant.product_id, variant.id).cart_item.id

    lock_customer = service._lock_customer
    locked = []

    def lock_while_checkout_opens(customer_id):
        if not locked:
            db_session.add(
                CheckoutSession(
                    id="sess-late",
                    tenant_id=TENANT,
                    customer_id=paying.id,
                    state=CheckoutState.PREPARING,
                    currency="USD",
                    subtotal=Decimal("100.00"),
                    tax=Decimal("8.00"),
                    shipping=Decimal("0.00"),
                    discount_amount=Decimal("0.00"),
                    credits_applied=Decimal("0.00"),
                    total=Decimal("108.00"),
                    cart_item_ids=[held_id],
                )
            )
            db_session.query(CartItem).filter(CartItem.id == gone_id).delete(synchronize_session=False)
            db_session.commit()
        locked.append(customer_id)
        return lock_customer(customer_id)

    monkeypatch.setattr(service, "_lock_customer", lock_while_checkout_opens)

    released = service.release_expired_holds(now=datetime.utcnow() + timedelta(hours=25))

    assert released == 1
    assert locked == [idle.id, paying.id]
    assert service.get_items(idle.id) == []
    assert [item.id for item in service.get_items(paying.id)] == [held_id]
