from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, ValidationError
from backoffice.models.discount import Discount, DiscountStatus, DiscountValueType
from backoffice.models.order import Order, OrderStatus
from backoffice.schemas.discount import DiscountCreate, DiscountUpdate
from backoffice.services.discount_service import (
    DiscountRejection,
    DiscountService,
    EffectiveStatus,
    effective_status,
)

TENANT = "default"


def _discount(db: Session, code: str = "SAVE10", **kwargs) -> Discount:
    values = {
        "tenant_id": TENANT,
        "code": code,
        "title": "Ten off",
        "value_type": DiscountValueType.PERCENTAGE,
        "value": Decimal("10"),
    }
    values.update(kwargs)
    discount = Discount(**values)
    db.add(discount)
    db.commit()
    db.refresh(discount)
    return discount


def _order(db: Session, customer, number: str) -> Order:
    order = Order(
        order_number=number,
        tenant_id=TENANT,
        customer_id=customer.id,
        customer_name=customer.name,
        customer_email=customer.email,
        payment_method="fake",
        payment_reference=f"ref-{number}",
        checkout_session_id=f"session-{number}",
        subtotal=Decimal("10.00"),
        tax_amount=Decimal("0.80"),
        shipping_amount=Decimal("0.00"),
        discount_amount=Decimal("1.00"),
        credits_applied=Decimal("0.00"),
        total_amount=Decimal("9.80"),
        status=OrderStatus.PAID,
    )
    db.add(order)
    db.commit()
    return order


def test_effective_status_precedence(db_session: Session):
    now = datetime.utcnow()
    disabled_and_expired = _discount(
        db_session,
        "OLD",
        status=DiscountStatus.DISABLED,
        starts_at=now - timedelta(days=10),
        ends_at=now - timedelta(days=1),
    )
    scheduled = _discount(db_session, "SOON", starts_at=now + timedelta(days=1))
    expired = _discount(db_session, "GONE", starts_at=now - timedelta(days=10), ends_at=now - timedelta(seconds=1))
    active = _discount(db_session, "LIVE", starts_at=now - timedelta(days=1), ends_at=now + timedelta(days=1))

    assert effective_status(disabled_and_expired, now) == EffectiveStatus.DISABLED
    assert effective_status(scheduled, now) == EffectiveStatus.SCHEDULED
    assert effective_status(expired, now) == EffectiveStatus.EXPIRED
    assert effective_status(active, now) == EffectiveStatus.ACTIVE


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"status": DiscountStatus.DISABLED}, DiscountRejection.DISABLED),
        ({"starts_at": datetime.utcnow() + timedelta(days=2)}, DiscountRejection.SCHEDULED),
        ({"starts_at": datetime.utcnow() - timedelta(days=5), "ends_at": datetime.utcnow() - timedelta(days=1)}, DiscountRejection.EXPIRED),
        ({"usage_limit": 3, "usage_count": 3}, DiscountRejection.USAGE_LIMIT),
        ({"minimum_amount": Decimal("75.00")}, DiscountRejection.MINIMUM_NOT_MET),
    ],
)
def test_validate_rejections(db_session: Session, customer, overrides, reason):
    _discount(db_session, **overrides)

    validation = DiscountService(db_session, TENANT).validate("save10", Decimal("50.00"), customer.id)

    assert validation.valid is False
    assert validation.reason == reason
    assert validation.amount == Decimal("0.00")
    assert validation.error


def test_validate_unknown_code(db_session: Session):
    validation = DiscountService(db_session, TENANT).validate("missing", Decimal("50.00"))

    assert validation.valid is False
    assert validation.reason == DiscountRejection.NOT_FOUND


def test_codes_are_tenant_scoped(db_session: Session):
    _discount(db_session, tenant_id="other-shop")

    validation = DiscountService(db_session, TENANT).validate("SAVE10", Decimal("50.00"))

    assert validation.reason == DiscountRejection.NOT_FOUND


def test_validate_prices_the_discount(db_session: Session, customer):
    _discount(db_session, minimum_amount=Decimal("50.00"))

    validation = DiscountService(db_session, TENANT).validate(" save10 ", Decimal("50.00"), customer.id)

    assert validation.valid is True
    assert validation.amount == Decimal("5.00")


def test_per_customer_limit(db_session: Session, make_customer):
    first, second = make_customer(), make_customer()
    discount = _discount(db_session, usage_limit_per_customer=1)
    service = DiscountService(db_session, TENANT)
    service.record_usage(discount.id, first.id, _order(db_session, first, "BO-1").id)
    db_session.commit()

    assert service.validate("SAVE10", Decimal("20.00"), first.id).reason == DiscountRejection.CUSTOMER_LIMIT
    assert service.validate("SAVE10", Decimal("20.00"), second.id).valid is True


def test_record_usage_enforces_global_cap(db_session: Session, make_customer):
    first, second = make_customer(), make_customer()
    discount = _discount(db_session, usage_limit=1)
    service = DiscountService(db_session, TENANT)
    service.record_usage(discount.id, first.id, _order(db_session, first, "BO-1").id)
    db_session.commit()

    second_order = _order(db_session, second, "BO-2")
    with pytest.raises(ConflictError) as exc_info:
        service.record_usage(discount.id, second.id, second_order.id)
    assert exc_info.value.reason == "usage_limit"
    db_session.rollback()

    service.record_usage(discount.id, second.id, second_order.id, enforce_limits=False)
    db_session.commit()
    db_session.refresh(discount)
    assert discount.usage_count == 2


def test_create_discount_normalises_code(db_session: Session):
    service = DiscountService(db_session, TENANT)
    discount = service.create_discount(
        DiscountCreate(code=" spring25 ", title="Spring", value_type=DiscountValueType.PERCENTAGE, value=Decimal("25"))
    )

    assert discount.code == "SPRING25"
    with pytest.raises(ConflictError):
        service.create_discount(
            DiscountCreate(code="SPRING25", title="Dup", value_type=DiscountValueType.PERCENTAGE, value=Decimal("5"))
        )


def test_percentage_over_100_rejected(db_session: Session):
    with pytest.raises(ValidationError):
        DiscountService(db_session, TENANT).create_discount(
            DiscountCreate(code="HUGE", title="Huge", value_type=DiscountValueType.PERCENTAGE, value=Decimal("150"))
        )


def test_update_rejects_inverted_window(db_session: Session):
    discount = _discount(db_session)
    service = DiscountService(db_session, TENANT)

    with pytest.raises(ValidationError):
        service.update_discount(
            discount.id,
            DiscountUpdate(ends_at=discount.starts_at - timedelta(days=1)),
        )

    updated = service.update_discount(discount.id, DiscountUpdate(status=DiscountStatus.DISABLED))
    assert updated.status == DiscountStatus.DISABLED
