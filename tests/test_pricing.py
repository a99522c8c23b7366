import random
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.models.discount import Discount, DiscountValueType
from backoffice.services.cart_service import CartService, compute_totals
from backoffice.services.credit_service import CreditService
from backoffice.services.discount_service import calculate_amount

TENANT = "default"


def _items(*prices):
    return [SimpleNamespace(unit_price=Decimal(p)) for p in prices]


def _create_discount(db: Session, code: str, value: str, value_type=DiscountValueType.PERCENTAGE, **kwargs) -> Discount:
    discount = Discount(
        tenant_id=TENANT,
        code=code,
        title=f"{code} promo",
        value_type=value_type,
        value=Decimal(value),
        **kwargs,
    )
    db.add(discount)
    db.commit()
    db.refresh(discount)
    return discount


def test_reference_scenario_totals_93():
    pricing = compute_totals(
        _items("100.00"),
        discount_amount=Decimal("10.00"),
        credits_requested=Decimal("5.00"),
        balance=Decimal("50.00"),
        tax_rate=Decimal("0.08"),
        shipping=Decimal("0"),
    )

    assert pricing.subtotal == Decimal("100.00")
    assert pricing.tax == Decimal("8.00")
    assert pricing.discount_amount == Decimal("10.00")
    assert pricing.credits_applied == Decimal("5.00")
    assert pricing.total == Decimal("93.00")


def test_total_formula_holds_for_random_carts():
    rng = random.Random(20261019)
    for _ in range(200):
        prices = [f"{rng.randint(1, 50000) / 100:.2f}" for _ in range(rng.randint(0, 6))]
        items = _items(*prices)
        discount = Decimal(rng.randint(0, 30000)) / 100
        balance = Decimal(rng.randint(0, 30000)) / 100
        requested = rng.choice([None, Decimal(rng.randint(0, 30000)) / 100])
        shipping = Decimal(rng.randint(0, 1500)) / 100

        pricing = compute_totals(items, discount, requested, balance, tax_rate=Decimal("0.08"), shipping=shipping)

        expected = max(
            Decimal("0"),
            pricing.subtotal + pricing.tax + pricing.shipping - pricing.discount_amount - pricing.credits_applied,
        )
        assert pricing.total == expected
        assert pricing.total >= 0
        assert pricing.discount_amount <= pricing.subtotal
        assert pricing.credits_applied <= balance
        if requested is not None:
            assert pricing.credits_applied <= requested


def test_credits_capped_at_amount_owed():
    pricing = compute_totals(_items("20.00"), balance=Decimal("500.00"), tax_rate=Decimal("0.10"), shipping=Decimal("5"))

    assert pricing.credits_applied == Decimal("27.00")
    assert pricing.total == Decimal("0.00")


def test_tax_is_charged_on_pre_discount_subtotal():
    pricing = compute_totals(
        _items("50.00", "50.00"),
        discount_amount=Decimal("40.00"),
        tax_rate=Decimal("0.08"),
        shipping=Decimal("0"),
    )

    assert pricing.tax == Decimal("8.00")
    assert pricing.total == Decimal("68.00")


def test_money_rounds_half_up():
    pricing = compute_totals(_items("0.05"), tax_rate=Decimal("0.10"), shipping=Decimal("0"))

    # 0.005 rounds up, not to even
    assert pricing.tax == Decimal("0.01")


def test_discount_amount_calculation(db_session: Session):
    percent = _create_discount(db_session, "PCT15", "15")
    fixed = _create_discount(db_session, "FLAT30", "30", value_type=DiscountValueType.FIXED_AMOUNT)

    assert calculate_amount(percent, Decimal("33.33")) == Decimal("5.00")
    assert calculate_amount(fixed, Decimal("100.00")) == Decimal("30.00")
    assert calculate_amount(fixed, Decimal("12.50")) == Decimal("12.50")
    assert calculate_amount(fixed, Decimal("0")) == Decimal("0.00")


def test_reference_scenario_through_cart(db_session: Session, customer, make_variant):
    variant = make_variant(price="100.00")
    _create_discount(db_session, "SAVE10", "10")
    CreditService(db_session, TENANT).issue(customer.id, "50.00", "Welcome credit")

    service = CartService(db_session, TENANT)
    service.add_item(customer.id, variant.product_id, variant.id)
    service.apply_discount(customer.id, "save10")
    view = service.get_cart(customer.id, credits_requested=Decimal("5.00"))

    assert view.applied_discount["code"] == "SAVE10"
    assert view.pricing.subtotal == Decimal("100.00")
    assert view.pricing.tax == Decimal("8.00")
    assert view.pricing.shipping == Decimal("0.00")
    assert view.pricing.discount_amount == Decimal("10.00")
    assert view.pricing.credits_applied == Decimal("5.00")
    assert view.pricing.total == Decimal("93.00")
    assert view.credits["balance"] == Decimal("50.00")


def test_flat_shipping_is_payable_with_credits(db_session: Session, customer, make_variant, monkeypatch):
    monkeypatch.setattr(settings, "SHIPPING_FLAT_RATE", Decimal("7.50"))
    variant = make_variant(price="40.00")
    CreditService(db_session, TENANT).issue(customer.id, "100.00", "Store credit")

    service = CartService(db_session, TENANT)
    service.add_item(customer.id, variant.product_id, variant.id)
    view = service.get_cart(customer.id)

    assert view.pricing.shipping == Decimal("7.50")
    assert view.pricing.credits_applied == Decimal("50.70")
    assert view.pricing.total == Decimal("0.00")

    capped = service.get_cart(customer.id, credits_requested=Decimal("45.00"))
    assert capped.pricing.credits_applied == Decimal("45.00")
    assert capped.pricing.total == Decimal("5.70")
