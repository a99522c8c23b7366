from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from backoffice.models.checkout import CheckoutSession, CheckoutState
from backoffice.services.cart_service import CartService
from backoffice.services.checkout_service import CheckoutService
from backoffice.services.credit_service import CreditService
from backoffice.services.payment_service import IntentStatus
from backoffice.tasks import checkout_tasks, credit_tasks, inventory_tasks

TENANT = "default"


def test_expire_credits_task(db_session: Session, customer, monkeypatch):
    customer_id = customer.id
    CreditService(db_session, TENANT).issue(
        customer_id, "15.00", "Promo", expires_at=datetime.utcnow() - timedelta(hours=1)
    )
    monkeypatch.setattr(credit_tasks, "SessionLocal", lambda: db_session)

    assert credit_tasks.expire_credits() == {"expired": 1}
    assert CreditService(db_session, TENANT).get_balance(customer_id)["balance"] == Decimal("0.00")


def test_expire_checkout_sessions_task(db_session: Session, customer, make_variant, provider, monkeypatch):
    variant = make_variant()
    CartService(db_session, TENANT).add_item(customer.id, variant.product_id, variant.id)
    session = CheckoutService(db_session, TENANT, provider).prepare(customer.id)
    session_id = session.id
    session.expires_at = datetime.utcnow() - timedelta(minutes=1)
    db_session.commit()
    provider.status = IntentStatus.REQUIRES_PAYMENT

    monkeypatch.setattr(checkout_tasks, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(checkout_tasks, "get_payment_provider", lambda: provider)

    assert checkout_tasks.expire_checkout_sessions() == {"expired": 1, "completed": 0, "skipped": 0}
    assert db_session.get(CheckoutSession, session_id).state == CheckoutState.FAILED


def test_inventory_tasks_with_nothing_to_do(db_session: Session, monkeypatch):
    monkeypatch.setattr(inventory_tasks, "SessionLocal", lambda: db_session)

    assert inventory_tasks.reconcile_inventory() == {"applied": 0}
    assert inventory_tasks.release_expired_cart_holds() == {"released": 0}
