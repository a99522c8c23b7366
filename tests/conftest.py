import os
import tempfile
from collections.abc import Generator
from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

os.environ["ENVIRONMENT"] = "development"
os.environ["PLUGIN_EVENTS_DISPATCH"] = "false"
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_razorpay_secret")

import backoffice.models  # noqa: F401
from backoffice.api.deps import get_provider
from backoffice.core.security import create_access_token
from backoffice.db.base_class import Base
from backoffice.db.session import enable_sqlite_savepoints, get_db
from backoffice.main import app
from backoffice.models.customer import Customer
from backoffice.models.inventory import InventoryLevel
from backoffice.models.product import Product, ProductVariant
from backoffice.services.payment_service import (
    IntentStatus,
    IntentVerification,
    PaymentIntent,
    PaymentProvider,
)

TENANT = "default"


class FakePaymentProvider(PaymentProvider):
    """In-memory provider; intents succeed unless told otherwise."""

    name = "fake"
    publishable_key = "pk_test_fake"

    def __init__(self):
        self.intents = {}
        self.customers = []
        self.status = IntentStatus.SUCCEEDED
        self.paid_amount: Optional[Decimal] = None
        self.create_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.verify_calls = 0

    def create_intent(self, amount, currency, metadata):
        if self.create_error:
            raise self.create_error
        intent_id = f"order_fake_{len(self.intents) + 1}"
        self.intents[intent_id] = {"amount": amount, "currency": currency, "metadata": metadata}
        return PaymentIntent(intent_id=intent_id, client_secret=intent_id, amount=amount, currency=currency)

    def verify_intent(self, intent_id):
        self.verify_calls += 1
        if self.verify_error:
            raise self.verify_error
        intent = self.intents[intent_id]
        return IntentVerification(
            intent_id=intent_id,
            status=self.status,
            amount=self.paid_amount if self.paid_amount is not None else intent["amount"],
            currency=intent["currency"],
            payment_id=f"pay_{intent_id}",
            raw={"id": intent_id, "status": self.status.value},
        )

    def verify_signature(self, intent_id, payment_id, signature):
        return signature == f"sig:{intent_id}:{payment_id}"

    def verify_webhook(self, body, signature):
        return signature == "valid-webhook-signature"

    def create_customer(self, name, email, phone=None):
        self.customers.append(email)
        return f"cust_fake_{len(self.customers)}"

    def attach_payment_method(self, customer_ref, token_id):
        return {"token_id": token_id, "method": "card", "last4": "4242"}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    db_file = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    db_file.close()

    engine = create_engine(
        f"sqlite:///{db_file.name}",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        os.unlink(db_file.name)


@pytest.fixture()
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture()
def client(db_session: Session, provider: FakePaymentProvider) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    app.state.feature_flag_cache.clear()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_customer(db_session: Session):
    counter = {"n": 0}

    def _make(name: str = "Test Customer") -> Customer:
        counter["n"] += 1
        customer = Customer(
            tenant_id=TENANT,
            name=name,
            email=f"customer{counter['n']}@example.com",
            phone="9876543210",
        )
        db_session.add(customer)
        db_session.commit()
        db_session.refresh(customer)
        return customer

    return _make


@pytest.fixture()
def customer(make_customer) -> Customer:
    return make_customer()


@pytest.fixture()
def make_variant(db_session: Session):
    counter = {"n": 0}

    def _make(price="100.00", available: int = 5, locations=("main",)) -> ProductVariant:
        counter["n"] += 1
        product = Product(tenant_id=TENANT, title=f"Product {counter['n']}", price=Decimal(price), is_active=True)
        db_session.add(product)
        db_session.flush()

        variant = ProductVariant(
            product_id=product.id,
            sku=f"SKU-{counter['n']}",
            size="M",
            color="Red",
            is_active=True,
        )
        db_session.add(variant)
        db_session.flush()

        for location in locations:
            db_session.add(
                InventoryLevel(
                    variant_id=variant.id,
                    location_id=location,
                    available=available,
                    on_hand=available,
                )
            )
        db_session.commit()
        db_session.refresh(variant)
        return variant

    return _make


def _auth_headers(subject, role: str = "customer") -> dict:
    token = create_access_token(str(subject), role=role, tenant_id=TENANT)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def customer_headers(customer: Customer) -> dict:
    return _auth_headers(customer.id)


@pytest.fixture()
def admin_headers() -> dict:
    return _auth_headers("staff-1", role="admin")


@pytest.fixture()
def owner_headers() -> dict:
    return _auth_headers("owner-1", role="owner")


@pytest.fixture()
def make_headers():
    return _auth_headers
