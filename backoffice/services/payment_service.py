import enum
import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import razorpay
import requests
import structlog
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import ExternalServiceError, NotFoundError
from backoffice.models.customer import Customer
from backoffice.models.payment import SavedPaymentMethod
from backoffice.utils.money import from_minor_units, to_minor_units
from backoffice.utils.retry import provider_read_retry

logger = structlog.get_logger()

PROVIDER_ERRORS = (BadRequestError, ServerError, GatewayError, requests.RequestException)


class IntentStatus(str, enum.Enum):
    REQUIRES_PAYMENT = "requires_payment"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PaymentIntent:
    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


@dataclass
class IntentVerification:
    intent_id: str
    status: IntentStatus
    amount: Decimal
    currency: str
    payment_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PaymentProvider:
    """Intent/confirm payment gateway used by checkout."""

    name = "provider"
    publishable_key: Optional[str] = None

    def create_intent(self, amount: Decimal, currency: str, metadata: dict) -> PaymentIntent:
        raise NotImplementedError

    def verify_intent(self, intent_id: str) -> IntentVerification:
        raise NotImplementedError

    def verify_signature(self, intent_id: str, payment_id: str, signature: str) -> bool:
        raise NotImplementedError

    def verify_webhook(self, body: str, signature: str) -> bool:
        raise NotImplementedError

    def create_customer(self, name: str, email: str, phone: Optional[str] = None) -> str:
        raise NotImplementedError

    def attach_payment_method(self, customer_ref: str, token_id: str) -> dict:
        raise NotImplementedError


class RazorpayPaymentProvider(PaymentProvider):
    """
    Razorpay orders act as payment intents; the order id doubles as the
    client secret handed to Checkout on the device.

    Reads are retried on transient failures. Order creation is never
    retried because Razorpay has no idempotency key for it.
    """

    name = "razorpay"

    def __init__(self, client: Optional[razorpay.Client] = None, timeout: Optional[float] = None):
        self.client = client or razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))
        self.timeout = timeout or settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS
        self.publishable_key = settings.RAZORPAY_KEY_ID

    def create_intent(self, amount: Decimal, currency: str, metadata: dict) -> PaymentIntent:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": str(metadata.get("checkout_session_id", "")),
            "notes": {key: str(value) for key, value in metadata.items() if value is not None},
        }
        try:
            order = self.client.order.create(data=payload, timeout=self.timeout)
        except PROVIDER_ERRORS as exc:
            raise self._wrap("create_intent", exc)

        logger.info("payment_intent_created", provider=self.name, intent_id=order["id"], amount=str(amount))
        return PaymentIntent(
            intent_id=order["id"],
            client_secret=order["id"],
            amount=from_minor_units(order["amount"]),
            currency=order["currency"],
        )

    def verify_intent(self, intent_id: str) -> IntentVerification:
        try:
            order = self._fetch_order(intent_id)
            payments = self._fetch_payments(intent_id) if order["status"] in ("paid", "attempted") else []
        except PROVIDER_ERRORS as exc:
            raise self._wrap("verify_intent", exc)

        captured = next((p for p in payments if p.get("status") == "captured"), None)
        authorized = next((p for p in payments if p.get("status") == "authorized"), None)

        if order["status"] == "paid" or captured:
            status = IntentStatus.SUCCEEDED
        elif authorized:
            status = IntentStatus.PROCESSING
        elif order["status"] == "attempted":
            status = IntentStatus.FAILED
        else:
            status = IntentStatus.REQUIRES_PAYMENT

        payment = captured or authorized
        return IntentVerification(
            intent_id=intent_id,
            status=status,
            amount=from_minor_units(order.get("amount_paid") or order["amount"]),
            currency=order["currency"],
            payment_id=payment["id"] if payment else None,
            raw=order,
        )

    def verify_signature(self, intent_id: str, payment_id: str, signature: str) -> bool:
        message = f"{intent_id}|{payment_id}"
        generated_signature = hmac.new(
            settings.RAZORPAY_KEY_SECRET.encode(),
            message.encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(generated_signature, signature or "")

    def verify_webhook(self, body: str, signature: str) -> bool:
        if not signature or not settings.RAZORPAY_WEBHOOK_SECRET:
            return False
        try:
            self.client.utility.verify_webhook_signature(body, signature, settings.RAZORPAY_WEBHOOK_SECRET)
        except SignatureVerificationError:
            return False
        return True

    def create_customer(self, name: str, email: str, phone: Optional[str] = None) -> str:
        data = {"name": name, "email": email, "fail_existing": "0"}
        if phone:
            data["contact"] = phone
        try:
            customer = self.client.customer.create(data=data, timeout=self.timeout)
        except PROVIDER_ERRORS as exc:
            raise self._wrap("create_customer", exc)
        return customer["id"]

    def attach_payment_method(self, customer_ref: str, token_id: str) -> dict:
        try:
            token = self._fetch_token(customer_ref, token_id)
        except PROVIDER_ERRORS as exc:
            raise self._wrap("attach_payment_method", exc)
        card = token.get("card") or {}
        return {"token_id": token["id"], "method": token.get("method"), "last4": card.get("last4")}

    @provider_read_retry()
    def _fetch_order(self, intent_id: str) -> dict:
        return self.client.order.fetch(intent_id, timeout=self.timeout)

    @provider_read_retry()
    def _fetch_payments(self, intent_id: str) -> list:
        return self.client.order.payments(intent_id, timeout=self.timeout).get("items", [])

    @provider_read_retry()
    def _fetch_token(self, customer_ref: str, token_id: str) -> dict:
        return self.client.token.fetch(customer_ref, token_id, timeout=self.timeout)

    def _wrap(self, operation: str, exc: Exception) -> ExternalServiceError:
        timed_out = isinstance(exc, requests.Timeout)
        retryable = timed_out or isinstance(exc, (ServerError, GatewayError, requests.ConnectionError))
        logger.error(
            "payment_provider_error",
            provider=self.name,
            operation=operation,
            timed_out=timed_out,
            error=str(exc),
        )
        message = "Payment provider timed out" if timed_out else "Payment provider request failed"
        return ExternalServiceError(self.name, message, retryable=retryable, timed_out=timed_out)


def get_payment_provider() -> PaymentProvider:
    return RazorpayPaymentProvider()


def ensure_provider_customer(db: Session, provider: PaymentProvider, customer: Customer) -> str:
    """Create the provider-side customer once and remember its reference."""
    if customer.payment_customer_ref:
        return customer.payment_customer_ref
    customer.payment_customer_ref = provider.create_customer(customer.name, customer.email, customer.phone)
    db.commit()
    logger.info("payment_customer_created", customer_id=customer.id, provider=provider.name)
    return customer.payment_customer_ref


def save_payment_method(db: Session, provider: PaymentProvider, customer: Customer, token_id: str) -> SavedPaymentMethod:
    customer_ref = ensure_provider_customer(db, provider, customer)
    details = provider.attach_payment_method(customer_ref, token_id)

    existing = db.query(SavedPaymentMethod).filter(SavedPaymentMethod.token_id == details["token_id"]).first()
    if existing:
        if existing.customer_id != customer.id:
            raise NotFoundError("Payment method")
        return existing

    method = SavedPaymentMethod(
        customer_id=customer.id,
        provider=provider.name,
        provider_customer_ref=customer_ref,
        token_id=details["token_id"],
        method=details.get("method"),
        last4=details.get("last4"),
    )
    db.add(method)
    db.commit()
    db.refresh(method)
    return method
