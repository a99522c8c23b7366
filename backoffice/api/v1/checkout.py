from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from backoffice.api.deps import get_current_customer, get_plugin_service, get_provider
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.schemas.checkout import (
    CheckoutCompleteRequest,
    CheckoutPrepareRequest,
    CheckoutSessionResponse,
    OrderResponse,
)
from backoffice.services.checkout_service import CheckoutService
from backoffice.services.order_service import get_customer_order, list_customer_orders
from backoffice.services.payment_service import PaymentProvider
from backoffice.services.plugin_service import PluginService
from backoffice.api.responses import success

router = APIRouter()


def get_checkout_service(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
    plugins: PluginService = Depends(get_plugin_service),
) -> CheckoutService:
    return CheckoutService(db, customer.tenant_id, provider, plugins=plugins)


@router.post("/prepare", status_code=status.HTTP_201_CREATED)
def prepare_checkout(
    payload: CheckoutPrepareRequest,
    customer: Customer = Depends(get_current_customer),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Price the cart server-side and open a payment intent for the residual.

    Credits-only sessions carry no client secret; complete them with
    `credits_only=true`.
    """
    session = service.prepare(customer.id, payload.credits_requested, payload.idempotency_key)
    data = CheckoutSessionResponse.model_validate(session)
    data.publishable_key = None if session.credits_only else service.provider.publishable_key
    return success(data=data.model_dump(), message="Checkout prepared")


@router.post("/complete")
def complete_checkout(
    payload: CheckoutCompleteRequest,
    customer: Customer = Depends(get_current_customer),
    service: CheckoutService = Depends(get_checkout_service),
):
    order = service.complete(
        customer.id,
        session_id=payload.session_id,
        payment_reference=payload.payment_reference,
        credits_only=payload.credits_only,
        payment_id=payload.payment_id,
        signature=payload.signature,
    )
    return success(data=OrderResponse.model_validate(order).model_dump(), message="Order placed")


@router.post("/sessions/{session_id}/cancel")
def cancel_checkout(
    session_id: str,
    customer: Customer = Depends(get_current_customer),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Abandon an unpaid checkout so its cart items can be edited."""
    session = service.cancel(customer.id, session_id)
    return success(data=CheckoutSessionResponse.model_validate(session).model_dump(), message="Checkout cancelled")


@router.get("/orders")
def list_orders(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    orders = list_customer_orders(db, customer.id)
    return success(data=[OrderResponse.model_validate(o).model_dump() for o in orders])


@router.get("/orders/{order_number}")
def get_order(
    order_number: str,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    order = get_customer_order(db, customer.id, order_number)
    return success(data=OrderResponse.model_validate(order).model_dump())
