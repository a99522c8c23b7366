import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from backoffice.api.deps import get_current_customer, get_plugin_service, get_provider
from backoffice.core.exceptions import ConflictError, PaymentVerificationError
from backoffice.db.session import get_db
from backoffice.models.checkout import CheckoutSession, CheckoutState
from backoffice.models.customer import Customer
from backoffice.models.payment import SavedPaymentMethod
from backoffice.schemas.payment import AttachPaymentMethodRequest, SavedPaymentMethodResponse
from backoffice.services.checkout_service import CheckoutService
from backoffice.services.payment_service import PaymentProvider, ensure_provider_customer, save_payment_method
from backoffice.services.plugin_service import PluginService
from backoffice.api.responses import success

logger = structlog.get_logger()

router = APIRouter()

CAPTURE_EVENTS = ("payment.captured", "order.paid")


@router.post("/customer")
def create_payment_customer(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
):
    """Create (once) the provider-side customer record"""
    ref = ensure_provider_customer(db, provider, customer)
    return success(data={"payment_customer_ref": ref})


@router.get("/methods")
def list_payment_methods(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    methods = (
        db.query(SavedPaymentMethod)
        .filter(SavedPaymentMethod.customer_id == customer.id)
        .order_by(SavedPaymentMethod.created_at.desc())
        .all()
    )
    return success(data=[SavedPaymentMethodResponse.model_validate(m).model_dump() for m in methods])


@router.post("/methods", status_code=status.HTTP_201_CREATED)
def attach_payment_method(
    payload: AttachPaymentMethodRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
):
    method = save_payment_method(db, provider, customer, payload.token_id)
    return success(data=SavedPaymentMethodResponse.model_validate(method).model_dump(), message="Payment method saved")


def _settle_capture(db: Session, provider: PaymentProvider, plugins: PluginService, event: dict) -> dict:
    event_name = event.get("event")
    payment_entity = event.get("payload", {}).get("payment", {}).get("entity", {})
    order_entity = event.get("payload", {}).get("order", {}).get("entity", {})
    intent_id = payment_entity.get("order_id") or order_entity.get("id")
    logger.info("webhook_received", webhook_event=event_name, intent_id=intent_id, payment_id=payment_entity.get("id"))

    if event_name not in CAPTURE_EVENTS or not intent_id:
        return {"status": "ignored"}

    session = db.query(CheckoutSession).filter(CheckoutSession.intent_id == intent_id).first()
    if not session:
        logger.warning("webhook_unknown_intent", intent_id=intent_id)
        return {"status": "unknown_intent"}
    if session.state == CheckoutState.COMPLETED:
        return {"status": "duplicate"}

    service = CheckoutService(db, session.tenant_id, provider, plugins=plugins)
    try:
        order = service.complete(session.customer_id, session_id=session.id, payment_id=payment_entity.get("id"))
    except (ConflictError, PaymentVerificationError) as exc:
        logger.warning("webhook_completion_rejected", intent_id=intent_id, error=exc.message)
        return {"status": "rejected"}

    logger.info("webhook_payment_success", intent_id=intent_id, order_id=order.id)
    return {"status": "ok", "order_number": order.order_number}


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
    plugins: PluginService = Depends(get_plugin_service),
):
    """Complete checkouts whose client never called back after paying"""
    body = (await request.body()).decode()
    signature = request.headers.get("X-Razorpay-Signature")
    if not provider.verify_webhook(body, signature):
        logger.warning("webhook_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    # Completion blocks on the database and the provider; keep it off the event loop
    result = await run_in_threadpool(_settle_capture, db, provider, plugins, json.loads(body))
    message = "Payment already processed" if result["status"] == "duplicate" else "Webhook processed"
    return success(data=result, message=message)
