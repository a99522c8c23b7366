import json
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import (
    APIError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PaymentVerificationError,
    PostPaymentCommitError,
    ValidationError,
)
from backoffice.models.cart import CartItem
from backoffice.models.checkout import CheckoutSession, CheckoutState
from backoffice.models.customer import Customer
from backoffice.models.discount import Discount
from backoffice.models.order import Order, OrderItem, OrderStatus
from backoffice.models.payment import PaymentStatus, PaymentTransaction
from backoffice.services.cart_service import CartService
from backoffice.services.credit_service import CreditService
from backoffice.services.order_service import generate_order_number
from backoffice.services.payment_service import IntentStatus, IntentVerification, PaymentProvider
from backoffice.services.plugin_service import PluginEvents, PluginService, dispatch_plugin_delivery
from backoffice.utils.money import ZERO, to_money

logger = structlog.get_logger()

OPEN_STATES = (CheckoutState.PREPARING, CheckoutState.AWAITING_PAYMENT)


class CheckoutService:
    """
    Two-phase checkout.

    `prepare` prices the cart on the server, snapshots it into a checkout
    session and opens a provider intent for whatever credits do not cover.
    `complete` verifies the payment with the provider and then writes the
    order, inventory commit, discount usage, credit debit and cart clear in
    one transaction. Completion is keyed by the session, so repeating it
    returns the order that already exists.
    """

    def __init__(
        self,
        db: Session,
        tenant_id: str,
        provider: PaymentProvider,
        plugins: Optional[PluginService] = None,
        credits: Optional[CreditService] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.provider = provider
        self.plugins = plugins or PluginService(db)
        self.credits = credits or CreditService(db, tenant_id)
        self.cart = CartService(db, tenant_id, plugins=self.plugins, credits=self.credits)

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    def prepare(self, customer_id: int, credits_requested=None, idempotency_key: Optional[str] = None) -> CheckoutSession:
        """
        Open a checkout for the current cart.

        Runs under the customer lock. An open session that still matches the
        cart is handed back instead of opening a second intent; one that no
        longer matches is failed first, after the provider confirms it was
        never paid.
        """
        if idempotency_key:
            existing = self._session_by_key(customer_id, idempotency_key)
            if existing:
                if existing.state == CheckoutState.FAILED:
                    raise ConflictError("idempotency_key_reused", "This checkout attempt failed; start a new one")
                return existing

        self.cart._lock_customer(customer_id)
        view = self.cart.get_cart(customer_id, credits_requested)
        if view.discount_error:
            raise ConflictError(view.discount_error["reason"], view.discount_error["message"], cart=view.to_dict())
        if not view.items:
            self.db.rollback()
            raise ConflictError("cart_empty", "Cart is empty", cart=view.to_dict())

        now = datetime.utcnow()
        reusable = self._settle_open_sessions(customer_id, view, now)
        if reusable:
            self.db.commit()
            dispatch_plugin_delivery()
            logger.info("checkout_session_reused", checkout_session_id=reusable.id, customer_id=customer_id)
            return reusable

        pricing = view.pricing
        discount = view.applied_discount or {}
        credits_only = pricing.total <= 0
        session = CheckoutSession(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            idempotency_key=idempotency_key,
            state=CheckoutState.AWAITING_PAYMENT if credits_only else CheckoutState.PREPARING,
            credits_only=credits_only,
            currency=settings.PAYMENT_CURRENCY,
            subtotal=pricing.subtotal,
            tax=pricing.tax,
            shipping=pricing.shipping,
            discount_amount=pricing.discount_amount,
            discount_id=discount.get("discount_id"),
            discount_code=discount.get("code"),
            credits_applied=pricing.credits_applied,
            total=pricing.total,
            cart_item_ids=[item.id for item in view.items],
            expires_at=now + timedelta(minutes=settings.PAYMENT_INTENT_TTL_MINUTES),
        )
        self.db.add(session)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._session_by_key(customer_id, idempotency_key) if idempotency_key else None
            if existing:
                return existing
            raise
        dispatch_plugin_delivery()

        if not session.credits_only:
            metadata = {
                "checkout_session_id": session.id,
                "customer_id": customer_id,
                "cart_item_count": len(view.items),
                "discount_code": session.discount_code,
                "credits_applied": str(session.credits_applied),
            }
            try:
                intent = self.provider.create_intent(session.total, session.currency, metadata)
            except ExternalServiceError as exc:
                self._fail(session, exc.message)
                raise
            advanced = self.db.execute(
                update(CheckoutSession)
                .where(CheckoutSession.id == session.id, CheckoutSession.state == CheckoutState.PREPARING)
                .values(
                    state=CheckoutState.AWAITING_PAYMENT,
                    intent_id=intent.intent_id,
                    client_secret=intent.client_secret,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if advanced.rowcount != 1:
                self.db.rollback()
                logger.info("checkout_superseded_while_preparing", checkout_session_id=session.id, intent_id=intent.intent_id)
                raise ConflictError("checkout_superseded", "A newer checkout replaced this one")

        self.plugins.emit(
            self.tenant_id,
            PluginEvents.CHECKOUT_STARTED,
            {
                "checkout_session_id": session.id,
                "customer_id": customer_id,
                "credits_only": session.credits_only,
                "total": session.total,
                "cart_item_count": len(view.items),
            },
        )
        self.db.commit()
        self.db.refresh(session)
        dispatch_plugin_delivery()
        logger.info(
            "checkout_prepared",
            checkout_session_id=session.id,
            customer_id=customer_id,
            credits_only=session.credits_only,
            total=str(session.total),
            intent_id=session.intent_id,
        )
        return session

    def cancel(self, customer_id: int, session_id: str) -> CheckoutSession:
        """Abandon an open checkout so the cart can be edited again."""
        session = self._find_session(customer_id, session_id, None, False)
        if session.state == CheckoutState.FAILED:
            return session
        if session.state in (CheckoutState.COMPLETING, CheckoutState.COMPLETED):
            raise ConflictError("checkout_not_cancellable", "Checkout has already been paid for")

        if session.intent_id:
            self._ensure_unpaid(session)

        self.cart._lock_customer(customer_id)
        if not self._mark_failed(session, "cancelled"):
            self.db.rollback()
            raise ConflictError("checkout_not_cancellable", "Checkout is already being completed")
        self.db.commit()
        self.db.refresh(session)
        dispatch_plugin_delivery()
        logger.info("checkout_cancelled", checkout_session_id=session.id, customer_id=customer_id)
        return session


    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    def complete(
        self,
        customer_id: int,
        session_id: Optional[str] = None,
        payment_reference: Optional[str] = None,
        credits_only: bool = False,
        payment_id: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> Order:
        session = self._find_session(customer_id, session_id, payment_reference, credits_only)

        if session.state == CheckoutState.COMPLETED:
            return self._existing_order(session)
        if session.state == CheckoutState.FAILED:
            raise ConflictError("checkout_failed", session.failure_reason or "Checkout session has failed")
        if session.state == CheckoutState.PREPARING:
            raise ConflictError("checkout_not_ready", "Checkout session is not awaiting payment")
        if session.credits_only != credits_only:
            raise ValidationError("credits_only does not match the checkout session")

        now = datetime.utcnow()
        verification = None
        if session.credits_only:
            if session.is_expired(now):
                self._fail(session, "expired")
                raise ConflictError("checkout_expired", "Checkout session has expired")
        else:
            verification = self._verify_payment(session, payment_id, signature, now)

        # Customer lock first, then the session row; cart edits take them in the same order
        self.cart._lock_customer(session.customer_id)
        if not self._claim(session, now):
            self.db.rollback()
            self.db.refresh(session)
            if session.state == CheckoutState.COMPLETED:
                return self._existing_order(session)
            raise ConflictError("checkout_in_progress", "Checkout is already being completed")

        try:
            order = self._commit_order(session, verification)
        except IntegrityError as exc:
            self.db.rollback()
            existing = self._order_for(session)
            if existing:
                logger.info("checkout_completion_duplicate", checkout_session_id=session.id, order_id=existing.id)
                return existing
            self._handle_commit_failure(session, exc)
        except APIError as exc:
            self.db.rollback()
            if session.credits_only:
                self._fail(session, exc.message)
                if isinstance(exc, ConflictError) and exc.cart is None:
                    exc.cart = self.cart.get_cart(customer_id).to_dict()
                raise
            self._handle_commit_failure(session, exc)
        except Exception as exc:
            self.db.rollback()
            if session.credits_only:
                self._fail(session, str(exc))
                raise
            self._handle_commit_failure(session, exc)

        dispatch_plugin_delivery()
        logger.info(
            "checkout_completed",
            checkout_session_id=session.id,
            order_id=order.id,
            order_number=order.order_number,
            customer_id=customer_id,
            total=str(order.total_amount),
            credits_applied=str(order.credits_applied),
        )
        return order

    def expire_stale_sessions(self, now: Optional[datetime] = None) -> dict:
        """
        Close sessions whose intent window has passed.

        A paid session whose completion never arrived is completed here
        instead; provider outages leave the session for the next sweep.
        """
        now = now or datetime.utcnow()
        stale: List[CheckoutSession] = (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.tenant_id == self.tenant_id,
                CheckoutSession.state.in_(OPEN_STATES),
                CheckoutSession.expires_at <= now,
            )
            .order_by(CheckoutSession.expires_at.asc())
            .all()
        )
        summary = {"expired": 0, "completed": 0, "skipped": 0}
        for session in stale:
            if session.intent_id and session.state == CheckoutState.AWAITING_PAYMENT:
                try:
                    verification = self.provider.verify_intent(session.intent_id)
                except ExternalServiceError:
                    summary["skipped"] += 1
                    continue
                if verification.status in (IntentStatus.SUCCEEDED, IntentStatus.PROCESSING):
                    if verification.status == IntentStatus.SUCCEEDED:
                        try:
                            self.complete(session.customer_id, session_id=session.id)
                            summary["completed"] += 1
                        except APIError:
                            logger.exception("checkout_sweep_completion_failed", checkout_session_id=session.id)
                            summary["skipped"] += 1
                    else:
                        summary["skipped"] += 1
                    continue
            self._fail(session, "expired")
            summary["expired"] += 1

        if summary["expired"] or summary["completed"]:
            logger.info("checkout_sessions_swept", tenant_id=self.tenant_id, **summary)
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _verify_payment(
        self,
        session: CheckoutSession,
        payment_id: Optional[str],
        signature: Optional[str],
        now: datetime,
    ) -> IntentVerification:
        if signature is not None and not self.provider.verify_signature(session.intent_id, payment_id or "", signature):
            logger.warning("payment_signature_invalid", checkout_session_id=session.id, intent_id=session.intent_id)
            raise PaymentVerificationError("Invalid payment signature")

        # Timeouts propagate as ExternalServiceError; the session stays open so
        # the client can retry completion once the provider answers.
        verification = self.provider.verify_intent(session.intent_id)

        if verification.status != IntentStatus.SUCCEEDED:
            if session.is_expired(now):
                self._fail(session, "expired")
                raise ConflictError("checkout_expired", "Checkout session has expired")
            logger.info(
                "payment_not_verified",
                checkout_session_id=session.id,
                intent_id=session.intent_id,
                provider_status=verification.status.value,
            )
            raise PaymentVerificationError(provider_status=verification.status.value)

        if to_money(verification.amount) != to_money(session.total):
            logger.error(
                "payment_amount_mismatch",
                checkout_session_id=session.id,
                intent_id=session.intent_id,
                expected=str(session.total),
                received=str(verification.amount),
                reconciliation_required=True,
            )
            raise PaymentVerificationError("Paid amount does not match the checkout total", provider_status="amount_mismatch")

        if session.is_expired(now):
            logger.warning("checkout_completed_after_expiry", checkout_session_id=session.id, intent_id=session.intent_id)
        return verification

    def _settle_open_sessions(self, customer_id: int, view, now: datetime) -> Optional[CheckoutSession]:
        """Return the open session matching `view`; fail every other open one."""
        reusable = None
        for session in self.cart.open_checkouts(customer_id):
            if reusable is None and self._matches(session, view, now):
                reusable = session
                continue
            if session.state == CheckoutState.COMPLETING:
                self.db.rollback()
                raise ConflictError("checkout_in_progress", "A previous checkout is being completed", cart=view.to_dict())
            if session.intent_id:
                self._ensure_unpaid(session)
            self._mark_failed(session, "superseded")
        return reusable

    @staticmethod
    def _matches(session: CheckoutSession, view, now: datetime) -> bool:
        pricing = view.pricing
        discount = view.applied_discount or {}
        return (
            session.state == CheckoutState.AWAITING_PAYMENT
            and not session.is_expired(now)
            and sorted(session.cart_item_ids or []) == sorted(item.id for item in view.items)
            and to_money(session.total) == pricing.total
            and to_money(session.credits_applied) == pricing.credits_applied
            and session.discount_code == discount.get("code")
        )

    def _ensure_unpaid(self, session: CheckoutSession) -> None:
        try:
            verification = self.provider.verify_intent(session.intent_id)
        except ExternalServiceError:
            self.db.rollback()
            raise
        if verification.status in (IntentStatus.SUCCEEDED, IntentStatus.PROCESSING):
            self.db.rollback()
            logger.info(
                "checkout_payment_already_received",
                checkout_session_id=session.id,
                intent_id=session.intent_id,
                provider_status=verification.status.value,
            )
            raise ConflictError("payment_received", "Payment for this checkout was received; complete it instead")

    def _mark_failed(self, session: CheckoutSession, reason: str) -> bool:
        """Move an open session to FAILED unless completion claimed it first. Caller commits."""
        result = self.db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session.id, CheckoutSession.state.in_(OPEN_STATES))
            .values(state=CheckoutState.FAILED, failure_reason=reason, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.CHECKOUT_FAILED,
            {"checkout_session_id": session.id, "customer_id": session.customer_id, "reason": reason},
        )
        logger.info("checkout_failed", checkout_session_id=session.id, reason=reason)
        return True

    def _claim(self, session: CheckoutSession, now: datetime) -> bool:
        """Move AWAITING_PAYMENT -> COMPLETING; only one caller wins."""
        result = self.db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session.id, CheckoutSession.state == CheckoutState.AWAITING_PAYMENT)
            .values(state=CheckoutState.COMPLETING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _commit_order(self, session: CheckoutSession, verification: Optional[IntentVerification]) -> Order:
        customer = self.db.get(Customer, session.customer_id)
        item_ids = list(session.cart_item_ids or [])
        items = (
            self.db.query(CartItem)
            .filter(CartItem.customer_id == session.customer_id, CartItem.id.in_(item_ids))
            .order_by(CartItem.id.asc())
            .all()
        )
        if len(items) != len(item_ids):
            raise ConflictError("cart_changed", "Cart items changed since checkout started")

        payment_reference = session.intent_id or f"credits_{session.id}"
        order = Order(
            order_number=generate_order_number(self.db),
            tenant_id=session.tenant_id,
            customer_id=customer.id,
            customer_name=customer.name,
            customer_email=customer.email,
            payment_method="credits" if session.credits_only else self.provider.name,
            payment_reference=payment_reference,
            checkout_session_id=session.id,
            subtotal=session.subtotal,
            tax_amount=session.tax,
            shipping_amount=session.shipping,
            discount_amount=session.discount_amount,
            discount_code=session.discount_code,
            credits_applied=session.credits_applied,
            total_amount=session.total,
            status=OrderStatus.PAID,
        )
        self.db.add(order)
        self.db.flush()

        for item in items:
            self.db.add(
                OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    location_id=item.location_id,
                    product_title=item.product.title,
                    variant_data=item.variant_data or {},
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
            )
            self.cart.inventory.commit_reserved(item.variant_id, item.location_id)

        if session.discount_id:
            # A paid order keeps the price the customer was charged even if the
            # cap filled up meanwhile
            self.cart.discounts.record_usage(
                session.discount_id,
                customer.id,
                order.id,
                enforce_limits=session.credits_only,
            )
            self._warn_on_discount_overrun(session.discount_id, order)

        if to_money(session.credits_applied) > ZERO:
            self.credits.spend(customer.id, session.credits_applied, reference_id=order.order_number)

        self.cart.clear_after_checkout(customer.id, item_ids)

        if verification is not None:
            self.db.add(
                PaymentTransaction(
                    tenant_id=session.tenant_id,
                    order_id=order.id,
                    provider=self.provider.name,
                    intent_id=session.intent_id,
                    provider_payment_id=verification.payment_id,
                    amount=verification.amount,
                    currency=verification.currency,
                    status=PaymentStatus.SUCCEEDED,
                    gateway_response=json.dumps(verification.raw, default=str),
                )
            )

        session.state = CheckoutState.COMPLETED
        session.order_id = order.id
        session.reconciliation_required = False
        session.failure_reason = None

        event_payload = {
            "order_id": order.id,
            "order_number": order.order_number,
            "checkout_session_id": session.id,
            "customer_id": customer.id,
            "total": order.total_amount,
            "credits_applied": order.credits_applied,
            "discount_code": order.discount_code,
            "payment_method": order.payment_method,
        }
        self.plugins.emit(self.tenant_id, PluginEvents.CHECKOUT_COMPLETED, event_payload)
        self.plugins.emit(self.tenant_id, PluginEvents.ORDER_CREATED, event_payload)
        self.plugins.emit(self.tenant_id, PluginEvents.ORDER_PAID, event_payload)

        self.db.commit()
        self.db.refresh(order)
        return order

    def _warn_on_discount_overrun(self, discount_id: int, order: Order) -> None:
        usage = self.db.query(Discount.usage_count, Discount.usage_limit).filter(Discount.id == discount_id).first()
        if usage and usage.usage_limit is not None and usage.usage_count > usage.usage_limit:
            logger.warning(
                "discount_limit_overrun",
                discount_id=discount_id,
                order_id=order.id,
                usage_count=usage.usage_count,
                usage_limit=usage.usage_limit,
            )

    def _handle_commit_failure(self, session: CheckoutSession, exc: Exception) -> None:
        """Payment went through but the order did not; flag it and surface that distinctly."""
        payment_reference = session.intent_id
        session.reconciliation_required = True
        session.failure_reason = f"post_payment_commit_failed: {exc}"
        self.db.commit()
        logger.error(
            "post_payment_commit_failed",
            checkout_session_id=session.id,
            payment_reference=payment_reference,
            customer_id=session.customer_id,
            error=str(exc),
            reconciliation_required=True,
        )
        raise PostPaymentCommitError(payment_reference) from exc

    def _fail(self, session: CheckoutSession, reason: str) -> None:
        session.state = CheckoutState.FAILED
        session.failure_reason = reason
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.CHECKOUT_FAILED,
            {"checkout_session_id": session.id, "customer_id": session.customer_id, "reason": reason},
        )
        self.db.commit()
        dispatch_plugin_delivery()
        logger.info("checkout_failed", checkout_session_id=session.id, reason=reason)

    def _find_session(
        self,
        customer_id: int,
        session_id: Optional[str],
        payment_reference: Optional[str],
        credits_only: bool,
    ) -> CheckoutSession:
        query = self.db.query(CheckoutSession).filter(
            CheckoutSession.customer_id == customer_id,
            CheckoutSession.tenant_id == self.tenant_id,
        )
        if session_id:
            session = query.filter(CheckoutSession.id == session_id).first()
        elif payment_reference:
            session = query.filter(CheckoutSession.intent_id == payment_reference).first()
        elif credits_only:
            session = (
                query.filter(CheckoutSession.credits_only == True)  # noqa: E712
                .order_by(CheckoutSession.created_at.desc())
                .first()
            )
        else:
            raise ValidationError("session_id or payment_reference is required")
        if not session:
            raise NotFoundError("Checkout session")
        return session

    def _session_by_key(self, customer_id: int, idempotency_key: str) -> Optional[CheckoutSession]:
        return (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.customer_id == customer_id,
                CheckoutSession.idempotency_key == idempotency_key,
            )
            .first()
        )

    def _order_for(self, session: CheckoutSession) -> Optional[Order]:
        return (
            self.db.query(Order)
            .filter(Order.checkout_session_id == session.id)
            .first()
        )

    def _existing_order(self, session: CheckoutSession) -> Order:
        order = self._order_for(session)
        if not order:
            raise NotFoundError("Order")
        return order
