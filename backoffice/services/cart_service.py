from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import ConflictError, NotFoundError
from backoffice.models.cart import AppliedDiscount, CartItem
from backoffice.models.checkout import CheckoutSession, CheckoutState
from backoffice.models.customer import Customer
from backoffice.models.product import Product, ProductVariant
from backoffice.models.waitlist import WaitlistEntry
from backoffice.services.credit_service import CreditService
from backoffice.services.discount_service import DiscountService
from backoffice.services.inventory_service import InventoryService
from backoffice.services.plugin_service import PluginEvents, PluginService, dispatch_plugin_delivery
from backoffice.services.waitlist_service import WaitlistService
from backoffice.utils.money import ZERO, to_money

logger = structlog.get_logger()

# Checkout states whose snapshot still covers cart items
HOLDING_STATES = (CheckoutState.PREPARING, CheckoutState.AWAITING_PAYMENT, CheckoutState.COMPLETING)


@dataclass
class PricingBreakdown:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount_amount: Decimal
    credits_applied: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "shipping": self.shipping,
            "discount_amount": self.discount_amount,
            "credits_applied": self.credits_applied,
            "total": self.total,
        }


@dataclass
class CartView:
    items: List[CartItem]
    pricing: PricingBreakdown
    applied_discount: Optional[dict] = None
    credits: dict = field(default_factory=dict)
    discount_error: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "items": [
                {
                    "id": item.id,
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "product_title": item.product.title if item.product else None,
                    "variant_data": item.variant_data or {},
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "added_at": item.added_at,
                }
                for item in self.items
            ],
            "total_items": len(self.items),
            "pricing": self.pricing.to_dict(),
            "applied_discount": self.applied_discount,
            "credits": self.credits,
            "discount_error": self.discount_error,
        }


@dataclass
class AddItemResult:
    outcome: str  # "added" or "waitlisted"
    cart: CartView
    cart_item: Optional[CartItem] = None
    waitlist_entry: Optional[WaitlistEntry] = None


def compute_totals(
    items: Iterable[CartItem],
    discount_amount=ZERO,
    credits_requested=None,
    balance=ZERO,
    tax_rate: Optional[Decimal] = None,
    shipping=None,
) -> PricingBreakdown:
    """
    Price a cart.

    Tax is charged on the pre-discount subtotal. Credits never exceed the
    amount still owed after the discount; `credits_requested=None` means
    "as much as the balance allows".
    """
    tax_rate = settings.TAX_RATE if tax_rate is None else tax_rate
    subtotal = to_money(sum((to_money(item.unit_price) for item in items), ZERO))
    tax = to_money(subtotal * Decimal(tax_rate))
    shipping = to_money(settings.SHIPPING_FLAT_RATE if shipping is None else shipping)
    discount_amount = min(to_money(discount_amount), subtotal)

    owed = max(ZERO, subtotal + tax + shipping - discount_amount)
    balance = max(ZERO, to_money(balance))
    requested = balance if credits_requested is None else max(ZERO, to_money(credits_requested))
    credits_applied = min(requested, balance, owed)

    total = max(ZERO, subtotal + tax + shipping - discount_amount - credits_applied)
    return PricingBreakdown(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        discount_amount=discount_amount,
        credits_applied=credits_applied,
        total=to_money(total),
    )


class CartService:
    """
    A customer's cart: one row per reserved unit plus at most one applied
    discount.

    Mutations lock the customer row first so operations on one cart apply in
    order. Inventory is reserved on add and given back on removal.
    """

    def __init__(
        self,
        db: Session,
        tenant_id: str,
        plugins: Optional[PluginService] = None,
        credits: Optional[CreditService] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.inventory = InventoryService(db)
        self.discounts = DiscountService(db, tenant_id)
        self.credits = credits or CreditService(db, tenant_id)
        self.plugins = plugins or PluginService(db)
        self.waitlist = WaitlistService(db, tenant_id, plugins=self.plugins)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_items(self, customer_id: int) -> List[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.customer_id == customer_id)
            .order_by(CartItem.added_at.asc(), CartItem.id.asc())
            .all()
        )

    def get_cart(self, customer_id: int, credits_requested=None) -> CartView:
        """Current cart with freshly computed pricing.

        The applied discount is re-validated against the current subtotal on
        every call; if it no longer qualifies it is removed and the reason is
        reported in `discount_error`.
        """
        items = self.get_items(customer_id)
        subtotal = to_money(sum((to_money(item.unit_price) for item in items), ZERO))

        applied_discount = None
        discount_error = None
        discount_amount = ZERO
        applied = self.db.query(AppliedDiscount).filter(AppliedDiscount.customer_id == customer_id).first()
        if applied:
            validation = self.discounts.validate(applied.code, subtotal, customer_id)
            if validation.valid:
                discount_amount = validation.amount
                applied_discount = {
                    "discount_id": applied.discount_id,
                    "code": applied.code,
                    "title": validation.discount.title,
                    "amount": validation.amount,
                }
            else:
                discount_error = {
                    "code": applied.code,
                    "reason": validation.reason.value,
                    "message": validation.error,
                }
                self.db.delete(applied)
                self.db.commit()
                logger.info(
                    "cart_discount_dropped",
                    customer_id=customer_id,
                    code=discount_error["code"],
                    reason=discount_error["reason"],
                )

        balance = self.credits.get_balance(customer_id)["balance"]
        pricing = compute_totals(items, discount_amount, credits_requested, balance)
        return CartView(
            items=items,
            pricing=pricing,
            applied_discount=applied_discount,
            credits={
                "balance": balance,
                "requested": to_money(credits_requested) if credits_requested is not None else None,
                "applied": pricing.credits_applied,
            },
            discount_error=discount_error,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_item(self, customer_id: int, product_id: int, variant_id: int) -> AddItemResult:
        """
        Reserve one unit and add it to the cart.

        When no unit can be reserved, including losing a race for the last
        one, the request becomes a wait-list entry instead of an error.
        """
        self._lock_customer(customer_id)
        product = (
            self.db.query(Product)
            .filter(Product.id == product_id, Product.tenant_id == self.tenant_id, Product.is_active == True)  # noqa: E712
            .first()
        )
        if not product:
            self.db.rollback()
            raise NotFoundError("Product")
        variant = (
            self.db.query(ProductVariant)
            .filter(
                ProductVariant.id == variant_id,
                ProductVariant.product_id == product_id,
                ProductVariant.is_active == True,  # noqa: E712
            )
            .first()
        )
        if not variant:
            self.db.rollback()
            raise NotFoundError("Product variant")

        reservation = self.inventory.reserve_one(variant_id)
        if not reservation.success:
            entry = self.waitlist.join(customer_id, product_id, variant_id, source="cart", commit=False)
            self.db.commit()
            dispatch_plugin_delivery()
            logger.info("cart_item_waitlisted", customer_id=customer_id, variant_id=variant_id)
            return AddItemResult(outcome="waitlisted", waitlist_entry=entry, cart=self.get_cart(customer_id))

        item = CartItem(
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            product_id=product_id,
            variant_id=variant_id,
            location_id=reservation.location_id,
            quantity=1,
            unit_price=to_money(variant.effective_price),
            variant_data={"size": variant.size, "color": variant.color, "sku": variant.sku},
        )
        self.db.add(item)
        self.db.flush()
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.CART_ITEM_ADDED,
            {
                "cart_item_id": item.id,
                "customer_id": customer_id,
                "product_id": product_id,
                "variant_id": variant_id,
                "sku": variant.sku,
                "price": item.unit_price,
            },
        )
        self.db.commit()
        self.db.refresh(item)
        dispatch_plugin_delivery()
        logger.info(
            "cart_item_added",
            customer_id=customer_id,
            cart_item_id=item.id,
            variant_id=variant_id,
            location_id=reservation.location_id,
            available=reservation.new_available,
        )
        return AddItemResult(outcome="added", cart_item=item, cart=self.get_cart(customer_id))

    def remove_item(self, customer_id: int, cart_item_id: int) -> CartView:
        self._lock_customer(customer_id)
        item = (
            self.db.query(CartItem)
            .filter(CartItem.id == cart_item_id, CartItem.customer_id == customer_id)
            .first()
        )
        if not item:
            self.db.rollback()
            raise NotFoundError("Cart item")
        self._guard_checkout_items(customer_id, [item.id])

        self._release_unit(item, reason="cart_item_removed")
        payload = {
            "cart_item_id": item.id,
            "customer_id": customer_id,
            "product_id": item.product_id,
            "variant_id": item.variant_id,
        }
        self.db.delete(item)
        self.plugins.emit(self.tenant_id, PluginEvents.CART_ITEM_REMOVED, payload)
        self.db.commit()
        dispatch_plugin_delivery()
        logger.info("cart_item_removed", customer_id=customer_id, cart_item_id=cart_item_id)
        return self.get_cart(customer_id)

    def clear(self, customer_id: int) -> CartView:
        """Empty the cart, giving every reserved unit back."""
        self._lock_customer(customer_id)
        items = self.get_items(customer_id)
        self._guard_checkout_items(customer_id, [item.id for item in items])
        for item in items:
            self._release_unit(item, reason="cart_cleared")
            self.db.delete(item)
        self.db.query(AppliedDiscount).filter(AppliedDiscount.customer_id == customer_id).delete(
            synchronize_session=False
        )
        if items:
            self.plugins.emit(
                self.tenant_id,
                PluginEvents.CART_CLEARED,
                {"customer_id": customer_id, "cart_item_ids": [item.id for item in items]},
            )
        self.db.commit()
        dispatch_plugin_delivery()
        logger.info("cart_cleared", customer_id=customer_id, items=len(items))
        return self.get_cart(customer_id)

    def apply_discount(self, customer_id: int, code: str) -> CartView:
        self._lock_customer(customer_id)
        items = self.get_items(customer_id)
        subtotal = to_money(sum((to_money(item.unit_price) for item in items), ZERO))

        validation = self.discounts.validate(code, subtotal, customer_id)
        if not validation.valid:
            self.db.rollback()
            logger.info("cart_discount_rejected", customer_id=customer_id, code=code, reason=validation.reason.value)
            raise ConflictError(validation.reason.value, validation.error, cart=self.get_cart(customer_id).to_dict())

        applied = self.db.query(AppliedDiscount).filter(AppliedDiscount.customer_id == customer_id).first()
        if not applied:
            applied = AppliedDiscount(tenant_id=self.tenant_id, customer_id=customer_id)
            self.db.add(applied)
        applied.discount_id = validation.discount.id
        applied.code = validation.discount.code
        applied.applied_at = datetime.utcnow()
        self.db.commit()
        logger.info("cart_discount_applied", customer_id=customer_id, code=applied.code, amount=str(validation.amount))
        return self.get_cart(customer_id)

    def remove_discount(self, customer_id: int) -> CartView:
        self._lock_customer(customer_id)
        self.db.query(AppliedDiscount).filter(AppliedDiscount.customer_id == customer_id).delete(
            synchronize_session=False
        )
        self.db.commit()
        return self.get_cart(customer_id)

    def apply_credits(self, customer_id: int, amount) -> CartView:
        """Price the cart with `amount` of store credit, clamped to what can be used."""
        view = self.get_cart(customer_id, credits_requested=ZERO)
        owed = view.pricing.total
        application = self.credits.validate_application(customer_id, amount, owed)
        if not application.valid:
            raise ConflictError("credits_unavailable", application.error, cart=view.to_dict())
        return self.get_cart(customer_id, credits_requested=application.applicable_amount)

    def clear_after_checkout(self, customer_id: int, item_ids: Iterable[int]) -> int:
        """Drop purchased rows inside the checkout transaction. Inventory stays committed."""
        deleted = (
            self.db.query(CartItem)
            .filter(CartItem.customer_id == customer_id, CartItem.id.in_(list(item_ids)))
            .delete(synchronize_session=False)
        )
        self.db.query(AppliedDiscount).filter(AppliedDiscount.customer_id == customer_id).delete(
            synchronize_session=False
        )
        return deleted

    def release_expired_holds(self, now: Optional[datetime] = None) -> int:
        """
        Return units held in carts longer than CART_HOLD_HOURS to stock.

        Each item is handled in its own transaction under its customer's
        lock and re-read there, so a checkout opened or an item removed
        while the sweep runs is respected.
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(hours=settings.CART_HOLD_HOURS)

        expired_ids = [
            item_id
            for (item_id,) in self.db.query(CartItem.id)
            .filter(CartItem.tenant_id == self.tenant_id, CartItem.added_at < cutoff)
            .order_by(CartItem.id.asc())
            .all()
        ]
        self.db.rollback()

        released = 0
        for item_id in expired_ids:
            if self._release_expired_hold(item_id, cutoff):
                released += 1

        if released:
            dispatch_plugin_delivery()
            logger.info("cart_holds_released", tenant_id=self.tenant_id, count=released)
        return released

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_customer(self, customer_id: int) -> Customer:
        customer = (
            self.db.query(Customer)
            .filter(Customer.id == customer_id, Customer.tenant_id == self.tenant_id)
            .with_for_update()
            .first()
        )
        if not customer:
            raise NotFoundError("Customer")
        return customer

    def open_checkouts(self, customer_id: int) -> List[CheckoutSession]:
        """Sessions still holding a snapshot of this customer's cart."""
        return (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.tenant_id == self.tenant_id,
                CheckoutSession.customer_id == customer_id,
                CheckoutSession.state.in_(HOLDING_STATES),
            )
            .all()
        )

    def _guard_checkout_items(self, customer_id: int, item_ids: Iterable[int]) -> None:
        """
        Refuse to drop items a checkout snapshot still covers.

        A credits-only session has taken no money yet, so it lapses instead
        of blocking the edit. Anything else must be completed or cancelled
        first. Caller holds the customer lock.
        """
        wanted = set(item_ids)
        blocking = []
        for session in self.open_checkouts(customer_id):
            if not wanted.intersection(session.cart_item_ids or []):
                continue
            if session.credits_only and self._lapse_credits_only(session):
                continue
            blocking.append(session.id)

        if blocking:
            self.db.rollback()
            logger.info("cart_edit_blocked_by_checkout", customer_id=customer_id, checkout_session_ids=blocking)
            raise ConflictError(
                "checkout_in_progress",
                "A checkout for these items is in progress; complete or cancel it first",
                cart=self.get_cart(customer_id).to_dict(),
            )

    def _lapse_credits_only(self, session: CheckoutSession) -> bool:
        result = self.db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session.id, CheckoutSession.state == CheckoutState.AWAITING_PAYMENT)
            .values(state=CheckoutState.FAILED, failure_reason="cart_changed", updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.CHECKOUT_FAILED,
            {"checkout_session_id": session.id, "customer_id": session.customer_id, "reason": "cart_changed"},
        )
        logger.info("checkout_failed", checkout_session_id=session.id, reason="cart_changed")
        return True

    def _release_expired_hold(self, item_id: int, cutoff: datetime) -> bool:
        customer_id = self.db.query(CartItem.customer_id).filter(CartItem.id == item_id).scalar()
        if customer_id is None:
            self.db.rollback()
            return False

        self._lock_customer(customer_id)
        item = self.db.query(CartItem).filter(CartItem.id == item_id, CartItem.added_at < cutoff).first()
        held = {held_id for session in self.open_checkouts(customer_id) for held_id in (session.cart_item_ids or [])}
        if not item or item.id in held:
            self.db.rollback()
            return False

        self._release_unit(item, reason="cart_hold_expired")
        self.plugins.emit(
            self.tenant_id,
            PluginEvents.CART_ITEM_REMOVED,
            {
                "cart_item_id": item.id,
                "customer_id": customer_id,
                "variant_id": item.variant_id,
                "reason": "hold_expired",
            },
        )
        self.db.delete(item)
        self.db.commit()
        return True

    def _release_unit(self, item: CartItem, reason: str) -> None:
        """Give the unit back; on failure queue the restoration instead of blocking."""
        try:
            with self.db.begin_nested():
                self.inventory.release_one(item.variant_id, item.location_id)
        except (LookupError, SQLAlchemyError) as exc:
            logger.warning(
                "inventory_restore_deferred",
                cart_item_id=item.id,
                variant_id=item.variant_id,
                location_id=item.location_id,
                error=str(exc),
            )
            self.inventory.queue_release(item.variant_id, item.location_id, reason)
