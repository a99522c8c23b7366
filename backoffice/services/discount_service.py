from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import enum

import structlog
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, NotFoundError, ValidationError
from backoffice.models.discount import Discount, DiscountStatus, DiscountUsage, DiscountValueType
from backoffice.schemas.discount import DiscountCreate, DiscountUpdate
from backoffice.utils.money import ZERO, to_money

logger = structlog.get_logger()


class EffectiveStatus(str, enum.Enum):
    ACTIVE = "active"
    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    DISABLED = "disabled"


class DiscountRejection(str, enum.Enum):
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    USAGE_LIMIT = "usage_limit"
    CUSTOMER_LIMIT = "customer_limit"
    MINIMUM_NOT_MET = "minimum_not_met"


REJECTION_MESSAGES = {
    DiscountRejection.NOT_FOUND: "Discount code not found",
    DiscountRejection.DISABLED: "Discount code is disabled",
    DiscountRejection.SCHEDULED: "Discount code is not active yet",
    DiscountRejection.EXPIRED: "Discount code has expired",
    DiscountRejection.USAGE_LIMIT: "Discount code has reached its usage limit",
    DiscountRejection.CUSTOMER_LIMIT: "You have already used this discount the maximum allowed times",
    DiscountRejection.MINIMUM_NOT_MET: "Minimum order amount not met",
}


@dataclass
class DiscountValidation:
    valid: bool
    discount: Optional[Discount] = None
    amount: Decimal = ZERO
    reason: Optional[DiscountRejection] = None
    error: Optional[str] = None

    @classmethod
    def rejected(cls, reason: DiscountRejection, discount: Optional[Discount] = None, error: Optional[str] = None):
        return cls(valid=False, discount=discount, reason=reason, error=error or REJECTION_MESSAGES[reason])


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def effective_status(discount: Discount, now: Optional[datetime] = None) -> EffectiveStatus:
    """Explicit disable wins, then schedule window."""
    now = now or datetime.utcnow()
    if discount.status == DiscountStatus.DISABLED:
        return EffectiveStatus.DISABLED
    if discount.starts_at and discount.starts_at > now:
        return EffectiveStatus.SCHEDULED
    if discount.ends_at and discount.ends_at < now:
        return EffectiveStatus.EXPIRED
    return EffectiveStatus.ACTIVE


def calculate_amount(discount: Discount, subtotal: Decimal) -> Decimal:
    subtotal = to_money(subtotal)
    if subtotal <= 0:
        return ZERO
    value = Decimal(discount.value)
    if discount.value_type == DiscountValueType.PERCENTAGE:
        amount = subtotal * value / Decimal(100)
    else:
        amount = min(value, subtotal)
    return to_money(amount)


class DiscountService:
    def __init__(self, db: Session, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    def get_by_code(self, code: str) -> Optional[Discount]:
        return (
            self.db.query(Discount)
            .filter(Discount.tenant_id == self.tenant_id, Discount.code == normalize_code(code))
            .first()
        )

    def customer_usage_count(self, discount_id: int, customer_id: int) -> int:
        return (
            self.db.query(func.count(DiscountUsage.id))
            .filter(DiscountUsage.discount_id == discount_id, DiscountUsage.customer_id == customer_id)
            .scalar()
            or 0
        )

    def validate(
        self,
        code: str,
        cart_subtotal: Decimal,
        customer_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DiscountValidation:
        """Check eligibility and price the discount. Records nothing."""
        discount = self.get_by_code(code)
        if not discount:
            return DiscountValidation.rejected(DiscountRejection.NOT_FOUND)

        status = effective_status(discount, now)
        if status != EffectiveStatus.ACTIVE:
            return DiscountValidation.rejected(DiscountRejection(status.value), discount)

        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            return DiscountValidation.rejected(DiscountRejection.USAGE_LIMIT, discount)

        if customer_id is not None and discount.usage_limit_per_customer is not None:
            if self.customer_usage_count(discount.id, customer_id) >= discount.usage_limit_per_customer:
                return DiscountValidation.rejected(DiscountRejection.CUSTOMER_LIMIT, discount)

        subtotal = to_money(cart_subtotal)
        if discount.minimum_amount is not None and subtotal < to_money(discount.minimum_amount):
            return DiscountValidation.rejected(
                DiscountRejection.MINIMUM_NOT_MET,
                discount,
                error=f"Minimum order amount of {to_money(discount.minimum_amount)} required",
            )

        return DiscountValidation(valid=True, discount=discount, amount=calculate_amount(discount, subtotal))

    def record_usage(self, discount_id: int, customer_id: int, order_id: int, enforce_limits: bool = True) -> DiscountUsage:
        """
        Count one redemption against the global and per-customer caps.

        With `enforce_limits` the global counter only moves while still under
        the cap, so concurrent completions cannot push it past the limit.
        """
        stmt = update(Discount).where(Discount.id == discount_id)
        if enforce_limits:
            stmt = stmt.where(or_(Discount.usage_limit.is_(None), Discount.usage_count < Discount.usage_limit))
        result = self.db.execute(
            stmt.values(usage_count=Discount.usage_count + 1).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(DiscountRejection.USAGE_LIMIT.value, REJECTION_MESSAGES[DiscountRejection.USAGE_LIMIT])

        if enforce_limits:
            discount = self.db.get(Discount, discount_id)
            if (
                discount.usage_limit_per_customer is not None
                and self.customer_usage_count(discount_id, customer_id) >= discount.usage_limit_per_customer
            ):
                raise ConflictError(
                    DiscountRejection.CUSTOMER_LIMIT.value,
                    REJECTION_MESSAGES[DiscountRejection.CUSTOMER_LIMIT],
                )

        usage = DiscountUsage(discount_id=discount_id, customer_id=customer_id, order_id=order_id)
        self.db.add(usage)
        self.db.flush()
        return usage

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_discount(self, data: DiscountCreate) -> Discount:
        code = normalize_code(data.code)
        if self.get_by_code(code):
            raise ConflictError("code_exists", "Discount code already exists")
        self._validate_value(data.value_type, data.value)

        discount = Discount(
            tenant_id=self.tenant_id,
            code=code,
            title=data.title,
            value_type=data.value_type,
            value=to_money(data.value),
            status=data.status,
            starts_at=data.starts_at or datetime.utcnow(),
            ends_at=data.ends_at,
            minimum_amount=to_money(data.minimum_amount) if data.minimum_amount is not None else None,
            usage_limit=data.usage_limit,
            usage_limit_per_customer=data.usage_limit_per_customer,
        )
        self.db.add(discount)
        self.db.commit()
        self.db.refresh(discount)
        logger.info("discount_created", discount_id=discount.id, code=code)
        return discount

    def update_discount(self, discount_id: int, data: DiscountUpdate) -> Discount:
        discount = self.get_discount(discount_id)

        update_data = data.model_dump(exclude_unset=True)
        for key, value in update_data.items():
            setattr(discount, key, value)

        try:
            self._validate_value(discount.value_type, discount.value)
            if discount.ends_at and discount.starts_at and discount.ends_at <= discount.starts_at:
                raise ValidationError("ends_at must be after starts_at")
        except ValidationError:
            self.db.rollback()
            raise

        self.db.commit()
        self.db.refresh(discount)
        return discount

    def get_discount(self, discount_id: int) -> Discount:
        discount = (
            self.db.query(Discount)
            .filter(Discount.id == discount_id, Discount.tenant_id == self.tenant_id)
            .first()
        )
        if not discount:
            raise NotFoundError("Discount")
        return discount

    def list_discounts(self, skip: int = 0, limit: int = 100) -> List[Discount]:
        return (
            self.db.query(Discount)
            .filter(Discount.tenant_id == self.tenant_id)
            .order_by(Discount.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    @staticmethod
    def _validate_value(value_type: DiscountValueType, value) -> None:
        if Decimal(value) <= 0:
            raise ValidationError("Discount value must be positive")
        if value_type == DiscountValueType.PERCENTAGE and Decimal(value) > 100:
            raise ValidationError("Percentage discount cannot exceed 100%")
