from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Numeric, Boolean, JSON, Text, UniqueConstraint
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class CheckoutState(str, enum.Enum):
    PREPARING = "preparing"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"
    __table_args__ = (
        UniqueConstraint("customer_id", "idempotency_key", name="uq_checkout_customer_idempotency"),
    )

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    idempotency_key = Column(String(64), nullable=True)

    state = Column(Enum(CheckoutState), default=CheckoutState.PREPARING, nullable=False, index=True)
    credits_only = Column(Boolean, default=False, nullable=False)

    # Payment provider intent
    intent_id = Column(String(100), nullable=True, unique=True)
    client_secret = Column(String(200), nullable=True)
    currency = Column(String(3), nullable=False)

    # Pricing snapshot taken at prepare time
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False)
    shipping = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=True)
    discount_code = Column(String(50), nullable=True)
    credits_applied = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    cart_item_ids = Column(JSON, nullable=False, default=list)

    expires_at = Column(DateTime, nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)

    failure_reason = Column(Text, nullable=True)
    reconciliation_required = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
