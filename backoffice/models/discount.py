from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class DiscountValueType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class DiscountStatus(str, enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_discounts_tenant_code"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    code = Column(String(50), nullable=False, index=True)  # Stored uppercase
    title = Column(String(200), nullable=False)

    value_type = Column(Enum(DiscountValueType), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)  # Percentage (0-100) or fixed amount

    status = Column(Enum(DiscountStatus), default=DiscountStatus.ACTIVE, nullable=False)
    starts_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ends_at = Column(DateTime, nullable=True)

    minimum_amount = Column(Numeric(12, 2), nullable=True)

    usage_limit = Column(Integer, nullable=True)  # Global usage limit
    usage_count = Column(Integer, default=0, nullable=False)
    usage_limit_per_customer = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    usages = relationship("DiscountUsage", back_populates="discount", cascade="all, delete-orphan")


class DiscountUsage(Base):
    __tablename__ = "discount_usages"
    __table_args__ = (UniqueConstraint("discount_id", "order_id", name="uq_discount_usage_order"),)

    id = Column(Integer, primary_key=True, index=True)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)

    used_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    discount = relationship("Discount", back_populates="usages")
    order = relationship("Order")
