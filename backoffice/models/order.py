from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, Numeric, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class OrderStatus(str, enum.Enum):
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)

    # Customer snapshot at checkout time
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(255), nullable=False)

    # Payment
    payment_method = Column(String(30), nullable=False)  # "razorpay" or "credits"
    payment_reference = Column(String(100), unique=True, nullable=False, index=True)
    checkout_session_id = Column(String(36), unique=True, nullable=False)

    # Pricing
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    shipping_amount = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    discount_code = Column(String(50), nullable=True)
    credits_applied = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(Enum(OrderStatus), default=OrderStatus.PROCESSING, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    location_id = Column(String(64), nullable=False)

    product_title = Column(String(200), nullable=False)  # Snapshot at order time
    variant_data = Column(JSON, nullable=False, default=dict)

    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    # Relationships
    order = relationship("Order", back_populates="items")
