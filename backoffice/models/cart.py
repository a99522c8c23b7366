from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from backoffice.db.base_class import Base


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (CheckConstraint("quantity = 1", name="ck_cart_items_single_unit"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)

    # Location the reserved unit was taken from; restored there on removal
    location_id = Column(String(64), nullable=False)

    # One row per unit
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)  # Lock price when added
    variant_data = Column(JSON, nullable=False, default=dict)  # {"size", "color", "sku"}

    added_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    customer = relationship("Customer", back_populates="cart_items")
    product = relationship("Product")
    variant = relationship("ProductVariant")


class AppliedDiscount(Base):
    __tablename__ = "cart_discounts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, unique=True)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=False)
    code = Column(String(50), nullable=False)

    applied_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    discount = relationship("Discount")
