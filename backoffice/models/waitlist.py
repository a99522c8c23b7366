from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class WaitlistStatus(str, enum.Enum):
    WAITING = "waiting"
    AUTHORIZED = "authorized"
    REMOVED = "removed"


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False, index=True)

    status = Column(Enum(WaitlistStatus), default=WaitlistStatus.WAITING, nullable=False, index=True)
    source = Column(String(30), default="cart", nullable=False)  # cart, live_sale, manual

    authorized_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    product = relationship("Product")
    variant = relationship("ProductVariant")
