from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from backoffice.db.base_class import Base


class Favorite(Base):
    __tablename__ = "favorites"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    product = relationship("Product")

    # One favorite per product per customer
    __table_args__ = (
        UniqueConstraint("customer_id", "product_id", name="uq_favorites_customer_product"),
    )
