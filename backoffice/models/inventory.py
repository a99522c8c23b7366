from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class InventoryLevel(Base):
    __tablename__ = "inventory_levels"
    __table_args__ = (UniqueConstraint("variant_id", "location_id", name="uq_inventory_variant_location"),)

    id = Column(Integer, primary_key=True, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False, index=True)
    location_id = Column(String(64), nullable=False)

    available = Column(Integer, default=0, nullable=False)
    on_hand = Column(Integer, default=0, nullable=False)
    committed = Column(Integer, default=0, nullable=False)
    reserved = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    variant = relationship("ProductVariant", back_populates="inventory_levels")


class ReconciliationStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"


class InventoryReconciliation(Base):
    """Outbox row for a +1 restoration that still has to reach inventory_levels."""

    __tablename__ = "inventory_reconciliations"

    id = Column(Integer, primary_key=True, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    location_id = Column(String(64), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    reason = Column(String(100), nullable=False)

    status = Column(Enum(ReconciliationStatus), default=ReconciliationStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    applied_at = Column(DateTime, nullable=True)
