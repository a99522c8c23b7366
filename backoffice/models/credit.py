from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Numeric, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
import enum
from backoffice.db.base_class import Base


class CreditTransactionType(str, enum.Enum):
    GRANT = "grant"
    SPEND = "spend"
    ADJUSTMENT = "adjustment"
    EXPIRATION = "expiration"


class CreditBalance(Base):
    """Running total kept in lockstep with credit_transactions."""

    __tablename__ = "credit_balances"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, unique=True)

    balance = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    total_earned = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    total_spent = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="credit_balance")


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)

    transaction_type = Column(Enum(CreditTransactionType), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)  # Signed: positive issued, negative spent
    balance_after = Column(Numeric(12, 2), nullable=False)

    description = Column(Text, nullable=True)
    reference_type = Column(String(50), nullable=True)  # "order", "admin_action", ...
    reference_id = Column(String(100), nullable=True)
    actor_id = Column(String(64), nullable=True)  # None means system

    expires_at = Column(DateTime, nullable=True)  # Grants only
    expired_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
