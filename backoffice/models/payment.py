from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, Numeric, Text
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class PaymentStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    provider = Column(String(30), nullable=False)
    intent_id = Column(String(100), nullable=True, index=True)
    provider_payment_id = Column(String(100), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False)
    gateway_response = Column(Text, nullable=True)  # Store JSON response

    created_at = Column(DateTime, default=datetime.utcnow)


class SavedPaymentMethod(Base):
    __tablename__ = "saved_payment_methods"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    provider = Column(String(30), nullable=False)
    provider_customer_ref = Column(String(100), nullable=False)
    token_id = Column(String(100), nullable=False, unique=True)
    method = Column(String(30), nullable=True)  # card, upi, ...
    last4 = Column(String(4), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
