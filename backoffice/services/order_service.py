import random
import string
from datetime import datetime
from typing import List

from sqlalchemy.orm import Session

from backoffice.core.exceptions import NotFoundError
from backoffice.models.order import Order


def generate_order_number(db: Session) -> str:
    """Generate a unique order number with bounded retries."""
    max_attempts = 10

    for _ in range(max_attempts):
        timestamp = datetime.utcnow().strftime("%Y%m%d")
        random_part = "".join(random.choices(string.ascii_uppercase + string.digits, k=8))
        order_number = f"BO{timestamp}{random_part}"

        existing = db.query(Order.id).filter(Order.order_number == order_number).first()
        if not existing:
            return order_number

    raise ValueError("Failed to generate unique order number")


def get_customer_order(db: Session, customer_id: int, order_number: str) -> Order:
    order = (
        db.query(Order)
        .filter(Order.order_number == order_number, Order.customer_id == customer_id)
        .first()
    )
    if not order:
        raise NotFoundError("Order")
    return order


def list_customer_orders(db: Session, customer_id: int, limit: int = 50) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.customer_id == customer_id)
        .order_by(Order.created_at.desc())
        .limit(limit)
        .all()
    )
