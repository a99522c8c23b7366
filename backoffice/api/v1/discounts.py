from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backoffice.api.deps import Principal, get_current_customer, require_admin
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.models.discount import Discount
from backoffice.schemas.discount import (
    DiscountCreate,
    DiscountResponse,
    DiscountUpdate,
    DiscountValidateRequest,
    DiscountValidateResponse,
)
from backoffice.services.discount_service import DiscountService, effective_status, normalize_code
from backoffice.api.responses import success

router = APIRouter()


def _serialize(discount: Discount) -> dict:
    data = DiscountResponse.model_validate(discount)
    data.effective_status = effective_status(discount).value
    return data.model_dump()


@router.post("/")
def create_discount(
    payload: DiscountCreate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Create a discount code (admin only)."""
    discount = DiscountService(db, principal.tenant_id).create_discount(payload)
    return success(data=_serialize(discount), message="Discount created successfully")


@router.get("/")
def list_discounts(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    discounts = DiscountService(db, principal.tenant_id).list_discounts(skip, limit)
    return success(data=[_serialize(d) for d in discounts], message="Discounts retrieved successfully")


@router.get("/{discount_id}")
def get_discount(
    discount_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    discount = DiscountService(db, principal.tenant_id).get_discount(discount_id)
    return success(data=_serialize(discount))


@router.put("/{discount_id}")
def update_discount(
    discount_id: int,
    payload: DiscountUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    discount = DiscountService(db, principal.tenant_id).update_discount(discount_id, payload)
    return success(data=_serialize(discount), message="Discount updated successfully")


@router.post("/validate")
def validate_discount(
    payload: DiscountValidateRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    """Check a code against a subtotal without applying it."""
    validation = DiscountService(db, customer.tenant_id).validate(payload.code, payload.cart_subtotal, customer.id)
    data = DiscountValidateResponse(
        valid=validation.valid,
        code=normalize_code(payload.code),
        amount=validation.amount,
        reason=validation.reason.value if validation.reason else None,
        error=validation.error,
    )
    return success(data=data.model_dump())
