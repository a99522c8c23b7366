from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backoffice.api.deps import Principal, get_current_customer, require_admin, require_owner
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.schemas.credit import (
    CreditAdjustRequest,
    CreditApplicationRequest,
    CreditIssueRequest,
    CreditTransactionResponse,
)
from backoffice.services.credit_service import CreditService
from backoffice.api.responses import success

router = APIRouter()


@router.get("/balance")
def get_my_balance(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    balance = CreditService(db, customer.tenant_id).get_balance(customer.id)
    return success(data=balance)


@router.get("/history")
def get_my_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    transactions = CreditService(db, customer.tenant_id).history(customer.id, limit, offset)
    return success(data=[CreditTransactionResponse.model_validate(t).model_dump() for t in transactions])


@router.post("/validate")
def validate_application(
    payload: CreditApplicationRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    application = CreditService(db, customer.tenant_id).validate_application(
        customer.id, payload.amount, payload.cart_total
    )
    return success(data=application)


@router.get("/stats")
def credit_stats(
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Tenant-wide credit totals (admin only)."""
    return success(data=CreditService(db, principal.tenant_id).stats())


@router.get("/customers/{customer_id}")
def get_customer_credits(
    customer_id: int,
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    service = CreditService(db, principal.tenant_id)
    return success(
        data={
            "balance": service.get_balance(customer_id),
            "transactions": [
                CreditTransactionResponse.model_validate(t).model_dump()
                for t in service.history(customer_id, limit)
            ],
        }
    )


@router.post("/issue")
def issue_credits(
    payload: CreditIssueRequest,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Grant store credit (admin only)."""
    txn = CreditService(db, principal.tenant_id).issue(
        payload.customer_id,
        payload.amount,
        payload.description,
        actor_id=principal.subject,
        expires_at=payload.expires_at,
    )
    return success(data=CreditTransactionResponse.model_validate(txn).model_dump(), message="Credits issued")


@router.post("/adjust")
def adjust_credits(
    payload: CreditAdjustRequest,
    principal: Principal = Depends(require_owner),
    db: Session = Depends(get_db),
):
    """Correct a balance in either direction (owner only)."""
    txn = CreditService(db, principal.tenant_id).adjust(
        payload.customer_id,
        payload.amount,
        payload.description,
        actor_id=principal.subject,
        allow_negative=payload.allow_negative,
    )
    return success(data=CreditTransactionResponse.model_validate(txn).model_dump(), message="Credits adjusted")
