from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from backoffice.api.deps import Principal, get_current_customer, get_plugin_service, require_admin
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.schemas.waitlist import WaitlistEntryResponse, WaitlistJoinRequest
from backoffice.services.plugin_service import PluginService
from backoffice.services.waitlist_service import WaitlistService
from backoffice.api.responses import success

router = APIRouter()


@router.get("/")
def list_waitlist(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    plugins: PluginService = Depends(get_plugin_service),
):
    entries = WaitlistService(db, customer.tenant_id, plugins).list_for_customer(customer.id)
    return success(data=[WaitlistEntryResponse.model_validate(e).model_dump() for e in entries])


@router.post("/", status_code=status.HTTP_201_CREATED)
def join_waitlist(
    payload: WaitlistJoinRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    plugins: PluginService = Depends(get_plugin_service),
):
    entry = WaitlistService(db, customer.tenant_id, plugins).join(customer.id, payload.product_id, payload.variant_id)
    return success(data=WaitlistEntryResponse.model_validate(entry).model_dump(), message="Added to wait list")


@router.delete("/{entry_id}")
def leave_waitlist(
    entry_id: int,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    plugins: PluginService = Depends(get_plugin_service),
):
    entry = WaitlistService(db, customer.tenant_id, plugins).leave(customer.id, entry_id)
    return success(data=WaitlistEntryResponse.model_validate(entry).model_dump(), message="Removed from wait list")


@router.post("/{entry_id}/authorize")
def authorize_waitlist_entry(
    entry_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    plugins: PluginService = Depends(get_plugin_service),
):
    """Pre-authorize a waiting customer once stock is back (admin only)."""
    entry = WaitlistService(db, principal.tenant_id, plugins).authorize(entry_id)
    return success(data=WaitlistEntryResponse.model_validate(entry).model_dump(), message="Wait list entry authorized")
