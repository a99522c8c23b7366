from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from backoffice.api.deps import get_current_customer, get_plugin_service
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.schemas.cart import ApplyCreditsRequest, ApplyDiscountRequest, CartItemCreate
from backoffice.services.cart_service import CartService
from backoffice.services.plugin_service import PluginService
from backoffice.api.responses import success

router = APIRouter()


def get_cart_service(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    plugins: PluginService = Depends(get_plugin_service),
) -> CartService:
    return CartService(db, customer.tenant_id, plugins=plugins)


@router.get("/", response_model=dict)
def get_cart(
    credits_requested: Optional[Decimal] = Query(None, ge=0),
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    """Get the customer's cart with current pricing"""
    view = service.get_cart(customer.id, credits_requested)
    return success(data=view.to_dict(), message="Cart retrieved")


@router.post("/items", status_code=status.HTTP_201_CREATED)
def add_to_cart(
    payload: CartItemCreate,
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    """Reserve one unit; falls back to the wait list when the variant is sold out"""
    result = service.add_item(customer.id, payload.product_id, payload.variant_id)
    data = {
        "outcome": result.outcome,
        "cart_item_id": result.cart_item.id if result.cart_item else None,
        "waitlist_entry_id": result.waitlist_entry.id if result.waitlist_entry else None,
        "cart": result.cart.to_dict(),
    }
    message = "Item added to cart" if result.outcome == "added" else "Item is sold out; added to wait list"
    return success(data=data, message=message)


@router.delete("/items/{item_id}")
def remove_from_cart(
    item_id: int,
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    """Remove one unit from the cart"""
    view = service.remove_item(customer.id, item_id)
    return success(data=view.to_dict(), message="Item removed from cart")


@router.delete("/")
def clear_cart(
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    """Clear entire cart"""
    view = service.clear(customer.id)
    return success(data=view.to_dict(), message="Cart cleared")


@router.post("/discount")
def apply_discount(
    payload: ApplyDiscountRequest,
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    view = service.apply_discount(customer.id, payload.code)
    return success(data=view.to_dict(), message="Discount applied")


@router.delete("/discount")
def remove_discount(
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    view = service.remove_discount(customer.id)
    return success(data=view.to_dict(), message="Discount removed")


@router.post("/credits")
def apply_credits(
    payload: ApplyCreditsRequest,
    customer: Customer = Depends(get_current_customer),
    service: CartService = Depends(get_cart_service),
):
    """Preview the cart with store credit applied"""
    view = service.apply_credits(customer.id, payload.amount)
    return success(data=view.to_dict(), message="Credits applied")
