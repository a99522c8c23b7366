from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from backoffice.api.deps import get_current_customer, get_plugin_service
from backoffice.api.responses import success
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.schemas.favorite import FavoriteCreate
from backoffice.services.favorite_service import FavoriteService
from backoffice.services.plugin_service import PluginService

router = APIRouter()


def get_favorite_service(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    plugins: PluginService = Depends(get_plugin_service),
) -> FavoriteService:
    return FavoriteService(db, customer.tenant_id, plugins)


@router.get("/")
def list_favorites(
    customer: Customer = Depends(get_current_customer),
    service: FavoriteService = Depends(get_favorite_service),
):
    """Get the customer's favorites with product details."""
    return success(data=service.list_for_customer(customer.id).model_dump(), message="Favorites retrieved")


@router.post("/", status_code=status.HTTP_201_CREATED)
def add_favorite(
    payload: FavoriteCreate,
    customer: Customer = Depends(get_current_customer),
    service: FavoriteService = Depends(get_favorite_service),
):
    favorite = service.add(customer.id, payload.product_id)
    return success(data=favorite.model_dump(), message="Product added to favorites")


@router.delete("/{product_id}")
def remove_favorite(
    product_id: int,
    customer: Customer = Depends(get_current_customer),
    service: FavoriteService = Depends(get_favorite_service),
):
    service.remove(customer.id, product_id)
    return success(message="Product removed from favorites")


@router.get("/check/{product_id}")
def check_favorite(
    product_id: int,
    customer: Customer = Depends(get_current_customer),
    service: FavoriteService = Depends(get_favorite_service),
):
    return success(data={"is_favorite": service.is_favorite(customer.id, product_id)})
