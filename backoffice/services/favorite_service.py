from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, NotFoundError
from backoffice.models.favorite import Favorite
from backoffice.models.product import Product
from backoffice.schemas.favorite import FavoriteListResponse, FavoriteResponse
from backoffice.services.plugin_service import PluginEvents, PluginService, dispatch_plugin_delivery
from backoffice.utils.money import to_money

logger = structlog.get_logger()


def _to_response(favorite: Favorite, product: Product) -> FavoriteResponse:
    return FavoriteResponse(
        id=favorite.id,
        product_id=favorite.product_id,
        product_title=product.title,
        product_price=to_money(product.price),
        created_at=favorite.created_at,
    )


class FavoriteService:
    def __init__(self, db: Session, tenant_id: str, plugins: Optional[PluginService] = None):
        self.db = db
        self.tenant_id = tenant_id
        self.plugins = plugins or PluginService(db)

    def add(self, customer_id: int, product_id: int) -> FavoriteResponse:
        """Favorite a product. One favorite per product per customer."""
        product = (
            self.db.query(Product)
            .filter(Product.id == product_id, Product.tenant_id == self.tenant_id)
            .first()
        )
        if not product:
            raise NotFoundError("Product")

        if self._get(customer_id, product_id):
            raise ConflictError("favorite_exists", "Product is already in your favorites")

        favorite = Favorite(tenant_id=self.tenant_id, customer_id=customer_id, product_id=product_id)
        self.db.add(favorite)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("favorite_exists", "Product is already in your favorites")

        self.plugins.emit(
            self.tenant_id,
            PluginEvents.FAVORITE_ADDED,
            {
                "favorite_id": favorite.id,
                "product_id": product.id,
                "product_name": product.title,
                "customer_id": customer_id,
                "added_at": favorite.created_at,
            },
        )
        self.db.commit()
        self.db.refresh(favorite)
        dispatch_plugin_delivery()
        logger.info("favorite_added", customer_id=customer_id, product_id=product_id)
        return _to_response(favorite, product)

    def remove(self, customer_id: int, product_id: int) -> None:
        favorite = self._get(customer_id, product_id)
        if not favorite:
            raise NotFoundError("Favorite", "Product not found in your favorites")

        payload = {
            "favorite_id": favorite.id,
            "product_id": favorite.product_id,
            "product_name": favorite.product.title,
            "customer_id": customer_id,
            "removed_at": datetime.utcnow(),
        }
        self.db.delete(favorite)
        self.plugins.emit(self.tenant_id, PluginEvents.FAVORITE_REMOVED, payload)
        self.db.commit()
        dispatch_plugin_delivery()
        logger.info("favorite_removed", customer_id=customer_id, product_id=product_id)

    def list_for_customer(self, customer_id: int) -> FavoriteListResponse:
        rows = (
            self.db.query(Favorite, Product)
            .join(Product, Favorite.product_id == Product.id)
            .filter(Favorite.tenant_id == self.tenant_id, Favorite.customer_id == customer_id)
            .order_by(Favorite.created_at.desc(), Favorite.id.desc())
            .all()
        )
        items = [_to_response(favorite, product) for favorite, product in rows]
        return FavoriteListResponse(items=items, total=len(items))

    def is_favorite(self, customer_id: int, product_id: int) -> bool:
        return self._get(customer_id, product_id) is not None

    def _get(self, customer_id: int, product_id: int) -> Optional[Favorite]:
        return (
            self.db.query(Favorite)
            .filter(
                Favorite.tenant_id == self.tenant_id,
                Favorite.customer_id == customer_id,
                Favorite.product_id == product_id,
            )
            .first()
        )
