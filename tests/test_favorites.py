import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from backoffice.core.exceptions import ConflictError, NotFoundError
from backoffice.models.plugin import PluginEvent
from backoffice.services.favorite_service import FavoriteService
from backoffice.services.plugin_service import PluginEvents, PluginService

TENANT = "default"


def test_add_list_and_remove_favorite(db_session: Session, customer, make_variant):
    variant = make_variant(price="24.50")
    service = FavoriteService(db_session, TENANT)

    favorite = service.add(customer.id, variant.product_id)
    assert favorite.product_id == variant.product_id
    assert str(favorite.product_price) == "24.50"
    assert service.is_favorite(customer.id, variant.product_id)

    listing = service.list_for_customer(customer.id)
    assert listing.total == 1
    assert [f.product_id for f in listing.items] == [variant.product_id]

    service.remove(customer.id, variant.product_id)
    assert not service.is_favorite(customer.id, variant.product_id)
    assert service.list_for_customer(customer.id).total == 0


def test_favorite_twice_is_a_conflict(db_session: Session, customer, make_variant):
    variant = make_variant()
    service = FavoriteService(db_session, TENANT)
    service.add(customer.id, variant.product_id)

    with pytest.raises(ConflictError) as exc:
        service.add(customer.id, variant.product_id)
    assert exc.value.reason == "favorite_exists"


def test_unknown_product_and_missing_favorite(db_session: Session, customer):
    service = FavoriteService(db_session, TENANT)

    with pytest.raises(NotFoundError):
        service.add(customer.id, 999999)
    with pytest.raises(NotFoundError):
        service.remove(customer.id, 999999)


def test_favorites_are_per_customer(db_session: Session, make_customer, make_variant):
    alice, bob = make_customer("Alice"), make_customer("Bob")
    variant = make_variant()
    service = FavoriteService(db_session, TENANT)
    service.add(alice.id, variant.product_id)

    assert service.list_for_customer(bob.id).total == 0
    with pytest.raises(NotFoundError):
        service.remove(bob.id, variant.product_id)
    assert service.is_favorite(alice.id, variant.product_id)


def test_favorite_changes_emit_events(db_session: Session, customer, make_variant):
    PluginService(db_session).register_plugin(
        TENANT,
        "marketing-sync",
        "Marketing sync",
        "https://hooks.example.com/favorites",
        [PluginEvents.FAVORITE_ADDED, PluginEvents.FAVORITE_REMOVED],
    )
    variant = make_variant()
    service = FavoriteService(db_session, TENANT)

    service.add(customer.id, variant.product_id)
    service.remove(customer.id, variant.product_id)

    events = db_session.query(PluginEvent).order_by(PluginEvent.id.asc()).all()
    assert [e.event_type for e in events] == [PluginEvents.FAVORITE_ADDED, PluginEvents.FAVORITE_REMOVED]


def test_favorites_api(client: TestClient, customer_headers, make_variant):
    variant = make_variant(price="12.00")

    added = client.post("/api/v1/favorites/", json={"product_id": variant.product_id}, headers=customer_headers)
    assert added.status_code == 201
    assert added.json()["data"]["product_price"] == 12.0

    duplicate = client.post("/api/v1/favorites/", json={"product_id": variant.product_id}, headers=customer_headers)
    assert duplicate.status_code == 409

    listing = client.get("/api/v1/favorites/", headers=customer_headers).json()["data"]
    assert listing["total"] == 1

    check = client.get(f"/api/v1/favorites/check/{variant.product_id}", headers=customer_headers)
    assert check.json()["data"] == {"is_favorite": True}

    removed = client.delete(f"/api/v1/favorites/{variant.product_id}", headers=customer_headers)
    assert removed.status_code == 200
    assert client.get(f"/api/v1/favorites/check/{variant.product_id}", headers=customer_headers).json()["data"] == {
        "is_favorite": False
    }
