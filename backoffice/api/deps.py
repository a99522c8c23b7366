from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.security import decode_token
from backoffice.db.session import get_db
from backoffice.models.customer import Customer
from backoffice.services.cache_service import TTLCache
from backoffice.services.feature_flags import FeatureFlagService
from backoffice.services.payment_service import PaymentProvider, get_payment_provider
from backoffice.services.plugin_service import PluginService

logger = structlog.get_logger()

STAFF_ROLES = ("admin", "owner")


@dataclass
class Principal:
    subject: str
    role: str
    tenant_id: str


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    return None


def get_current_principal(request: Request) -> Principal:
    """Decode the bearer token into the acting principal."""
    token = _bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_token(token)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )

    principal = Principal(
        subject=str(payload["sub"]),
        role=payload.get("role", "customer"),
        tenant_id=payload.get("tenant_id") or settings.DEFAULT_TENANT_ID,
    )
    structlog.contextvars.bind_contextvars(tenant_id=principal.tenant_id, principal=principal.subject)
    return principal


def get_current_customer(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Customer:
    if principal.role != "customer":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Customer access required",
        )
    try:
        customer_id = int(principal.subject)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )

    customer = (
        db.query(Customer)
        .filter(Customer.id == customer_id, Customer.tenant_id == principal.tenant_id)
        .first()
    )
    if not customer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found",
        )
    return customer


def require_admin(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if principal.role not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    logger.info(
        "admin_action",
        action=f"{request.method} {request.url.path}",
        admin_id=principal.subject,
        role=principal.role,
        tenant_id=principal.tenant_id,
    )
    return principal


def require_owner(principal: Principal = Depends(require_admin)) -> Principal:
    if principal.role != "owner":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Owner access required",
        )
    return principal


def get_provider() -> PaymentProvider:
    return get_payment_provider()


def get_feature_flag_cache(request: Request) -> TTLCache:
    return request.app.state.feature_flag_cache


def get_feature_flags(
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_feature_flag_cache),
) -> FeatureFlagService:
    return FeatureFlagService(db, cache)


def get_plugin_service(
    db: Session = Depends(get_db),
    flags: FeatureFlagService = Depends(get_feature_flags),
) -> PluginService:
    return PluginService(db, flags)
