import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from backoffice.api.errors import register_exception_handlers
from backoffice.api.middleware import CORRELATION_HEADER, install_request_context
from backoffice.api.v1 import cart, checkout, credits, discounts, favorites, payments, plugins, waitlist
from backoffice.core.celery_app import celery_app  # noqa: F401  (shared tasks publish through this app)
from backoffice.core.config import settings
from backoffice.core.logging_config import configure_logging
from backoffice.db.session import engine
from backoffice.services.cache_service import TTLCache

API_VERSION = "1.0.0"

configure_logging()
logger = structlog.get_logger()

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=API_VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url=f"{settings.API_V1_STR}/docs",
    redoc_url=f"{settings.API_V1_STR}/redoc",
)

# Per-process flag cache; FeatureFlagService instances share it through deps
app.state.feature_flag_cache = TTLCache(settings.FEATURE_FLAG_CACHE_TTL_SECONDS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.BACKEND_CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", CORRELATION_HEADER],
    expose_headers=["X-Process-Time", CORRELATION_HEADER, "X-Request-ID"],
    max_age=3600,
)
install_request_context(app)
register_exception_handlers(app)

ROUTERS = (
    (cart.router, "cart", "Cart"),
    (checkout.router, "checkout", "Checkout"),
    (credits.router, "credits", "Credits"),
    (discounts.router, "discounts", "Discounts"),
    (waitlist.router, "waitlist", "Waitlist"),
    (favorites.router, "favorites", "Favorites"),
    (payments.router, "payments", "Payments"),
    (plugins.router, "plugins", "Plugins"),
)
for router, prefix, tag in ROUTERS:
    app.include_router(router, prefix=f"{settings.API_V1_STR}/{prefix}", tags=[tag])


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": API_VERSION,
    }


@app.get("/health/database")
def database_health_check():
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return {"status": "unhealthy", "reason": "Database connectivity check failed"}
    return {"status": "healthy", "pool": engine.pool.status()}
