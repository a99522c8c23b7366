import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError

from backoffice.api.responses import failure
from backoffice.core.config import settings
from backoffice.core.exceptions import APIError, ConflictError, PostPaymentCommitError

logger = structlog.get_logger()


def _domain_details(exc: APIError) -> list:
    errors = list(exc.errors)
    if isinstance(exc, ConflictError):
        # Clients re-render from the refreshed cart instead of refetching
        errors.append({"reason": exc.reason, "cart": exc.cart})
    elif isinstance(exc, PostPaymentCommitError):
        errors.append({"reason": "post_payment_commit_failed", "payment_reference": exc.payment_reference})
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def handle_api_error(request: Request, exc: APIError):
        if exc.status_code >= 500:
            logger.error("api_error", path=request.url.path, status_code=exc.status_code, detail=exc.message)
        return failure(exc.status_code, exc.message, _domain_details(exc))

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, str):
            return failure(exc.status_code, exc.detail)
        return failure(exc.status_code, "Request failed", [exc.detail])

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return failure(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", exc.errors())

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_exception", error_type=type(exc).__name__, detail=str(exc))
        if settings.DEBUG and settings.ENVIRONMENT != "production":
            return failure(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                f"Internal server error: {exc}",
                [{"type": type(exc).__name__}],
            )
        return failure(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
