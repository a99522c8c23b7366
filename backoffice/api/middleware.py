import time
import uuid

import structlog
from fastapi import FastAPI, Request

logger = structlog.get_logger()

CORRELATION_HEADER = "X-Correlation-ID"


def install_request_context(app: FastAPI) -> None:
    """Tag every request with ids, time it and log its outcome."""

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request_id = str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id, request_id=request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", method=request.method, path=request.url.path)
            raise
        elapsed = time.perf_counter() - started

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.6f}"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(elapsed * 1000, 2),
            client_ip=request.client.host if request.client else None,
        )
        return response
