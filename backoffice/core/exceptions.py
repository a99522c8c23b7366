from fastapi import status
from typing import Any, List, Optional


class APIError(Exception):
    def __init__(self, status_code: int, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.errors = errors or []


class ValidationError(APIError):
    """Bad input the caller can correct."""

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(status.HTTP_400_BAD_REQUEST, message, errors)


class NotFoundError(APIError):
    def __init__(self, entity: str, message: Optional[str] = None):
        super().__init__(status.HTTP_404_NOT_FOUND, message or f"{entity} not found")
        self.entity = entity


class ConflictError(APIError):
    """
    The request is well formed but the current state forbids it.

    `reason` is a stable machine-readable code surfaced to the client
    verbatim; `cart` holds the refreshed cart view when one is available.
    """

    def __init__(self, reason: str, message: str, cart: Optional[Any] = None):
        super().__init__(status.HTTP_409_CONFLICT, message)
        self.reason = reason
        self.cart = cart


class InsufficientBalance(ConflictError):
    def __init__(self, available, requested):
        super().__init__(
            "insufficient_balance",
            f"Insufficient credits. Available: {available}, Required: {requested}",
        )
        self.available = available
        self.requested = requested


class PaymentVerificationError(APIError):
    def __init__(self, message: str = "Payment could not be verified", provider_status: Optional[str] = None):
        super().__init__(status.HTTP_402_PAYMENT_REQUIRED, message)
        self.provider_status = provider_status


class PostPaymentCommitError(APIError):
    """Payment is confirmed but the order bookkeeping did not commit."""

    def __init__(self, payment_reference: str, message: str = "Payment received but order could not be recorded"):
        super().__init__(status.HTTP_500_INTERNAL_SERVER_ERROR, message)
        self.payment_reference = payment_reference


class ExternalServiceError(APIError):
    def __init__(self, service: str, message: str, retryable: bool = False, timed_out: bool = False):
        code = status.HTTP_504_GATEWAY_TIMEOUT if timed_out else status.HTTP_502_BAD_GATEWAY
        super().__init__(code, message)
        self.service = service
        self.retryable = retryable
        self.timed_out = timed_out
