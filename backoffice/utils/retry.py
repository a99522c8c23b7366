import requests
from razorpay.errors import GatewayError, ServerError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

# Transient failures worth another attempt on read-only provider calls
TRANSIENT_PROVIDER_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    ServerError,
    GatewayError,
)


def provider_read_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(TRANSIENT_PROVIDER_ERRORS),
    )
