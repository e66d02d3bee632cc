"""
Billing error taxonomy.

HTTP mapping (applied by the exception handlers in src.main):
- ValidationError -> 422
- NotFoundError -> 404
- SignatureMismatch -> 400 (generic message, nothing about the cause)
- OrderMismatch -> 400
- LimitExceeded -> 403
- GatewayError -> 502 (provider rejected the request)
- GatewayUnavailableError -> 503 (transient: timeout, network, 5xx, open circuit)

An order already finalized with a different payment id is not an error;
verification reports it as a success-shaped `{"applied": false}` response.
"""


class BillingError(Exception):
    """Base exception for billing and entitlement errors."""

    pass


class ConfigurationError(BillingError):
    """Plan table or gateway wiring is inconsistent (e.g. unknown plan id)."""

    pass


class ValidationError(BillingError):
    """Request rejected before any gateway call (bad plan, bad duration, bad quantity)."""

    pass


class NotFoundError(BillingError):
    """Order, catalog or product does not exist (or is not visible to the caller)."""

    pass


class SignatureMismatch(BillingError):
    """Gateway signature did not match the recomputed HMAC."""

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class OrderMismatch(BillingError):
    """Client-claimed plan or duration differs from the pending order."""

    pass


class LimitExceeded(BillingError):
    """Plan quota reached for customers or invoices."""

    def __init__(self, reason: str, resource: str):
        super().__init__(reason)
        self.reason = reason
        self.resource = resource


class GatewayError(BillingError):
    """Gateway rejected the request (non-transient, e.g. HTTP 4xx or unsupported operation)."""

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class GatewayUnavailableError(BillingError):
    """Gateway could not be reached (timeout, network failure, HTTP 5xx)."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class GatewayCircuitOpenError(GatewayUnavailableError):
    """Circuit breaker for the gateway is open; the call was not attempted."""

    pass
