"""
Error Taxonomy

Every failure the synchronization engine can see is one of these types.
The API layer raises them; components catch OrderingError and turn it
into local state (last_error, result objects, notices) so a failure never
propagates into the surrounding view.

Codes follow the gateway envelope: 1000 is success, 1002 an expired
session, 4017 an order whose payment has not settled, 9002 a network
failure with no response.
"""

from typing import Optional


SUCCESS_CODE = 1000
SESSION_EXPIRED_CODE = 1002
VALIDATION_ERROR_CODE = 1003
ORDER_NOT_PAID_CODE = 4017
SERVER_ERROR_CODE = 9001
NETWORK_ERROR_CODE = 9002


class OrderingError(Exception):
    """Base class for all engine errors."""

    default_code: int = SERVER_ERROR_CODE

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code


class TransientNetworkError(OrderingError):
    """The request never produced a response (timeout, refused connection)."""

    default_code = NETWORK_ERROR_CODE


class ApiError(OrderingError):
    """The server answered with a non-success status or envelope code."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[int] = None,
    ):
        super().__init__(message, code)
        self.status_code = status_code


class SessionExpiredError(ApiError):
    """HTTP 401: the access token is missing, invalid or expired."""

    default_code = SESSION_EXPIRED_CODE

    def __init__(self, message: str = "Session expired", code: Optional[int] = None):
        super().__init__(message, status_code=401, code=code)


class PaymentNotSettledError(ApiError):
    """The bill was requested before the payment provider settled."""

    default_code = ORDER_NOT_PAID_CODE

    def __init__(self, message: str = "Order has not been paid", code: Optional[int] = None):
        super().__init__(message, status_code=400, code=code)


class LocalValidationError(OrderingError):
    """Input rejected on the client before any network call."""

    default_code = VALIDATION_ERROR_CODE


class TableNotBoundError(LocalValidationError):
    """A table-scoped operation was attempted without tenant/table ids."""

    def __init__(self, message: str = "Tenant and table must be bound first"):
        super().__init__(message)
