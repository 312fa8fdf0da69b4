from fastapi import status
from typing import Any, List, Optional


class APIError(Exception):
    def __init__(self, status_code: int, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.errors = errors or []


class CheckoutError(APIError):
    """Base class for the checkout/payment error taxonomy.

    Each subclass fixes the HTTP status and a stable machine-readable code so
    the frontend can branch on ``errors[0]["code"]`` instead of the message.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    code = "CHECKOUT_ERROR"

    def __init__(self, message: str, **context: Any):
        self.context = context
        super().__init__(self.status_code, message, [{"code": self.code}])


class ValidationError(CheckoutError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class SignatureMismatch(CheckoutError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "SIGNATURE_MISMATCH"


class GatewayError(CheckoutError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, result_code: Optional[int] = None, **context: Any):
        self.result_code = result_code
        super().__init__(message, result_code=result_code, **context)


class NetworkError(CheckoutError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "NETWORK_ERROR"
    retryable = True


class ConflictError(CheckoutError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class IntegrityError(CheckoutError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "PAYMENT_INTEGRITY_ERROR"


class NotFoundError(CheckoutError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class AccessDenied(CheckoutError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCESS_DENIED"
