"""
Storefront Error Handling

Error taxonomy for the checkout flow. Every upstream failure is converted to
one of these at the call boundary so state transitions only ever deal with
typed errors and a human-readable message.
"""

from typing import Optional, Any, Dict
from enum import IntEnum


class ErrorCode(IntEnum):
    """Storefront error codes"""

    # Authentication
    UNAUTHORIZED = 4010

    # Input validation, surfaced inline
    VALIDATION_ERROR = 4220

    # Upstream call failures
    UPSTREAM_ERROR = 5020
    ESTIMATION_FAILED = 5021
    ORDER_CREATION_FAILED = 5022
    ORDER_EXPIRED = 4100

    # Payment outcomes
    PAYMENT_FAILED = 4020
    PAYMENT_CANCELLED = 4021
    GATEWAY_LOAD_FAILED = 5030

    # Misconfiguration
    CONFIGURATION_ERROR = 5000


class StorefrontError(Exception):
    """Base class for all storefront errors"""

    retryable: bool = True

    def __init__(
        self,
        code: int,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None
    ):
        """
        Initialize storefront error

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            data: Optional additional error data
            retryable: Override the class default retry hint
        """
        self.code = code
        self.message = message
        self.data = data or {}
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response format"""
        error_dict = {
            "code": int(self.code),
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable
        }
        if self.data:
            error_dict["data"] = self.data
        return error_dict


class Unauthorized(StorefrontError):
    """Session token missing, invalid or expired"""

    def __init__(self, message: str = "Please log in to continue", data: Optional[Dict] = None):
        super().__init__(ErrorCode.UNAUTHORIZED, message, data)


class ValidationError(StorefrontError):
    """User input rejected before any network call"""

    def __init__(self, message: str, field: Optional[str] = None, data: Optional[Dict] = None):
        super().__init__(
            ErrorCode.VALIDATION_ERROR,
            message,
            data or ({"field": field} if field else None)
        )
        self.field = field


class UpstreamError(StorefrontError):
    """Commerce/Social API returned a non-success status or was unreachable"""

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        body: Optional[Any] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__(
            ErrorCode.UPSTREAM_ERROR,
            message,
            {"status_code": status_code, "endpoint": endpoint} if endpoint else {"status_code": status_code}
        )
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint


class EstimationFailed(StorefrontError):
    """Checkout estimate could not be computed"""

    def __init__(self, message: str = "Failed to get estimate", data: Optional[Dict] = None):
        super().__init__(ErrorCode.ESTIMATION_FAILED, message, data)


class OrderCreationFailed(StorefrontError):
    """Payment order could not be created for a quote"""

    def __init__(self, message: str = "Failed to create order", data: Optional[Dict] = None):
        super().__init__(ErrorCode.ORDER_CREATION_FAILED, message, data)


class OrderExpired(StorefrontError):
    """Cached payment order lapsed before the widget was opened"""

    def __init__(self, order_id: Optional[str] = None, data: Optional[Dict] = None):
        super().__init__(
            ErrorCode.ORDER_EXPIRED,
            "Your order has expired. Please try again.",
            data or ({"order_id": order_id} if order_id else None)
        )


class PaymentFailed(StorefrontError):
    """Gateway reported a failed payment"""

    def __init__(self, message: str = "Payment failed. Please try again.", data: Optional[Dict] = None):
        super().__init__(ErrorCode.PAYMENT_FAILED, message, data)


class PaymentCancelled(StorefrontError):
    """User dismissed the payment widget"""

    def __init__(self, message: str = "Payment cancelled", data: Optional[Dict] = None):
        super().__init__(ErrorCode.PAYMENT_CANCELLED, message, data)


class GatewayLoadFailed(StorefrontError):
    """Payment widget script could not be loaded"""

    retryable = False

    def __init__(self, message: str = "Payment gateway could not be loaded", data: Optional[Dict] = None):
        super().__init__(ErrorCode.GATEWAY_LOAD_FAILED, message, data)


class ConfigurationError(StorefrontError):
    """Required configuration is missing"""

    retryable = False

    def __init__(self, message: str, data: Optional[Dict] = None):
        super().__init__(ErrorCode.CONFIGURATION_ERROR, message, data)


class ErrorHandler:
    """Utility class for handling and formatting errors"""

    GENERIC_MESSAGE = "Something went wrong. Please try again."

    @staticmethod
    def to_message(e: BaseException, fallback: Optional[str] = None) -> str:
        """
        Convert any exception to the message shown to the user

        Args:
            e: Exception to convert
            fallback: Message used for untyped exceptions

        Returns:
            Human-readable message
        """
        if isinstance(e, StorefrontError):
            return e.message
        return fallback or ErrorHandler.GENERIC_MESSAGE

    @staticmethod
    def to_dict(e: BaseException, fallback: Optional[str] = None) -> Dict[str, Any]:
        """Convert any exception to the API error format"""
        if isinstance(e, StorefrontError):
            return e.to_dict()

        return {
            "code": int(ErrorCode.UPSTREAM_ERROR),
            "kind": "InternalError",
            "message": fallback or ErrorHandler.GENERIC_MESSAGE,
            "retryable": True,
            "data": {"exception_type": type(e).__name__}
        }
