"""Exception hierarchy for TalentGate.

Expected entitlement denials (``FEATURE_NOT_IN_PLAN``, ``FEATURE_DISABLED``,
``QUOTA_EXCEEDED``) are returned as values by the quota enforcer and only
become exceptions when a caller opts into :class:`FeatureNotAllowedError`
through the ``gate`` helper. Everything else here is raised.
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"

    # Entitlement denials
    FEATURE_NOT_IN_PLAN = "FEATURE_NOT_IN_PLAN"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    # Holders and catalog
    HOLDER_NOT_FOUND = "HOLDER_NOT_FOUND"
    INVALID_HOLDER = "INVALID_HOLDER"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    FEATURE_NOT_FOUND = "FEATURE_NOT_FOUND"
    PLAN_IN_USE = "PLAN_IN_USE"
    FEATURE_IN_USE = "FEATURE_IN_USE"

    # Subscriptions
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    INVALID_SUBSCRIPTION = "INVALID_SUBSCRIPTION"


class TalentGateException(Exception):
    """Base exception for all TalentGate errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        http_status: HTTP status code for API responses.
        details: Additional context for debugging.
        user_message: User-friendly message (may differ from message).
    """

    message: str = "An unexpected error occurred"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        self.user_message = user_message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.user_message,
                "details": self.details if self.details else None,
            }
        }

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


# ============================================================================
# Validation
# ============================================================================


class ValidationError(TalentGateException):
    """Input validation errors."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST


class InvalidHolderError(ValidationError):
    """Holder type or id is malformed."""

    message = "Invalid holder"
    error_code = ErrorCode.INVALID_HOLDER


class InvalidAmountError(ValidationError):
    """Consumption or grant amount is not a positive integer."""

    message = "Amount must be a positive integer"
    error_code = ErrorCode.INVALID_AMOUNT


# ============================================================================
# Lookups
# ============================================================================


class ResourceNotFoundError(TalentGateException):
    """Requested resource does not exist."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND


class HolderNotFoundError(ResourceNotFoundError):
    """Holder is unknown to the holder directory."""

    message = "Holder not found"
    error_code = ErrorCode.HOLDER_NOT_FOUND

    def __init__(self, holder_type: str, holder_id: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        details.update({"holder_type": holder_type, "holder_id": holder_id})
        super().__init__(
            f"Holder {holder_type}:{holder_id} not found", details=details, **kwargs
        )


class PlanNotFoundError(ResourceNotFoundError):
    message = "Plan not found"
    error_code = ErrorCode.PLAN_NOT_FOUND


class FeatureNotFoundError(ResourceNotFoundError):
    message = "Feature not found"
    error_code = ErrorCode.FEATURE_NOT_FOUND


class SubscriptionNotFoundError(ResourceNotFoundError):
    message = "Subscription not found"
    error_code = ErrorCode.SUBSCRIPTION_NOT_FOUND


# ============================================================================
# Catalog integrity
# ============================================================================


class ReferenceInUseError(TalentGateException):
    """Delete rejected because the row is still referenced."""

    message = "Resource is still referenced"
    error_code = ErrorCode.PLAN_IN_USE
    http_status = HTTPStatus.CONFLICT


class PlanInUseError(ReferenceInUseError):
    """Plan is referenced by subscriptions or entitlement rows."""

    message = "Plan is still in use"
    error_code = ErrorCode.PLAN_IN_USE


class FeatureInUseError(ReferenceInUseError):
    """Feature is referenced by entitlement rows."""

    message = "Feature is still in use"
    error_code = ErrorCode.FEATURE_IN_USE


# ============================================================================
# Subscriptions and entitlements
# ============================================================================


class InvalidSubscriptionError(TalentGateException):
    """Subscription operation not allowed in the current state."""

    message = "Invalid subscription operation"
    error_code = ErrorCode.INVALID_SUBSCRIPTION
    http_status = HTTPStatus.CONFLICT


class FeatureNotAllowedError(TalentGateException):
    """Gated action denied by the quota enforcer.

    Raised only by ``QuotaEnforcer.gate``; ``check_allowed`` returns the
    same information as a value.
    """

    message = "Feature not available on the current plan"
    error_code = ErrorCode.FEATURE_NOT_IN_PLAN
    http_status = HTTPStatus.PAYMENT_REQUIRED

    def __init__(
        self,
        feature_key: str,
        reason: ErrorCode,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = {"feature_key": feature_key, **(details or {})}
        super().__init__(
            f"{reason.value} for feature {feature_key}",
            error_code=reason,
            details=merged,
            user_message=_DENIAL_MESSAGES.get(reason),
        )
        self.feature_key = feature_key
        self.reason = reason


_DENIAL_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.FEATURE_NOT_IN_PLAN: "This feature is not part of your plan. Upgrade to unlock it.",
    ErrorCode.FEATURE_DISABLED: "This feature is disabled on your plan.",
    ErrorCode.QUOTA_EXCEEDED: "You have reached this month's limit. Upgrade or wait for the next billing period.",
}


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception."""
    if isinstance(exc, TalentGateException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        TypeError: HTTPStatus.BAD_REQUEST,
        KeyError: HTTPStatus.NOT_FOUND,
        PermissionError: HTTPStatus.FORBIDDEN,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
        ConnectionError: HTTPStatus.BAD_GATEWAY,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
