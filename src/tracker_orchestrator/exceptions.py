"""
Custom exceptions for the Tracker Request Orchestrator.

This module defines the error taxonomy shared by the client-side request
manager, the server-side coordinator and the vendor client.
"""

from typing import Any


class TrackerOrchestratorError(Exception):
    """Base exception for Tracker Request Orchestrator errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code or "TRACKER_ORCHESTRATOR_ERROR"
        self.context = context or {}


class TransientNetworkError(TrackerOrchestratorError):
    """Exception for network failures that may succeed on retry."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "TRANSIENT_NETWORK_ERROR", context)
        self.retry_after = retry_after


class LimiterRejectedError(TransientNetworkError):
    """Exception for requests rejected by the coordinator's rate limiter."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, retry_after, context)
        self.code = "LIMITER_REJECTED"


class VendorAPIError(TrackerOrchestratorError):
    """Exception for vendor responses carrying a non-success status."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        action: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "VENDOR_API_ERROR", context)
        self.status = status
        self.action = action


class VendorRateLimitError(TrackerOrchestratorError):
    """Exception for the vendor's rate-limit status (8902)."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "VENDOR_RATE_LIMIT", context)
        self.retry_after = retry_after


class CircuitOpenError(TrackerOrchestratorError):
    """Exception raised while the circuit breaker blocks outbound calls."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "CIRCUIT_OPEN", context)
        self.retry_after = retry_after


class ValidationError(TrackerOrchestratorError):
    """Exception for malformed input."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "VALIDATION_ERROR", context)


class EmergencyStopError(TrackerOrchestratorError):
    """Exception for operator- or system-declared halts."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "EMERGENCY_STOP", context)
        self.retry_after = retry_after


class ConfigurationError(TrackerOrchestratorError):
    """Exception for configuration related errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", context)


class StoreError(TrackerOrchestratorError):
    """Exception for control store failures."""

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "STORE_ERROR", context)
        self.backend = backend


NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    CircuitOpenError,
    ValidationError,
    EmergencyStopError,
    VendorRateLimitError,
)


def is_retryable(error: BaseException) -> bool:
    """Check whether a failed call may be retried locally."""
    return not isinstance(error, NON_RETRYABLE_ERRORS)
