"""
CLEAR node exceptions.
Each carries an ErrorKind tag and an ErrorCode; VerificationFlow.step is the
only place they are converted into the clientError outcome.
"""

from typing import Any, Optional

from clear_node.models import ErrorCode, ErrorDetail, ErrorKind


class ClearNodeError(Exception):
    """Base exception for node operations."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(kind=self.kind, code=self.code, message=self.message)


class ProviderError(ClearNodeError):
    """Non-success response or transport failure talking to CLEAR.

    status_code is None when no HTTP response was received.
    """

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(code, message)

    @classmethod
    def bad_status(cls, status_code: int, body: Any) -> "ProviderError":
        """Factory for PROVIDER_REQUEST_FAILED error."""
        return cls(
            code=ErrorCode.PROVIDER_REQUEST_FAILED,
            message=f"CLEAR API responded with error: {status_code}-{body}",
            status_code=status_code,
            body=body,
        )

    @classmethod
    def unavailable(cls, reason: str) -> "ProviderError":
        """Factory for PROVIDER_UNAVAILABLE error (timeouts, connection errors)."""
        return cls(
            code=ErrorCode.PROVIDER_UNAVAILABLE,
            message=f"CLEAR API request failed: {reason}",
        )

    @classmethod
    def invalid_response(cls, reason: str, status_code: Optional[int] = None) -> "ProviderError":
        """Factory for PROVIDER_RESPONSE_INVALID error."""
        return cls(
            code=ErrorCode.PROVIDER_RESPONSE_INVALID,
            message=f"CLEAR API response invalid: {reason}",
            status_code=status_code,
        )


class ValidationError(ClearNodeError):
    """Resumption could not be correlated with the flow that was started."""

    kind = ErrorKind.VALIDATION

    @classmethod
    def nonce_missing(cls) -> "ValidationError":
        """Factory for NONCE_MISSING error."""
        return cls(
            code=ErrorCode.NONCE_MISSING,
            message="Resumption carries no nonce",
        )

    @classmethod
    def nonce_mismatch(cls) -> "ValidationError":
        """Factory for NONCE_MISMATCH error."""
        return cls(
            code=ErrorCode.NONCE_MISMATCH,
            message="Mismatched nonce value",
        )

    @classmethod
    def state_missing(cls) -> "ValidationError":
        """Factory for STATE_MISSING error.

        Used when a nonce is presented but no flow is suspended (never
        started, already resumed, or expired).
        """
        return cls(
            code=ErrorCode.STATE_MISSING,
            message="No suspended verification for this resumption",
        )


class ConfigurationError(ClearNodeError):
    """Required administrator settings are missing or invalid."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, issues: list[str]):
        self.issues = list(issues)
        super().__init__(
            ErrorCode.CONFIG_INVALID,
            "Invalid node configuration: " + "; ".join(self.issues),
        )
