# shopguard/core/exceptions.py
"""
Core exceptions - standardized error handling for the session & security layer.

Every error raised by shopguard derives from StorefrontError and carries a
human-readable message plus a details dict for logging and debugging.
"""

from typing import Optional, Dict, Any, List


class StorefrontError(Exception):
    """Base exception for all shopguard errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(StorefrontError):
    """Malformed or oversized input"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        errors: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize validation error.

        Args:
            message: Error description
            field: Field that failed validation
            errors: Individual rule violations
            details: Additional validation context
        """
        super().__init__(message, details)
        self.field = field
        self.errors = errors or []

        if field:
            self.details['field'] = field
        if self.errors:
            self.details['errors'] = self.errors


class RateLimitError(StorefrontError):
    """Operation denied by the rate limiter"""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize rate limit error.

        Args:
            message: Error description
            operation: Operation type that was limited
            retry_after: Seconds until the caller may try again
            details: Additional context
        """
        super().__init__(message, details)
        self.operation = operation
        self.retry_after = retry_after

        if operation:
            self.details['operation'] = operation
        if retry_after is not None:
            self.details['retry_after'] = round(retry_after)


class AuthError(StorefrontError):
    """Invalid credentials, expired/corrupt session or CSRF mismatch"""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize auth error.

        Args:
            message: Error description
            reason: Machine-readable cause (credentials, expired, csrf, profile, ...)
            details: Additional security context
        """
        super().__init__(message, details)
        self.reason = reason

        if reason:
            self.details['reason'] = reason


class IntegrityError(StorefrontError):
    """Session payload is missing required fields or contradicts local state"""

    def __init__(
        self,
        message: str,
        missing_fields: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.missing_fields = missing_fields or []

        if self.missing_fields:
            self.details['missing_fields'] = self.missing_fields


class NetworkError(StorefrontError):
    """Remote call failed"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize network error.

        Args:
            message: Error description
            service_name: Name of the failing collaborator
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


class RemoteTimeoutError(NetworkError):
    """Remote call exceeded its time budget"""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        timeout: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, operation=operation, details=details)
        self.timeout = timeout
        self.recoverable = True

        if timeout is not None:
            self.details['timeout'] = timeout


class StoreError(StorefrontError):
    """Outcome reported by the remote store that is not a transport failure"""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.collection = collection

        if collection:
            self.details['collection'] = collection


class RecordNotFoundError(StoreError):
    """Point read matched no row"""


class StoreConflictError(StoreError):
    """Write violated a uniqueness constraint"""


class ServiceError(StorefrontError):
    """Errors in collaborator adapter lifecycle"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.service_name = service_name

        if service_name:
            self.details['service'] = service_name


class ConfigurationError(StorefrontError):
    """Errors in system configuration and initialization"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


# Convenience functions for creating common errors

def credentials_error() -> AuthError:
    """Create the generic invalid-credentials error."""
    return AuthError("Invalid email or password", reason="credentials")


def csrf_error(operation: str) -> AuthError:
    """Create a CSRF failure for a mutating operation."""
    return AuthError(
        "CSRF token invalid or expired",
        reason="csrf",
        details={'operation': operation}
    )


def not_authenticated_error(operation: Optional[str] = None) -> AuthError:
    """Create an error for operations attempted without a valid session."""
    details = {'operation': operation} if operation else None
    return AuthError("Authentication required", reason="unauthenticated", details=details)


def rate_limit_error(operation: str, retry_after: Optional[float] = None) -> RateLimitError:
    """Create a rate limit error with a retry-after hint."""
    return RateLimitError(
        "Too many attempts. Please wait before trying again.",
        operation=operation,
        retry_after=retry_after
    )


def timeout_error(operation: str, timeout: float) -> RemoteTimeoutError:
    """Create a timeout error for a remote operation."""
    return RemoteTimeoutError(
        f"Remote operation '{operation}' timed out after {timeout}s",
        operation=operation,
        timeout=timeout
    )
