"""
Exception classes for the domain freshness system.

All exceptions inherit from FreshnessError and carry a machine-readable code,
a message and optional details. Conflicts raised by an execution backend are
a distinct ConflictError type so callers never need to sniff messages.
"""

from typing import Optional


class FreshnessError(Exception):
    """Base exception for all domain freshness errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(FreshnessError):
    """Raised when a domain or section cannot be normalized."""

    pass


class ConfigurationError(FreshnessError):
    """Raised when configuration cannot be loaded or is inconsistent."""

    pass


class PersistenceError(FreshnessError):
    """Raised when persistence operations fail (file I/O, HMAC validation)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation fails, indicating data tampering."""

    pass


class BackendError(FreshnessError):
    """Raised when the execution backend returns an error."""

    kind = "backend"

    def __init__(
        self,
        code: str,
        message: str,
        status: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(code, message, details)
        self.status = status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = self.status
        data["kind"] = self.kind
        return data


class ConflictError(BackendError):
    """
    Another worker already claimed or completed the same unit of work.

    Guards treat this as "already handled" rather than as a failure.
    """

    kind = "conflict"

    def __init__(
        self,
        message: str = "already handled by another worker",
        details: Optional[dict] = None,
    ) -> None:
        super().__init__("conflict", message, status=409, details=details)
