"""
Enumeration types for the domain freshness system.

These enums provide type-safe constants for data sections, log levels,
backend selection and guard outcomes throughout the system.
"""

from enum import Enum


class Section(Enum):
    """Cached data category for a domain."""

    DNS = "dns"
    HEADERS = "headers"
    HOSTING = "hosting"
    CERTIFICATES = "certificates"
    SEO = "seo"
    REGISTRATION = "registration"

    @classmethod
    def parse(cls, value: "str | Section") -> "Section":
        """Coerce a string (case-insensitive) or Section into a Section."""
        if isinstance(value, Section):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown section: {value!r}") from None


ALL_SECTIONS: tuple[Section, ...] = tuple(Section)


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class BackendKind(Enum):
    """Revalidation hand-off strategy."""

    PUSH = "push"
    PULL = "pull"


class GuardOutcome(Enum):
    """Terminal states of a guarded run."""

    DONE = "done"
    ALREADY_HANDLED = "already_handled"


class FailureReason(Enum):
    """Permanent (non-retryable) section lookup failures."""

    UNSUPPORTED_TLD = "unsupported_tld"
    UNREGISTERED = "unregistered"
    DNS_ERROR = "dns_error"
    TLS_ERROR = "tls_error"
    NON_HTML = "non_html"
    BLOCKED = "blocked"
