"""
Data models for the domain freshness system.

This module defines the core data structures used throughout the system
for tracked domains, cached section records, lookup results, revalidation
events and sweep summaries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from .enums import FailureReason, Section


@dataclass
class Domain:
    """A tracked domain. Only last_accessed_at is mutated by this package."""

    name: str
    tld: str
    last_accessed_at: Optional[datetime] = None


@dataclass
class SectionRecord:
    """Persisted payload for one (domain, section) pair."""

    domain: str
    section: Section
    payload: dict
    fetched_at: datetime
    expires_at: datetime

    def is_stale(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class CachedSection:
    """
    Result of a cache read.

    `data` is None when nothing is stored; `stale` is True when the record
    has expired or is missing.
    """

    stale: bool
    data: Optional[dict]
    expires_at: Optional[datetime] = None


@dataclass
class SectionResponse:
    """Successful section lookup."""

    domain: str
    section: Section
    data: dict
    fetched_at: datetime
    expires_at: datetime


@dataclass
class SectionFailure:
    """Permanent, typed lookup failure; never retried."""

    domain: str
    section: Section
    reason: FailureReason
    message: str = ""


LookupOutcome = Union[SectionResponse, SectionFailure, None]


@dataclass
class SectionRevalidateEvent:
    """Payload handed to the push backend for a delayed section refresh."""

    domain: str
    section: Section

    @property
    def id(self) -> str:
        return f"{self.domain}:{self.section.value}"

    def to_dict(self) -> dict:
        return {"domain": self.domain, "section": self.section.value}


@dataclass
class DelayedEvent:
    """An event accepted by an event sink, due at `timestamp_ms`."""

    id: str
    name: str
    data: dict
    timestamp_ms: int


@dataclass
class SweepSummary:
    """Counters returned by a warm-cache sweep."""

    domains: int = 0
    domains_failed: int = 0
    sections_refreshed: int = 0
    sections_skipped: int = 0
    sections_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domains": self.domains,
            "domains_failed": self.domains_failed,
            "sections_refreshed": self.sections_refreshed,
            "sections_skipped": self.sections_skipped,
            "sections_failed": self.sections_failed,
        }

    def to_response(self) -> dict[str, int]:
        """camelCase body returned by the cron endpoint."""
        return {
            "domains": self.domains,
            "domainsFailed": self.domains_failed,
            "sectionsStarted": self.sections_refreshed,
            "sectionsRefreshed": self.sections_refreshed,
            "sectionsSkipped": self.sections_skipped,
            "sectionsFailed": self.sections_failed,
        }
