"""
Stale-while-revalidate read path.

Fresh cache is returned as is. Stale cache is returned immediately while a
background refresh starts. A miss runs the lookup and waits. Refreshes for
the same (section, domain) in one process share a single run.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Union

from .audit_logger import AuditLogger, LoggingMixin
from .concurrency import GuardResult, SingleFlight
from .domain_validator import normalize_domain
from .enums import Section
from .lookups import SectionLookups
from .models import LookupOutcome, SectionFailure, SectionResponse
from .state_store import DomainRepository


@dataclass
class SwrResult:
    """Outcome of a read through the SWR cache."""

    success: bool
    data: Optional[dict]
    cached: bool = False
    stale: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error, "data": None}
        return {
            "success": True,
            "cached": self.cached,
            "stale": self.stale,
            "data": self.data,
        }


def dedup_key(section: Section, domain: str) -> str:
    return f"{section.value}:{domain}"


class StaleWhileRevalidate(LoggingMixin):
    """SWR reads over a repository and the section lookups."""

    _component = "swr"

    def __init__(
        self,
        repository: DomainRepository,
        lookups: SectionLookups,
        single_flight: Optional[SingleFlight] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._repository = repository
        self._lookups = lookups
        self._single_flight = single_flight or SingleFlight(logger=logger)
        self._logger = logger

    @property
    def single_flight(self) -> SingleFlight:
        return self._single_flight

    def _start_refresh(self, section: Section, domain: str) -> "asyncio.Task[GuardResult[LookupOutcome]]":
        return self._single_flight.start(
            dedup_key(section, domain),
            lambda: self._lookups.run_fetch(section, domain),
        )

    async def get(self, section: Union[Section, str], domain: str) -> SwrResult:
        section = Section.parse(section)
        domain = normalize_domain(domain)

        cached = await self._repository.get_cached_section(section, domain)

        if cached.data is not None and not cached.stale:
            return SwrResult(success=True, data=cached.data, cached=True, stale=False)

        if cached.data is not None:
            self._log_debug(
                "returning stale data, triggering background revalidation",
                {"domain": domain, "section": section.value},
            )
            task = self._start_refresh(section, domain)
            task.add_done_callback(lambda t: self._report_background(t, section, domain))
            return SwrResult(success=True, data=cached.data, cached=True, stale=True)

        self._log_debug("cache miss, running lookup", {"domain": domain, "section": section.value})
        result, _ = await self._single_flight.run(
            dedup_key(section, domain),
            lambda: self._lookups.run_fetch(section, domain),
        )
        return await self._from_guard_result(result, section, domain)

    async def _from_guard_result(
        self,
        result: GuardResult[LookupOutcome],
        section: Section,
        domain: str,
    ) -> SwrResult:
        if result.already_handled:
            # Another worker holds the lock; use whatever it has stored
            cached = await self._repository.get_cached_section(section, domain)
            if cached.data is not None:
                return SwrResult(success=True, data=cached.data, cached=True, stale=cached.stale)
            return SwrResult(success=False, data=None, error="not yet available")

        value = result.value
        if isinstance(value, SectionResponse):
            return SwrResult(success=True, data=value.data, cached=False, stale=False)
        if isinstance(value, SectionFailure):
            return SwrResult(success=False, data=None, error=value.reason.value)
        return SwrResult(success=False, data=None, error="lookup failed")

    def _report_background(self, task: asyncio.Task, section: Section, domain: str) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log_error(
                "background revalidation failed",
                error=error,
                data={"domain": domain, "section": section.value},
            )
