"""
Per-section fetch-and-persist operations.

`SectionLookup.lookup_and_persist` fetches one section, stores it with a
decayed expiry and arranges the next check. `SectionLookups` holds one
lookup per section and runs them under the concurrency guard; it is what
the warm-cache sweep, the read path and the revalidation workflow handler
call.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from .audit_logger import AuditLogger, LoggingMixin
from .concurrency import ConcurrencyGuard, GuardResult, guard_key
from .config import DecayConfig, SectionTTLConfig
from .decay import decayed_ttl_seconds
from .domain_validator import normalize_domain
from .enums import Section
from .exceptions import ValidationError
from .fetchers import SectionFetcher
from .models import LookupOutcome, SectionFailure, SectionResponse
from .revalidation import RevalidationScheduler
from .state_store import DomainRepository


WORKFLOW_KIND = "section-revalidate"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SectionLookup(LoggingMixin):
    """Fetch, persist and reschedule one section."""

    def __init__(
        self,
        fetcher: SectionFetcher,
        repository: DomainRepository,
        scheduler: RevalidationScheduler,
        ttls: Optional[SectionTTLConfig] = None,
        decay: Optional[DecayConfig] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._fetcher = fetcher
        self._repository = repository
        self._scheduler = scheduler
        self._ttls = ttls or SectionTTLConfig()
        self._decay = decay or DecayConfig()
        self._logger = logger
        self._clock = clock
        self._component = f"{fetcher.section.value}_lookup"

    @property
    def section(self) -> Section:
        return self._fetcher.section

    async def lookup_and_persist(self, domain: str) -> LookupOutcome:
        """
        Returns:
            SectionResponse on success, SectionFailure for permanent
            failures, None when the caller should try again later
        """
        canonical = normalize_domain(domain)

        try:
            outcome = await self._fetcher.fetch(canonical)
        except Exception as e:
            self._log_error("fetch failed", error=e, data={"domain": canonical})
            return None

        if outcome is None or isinstance(outcome, SectionFailure):
            if outcome is not None:
                self._log_info(
                    "permanent failure",
                    {"domain": canonical, "reason": outcome.reason.value},
                )
            return outcome

        fetched_at = self._clock()
        record = await self._repository.ensure_domain(canonical)
        ttl_seconds = decayed_ttl_seconds(
            self.section, record.last_accessed_at, fetched_at, self._ttls, self._decay
        )
        expires_at = fetched_at + timedelta(seconds=ttl_seconds)

        try:
            await self._repository.upsert_section_record(
                canonical, self.section, outcome, fetched_at, expires_at
            )
        except Exception as e:
            # The fetched data is still returned to the caller
            self._log_error("failed to persist section", error=e, data={"domain": canonical})
        else:
            await self._scheduler.schedule_revalidation_batch(
                canonical, [self.section], record.last_accessed_at
            )

        return SectionResponse(
            domain=canonical,
            section=self.section,
            data=outcome,
            fetched_at=fetched_at,
            expires_at=expires_at,
        )


class SectionLookups(LoggingMixin):
    """Registry of section lookups, run under the concurrency guard."""

    _component = "lookups"

    def __init__(
        self,
        fetchers: dict[Section, SectionFetcher],
        repository: DomainRepository,
        scheduler: RevalidationScheduler,
        guard: ConcurrencyGuard,
        ttls: Optional[SectionTTLConfig] = None,
        decay: Optional[DecayConfig] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._guard = guard
        self._logger = logger
        self._lookups = {
            section: SectionLookup(
                fetcher, repository, scheduler, ttls, decay, logger=logger, clock=clock
            )
            for section, fetcher in fetchers.items()
        }
        self._fetchers = fetchers

    @property
    def sections(self) -> list[Section]:
        return list(self._lookups)

    def get(self, section: Union[Section, str]) -> SectionLookup:
        section = Section.parse(section)
        try:
            return self._lookups[section]
        except KeyError:
            raise ValueError(f"No lookup registered for section: {section.value}") from None

    async def run_fetch(
        self,
        section: Union[Section, str],
        domain: str,
    ) -> GuardResult[LookupOutcome]:
        """
        Guarded lookup; a concurrent run elsewhere yields ALREADY_HANDLED.

        Only a persisted SectionResponse keeps the lock. Transient and
        permanent failures release it so the next caller fetches again.
        """
        lookup = self.get(section)
        canonical = normalize_domain(domain)
        return await self._guard.attempt(
            guard_key(WORKFLOW_KIND, canonical, lookup.section),
            lambda: lookup.lookup_and_persist(canonical),
            succeeded=lambda outcome: isinstance(outcome, SectionResponse),
        )

    async def revalidate_section(self, data: dict) -> dict:
        """
        Handler for a "domain/section.revalidate" event.

        Returns:
            {"success", "domain", "section"} plus "error" or "already_handled"
        """
        domain = data.get("domain", "")
        section_name = data.get("section", "")
        try:
            section = Section.parse(section_name)
            canonical = normalize_domain(domain)
        except (ValueError, ValidationError) as e:
            self._log_warn("invalid revalidation event", {"data": data, "error": str(e)})
            return {"success": False, "domain": domain, "section": section_name, "error": "invalid_event"}

        result = await self.run_fetch(section, canonical)
        response = {"success": True, "domain": canonical, "section": section.value}
        if result.already_handled:
            response["already_handled"] = True
        elif result.value is None:
            response.update(success=False, error="transient")
        elif isinstance(result.value, SectionFailure):
            response.update(success=False, error=result.value.reason.value)
        return response

    async def close(self) -> None:
        for fetcher in self._fetchers.values():
            await fetcher.close()
