"""
Warm-cache sweep (pull model).

Lists domains a human accessed within the lookback window, finds their
stale or missing sections and refreshes them in bounded batches. Failures
are isolated per domain and per section; only a failure to list domains
aborts the sweep.
"""

import asyncio
from typing import Optional

from .audit_logger import AuditLogger, LoggingMixin
from .config import SweepConfig
from .enums import ALL_SECTIONS, Section
from .lookups import SectionLookups
from .models import SectionResponse, SweepSummary
from .state_store import DomainRepository


MAX_RECORDED_ERRORS = 50


class WarmCacheSweeper(LoggingMixin):
    """Periodic refresher for recently accessed domains."""

    _component = "warm_cache"

    def __init__(
        self,
        repository: DomainRepository,
        lookups: SectionLookups,
        config: Optional[SweepConfig] = None,
        sections: Optional[tuple[Section, ...]] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._repository = repository
        self._lookups = lookups
        self._config = config or SweepConfig()
        self._sections = sections or ALL_SECTIONS
        self._logger = logger

    async def is_section_stale(self, domain: str, section: Section) -> bool:
        """Stale or missing; an unreadable cache counts as stale."""
        try:
            cached = await self._repository.get_cached_section(section, domain)
        except Exception as e:
            self._log_error(
                "failed to check staleness, assuming stale",
                error=e,
                data={"domain": domain, "section": section.value},
            )
            return True
        return cached.stale or cached.data is None

    async def stale_sections(self, domain: str) -> list[Section]:
        checks = await asyncio.gather(
            *(self.is_section_stale(domain, section) for section in self._sections)
        )
        return [section for section, stale in zip(self._sections, checks) if stale]

    async def sweep(self) -> SweepSummary:
        """
        Run one sweep.

        Raises:
            Exception: Only when the recently accessed domains cannot be listed
        """
        domains = await self._repository.list_recently_accessed_domains(
            self._config.lookback_hours, self._config.max_domains
        )
        summary = SweepSummary(domains=len(domains))
        if not domains:
            self._log_info("No recently accessed domains to warm")
            return summary

        jobs: list[tuple[str, Section]] = []

        async def collect(domain: str) -> None:
            try:
                stale = await self.stale_sections(domain)
            except Exception as e:
                summary.domains_failed += 1
                self._record_error(summary, f"{domain}: {e}")
                self._log_error("Failed to check staleness for domain", error=e, data={"domain": domain})
                return
            summary.sections_skipped += len(self._sections) - len(stale)
            jobs.extend((domain, section) for section in stale)

        await asyncio.gather(*(collect(domain) for domain in domains))

        batch_size = max(1, self._config.batch_size)
        for start in range(0, len(jobs), batch_size):
            batch = jobs[start:start + batch_size]
            await asyncio.gather(*(self._refresh(summary, d, s) for d, s in batch))

        self._log_info("Warm-cache sweep completed", summary.to_dict())
        return summary

    async def _refresh(self, summary: SweepSummary, domain: str, section: Section) -> None:
        try:
            result = await self._lookups.run_fetch(section, domain)
        except Exception as e:
            summary.sections_failed += 1
            self._record_error(summary, f"{domain}:{section.value}: {e}")
            self._log_error(
                "Failed to refresh section",
                error=e,
                data={"domain": domain, "section": section.value},
            )
            return

        if result.already_handled:
            summary.sections_skipped += 1
        elif isinstance(result.value, SectionResponse):
            summary.sections_refreshed += 1
        else:
            summary.sections_failed += 1

    @staticmethod
    def _record_error(summary: SweepSummary, message: str) -> None:
        if len(summary.errors) < MAX_RECORDED_ERRORS:
            summary.errors.append(message)
