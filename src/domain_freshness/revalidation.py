"""
Revalidation scheduler.

Combines a section's base TTL with the decay multiplier to pick the next
refresh time, deduplicates requests for the same (domain, section) within a
short window, and hands the request to the configured RevalidationBackend.
Scheduling never raises into the caller: failures are logged and reported
as False.
"""

import math
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from .audit_logger import AuditLogger, LoggingMixin
from .backends import RevalidationBackend, SECTION_REVALIDATE_EVENT
from .config import DecayConfig, LedgerConfig, SectionTTLConfig
from .decay import apply_decay_to_ttl, get_decay_multiplier, should_stop_revalidation
from .domain_validator import normalize_domain
from .enums import Section
from .exceptions import ConflictError, ValidationError
from .ledger import ExpiringLedger, MemoryLedger
from .models import DelayedEvent, SectionRevalidateEvent


def _now_ms() -> int:
    return int(time.time() * 1000)


class RevalidationScheduler(LoggingMixin):
    """Schedules exactly one refresh per (domain, section) per window."""

    _component = "revalidation"

    def __init__(
        self,
        backend: RevalidationBackend,
        ledger: Optional[ExpiringLedger] = None,
        ttls: Optional[SectionTTLConfig] = None,
        decay: Optional[DecayConfig] = None,
        ledger_config: Optional[LedgerConfig] = None,
        event_name: str = SECTION_REVALIDATE_EVENT,
        logger: Optional[AuditLogger] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._ttls = ttls or SectionTTLConfig()
        self._decay = decay or DecayConfig()
        self._ledger_config = ledger_config or LedgerConfig()
        self._ledger = ledger or MemoryLedger(
            max_entries=self._ledger_config.schedule_max_entries,
        )
        self._event_name = event_name
        self._logger = logger
        self._clock_ms = clock_ms

    @property
    def backend(self) -> RevalidationBackend:
        return self._backend

    @property
    def ledger(self) -> ExpiringLedger:
        return self._ledger

    def compute_due_ms(
        self,
        section: Section,
        due_at_ms: Optional[float],
        last_accessed_at: Optional[datetime],
        now_ms: int,
    ) -> Optional[int]:
        """
        Decayed due time for the next refresh, or None if it is unusable.

        With `due_at_ms` the delay until that moment is stretched by the decay
        multiplier; without it the base TTL is. The result is never sooner
        than `now + base TTL`.
        """
        base_ttl_ms = self._ttls.base_ttl_seconds(section) * 1000
        multiplier = get_decay_multiplier(
            section, last_accessed_at, _from_ms(now_ms), self._ttls, self._decay
        )

        if due_at_ms is None:
            decayed_due_ms = now_ms + apply_decay_to_ttl(base_ttl_ms, multiplier)
        else:
            decayed_due_ms = now_ms + apply_decay_to_ttl(due_at_ms - now_ms, multiplier)

        if not math.isfinite(decayed_due_ms) or decayed_due_ms < 0:
            return None

        scheduled_ms = max(decayed_due_ms, now_ms + base_ttl_ms)
        return int(scheduled_ms)

    def _event_for(self, domain: str, section: Section, timestamp_ms: int) -> DelayedEvent:
        payload = SectionRevalidateEvent(domain=domain, section=section)
        return DelayedEvent(
            id=payload.id,
            name=self._event_name,
            data=payload.to_dict(),
            timestamp_ms=timestamp_ms,
        )

    def _prepare(
        self,
        domain: str,
        section: Union[Section, str],
        due_at_ms: Optional[float],
        last_accessed_at: Optional[datetime],
        now_ms: int,
    ) -> Optional[DelayedEvent]:
        section = Section.parse(section)

        if should_stop_revalidation(
            section, last_accessed_at, _from_ms(now_ms), self._ttls, self._decay
        ):
            self._log_debug(
                "skip (stopped: inactive)",
                {
                    "domain": domain,
                    "section": section.value,
                    "last_accessed_at": last_accessed_at.isoformat() if last_accessed_at else "never",
                },
            )
            return None

        scheduled_ms = self.compute_due_ms(section, due_at_ms, last_accessed_at, now_ms)
        if scheduled_ms is None:
            self._log_warn(
                "skip (invalid due time)",
                {"domain": domain, "section": section.value, "due_at_ms": due_at_ms},
            )
            return None

        return self._event_for(domain, section, scheduled_ms)

    async def schedule_revalidation(
        self,
        domain: str,
        section: Union[Section, str],
        due_at_ms: Optional[float] = None,
        last_accessed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Arrange the next refresh of one section.

        Args:
            domain: Domain to refresh (normalized before use)
            section: Section to refresh
            due_at_ms: Desired refresh time in epoch milliseconds; the base
                TTL from now when omitted
            last_accessed_at: Last human access, drives decay and stop

        Returns:
            True when a refresh was handed to the backend
        """
        try:
            domain = normalize_domain(domain)
            event = self._prepare(domain, section, due_at_ms, last_accessed_at, self._clock_ms())
        except (ValidationError, ValueError) as e:
            self._log_warn("skip (invalid input)", {"domain": str(domain), "section": str(section), "error": str(e)})
            return False

        if event is None:
            return False

        window = self._ledger_config.schedule_window_seconds
        try:
            claimed = await self._ledger.claim(event.id, window)
        except Exception as e:
            # Losing dedup only costs a redundant hand-off
            self._log_warn("dedup ledger unavailable", {"event_id": event.id, "error": str(e)})
            claimed = True
        if not claimed:
            self._log_debug("skip (recently scheduled)", {"event_id": event.id})
            return False

        try:
            await self._backend.schedule([event])
        except ConflictError:
            self._log_debug("already scheduled", {"event_id": event.id})
            return True
        except Exception as e:
            await self._release(event.id)
            self._log_error(
                "Failed to schedule revalidation",
                error=e,
                data={"event_id": event.id, "backend": self._backend.kind.value},
            )
            return False

        self._log_debug(
            "scheduled",
            {"event_id": event.id, "due_at_ms": event.timestamp_ms, "backend": self._backend.kind.value},
        )
        return True

    async def schedule_revalidation_batch(
        self,
        domain: str,
        sections: Iterable[Union[Section, str]],
        last_accessed_at: Optional[datetime] = None,
    ) -> int:
        """
        Schedule several sections of one domain with a single backend call.

        Sections that are stopped, invalid or recently scheduled are skipped.

        Returns:
            Number of sections handed to the backend
        """
        sections = list(sections)
        if not sections:
            return 0

        try:
            domain = normalize_domain(domain)
        except ValidationError as e:
            self._log_warn("skip batch (invalid domain)", {"domain": str(domain), "error": str(e)})
            return 0

        now_ms = self._clock_ms()
        window = self._ledger_config.schedule_window_seconds
        events: list[DelayedEvent] = []
        for section in sections:
            try:
                event = self._prepare(domain, section, None, last_accessed_at, now_ms)
            except ValueError as e:
                self._log_warn("skip (invalid section)", {"domain": domain, "section": str(section), "error": str(e)})
                continue
            if event is None or any(ev.id == event.id for ev in events):
                continue
            try:
                claimed = await self._ledger.claim(event.id, window)
            except Exception as e:
                self._log_warn("dedup ledger unavailable", {"event_id": event.id, "error": str(e)})
                claimed = True
            if claimed:
                events.append(event)
            else:
                self._log_debug("skip (recently scheduled)", {"event_id": event.id})

        if not events:
            return 0

        try:
            await self._backend.schedule(events)
        except ConflictError:
            self._log_debug("batch already scheduled", {"domain": domain})
            return len(events)
        except Exception as e:
            for event in events:
                await self._release(event.id)
            self._log_error(
                "Failed to schedule revalidation batch",
                error=e,
                data={"domain": domain, "sections": [ev.data["section"] for ev in events]},
            )
            return 0

        self._log_debug(
            "scheduled batch",
            {"domain": domain, "sections": [ev.data["section"] for ev in events]},
        )
        return len(events)

    async def _release(self, key: str) -> None:
        try:
            await self._ledger.release(key)
        except Exception as e:
            self._log_warn("dedup ledger release failed", {"key": key, "error": str(e)})


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
