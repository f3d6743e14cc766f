"""
Property-based tests for the revalidation scheduler.

Covers decayed due times, the never-sooner-than-base rule, stopping for
abandoned domains, short-window deduplication and backend failure handling.
"""

import asyncio
import io
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from hypothesis import given, settings
from hypothesis import strategies as st

from domain_freshness.audit_logger import AuditLogger
from domain_freshness.backends import InMemoryEventQueue, PullBackend, PushBackend
from domain_freshness.config import DecayConfig
from domain_freshness.decay import get_base_ttl_seconds, get_decay_multiplier, inactive_days
from domain_freshness.enums import ALL_SECTIONS, LogLevel, Section
from domain_freshness.exceptions import BackendError, ConflictError
from domain_freshness.ledger import MemoryLedger
from domain_freshness.models import DelayedEvent
from domain_freshness.revalidation import RevalidationScheduler


NOW_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z
NOW = datetime.fromtimestamp(NOW_MS / 1000, tz=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class FailingSink:
    def __init__(self, error: Exception, failures: int = 1) -> None:
        self.error = error
        self.failures = failures
        self.sent: list[DelayedEvent] = []

    async def send(self, events: Sequence[DelayedEvent]) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        self.sent.extend(events)


def make_scheduler(sink=None, ledger_clock: Optional[FakeClock] = None, logger=None):
    sink = sink if sink is not None else InMemoryEventQueue()
    ledger = MemoryLedger(clock=ledger_clock or FakeClock())
    scheduler = RevalidationScheduler(
        PushBackend(sink),
        ledger,
        logger=logger,
        clock_ms=lambda: NOW_MS,
    )
    return scheduler, sink


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def is_stopped(section: Section, days: float) -> bool:
    decay = DecayConfig()
    days = inactive_days(days_ago(days), NOW)
    cutoff = decay.fast_cutoff_days if get_base_ttl_seconds(section) <= 21600 else decay.slow_cutoff_days
    return days > cutoff


class TestDueTimes:
    """
    **Property: The next refresh is base TTL x decay multiplier from now, never sooner than base.**
    """

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        days=st.floats(min_value=0, max_value=89, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_omitted_due_uses_decayed_base(self, section: Section, days: float) -> None:
        scheduler, queue = make_scheduler()

        ok = asyncio.run(scheduler.schedule_revalidation("example.com", section, None, days_ago(days)))

        assert ok is True
        event = queue.get(f"example.com:{section.value}")
        base_ms = get_base_ttl_seconds(section) * 1000
        multiplier = get_decay_multiplier(section, days_ago(days), NOW)
        assert event.timestamp_ms == NOW_MS + base_ms * multiplier
        assert event.timestamp_ms >= NOW_MS + base_ms

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        delay_ms=st.integers(min_value=-10**9, max_value=10**10),
        days=st.one_of(st.none(), st.floats(min_value=0, max_value=89, allow_nan=False)),
    )
    @settings(max_examples=200)
    def test_never_sooner_than_base(self, section: Section, delay_ms: int, days) -> None:
        scheduler, _ = make_scheduler()
        last = days_ago(days) if days is not None else None
        due = scheduler.compute_due_ms(section, NOW_MS + delay_ms, last, NOW_MS)
        assert due is not None
        assert due >= NOW_MS + get_base_ttl_seconds(section) * 1000

    def test_active_domain_runs_at_base_cadence(self) -> None:
        scheduler, queue = make_scheduler()
        asyncio.run(scheduler.schedule_revalidation("example.com", Section.DNS, None, NOW))
        assert queue.get("example.com:dns").timestamp_ms == NOW_MS + 3_600_000

    def test_explicit_due_is_stretched(self) -> None:
        scheduler, queue = make_scheduler()
        # 20 days idle: fast-changing multiplier is 10
        asyncio.run(scheduler.schedule_revalidation(
            "example.com", Section.DNS, NOW_MS + 3_600_000, days_ago(20)
        ))
        assert queue.get("example.com:dns").timestamp_ms == NOW_MS + 36_000_000

    def test_early_due_is_clamped_to_base(self) -> None:
        scheduler, queue = make_scheduler()
        asyncio.run(scheduler.schedule_revalidation("example.com", Section.SEO, NOW_MS + 1000, None))
        assert queue.get("example.com:seo").timestamp_ms == NOW_MS + 86_400_000

    def test_unusable_due_is_skipped(self) -> None:
        for bad in (math.nan, math.inf, -math.inf):
            scheduler, queue = make_scheduler()
            ok = asyncio.run(scheduler.schedule_revalidation("example.com", Section.DNS, bad, None))
            assert ok is False
            assert len(queue) == 0


class TestStopForAbandonedDomains:
    """
    **Property: Domains idle past the cutoff are never scheduled.**
    """

    def test_abandoned_hosting_is_not_scheduled(self) -> None:
        scheduler, queue = make_scheduler()
        ok = asyncio.run(scheduler.schedule_revalidation("example.com", Section.HOSTING, None, days_ago(95)))
        assert ok is False
        assert len(queue) == 0
        assert queue.sent_batches == 0

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        days=st.floats(min_value=0, max_value=400, allow_nan=False),
    )
    @settings(max_examples=200)
    def test_scheduled_iff_not_stopped(self, section: Section, days: float) -> None:
        scheduler, queue = make_scheduler()
        ok = asyncio.run(scheduler.schedule_revalidation("example.com", section, None, days_ago(days)))
        assert ok is (not is_stopped(section, days))
        assert len(queue) == (0 if is_stopped(section, days) else 1)

    def test_batch_skips_stopped_sections(self) -> None:
        scheduler, queue = make_scheduler()
        count = asyncio.run(scheduler.schedule_revalidation_batch(
            "example.com", list(ALL_SECTIONS), days_ago(95)
        ))
        assert count == 3
        assert queue.sent_batches == 1
        assert {e.data["section"] for e in queue.pending()} == {"dns", "headers", "certificates"}


class TestDeduplication:
    """
    **Property: One hand-off per (domain, section) per window.**
    """

    @given(
        calls=st.lists(
            st.tuples(
                st.sampled_from(["example.com", "EXAMPLE.com", "other.org"]),
                st.sampled_from(list(ALL_SECTIONS)),
            ),
            min_size=1,
            max_size=30,
        )
    )
    @settings(max_examples=100)
    def test_duplicates_within_window_are_skipped(self, calls) -> None:
        scheduler, queue = make_scheduler()

        async def run() -> list[bool]:
            return [await scheduler.schedule_revalidation(d, s) for d, s in calls]

        results = asyncio.run(run())
        distinct = {(d.lower(), s) for d, s in calls}
        assert results.count(True) == len(distinct)
        assert len(queue) == len(distinct)

    def test_window_expiry_allows_replacement(self) -> None:
        clock = FakeClock()
        scheduler, queue = make_scheduler(ledger_clock=clock)

        async def run() -> tuple[bool, bool, bool]:
            first = await scheduler.schedule_revalidation("example.com", Section.DNS)
            second = await scheduler.schedule_revalidation("example.com", Section.DNS, NOW_MS + 7_200_000)
            clock.now += 5
            third = await scheduler.schedule_revalidation("example.com", Section.DNS, NOW_MS + 7_200_000)
            return first, second, third

        assert asyncio.run(run()) == (True, False, True)
        assert len(queue) == 1
        assert queue.get("example.com:dns").timestamp_ms == NOW_MS + 7_200_000

    def test_batch_dedupes_repeated_sections(self) -> None:
        scheduler, queue = make_scheduler()
        count = asyncio.run(scheduler.schedule_revalidation_batch(
            "example.com", ["dns", Section.DNS, "seo"]
        ))
        assert count == 2
        assert len(queue) == 2


class TestBackendFailures:
    """Backend errors are reported as False and release the dedup claim."""

    def test_backend_failure_returns_false_and_logs(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        sink = FailingSink(BackendError("server_error", "HTTP 503", status=503))
        scheduler, _ = make_scheduler(sink=sink, logger=logger)

        async def run() -> tuple[bool, bool]:
            first = await scheduler.schedule_revalidation("example.com", Section.DNS)
            second = await scheduler.schedule_revalidation("example.com", Section.DNS)
            return first, second

        assert asyncio.run(run()) == (False, True)
        assert len(sink.sent) == 1
        errors = [e for e in logger.entries if e.level is LogLevel.ERROR]
        assert errors[0].data["error_code"] == "server_error"

    def test_conflict_counts_as_scheduled(self) -> None:
        sink = FailingSink(ConflictError())
        scheduler, _ = make_scheduler(sink=sink)
        assert asyncio.run(scheduler.schedule_revalidation("example.com", Section.DNS)) is True

    def test_batch_failure_returns_zero(self) -> None:
        sink = FailingSink(RuntimeError("boom"))
        scheduler, _ = make_scheduler(sink=sink)
        assert asyncio.run(scheduler.schedule_revalidation_batch("example.com", ["dns", "seo"])) == 0

    def test_invalid_input_returns_false(self) -> None:
        scheduler, queue = make_scheduler()
        assert asyncio.run(scheduler.schedule_revalidation("bad domain", Section.DNS)) is False
        assert asyncio.run(scheduler.schedule_revalidation("example.com", "nope")) is False
        assert len(queue) == 0


class TestPullBackend:
    def test_pull_backend_records_requests(self) -> None:
        backend = PullBackend()
        scheduler = RevalidationScheduler(backend, clock_ms=lambda: NOW_MS)
        assert asyncio.run(scheduler.schedule_revalidation("example.com", Section.DNS)) is True
        assert backend.requested == 1
        assert not backend.schedules_future_work
