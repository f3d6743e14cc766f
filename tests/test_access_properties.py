"""
Property-based tests for the access recorder.

Repeated views of a domain inside the debounce window must collapse into a
single persistence write, and nothing the recorder does may raise into the
caller.
"""

import asyncio
import io
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from domain_freshness.access import AccessRecorder
from domain_freshness.audit_logger import AuditLogger
from domain_freshness.enums import LogLevel
from domain_freshness.ledger import MemoryLedger
from domain_freshness.state_store import MemoryStateStore


class Clocks:
    """Monotonic seconds for the ledger and UTC datetimes for the store, kept in step."""

    def __init__(self) -> None:
        self.seconds = 1000.0
        self.start = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def monotonic(self) -> float:
        return self.seconds

    def utcnow(self) -> datetime:
        return self.start + timedelta(seconds=self.seconds - 1000.0)

    def advance(self, seconds: float) -> None:
        self.seconds += seconds


def make_recorder(logger=None):
    clocks = Clocks()
    store = MemoryStateStore(clock=clocks.utcnow)
    ledger = MemoryLedger(namespace="access", clock=clocks.monotonic)
    return AccessRecorder(store, ledger, logger=logger), store, clocks


class FailingStore(MemoryStateStore):
    async def update_last_accessed(self, name: str) -> bool:
        raise ConnectionError("database unavailable")


class BrokenLedger(MemoryLedger):
    async def claim(self, key: str, ttl_seconds: float) -> bool:
        raise ConnectionError("redis unavailable")


domain_variants = st.lists(
    st.sampled_from(["example.com", "Example.COM", " example.com ", "EXAMPLE.com."]),
    min_size=1,
    max_size=25,
)


class TestDebounceIdempotence:
    """
    **Property: N views within the debounce window produce exactly one write.**
    """

    @given(views=domain_variants)
    @settings(max_examples=100)
    def test_burst_collapses_to_one_write(self, views: list[str]) -> None:
        recorder, store, _ = make_recorder()

        async def run() -> list[bool]:
            return [await recorder.record_access_now(v) for v in views]

        results = asyncio.run(run())
        assert results.count(True) == 1
        assert results[0] is True
        assert store.last_access_writes == 1

    @given(
        domains=st.lists(
            st.sampled_from(["a.com", "b.net", "c.org", "d.de"]),
            min_size=1,
            max_size=30,
        )
    )
    @settings(max_examples=100)
    def test_one_write_per_distinct_domain(self, domains: list[str]) -> None:
        recorder, store, _ = make_recorder()

        async def run() -> None:
            for domain in domains:
                recorder.record_access(domain)
            await recorder.flush()

        asyncio.run(run())
        assert store.last_access_writes == len(set(domains))
        assert recorder.pending == 0

    def test_write_again_after_window(self) -> None:
        recorder, store, clocks = make_recorder()

        async def run() -> tuple[bool, bool, bool]:
            first = await recorder.record_access_now("example.com")
            clocks.advance(299)
            second = await recorder.record_access_now("example.com")
            clocks.advance(1)
            third = await recorder.record_access_now("example.com")
            return first, second, third

        assert asyncio.run(run()) == (True, False, True)
        assert store.last_access_writes == 2

    def test_timestamp_is_written(self) -> None:
        recorder, store, clocks = make_recorder()
        asyncio.run(recorder.record_access_now("Example.com"))
        domain = asyncio.run(store.get_domain("example.com"))
        assert domain is not None
        assert domain.last_accessed_at == clocks.utcnow()


class TestNeverRaises:
    """Failures are logged and reported, never raised."""

    def test_invalid_domain(self) -> None:
        recorder, store, _ = make_recorder()
        assert asyncio.run(recorder.record_access_now("not a domain")) is False
        assert asyncio.run(recorder.record_access_now("")) is False
        assert store.last_access_writes == 0

    def test_repository_failure_is_logged(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        recorder = AccessRecorder(FailingStore(), logger=logger)

        assert asyncio.run(recorder.record_access_now("example.com")) is False
        errors = [e for e in logger.entries if e.level is LogLevel.ERROR]
        assert errors
        assert errors[0].component == "access"
        assert errors[0].data["domain"] == "example.com"

    def test_ledger_failure_still_writes(self) -> None:
        store = MemoryStateStore()
        recorder = AccessRecorder(store, BrokenLedger())

        assert asyncio.run(recorder.record_access_now("example.com")) is True
        assert store.last_access_writes == 1

    def test_without_running_loop(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        recorder, store, _ = make_recorder(logger)

        recorder.record_access("example.com")

        assert store.last_access_writes == 0
        assert any(e.level is LogLevel.WARN for e in logger.entries)

    def test_default_ledger_uses_config_capacity(self) -> None:
        recorder = AccessRecorder(MemoryStateStore())
        assert recorder.ledger.max_entries == 10_000
        assert recorder.ledger.cleanup_threshold == 12_000
