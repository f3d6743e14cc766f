"""
Property-based tests for the concurrency guard.

Conflicts from racing workers must turn into "already handled" results,
while every other error keeps propagating.
"""

import asyncio
import io
import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from domain_freshness.audit_logger import AuditLogger
from domain_freshness.concurrency import (
    ALREADY_HANDLED,
    ConcurrencyGuard,
    SingleFlight,
    guard_key,
    handle_step_concurrency_error,
    is_concurrency_conflict,
    was_already_handled,
    with_concurrency_handling,
)
from domain_freshness.enums import GuardOutcome, LogLevel, Section
from domain_freshness.exceptions import BackendError, ConflictError
from domain_freshness.ledger import MemoryLedger


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


async def step(index: int, conflict_every: int) -> int:
    if index % conflict_every == 0:
        raise ConflictError(details={"index": index})
    return index


class TestConflictClassification:
    """Which errors count as "another worker got there first"."""

    def test_conflict_error_always_matches(self) -> None:
        assert is_concurrency_conflict(ConflictError())
        assert is_concurrency_conflict(ConflictError("anything at all"))

    @given(
        pattern=st.sampled_from([
            "error already exists",
            "Result already exists",
            "value ALREADY EXISTS",
            "step output already set",
            "Cannot set step result",
        ])
    )
    @settings(max_examples=20)
    def test_known_409_messages_match(self, pattern: str) -> None:
        assert is_concurrency_conflict(BackendError("http_error", pattern, status=409))

    def test_unrelated_409_surfaces(self) -> None:
        assert not is_concurrency_conflict(BackendError("http_error", "version mismatch", status=409))

    def test_other_statuses_do_not_match(self) -> None:
        assert not is_concurrency_conflict(BackendError("http_error", "already set", status=500))
        assert not is_concurrency_conflict(RuntimeError("already set"))
        assert not is_concurrency_conflict(ValueError("boom"))


class TestWithConcurrencyHandling:
    """
    **Property: Conflicting calls yield None; all others return their value.**
    """

    def test_every_third_call_conflicts(self) -> None:
        async def run() -> list:
            return [await with_concurrency_handling(step(i, 3)) for i in range(10)]

        results = asyncio.run(run())
        assert results.count(None) == math.ceil(10 / 3)
        assert [r for r in results if r is not None] == [1, 2, 4, 5, 7, 8]

    @given(
        count=st.integers(min_value=1, max_value=50),
        conflict_every=st.integers(min_value=1, max_value=10),
    )
    @settings(max_examples=100)
    def test_none_count_matches_conflicts(self, count: int, conflict_every: int) -> None:
        async def run() -> list:
            return [
                await with_concurrency_handling(step(i, conflict_every))
                for i in range(count)
            ]

        results = asyncio.run(run())
        assert results.count(None) == math.ceil(count / conflict_every)

    def test_non_conflict_errors_pass_through(self) -> None:
        async def failing() -> None:
            raise RuntimeError("database down")

        with pytest.raises(RuntimeError, match="database down"):
            asyncio.run(with_concurrency_handling(failing()))

    def test_unrelated_409_passes_through(self) -> None:
        async def failing() -> None:
            raise BackendError("http_error", "precondition mismatch", status=409)

        with pytest.raises(BackendError):
            asyncio.run(with_concurrency_handling(failing()))

    def test_conflict_is_logged_at_debug(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())

        async def conflicting() -> None:
            raise BackendError("http_error", "result already exists", status=409)

        assert asyncio.run(with_concurrency_handling(conflicting(), {"step": "persist"}, logger)) is None
        assert logger.entries[-1].level is LogLevel.DEBUG
        assert logger.entries[-1].data == {"step": "persist"}


class TestStepErrorHandling:
    def test_conflict_becomes_sentinel(self) -> None:
        try:
            raise ConflictError()
        except ConflictError as e:
            outcome = handle_step_concurrency_error(e, {"step": "fetch"})
        assert was_already_handled(outcome)
        assert outcome is ALREADY_HANDLED

    def test_other_errors_are_reraised(self) -> None:
        with pytest.raises(KeyError):
            try:
                raise KeyError("missing")
            except KeyError as e:
                handle_step_concurrency_error(e)

    def test_sentinel_is_distinct_from_values(self) -> None:
        assert not was_already_handled(None)
        assert not was_already_handled(GuardOutcome.DONE)


class TestConcurrencyGuard:
    """
    **Property: At most one attempt per key runs within the lock window.**
    """

    def test_guard_key_format(self) -> None:
        assert guard_key("section-revalidate", "example.com", "DNS") == "section-revalidate:example.com:dns"
        assert guard_key("warm", "example.com") == "warm:example.com"

    def test_second_attempt_is_already_handled(self) -> None:
        guard = ConcurrencyGuard(MemoryLedger(clock=FakeClock()))
        calls = []

        async def operation() -> str:
            calls.append(1)
            return "ok"

        async def run():
            return await guard.attempt("k", operation), await guard.attempt("k", operation)

        first, second = asyncio.run(run())
        assert first.outcome is GuardOutcome.DONE
        assert first.value == "ok"
        assert second.already_handled
        assert second.value is None
        assert len(calls) == 1

    @given(racers=st.integers(min_value=2, max_value=20))
    @settings(max_examples=30)
    def test_concurrent_attempts_run_once(self, racers: int) -> None:
        guard = ConcurrencyGuard(MemoryLedger(clock=FakeClock()))
        calls = []

        async def operation() -> int:
            calls.append(1)
            await asyncio.sleep(0)
            return len(calls)

        async def run():
            return await asyncio.gather(*(guard.attempt("k", operation) for _ in range(racers)))

        results = asyncio.run(run())
        assert sum(r.outcome is GuardOutcome.DONE for r in results) == 1
        assert sum(r.already_handled for r in results) == racers - 1
        assert len(calls) == 1

    def test_failure_releases_lock(self) -> None:
        guard = ConcurrencyGuard(MemoryLedger(clock=FakeClock()))
        attempts = []

        async def flaky() -> str:
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("fetch exploded")
            return "recovered"

        async def run():
            with pytest.raises(RuntimeError):
                await guard.attempt("k", flaky)
            return await guard.run("k", flaky)

        assert asyncio.run(run()) == "recovered"
        assert len(attempts) == 2

    @given(outcomes=st.lists(st.sampled_from(["ok", None, "gone"]), min_size=1, max_size=8))
    @settings(max_examples=50)
    def test_rejected_result_releases_lock(self, outcomes: list) -> None:
        guard = ConcurrencyGuard(MemoryLedger(clock=FakeClock()))
        remaining = list(outcomes)

        async def operation():
            return remaining.pop(0)

        async def run():
            results = []
            while remaining:
                results.append(await guard.attempt("k", operation, succeeded=lambda v: v == "ok"))
                if await guard.ledger.seen("lock:k"):
                    break
            return results

        results = asyncio.run(run())
        # Every value up to and including the first "ok" ran; nothing ran after it
        expected = outcomes[: outcomes.index("ok") + 1] if "ok" in outcomes else outcomes
        assert [r.value for r in results] == expected
        assert all(r.outcome is GuardOutcome.DONE for r in results)

    def test_conflict_inside_operation_keeps_lock(self) -> None:
        guard = ConcurrencyGuard(MemoryLedger(clock=FakeClock()))

        async def conflicting() -> None:
            raise ConflictError()

        async def run():
            return await guard.attempt("k", conflicting), await guard.ledger.seen("lock:k")

        result, held = asyncio.run(run())
        assert result.already_handled
        assert held is True

    def test_lock_expires_after_ttl(self) -> None:
        clock = FakeClock()
        guard = ConcurrencyGuard(MemoryLedger(clock=clock), lock_ttl_seconds=300)

        async def operation() -> int:
            return 1

        async def run():
            first = await guard.attempt("k", operation)
            clock.now += 300
            return first, await guard.attempt("k", operation)

        first, second = asyncio.run(run())
        assert first.outcome is GuardOutcome.DONE
        assert second.outcome is GuardOutcome.DONE


class TestSingleFlight:
    """
    **Property: Concurrent callers for one key share a single run.**
    """

    @given(callers=st.integers(min_value=1, max_value=15))
    @settings(max_examples=30)
    def test_callers_share_one_run(self, callers: int) -> None:
        flight = SingleFlight(timeout_seconds=0)
        calls = []

        async def factory() -> str:
            calls.append(1)
            await asyncio.sleep(0)
            return "payload"

        async def run():
            results = await asyncio.gather(*(flight.run("dns:example.com", factory) for _ in range(callers)))
            return results, len(flight)

        results, pending_after = asyncio.run(run())
        assert len(calls) == 1
        assert [value for value, _ in results] == ["payload"] * callers
        assert [attached for _, attached in results].count(False) == 1
        assert pending_after == 0

    def test_distinct_keys_run_separately(self) -> None:
        flight = SingleFlight(timeout_seconds=0)
        calls = []

        async def factory() -> int:
            calls.append(1)
            return len(calls)

        async def run():
            return await asyncio.gather(flight.run("a", factory), flight.run("b", factory))

        asyncio.run(run())
        assert len(calls) == 2

    def test_stale_entry_is_evicted_after_timeout(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        flight = SingleFlight(timeout_seconds=0.01, logger=logger)

        async def run() -> tuple[bool, bool]:
            never = asyncio.Event()
            task = flight.start("seo:example.com", never.wait)
            before = flight.has_pending("seo:example.com")
            await asyncio.sleep(0.05)
            after = flight.has_pending("seo:example.com")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return before, after

        assert asyncio.run(run()) == (True, False)
        assert any(e.level is LogLevel.WARN for e in logger.entries)

    def test_failure_is_shared_and_entry_cleared(self) -> None:
        flight = SingleFlight(timeout_seconds=0)

        async def factory() -> None:
            await asyncio.sleep(0)
            raise RuntimeError("lookup failed")

        async def run():
            results = await asyncio.gather(
                flight.run("k", factory), flight.run("k", factory), return_exceptions=True
            )
            return results, len(flight)

        results, pending = asyncio.run(run())
        assert all(isinstance(r, RuntimeError) for r in results)
        assert pending == 0

    def test_guarded_section_key(self) -> None:
        assert guard_key("section-revalidate", "example.com", Section.SEO).endswith(":seo")
