"""
Concurrency and deduplication guard.

When a cron sweep, a live request and a scheduled re-check race to refresh
the same (domain, section), at most one of them performs the fetch and
persist. The others observe a conflict and treat it as "already handled":
they get None back, never an exception. Any other error passes through
unchanged.

The cross-process part is a short-lived ledger claim (Redis SET NX in
multi-instance deployments). Inside one process `SingleFlight` lets
concurrent callers for the same key share a single in-flight run.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from .audit_logger import AuditLogger
from .enums import GuardOutcome, LogLevel, Section
from .exceptions import BackendError, ConflictError
from .ledger import ExpiringLedger

T = TypeVar("T")

CONFLICT_STATUS = 409

# Messages a workflow backend returns when another worker already stored the
# result of a step
STEP_ALREADY_SET_PATTERNS = (
    "error already exists",
    "result already exists",
    "value already exists",
    "already set",
    "cannot set",
)

ALREADY_HANDLED = GuardOutcome.ALREADY_HANDLED


def is_concurrency_conflict(error: BaseException) -> bool:
    """
    True when `error` means another worker already claimed or finished the work.

    A ConflictError always qualifies. A generic BackendError qualifies only
    with status 409 and a message matching a known "already set" pattern, so
    unrelated 409s still surface.
    """
    if isinstance(error, ConflictError):
        return True
    if isinstance(error, BackendError) and error.status == CONFLICT_STATUS:
        message = error.message.lower()
        return any(pattern in message for pattern in STEP_ALREADY_SET_PATTERNS)
    return False


def log_concurrency_conflict(
    logger: Optional[AuditLogger],
    context: Optional[dict] = None,
    message: str = "step already handled by another worker",
) -> None:
    """Conflicts are expected under at-least-once delivery; log at debug."""
    if logger:
        logger.log(LogLevel.DEBUG, "concurrency", message, context or {})


def handle_step_concurrency_error(
    error: Exception,
    context: Optional[dict] = None,
    logger: Optional[AuditLogger] = None,
) -> GuardOutcome:
    """
    Turn a conflict into ALREADY_HANDLED; re-raise anything else.

    Intended for use inside an `except` block around a single step.
    """
    if is_concurrency_conflict(error):
        log_concurrency_conflict(logger, context)
        return ALREADY_HANDLED
    raise error


def was_already_handled(result: Any) -> bool:
    return result is ALREADY_HANDLED


async def with_concurrency_handling(
    operation: Awaitable[T],
    context: Optional[dict] = None,
    logger: Optional[AuditLogger] = None,
) -> Optional[T]:
    """
    Await `operation`; a concurrency conflict yields None instead of raising.
    """
    try:
        return await operation
    except Exception as e:
        if is_concurrency_conflict(e):
            log_concurrency_conflict(logger, context, "workflow step handled by another worker")
            return None
        raise


def guard_key(kind: str, domain: str, section: Union[Section, str, None] = None) -> str:
    """Build a guard key of the form "{kind}:{domain}[:{section}]"."""
    if section is None:
        return f"{kind}:{domain}"
    return f"{kind}:{domain}:{Section.parse(section).value}"


@dataclass
class GuardResult(Generic[T]):
    """Terminal state of one guarded attempt."""

    outcome: GuardOutcome
    value: Optional[T] = None

    @property
    def already_handled(self) -> bool:
        return self.outcome is ALREADY_HANDLED


class ConcurrencyGuard:
    """
    At-most-one execution per key per lock window.

    unstarted -> in_progress -> done, or unstarted -> already_handled.
    A successful run keeps its marker until the TTL lapses; a failed run
    releases it so a later attempt may retry.
    """

    def __init__(
        self,
        ledger: ExpiringLedger,
        lock_ttl_seconds: float = 300,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._ledger = ledger
        self._lock_ttl_seconds = lock_ttl_seconds
        self._logger = logger

    @property
    def ledger(self) -> ExpiringLedger:
        return self._ledger

    async def attempt(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        succeeded: Optional[Callable[[T], bool]] = None,
    ) -> GuardResult[T]:
        """
        Run `operation` if the lock for `key` can be claimed.

        When `succeeded` is given and rejects the returned value, the lock is
        released as for a raised error.

        Raises:
            Exception: Whatever `operation` raised, unless it was a conflict
        """
        lock_key = f"lock:{key}"
        if not await self._ledger.claim(lock_key, self._lock_ttl_seconds):
            log_concurrency_conflict(self._logger, {"key": key}, "lock held by another worker")
            return GuardResult(ALREADY_HANDLED)

        try:
            value = await operation()
        except Exception as e:
            if is_concurrency_conflict(e):
                log_concurrency_conflict(self._logger, {"key": key})
                return GuardResult(ALREADY_HANDLED)
            await self._ledger.release(lock_key)
            raise

        if succeeded is not None and not succeeded(value):
            await self._ledger.release(lock_key)
        return GuardResult(GuardOutcome.DONE, value)

    async def run(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
    ) -> Optional[T]:
        """Guarded run returning the value, or None when already handled."""
        return (await self.attempt(key, operation)).value


class SingleFlight:
    """
    In-process registry of pending runs keyed by dedup key.

    A caller arriving while a run for the same key is in flight awaits that
    run instead of starting another. Entries are evicted when the run
    finishes or after `timeout_seconds`, whichever comes first.
    """

    def __init__(
        self,
        timeout_seconds: float = 300,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._logger = logger
        self._pending: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def start(self, key: str, factory: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """Return the in-flight task for `key`, starting one if needed."""
        task = self._pending.get(key)
        if task is not None:
            self._debug("attaching to pending run", key)
            return task

        task = asyncio.ensure_future(factory())
        self._pending[key] = task
        task.add_done_callback(lambda t: self._evict(key, t))

        if self._timeout_seconds > 0:
            asyncio.get_running_loop().call_later(
                self._timeout_seconds, self._evict_stale, key, task
            )
        self._debug("started new run", key)
        return task

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """
        Await the shared run for `key`.

        Returns:
            (result, attached) where attached is True if another caller
            started the run
        """
        attached = key in self._pending
        task = self.start(key, factory)
        return await asyncio.shield(task), attached

    def _evict(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            # marks the exception retrieved for detached runs
            self._debug("run failed", key)

    def _evict_stale(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
            if self._logger:
                self._logger.log(
                    LogLevel.WARN,
                    "single_flight",
                    "evicted pending run after timeout",
                    {"key": key, "timeout_seconds": self._timeout_seconds},
                )

    def _debug(self, message: str, key: str) -> None:
        if self._logger:
            self._logger.log(LogLevel.DEBUG, "single_flight", message, {"key": key})
