"""
Execution backends for revalidation hand-off.

Two interchangeable strategies implement `RevalidationBackend`:

- push: every scheduled refresh becomes a delayed event with a stable id
  (`"{domain}:{section}"`) submitted to an event sink. A newer event with
  the same id replaces the pending one.
- pull: nothing is scheduled ahead of time; the warm-cache sweep lists
  recently accessed domains and refreshes stale sections, so the sweep
  interval bounds latency.

Event sinks are either an in-process queue (tests and single-node runs, drained
by the periodic runner) or an HTTP durable-workflow event API reached through
httpx.
"""

from __future__ import annotations

import abc
from typing import Optional, Protocol, Sequence

import httpx

from .audit_logger import AuditLogger, LoggingMixin
from .enums import BackendKind
from .exceptions import BackendError, ConflictError
from .models import DelayedEvent
from .retry_manager import RetryManager


SECTION_REVALIDATE_EVENT = "domain/section.revalidate"


class EventSink(Protocol):
    """Accepts delayed events; idempotent by event id."""

    async def send(self, events: Sequence[DelayedEvent]) -> None: ...


async def enqueue_delayed(
    sink: EventSink,
    event_name: str,
    payload: dict,
    *,
    id: str,
    timestamp_ms: int,
) -> None:
    """Submit one delayed event to `sink`."""
    await sink.send([DelayedEvent(id=id, name=event_name, data=payload, timestamp_ms=timestamp_ms)])


class InMemoryEventQueue:
    """Process-local event sink keyed by event id."""

    def __init__(self) -> None:
        self._pending: dict[str, DelayedEvent] = {}
        self.sent_batches = 0

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._pending

    async def send(self, events: Sequence[DelayedEvent]) -> None:
        self.sent_batches += 1
        for event in events:
            self._pending[event.id] = event

    def get(self, event_id: str) -> Optional[DelayedEvent]:
        return self._pending.get(event_id)

    def pending(self) -> list[DelayedEvent]:
        """Pending events ordered by due time."""
        return sorted(self._pending.values(), key=lambda e: (e.timestamp_ms, e.id))

    def pop_due(self, now_ms: int) -> list[DelayedEvent]:
        """Remove and return every event due at or before `now_ms`."""
        due = [e for e in self.pending() if e.timestamp_ms <= now_ms]
        for event in due:
            del self._pending[event.id]
        return due

    def next_due_ms(self) -> Optional[int]:
        pending = self.pending()
        return pending[0].timestamp_ms if pending else None


class HttpEventSink(LoggingMixin):
    """
    Posts events to a durable-workflow event API.

    Transient failures (timeouts, 429, 5xx, network errors) are retried with
    exponential backoff. A 409 means the event id is already queued or has
    run and is raised as ConflictError.
    """

    _component = "event_sink"

    def __init__(
        self,
        url: str,
        retry_manager: RetryManager,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._url = url
        self._retry_manager = retry_manager
        self._api_key = api_key
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._logger = logger

    async def __aenter__(self) -> "HttpEventSink":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def send(self, events: Sequence[DelayedEvent]) -> None:
        """
        Send a batch of events in one request.

        Raises:
            ConflictError: The API reported the event id as already handled
            BackendError: Retries exhausted or a non-retryable failure
        """
        if not events:
            return

        body = [
            {"name": e.name, "data": e.data, "id": e.id, "ts": e.timestamp_ms}
            for e in events
        ]

        result = await self._retry_manager.execute_with_retry(
            lambda: self._post(body),
            is_retryable=self._retry_manager.is_retryable_exception,
        )
        if result.success:
            self._log_debug(
                "Events accepted",
                {"count": len(body), "ids": [e.id for e in events], "attempts": result.attempts},
            )
            return

        error = result.last_error
        if not isinstance(error, ConflictError):
            self._log_error(
                "Event submission failed",
                error=error,
                data={"request_url": self._url, "attempts": result.attempts},
            )
        if isinstance(error, BackendError):
            raise error
        raise BackendError("unknown_error", f"Event submission failed: {error}") from error

    async def _post(self, body: list[dict]) -> None:
        try:
            response = await self._get_client().post(self._url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise BackendError("timeout", f"Event API timed out: {e}") from e
        except httpx.TransportError as e:
            raise BackendError("network_error", f"Event API unreachable: {e}") from e

        status = response.status_code
        if status < 300:
            return
        if status == 409:
            raise ConflictError(
                f"Event already exists: {response.text[:200]}",
                details={"status": status},
            )
        if status == 429:
            code = "rate_limited"
        elif status >= 500:
            code = "server_error"
        else:
            code = "client_error"
        raise BackendError(
            code,
            f"Event API returned HTTP {status}",
            status=status,
            details={"body": response.text[:200]},
        )


class RevalidationBackend(abc.ABC):
    """Strategy that hands a computed refresh time to the execution layer."""

    kind: BackendKind

    @abc.abstractmethod
    async def schedule(self, events: Sequence[DelayedEvent]) -> None:
        """Hand off one or more refresh requests."""

    @property
    def schedules_future_work(self) -> bool:
        return self.kind is BackendKind.PUSH


class PushBackend(RevalidationBackend):
    """Delayed durable events with stable idempotency keys."""

    kind = BackendKind.PUSH

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink

    @property
    def sink(self) -> EventSink:
        return self._sink

    async def schedule(self, events: Sequence[DelayedEvent]) -> None:
        await self._sink.send(events)


class PullBackend(RevalidationBackend):
    """
    No explicit future scheduling.

    The periodic sweep rediscovers stale sections of recently accessed
    domains, so hand-off is a no-op beyond bookkeeping.
    """

    kind = BackendKind.PULL

    def __init__(self) -> None:
        self.requested = 0

    async def schedule(self, events: Sequence[DelayedEvent]) -> None:
        self.requested += len(events)
