"""
Freshness Orchestrator.

Wires every component of the freshness system from a SystemConfig:
- Persistence (in-memory or HMAC-protected JSON state file)
- Debounce/dedup ledgers (process-local or Redis)
- Revalidation backend (push events or pull sweep)
- Revalidation scheduler and concurrency guard
- Section lookups, access recorder, warm-cache sweeper and SWR reads

Anything can be injected for tests; defaults come from the configuration.
"""

import time
from typing import Optional

from .access import AccessRecorder
from .audit_logger import AuditLogger
from .backends import (
    EventSink,
    HttpEventSink,
    InMemoryEventQueue,
    PullBackend,
    PushBackend,
    RevalidationBackend,
)
from .concurrency import ConcurrencyGuard, SingleFlight
from .config import SystemConfig
from .enums import BackendKind, LogLevel, Section
from .fetchers import SectionFetcher, build_fetchers
from .ledger import ExpiringLedger, MemoryLedger, RedisLedger, create_redis_client
from .lookups import SectionLookups
from .models import SweepSummary
from .retry_manager import RetryManager
from .revalidation import RevalidationScheduler
from .state_store import DomainRepository, MemoryStateStore, StateStore
from .sweeper import WarmCacheSweeper
from .swr import StaleWhileRevalidate, SwrResult


class FreshnessOrchestrator:
    """Owns the component graph and exposes the system's entry points."""

    async def __aenter__(self) -> "FreshnessOrchestrator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def __init__(
        self,
        config: SystemConfig,
        repository: Optional[DomainRepository] = None,
        fetchers: Optional[dict[Section, SectionFetcher]] = None,
        sink: Optional[EventSink] = None,
        access_ledger: Optional[ExpiringLedger] = None,
        schedule_ledger: Optional[ExpiringLedger] = None,
        guard_ledger: Optional[ExpiringLedger] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: System configuration
            repository: Persistence layer; built from config.persistence if omitted
            fetchers: Section fetchers; simulated or network ones per config
            sink: Event sink for the push backend
            access_ledger: Debounce ledger for the access recorder
            schedule_ledger: Dedup ledger for the scheduler
            guard_ledger: Lock ledger for the concurrency guard
            logger: Optional audit logger
        """
        self._config = config
        self._logger = logger
        self._redis = None

        self._repository = repository or self._build_repository()

        if config.backend.redis_url and not (access_ledger and schedule_ledger and guard_ledger):
            self._redis = create_redis_client(config.backend.redis_url, logger=logger)

        ledger_config = config.ledger
        self._access_ledger = access_ledger or self._build_ledger(
            "access",
            ledger_config.access_max_entries,
            ledger_config.access_cleanup_threshold,
        )
        self._schedule_ledger = schedule_ledger or self._build_ledger(
            "schedule", ledger_config.schedule_max_entries
        )
        self._guard_ledger = guard_ledger or self._build_ledger(
            "guard", ledger_config.access_max_entries
        )

        self._retry_manager = RetryManager(config.retry)
        self._sink = sink
        self._backend = self._build_backend()

        self._scheduler = RevalidationScheduler(
            backend=self._backend,
            ledger=self._schedule_ledger,
            ttls=config.ttls,
            decay=config.decay,
            ledger_config=ledger_config,
            event_name=config.backend.event_name,
            logger=logger,
        )
        self._guard = ConcurrencyGuard(
            self._guard_ledger,
            lock_ttl_seconds=config.guard.lock_ttl_seconds,
            logger=logger,
        )
        self._lookups = SectionLookups(
            fetchers=fetchers or build_fetchers(
                config.simulation_mode, config.backend.timeout_seconds, logger
            ),
            repository=self._repository,
            scheduler=self._scheduler,
            guard=self._guard,
            ttls=config.ttls,
            decay=config.decay,
            logger=logger,
        )
        self._access = AccessRecorder(
            self._repository, self._access_ledger, ledger_config, logger=logger
        )
        self._sweeper = WarmCacheSweeper(
            self._repository, self._lookups, config.sweep, logger=logger
        )
        self._swr = StaleWhileRevalidate(
            self._repository,
            self._lookups,
            SingleFlight(config.guard.background_timeout_seconds, logger=logger),
            logger=logger,
        )

    def _build_repository(self) -> DomainRepository:
        persistence = self._config.persistence
        if persistence.state_file_path is None:
            return MemoryStateStore()
        store = StateStore(persistence.state_file_path, persistence.hmac_secret)
        store.load()
        return store

    def _build_ledger(
        self,
        namespace: str,
        max_entries: int,
        cleanup_threshold: Optional[int] = None,
    ) -> ExpiringLedger:
        prefix = self._config.ledger.redis_namespace
        if self._redis is not None:
            return RedisLedger(self._redis, namespace=f"{prefix}:{namespace}")
        return MemoryLedger(max_entries, cleanup_threshold, namespace=namespace)

    def _build_backend(self) -> RevalidationBackend:
        backend_config = self._config.backend
        if backend_config.kind is BackendKind.PULL:
            return PullBackend()
        if self._sink is None:
            if backend_config.event_api_url:
                self._sink = HttpEventSink(
                    backend_config.event_api_url,
                    self._retry_manager,
                    api_key=backend_config.event_api_key,
                    timeout=backend_config.timeout_seconds,
                    logger=self._logger,
                )
            else:
                self._sink = InMemoryEventQueue()
        return PushBackend(self._sink)

    def record_access(self, domain: str) -> None:
        """Fire-and-forget: a human viewed `domain`."""
        self._access.record_access(domain)

    async def sweep(self) -> SweepSummary:
        return await self._sweeper.sweep()

    async def get_section(self, section: Section, domain: str) -> SwrResult:
        return await self._swr.get(section, domain)

    async def handle_revalidate_event(self, data: dict) -> dict:
        return await self._lookups.revalidate_section(data)

    async def drain_due(self, now_ms: Optional[int] = None) -> list[dict]:
        """
        Run every due event held by the in-process queue.

        A handler that raises is logged and its event is put back on the
        queue; the remaining events still run.

        Returns:
            One handler result per event run
        """
        if not isinstance(self._sink, InMemoryEventQueue):
            return []
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        results = []
        for event in self._sink.pop_due(now_ms):
            try:
                results.append(await self.handle_revalidate_event(event.data))
            except Exception as e:
                if self._logger:
                    self._logger.log_error(
                        "orchestrator",
                        "Revalidation event failed",
                        error=e,
                        additional_data={"event_id": event.id},
                    )
                if event.id not in self._sink:
                    await self._sink.send([event])
                results.append({
                    "success": False,
                    "domain": event.data.get("domain", ""),
                    "section": event.data.get("section", ""),
                    "error": "handler_error",
                })
        if results and self._logger:
            self._logger.log(
                LogLevel.INFO,
                "orchestrator",
                "Drained due revalidation events",
                {"count": len(results)},
            )
        return results

    async def close(self) -> None:
        await self._access.flush()
        await self._lookups.close()
        if isinstance(self._sink, HttpEventSink):
            await self._sink.close()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def config(self) -> SystemConfig:
        """Get the system configuration."""
        return self._config

    @property
    def repository(self) -> DomainRepository:
        return self._repository

    @property
    def scheduler(self) -> RevalidationScheduler:
        return self._scheduler

    @property
    def guard(self) -> ConcurrencyGuard:
        return self._guard

    @property
    def lookups(self) -> SectionLookups:
        return self._lookups

    @property
    def access_recorder(self) -> AccessRecorder:
        return self._access

    @property
    def sweeper(self) -> WarmCacheSweeper:
        return self._sweeper

    @property
    def swr(self) -> StaleWhileRevalidate:
        return self._swr

    @property
    def backend(self) -> RevalidationBackend:
        return self._backend

    @property
    def sink(self) -> Optional[EventSink]:
        return self._sink
