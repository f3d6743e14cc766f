"""
Access recorder.

Records that a human viewed a domain so decay can tell active domains from
abandoned ones. Writes are debounced per domain and run in the background;
nothing here ever raises into the request path.

Only call this for genuine end-user requests. Background refresh jobs must
not record access, otherwise a domain stays "active" forever and its
refresh cadence never decays.
"""

import asyncio
from typing import Optional

from .audit_logger import AuditLogger, LoggingMixin
from .config import LedgerConfig
from .domain_validator import normalize_domain
from .exceptions import ValidationError
from .ledger import ExpiringLedger, MemoryLedger
from .state_store import DomainRepository


class AccessRecorder(LoggingMixin):
    """Debounced, fire-and-forget `last_accessed_at` writer."""

    _component = "access"

    def __init__(
        self,
        repository: DomainRepository,
        ledger: Optional[ExpiringLedger] = None,
        config: Optional[LedgerConfig] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._repository = repository
        self._config = config or LedgerConfig()
        self._ledger = ledger or MemoryLedger(
            max_entries=self._config.access_max_entries,
            cleanup_threshold=self._config.access_cleanup_threshold,
            namespace="access",
        )
        self._logger = logger
        self._tasks: set[asyncio.Task] = set()

    @property
    def ledger(self) -> ExpiringLedger:
        return self._ledger

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def record_access(self, domain: str) -> None:
        """
        Note a human view of `domain` without waiting for the write.

        Must be called from inside a running event loop; the write happens
        in a background task.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log_warn("no running event loop; access not recorded", {"domain": str(domain)})
            return

        task = loop.create_task(self.record_access_now(domain))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def record_access_now(self, domain: str) -> bool:
        """
        Debounce and write immediately.

        Returns:
            True when a persistence write was issued and succeeded
        """
        try:
            canonical = normalize_domain(domain)
        except ValidationError as e:
            self._log_warn("invalid domain; access not recorded", {"domain": str(domain), "error": e.message})
            return False

        try:
            claimed = await self._ledger.claim(canonical, self._config.access_debounce_seconds)
        except Exception as e:
            # The repository applies its own debounce, so write anyway
            self._log_warn("access ledger unavailable", {"domain": canonical, "error": str(e)})
            claimed = True
        if not claimed:
            return False

        try:
            await self._repository.update_last_accessed(canonical)
        except Exception as e:
            self._log_error("Failed to record domain access", error=e, data={"domain": canonical})
            return False
        return True

    async def flush(self) -> None:
        """Wait for every background write started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
