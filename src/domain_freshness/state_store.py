"""
State Store module for domains and cached section records.

`DomainRepository` is the persistence boundary consumed by the access
recorder, section lookups and the warm-cache sweep. `MemoryStateStore` keeps
everything in process; `StateStore` adds an HMAC-protected JSON file so data
survives restarts and tampering is detected on load.
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from .domain_validator import extract_tld, normalize_domain
from .enums import Section
from .exceptions import PersistenceError, TamperingError
from .models import CachedSection, Domain, SectionRecord


# Writes to last_accessed_at closer together than this are ignored
LAST_ACCESS_UPDATE_THRESHOLD = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainRepository(Protocol):
    """Persistence operations used by the freshness system."""

    async def ensure_domain(self, name: str) -> Domain: ...

    async def get_domain(self, name: str) -> Optional[Domain]: ...

    async def update_last_accessed(self, name: str) -> bool: ...

    async def get_cached_section(
        self, section: Union[Section, str], domain: str
    ) -> CachedSection: ...

    async def upsert_section_record(
        self,
        domain: str,
        section: Union[Section, str],
        payload: dict,
        fetched_at: datetime,
        expires_at: datetime,
    ) -> SectionRecord: ...

    async def list_recently_accessed_domains(
        self, lookback_hours: float, limit: int = 500
    ) -> list[str]: ...


class MemoryStateStore:
    """In-process DomainRepository."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._domains: dict[str, Domain] = {}
        self._records: dict[tuple[str, Section], SectionRecord] = {}
        self.last_access_writes = 0

    async def ensure_domain(self, name: str) -> Domain:
        """Return the domain, creating it on first sight."""
        canonical = normalize_domain(name)
        domain = self._domains.get(canonical)
        if domain is None:
            domain = Domain(name=canonical, tld=extract_tld(canonical) or "")
            self._domains[canonical] = domain
            self._changed()
        return domain

    async def get_domain(self, name: str) -> Optional[Domain]:
        return self._domains.get(normalize_domain(name))

    async def update_last_accessed(self, name: str) -> bool:
        """
        Set last_accessed_at to now.

        Skipped when the stored value is newer than five minutes, so bursts
        from several instances collapse into one write.

        Returns:
            True when the timestamp was written
        """
        domain = await self.ensure_domain(name)
        now = self._clock()
        if (
            domain.last_accessed_at is not None
            and now - domain.last_accessed_at < LAST_ACCESS_UPDATE_THRESHOLD
        ):
            return False
        domain.last_accessed_at = now
        self.last_access_writes += 1
        self._changed()
        return True

    async def get_section_record(
        self, section: Union[Section, str], domain: str
    ) -> Optional[SectionRecord]:
        return self._records.get((normalize_domain(domain), Section.parse(section)))

    async def get_cached_section(
        self, section: Union[Section, str], domain: str
    ) -> CachedSection:
        record = await self.get_section_record(section, domain)
        if record is None:
            return CachedSection(stale=True, data=None, expires_at=None)
        return CachedSection(
            stale=record.is_stale(self._clock()),
            data=record.payload,
            expires_at=record.expires_at,
        )

    async def upsert_section_record(
        self,
        domain: str,
        section: Union[Section, str],
        payload: dict,
        fetched_at: datetime,
        expires_at: datetime,
    ) -> SectionRecord:
        canonical = (await self.ensure_domain(domain)).name
        record = SectionRecord(
            domain=canonical,
            section=Section.parse(section),
            payload=payload,
            fetched_at=fetched_at,
            expires_at=expires_at,
        )
        self._records[(canonical, record.section)] = record
        self._changed()
        return record

    async def list_recently_accessed_domains(
        self, lookback_hours: float, limit: int = 500
    ) -> list[str]:
        """Domains accessed within the lookback window, most recent first."""
        cutoff = self._clock() - timedelta(hours=lookback_hours)
        recent = [
            d for d in self._domains.values()
            if d.last_accessed_at is not None and d.last_accessed_at >= cutoff
        ]
        recent.sort(key=lambda d: d.last_accessed_at, reverse=True)
        return [d.name for d in recent[:limit]]

    def _changed(self) -> None:
        """Hook for subclasses that persist on every mutation."""


class StateStore(MemoryStateStore):
    """
    MemoryStateStore persisted to a JSON file with HMAC protection.

    The file is rewritten after every mutation. `load()` validates the HMAC
    before accepting any data.
    """

    VERSION = 1

    def __init__(
        self,
        file_path: Path,
        hmac_secret: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the state store.

        Args:
            file_path: Path to the state file (JSON format)
            hmac_secret: Secret key for HMAC computation
            clock: Source of the current UTC time
        """
        super().__init__(clock=clock)
        self._file_path = file_path
        self._hmac_secret = hmac_secret.encode("utf-8")

    @property
    def file_path(self) -> Path:
        """Get the state file path."""
        return self._file_path

    def load(self) -> bool:
        """
        Load state from file and validate HMAC.

        Returns:
            True if a state file was loaded, False if none exists

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If file cannot be read or parsed
        """
        if not self._file_path.exists():
            return False

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        computed_hmac = self.compute_hmac({
            "version": raw_data.get("version"),
            "domains": raw_data.get("domains", {}),
            "sections": raw_data.get("sections", []),
        })
        if not self.validate_hmac(stored_hmac, computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - data may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        try:
            domains = {
                name: Domain(
                    name=name,
                    tld=item["tld"],
                    last_accessed_at=_parse_dt(item.get("last_accessed_at")),
                )
                for name, item in raw_data.get("domains", {}).items()
            }
            records = {}
            for item in raw_data.get("sections", []):
                record = SectionRecord(
                    domain=item["domain"],
                    section=Section.parse(item["section"]),
                    payload=item["payload"],
                    fetched_at=_parse_dt(item["fetched_at"]),
                    expires_at=_parse_dt(item["expires_at"]),
                )
                records[(record.domain, record.section)] = record
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Malformed state file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        self._domains = domains
        self._records = records
        return True

    def save(self) -> None:
        """
        Save state to file with HMAC protection.

        Raises:
            PersistenceError: If file cannot be written
        """
        data = {
            "version": self.VERSION,
            "domains": {
                name: {
                    "tld": d.tld,
                    "last_accessed_at": _format_dt(d.last_accessed_at),
                }
                for name, d in self._domains.items()
            },
            "sections": [
                {
                    "domain": r.domain,
                    "section": r.section.value,
                    "payload": r.payload,
                    "fetched_at": _format_dt(r.fetched_at),
                    "expires_at": _format_dt(r.expires_at),
                }
                for r in sorted(
                    self._records.values(), key=lambda r: (r.domain, r.section.value)
                )
            ],
        }
        output_data = dict(data, hmac=self.compute_hmac(data))

        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._file_path, "w", encoding="utf-8") as f:
                json.dump(output_data, f, indent=2, sort_keys=True)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write state file: {e}",
                details={"file_path": str(self._file_path)},
            )

    def compute_hmac(self, data: dict) -> str:
        """Compute HMAC-SHA256 over serialized data."""
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        return hmac.compare_digest(stored_hmac, computed_hmac)

    def _changed(self) -> None:
        self.save()


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
