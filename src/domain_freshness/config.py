"""
Configuration dataclasses for the domain freshness system.

This module defines all configuration structures used throughout the system:
per-section base TTLs, decay tier tables, ledger windows and capacities,
sweep and guard settings, execution backend selection, retry behaviour,
persistence and logging. Defaults mirror the deploy-time constants of the
production service; a JSON file and environment variables can override them.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .enums import BackendKind, Section
from .exceptions import ConfigurationError


FAST_CHANGING_MAX_TTL_SECONDS = 6 * 60 * 60

DEFAULT_SECTION_TTLS: dict[Section, int] = {
    Section.DNS: 60 * 60,
    Section.HEADERS: 6 * 60 * 60,
    Section.CERTIFICATES: 6 * 60 * 60,
    Section.HOSTING: 24 * 60 * 60,
    Section.SEO: 24 * 60 * 60,
    Section.REGISTRATION: 24 * 60 * 60,
}


@dataclass(frozen=True)
class DecayTier:
    """Multiplier applied once a domain has been inactive for `days`."""

    days: float
    multiplier: float


FAST_CHANGING_TIERS: tuple[DecayTier, ...] = (
    DecayTier(days=0, multiplier=1),
    DecayTier(days=3, multiplier=3),
    DecayTier(days=14, multiplier=10),
    DecayTier(days=60, multiplier=30),
)

SLOW_CHANGING_TIERS: tuple[DecayTier, ...] = (
    DecayTier(days=0, multiplier=1),
    DecayTier(days=3, multiplier=5),
    DecayTier(days=14, multiplier=20),
    DecayTier(days=60, multiplier=50),
)


@dataclass
class SectionTTLConfig:
    """Base revalidation interval per section, in seconds."""

    seconds: dict[Section, int] = field(
        default_factory=lambda: dict(DEFAULT_SECTION_TTLS)
    )
    fast_changing_max_seconds: int = FAST_CHANGING_MAX_TTL_SECONDS

    def base_ttl_seconds(self, section: Section) -> int:
        return self.seconds[Section.parse(section)]


@dataclass
class DecayConfig:
    """Decay tier tables and stop cutoffs."""

    fast_tiers: tuple[DecayTier, ...] = FAST_CHANGING_TIERS
    slow_tiers: tuple[DecayTier, ...] = SLOW_CHANGING_TIERS
    fast_cutoff_days: float = 180.0
    slow_cutoff_days: float = 90.0

    def validate(self) -> None:
        """
        Check tier table invariants.

        Raises:
            ConfigurationError: If a table is empty, does not start at day 0
                with multiplier 1, is unsorted, or decreases with inactivity
        """
        for name, tiers in (("fast_tiers", self.fast_tiers), ("slow_tiers", self.slow_tiers)):
            if not tiers:
                raise ConfigurationError("invalid_tiers", f"{name} is empty")
            if tiers[0].days != 0 or tiers[0].multiplier != 1:
                raise ConfigurationError(
                    "invalid_tiers",
                    f"{name} must start with days=0, multiplier=1",
                    {"first": {"days": tiers[0].days, "multiplier": tiers[0].multiplier}},
                )
            for prev, cur in zip(tiers, tiers[1:]):
                if cur.days <= prev.days or cur.multiplier < prev.multiplier:
                    raise ConfigurationError(
                        "invalid_tiers",
                        f"{name} must be sorted by days with non-decreasing multipliers",
                    )


@dataclass
class LedgerConfig:
    """Debounce/dedup ledger windows and capacity thresholds."""

    access_debounce_seconds: float = 5 * 60
    access_max_entries: int = 10_000
    access_cleanup_threshold: int = 12_000
    schedule_window_seconds: float = 5.0
    schedule_max_entries: int = 1_000
    redis_namespace: str = "freshness"


@dataclass
class SweepConfig:
    """Warm-cache sweep settings."""

    lookback_hours: float = 24.0
    max_domains: int = 500
    batch_size: int = 50


@dataclass
class GuardConfig:
    """Concurrency guard lock settings."""

    lock_ttl_seconds: int = 5 * 60
    background_timeout_seconds: float = 5 * 60


@dataclass
class RetryConfig:
    """Retry behavior for execution backend calls."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    retryable_errors: list[str] = field(
        default_factory=lambda: ["timeout", "server_error", "rate_limited", "network_error"]
    )


@dataclass
class BackendConfig:
    """Execution backend selection."""

    kind: BackendKind = BackendKind.PULL
    event_name: str = "domain/section.revalidate"
    event_api_url: Optional[str] = None
    event_api_key: Optional[str] = None
    redis_url: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Optional[Path] = None
    hmac_secret: str = "default-secret-change-me"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class CronConfig:
    """Cron endpoint and periodic runner configuration."""

    secret: Optional[str] = None
    sweep_expression: str = "*/15 * * * *"


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    ttls: SectionTTLConfig = field(default_factory=SectionTTLConfig)
    decay: DecayConfig = field(default_factory=DecayConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cron: CronConfig = field(default_factory=CronConfig)
    simulation_mode: bool = False


def create_default_config(
    simulation_mode: bool = False,
    state_file: Optional[Path] = None,
) -> SystemConfig:
    """
    Create a default system configuration.

    Args:
        simulation_mode: Use simulated section fetchers (no real network requests)
        state_file: Path to the JSON state file; in-memory state when None

    Returns:
        SystemConfig with default settings
    """
    return SystemConfig(
        persistence=PersistenceConfig(state_file_path=state_file),
        simulation_mode=simulation_mode,
    )


def _tiers_from_json(raw: Optional[list], default: tuple[DecayTier, ...]) -> tuple[DecayTier, ...]:
    if not raw:
        return default
    return tuple(
        DecayTier(days=float(item["days"]), multiplier=float(item["multiplier"]))
        for item in sorted(raw, key=lambda t: t["days"])
    )


def config_from_dict(data: dict) -> SystemConfig:
    """
    Build a SystemConfig from a plain dictionary (parsed JSON).

    Unknown keys are ignored; missing keys fall back to defaults.

    Raises:
        ConfigurationError: If a value has the wrong type or an unknown section
    """
    try:
        ttl_data = data.get("ttls", {})
        seconds = dict(DEFAULT_SECTION_TTLS)
        for name, value in ttl_data.get("seconds", {}).items():
            seconds[Section.parse(name)] = int(value)
        ttls = SectionTTLConfig(
            seconds=seconds,
            fast_changing_max_seconds=int(
                ttl_data.get("fast_changing_max_seconds", FAST_CHANGING_MAX_TTL_SECONDS)
            ),
        )

        decay_data = data.get("decay", {})
        decay = DecayConfig(
            fast_tiers=_tiers_from_json(decay_data.get("fast_tiers"), FAST_CHANGING_TIERS),
            slow_tiers=_tiers_from_json(decay_data.get("slow_tiers"), SLOW_CHANGING_TIERS),
            fast_cutoff_days=float(decay_data.get("fast_cutoff_days", 180.0)),
            slow_cutoff_days=float(decay_data.get("slow_cutoff_days", 90.0)),
        )
        decay.validate()

        ledger = LedgerConfig(**data.get("ledger", {}))
        sweep = SweepConfig(**data.get("sweep", {}))
        guard = GuardConfig(**data.get("guard", {}))

        retry_data = data.get("retry", {})
        retry = RetryConfig(
            max_retries=retry_data.get("max_retries", 3),
            base_delay_seconds=retry_data.get("base_delay_seconds", 1.0),
            max_delay_seconds=retry_data.get("max_delay_seconds", 60.0),
        )

        backend_data = dict(data.get("backend", {}))
        backend = BackendConfig(
            kind=BackendKind(backend_data.pop("kind", BackendKind.PULL.value)),
            **backend_data,
        )

        persistence_data = data.get("persistence", {})
        state_file_path = persistence_data.get("state_file_path")
        persistence = PersistenceConfig(
            state_file_path=Path(state_file_path) if state_file_path else None,
            hmac_secret=persistence_data.get("hmac_secret", "default-secret-change-me"),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        cron = CronConfig(**data.get("cron", {}))
    except (TypeError, ValueError, KeyError) as e:
        raise ConfigurationError(
            code="invalid_config",
            message=f"Invalid configuration: {e}",
        ) from e

    return SystemConfig(
        ttls=ttls,
        decay=decay,
        ledger=ledger,
        sweep=sweep,
        guard=guard,
        retry=retry,
        backend=backend,
        persistence=persistence,
        logging=logging_config,
        cron=cron,
        simulation_mode=bool(data.get("simulation_mode", False)),
    )


def config_to_dict(config: SystemConfig, include_secrets: bool = False) -> dict:
    """Serialize a SystemConfig to a JSON-compatible dictionary."""
    return {
        "ttls": {
            "seconds": {s.value: v for s, v in config.ttls.seconds.items()},
            "fast_changing_max_seconds": config.ttls.fast_changing_max_seconds,
        },
        "decay": {
            "fast_tiers": [
                {"days": t.days, "multiplier": t.multiplier} for t in config.decay.fast_tiers
            ],
            "slow_tiers": [
                {"days": t.days, "multiplier": t.multiplier} for t in config.decay.slow_tiers
            ],
            "fast_cutoff_days": config.decay.fast_cutoff_days,
            "slow_cutoff_days": config.decay.slow_cutoff_days,
        },
        "ledger": vars(config.ledger).copy(),
        "sweep": vars(config.sweep).copy(),
        "guard": vars(config.guard).copy(),
        "retry": {
            "max_retries": config.retry.max_retries,
            "base_delay_seconds": config.retry.base_delay_seconds,
            "max_delay_seconds": config.retry.max_delay_seconds,
        },
        "backend": {
            "kind": config.backend.kind.value,
            "event_name": config.backend.event_name,
            "event_api_url": config.backend.event_api_url,
            "event_api_key": config.backend.event_api_key if include_secrets else None,
            "redis_url": config.backend.redis_url,
            "timeout_seconds": config.backend.timeout_seconds,
        },
        "persistence": {
            "state_file_path": (
                str(config.persistence.state_file_path)
                if config.persistence.state_file_path
                else None
            ),
            "hmac_secret": config.persistence.hmac_secret if include_secrets else None,
        },
        "logging": {
            "level": config.logging.level,
            "output_format": config.logging.output_format,
        },
        "cron": {
            "secret": config.cron.secret if include_secrets else None,
            "sweep_expression": config.cron.sweep_expression,
        },
        "simulation_mode": config.simulation_mode,
    }


def load_config_from_file(config_path: Path) -> SystemConfig:
    """
    Load configuration from a JSON file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            code="read_error",
            message=f"Failed to load config file: {e}",
            details={"config_path": str(config_path)},
        ) from e
    return config_from_dict(data)


def save_config_to_file(config: SystemConfig, config_path: Path) -> None:
    """
    Save configuration to a JSON file (secrets included).

    Raises:
        ConfigurationError: If the file cannot be written
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in config_to_dict(config, include_secrets=True).items()}
    try:
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        raise ConfigurationError(
            code="write_error",
            message=f"Failed to write config file: {e}",
            details={"config_path": str(config_path)},
        ) from e


def apply_env_overrides(config: SystemConfig, dotenv_path: Optional[Path] = None) -> SystemConfig:
    """
    Overlay environment variables (and a .env file, if present) onto config.

    Recognized: CRON_SECRET, REDIS_URL, EVENT_API_URL, EVENT_API_KEY,
    STATE_HMAC_SECRET, STATE_FILE, REVALIDATION_BACKEND, LOG_LEVEL.
    """
    load_dotenv(dotenv_path=dotenv_path)

    if os.getenv("CRON_SECRET"):
        config.cron.secret = os.environ["CRON_SECRET"]
    if os.getenv("REDIS_URL"):
        config.backend.redis_url = os.environ["REDIS_URL"]
    if os.getenv("EVENT_API_URL"):
        config.backend.event_api_url = os.environ["EVENT_API_URL"]
    if os.getenv("EVENT_API_KEY"):
        config.backend.event_api_key = os.environ["EVENT_API_KEY"]
    if os.getenv("STATE_HMAC_SECRET"):
        config.persistence.hmac_secret = os.environ["STATE_HMAC_SECRET"]
    if os.getenv("STATE_FILE"):
        config.persistence.state_file_path = Path(os.environ["STATE_FILE"])
    if os.getenv("LOG_LEVEL"):
        config.logging.level = os.environ["LOG_LEVEL"].lower()
    backend = os.getenv("REVALIDATION_BACKEND")
    if backend:
        try:
            config.backend.kind = BackendKind(backend.strip().lower())
        except ValueError as e:
            raise ConfigurationError(
                code="invalid_backend",
                message=f"Unknown REVALIDATION_BACKEND: {backend}",
            ) from e
    return config
