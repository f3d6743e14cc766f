"""
Domain Freshness - access-driven revalidation and decay scheduling.

This package keeps cached per-domain data (DNS, headers, hosting,
certificates, SEO, registration) fresh in proportion to how recently humans
looked at each domain: active domains refresh at their base cadence, idle
ones progressively slower, abandoned ones not at all.
"""

__version__ = "0.1.0"
__author__ = "Domain Freshness Team"

from domain_freshness.exceptions import (
    FreshnessError,
    ValidationError,
    ConfigurationError,
    PersistenceError,
    TamperingError,
    BackendError,
    ConflictError,
)
from domain_freshness.enums import (
    Section,
    ALL_SECTIONS,
    LogLevel,
    BackendKind,
    GuardOutcome,
    FailureReason,
)
from domain_freshness.domain_validator import (
    normalize_domain,
    extract_tld,
)
from domain_freshness.config import (
    DecayTier,
    SectionTTLConfig,
    DecayConfig,
    LedgerConfig,
    SweepConfig,
    GuardConfig,
    RetryConfig,
    BackendConfig,
    PersistenceConfig,
    LoggingConfig,
    CronConfig,
    SystemConfig,
    create_default_config,
    load_config_from_file,
    save_config_to_file,
    apply_env_overrides,
)
from domain_freshness.models import (
    Domain,
    SectionRecord,
    CachedSection,
    SectionResponse,
    SectionFailure,
    SectionRevalidateEvent,
    DelayedEvent,
    SweepSummary,
)
from domain_freshness.decay import (
    get_base_ttl_seconds,
    is_fast_changing,
    get_decay_multiplier,
    should_stop_revalidation,
    apply_decay_to_ttl,
    decayed_ttl_seconds,
)
from domain_freshness.ledger import (
    ExpiringLedger,
    MemoryLedger,
    RedisLedger,
)
from domain_freshness.audit_logger import (
    AuditLogger,
    LogEntry,
)
from domain_freshness.state_store import (
    DomainRepository,
    MemoryStateStore,
    StateStore,
)
from domain_freshness.retry_manager import (
    RetryManager,
    RetryResult,
)
from domain_freshness.backends import (
    EventSink,
    InMemoryEventQueue,
    HttpEventSink,
    RevalidationBackend,
    PushBackend,
    PullBackend,
    enqueue_delayed,
)
from domain_freshness.revalidation import (
    RevalidationScheduler,
)
from domain_freshness.concurrency import (
    is_concurrency_conflict,
    handle_step_concurrency_error,
    was_already_handled,
    with_concurrency_handling,
    ConcurrencyGuard,
    GuardResult,
    SingleFlight,
)
from domain_freshness.access import (
    AccessRecorder,
)
from domain_freshness.fetchers import (
    SectionFetcher,
    SimulatedFetcher,
    HttpHeadersFetcher,
    RdapRegistrationFetcher,
    build_fetchers,
)
from domain_freshness.lookups import (
    SectionLookup,
    SectionLookups,
)
from domain_freshness.sweeper import (
    WarmCacheSweeper,
)
from domain_freshness.swr import (
    StaleWhileRevalidate,
    SwrResult,
)
from domain_freshness.scheduler import (
    Scheduler,
    CronSchedule,
    CronField,
    CronParser,
    CronParseError,
    ScheduledTask,
)
from domain_freshness.orchestrator import (
    FreshnessOrchestrator,
)
from domain_freshness.app import (
    create_app,
)
from domain_freshness.cli import (
    main as cli_main,
    create_parser,
)

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "FreshnessError",
    "ValidationError",
    "ConfigurationError",
    "PersistenceError",
    "TamperingError",
    "BackendError",
    "ConflictError",
    # Enums
    "Section",
    "ALL_SECTIONS",
    "LogLevel",
    "BackendKind",
    "GuardOutcome",
    "FailureReason",
    # Domain Validator
    "normalize_domain",
    "extract_tld",
    # Config
    "DecayTier",
    "SectionTTLConfig",
    "DecayConfig",
    "LedgerConfig",
    "SweepConfig",
    "GuardConfig",
    "RetryConfig",
    "BackendConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "CronConfig",
    "SystemConfig",
    "create_default_config",
    "load_config_from_file",
    "save_config_to_file",
    "apply_env_overrides",
    # Models
    "Domain",
    "SectionRecord",
    "CachedSection",
    "SectionResponse",
    "SectionFailure",
    "SectionRevalidateEvent",
    "DelayedEvent",
    "SweepSummary",
    # Decay
    "get_base_ttl_seconds",
    "is_fast_changing",
    "get_decay_multiplier",
    "should_stop_revalidation",
    "apply_decay_to_ttl",
    "decayed_ttl_seconds",
    # Ledger
    "ExpiringLedger",
    "MemoryLedger",
    "RedisLedger",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # State Store
    "DomainRepository",
    "MemoryStateStore",
    "StateStore",
    # Retry Manager
    "RetryManager",
    "RetryResult",
    # Backends
    "EventSink",
    "InMemoryEventQueue",
    "HttpEventSink",
    "RevalidationBackend",
    "PushBackend",
    "PullBackend",
    "enqueue_delayed",
    # Revalidation
    "RevalidationScheduler",
    # Concurrency
    "is_concurrency_conflict",
    "handle_step_concurrency_error",
    "was_already_handled",
    "with_concurrency_handling",
    "ConcurrencyGuard",
    "GuardResult",
    "SingleFlight",
    # Access
    "AccessRecorder",
    # Fetchers
    "SectionFetcher",
    "SimulatedFetcher",
    "HttpHeadersFetcher",
    "RdapRegistrationFetcher",
    "build_fetchers",
    # Lookups
    "SectionLookup",
    "SectionLookups",
    # Sweeper
    "WarmCacheSweeper",
    # SWR
    "StaleWhileRevalidate",
    "SwrResult",
    # Scheduler
    "Scheduler",
    "CronSchedule",
    "CronField",
    "CronParser",
    "CronParseError",
    "ScheduledTask",
    # Orchestrator
    "FreshnessOrchestrator",
    # HTTP
    "create_app",
    # CLI
    "cli_main",
    "create_parser",
]
