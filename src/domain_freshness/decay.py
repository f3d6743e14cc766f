"""
Decay calculator.

Pure functions that stretch a section's base refresh interval the longer a
domain goes without a human visit, and decide when to stop refreshing it
altogether. No I/O; `now` is injectable for deterministic tests.
"""

import math
from datetime import datetime, timezone
from typing import Optional, Union

from .config import DecayConfig, DecayTier, SectionTTLConfig
from .enums import Section


SECONDS_PER_DAY = 24 * 60 * 60

_DEFAULT_TTLS = SectionTTLConfig()
_DEFAULT_DECAY = DecayConfig()

Number = Union[int, float]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def get_base_ttl_seconds(
    section: Union[Section, str],
    ttls: Optional[SectionTTLConfig] = None,
) -> int:
    """Return the base revalidation interval for a section in seconds."""
    return (ttls or _DEFAULT_TTLS).base_ttl_seconds(Section.parse(section))


def is_fast_changing(
    section: Union[Section, str],
    ttls: Optional[SectionTTLConfig] = None,
) -> bool:
    """True iff the section's base TTL is at most six hours."""
    ttls = ttls or _DEFAULT_TTLS
    return get_base_ttl_seconds(section, ttls) <= ttls.fast_changing_max_seconds


def inactive_days(
    last_accessed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[float]:
    """
    Fractional days since the last human access.

    Returns:
        None when there is no access on record or the timestamp lies in the
        future (clock skew), otherwise a non-negative float
    """
    if last_accessed_at is None:
        return None
    now = _as_aware(now or _utcnow())
    elapsed = (now - _as_aware(last_accessed_at)).total_seconds()
    if elapsed < 0:
        return None
    return elapsed / SECONDS_PER_DAY


def _tiers_for(
    section: Union[Section, str],
    ttls: SectionTTLConfig,
    decay: DecayConfig,
) -> tuple[DecayTier, ...]:
    return decay.fast_tiers if is_fast_changing(section, ttls) else decay.slow_tiers


def get_decay_multiplier(
    section: Union[Section, str],
    last_accessed_at: Optional[datetime],
    now: Optional[datetime] = None,
    ttls: Optional[SectionTTLConfig] = None,
    decay: Optional[DecayConfig] = None,
) -> Number:
    """
    Multiplier applied to the section's base TTL.

    Tiers are scanned from the highest `days` threshold downward and the
    first one met by the inactivity period wins; tier 0 always matches.
    Missing or future access timestamps yield 1.
    """
    days = inactive_days(last_accessed_at, now)
    if days is None:
        return 1

    tiers = _tiers_for(section, ttls or _DEFAULT_TTLS, decay or _DEFAULT_DECAY)
    for tier in reversed(tiers):
        if days >= tier.days:
            return _as_number(tier.multiplier)
    return 1


def should_stop_revalidation(
    section: Union[Section, str],
    last_accessed_at: Optional[datetime],
    now: Optional[datetime] = None,
    ttls: Optional[SectionTTLConfig] = None,
    decay: Optional[DecayConfig] = None,
) -> bool:
    """
    True when the domain has been inactive strictly longer than the cutoff
    (180 days fast-changing, 90 days slow-changing).
    """
    days = inactive_days(last_accessed_at, now)
    if days is None:
        return False

    decay = decay or _DEFAULT_DECAY
    cutoff = (
        decay.fast_cutoff_days
        if is_fast_changing(section, ttls)
        else decay.slow_cutoff_days
    )
    return days > cutoff


def apply_decay_to_ttl(base_ttl: Number, multiplier: Number) -> Number:
    """
    Scale a TTL by a decay multiplier.

    Returns `base_ttl` unchanged if either input is non-finite or <= 0.
    Works in any unit; callers pass milliseconds or seconds consistently.
    """
    if not _is_positive_finite(base_ttl) or not _is_positive_finite(multiplier):
        return base_ttl
    return base_ttl * multiplier


def decayed_ttl_seconds(
    section: Union[Section, str],
    last_accessed_at: Optional[datetime],
    now: Optional[datetime] = None,
    ttls: Optional[SectionTTLConfig] = None,
    decay: Optional[DecayConfig] = None,
) -> Number:
    """Base TTL of the section stretched by its current decay multiplier."""
    return apply_decay_to_ttl(
        get_base_ttl_seconds(section, ttls),
        get_decay_multiplier(section, last_accessed_at, now, ttls, decay),
    )


def _is_positive_finite(value: Number) -> bool:
    try:
        return math.isfinite(value) and value > 0
    except TypeError:
        return False


def _as_number(value: float) -> Number:
    return int(value) if float(value).is_integer() else value
