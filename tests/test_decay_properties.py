"""
Property-based tests for the decay calculator.

Uses Hypothesis to check that refresh intervals stretch monotonically with
inactivity, that tier and cutoff boundaries are exact, and that missing or
future access timestamps never cause decay.
"""

import math
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from domain_freshness.config import DecayConfig, DecayTier, SectionTTLConfig
from domain_freshness.decay import (
    apply_decay_to_ttl,
    decayed_ttl_seconds,
    get_base_ttl_seconds,
    get_decay_multiplier,
    inactive_days,
    is_fast_changing,
    should_stop_revalidation,
)
from domain_freshness.enums import ALL_SECTIONS, Section


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

FAST_SECTIONS = [Section.DNS, Section.HEADERS, Section.CERTIFICATES]
SLOW_SECTIONS = [Section.HOSTING, Section.SEO, Section.REGISTRATION]


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


class TestSectionClassification:
    """Fast/slow classification follows the base TTL."""

    def test_base_ttls(self) -> None:
        assert get_base_ttl_seconds(Section.DNS) == 3600
        assert get_base_ttl_seconds(Section.HEADERS) == 21600
        assert get_base_ttl_seconds(Section.CERTIFICATES) == 21600
        assert get_base_ttl_seconds(Section.HOSTING) == 86400
        assert get_base_ttl_seconds(Section.SEO) == 86400
        assert get_base_ttl_seconds(Section.REGISTRATION) == 86400

    def test_fast_and_slow_sections(self) -> None:
        for section in FAST_SECTIONS:
            assert is_fast_changing(section)
        for section in SLOW_SECTIONS:
            assert not is_fast_changing(section)

    def test_section_names_are_accepted(self) -> None:
        assert get_base_ttl_seconds("dns") == 3600
        assert is_fast_changing("Headers")

    def test_custom_ttls_reclassify(self) -> None:
        ttls = SectionTTLConfig(seconds={**SectionTTLConfig().seconds, Section.SEO: 600})
        assert is_fast_changing(Section.SEO, ttls)


class TestMultiplierMonotonicity:
    """
    **Property: Decay multiplier is non-decreasing in inactivity.**
    """

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        a=st.floats(min_value=0, max_value=400, allow_nan=False),
        b=st.floats(min_value=0, max_value=400, allow_nan=False),
    )
    @settings(max_examples=200)
    def test_more_inactivity_never_shrinks_multiplier(
        self, section: Section, a: float, b: float
    ) -> None:
        shorter, longer = sorted((a, b))
        m_short = get_decay_multiplier(section, days_ago(shorter), NOW)
        m_long = get_decay_multiplier(section, days_ago(longer), NOW)
        assert m_long >= m_short

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        days=st.floats(min_value=0, max_value=400, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_multiplier_is_a_configured_tier(self, section: Section, days: float) -> None:
        decay = DecayConfig()
        tiers = decay.fast_tiers if is_fast_changing(section) else decay.slow_tiers
        multiplier = get_decay_multiplier(section, days_ago(days), NOW)
        assert multiplier in {t.multiplier for t in tiers}
        assert multiplier >= 1

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        days=st.floats(min_value=0, max_value=400, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_stop_is_monotonic(self, section: Section, days: float) -> None:
        if should_stop_revalidation(section, days_ago(days), NOW):
            assert should_stop_revalidation(section, days_ago(days + 1), NOW)


class TestTierBoundaries:
    """Exact tier and cutoff boundaries."""

    def test_fast_tiers(self) -> None:
        expected = [(0, 1), (2.99, 1), (3, 3), (13.9, 3), (14, 10), (59, 10), (60, 30), (179, 30)]
        for days, multiplier in expected:
            assert get_decay_multiplier(Section.DNS, days_ago(days), NOW) == multiplier, days

    def test_slow_tiers(self) -> None:
        expected = [(0, 1), (3, 5), (14, 20), (60, 50), (89, 50)]
        for days, multiplier in expected:
            assert get_decay_multiplier(Section.SEO, days_ago(days), NOW) == multiplier, days

    def test_fast_cutoff_is_strict(self) -> None:
        for section in FAST_SECTIONS:
            assert get_decay_multiplier(section, days_ago(179), NOW) == 30
            assert not should_stop_revalidation(section, days_ago(179), NOW)
            assert not should_stop_revalidation(section, days_ago(180), NOW)
            assert should_stop_revalidation(section, days_ago(181), NOW)

    def test_slow_cutoff_is_strict(self) -> None:
        for section in SLOW_SECTIONS:
            assert not should_stop_revalidation(section, days_ago(90), NOW)
            assert should_stop_revalidation(section, days_ago(91), NOW)

    def test_integral_multipliers_are_ints(self) -> None:
        assert isinstance(get_decay_multiplier(Section.DNS, days_ago(20), NOW), int)

    def test_custom_tiers(self) -> None:
        decay = DecayConfig(
            fast_tiers=(DecayTier(0, 1), DecayTier(1, 1.5)),
            slow_tiers=(DecayTier(0, 1),),
            fast_cutoff_days=10,
            slow_cutoff_days=5,
        )
        assert get_decay_multiplier(Section.DNS, days_ago(2), NOW, decay=decay) == 1.5
        assert should_stop_revalidation(Section.DNS, days_ago(11), NOW, decay=decay)
        assert should_stop_revalidation(Section.SEO, days_ago(6), NOW, decay=decay)


class TestNullAndFutureSafety:
    """
    **Property: Missing or future access timestamps mean no decay and no stop.**
    """

    @given(section=st.sampled_from(list(ALL_SECTIONS)))
    @settings(max_examples=20)
    def test_no_access_on_record(self, section: Section) -> None:
        assert get_decay_multiplier(section, None, NOW) == 1
        assert not should_stop_revalidation(section, None, NOW)
        assert inactive_days(None, NOW) is None

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        ahead=st.floats(min_value=0.001, max_value=10_000, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_future_access_is_ignored(self, section: Section, ahead: float) -> None:
        future = NOW + timedelta(days=ahead)
        assert get_decay_multiplier(section, future, NOW) == 1
        assert not should_stop_revalidation(section, future, NOW)

    def test_naive_datetimes_are_utc(self) -> None:
        naive_now = NOW.replace(tzinfo=None)
        naive_last = (NOW - timedelta(days=20)).replace(tzinfo=None)
        assert get_decay_multiplier(Section.DNS, naive_last, naive_now) == 10
        assert inactive_days(naive_last, NOW) == 20


class TestApplyDecayToTtl:
    """
    **Property: TTL scaling is multiplication; bad inputs leave the base unchanged.**
    """

    def test_scaling_law_example(self) -> None:
        assert apply_decay_to_ttl(3_600_000, 10) == 36_000_000

    @given(
        base=st.integers(min_value=1, max_value=10**9),
        multiplier=st.sampled_from([1, 3, 5, 10, 20, 30, 50]),
    )
    @settings(max_examples=100)
    def test_scaling_law(self, base: int, multiplier: int) -> None:
        assert apply_decay_to_ttl(base, multiplier) == base * multiplier

    @given(
        base=st.integers(min_value=1, max_value=10**9),
        multiplier=st.one_of(
            st.just(math.inf),
            st.just(-math.inf),
            st.just(math.nan),
            st.just(0),
            st.floats(max_value=-0.0001, allow_nan=False, allow_infinity=False),
        ),
    )
    @settings(max_examples=100)
    def test_invalid_multiplier_keeps_base(self, base: int, multiplier: float) -> None:
        assert apply_decay_to_ttl(base, multiplier) == base

    @given(base=st.one_of(st.just(0), st.integers(max_value=-1)))
    @settings(max_examples=50)
    def test_invalid_base_is_returned(self, base: int) -> None:
        assert apply_decay_to_ttl(base, 10) == base

    def test_non_finite_base_is_returned(self) -> None:
        assert math.isinf(apply_decay_to_ttl(math.inf, 3))
        assert math.isnan(apply_decay_to_ttl(math.nan, 3))

    @given(
        section=st.sampled_from(list(ALL_SECTIONS)),
        days=st.floats(min_value=0, max_value=400, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_decayed_ttl_is_at_least_base(self, section: Section, days: float) -> None:
        ttl = decayed_ttl_seconds(section, days_ago(days), NOW)
        assert ttl >= get_base_ttl_seconds(section)
        assert ttl == get_base_ttl_seconds(section) * get_decay_multiplier(
            section, days_ago(days), NOW
        )
