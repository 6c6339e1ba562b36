"""
Unit tests for the RecommendationEngine and the business-hours window.
"""

from datetime import datetime, timedelta

import pytest

from syncengine.models.enums import (
    Provider,
    RecommendationKind,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from syncengine.models.sync import ScheduleConfig, SyncLogEntry
from syncengine.sync.business_hours import is_business_hours, to_business_time
from syncengine.sync.recommendations import RecommendationEngine
from tests.conftest import (
    BUSINESS_HOURS_NOW,
    NIGHT_NOW,
    WEEKEND_NOW,
    make_run_entry,
    make_settings,
)

QB = Provider.QUICKBOOKS


@pytest.fixture
def engine() -> RecommendationEngine:
    return RecommendationEngine(make_settings())


def qb_config(**kwargs) -> ScheduleConfig:
    kwargs.setdefault("interval_minutes", 60)
    return ScheduleConfig(provider=QB, enabled=True, **kwargs)


def runs(count: int, **kwargs):
    return [
        make_run_entry(BUSINESS_HOURS_NOW - timedelta(minutes=10 * i), **kwargs) for i in range(count)
    ]


def by_kind(recommendations, kind):
    return [r for r in recommendations if r.kind == kind]


# ============================================================================
# Business hours
# ============================================================================


class TestBusinessHours:
    def test_weekday_midday_is_business_hours(self):
        assert is_business_hours(BUSINESS_HOURS_NOW, make_settings())

    def test_weekend_is_not_business_hours(self):
        assert not is_business_hours(WEEKEND_NOW, make_settings())

    def test_late_evening_is_not_business_hours(self):
        assert not is_business_hours(NIGHT_NOW, make_settings())

    def test_window_end_is_exclusive(self):
        # 18:59 and 19:00 on a Wednesday in Los Angeles (daylight time)
        assert is_business_hours(datetime(2026, 10, 15, 1, 59), make_settings())
        assert not is_business_hours(datetime(2026, 10, 15, 2, 0), make_settings())

    def test_converted_to_business_timezone(self):
        local = to_business_time(BUSINESS_HOURS_NOW, make_settings())
        assert local.hour == 11
        assert local.weekday() == 2


# ============================================================================
# Interval
# ============================================================================


class TestIntervalRecommendation:
    def test_no_history_gives_standard_interval(self, engine):
        recommendations = engine.generate_recommendations([qb_config(interval_minutes=120)], [])

        interval = by_kind(recommendations, RecommendationKind.INTERVAL)[0]
        assert interval.recommended_interval == 60
        assert interval.current_interval == 120
        assert interval.confidence == 70

    def test_frequent_manual_syncs_halve_interval(self, engine):
        entries = runs(12, trigger=SyncTrigger.MANUAL) + runs(3)

        recommendations = engine.generate_recommendations([qb_config()], entries)

        interval = by_kind(recommendations, RecommendationKind.INTERVAL)[0]
        assert interval.recommended_interval == 30
        assert interval.confidence == 90

    def test_halved_interval_has_floor(self, engine):
        entries = runs(12, trigger=SyncTrigger.MANUAL)

        recommendations = engine.generate_recommendations(
            [qb_config(interval_minutes=20)], entries
        )

        assert by_kind(recommendations, RecommendationKind.INTERVAL)[0].recommended_interval == 15

    def test_manual_runs_matched_by_scheduled_runs_ignored(self, engine):
        entries = runs(10, trigger=SyncTrigger.MANUAL) + runs(10)

        recommendations = engine.generate_recommendations([qb_config()], entries)

        assert by_kind(recommendations, RecommendationKind.INTERVAL)[0].confidence == 70

    def test_google_calendar_standard_interval(self, engine):
        config = ScheduleConfig(provider=Provider.GOOGLE_CALENDAR, interval_minutes=45)

        recommendations = engine.generate_recommendations([config], [])

        assert recommendations[0].recommended_interval == 30


# ============================================================================
# Performance and timing
# ============================================================================


class TestPerformanceRecommendation:
    def test_high_failure_rate_slows_schedule(self, engine):
        entries = runs(7) + runs(3, status=SyncStatus.ERROR, error_code="provider_api_error")

        recommendations = engine.generate_recommendations([qb_config(interval_minutes=60)], entries)

        performance = by_kind(recommendations, RecommendationKind.PERFORMANCE)[0]
        assert performance.recommended_interval == 90
        assert performance.confidence == 85

    def test_performance_interval_has_floor(self, engine):
        entries = runs(5) + runs(5, status=SyncStatus.ERROR)

        recommendations = engine.generate_recommendations([qb_config(interval_minutes=15)], entries)

        assert by_kind(recommendations, RecommendationKind.PERFORMANCE)[0].recommended_interval == 60

    def test_too_few_runs_no_performance_advice(self, engine):
        entries = runs(5, status=SyncStatus.ERROR)

        recommendations = engine.generate_recommendations([qb_config()], entries)

        assert by_kind(recommendations, RecommendationKind.PERFORMANCE) == []

    def test_per_record_entries_ignored(self, engine):
        record_errors = [
            SyncLogEntry(
                account_id="a",
                provider=QB,
                operation=SyncOperation.PULL,
                entity_type=SyncEntityType.INVOICE,
                status=SyncStatus.ERROR,
                created_at=BUSINESS_HOURS_NOW,
            )
            for _ in range(20)
        ]

        recommendations = engine.generate_recommendations([qb_config()], record_errors)

        assert by_kind(recommendations, RecommendationKind.PERFORMANCE) == []


class TestTimingRecommendation:
    def test_business_hours_usage_suggests_gate(self, engine):
        entries = runs(10, trigger=SyncTrigger.MANUAL)

        recommendations = engine.generate_recommendations(
            [qb_config(business_hours_only=False)], entries
        )

        timing = by_kind(recommendations, RecommendationKind.TIMING)[0]
        assert timing.suggested_business_hours is True
        assert timing.recommended_interval == 60
        assert timing.confidence == 60

    def test_no_timing_advice_when_already_gated(self, engine):
        entries = runs(10, trigger=SyncTrigger.MANUAL)

        recommendations = engine.generate_recommendations(
            [qb_config(business_hours_only=True)], entries
        )

        assert by_kind(recommendations, RecommendationKind.TIMING) == []

    def test_off_hours_usage_no_timing_advice(self, engine):
        entries = [
            make_run_entry(NIGHT_NOW - timedelta(days=i), trigger=SyncTrigger.MANUAL)
            for i in range(10)
        ]

        recommendations = engine.generate_recommendations(
            [qb_config(business_hours_only=False)], entries
        )

        assert by_kind(recommendations, RecommendationKind.TIMING) == []

    def test_sorted_by_confidence(self, engine):
        entries = runs(12, trigger=SyncTrigger.MANUAL, status=SyncStatus.ERROR)

        recommendations = engine.generate_recommendations(
            [qb_config(business_hours_only=False)], entries
        )

        confidences = [r.confidence for r in recommendations]
        assert confidences == sorted(confidences, reverse=True)
        assert len(recommendations) == 3
