"""
Scheduling advice derived from recent sync history.

Recommendations are advisory only. They are shown in the schedule status
and applied solely through an explicit apply call.
"""

from typing import Iterable, Optional

from syncengine.config import Settings, get_settings
from syncengine.models.enums import (
    Provider,
    RecommendationKind,
    SyncStatus,
    SyncTrigger,
)
from syncengine.models.sync import ScheduleConfig, SyncLogEntry, SyncRecommendation

from .business_hours import is_business_hours

# Interval a provider settles on when usage gives no stronger signal
DEFAULT_INTERVALS = {
    Provider.QUICKBOOKS: 60,
    Provider.GOOGLE_CALENDAR: 30,
}

MIN_INTERVAL = 15
PERFORMANCE_MIN_INTERVAL = 60
PERFORMANCE_MIN_RUNS = 10
PERFORMANCE_FAILURE_RATE = 0.2
TIMING_MIN_RUNS = 10
TIMING_OFF_HOURS_SHARE = 0.1


class RecommendationEngine:
    """Turns schedule configs plus run summaries into scheduling suggestions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def generate_recommendations(
        self,
        configs: Iterable[ScheduleConfig],
        entries: Iterable[SyncLogEntry],
    ) -> list[SyncRecommendation]:
        """
        Analyse run summaries per provider.

        Args:
            configs: Current schedule of every provider
            entries: Audit entries from the analysis window; per-record
                entries are ignored

        Returns:
            Recommendations sorted by confidence, highest first
        """
        runs = [e for e in entries if e.is_run_summary]
        recommendations: list[SyncRecommendation] = []

        for config in configs:
            provider_runs = [r for r in runs if r.provider == config.provider]
            recommendations.append(self._interval_recommendation(config, provider_runs))

            performance = self._performance_recommendation(config, provider_runs)
            if performance is not None:
                recommendations.append(performance)

            timing = self._timing_recommendation(config, provider_runs)
            if timing is not None:
                recommendations.append(timing)

        recommendations.sort(key=lambda r: r.confidence, reverse=True)
        return recommendations

    @staticmethod
    def _estimated_minutes(runs: list[SyncLogEntry]) -> float:
        durations = [r.duration_ms for r in runs if r.duration_ms is not None]
        if not durations:
            return 0.0
        return round(sum(durations) / len(durations) / 60000, 2)

    def _interval_recommendation(
        self, config: ScheduleConfig, runs: list[SyncLogEntry]
    ) -> SyncRecommendation:
        manual = sum(1 for r in runs if r.trigger == SyncTrigger.MANUAL)
        scheduled = sum(1 for r in runs if r.trigger == SyncTrigger.SCHEDULED)
        window = self.settings.recommendation_window_days
        insights = [
            f"{manual} manual and {scheduled} scheduled syncs in the last {window} days",
        ]

        if manual >= self.settings.manual_sync_threshold and manual >= 2 * scheduled:
            recommended = max(MIN_INTERVAL, config.interval_minutes // 2)
            return SyncRecommendation(
                provider=config.provider,
                kind=RecommendationKind.INTERVAL,
                recommended_interval=recommended,
                current_interval=config.interval_minutes,
                reason="Frequent manual syncs suggest the schedule runs too rarely",
                confidence=90,
                estimated_duration=self._estimated_minutes(runs),
                suggested_business_hours=config.business_hours_only,
                insights=insights,
            )

        return SyncRecommendation(
            provider=config.provider,
            kind=RecommendationKind.INTERVAL,
            recommended_interval=DEFAULT_INTERVALS.get(config.provider, config.interval_minutes),
            current_interval=config.interval_minutes,
            reason="Standard interval for this provider",
            confidence=70,
            estimated_duration=self._estimated_minutes(runs),
            suggested_business_hours=True,
            insights=insights,
        )

    def _performance_recommendation(
        self, config: ScheduleConfig, runs: list[SyncLogEntry]
    ) -> Optional[SyncRecommendation]:
        if len(runs) < PERFORMANCE_MIN_RUNS:
            return None
        failed = sum(1 for r in runs if r.status == SyncStatus.ERROR)
        failure_rate = failed / len(runs)
        if failure_rate <= PERFORMANCE_FAILURE_RATE:
            return None

        return SyncRecommendation(
            provider=config.provider,
            kind=RecommendationKind.PERFORMANCE,
            recommended_interval=max(PERFORMANCE_MIN_INTERVAL, int(config.interval_minutes * 1.5)),
            current_interval=config.interval_minutes,
            reason="High failure rate; syncing less often reduces pressure on the provider",
            confidence=85,
            estimated_duration=self._estimated_minutes(runs),
            suggested_business_hours=config.business_hours_only,
            insights=[f"{failed} of {len(runs)} syncs failed ({failure_rate:.0%})"],
        )

    def _timing_recommendation(
        self, config: ScheduleConfig, runs: list[SyncLogEntry]
    ) -> Optional[SyncRecommendation]:
        # Only meaningful when the schedule currently runs around the clock
        if config.business_hours_only or len(runs) < TIMING_MIN_RUNS:
            return None
        manual = [r for r in runs if r.trigger == SyncTrigger.MANUAL]
        if not manual:
            return None
        off_hours = sum(1 for r in manual if not is_business_hours(r.created_at, self.settings))
        if off_hours / len(manual) >= TIMING_OFF_HOURS_SHARE:
            return None

        return SyncRecommendation(
            provider=config.provider,
            kind=RecommendationKind.TIMING,
            recommended_interval=config.interval_minutes,
            current_interval=config.interval_minutes,
            reason="Manual syncs happen during business hours; off-hours runs can be skipped",
            confidence=60,
            estimated_duration=self._estimated_minutes(runs),
            suggested_business_hours=True,
            insights=[f"{len(manual) - off_hours} of {len(manual)} manual syncs in business hours"],
        )
