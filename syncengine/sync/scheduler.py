"""
Automatic sync scheduling.

One asyncio task per enabled provider sleeps until the schedule's next_run
and then fires a cycle: a full sync of every active integration of that
provider. Schedules are persisted, survive restarts, and can be changed at
runtime; a change stops and restarts the provider's timer.

Per provider the schedule moves Disabled -> Scheduled -> Running ->
Scheduled. A firing that arrives while the previous cycle is still running
is skipped.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog

from syncengine.config import Settings, get_settings
from syncengine.connectors.qbo_client import ProviderAPIError
from syncengine.connectors.token_manager import (
    IntegrationNotFound,
    NoAccessToken,
    TokenRefreshFailed,
)
from syncengine.models.entities import ActivityLog
from syncengine.models.enums import (
    Provider,
    RecommendationKind,
    SchedulePriority,
    SyncTrigger,
)
from syncengine.models.sync import (
    ScheduleConfig,
    ScheduleConfigUpdate,
    ScheduleCycleResult,
    SyncRecommendation,
    SyncRunResult,
)
from syncengine.storage.base import StorageBackend, StorageError

from .audit import SyncAuditLog, error_code
from .business_hours import is_business_hours
from .executor import SyncAlreadyRunning, SyncExecutor
from .recommendations import RecommendationEngine

logger = structlog.get_logger(__name__)

# Failures that end a cycle for one account; the schedule stays enabled
RUN_FAILURES = (
    ProviderAPIError,
    IntegrationNotFound,
    NoAccessToken,
    TokenRefreshFailed,
    StorageError,
)


class RecommendationNotFound(LookupError):
    """No current recommendation of that kind exists for the provider."""

    code = "recommendation_not_found"


def default_schedules(settings: Settings) -> dict[Provider, ScheduleConfig]:
    """Schedules used for providers that have no stored config yet."""
    return {
        Provider.QUICKBOOKS: ScheduleConfig(
            provider=Provider.QUICKBOOKS,
            enabled=settings.quickbooks_sync_enabled,
            interval_minutes=settings.quickbooks_sync_interval_minutes,
            business_hours_only=True,
            retry_attempts=settings.quickbooks_retry_attempts,
            priority=SchedulePriority.HIGH,
        ),
        Provider.GOOGLE_CALENDAR: ScheduleConfig(
            provider=Provider.GOOGLE_CALENDAR,
            enabled=False,
            interval_minutes=30,
            business_hours_only=True,
            retry_attempts=2,
            priority=SchedulePriority.MEDIUM,
        ),
    }


class ScheduleController:
    """
    Owns the schedule timers.

    Attributes:
        storage: Persistence backend for schedule configs and integrations
        executors: Sync executor per provider that can actually be synced
        audit: Audit log used for status and recommendations
        settings: Application settings (business hours, windows)
        clock: Returns the current naive-UTC time
        sleep: Coroutine used by timers to wait
    """

    def __init__(
        self,
        storage: StorageBackend,
        executor: SyncExecutor,
        audit: SyncAuditLog,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        recommendation_engine: Optional[RecommendationEngine] = None,
    ):
        self.storage = storage
        self.executors: dict[Provider, SyncExecutor] = {executor.provider: executor}
        self.audit = audit
        self.settings = settings or get_settings()
        self.clock = clock or datetime.utcnow
        self.sleep = sleep or asyncio.sleep
        self.recommendation_engine = recommendation_engine or RecommendationEngine(self.settings)

        self._configs: dict[Provider, ScheduleConfig] = {}
        self._tasks: dict[Provider, asyncio.Task] = {}
        self._running: set[Provider] = set()
        self._config_locks: dict[Provider, asyncio.Lock] = {p: asyncio.Lock() for p in Provider}
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    def is_running(self, provider: Provider) -> bool:
        """True while a cycle for the provider is executing."""
        return provider in self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def load_configs(self) -> dict[Provider, ScheduleConfig]:
        """Read stored schedules, persisting defaults for providers without one."""
        defaults = default_schedules(self.settings)
        for provider in Provider:
            config = await self.storage.get_schedule_config(provider)
            if config is None:
                config = await self.storage.save_schedule_config(defaults[provider])
            self._configs[provider] = config
        return dict(self._configs)

    async def start(self) -> None:
        """Load schedules and start a timer for every enabled provider."""
        if self._started:
            return
        await self.load_configs()
        self._started = True
        for provider, config in self._configs.items():
            if config.enabled:
                await self._start_timer(provider)
        logger.info(
            "schedule_controller_started",
            active_timers=[p.value for p in self._tasks],
        )

    async def stop(self) -> None:
        """Cancel every timer and wait for them to finish."""
        for provider in list(self._tasks):
            await self._stop_timer(provider)
        self._started = False
        logger.info("schedule_controller_stopped")

    async def _start_timer(self, provider: Provider) -> None:
        if provider not in self.executors:
            logger.warning("schedule_provider_unsupported", provider=provider.value)
            return
        config = self._configs[provider]
        now = self.clock()
        if config.next_run is None or config.next_run < now:
            config = config.model_copy(
                update={"next_run": now + timedelta(minutes=config.interval_minutes)}
            )
            await self._save(config)
        self._tasks[provider] = asyncio.create_task(
            self._timer_loop(provider), name=f"sync-schedule-{provider.value}"
        )
        logger.info(
            "schedule_timer_started",
            provider=provider.value,
            interval_minutes=config.interval_minutes,
            next_run=config.next_run.isoformat(),
        )

    async def _stop_timer(self, provider: Provider) -> None:
        task = self._tasks.pop(provider, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("schedule_timer_stopped", provider=provider.value)

    async def _timer_loop(self, provider: Provider) -> None:
        while True:
            config = self._configs[provider]
            delay = (config.next_run - self.clock()).total_seconds() if config.next_run else 0
            await self.sleep(max(0.0, delay))
            try:
                # Shielded so a reconfiguration never aborts an in-flight sync
                await asyncio.shield(self.run_cycle(provider))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("schedule_cycle_crashed", provider=provider.value)
                config = self._configs[provider]
                await self._save(
                    config.model_copy(
                        update={
                            "next_run": self.clock()
                            + timedelta(minutes=config.interval_minutes)
                        }
                    )
                )

    @staticmethod
    def _next_run_after(config: ScheduleConfig, now: datetime) -> Optional[datetime]:
        """A disabled schedule has no next run."""
        if not config.enabled:
            return None
        return now + timedelta(minutes=config.interval_minutes)

    async def _save(self, config: ScheduleConfig) -> ScheduleConfig:
        await self.storage.save_schedule_config(config)
        self._configs[config.provider] = config
        return config

    # =========================================================================
    # Cycles
    # =========================================================================

    async def run_cycle(
        self,
        provider: Provider,
        bypass_business_hours: bool = False,
        trigger: SyncTrigger = SyncTrigger.SCHEDULED,
        account_id: Optional[str] = None,
    ) -> ScheduleCycleResult:
        """
        Fire one cycle for a provider.

        Outside business hours (when the schedule asks for it) nothing is
        synced and nothing is logged; next_run just moves one interval on.

        Args:
            bypass_business_hours: Ignore the business-hours gate
            trigger: Trigger recorded on the resulting runs
            account_id: Restrict the cycle to one account
        """
        now = self.clock()
        config = self._configs.get(provider) or (await self.load_configs())[provider]
        cycle = ScheduleCycleResult(provider=provider, fired_at=now, trigger=trigger)
        next_run = self._next_run_after(config, now)

        if provider not in self.executors:
            cycle.skipped_reason = "unsupported"
            return cycle

        if provider in self._running:
            logger.info("scheduled_sync_skipped_overlap", provider=provider.value)
            if trigger == SyncTrigger.SCHEDULED:
                await self._save(config.model_copy(update={"next_run": next_run}))
            cycle.skipped_reason = "already_running"
            return cycle

        if (
            not bypass_business_hours
            and config.business_hours_only
            and not is_business_hours(now, self.settings)
        ):
            logger.debug("scheduled_sync_outside_business_hours", provider=provider.value)
            await self._save(config.model_copy(update={"next_run": next_run}))
            cycle.skipped_reason = "outside_business_hours"
            return cycle

        self._running.add(provider)
        try:
            integrations = await self.storage.list_integrations(
                provider=provider, account_id=account_id, active_only=True
            )
            for integration in integrations:
                run = await self._run_with_retries(
                    provider, integration.account_id, config.retry_attempts, trigger, cycle
                )
                if run is not None:
                    cycle.runs.append(run)
        finally:
            self._running.discard(provider)
            current = self._configs.get(provider, config)
            await self._save(
                current.model_copy(
                    update={
                        "last_run": now,
                        "next_run": self._next_run_after(current, now),
                    }
                )
            )

        logger.info(
            "schedule_cycle_completed",
            provider=provider.value,
            trigger=trigger.value,
            runs=len(cycle.runs),
            failures=len(cycle.failures),
        )
        return cycle

    async def _run_with_retries(
        self,
        provider: Provider,
        account_id: str,
        retry_attempts: int,
        trigger: SyncTrigger,
        cycle: ScheduleCycleResult,
    ) -> Optional[SyncRunResult]:
        """Full sync with immediate retries of transient provider failures."""
        executor = self.executors[provider]
        attempt = 0
        while True:
            try:
                return await executor.full_sync(account_id, trigger=trigger)
            except SyncAlreadyRunning:
                logger.info("scheduled_sync_skipped_account_busy", account_id=account_id)
                return None
            except RUN_FAILURES as e:
                transient = isinstance(e, ProviderAPIError) and e.is_transient
                if transient and attempt < retry_attempts:
                    attempt += 1
                    logger.warning(
                        "scheduled_sync_retrying",
                        provider=provider.value,
                        account_id=account_id,
                        attempt=attempt,
                        error=str(e),
                    )
                    continue
                logger.error(
                    "scheduled_sync_failed",
                    provider=provider.value,
                    account_id=account_id,
                    attempts=attempt + 1,
                    error=str(e),
                )
                cycle.failures.append(
                    {"account_id": account_id, "error": str(e), "error_code": error_code(e)}
                )
                return None

    async def trigger_now(
        self, provider: Provider, account_id: Optional[str] = None
    ) -> ScheduleCycleResult:
        """
        Run one cycle immediately, ignoring the business-hours gate.

        Raises:
            SyncAlreadyRunning: A cycle for the provider is in progress
        """
        if provider in self._running:
            raise SyncAlreadyRunning(f"A {provider.value} sync cycle is already running")
        if account_id is not None:
            await self.storage.write_activity(
                ActivityLog(
                    account_id=account_id,
                    activity_type="manual_sync",
                    description=f"Manual {provider.value} sync requested",
                    metadata={"provider": provider.value},
                )
            )
        return await self.run_cycle(
            provider,
            bypass_business_hours=True,
            trigger=SyncTrigger.MANUAL,
            account_id=account_id,
        )

    # =========================================================================
    # Configuration
    # =========================================================================

    async def get_schedule_configs(self) -> list[ScheduleConfig]:
        if not self._configs:
            await self.load_configs()
        return [self._configs[p] for p in Provider]

    async def update_schedule_config(
        self,
        provider: Provider,
        actor_account_id: Optional[str] = None,
        **changes: Any,
    ) -> ScheduleConfig:
        """
        Validate, persist and apply a schedule change.

        The provider's timer is stopped and, if the schedule is enabled and
        the controller is running, restarted with the new settings.

        Raises:
            pydantic.ValidationError: If a changed value is invalid
        """
        update = ScheduleConfigUpdate(**changes)
        async with self._config_locks[provider]:
            if not self._configs:
                await self.load_configs()
            current = self._configs[provider]
            merged = ScheduleConfig.model_validate(
                {**current.model_dump(), **update.model_dump(exclude_none=True)}
            )
            merged = merged.model_copy(
                update={
                    "next_run": self.clock() + timedelta(minutes=merged.interval_minutes)
                    if merged.enabled
                    else None
                }
            )

            await self._stop_timer(provider)
            await self._save(merged)
            if merged.enabled and self._started:
                await self._start_timer(provider)

        if actor_account_id is not None:
            await self.storage.write_activity(
                ActivityLog(
                    account_id=actor_account_id,
                    activity_type="schedule_updated",
                    description=f"Updated {provider.value} sync schedule",
                    metadata=update.model_dump(mode="json", exclude_none=True),
                )
            )
        logger.info(
            "schedule_updated",
            provider=provider.value,
            changes=update.model_dump(mode="json", exclude_none=True),
        )
        return self._configs[provider]

    # =========================================================================
    # Status and recommendations
    # =========================================================================

    async def get_recommendations(
        self, account_id: Optional[str] = None
    ) -> list[SyncRecommendation]:
        """Advice for providers this controller can sync; others have no runs to judge."""
        since = self.clock() - timedelta(days=self.settings.recommendation_window_days)
        entries = await self.audit.history(
            account_id=account_id, since=since, run_summaries_only=True, limit=1000
        )
        configs = [c for c in await self.get_schedule_configs() if c.provider in self.executors]
        return self.recommendation_engine.generate_recommendations(configs, entries)

    async def apply_recommendation(
        self,
        provider: Provider,
        kind: RecommendationKind,
        account_id: Optional[str] = None,
    ) -> ScheduleConfig:
        """
        Apply the current recommendation of a kind through update_schedule_config.

        Raises:
            RecommendationNotFound: Nothing of that kind is recommended now
        """
        for recommendation in await self.get_recommendations(account_id):
            if recommendation.provider == provider and recommendation.kind == kind:
                break
        else:
            raise RecommendationNotFound(
                f"No {kind.value} recommendation for {provider.value}"
            )

        changes: dict[str, Any] = {"interval_minutes": recommendation.recommended_interval}
        if kind == RecommendationKind.TIMING:
            changes["business_hours_only"] = recommendation.suggested_business_hours
        logger.info(
            "recommendation_applied",
            provider=provider.value,
            kind=kind.value,
            recommended_interval=recommendation.recommended_interval,
        )
        return await self.update_schedule_config(
            provider, actor_account_id=account_id, **changes
        )

    async def get_status(self, account_id: Optional[str] = None) -> dict[str, Any]:
        """Snapshot of timers, schedules, history, metrics and connections."""
        configs = await self.get_schedule_configs()
        upcoming = [c.next_run for c in configs if c.enabled and c.next_run]

        connections = []
        for provider in self.executors:
            integration = (
                await self.storage.get_integration(account_id, provider) if account_id else None
            )
            state = await self.audit.connection_state(integration)
            connections.append(
                {
                    "provider": provider.value,
                    "state": state.value,
                    "last_sync_at": integration.last_sync_at.isoformat()
                    if integration and integration.last_sync_at
                    else None,
                }
            )

        history = await self.audit.history(account_id=account_id, limit=20)
        metrics = await self.audit.performance_metrics(account_id=account_id, now=self.clock())
        recommendations = await self.get_recommendations(account_id)

        return {
            "is_running": self._started,
            "active_timers": [p.value for p in self._tasks],
            "running_providers": [p.value for p in self._running],
            "next_scheduled_sync": min(upcoming).isoformat() if upcoming else None,
            "schedules": [c.model_dump(mode="json") for c in configs],
            "connections": connections,
            "sync_history": [e.model_dump(mode="json") for e in history],
            "performance_metrics": metrics.model_dump(mode="json"),
            "recommendations": [r.model_dump(mode="json") for r in recommendations],
        }
