"""
Sync audit log.

Thin layer over the storage sync log that builds entries consistently and
derives the read-side views: run history, performance metrics and the
connection state shown next to each integration.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from syncengine.models.enums import (
    ConnectionState,
    Provider,
    SyncDirection,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from syncengine.models.integration import Integration
from syncengine.models.sync import PerformanceMetrics, SyncLogEntry, SyncRunResult
from syncengine.storage.base import StorageBackend

logger = structlog.get_logger(__name__)

# Error codes that only a fresh OAuth consent can fix
REAUTHORIZATION_CODES = {"token_refresh_failed", "no_access_token", "oauth_failed"}


class SyncAuditLog:
    """Append-only record of sync activity per account and provider."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    async def record(
        self,
        account_id: str,
        provider: Provider,
        operation: SyncOperation,
        status: SyncStatus,
        entity_type: Optional[SyncEntityType] = None,
        entity_id: Optional[str] = None,
        external_id: Optional[str] = None,
        direction: SyncDirection = SyncDirection.INBOUND,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        error: Optional[BaseException] = None,
    ) -> SyncLogEntry:
        """
        Append one entry for a single record.

        Args:
            error: Failure to record; its ``code`` attribute becomes error_code
        """
        entry = SyncLogEntry(
            account_id=account_id,
            provider=provider,
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            external_id=external_id,
            status=status,
            direction=direction,
            trigger=trigger,
            error_message=str(error) if error else None,
            error_code=error_code(error) if error else None,
        )
        await self.storage.append_sync_log(entry)
        return entry

    async def record_run(
        self,
        result: SyncRunResult,
        error: Optional[BaseException] = None,
    ) -> SyncLogEntry:
        """
        Append the summary entry of a full sync run.

        A run that finished with per-record failures is still a successful
        run; its failures are counted in records_failed. Only a run aborted
        by ``error`` gets status error.
        """
        entry = SyncLogEntry(
            account_id=result.account_id,
            provider=result.provider,
            operation=SyncOperation.PULL,
            status=SyncStatus.ERROR if error else SyncStatus.SUCCESS,
            direction=SyncDirection.INBOUND,
            trigger=result.trigger,
            error_message=str(error) if error else None,
            error_code=error_code(error) if error else None,
            records_processed=result.records_processed,
            records_failed=result.records_failed,
            duration_ms=result.duration_ms,
        )
        await self.storage.append_sync_log(entry)
        logger.info(
            "sync_run_recorded",
            account_id=result.account_id,
            run_id=result.run_id,
            status=entry.status.value,
            records_processed=entry.records_processed,
            records_failed=entry.records_failed,
        )
        return entry

    async def history(
        self,
        account_id: Optional[str] = None,
        provider: Optional[Provider] = None,
        since: Optional[datetime] = None,
        run_summaries_only: bool = False,
        limit: int = 20,
    ) -> list[SyncLogEntry]:
        return await self.storage.read_sync_logs(
            account_id=account_id,
            provider=provider,
            since=since,
            run_summaries_only=run_summaries_only,
            limit=limit,
        )

    async def performance_metrics(
        self,
        account_id: Optional[str] = None,
        provider: Optional[Provider] = None,
        now: Optional[datetime] = None,
    ) -> PerformanceMetrics:
        """Success rate, average duration and weekly volume over run summaries."""
        now = now or datetime.utcnow()
        runs = await self.history(
            account_id=account_id,
            provider=provider,
            run_summaries_only=True,
            limit=1000,
        )
        if not runs:
            return PerformanceMetrics()

        succeeded = sum(1 for r in runs if r.status == SyncStatus.SUCCESS)
        durations = [r.duration_ms for r in runs if r.duration_ms is not None]
        week_ago = now - timedelta(days=7)

        return PerformanceMetrics(
            total_syncs=len(runs),
            success_rate=succeeded / len(runs),
            avg_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            last_week_syncs=sum(1 for r in runs if r.created_at >= week_ago),
        )

    async def connection_state(self, integration: Optional[Integration]) -> ConnectionState:
        """
        Derive the connection state of an integration.

        not_connected when there is no usable row; needs_reauthorization
        when the most recent run failed on credentials; connected otherwise.
        """
        if integration is None or not integration.is_connected:
            return ConnectionState.NOT_CONNECTED

        latest = await self.history(
            account_id=integration.account_id,
            provider=integration.provider,
            run_summaries_only=True,
            limit=1,
        )
        if (
            latest
            and latest[0].status == SyncStatus.ERROR
            and latest[0].error_code in REAUTHORIZATION_CODES
        ):
            return ConnectionState.NEEDS_REAUTHORIZATION
        return ConnectionState.CONNECTED


def error_code(error: BaseException) -> str:
    """Machine readable code of an exception, falling back to its class name."""
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(error).__name__
