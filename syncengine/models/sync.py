"""
Sync run, audit and scheduling models.

SyncLogEntry is the append-only audit record. An entry with entity_type set
describes one record; an entry with entity_type None is the summary of a
whole run and carries the aggregate counters.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .enums import (
    Provider,
    RecommendationKind,
    SchedulePriority,
    SyncDirection,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)


class SyncLogEntry(BaseModel):
    """
    Immutable audit record of one sync attempt.

    Attributes:
        log_id: Unique identifier for the entry
        account_id: Account the sync ran for
        provider: Provider synced with
        operation: push, pull or webhook
        entity_type: Record type, or None for a run summary
        entity_id: Local record id, when known
        external_id: Provider record id, when known
        status: success, error or pending
        direction: inbound, outbound or bidirectional
        trigger: What started the run
        error_message: Human readable failure reason
        error_code: Machine readable failure code (exception ``code``)
        records_processed: Records handled by the run (summaries only)
        records_failed: Records that failed within the run (summaries only)
        duration_ms: Wall clock duration of the run (summaries only)
    """

    model_config = ConfigDict(frozen=True)

    log_id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    provider: Provider
    operation: SyncOperation
    entity_type: Optional[SyncEntityType] = Field(
        default=None, description="None marks a run summary entry"
    )
    entity_id: Optional[str] = None
    external_id: Optional[str] = None
    status: SyncStatus
    direction: SyncDirection = SyncDirection.INBOUND
    trigger: SyncTrigger = SyncTrigger.MANUAL
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    records_processed: Optional[int] = None
    records_failed: Optional[int] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_run_summary(self) -> bool:
        return self.entity_type is None


class ScheduleConfig(BaseModel):
    """Per-provider automatic sync schedule."""

    provider: Provider
    enabled: bool = False
    interval_minutes: int = Field(default=60, ge=1, description="Minutes between firings")
    business_hours_only: bool = Field(
        default=True, description="Skip firings outside the business-hours window"
    )
    retry_attempts: int = Field(
        default=3, ge=0, description="Immediate retries of a transient failure per firing"
    )
    priority: SchedulePriority = SchedulePriority.MEDIUM
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class ScheduleConfigUpdate(BaseModel):
    """Partial schedule change; unset fields are left untouched."""

    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = Field(default=None, ge=1)
    business_hours_only: Optional[bool] = None
    retry_attempts: Optional[int] = Field(default=None, ge=0)
    priority: Optional[SchedulePriority] = None


class EntitySyncCounts(BaseModel):
    """Counters for one entity phase of a full sync."""

    entity_type: SyncEntityType
    fetched: int = 0
    created: int = 0
    updated: int = 0
    linked: int = 0
    skipped: int = 0
    failed: int = 0


class SyncRunResult(BaseModel):
    """Outcome of a full sync run."""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    provider: Provider
    trigger: SyncTrigger
    started_at: datetime
    completed_at: Optional[datetime] = None
    phases: list[EntitySyncCounts] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)

    @computed_field
    @property
    def records_processed(self) -> int:
        return sum(p.fetched for p in self.phases)

    @computed_field
    @property
    def records_failed(self) -> int:
        return sum(p.failed for p in self.phases)

    @computed_field
    @property
    def duration_ms(self) -> int:
        end = self.completed_at or datetime.utcnow()
        return int((end - self.started_at).total_seconds() * 1000)


class PerformanceMetrics(BaseModel):
    """Aggregate figures over run summary entries."""

    total_syncs: int = 0
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    avg_duration_ms: float = 0.0
    last_week_syncs: int = 0


class SyncRecommendation(BaseModel):
    """Advisory scheduling suggestion. Never applied automatically."""

    provider: Provider
    kind: RecommendationKind
    recommended_interval: int = Field(ge=1, description="Suggested interval in minutes")
    current_interval: int = Field(ge=1)
    reason: str
    confidence: int = Field(ge=0, le=100)
    estimated_duration: float = Field(
        default=0.0, ge=0.0, description="Expected run length in minutes"
    )
    suggested_business_hours: bool = True
    insights: list[str] = Field(default_factory=list)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must be non-empty")
        return v


class ScheduleCycleResult(BaseModel):
    """What one scheduler firing did."""

    provider: Provider
    fired_at: datetime
    trigger: SyncTrigger = SyncTrigger.SCHEDULED
    skipped_reason: Optional[str] = Field(
        default=None, description="outside_business_hours, already_running or unsupported"
    )
    runs: list[SyncRunResult] = Field(default_factory=list)
    failures: list[dict[str, Any]] = Field(default_factory=list)
