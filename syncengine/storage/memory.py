"""
In-memory storage backend.

Selected with DB_TYPE=memory for local development and used as the storage
double in tests. Semantics match DuckDBStorage; nothing survives a restart.
"""

from datetime import datetime
from typing import Optional

import structlog

from syncengine.models.entities import ActivityLog
from syncengine.models.enums import Provider, SyncEntityType
from syncengine.models.integration import ExternalMapping, Integration
from syncengine.models.sync import ScheduleConfig, SyncLogEntry

from .base import BusinessRecord, StorageBackend

logger = structlog.get_logger(__name__)


class InMemoryStorage(StorageBackend):
    """Dictionary-backed implementation of StorageBackend."""

    def __init__(self) -> None:
        self._integrations: dict[tuple[str, Provider], Integration] = {}
        self._mappings: list[ExternalMapping] = []
        self._entities: dict[tuple[SyncEntityType, str, str], BusinessRecord] = {}
        self._sync_logs: list[SyncLogEntry] = []
        self._schedules: dict[Provider, ScheduleConfig] = {}
        self._activities: list[ActivityLog] = []
        logger.info("memory_storage_initialized")

    # -- Integrations ----------------------------------------------------------

    async def get_integration(self, account_id, provider):
        row = self._integrations.get((account_id, Provider(provider)))
        return row.model_copy(deep=True) if row else None

    async def get_integration_by_realm(self, realm_id, provider=Provider.QUICKBOOKS):
        for row in self._integrations.values():
            if row.provider == provider and row.realm_id == realm_id and row.is_active:
                return row.model_copy(deep=True)
        return None

    async def list_integrations(self, provider=None, account_id=None, active_only=False):
        rows = []
        for row in self._integrations.values():
            if provider is not None and row.provider != provider:
                continue
            if account_id is not None and row.account_id != account_id:
                continue
            if active_only and not row.is_active:
                continue
            rows.append(row.model_copy(deep=True))
        return rows

    async def upsert_integration(self, integration: Integration) -> Integration:
        key = (integration.account_id, integration.provider)
        existing = self._integrations.get(key)
        updates = {"updated_at": datetime.utcnow()}
        if existing is not None:
            updates["integration_id"] = existing.integration_id
            updates["created_at"] = existing.created_at
        stored = integration.model_copy(update=updates, deep=True)
        self._integrations[key] = stored
        return stored.model_copy(deep=True)

    # -- Mappings --------------------------------------------------------------

    def _same_scope(self, m: ExternalMapping, account_id, provider, entity_type) -> bool:
        return (
            m.account_id == account_id
            and m.provider == provider
            and m.entity_type == entity_type
        )

    async def get_mapping_by_internal(self, account_id, provider, entity_type, internal_id):
        for m in self._mappings:
            if self._same_scope(m, account_id, provider, entity_type) and m.internal_id == internal_id:
                return m.model_copy()
        return None

    async def get_mapping_by_external(self, account_id, provider, entity_type, external_id):
        for m in self._mappings:
            if self._same_scope(m, account_id, provider, entity_type) and m.external_id == external_id:
                return m.model_copy()
        return None

    async def upsert_mapping(self, mapping: ExternalMapping) -> ExternalMapping:
        self._mappings = [
            m
            for m in self._mappings
            if not (
                self._same_scope(m, mapping.account_id, mapping.provider, mapping.entity_type)
                and (m.internal_id == mapping.internal_id or m.external_id == mapping.external_id)
            )
        ]
        self._mappings.append(mapping.model_copy())
        return mapping

    async def list_mappings(self, account_id, provider, entity_type=None):
        return [
            m.model_copy()
            for m in self._mappings
            if m.account_id == account_id
            and m.provider == provider
            and (entity_type is None or m.entity_type == entity_type)
        ]

    # -- Business records ------------------------------------------------------

    async def save_entity(self, entity_type, record):
        self._entities[(SyncEntityType(entity_type), record.account_id, record.id)] = (
            record.model_copy(deep=True)
        )
        return record

    async def get_entity(self, entity_type, account_id, entity_id):
        record = self._entities.get((SyncEntityType(entity_type), account_id, entity_id))
        return record.model_copy(deep=True) if record else None

    async def list_entities(self, entity_type, account_id):
        entity_type = SyncEntityType(entity_type)
        return [
            record.model_copy(deep=True)
            for (etype, acct, _), record in self._entities.items()
            if etype == entity_type and acct == account_id
        ]

    # -- Sync log --------------------------------------------------------------

    async def append_sync_log(self, entry: SyncLogEntry) -> str:
        self._sync_logs.append(entry)
        return entry.log_id

    async def read_sync_logs(
        self,
        account_id=None,
        provider=None,
        since=None,
        run_summaries_only=False,
        limit=100,
    ) -> list[SyncLogEntry]:
        entries = [
            e
            for e in self._sync_logs
            if (account_id is None or e.account_id == account_id)
            and (provider is None or e.provider == provider)
            and (since is None or e.created_at >= since)
            and (not run_summaries_only or e.is_run_summary)
        ]
        # Stable sort keeps insertion order for equal timestamps, newest first
        entries = list(reversed(entries))
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    # -- Schedules -------------------------------------------------------------

    async def get_schedule_config(self, provider: Provider) -> Optional[ScheduleConfig]:
        config = self._schedules.get(Provider(provider))
        return config.model_copy() if config else None

    async def list_schedule_configs(self) -> list[ScheduleConfig]:
        return [c.model_copy() for c in self._schedules.values()]

    async def save_schedule_config(self, config: ScheduleConfig) -> ScheduleConfig:
        self._schedules[config.provider] = config.model_copy()
        return config

    # -- Activity --------------------------------------------------------------

    async def write_activity(self, activity: ActivityLog) -> str:
        self._activities.append(activity)
        return activity.activity_id

    async def read_activities(self, account_id, activity_type=None, limit=100):
        rows = [
            a
            for a in reversed(self._activities)
            if a.account_id == account_id
            and (activity_type is None or a.activity_type == activity_type)
        ]
        return rows[:limit]
