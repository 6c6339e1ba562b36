"""
DuckDB storage implementation for the integration sync engine.

Key features:
- Thread-local connections; every query runs in a worker thread via
  asyncio.to_thread so the event loop never blocks on the database
- Idempotent schema creation on first use
- Typed tables for integrations, mappings, sync log, schedules and activity
- Business records kept as validated JSON documents keyed by entity type
"""

import asyncio
import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import duckdb
import structlog

from syncengine.models.entities import ActivityLog
from syncengine.models.enums import Provider, SyncEntityType
from syncengine.models.integration import ExternalMapping, Integration
from syncengine.models.sync import ScheduleConfig, SyncLogEntry

from .base import ENTITY_MODELS, BusinessRecord, StorageBackend, StorageError

logger = structlog.get_logger(__name__)

_TABLES = (
    "integrations",
    "external_mappings",
    "business_records",
    "sync_logs",
    "schedule_configs",
    "activity_logs",
)

_INTEGRATION_COLUMNS = (
    "integration_id, account_id, provider, access_token, refresh_token, realm_id, "
    "company_id, is_active, last_sync_at, settings, created_at, updated_at"
)

_MAPPING_COLUMNS = (
    "mapping_id, account_id, provider, entity_type, internal_id, external_id, "
    "last_synced_at, sync_token"
)

_SYNC_LOG_COLUMNS = (
    "log_id, account_id, provider, operation, entity_type, entity_id, external_id, "
    "status, direction, trigger, error_message, error_code, records_processed, "
    "records_failed, duration_ms, created_at"
)

_SCHEDULE_COLUMNS = (
    "provider, enabled, interval_minutes, business_hours_only, retry_attempts, "
    "priority, last_run, next_run"
)


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/syncengine.duckdb"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except Exception as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        yield self._local.connection

    def _initialize_schema(self) -> None:
        """
        Create all tables and indexes. Idempotent.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS integrations (
                            integration_id VARCHAR PRIMARY KEY,
                            account_id VARCHAR NOT NULL,
                            provider VARCHAR NOT NULL,
                            access_token VARCHAR,
                            refresh_token VARCHAR,
                            realm_id VARCHAR,
                            company_id VARCHAR,
                            is_active BOOLEAN NOT NULL,
                            last_sync_at TIMESTAMP,
                            settings JSON,
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            UNIQUE (account_id, provider)
                        )
                        """
                    )
                    conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_integrations_realm ON integrations(realm_id)"
                    )

                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS external_mappings (
                            mapping_id VARCHAR PRIMARY KEY,
                            account_id VARCHAR NOT NULL,
                            provider VARCHAR NOT NULL,
                            entity_type VARCHAR NOT NULL,
                            internal_id VARCHAR NOT NULL,
                            external_id VARCHAR NOT NULL,
                            last_synced_at TIMESTAMP NOT NULL,
                            sync_token VARCHAR
                        )
                        """
                    )
                    conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_mappings_internal "
                        "ON external_mappings(account_id, provider, entity_type, internal_id)"
                    )
                    conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_mappings_external "
                        "ON external_mappings(account_id, provider, entity_type, external_id)"
                    )

                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS business_records (
                            entity_type VARCHAR NOT NULL,
                            account_id VARCHAR NOT NULL,
                            record_id VARCHAR NOT NULL,
                            payload JSON NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (entity_type, account_id, record_id)
                        )
                        """
                    )

                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS sync_logs (
                            log_id VARCHAR PRIMARY KEY,
                            account_id VARCHAR NOT NULL,
                            provider VARCHAR NOT NULL,
                            operation VARCHAR NOT NULL,
                            entity_type VARCHAR,
                            entity_id VARCHAR,
                            external_id VARCHAR,
                            status VARCHAR NOT NULL,
                            direction VARCHAR NOT NULL,
                            trigger VARCHAR NOT NULL,
                            error_message VARCHAR,
                            error_code VARCHAR,
                            records_processed INTEGER,
                            records_failed INTEGER,
                            duration_ms BIGINT,
                            created_at TIMESTAMP NOT NULL,
                            seq BIGINT NOT NULL
                        )
                        """
                    )
                    conn.execute(
                        "CREATE SEQUENCE IF NOT EXISTS sync_log_seq START 1"
                    )
                    conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_sync_logs_account "
                        "ON sync_logs(account_id, provider, created_at)"
                    )

                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS schedule_configs (
                            provider VARCHAR PRIMARY KEY,
                            enabled BOOLEAN NOT NULL,
                            interval_minutes INTEGER NOT NULL,
                            business_hours_only BOOLEAN NOT NULL,
                            retry_attempts INTEGER NOT NULL,
                            priority VARCHAR NOT NULL,
                            last_run TIMESTAMP,
                            next_run TIMESTAMP
                        )
                        """
                    )

                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS activity_logs (
                            activity_id VARCHAR PRIMARY KEY,
                            account_id VARCHAR NOT NULL,
                            activity_type VARCHAR NOT NULL,
                            description VARCHAR,
                            metadata JSON,
                            created_at TIMESTAMP NOT NULL
                        )
                        """
                    )

                    logger.info("duckdb_schema_initialized", tables=len(_TABLES))
                    self._initialized = True

            except Exception as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """
        Truncate all tables. For testing only, active when TESTING=true.
        """
        if not os.environ.get("TESTING"):
            return
        with self._get_connection() as conn:
            for table in _TABLES:
                conn.execute(f"DELETE FROM {table}")

    def _transaction(self, fn: Callable[[Any], Any]) -> Any:
        """Run fn(conn) inside one transaction on this thread's connection."""
        with self._get_connection() as conn:
            conn.begin()
            try:
                result = fn(conn)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return result

    async def _run(self, operation: str, fn: Callable[[Any], Any], **context) -> Any:
        """
        Execute fn(conn) in a worker thread, wrapping failures in StorageError.

        Args:
            operation: snake_case name used for the failure log event
            fn: Callable receiving the connection
            **context: Extra fields for the failure log event
        """
        try:
            return await asyncio.to_thread(self._transaction, fn)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"{operation}_failed", error=str(e), **context)
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {e}") from e

    # =========================================================================
    # Integrations
    # =========================================================================

    @staticmethod
    def _row_to_integration(row) -> Integration:
        return Integration(
            integration_id=row[0],
            account_id=row[1],
            provider=row[2],
            access_token=row[3],
            refresh_token=row[4],
            realm_id=row[5],
            company_id=row[6],
            is_active=row[7],
            last_sync_at=row[8],
            settings=json.loads(row[9]) if row[9] else {},
            created_at=row[10],
            updated_at=row[11],
        )

    async def get_integration(self, account_id, provider):
        def query(conn):
            return conn.execute(
                f"SELECT {_INTEGRATION_COLUMNS} FROM integrations "
                "WHERE account_id = ? AND provider = ?",
                [account_id, Provider(provider).value],
            ).fetchone()

        row = await self._run("read_integration", query, account_id=account_id)
        return self._row_to_integration(row) if row else None

    async def get_integration_by_realm(self, realm_id, provider=Provider.QUICKBOOKS):
        def query(conn):
            return conn.execute(
                f"SELECT {_INTEGRATION_COLUMNS} FROM integrations "
                "WHERE realm_id = ? AND provider = ? AND is_active "
                "ORDER BY updated_at DESC LIMIT 1",
                [realm_id, Provider(provider).value],
            ).fetchone()

        row = await self._run("read_integration_by_realm", query, realm_id=realm_id)
        return self._row_to_integration(row) if row else None

    async def list_integrations(self, provider=None, account_id=None, active_only=False):
        sql = f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE 1=1"
        params: list = []
        if provider is not None:
            sql += " AND provider = ?"
            params.append(Provider(provider).value)
        if account_id is not None:
            sql += " AND account_id = ?"
            params.append(account_id)
        if active_only:
            sql += " AND is_active"
        sql += " ORDER BY created_at"

        rows = await self._run(
            "list_integrations", lambda conn: conn.execute(sql, params).fetchall()
        )
        return [self._row_to_integration(r) for r in rows]

    async def upsert_integration(self, integration: Integration) -> Integration:
        now = datetime.utcnow()

        def upsert(conn):
            existing = conn.execute(
                "SELECT integration_id, created_at FROM integrations "
                "WHERE account_id = ? AND provider = ?",
                [integration.account_id, integration.provider.value],
            ).fetchone()
            stored = integration.model_copy(update={"updated_at": now})
            if existing:
                stored = stored.model_copy(
                    update={"integration_id": existing[0], "created_at": existing[1]}
                )
                conn.execute(
                    """
                    UPDATE integrations SET access_token = ?, refresh_token = ?,
                        realm_id = ?, company_id = ?, is_active = ?, last_sync_at = ?,
                        settings = ?, updated_at = ?
                    WHERE integration_id = ?
                    """,
                    [
                        stored.access_token,
                        stored.refresh_token,
                        stored.realm_id,
                        stored.company_id,
                        stored.is_active,
                        stored.last_sync_at,
                        json.dumps(stored.settings),
                        stored.updated_at,
                        stored.integration_id,
                    ],
                )
            else:
                conn.execute(
                    f"INSERT INTO integrations ({_INTEGRATION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        stored.integration_id,
                        stored.account_id,
                        stored.provider.value,
                        stored.access_token,
                        stored.refresh_token,
                        stored.realm_id,
                        stored.company_id,
                        stored.is_active,
                        stored.last_sync_at,
                        json.dumps(stored.settings),
                        stored.created_at,
                        stored.updated_at,
                    ],
                )
            return stored

        stored = await self._run(
            "upsert_integration", upsert, account_id=integration.account_id
        )
        logger.debug(
            "integration_upserted",
            account_id=stored.account_id,
            provider=stored.provider.value,
            is_active=stored.is_active,
        )
        return stored

    # =========================================================================
    # External Mappings
    # =========================================================================

    @staticmethod
    def _row_to_mapping(row) -> ExternalMapping:
        return ExternalMapping(
            mapping_id=row[0],
            account_id=row[1],
            provider=row[2],
            entity_type=row[3],
            internal_id=row[4],
            external_id=row[5],
            last_synced_at=row[6],
            sync_token=row[7],
        )

    async def _get_mapping(self, column, account_id, provider, entity_type, value):
        def query(conn):
            return conn.execute(
                f"SELECT {_MAPPING_COLUMNS} FROM external_mappings "
                f"WHERE account_id = ? AND provider = ? AND entity_type = ? AND {column} = ?",
                [
                    account_id,
                    Provider(provider).value,
                    SyncEntityType(entity_type).value,
                    value,
                ],
            ).fetchone()

        row = await self._run("read_mapping", query, account_id=account_id)
        return self._row_to_mapping(row) if row else None

    async def get_mapping_by_internal(self, account_id, provider, entity_type, internal_id):
        return await self._get_mapping("internal_id", account_id, provider, entity_type, internal_id)

    async def get_mapping_by_external(self, account_id, provider, entity_type, external_id):
        return await self._get_mapping("external_id", account_id, provider, entity_type, external_id)

    async def upsert_mapping(self, mapping: ExternalMapping) -> ExternalMapping:
        def upsert(conn):
            conn.execute(
                """
                DELETE FROM external_mappings
                WHERE account_id = ? AND provider = ? AND entity_type = ?
                  AND (internal_id = ? OR external_id = ?)
                """,
                [
                    mapping.account_id,
                    mapping.provider.value,
                    mapping.entity_type.value,
                    mapping.internal_id,
                    mapping.external_id,
                ],
            )
            conn.execute(
                f"INSERT INTO external_mappings ({_MAPPING_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    mapping.mapping_id,
                    mapping.account_id,
                    mapping.provider.value,
                    mapping.entity_type.value,
                    mapping.internal_id,
                    mapping.external_id,
                    mapping.last_synced_at,
                    mapping.sync_token,
                ],
            )

        await self._run("upsert_mapping", upsert, account_id=mapping.account_id)
        return mapping

    async def list_mappings(self, account_id, provider, entity_type=None):
        sql = (
            f"SELECT {_MAPPING_COLUMNS} FROM external_mappings "
            "WHERE account_id = ? AND provider = ?"
        )
        params = [account_id, Provider(provider).value]
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(SyncEntityType(entity_type).value)

        rows = await self._run(
            "list_mappings", lambda conn: conn.execute(sql, params).fetchall()
        )
        return [self._row_to_mapping(r) for r in rows]

    # =========================================================================
    # Business Records
    # =========================================================================

    async def save_entity(self, entity_type, record: BusinessRecord) -> BusinessRecord:
        entity_type = SyncEntityType(entity_type)

        def upsert(conn):
            conn.execute(
                "DELETE FROM business_records "
                "WHERE entity_type = ? AND account_id = ? AND record_id = ?",
                [entity_type.value, record.account_id, record.id],
            )
            conn.execute(
                "INSERT INTO business_records VALUES (?, ?, ?, ?, ?)",
                [
                    entity_type.value,
                    record.account_id,
                    record.id,
                    record.model_dump_json(),
                    datetime.utcnow(),
                ],
            )

        await self._run("save_entity", upsert, entity_type=entity_type.value)
        return record

    async def get_entity(self, entity_type, account_id, entity_id):
        entity_type = SyncEntityType(entity_type)

        def query(conn):
            return conn.execute(
                "SELECT payload FROM business_records "
                "WHERE entity_type = ? AND account_id = ? AND record_id = ?",
                [entity_type.value, account_id, entity_id],
            ).fetchone()

        row = await self._run("read_entity", query, entity_type=entity_type.value)
        return ENTITY_MODELS[entity_type].model_validate_json(row[0]) if row else None

    async def list_entities(self, entity_type, account_id):
        entity_type = SyncEntityType(entity_type)

        def query(conn):
            return conn.execute(
                "SELECT payload FROM business_records "
                "WHERE entity_type = ? AND account_id = ? ORDER BY updated_at",
                [entity_type.value, account_id],
            ).fetchall()

        rows = await self._run("list_entities", query, entity_type=entity_type.value)
        model = ENTITY_MODELS[entity_type]
        return [model.model_validate_json(r[0]) for r in rows]

    # =========================================================================
    # Sync Log
    # =========================================================================

    async def append_sync_log(self, entry: SyncLogEntry) -> str:
        def insert(conn):
            conn.execute(
                f"INSERT INTO sync_logs ({_SYNC_LOG_COLUMNS}, seq) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, nextval('sync_log_seq'))",
                [
                    entry.log_id,
                    entry.account_id,
                    entry.provider.value,
                    entry.operation.value,
                    entry.entity_type.value if entry.entity_type else None,
                    entry.entity_id,
                    entry.external_id,
                    entry.status.value,
                    entry.direction.value,
                    entry.trigger.value,
                    entry.error_message,
                    entry.error_code,
                    entry.records_processed,
                    entry.records_failed,
                    entry.duration_ms,
                    entry.created_at,
                ],
            )

        await self._run("append_sync_log", insert, account_id=entry.account_id)
        return entry.log_id

    async def read_sync_logs(
        self,
        account_id=None,
        provider=None,
        since=None,
        run_summaries_only=False,
        limit=100,
    ) -> list[SyncLogEntry]:
        sql = f"SELECT {_SYNC_LOG_COLUMNS} FROM sync_logs WHERE 1=1"
        params: list = []
        if account_id is not None:
            sql += " AND account_id = ?"
            params.append(account_id)
        if provider is not None:
            sql += " AND provider = ?"
            params.append(Provider(provider).value)
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since)
        if run_summaries_only:
            sql += " AND entity_type IS NULL"
        sql += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(limit)

        rows = await self._run(
            "read_sync_logs", lambda conn: conn.execute(sql, params).fetchall()
        )
        return [
            SyncLogEntry(
                log_id=r[0],
                account_id=r[1],
                provider=r[2],
                operation=r[3],
                entity_type=r[4],
                entity_id=r[5],
                external_id=r[6],
                status=r[7],
                direction=r[8],
                trigger=r[9],
                error_message=r[10],
                error_code=r[11],
                records_processed=r[12],
                records_failed=r[13],
                duration_ms=r[14],
                created_at=r[15],
            )
            for r in rows
        ]

    # =========================================================================
    # Schedules
    # =========================================================================

    @staticmethod
    def _row_to_schedule(row) -> ScheduleConfig:
        return ScheduleConfig(
            provider=row[0],
            enabled=row[1],
            interval_minutes=row[2],
            business_hours_only=row[3],
            retry_attempts=row[4],
            priority=row[5],
            last_run=row[6],
            next_run=row[7],
        )

    async def get_schedule_config(self, provider: Provider) -> Optional[ScheduleConfig]:
        def query(conn):
            return conn.execute(
                f"SELECT {_SCHEDULE_COLUMNS} FROM schedule_configs WHERE provider = ?",
                [Provider(provider).value],
            ).fetchone()

        row = await self._run("read_schedule_config", query)
        return self._row_to_schedule(row) if row else None

    async def list_schedule_configs(self) -> list[ScheduleConfig]:
        rows = await self._run(
            "list_schedule_configs",
            lambda conn: conn.execute(
                f"SELECT {_SCHEDULE_COLUMNS} FROM schedule_configs ORDER BY provider"
            ).fetchall(),
        )
        return [self._row_to_schedule(r) for r in rows]

    async def save_schedule_config(self, config: ScheduleConfig) -> ScheduleConfig:
        def upsert(conn):
            conn.execute(
                "DELETE FROM schedule_configs WHERE provider = ?", [config.provider.value]
            )
            conn.execute(
                f"INSERT INTO schedule_configs ({_SCHEDULE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    config.provider.value,
                    config.enabled,
                    config.interval_minutes,
                    config.business_hours_only,
                    config.retry_attempts,
                    config.priority.value,
                    config.last_run,
                    config.next_run,
                ],
            )

        await self._run("save_schedule_config", upsert, provider=config.provider.value)
        return config

    # =========================================================================
    # Activity Feed
    # =========================================================================

    async def write_activity(self, activity: ActivityLog) -> str:
        def insert(conn):
            conn.execute(
                "INSERT INTO activity_logs VALUES (?, ?, ?, ?, ?, ?)",
                [
                    activity.activity_id,
                    activity.account_id,
                    activity.activity_type,
                    activity.description,
                    json.dumps(activity.metadata, default=str),
                    activity.created_at,
                ],
            )

        await self._run("write_activity", insert, account_id=activity.account_id)
        return activity.activity_id

    async def read_activities(self, account_id, activity_type=None, limit=100):
        sql = (
            "SELECT activity_id, account_id, activity_type, description, metadata, created_at "
            "FROM activity_logs WHERE account_id = ?"
        )
        params: list = [account_id]
        if activity_type is not None:
            sql += " AND activity_type = ?"
            params.append(activity_type)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        rows = await self._run(
            "read_activities", lambda conn: conn.execute(sql, params).fetchall()
        )
        return [
            ActivityLog(
                activity_id=r[0],
                account_id=r[1],
                activity_type=r[2],
                description=r[3] or "",
                metadata=json.loads(r[4]) if r[4] else {},
                created_at=r[5],
            )
            for r in rows
        ]
