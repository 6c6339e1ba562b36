"""
Abstract storage interface for the integration sync engine.

The sync engine never talks to a database directly. Everything it persists
goes through this contract so the DuckDB backend and the in-memory backend
are interchangeable:

- Integrations: one row per (account, provider), logically deleted on revoke
- External mappings: one-to-one links between local and provider records
- Business records: customers, products and invoices
- Sync log: append-only audit entries
- Schedule configs and the activity feed

All methods are coroutines. Implementations backed by blocking drivers must
move the blocking work off the event loop.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Union

from syncengine.models.entities import ActivityLog, Customer, Invoice, Product
from syncengine.models.enums import Provider, SyncEntityType
from syncengine.models.integration import ExternalMapping, Integration
from syncengine.models.sync import ScheduleConfig, SyncLogEntry

BusinessRecord = Union[Customer, Product, Invoice]

# Local model for each synced entity type
ENTITY_MODELS: dict[SyncEntityType, type] = {
    SyncEntityType.CUSTOMER: Customer,
    SyncEntityType.ITEM: Product,
    SyncEntityType.INVOICE: Invoice,
}


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    code = "storage_error"


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Implementations must guarantee:
    - upsert_integration is keyed on (account_id, provider)
    - upsert_mapping keeps internal_id and external_id unique within
      (account_id, provider, entity_type)
    - sync log entries are never updated or deleted
    - failures surface as StorageError
    """

    # =========================================================================
    # Integrations
    # =========================================================================

    @abstractmethod
    async def get_integration(
        self, account_id: str, provider: Provider
    ) -> Optional[Integration]:
        """
        Read the integration row for an account and provider.

        Returns the row whether or not it is active; callers decide what an
        inactive row means for them.
        """
        pass

    @abstractmethod
    async def get_integration_by_realm(
        self, realm_id: str, provider: Provider = Provider.QUICKBOOKS
    ) -> Optional[Integration]:
        """Find the active integration that owns a provider realm (company) id."""
        pass

    @abstractmethod
    async def list_integrations(
        self,
        provider: Optional[Provider] = None,
        account_id: Optional[str] = None,
        active_only: bool = False,
    ) -> list[Integration]:
        pass

    @abstractmethod
    async def upsert_integration(self, integration: Integration) -> Integration:
        """
        Insert or replace the integration for (account_id, provider).

        An existing row keeps its integration_id and created_at; every other
        field is taken from the argument and updated_at is refreshed.

        Returns:
            The stored integration
        """
        pass

    # =========================================================================
    # External Mappings
    # =========================================================================

    @abstractmethod
    async def get_mapping_by_internal(
        self,
        account_id: str,
        provider: Provider,
        entity_type: SyncEntityType,
        internal_id: str,
    ) -> Optional[ExternalMapping]:
        pass

    @abstractmethod
    async def get_mapping_by_external(
        self,
        account_id: str,
        provider: Provider,
        entity_type: SyncEntityType,
        external_id: str,
    ) -> Optional[ExternalMapping]:
        pass

    @abstractmethod
    async def upsert_mapping(self, mapping: ExternalMapping) -> ExternalMapping:
        """
        Store a mapping, replacing any row that shares its internal id or its
        external id within the same (account, provider, entity_type).
        """
        pass

    @abstractmethod
    async def list_mappings(
        self,
        account_id: str,
        provider: Provider,
        entity_type: Optional[SyncEntityType] = None,
    ) -> list[ExternalMapping]:
        pass

    # =========================================================================
    # Business Records
    # =========================================================================

    @abstractmethod
    async def save_entity(
        self, entity_type: SyncEntityType, record: BusinessRecord
    ) -> BusinessRecord:
        """Insert or replace a customer, product or invoice by id."""
        pass

    @abstractmethod
    async def get_entity(
        self, entity_type: SyncEntityType, account_id: str, entity_id: str
    ) -> Optional[BusinessRecord]:
        pass

    @abstractmethod
    async def list_entities(
        self, entity_type: SyncEntityType, account_id: str
    ) -> list[BusinessRecord]:
        pass

    # =========================================================================
    # Sync Log
    # =========================================================================

    @abstractmethod
    async def append_sync_log(self, entry: SyncLogEntry) -> str:
        """
        Append an audit entry.

        Returns:
            The entry's log_id
        """
        pass

    @abstractmethod
    async def read_sync_logs(
        self,
        account_id: Optional[str] = None,
        provider: Optional[Provider] = None,
        since: Optional[datetime] = None,
        run_summaries_only: bool = False,
        limit: int = 100,
    ) -> list[SyncLogEntry]:
        """Read audit entries, newest first."""
        pass

    # =========================================================================
    # Schedules
    # =========================================================================

    @abstractmethod
    async def get_schedule_config(self, provider: Provider) -> Optional[ScheduleConfig]:
        pass

    @abstractmethod
    async def list_schedule_configs(self) -> list[ScheduleConfig]:
        pass

    @abstractmethod
    async def save_schedule_config(self, config: ScheduleConfig) -> ScheduleConfig:
        pass

    # =========================================================================
    # Activity Feed
    # =========================================================================

    @abstractmethod
    async def write_activity(self, activity: ActivityLog) -> str:
        pass

    @abstractmethod
    async def read_activities(
        self,
        account_id: str,
        activity_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[ActivityLog]:
        """Read activity entries, newest first."""
        pass
