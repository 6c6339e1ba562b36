"""
Pydantic v2 data models for the integration sync engine.

Model Organization:
    - enums: Enumeration types shared across modules
    - integration: Provider connections and external id mappings
    - entities: Local business records (customers, products, invoices)
    - sync: Audit log entries, run results, schedules and recommendations
"""

from .entities import ActivityLog, Customer, Invoice, InvoiceItem, Product
from .enums import (
    ConnectionState,
    InvoiceStatus,
    ProductType,
    Provider,
    RecommendationKind,
    SchedulePriority,
    SyncDirection,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from .integration import ExternalMapping, Integration
from .sync import (
    EntitySyncCounts,
    PerformanceMetrics,
    ScheduleConfig,
    ScheduleConfigUpdate,
    ScheduleCycleResult,
    SyncLogEntry,
    SyncRecommendation,
    SyncRunResult,
)

__all__ = [
    # Enumerations
    "ConnectionState",
    "InvoiceStatus",
    "ProductType",
    "Provider",
    "RecommendationKind",
    "SchedulePriority",
    "SyncDirection",
    "SyncEntityType",
    "SyncOperation",
    "SyncStatus",
    "SyncTrigger",
    # Connections
    "ExternalMapping",
    "Integration",
    # Business records
    "ActivityLog",
    "Customer",
    "Invoice",
    "InvoiceItem",
    "Product",
    # Sync
    "EntitySyncCounts",
    "PerformanceMetrics",
    "ScheduleConfig",
    "ScheduleConfigUpdate",
    "ScheduleCycleResult",
    "SyncLogEntry",
    "SyncRecommendation",
    "SyncRunResult",
]
