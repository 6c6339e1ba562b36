"""
Enumeration types for the integration sync engine.

All enums inherit from str so they serialize to plain JSON strings and can be
stored directly in DuckDB VARCHAR columns.
"""

from enum import Enum


class Provider(str, Enum):
    """External systems an account can connect to."""

    QUICKBOOKS = "quickbooks"
    GOOGLE_CALENDAR = "google_calendar"


class SyncEntityType(str, Enum):
    """
    Business entities that are mirrored between local records and the provider.

    The declaration order is the dependency order of a full sync: invoices
    reference customers and items, so those must be synced first.
    """

    CUSTOMER = "customer"
    ITEM = "item"
    INVOICE = "invoice"


class SyncOperation(str, Enum):
    """What kind of sync produced a log entry."""

    PUSH = "push"
    PULL = "pull"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    """Outcome recorded on a sync log entry."""

    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class SyncDirection(str, Enum):
    """Direction of data flow relative to the local records."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"


class SyncTrigger(str, Enum):
    """What started a sync run."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class SchedulePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConnectionState(str, Enum):
    """Connection health of an integration as derived from its sync history."""

    CONNECTED = "connected"
    NEEDS_REAUTHORIZATION = "needs_reauthorization"
    NOT_CONNECTED = "not_connected"


class RecommendationKind(str, Enum):
    """Categories of scheduling advice."""

    INTERVAL = "interval"
    PERFORMANCE = "performance"
    TIMING = "timing"


class ProductType(str, Enum):
    PRODUCT = "product"
    SERVICE = "service"


class InvoiceStatus(str, Enum):
    """Local invoice lifecycle."""

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
