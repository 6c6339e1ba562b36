"""
Sync orchestration: executor, scheduling, recommendations and the audit log.

Control flow: trigger (manual call, webhook, schedule timer) -> SyncExecutor
-> TokenManager -> ProviderClient -> storage -> SyncAuditLog.
"""

from .audit import SyncAuditLog
from .executor import LocalEntityNotFound, MappingMissing, SyncAlreadyRunning, SyncExecutor
from .recommendations import RecommendationEngine
from .scheduler import RecommendationNotFound, ScheduleController

__all__ = [
    "LocalEntityNotFound",
    "MappingMissing",
    "RecommendationEngine",
    "RecommendationNotFound",
    "ScheduleController",
    "SyncAlreadyRunning",
    "SyncAuditLog",
    "SyncExecutor",
]
