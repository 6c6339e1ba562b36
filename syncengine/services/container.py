"""
Wiring of the sync components.

One SyncServices instance is built per application and stored on
``app.state.services``; routers receive it through ``get_services``.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request

from syncengine.config import Settings, get_settings
from syncengine.connectors.provider_client import ProviderClient
from syncengine.connectors.qbo_client import QBOClient
from syncengine.connectors.token_manager import TokenManager
from syncengine.connectors.webhook_handler import WebhookHandler
from syncengine.storage import get_storage
from syncengine.storage.base import StorageBackend
from syncengine.sync.audit import SyncAuditLog
from syncengine.sync.executor import SyncExecutor
from syncengine.sync.scheduler import ScheduleController

logger = structlog.get_logger(__name__)


@dataclass
class SyncServices:
    settings: Settings
    storage: StorageBackend
    qbo_client: QBOClient
    token_manager: TokenManager
    provider_client: ProviderClient
    audit: SyncAuditLog
    executor: SyncExecutor
    scheduler: ScheduleController
    webhook_handler: WebhookHandler

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.qbo_client.aclose()


def build_services(
    settings: Optional[Settings] = None,
    storage: Optional[StorageBackend] = None,
    qbo_client: Optional[QBOClient] = None,
) -> SyncServices:
    """
    Build the component graph.

    Args:
        settings: Application settings (defaults to get_settings())
        storage: Storage backend (defaults to get_storage())
        qbo_client: QuickBooks client, e.g. a test double
    """
    settings = settings or get_settings()
    storage = storage or get_storage()
    qbo_client = qbo_client or QBOClient(settings=settings)

    token_manager = TokenManager(storage, qbo_client)
    provider_client = ProviderClient(token_manager, qbo_client)
    audit = SyncAuditLog(storage)
    executor = SyncExecutor(storage, provider_client, token_manager, audit, settings=settings)
    scheduler = ScheduleController(storage, executor, audit, settings=settings)
    webhook_handler = WebhookHandler(
        settings.qbo_webhook_verifier,
        storage,
        executor,
        token_manager,
        dedup_window=settings.webhook_dedup_window,
    )

    logger.info("sync_services_built", storage=type(storage).__name__)
    return SyncServices(
        settings=settings,
        storage=storage,
        qbo_client=qbo_client,
        token_manager=token_manager,
        provider_client=provider_client,
        audit=audit,
        executor=executor,
        scheduler=scheduler,
        webhook_handler=webhook_handler,
    )


def get_services(request: Request) -> SyncServices:
    """FastAPI dependency returning the application's SyncServices."""
    return request.app.state.services
