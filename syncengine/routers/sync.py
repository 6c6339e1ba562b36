"""
Manual sync router: full runs, single-record pushes and run history.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from syncengine.auth.dependencies import get_current_account_id
from syncengine.models.enums import Provider, SyncEntityType, SyncTrigger
from syncengine.services import SyncServices, get_services
from syncengine.utils.logging import get_logger

from .errors import SYNC_ERRORS, http_error

logger = get_logger(__name__)
router = APIRouter()


def _require_supported(provider: Provider, services: SyncServices) -> None:
    if provider != services.executor.provider:
        raise HTTPException(
            status_code=400, detail=f"Sync is not available for {provider.value}"
        )


@router.get("/history")
async def get_sync_history(
    provider: Optional[Provider] = None,
    limit: int = Query(default=50, ge=1, le=500),
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Audit entries of the account, newest first."""
    entries = await services.audit.history(account_id=account_id, provider=provider, limit=limit)
    return {"success": True, "data": [e.model_dump(mode="json") for e in entries]}


@router.post("/{provider}/run")
async def run_sync(
    provider: Provider,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """
    Full sync of customers, items and invoices.

    409 while a sync for the account is running or when the integration is
    missing or needs re-authorization.
    """
    _require_supported(provider, services)
    logger.info("manual_sync_requested", account_id=account_id, provider=provider.value)

    try:
        result = await services.executor.full_sync(account_id, trigger=SyncTrigger.MANUAL)
    except SYNC_ERRORS as e:
        raise http_error(e) from e

    return {"success": True, "data": result.model_dump(mode="json")}


@router.post("/{provider}/entities/{entity_type}/{internal_id}/push")
async def push_entity(
    provider: Provider,
    entity_type: SyncEntityType,
    internal_id: str,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Create one local record on the provider and return its mapping."""
    _require_supported(provider, services)

    try:
        mapping = await services.executor.push_entity(account_id, entity_type, internal_id)
    except SYNC_ERRORS as e:
        raise http_error(e) from e

    return {"success": True, "data": mapping.model_dump(mode="json")}
