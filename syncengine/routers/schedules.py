"""
Automatic sync schedule router.

Schedules are global per provider; runs triggered here are restricted to
the calling account.
"""

from fastapi import APIRouter, Depends

from syncengine.auth.dependencies import get_current_account_id
from syncengine.models.enums import Provider, RecommendationKind
from syncengine.models.sync import ScheduleConfigUpdate
from syncengine.services import SyncServices, get_services
from syncengine.utils.logging import get_logger

from .errors import SYNC_ERRORS, http_error

logger = get_logger(__name__)
router = APIRouter()


@router.get("")
async def list_schedules(
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    configs = await services.scheduler.get_schedule_configs()
    return {"success": True, "data": [c.model_dump(mode="json") for c in configs]}


@router.get("/status")
async def get_schedule_status(
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Timers, schedules, connections, recent history, metrics and advice."""
    status = await services.scheduler.get_status(account_id)
    return {"success": True, "data": status}


@router.get("/recommendations")
async def get_recommendations(
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    recommendations = await services.scheduler.get_recommendations(account_id)
    return {"success": True, "data": [r.model_dump(mode="json") for r in recommendations]}


@router.patch("/{provider}")
async def update_schedule(
    provider: Provider,
    update: ScheduleConfigUpdate,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Change a provider's schedule; its timer restarts with the new values."""
    try:
        config = await services.scheduler.update_schedule_config(
            provider, actor_account_id=account_id, **update.model_dump(exclude_none=True)
        )
    except SYNC_ERRORS as e:
        raise http_error(e) from e
    return {"success": True, "data": config.model_dump(mode="json")}


@router.post("/{provider}/enable")
async def enable_schedule(
    provider: Provider,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    try:
        config = await services.scheduler.update_schedule_config(
            provider, actor_account_id=account_id, enabled=True
        )
    except SYNC_ERRORS as e:
        raise http_error(e) from e
    return {"success": True, "data": config.model_dump(mode="json")}


@router.post("/{provider}/disable")
async def disable_schedule(
    provider: Provider,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    try:
        config = await services.scheduler.update_schedule_config(
            provider, actor_account_id=account_id, enabled=False
        )
    except SYNC_ERRORS as e:
        raise http_error(e) from e
    return {"success": True, "data": config.model_dump(mode="json")}


@router.post("/{provider}/trigger")
async def trigger_schedule(
    provider: Provider,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Run one cycle now, ignoring the business-hours window."""
    logger.info("schedule_trigger_requested", account_id=account_id, provider=provider.value)
    try:
        cycle = await services.scheduler.trigger_now(provider, account_id=account_id)
    except SYNC_ERRORS as e:
        raise http_error(e) from e
    return {"success": True, "data": cycle.model_dump(mode="json")}


@router.post("/{provider}/recommendations/{kind}/apply")
async def apply_recommendation(
    provider: Provider,
    kind: RecommendationKind,
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    try:
        config = await services.scheduler.apply_recommendation(provider, kind, account_id)
    except SYNC_ERRORS as e:
        raise http_error(e) from e
    return {"success": True, "data": config.model_dump(mode="json")}
