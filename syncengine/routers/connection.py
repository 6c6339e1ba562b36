"""
QuickBooks connection management router.

The OAuth flow: /authorize returns the Intuit consent URL carrying a signed
state, Intuit redirects the browser to /callback, and /revoke disconnects.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from jose import JWTError

from syncengine.auth.dependencies import get_current_account_id
from syncengine.auth.jwt import create_oauth_state, decode_oauth_state
from syncengine.connectors.qbo_client import QBOAuthError
from syncengine.connectors.token_manager import IntegrationNotFound
from syncengine.models.enums import ConnectionState, Provider
from syncengine.services import SyncServices, get_services
from syncengine.utils.logging import get_logger

from .errors import http_error

logger = get_logger(__name__)
router = APIRouter()


@router.get("/status")
async def get_connection_status(
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Connection state of the account's QuickBooks integration."""
    integration = await services.storage.get_integration(account_id, Provider.QUICKBOOKS)
    state = await services.audit.connection_state(integration)
    logger.info("connection_status_check", account_id=account_id, state=state.value)

    return {
        "success": True,
        "data": {
            "provider": Provider.QUICKBOOKS.value,
            "state": state.value,
            "connected": state == ConnectionState.CONNECTED,
            "realm_id": integration.realm_id if integration and integration.is_active else None,
            "last_sync_at": integration.last_sync_at.isoformat()
            if integration and integration.last_sync_at
            else None,
        },
    }


@router.get("/authorize")
async def authorize(
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Intuit consent URL for the calling account."""
    state = create_oauth_state(account_id)
    url = services.qbo_client.get_authorization_url(state)
    logger.info("oauth_authorize_requested", account_id=account_id)
    return {"success": True, "data": {"authorization_url": url, "state": state}}


@router.get("/callback")
async def oauth_callback(
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    realm_id: str = Query(..., alias="realmId", min_length=1),
    services: SyncServices = Depends(get_services),
):
    """
    Intuit redirect target.

    Unauthenticated: the account is recovered from the signed state.
    """
    try:
        account_id = decode_oauth_state(state)
    except JWTError as e:
        logger.warning("oauth_state_invalid", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")

    try:
        integration = await services.token_manager.connect(account_id, code, realm_id)
    except QBOAuthError as e:
        raise http_error(e) from e

    return {
        "success": True,
        "data": {
            "account_id": integration.account_id,
            "provider": integration.provider.value,
            "realm_id": integration.realm_id,
            "connected": integration.is_connected,
        },
    }


@router.post("/revoke")
async def revoke_connection(
    account_id: str = Depends(get_current_account_id),
    services: SyncServices = Depends(get_services),
):
    """Disconnect QuickBooks; local records and mappings are kept."""
    try:
        await services.token_manager.revoke(account_id)
    except IntegrationNotFound:
        raise HTTPException(status_code=404, detail="No active QuickBooks connection")

    return {"success": True, "data": {"message": "Successfully disconnected from QuickBooks"}}
