"""
Translation of sync failures into HTTP errors.

Every failure a broken or busy integration can produce maps to a 4xx/5xx
with its machine readable code, never to a bare 500.
"""

from fastapi import HTTPException

from syncengine.connectors.qbo_client import ProviderAPIError, QBOAuthError
from syncengine.connectors.token_manager import (
    IntegrationNotFound,
    NoAccessToken,
    TokenRefreshFailed,
)
from syncengine.storage.base import StorageError
from syncengine.sync.audit import error_code
from syncengine.sync.executor import LocalEntityNotFound, MappingMissing, SyncAlreadyRunning
from syncengine.sync.scheduler import RecommendationNotFound

SYNC_ERRORS = (
    SyncAlreadyRunning,
    IntegrationNotFound,
    NoAccessToken,
    TokenRefreshFailed,
    QBOAuthError,
    LocalEntityNotFound,
    MappingMissing,
    RecommendationNotFound,
    ProviderAPIError,
    StorageError,
)

STATUS_BY_CODE = {
    "sync_already_running": 409,
    "not_connected": 409,
    "no_access_token": 409,
    "token_refresh_failed": 409,
    "oauth_failed": 400,
    "entity_not_found": 404,
    "recommendation_not_found": 404,
    "mapping_missing": 422,
    "provider_api_error": 502,
    "storage_error": 503,
}

MESSAGES = {
    "not_connected": "QuickBooks is not connected",
    "no_access_token": "QuickBooks needs re-authorization",
    "token_refresh_failed": "QuickBooks needs re-authorization",
}


def http_error(exc: Exception) -> HTTPException:
    """HTTPException for a sync failure, carrying its error code."""
    code = error_code(exc)
    return HTTPException(
        status_code=STATUS_BY_CODE.get(code, 500),
        detail={"error_code": code, "message": MESSAGES.get(code, str(exc))},
    )
