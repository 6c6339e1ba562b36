"""
QuickBooks Online connectivity: HTTP/OAuth client, token lifecycle, field
mapping, provider entity access and webhook handling.
"""

from .provider_client import ProviderClient
from .qbo_client import ProviderAPIError, QBOAuthError, QBOClient
from .token_manager import IntegrationNotFound, NoAccessToken, TokenManager, TokenRefreshFailed
from .webhook_handler import (
    WebhookEntity,
    WebhookHandler,
    WebhookPayloadInvalid,
    WebhookResult,
    WebhookSignatureInvalid,
)

__all__ = [
    "IntegrationNotFound",
    "NoAccessToken",
    "ProviderAPIError",
    "ProviderClient",
    "QBOAuthError",
    "QBOClient",
    "TokenManager",
    "TokenRefreshFailed",
    "WebhookEntity",
    "WebhookHandler",
    "WebhookPayloadInvalid",
    "WebhookResult",
    "WebhookSignatureInvalid",
]
