"""
Provider-facing entity access for the sync executor.

Resolves the account's realm and a valid access token for every call, so the
executor deals only in account ids and local entity types.
"""

from datetime import datetime
from typing import Any, Optional

import structlog

from syncengine.models.enums import SyncEntityType

from .field_mapper import QBO_ENTITY_NAMES
from .qbo_client import QBOClient
from .token_manager import TokenManager

logger = structlog.get_logger(__name__)


class ProviderClient:
    """Read and create QuickBooks entities on behalf of an account."""

    def __init__(self, token_manager: TokenManager, qbo_client: QBOClient):
        self.token_manager = token_manager
        self.qbo_client = qbo_client

    async def _credentials(self, account_id: str) -> tuple[str, str]:
        integration = await self.token_manager.get_active_integration(account_id)
        token = await self.token_manager.get_valid_access_token(account_id)
        return token, integration.realm_id

    async def fetch_entities(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        since: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch every provider record of a type, optionally modified since a time.

        Raises:
            IntegrationNotFound, NoAccessToken, TokenRefreshFailed: token errors
            ProviderAPIError: non-2xx response or transport failure
        """
        token, realm_id = await self._credentials(account_id)
        entities = await self.qbo_client.query_entities(
            token, realm_id, QBO_ENTITY_NAMES[entity_type], since=since
        )
        logger.info(
            "provider_entities_fetched",
            account_id=account_id,
            entity_type=entity_type.value,
            count=len(entities),
        )
        return entities

    async def fetch_entity_by_id(
        self, account_id: str, entity_type: SyncEntityType, external_id: str
    ) -> dict[str, Any]:
        token, realm_id = await self._credentials(account_id)
        return await self.qbo_client.get_entity(
            token, realm_id, QBO_ENTITY_NAMES[entity_type], external_id
        )

    async def create_entity(
        self, account_id: str, entity_type: SyncEntityType, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Create a provider record and return it (including its new Id)."""
        token, realm_id = await self._credentials(account_id)
        return await self.qbo_client.create_entity(
            token, realm_id, QBO_ENTITY_NAMES[entity_type], payload
        )
