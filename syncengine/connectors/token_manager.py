"""
OAuth token lifecycle for provider integrations.

The Token Manager is the only component that reads or writes an
Integration's tokens. It validates the stored access token against the
company info endpoint before handing it out, refreshes exactly once when
validation fails, and persists the new pair before returning it. Calls for
the same account are serialized so concurrent syncs never race two
refreshes against each other.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from syncengine.models.entities import ActivityLog
from syncengine.models.enums import Provider
from syncengine.models.integration import Integration
from syncengine.storage.base import StorageBackend

from .qbo_client import ProviderAPIError, QBOAuthError, QBOClient

logger = structlog.get_logger(__name__)


class IntegrationNotFound(Exception):
    """No active integration exists for the account and provider."""

    code = "not_connected"


class NoAccessToken(Exception):
    """The integration exists but holds no access token."""

    code = "no_access_token"


class TokenRefreshFailed(Exception):
    """The access token is invalid and the refresh was rejected."""

    code = "token_refresh_failed"


class TokenManager:
    """
    Hands out valid access tokens and owns connect/revoke.

    Attributes:
        storage: Persistence backend holding Integration rows
        qbo_client: QuickBooks client used for validation and OAuth calls
        provider: Provider whose integrations this manager handles
    """

    def __init__(
        self,
        storage: StorageBackend,
        qbo_client: QBOClient,
        provider: Provider = Provider.QUICKBOOKS,
    ):
        self.storage = storage
        self.qbo_client = qbo_client
        self.provider = provider
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def get_active_integration(self, account_id: str) -> Integration:
        """
        Read the account's active integration.

        Raises:
            IntegrationNotFound: If there is no row or it was revoked
        """
        integration = await self.storage.get_integration(account_id, self.provider)
        if integration is None or not integration.is_active:
            raise IntegrationNotFound(
                f"No active {self.provider.value} integration for account {account_id}"
            )
        return integration

    async def get_valid_access_token(self, account_id: str) -> str:
        """
        Return an access token that the provider currently accepts.

        The stored token is checked against the company info endpoint under
        the short validation timeout. Any failure there (401, 5xx, timeout,
        network) triggers exactly one refresh. The new access/refresh pair is
        persisted before it is returned; if the refresh fails the stored
        tokens are left untouched.

        Callers for the same account queue on a lock and re-read the row
        once they hold it, so a refresh done by an earlier caller is reused.

        Raises:
            IntegrationNotFound: No active integration
            NoAccessToken: Integration has an empty access token
            TokenRefreshFailed: Validation failed and the refresh was rejected
        """
        async with self._lock_for(account_id):
            integration = await self.get_active_integration(account_id)
            if not integration.access_token:
                raise NoAccessToken(f"Integration for account {account_id} has no access token")

            try:
                await self.qbo_client.get_company_info(
                    integration.access_token, integration.realm_id, validate=True
                )
                return integration.access_token
            except ProviderAPIError as e:
                logger.info(
                    "access_token_validation_failed",
                    account_id=account_id,
                    status_code=e.status_code,
                )

            refreshed = await self._refresh(integration)
            return refreshed.access_token

    async def _refresh(self, integration: Integration) -> Integration:
        if not integration.refresh_token:
            logger.warning("token_refresh_unavailable", account_id=integration.account_id)
            raise TokenRefreshFailed("Token expired and no refresh token is stored")

        try:
            token_data = await self.qbo_client.refresh_tokens(integration.refresh_token)
        except QBOAuthError as e:
            logger.error(
                "token_refresh_rejected",
                account_id=integration.account_id,
                error=str(e),
            )
            raise TokenRefreshFailed("Token expired and refresh failed") from e

        updated = integration.model_copy(
            update={
                "access_token": token_data["access_token"],
                "refresh_token": token_data.get("refresh_token") or integration.refresh_token,
            }
        )
        stored = await self.storage.upsert_integration(updated)
        logger.info("access_token_refreshed", account_id=integration.account_id)
        return stored

    async def mark_synced(self, account_id: str, synced_at: datetime) -> Optional[Integration]:
        """
        Record a completed sync on the integration row.

        Runs under the account lock on a freshly read row so it can never
        write back tokens that a concurrent refresh already replaced.
        """
        async with self._lock_for(account_id):
            integration = await self.storage.get_integration(account_id, self.provider)
            if integration is None or not integration.is_active:
                return None
            return await self.storage.upsert_integration(
                integration.model_copy(update={"last_sync_at": synced_at})
            )

    async def connect(self, account_id: str, auth_code: str, realm_id: str) -> Integration:
        """
        Complete the OAuth callback: exchange the code and store the connection.

        Reconnecting reactivates the existing row for (account, provider).

        Raises:
            QBOAuthError: If the code exchange fails
        """
        token_data = await self.qbo_client.exchange_code(auth_code)

        async with self._lock_for(account_id):
            existing = await self.storage.get_integration(account_id, self.provider)
            integration = Integration(
                account_id=account_id,
                provider=self.provider,
                access_token=token_data["access_token"],
                refresh_token=token_data.get("refresh_token"),
                realm_id=realm_id,
                company_id=realm_id,
                is_active=True,
                last_sync_at=existing.last_sync_at if existing else None,
                settings=existing.settings if existing else {},
            )
            stored = await self.storage.upsert_integration(integration)

        await self.storage.write_activity(
            ActivityLog(
                account_id=account_id,
                activity_type="integration_connected",
                description=f"Connected {self.provider.value}",
                metadata={"realm_id": realm_id},
            )
        )
        logger.info("integration_connected", account_id=account_id, realm_id=realm_id)
        return stored

    async def revoke(self, account_id: str) -> Integration:
        """
        Disconnect an account.

        Revocation at the provider is best-effort; the local row is always
        deactivated with its tokens cleared.

        Raises:
            IntegrationNotFound: If there is nothing to revoke
        """
        async with self._lock_for(account_id):
            integration = await self.get_active_integration(account_id)
            token: Optional[str] = integration.refresh_token or integration.access_token
            if token:
                try:
                    await self.qbo_client.revoke_token(token)
                except QBOAuthError as e:
                    logger.warning(
                        "provider_revoke_failed", account_id=account_id, error=str(e)
                    )

            stored = await self.storage.upsert_integration(
                integration.model_copy(
                    update={"is_active": False, "access_token": None, "refresh_token": None}
                )
            )

        await self.storage.write_activity(
            ActivityLog(
                account_id=account_id,
                activity_type="integration_revoked",
                description=f"Disconnected {self.provider.value}",
                metadata={"realm_id": integration.realm_id},
            )
        )
        logger.info("integration_revoked", account_id=account_id)
        return stored
