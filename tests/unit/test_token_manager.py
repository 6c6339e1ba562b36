"""
Unit tests for the OAuth token lifecycle (TokenManager).
"""

import asyncio
from datetime import datetime

import pytest

from syncengine.connectors.qbo_client import QBOAuthError
from syncengine.connectors.token_manager import (
    IntegrationNotFound,
    NoAccessToken,
    TokenManager,
    TokenRefreshFailed,
)
from syncengine.models.enums import Provider
from tests.conftest import ACCOUNT_ID, REALM_ID, make_integration


@pytest.fixture
def manager(storage, fake_qbo):
    return TokenManager(storage, fake_qbo)


# ============================================================================
# get_valid_access_token
# ============================================================================


class TestGetValidAccessToken:
    async def test_valid_token_returned_without_refresh(self, manager, storage, fake_qbo):
        await storage.upsert_integration(make_integration())

        token = await manager.get_valid_access_token(ACCOUNT_ID)

        assert token == "access-valid"
        assert not any(c[0] == "refresh_tokens" for c in fake_qbo.calls)

    async def test_invalid_token_refreshed_and_persisted(self, manager, storage, fake_qbo):
        await storage.upsert_integration(make_integration(access_token="access-expired"))

        token = await manager.get_valid_access_token(ACCOUNT_ID)

        assert token == "access-refreshed"
        stored = await storage.get_integration(ACCOUNT_ID, Provider.QUICKBOOKS)
        assert stored.access_token == "access-refreshed"
        assert stored.refresh_token == "refresh-2"

    async def test_refresh_keeps_old_refresh_token_when_none_returned(
        self, manager, storage, fake_qbo
    ):
        fake_qbo.refresh_result = {"access_token": "access-refreshed"}
        await storage.upsert_integration(make_integration(access_token="access-expired"))

        await manager.get_valid_access_token(ACCOUNT_ID)

        stored = await storage.get_integration(ACCOUNT_ID, Provider.QUICKBOOKS)
        assert stored.refresh_token == "refresh-1"

    async def test_failed_refresh_leaves_tokens_untouched(self, manager, storage, fake_qbo):
        fake_qbo.refresh_result = None
        await storage.upsert_integration(make_integration(access_token="access-expired"))

        with pytest.raises(TokenRefreshFailed, match="Token expired and refresh failed"):
            await manager.get_valid_access_token(ACCOUNT_ID)

        stored = await storage.get_integration(ACCOUNT_ID, Provider.QUICKBOOKS)
        assert stored.access_token == "access-expired"
        assert stored.refresh_token == "refresh-1"

    async def test_missing_refresh_token_fails(self, manager, storage):
        await storage.upsert_integration(
            make_integration(access_token="access-expired", refresh_token=None)
        )

        with pytest.raises(TokenRefreshFailed):
            await manager.get_valid_access_token(ACCOUNT_ID)

    async def test_no_integration_raises_not_found(self, manager):
        with pytest.raises(IntegrationNotFound):
            await manager.get_valid_access_token(ACCOUNT_ID)

    async def test_revoked_integration_raises_not_found(self, manager, storage):
        await storage.upsert_integration(make_integration(is_active=False))

        with pytest.raises(IntegrationNotFound):
            await manager.get_valid_access_token(ACCOUNT_ID)

    async def test_empty_access_token_raises(self, manager, storage):
        await storage.upsert_integration(make_integration(access_token=None))

        with pytest.raises(NoAccessToken):
            await manager.get_valid_access_token(ACCOUNT_ID)

    async def test_concurrent_callers_share_one_refresh(self, manager, storage, fake_qbo):
        await storage.upsert_integration(make_integration(access_token="access-expired"))

        tokens = await asyncio.gather(
            *(manager.get_valid_access_token(ACCOUNT_ID) for _ in range(5))
        )

        assert set(tokens) == {"access-refreshed"}
        assert sum(1 for c in fake_qbo.calls if c[0] == "refresh_tokens") == 1


# ============================================================================
# mark_synced / connect / revoke
# ============================================================================


class TestIntegrationLifecycle:
    async def test_mark_synced_sets_last_sync_at(self, manager, storage):
        await storage.upsert_integration(make_integration())
        synced_at = datetime(2026, 10, 14, 18, 0)

        updated = await manager.mark_synced(ACCOUNT_ID, synced_at)

        assert updated.last_sync_at == synced_at
        assert updated.access_token == "access-valid"

    async def test_mark_synced_ignores_revoked_integration(self, manager, storage):
        await storage.upsert_integration(make_integration(is_active=False))

        assert await manager.mark_synced(ACCOUNT_ID, datetime.utcnow()) is None

    async def test_connect_stores_tokens_and_activity(self, manager, storage):
        integration = await manager.connect(ACCOUNT_ID, "auth-code", REALM_ID)

        assert integration.is_connected
        assert integration.realm_id == REALM_ID
        activities = await storage.read_activities(ACCOUNT_ID, "integration_connected")
        assert len(activities) == 1

    async def test_reconnect_reuses_existing_row(self, manager, storage):
        first = await storage.upsert_integration(make_integration(is_active=False))

        integration = await manager.connect(ACCOUNT_ID, "auth-code", REALM_ID)

        assert integration.integration_id == first.integration_id
        assert integration.is_active

    async def test_connect_with_rejected_code_raises(self, manager, storage):
        with pytest.raises(QBOAuthError):
            await manager.connect(ACCOUNT_ID, "bad-code", REALM_ID)
        assert await storage.get_integration(ACCOUNT_ID, Provider.QUICKBOOKS) is None

    async def test_revoke_deactivates_and_clears_tokens(self, manager, storage, fake_qbo):
        await storage.upsert_integration(make_integration())

        revoked = await manager.revoke(ACCOUNT_ID)

        assert not revoked.is_active
        assert revoked.access_token is None
        assert revoked.refresh_token is None
        assert fake_qbo.revoked == ["refresh-1"]

    async def test_revoke_survives_provider_failure(self, manager, storage, fake_qbo):
        fake_qbo.revoke_error = QBOAuthError("Failed to revoke token")
        await storage.upsert_integration(make_integration())

        revoked = await manager.revoke(ACCOUNT_ID)

        assert not revoked.is_active
        assert await storage.read_activities(ACCOUNT_ID, "integration_revoked")

    async def test_revoke_without_integration_raises(self, manager):
        with pytest.raises(IntegrationNotFound):
            await manager.revoke(ACCOUNT_ID)
