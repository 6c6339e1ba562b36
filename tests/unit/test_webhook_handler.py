"""
Unit tests for webhook signature verification and notification processing.
"""

import json

import pytest

from syncengine.connectors.webhook_handler import (
    WebhookHandler,
    WebhookPayloadInvalid,
    WebhookSignatureInvalid,
    compute_signature,
    parse_webhook_payload,
)
from syncengine.models.enums import Provider, SyncEntityType, SyncOperation, SyncStatus
from tests.conftest import (
    ACCOUNT_ID,
    REALM_ID,
    WEBHOOK_SECRET,
    make_mapping,
    qbo_customer,
    qbo_invoice,
    qbo_item,
)


def notification(*entities, realm_id: str = REALM_ID) -> dict:
    return {
        "eventNotifications": [
            {"realmId": realm_id, "dataChangeEvent": {"entities": list(entities)}}
        ]
    }


def change(name: str, entity_id: str, operation: str = "Update", ts: str = "2026-10-14T18:00:00.000Z"):
    return {"name": name, "id": entity_id, "operation": operation, "lastUpdated": ts}


@pytest.fixture
def handler(services) -> WebhookHandler:
    return services.webhook_handler


# ============================================================================
# Signature verification
# ============================================================================


class TestSignature:
    def test_valid_signature_accepted(self, handler):
        body = json.dumps(notification(change("Customer", "1"))).encode()

        assert handler.verify_signature(body, compute_signature(WEBHOOK_SECRET, body))

    def test_prefixed_signature_accepted(self, handler):
        body = b'{"eventNotifications": []}'
        header = "sha256=" + compute_signature(WEBHOOK_SECRET, body)

        assert handler.verify_signature(body, header)

    def test_tampered_body_rejected(self, handler):
        body = b'{"eventNotifications": []}'
        signature = compute_signature(WEBHOOK_SECRET, body)

        assert not handler.verify_signature(body + b" ", signature)

    def test_missing_header_rejected(self, handler):
        assert not handler.verify_signature(b"{}", None)

    def test_unconfigured_secret_rejects_everything(self, storage, services):
        handler = WebhookHandler("", storage, services.executor, services.token_manager)
        body = b"{}"

        assert not handler.verify_signature(body, compute_signature("", body))

    def test_ensure_signature_raises(self, handler):
        with pytest.raises(WebhookSignatureInvalid):
            handler.ensure_signature(b"{}", "bogus")


# ============================================================================
# Payload parsing
# ============================================================================


class TestParsing:
    def test_events_parsed(self):
        events = parse_webhook_payload(
            notification(change("Customer", "1"), change("Invoice", "9", "Delete"))
        )

        assert [(e.name, e.entity_id, e.operation) for e in events] == [
            ("Customer", "1", "Update"),
            ("Invoice", "9", "Delete"),
        ]
        assert all(e.realm_id == REALM_ID for e in events)

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {},
            {"eventNotifications": {}},
            {"eventNotifications": [{"dataChangeEvent": {"entities": []}}]},
            notification({"name": "Customer", "operation": "Update"}),
            notification(
                {"name": "Customer", "id": "1", "operation": "Update", "lastUpdated": 1700000000}
            ),
            {"eventNotifications": [{"realmId": REALM_ID, "dataChangeEvent": "changed"}]},
        ],
    )
    def test_malformed_payload_rejected(self, payload):
        with pytest.raises(WebhookPayloadInvalid):
            parse_webhook_payload(payload)

    def test_idempotency_key_stable(self):
        first = parse_webhook_payload(notification(change("Customer", "1")))[0]
        again = parse_webhook_payload(notification(change("Customer", "1")))[0]
        later = parse_webhook_payload(
            notification(change("Customer", "1", ts="2026-10-14T19:00:00.000Z"))
        )[0]

        assert first.idempotency_key == again.idempotency_key
        assert first.idempotency_key != later.idempotency_key


# ============================================================================
# Processing
# ============================================================================


class TestProcessing:
    async def test_update_resyncs_exactly_that_record(self, handler, storage, fake_qbo, connected):
        fake_qbo.add("Customer", qbo_customer("1", "Ada"))
        fake_qbo.add("Customer", qbo_customer("2", "Grace"))

        result = await handler.process_webhook(notification(change("Customer", "1")))

        assert result.resynced == 1
        fetched = [c for c in fake_qbo.calls if c[0] == "get_entity"]
        assert fetched == [("get_entity", "Customer", "1")]
        assert not any(c[0] == "query_entities" for c in fake_qbo.calls)
        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        assert len(logs) == 1
        assert logs[0].operation == SyncOperation.WEBHOOK

    async def test_redelivery_ignored(self, handler, fake_qbo, connected):
        fake_qbo.add("Item", qbo_item("10", "Ant Spray"))
        payload = notification(change("Item", "10"))

        await handler.process_webhook(payload)
        result = await handler.process_webhook(payload)

        assert result.duplicates == 1
        assert result.resynced == 0
        assert sum(1 for c in fake_qbo.calls if c[0] == "get_entity") == 1

    async def test_failed_resync_does_not_block_others(self, handler, storage, fake_qbo, connected):
        fake_qbo.add("Customer", qbo_customer("1", "Ada"))
        fake_qbo.add("Invoice", qbo_invoice("100", "999", None, doc_number="1001"))

        result = await handler.process_webhook(
            notification(change("Invoice", "100"), change("Customer", "1"))
        )

        assert result.failed == 1
        assert result.resynced == 1
        assert result.errors[0]["error_code"] == "mapping_missing"
        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        assert {e.status for e in logs} == {SyncStatus.SUCCESS, SyncStatus.ERROR}

    async def test_failed_event_retried_on_redelivery(self, handler, fake_qbo, connected):
        payload = notification(change("Customer", "1"))

        first = await handler.process_webhook(payload)
        fake_qbo.add("Customer", qbo_customer("1", "Ada"))
        second = await handler.process_webhook(payload)

        assert first.failed == 1
        assert second.resynced == 1

    async def test_delete_records_activity_and_keeps_local_data(
        self, handler, storage, fake_qbo, connected
    ):
        await storage.upsert_mapping(make_mapping(SyncEntityType.INVOICE, "local-inv", "100"))

        result = await handler.process_webhook(notification(change("Invoice", "100", "Void")))

        assert result.deleted == 1
        activities = await storage.read_activities(ACCOUNT_ID, "invoice_deleted_upstream")
        assert activities[0].metadata["internal_id"] == "local-inv"
        assert activities[0].description == "QuickBooks void of Invoice 100"
        assert await storage.get_mapping_by_external(
            ACCOUNT_ID, Provider.QUICKBOOKS, SyncEntityType.INVOICE, "100"
        )

    async def test_unknown_realm_skipped(self, handler, fake_qbo, connected):
        result = await handler.process_webhook(
            notification(change("Customer", "1"), realm_id="other-realm")
        )

        assert result.skipped == 1
        assert not any(c[0] == "get_entity" for c in fake_qbo.calls)

    async def test_unsupported_entity_skipped(self, handler, connected):
        result = await handler.process_webhook(notification(change("Payment", "5")))
        assert result.skipped == 1

    async def test_test_notification_acknowledged(self, handler):
        result = await handler.process_webhook(notification(change("Test", "test-event")))

        assert result.test_notification
        assert result.received == 1

    async def test_processed_account_marked_synced(self, handler, storage, fake_qbo, connected):
        fake_qbo.add("Customer", qbo_customer("1", "Ada"))

        await handler.process_webhook(notification(change("Customer", "1")))

        integration = await storage.get_integration(ACCOUNT_ID, Provider.QUICKBOOKS)
        assert integration.last_sync_at is not None
