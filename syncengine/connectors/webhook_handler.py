"""
Webhook handler for Intuit real-time notifications.

Webhook flow:
1. Verify the intuit-signature header (HMAC-SHA256 of the raw body, base64)
2. Parse the notification payload into entity change events
3. Resolve the integration owning each realm
4. Create/Update/Merge: re-sync exactly that record through the executor
   Delete/Void: record an activity entry, never delete local data
5. Remember processed events so provider redeliveries are not re-synced
"""

import base64
import hashlib
import hmac
from collections import OrderedDict
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from syncengine.models.entities import ActivityLog
from syncengine.models.enums import Provider, SyncEntityType, SyncTrigger
from syncengine.storage.base import StorageBackend

from .token_manager import TokenManager

if TYPE_CHECKING:
    from syncengine.sync.executor import SyncExecutor

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "intuit-signature"


class WebhookSignatureInvalid(Exception):
    """The request signature is missing or does not match the body."""

    code = "webhook_signature_invalid"


class WebhookPayloadInvalid(ValueError):
    """The request body is not a well-formed Intuit notification."""

    code = "webhook_payload_invalid"


class WebhookEntity(str, Enum):
    """QuickBooks entities this engine reacts to."""

    CUSTOMER = "Customer"
    ITEM = "Item"
    INVOICE = "Invoice"

    @property
    def entity_type(self) -> SyncEntityType:
        return _ENTITY_TYPES[self]


_ENTITY_TYPES = {
    WebhookEntity.CUSTOMER: SyncEntityType.CUSTOMER,
    WebhookEntity.ITEM: SyncEntityType.ITEM,
    WebhookEntity.INVOICE: SyncEntityType.INVOICE,
}

RESYNC_OPERATIONS = {"Create", "Update", "Merge"}
DELETE_OPERATIONS = {"Delete", "Void"}


class WebhookEvent(BaseModel):
    """
    One entity change from a notification.

    Attributes:
        realm_id: QuickBooks company where the change occurred
        name: Entity name as sent by Intuit ("Customer", "Invoice", ...)
        entity_id: QuickBooks entity id
        operation: Create, Update, Merge, Delete or Void
        last_updated: Change timestamp string as sent by Intuit
    """

    realm_id: str
    name: str
    entity_id: str
    operation: str
    last_updated: Optional[str] = None

    @property
    def is_test(self) -> bool:
        """Intuit's "send test notification" payload."""
        return self.name == "Test" or self.entity_id == "test-event"

    @property
    def idempotency_key(self) -> str:
        raw = ":".join(
            [self.realm_id, self.name, self.entity_id, self.operation, self.last_updated or ""]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class WebhookResult(BaseModel):
    """Summary of one processed notification."""

    received: int = 0
    resynced: int = 0
    deleted: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    test_notification: bool = False
    errors: list[dict[str, Any]] = Field(default_factory=list)


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Base64 HMAC-SHA256 of the raw body, as Intuit sends it."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def parse_webhook_payload(payload: Any) -> list[WebhookEvent]:
    """
    Parse a notification body into events.

    Intuit webhook payload structure:
    {
        "eventNotifications": [
            {
                "realmId": "123146096291789",
                "dataChangeEvent": {
                    "entities": [
                        {
                            "name": "Invoice",
                            "id": "145",
                            "operation": "Update",
                            "lastUpdated": "2016-10-25T16:27:46.000Z"
                        }
                    ]
                }
            }
        ]
    }

    Raises:
        WebhookPayloadInvalid: If the structure does not match
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadInvalid("Webhook payload must be a JSON object")
    notifications = payload.get("eventNotifications")
    if not isinstance(notifications, list):
        raise WebhookPayloadInvalid("eventNotifications must be a list")

    events = []
    for notification in notifications:
        if not isinstance(notification, dict) or not notification.get("realmId"):
            raise WebhookPayloadInvalid("Each notification needs a realmId")
        change_event = notification.get("dataChangeEvent") or {}
        if not isinstance(change_event, dict):
            raise WebhookPayloadInvalid("dataChangeEvent must be an object")
        entities = change_event.get("entities", [])
        if not isinstance(entities, list):
            raise WebhookPayloadInvalid("dataChangeEvent.entities must be a list")

        for entity in entities:
            if not isinstance(entity, dict):
                raise WebhookPayloadInvalid("Entity changes must be objects")
            missing = [k for k in ("name", "id", "operation") if not entity.get(k)]
            if missing:
                raise WebhookPayloadInvalid(f"Entity change missing {', '.join(missing)}")
            try:
                event = WebhookEvent(
                    realm_id=str(notification["realmId"]),
                    name=str(entity["name"]),
                    entity_id=str(entity["id"]),
                    operation=str(entity["operation"]),
                    last_updated=entity.get("lastUpdated"),
                )
            except ValidationError as e:
                raise WebhookPayloadInvalid(f"Invalid entity change: {e}") from e
            events.append(event)

    logger.debug("webhook_payload_parsed", event_count=len(events))
    return events


class WebhookHandler:
    """
    Verifies and processes Intuit webhook notifications.

    Attributes:
        verifier_token: Webhook verifier token from the Intuit app settings
        storage: Persistence backend (realm lookup, activity feed)
        executor: Sync executor used for single-record re-syncs
        token_manager: Used to stamp last_sync_at after a realm is processed
        dedup_window: Number of remembered event keys
    """

    def __init__(
        self,
        verifier_token: str,
        storage: StorageBackend,
        executor: "SyncExecutor",
        token_manager: TokenManager,
        dedup_window: int = 5000,
    ):
        self.verifier_token = verifier_token
        self.storage = storage
        self.executor = executor
        self.token_manager = token_manager
        self.dedup_window = dedup_window
        self._seen: OrderedDict[str, None] = OrderedDict()

        logger.info("webhook_handler_initialized", has_verifier_token=bool(verifier_token))

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """
        Check the intuit-signature header against the raw request body.

        Without a configured verifier token every request is rejected. An
        optional "sha256=" prefix on the header is tolerated.

        Returns:
            True if the signature matches
        """
        if not self.verifier_token:
            logger.error("webhook_verifier_not_configured")
            return False
        if not signature_header:
            logger.warning("webhook_signature_missing")
            return False

        received = signature_header.strip()
        if received.startswith("sha256="):
            received = received[len("sha256="):]
        expected = compute_signature(self.verifier_token, raw_body)

        is_valid = hmac.compare_digest(expected.encode("ascii"), received.encode("ascii", "ignore"))
        if not is_valid:
            logger.warning("webhook_signature_mismatch")
        return is_valid

    def ensure_signature(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        """Raise WebhookSignatureInvalid unless verify_signature passes."""
        if not self.verify_signature(raw_body, signature_header):
            raise WebhookSignatureInvalid("Invalid webhook signature")

    def _remember(self, key: str) -> None:
        if self.dedup_window <= 0:
            return
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self.dedup_window:
            self._seen.popitem(last=False)

    async def process_webhook(self, payload: Any) -> WebhookResult:
        """
        Process a verified notification end-to-end.

        Unknown realms and unsupported entity names are logged and skipped;
        a failing re-sync is recorded in the result and the audit log and
        does not stop the remaining events.

        Raises:
            WebhookPayloadInvalid: If the payload is malformed
        """
        events = parse_webhook_payload(payload)
        result = WebhookResult(received=len(events))

        if events and all(e.is_test for e in events):
            logger.info("webhook_test_notification_received")
            result.test_notification = True
            return result

        accounts: dict[str, Optional[str]] = {}
        processed_accounts: set[str] = set()

        for event in events:
            log = logger.bind(
                realm_id=event.realm_id,
                entity=event.name,
                entity_id=event.entity_id,
                operation=event.operation,
            )
            if event.is_test:
                result.skipped += 1
                continue

            if event.realm_id not in accounts:
                integration = await self.storage.get_integration_by_realm(
                    event.realm_id, Provider.QUICKBOOKS
                )
                accounts[event.realm_id] = integration.account_id if integration else None
            account_id = accounts[event.realm_id]
            if account_id is None:
                log.warning("webhook_unknown_realm")
                result.skipped += 1
                continue

            try:
                entity = WebhookEntity(event.name)
            except ValueError:
                log.info("webhook_entity_unsupported")
                result.skipped += 1
                continue

            key = event.idempotency_key
            if key in self._seen:
                log.info("webhook_event_duplicate")
                result.duplicates += 1
                continue

            if event.operation in DELETE_OPERATIONS:
                await self._record_upstream_delete(account_id, entity, event)
                result.deleted += 1
            elif event.operation in RESYNC_OPERATIONS:
                try:
                    await self.executor.sync_entity(
                        account_id,
                        entity.entity_type,
                        event.entity_id,
                        trigger=SyncTrigger.WEBHOOK,
                    )
                except Exception as e:
                    log.error("webhook_resync_failed", error=str(e))
                    result.failed += 1
                    result.errors.append(
                        {
                            "entity": event.name,
                            "entity_id": event.entity_id,
                            "error": str(e),
                            "error_code": getattr(e, "code", type(e).__name__),
                        }
                    )
                    continue
                result.resynced += 1
            else:
                log.info("webhook_operation_unsupported")
                result.skipped += 1
                continue

            self._remember(key)
            processed_accounts.add(account_id)

        for account_id in processed_accounts:
            await self.token_manager.mark_synced(account_id, datetime.utcnow())

        logger.info("webhook_processing_complete", **result.model_dump(exclude={"errors"}))
        return result

    async def _record_upstream_delete(
        self, account_id: str, entity: WebhookEntity, event: WebhookEvent
    ) -> None:
        mapping = await self.storage.get_mapping_by_external(
            account_id, Provider.QUICKBOOKS, entity.entity_type, event.entity_id
        )
        await self.storage.write_activity(
            ActivityLog(
                account_id=account_id,
                activity_type=f"{entity.entity_type.value}_deleted_upstream",
                description=(
                    f"QuickBooks {event.operation.lower()} of {entity.value} {event.entity_id}"
                ),
                metadata={
                    "external_id": event.entity_id,
                    "internal_id": mapping.internal_id if mapping else None,
                    "operation": event.operation,
                    "last_updated": event.last_updated,
                },
            )
        )
        logger.info(
            "webhook_upstream_delete_recorded",
            account_id=account_id,
            entity=entity.value,
            entity_id=event.entity_id,
        )
