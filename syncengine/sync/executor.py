"""
Sync executor: moves customers, items and invoices between QuickBooks and
the local records.

A full sync pulls the three entity types in dependency order (customers,
items, invoices) so every invoice reference can be resolved through the
mapping table. Each provider record is upserted on its own: a failure
becomes one error entry in the audit log and the batch carries on. A failure
that makes the whole phase impossible (token, provider unreachable, storage)
aborts the run, writes an error run summary and propagates.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from syncengine.config import Settings, get_settings
from syncengine.connectors import field_mapper
from syncengine.connectors.provider_client import ProviderClient
from syncengine.connectors.token_manager import TokenManager
from syncengine.models.entities import Customer, Invoice, InvoiceItem, Product
from syncengine.models.enums import (
    Provider,
    SyncDirection,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from syncengine.models.integration import ExternalMapping
from syncengine.models.sync import EntitySyncCounts, SyncRunResult
from syncengine.storage.base import BusinessRecord, StorageBackend

from .audit import SyncAuditLog, error_code

logger = structlog.get_logger(__name__)


class MappingMissing(Exception):
    """An invoice references a customer or item that has no mapping yet."""

    code = "mapping_missing"


class SyncAlreadyRunning(Exception):
    """A full sync for the same account and provider is already in flight."""

    code = "sync_already_running"


class LocalEntityNotFound(LookupError):
    """The local record to push does not exist."""

    code = "entity_not_found"


INBOUND_CONVERTERS = {
    SyncEntityType.CUSTOMER: field_mapper.qbo_customer_to_local,
    SyncEntityType.ITEM: field_mapper.qbo_item_to_local,
    SyncEntityType.INVOICE: field_mapper.qbo_invoice_to_local,
}

MATCHERS = {
    SyncEntityType.CUSTOMER: field_mapper.match_customer,
    SyncEntityType.ITEM: field_mapper.match_product,
    SyncEntityType.INVOICE: field_mapper.match_invoice,
}


class SyncExecutor:
    """
    Runs full, single-record and outbound syncs for one provider.

    Attributes:
        storage: Persistence backend for records, mappings and the audit log
        provider_client: Entity access on the provider
        token_manager: Owner of Integration rows (used to stamp last_sync_at)
        audit: Audit log writer
        provider: Provider this executor syncs with
    """

    def __init__(
        self,
        storage: StorageBackend,
        provider_client: ProviderClient,
        token_manager: TokenManager,
        audit: SyncAuditLog,
        settings: Optional[Settings] = None,
        provider: Provider = Provider.QUICKBOOKS,
    ):
        self.storage = storage
        self.provider_client = provider_client
        self.token_manager = token_manager
        self.audit = audit
        self.settings = settings or get_settings()
        self.provider = provider
        self._running: set[str] = set()
        self._write_locks: dict[str, asyncio.Lock] = {}

    def is_running(self, account_id: str) -> bool:
        return account_id in self._running

    def _write_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._write_locks.get(account_id)
        if lock is None:
            lock = self._write_locks[account_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Full sync
    # =========================================================================

    async def full_sync(
        self, account_id: str, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncRunResult:
        """
        Pull customers, then items, then invoices for an account.

        Returns:
            Run result with per-phase counters and per-record errors

        Raises:
            SyncAlreadyRunning: A full sync for this account is in flight
            IntegrationNotFound, NoAccessToken, TokenRefreshFailed,
            ProviderAPIError, StorageError: the run was aborted
        """
        if account_id in self._running:
            raise SyncAlreadyRunning(
                f"A {self.provider.value} sync is already running for account {account_id}"
            )
        self._running.add(account_id)
        try:
            return await self._full_sync(account_id, trigger)
        finally:
            self._running.discard(account_id)

    async def _full_sync(self, account_id: str, trigger: SyncTrigger) -> SyncRunResult:
        result = SyncRunResult(
            account_id=account_id,
            provider=self.provider,
            trigger=trigger,
            started_at=datetime.utcnow(),
        )
        log = logger.bind(account_id=account_id, run_id=result.run_id, trigger=trigger.value)
        log.info("full_sync_started")

        try:
            for entity_type in SyncEntityType:
                phase = await self._sync_phase(account_id, entity_type, trigger, result)
                result.phases.append(phase)
        except Exception as e:
            result.completed_at = datetime.utcnow()
            log.error("full_sync_failed", error=str(e), error_code=error_code(e))
            await self.audit.record_run(result, error=e)
            raise

        result.completed_at = datetime.utcnow()
        await self.token_manager.mark_synced(account_id, result.completed_at)
        await self.audit.record_run(result)
        log.info(
            "full_sync_completed",
            records_processed=result.records_processed,
            records_failed=result.records_failed,
            duration_ms=result.duration_ms,
        )
        return result

    async def _sync_phase(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        trigger: SyncTrigger,
        result: SyncRunResult,
    ) -> EntitySyncCounts:
        since = None
        if entity_type == SyncEntityType.INVOICE and self.settings.recent_invoice_days:
            since = datetime.utcnow() - timedelta(days=self.settings.recent_invoice_days)

        remote_records = await self.provider_client.fetch_entities(
            account_id, entity_type, since=since
        )
        counts = EntitySyncCounts(entity_type=entity_type, fetched=len(remote_records))
        candidates = await self._unmapped_candidates(account_id, entity_type)

        for raw in remote_records:
            external_id = str(raw.get("Id", ""))
            try:
                outcome, _ = await self._upsert_from_provider(
                    account_id, entity_type, raw, candidates
                )
                setattr(counts, outcome, getattr(counts, outcome) + 1)
            except Exception as e:
                counts.failed += 1
                result.errors.append(
                    {
                        "entity_type": entity_type.value,
                        "external_id": external_id,
                        "error": str(e),
                        "error_code": error_code(e),
                    }
                )
                logger.warning(
                    "entity_sync_failed",
                    account_id=account_id,
                    entity_type=entity_type.value,
                    external_id=external_id,
                    error=str(e),
                )
                await self.audit.record(
                    account_id=account_id,
                    provider=self.provider,
                    operation=SyncOperation.PULL,
                    status=SyncStatus.ERROR,
                    entity_type=entity_type,
                    external_id=external_id or None,
                    trigger=trigger,
                    error=e,
                )

        logger.info(
            "entity_phase_completed",
            account_id=account_id,
            **counts.model_dump(mode="json"),
        )
        return counts

    async def _unmapped_candidates(
        self, account_id: str, entity_type: SyncEntityType
    ) -> list[BusinessRecord]:
        """Local records of a type that are not yet linked to a provider record."""
        mappings = await self.storage.list_mappings(account_id, self.provider, entity_type)
        mapped = {m.internal_id for m in mappings}
        records = await self.storage.list_entities(entity_type, account_id)
        return [r for r in records if r.id not in mapped]

    async def _upsert_from_provider(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        raw: dict[str, Any],
        candidates: list[BusinessRecord],
    ) -> tuple[str, Optional[BusinessRecord]]:
        """
        Apply one provider record locally.

        Mapped records update their local row; unmapped records are linked to
        the first matching local record, or created.

        Returns:
            (outcome, record) where outcome is created, updated, linked or skipped
        """
        external_id = raw.get("Id")
        if external_id in (None, ""):
            raise ValueError(f"{entity_type.value} record has no Id")
        external_id = str(external_id)
        fields = INBOUND_CONVERTERS[entity_type](raw)

        async with self._write_lock(account_id):
            mapping = await self.storage.get_mapping_by_external(
                account_id, self.provider, entity_type, external_id
            )
            existing = None
            if mapping is not None:
                existing = await self.storage.get_entity(
                    entity_type, account_id, mapping.internal_id
                )

            if existing is not None:
                outcome = "updated"
            elif entity_type == SyncEntityType.CUSTOMER and not fields.get("active", True):
                logger.debug(
                    "inactive_customer_skipped", account_id=account_id, external_id=external_id
                )
                return "skipped", None
            else:
                existing = MATCHERS[entity_type](candidates, fields)
                outcome = "linked" if existing is not None else "created"

            record = await self._build_record(account_id, entity_type, fields, existing)
            await self.storage.save_entity(entity_type, record)
            await self.storage.upsert_mapping(
                ExternalMapping(
                    account_id=account_id,
                    provider=self.provider,
                    entity_type=entity_type,
                    internal_id=record.id,
                    external_id=external_id,
                    sync_token=raw.get("SyncToken"),
                )
            )

        if outcome == "linked":
            candidates[:] = [c for c in candidates if c.id != record.id]
        return outcome, record

    async def _build_record(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        fields: dict[str, Any],
        existing: Optional[BusinessRecord],
    ) -> BusinessRecord:
        now = datetime.utcnow()
        if entity_type == SyncEntityType.INVOICE:
            fields = await self._resolve_invoice_refs(account_id, fields)

        if existing is not None:
            data = existing.model_dump()
            data.update(fields, updated_at=now)
            record = type(existing).model_validate(data)
        elif entity_type == SyncEntityType.CUSTOMER:
            record = Customer(account_id=account_id, **fields)
        elif entity_type == SyncEntityType.ITEM:
            record = Product(account_id=account_id, **fields)
        else:
            record = Invoice(account_id=account_id, **fields)

        if isinstance(record, Invoice):
            for item in record.items:
                item.invoice_id = record.id
        return record

    async def _resolve_invoice_refs(self, account_id: str, fields: dict[str, Any]) -> dict:
        """
        Replace provider references on an invoice with local ids.

        Raises:
            MappingMissing: The customer or a line item is not mapped
        """
        fields = dict(fields)
        customer_ref = fields.pop("customer_ref")
        lines = fields.pop("lines")

        if not customer_ref:
            raise MappingMissing(f"Invoice {fields['invoice_number']} has no customer reference")
        customer_mapping = await self.storage.get_mapping_by_external(
            account_id, self.provider, SyncEntityType.CUSTOMER, customer_ref
        )
        if customer_mapping is None:
            raise MappingMissing(
                f"Invoice {fields['invoice_number']} references unmapped customer {customer_ref}"
            )
        fields["customer_id"] = customer_mapping.internal_id

        items = []
        for line in lines:
            product_id = None
            if line["item_ref"]:
                item_mapping = await self.storage.get_mapping_by_external(
                    account_id, self.provider, SyncEntityType.ITEM, line["item_ref"]
                )
                if item_mapping is None:
                    raise MappingMissing(
                        f"Invoice {fields['invoice_number']} references unmapped item "
                        f"{line['item_ref']}"
                    )
                product_id = item_mapping.internal_id
            items.append(
                InvoiceItem(
                    product_id=product_id,
                    description=line["description"],
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    amount=line["amount"],
                )
            )
        fields["items"] = items
        return fields

    # =========================================================================
    # Single-record sync
    # =========================================================================

    async def sync_entity(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        external_id: str,
        trigger: SyncTrigger = SyncTrigger.WEBHOOK,
    ) -> Optional[BusinessRecord]:
        """
        Re-sync one provider record, e.g. after a webhook notification.

        Writes exactly one audit entry, success or error.

        Returns:
            The stored local record, or None if it was skipped
        """
        operation = SyncOperation.WEBHOOK if trigger == SyncTrigger.WEBHOOK else SyncOperation.PULL
        try:
            raw = await self.provider_client.fetch_entity_by_id(
                account_id, entity_type, external_id
            )
            candidates = await self._unmapped_candidates(account_id, entity_type)
            outcome, record = await self._upsert_from_provider(
                account_id, entity_type, raw, candidates
            )
        except Exception as e:
            logger.warning(
                "entity_resync_failed",
                account_id=account_id,
                entity_type=entity_type.value,
                external_id=external_id,
                error=str(e),
            )
            await self.audit.record(
                account_id=account_id,
                provider=self.provider,
                operation=operation,
                status=SyncStatus.ERROR,
                entity_type=entity_type,
                external_id=external_id,
                trigger=trigger,
                error=e,
            )
            raise

        await self.audit.record(
            account_id=account_id,
            provider=self.provider,
            operation=operation,
            status=SyncStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=record.id if record else None,
            external_id=external_id,
            trigger=trigger,
        )
        logger.info(
            "entity_resynced",
            account_id=account_id,
            entity_type=entity_type.value,
            external_id=external_id,
            outcome=outcome,
        )
        return record

    # =========================================================================
    # Outbound push
    # =========================================================================

    async def push_entity(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        internal_id: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> ExternalMapping:
        """
        Create a local record on the provider and map it.

        Records that already have a mapping are not pushed again. An invoice
        push first pushes its customer and any unmapped products.

        Raises:
            LocalEntityNotFound: No such local record
            ProviderAPIError, token errors: the provider call failed
        """
        existing = await self.storage.get_mapping_by_internal(
            account_id, self.provider, entity_type, internal_id
        )
        if existing is not None:
            logger.info(
                "push_skipped_already_mapped",
                account_id=account_id,
                entity_type=entity_type.value,
                internal_id=internal_id,
                external_id=existing.external_id,
            )
            return existing

        try:
            record = await self.storage.get_entity(entity_type, account_id, internal_id)
            if record is None:
                raise LocalEntityNotFound(f"{entity_type.value} {internal_id} not found")

            payload = await self._outbound_payload(account_id, entity_type, record, trigger)
            created = await self.provider_client.create_entity(account_id, entity_type, payload)
            if not created.get("Id"):
                raise ValueError(f"Provider returned no Id for {entity_type.value}")

            mapping = ExternalMapping(
                account_id=account_id,
                provider=self.provider,
                entity_type=entity_type,
                internal_id=internal_id,
                external_id=str(created["Id"]),
                sync_token=created.get("SyncToken"),
            )
            await self.storage.upsert_mapping(mapping)
        except Exception as e:
            await self.audit.record(
                account_id=account_id,
                provider=self.provider,
                operation=SyncOperation.PUSH,
                status=SyncStatus.ERROR,
                entity_type=entity_type,
                entity_id=internal_id,
                direction=SyncDirection.OUTBOUND,
                trigger=trigger,
                error=e,
            )
            raise

        await self.audit.record(
            account_id=account_id,
            provider=self.provider,
            operation=SyncOperation.PUSH,
            status=SyncStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=internal_id,
            external_id=mapping.external_id,
            direction=SyncDirection.OUTBOUND,
            trigger=trigger,
        )
        logger.info(
            "entity_pushed",
            account_id=account_id,
            entity_type=entity_type.value,
            internal_id=internal_id,
            external_id=mapping.external_id,
        )
        return mapping

    async def _outbound_payload(
        self,
        account_id: str,
        entity_type: SyncEntityType,
        record: BusinessRecord,
        trigger: SyncTrigger,
    ) -> dict[str, Any]:
        if entity_type == SyncEntityType.CUSTOMER:
            return field_mapper.local_customer_to_qbo(record)
        if entity_type == SyncEntityType.ITEM:
            return field_mapper.local_product_to_qbo(record)

        customer_mapping = await self.push_entity(
            account_id, SyncEntityType.CUSTOMER, record.customer_id, trigger
        )
        item_refs: dict[str, str] = {}
        for item in record.items:
            if item.product_id and item.product_id not in item_refs:
                product_mapping = await self.push_entity(
                    account_id, SyncEntityType.ITEM, item.product_id, trigger
                )
                item_refs[item.product_id] = product_mapping.external_id
        return field_mapper.local_invoice_to_qbo(record, customer_mapping.external_id, item_refs)
