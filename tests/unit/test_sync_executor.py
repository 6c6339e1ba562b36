"""
Unit tests for SyncExecutor: full pulls, single-record re-syncs and pushes.
"""

import pytest

from syncengine.connectors.qbo_client import ProviderAPIError
from syncengine.connectors.token_manager import IntegrationNotFound
from syncengine.models.enums import (
    Provider,
    SyncDirection,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from syncengine.sync.executor import LocalEntityNotFound, SyncAlreadyRunning
from tests.conftest import (
    ACCOUNT_ID,
    make_customer,
    make_invoice,
    make_mapping,
    make_product,
    qbo_customer,
    qbo_invoice,
    qbo_item,
)

QB = Provider.QUICKBOOKS


@pytest.fixture
def executor(services):
    return services.executor


def seed_provider(fake_qbo):
    fake_qbo.add("Customer", qbo_customer("1", "Ada Lovelace"))
    fake_qbo.add("Customer", qbo_customer("2", "Grace Hopper"))
    fake_qbo.add("Item", qbo_item("10", "Termite Treatment"))
    fake_qbo.add("Invoice", qbo_invoice("100", "1", "10", doc_number="1001"))
    fake_qbo.add("Invoice", qbo_invoice("101", "2", "10", doc_number="1002", balance=0))


# ============================================================================
# Full sync
# ============================================================================


class TestFullSync:
    async def test_first_sync_creates_records_and_mappings(
        self, executor, storage, fake_qbo, connected
    ):
        seed_provider(fake_qbo)

        result = await executor.full_sync(ACCOUNT_ID)

        customers = await storage.list_entities(SyncEntityType.CUSTOMER, ACCOUNT_ID)
        products = await storage.list_entities(SyncEntityType.ITEM, ACCOUNT_ID)
        invoices = await storage.list_entities(SyncEntityType.INVOICE, ACCOUNT_ID)
        assert {c.name for c in customers} == {"Ada Lovelace", "Grace Hopper"}
        assert len(products) == 1
        assert len(invoices) == 2
        assert result.records_processed == 5
        assert result.records_failed == 0
        assert [p.created for p in result.phases] == [2, 1, 2]

    async def test_entities_fetched_in_dependency_order(self, executor, fake_qbo, connected):
        seed_provider(fake_qbo)

        await executor.full_sync(ACCOUNT_ID)

        queried = [c[1] for c in fake_qbo.calls if c[0] == "query_entities"]
        assert queried == ["Customer", "Item", "Invoice"]

    async def test_invoice_references_resolve_to_local_ids(
        self, executor, storage, fake_qbo, connected
    ):
        seed_provider(fake_qbo)

        await executor.full_sync(ACCOUNT_ID)

        customer_ids = {c.id for c in await storage.list_entities(SyncEntityType.CUSTOMER, ACCOUNT_ID)}
        product_ids = {p.id for p in await storage.list_entities(SyncEntityType.ITEM, ACCOUNT_ID)}
        for invoice in await storage.list_entities(SyncEntityType.INVOICE, ACCOUNT_ID):
            assert invoice.customer_id in customer_ids
            for item in invoice.items:
                assert item.product_id in product_ids
                assert item.invoice_id == invoice.id

    async def test_second_sync_updates_instead_of_duplicating(
        self, executor, storage, fake_qbo, connected
    ):
        seed_provider(fake_qbo)
        await executor.full_sync(ACCOUNT_ID)
        fake_qbo.add("Customer", qbo_customer("1", "Ada King"))

        result = await executor.full_sync(ACCOUNT_ID)

        customers = await storage.list_entities(SyncEntityType.CUSTOMER, ACCOUNT_ID)
        assert len(customers) == 2
        assert "Ada King" in {c.name for c in customers}
        assert result.phases[0].updated == 2
        assert result.phases[0].created == 0

    async def test_existing_local_customer_is_linked(self, executor, storage, fake_qbo, connected):
        local = make_customer("Ada Lovelace", phone="555-0100")
        await storage.save_entity(SyncEntityType.CUSTOMER, local)
        fake_qbo.add("Customer", qbo_customer("1", "ada lovelace"))

        result = await executor.full_sync(ACCOUNT_ID)

        customers = await storage.list_entities(SyncEntityType.CUSTOMER, ACCOUNT_ID)
        assert len(customers) == 1
        mapping = await storage.get_mapping_by_external(ACCOUNT_ID, QB, SyncEntityType.CUSTOMER, "1")
        assert mapping.internal_id == local.id
        assert result.phases[0].linked == 1

    async def test_two_remote_records_never_link_to_same_local(
        self, executor, storage, fake_qbo, connected
    ):
        await storage.save_entity(SyncEntityType.CUSTOMER, make_customer("Ada"))
        fake_qbo.add("Customer", qbo_customer("1", "Ada"))
        fake_qbo.add("Customer", qbo_customer("2", "Ada"))

        await executor.full_sync(ACCOUNT_ID)

        mappings = await storage.list_mappings(ACCOUNT_ID, QB, SyncEntityType.CUSTOMER)
        assert len({m.internal_id for m in mappings}) == 2

    async def test_inactive_unmapped_customer_skipped(self, executor, storage, fake_qbo, connected):
        fake_qbo.add("Customer", qbo_customer("1", "Old Client", Active=False))

        result = await executor.full_sync(ACCOUNT_ID)

        assert await storage.list_entities(SyncEntityType.CUSTOMER, ACCOUNT_ID) == []
        assert result.phases[0].skipped == 1

    async def test_unresolvable_invoice_fails_alone(self, executor, storage, fake_qbo, connected):
        seed_provider(fake_qbo)
        fake_qbo.add("Invoice", qbo_invoice("102", "999", "10", doc_number="1003"))

        result = await executor.full_sync(ACCOUNT_ID)

        invoices = await storage.list_entities(SyncEntityType.INVOICE, ACCOUNT_ID)
        assert {i.invoice_number for i in invoices} == {"1001", "1002"}
        assert result.records_failed == 1
        assert result.errors[0]["error_code"] == "mapping_missing"
        assert result.errors[0]["external_id"] == "102"

        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        record_errors = [e for e in logs if not e.is_run_summary]
        assert len(record_errors) == 1
        assert record_errors[0].error_code == "mapping_missing"
        summary = [e for e in logs if e.is_run_summary][0]
        assert summary.status == SyncStatus.SUCCESS
        assert summary.records_failed == 1

    async def test_failure_mid_phase_does_not_stop_batch(
        self, executor, storage, fake_qbo, connected
    ):
        fake_qbo.add("Customer", qbo_customer("1", "Ada Lovelace"))
        fake_qbo.add("Item", qbo_item("10", "Termite Treatment"))
        for n in range(1, 6):
            customer_ref = "999" if n == 2 else "1"
            fake_qbo.add("Invoice", qbo_invoice(str(100 + n), customer_ref, "10", doc_number=f"D{n}"))

        result = await executor.full_sync(ACCOUNT_ID)

        mapped = {
            m.external_id
            for m in await storage.list_mappings(ACCOUNT_ID, QB, SyncEntityType.INVOICE)
        }
        assert mapped == {"101", "103", "104", "105"}
        assert result.phases[2].failed == 1
        assert result.errors[0]["external_id"] == "102"

    async def test_similar_names_not_linked(self, executor, storage, fake_qbo, connected):
        local = await storage.save_entity(SyncEntityType.CUSTOMER, make_customer("Ann E. Smith"))
        fake_qbo.add("Customer", qbo_customer("1", "Anne Smith"))

        result = await executor.full_sync(ACCOUNT_ID)

        customers = await storage.list_entities(SyncEntityType.CUSTOMER, ACCOUNT_ID)
        assert sorted(c.name for c in customers) == ["Ann E. Smith", "Anne Smith"]
        assert result.phases[0].linked == 0
        assert result.phases[0].created == 1
        assert (
            await storage.get_mapping_by_internal(ACCOUNT_ID, QB, SyncEntityType.CUSTOMER, local.id)
            is None
        )

    async def test_success_marks_integration_synced(self, executor, storage, fake_qbo, connected):
        seed_provider(fake_qbo)

        result = await executor.full_sync(ACCOUNT_ID)

        integration = await storage.get_integration(ACCOUNT_ID, QB)
        assert integration.last_sync_at == result.completed_at

    async def test_provider_failure_aborts_run(self, executor, storage, fake_qbo, connected):
        seed_provider(fake_qbo)
        fake_qbo.query_failures["Item"] = [ProviderAPIError(500, "boom")]

        with pytest.raises(ProviderAPIError):
            await executor.full_sync(ACCOUNT_ID)

        summaries = await storage.read_sync_logs(account_id=ACCOUNT_ID, run_summaries_only=True)
        assert summaries[0].status == SyncStatus.ERROR
        assert summaries[0].error_code == "provider_api_error"
        integration = await storage.get_integration(ACCOUNT_ID, QB)
        assert integration.last_sync_at is None
        assert not executor.is_running(ACCOUNT_ID)

    async def test_missing_integration_recorded_as_not_connected(self, executor, storage):
        with pytest.raises(IntegrationNotFound):
            await executor.full_sync(ACCOUNT_ID)

        summaries = await storage.read_sync_logs(account_id=ACCOUNT_ID, run_summaries_only=True)
        assert summaries[0].error_code == "not_connected"

    async def test_overlapping_run_rejected(self, executor, connected):
        executor._running.add(ACCOUNT_ID)

        with pytest.raises(SyncAlreadyRunning):
            await executor.full_sync(ACCOUNT_ID)

    async def test_run_summary_records_trigger(self, executor, storage, fake_qbo, connected):
        await executor.full_sync(ACCOUNT_ID, trigger=SyncTrigger.SCHEDULED)

        summaries = await storage.read_sync_logs(account_id=ACCOUNT_ID, run_summaries_only=True)
        assert summaries[0].trigger == SyncTrigger.SCHEDULED
        assert summaries[0].operation == SyncOperation.PULL


# ============================================================================
# Single-record sync
# ============================================================================


class TestSyncEntity:
    async def test_resync_writes_exactly_one_entry(self, executor, storage, fake_qbo, connected):
        fake_qbo.add("Customer", qbo_customer("1", "Ada"))

        record = await executor.sync_entity(ACCOUNT_ID, SyncEntityType.CUSTOMER, "1")

        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        assert len(logs) == 1
        assert logs[0].operation == SyncOperation.WEBHOOK
        assert logs[0].status == SyncStatus.SUCCESS
        assert logs[0].entity_id == record.id
        assert logs[0].external_id == "1"

    async def test_resync_failure_logged_and_raised(self, executor, storage, connected):
        with pytest.raises(ProviderAPIError):
            await executor.sync_entity(ACCOUNT_ID, SyncEntityType.INVOICE, "404")

        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        assert len(logs) == 1
        assert logs[0].status == SyncStatus.ERROR


# ============================================================================
# Outbound push
# ============================================================================


class TestPushEntity:
    async def test_push_customer_creates_mapping(self, executor, storage, fake_qbo, connected):
        customer = make_customer("Ada", email="ada@example.com")
        await storage.save_entity(SyncEntityType.CUSTOMER, customer)

        mapping = await executor.push_entity(ACCOUNT_ID, SyncEntityType.CUSTOMER, customer.id)

        assert fake_qbo.created[0][0] == "Customer"
        stored = await storage.get_mapping_by_internal(
            ACCOUNT_ID, QB, SyncEntityType.CUSTOMER, customer.id
        )
        assert stored.external_id == mapping.external_id
        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        assert logs[0].operation == SyncOperation.PUSH
        assert logs[0].direction == SyncDirection.OUTBOUND

    async def test_push_already_mapped_is_noop(self, executor, storage, fake_qbo, connected):
        customer = make_customer("Ada")
        await storage.save_entity(SyncEntityType.CUSTOMER, customer)
        await storage.upsert_mapping(make_mapping(SyncEntityType.CUSTOMER, customer.id, "55"))

        mapping = await executor.push_entity(ACCOUNT_ID, SyncEntityType.CUSTOMER, customer.id)

        assert mapping.external_id == "55"
        assert fake_qbo.created == []

    async def test_push_invoice_pushes_dependencies_first(
        self, executor, storage, fake_qbo, connected
    ):
        customer = make_customer("Ada")
        product = make_product("Ant Spray")
        invoice = make_invoice(customer.id, product.id)
        await storage.save_entity(SyncEntityType.CUSTOMER, customer)
        await storage.save_entity(SyncEntityType.ITEM, product)
        await storage.save_entity(SyncEntityType.INVOICE, invoice)

        await executor.push_entity(ACCOUNT_ID, SyncEntityType.INVOICE, invoice.id)

        assert [c[0] for c in fake_qbo.created] == ["Customer", "Item", "Invoice"]
        customer_mapping = await storage.get_mapping_by_internal(
            ACCOUNT_ID, QB, SyncEntityType.CUSTOMER, customer.id
        )
        invoice_payload = fake_qbo.created[2][1]
        assert invoice_payload["CustomerRef"] == {"value": customer_mapping.external_id}

    async def test_push_missing_record_raises(self, executor, storage, connected):
        with pytest.raises(LocalEntityNotFound):
            await executor.push_entity(ACCOUNT_ID, SyncEntityType.ITEM, "nope")

        logs = await storage.read_sync_logs(account_id=ACCOUNT_ID)
        assert logs[0].status == SyncStatus.ERROR
        assert logs[0].error_code == "entity_not_found"
