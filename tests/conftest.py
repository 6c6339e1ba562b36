"""
Pytest configuration and shared fixtures for the sync engine test suite.

Provides model factories, an in-memory QuickBooks double (FakeQBOClient),
the wired component graph on top of InMemoryStorage, and an authenticated
TestClient.
"""

import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import pytest

os.environ["TESTING"] = "true"
os.environ.setdefault("DB_TYPE", "memory")
os.environ.setdefault("SCHEDULER_AUTOSTART", "false")

from syncengine.config import Settings
from syncengine.connectors.qbo_client import ProviderAPIError, QBOAuthError
from syncengine.models.entities import Customer, Invoice, InvoiceItem, Product
from syncengine.models.enums import (
    Provider,
    SyncEntityType,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from syncengine.models.integration import ExternalMapping, Integration
from syncengine.models.sync import SyncLogEntry
from syncengine.services import build_services
from syncengine.storage.memory import InMemoryStorage

ACCOUNT_ID = "acct_pest_001"
REALM_ID = "9130350000000001"
WEBHOOK_SECRET = "test-verifier-token"

# Wednesday 2026-10-14 11:00 in America/Los_Angeles
BUSINESS_HOURS_NOW = datetime(2026, 10, 14, 18, 0)
# Saturday 2026-10-17 11:00 in America/Los_Angeles
WEEKEND_NOW = datetime(2026, 10, 17, 18, 0)
# Tuesday 2026-10-13 22:00 in America/Los_Angeles
NIGHT_NOW = datetime(2026, 10, 14, 5, 0)


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "db_type": "memory",
        "qbo_webhook_verifier": WEBHOOK_SECRET,
        "qbo_retry_backoff_seconds": 0.0,
        "scheduler_autostart": False,
        "dev_mode": True,
        "testing": True,
    }
    values.update(overrides)
    return Settings(**values)


def make_integration(
    account_id: str = ACCOUNT_ID,
    realm_id: str = REALM_ID,
    access_token: Optional[str] = "access-valid",
    refresh_token: Optional[str] = "refresh-1",
    is_active: bool = True,
) -> Integration:
    return Integration(
        account_id=account_id,
        provider=Provider.QUICKBOOKS,
        access_token=access_token,
        refresh_token=refresh_token,
        realm_id=realm_id,
        company_id=realm_id,
        is_active=is_active,
    )


def make_customer(name: str = "Ada Lovelace", account_id: str = ACCOUNT_ID, **kwargs) -> Customer:
    return Customer(account_id=account_id, name=name, **kwargs)


def make_product(name: str = "Termite Treatment", account_id: str = ACCOUNT_ID, **kwargs) -> Product:
    kwargs.setdefault("unit_price", Decimal("150.00"))
    return Product(account_id=account_id, name=name, **kwargs)


def make_invoice(
    customer_id: str,
    product_id: Optional[str] = None,
    invoice_number: str = "INV-1001",
    account_id: str = ACCOUNT_ID,
) -> Invoice:
    return Invoice(
        account_id=account_id,
        customer_id=customer_id,
        invoice_number=invoice_number,
        total_amount=Decimal("150.00"),
        subtotal=Decimal("150.00"),
        items=[
            InvoiceItem(
                product_id=product_id,
                description="Quarterly service",
                quantity=Decimal("1"),
                unit_price=Decimal("150.00"),
                amount=Decimal("150.00"),
            )
        ],
    )


def make_mapping(
    entity_type: SyncEntityType,
    internal_id: str,
    external_id: str,
    account_id: str = ACCOUNT_ID,
) -> ExternalMapping:
    return ExternalMapping(
        account_id=account_id,
        provider=Provider.QUICKBOOKS,
        entity_type=entity_type,
        internal_id=internal_id,
        external_id=external_id,
    )


def make_run_entry(
    created_at: datetime,
    trigger: SyncTrigger = SyncTrigger.SCHEDULED,
    status: SyncStatus = SyncStatus.SUCCESS,
    provider: Provider = Provider.QUICKBOOKS,
    account_id: str = ACCOUNT_ID,
    error_code: Optional[str] = None,
    duration_ms: int = 1200,
) -> SyncLogEntry:
    return SyncLogEntry(
        account_id=account_id,
        provider=provider,
        operation=SyncOperation.PULL,
        status=status,
        trigger=trigger,
        error_code=error_code,
        error_message="failed" if status == SyncStatus.ERROR else None,
        records_processed=10,
        records_failed=0,
        duration_ms=duration_ms,
        created_at=created_at,
    )


def qbo_customer(entity_id: str, name: str, **extra: Any) -> dict:
    record = {"Id": entity_id, "DisplayName": name, "SyncToken": "0", "Active": True}
    record.update(extra)
    return record


def qbo_item(entity_id: str, name: str, price: float = 150.0, item_type: str = "Service") -> dict:
    return {
        "Id": entity_id,
        "Name": name,
        "Type": item_type,
        "UnitPrice": price,
        "SyncToken": "0",
        "Active": True,
    }


def qbo_invoice(
    entity_id: str,
    customer_ref: str,
    item_ref: Optional[str],
    doc_number: Optional[str] = None,
    balance: float = 150.0,
) -> dict:
    detail: dict[str, Any] = {"Qty": 1, "UnitPrice": 150.0}
    if item_ref is not None:
        detail["ItemRef"] = {"value": item_ref}
    return {
        "Id": entity_id,
        "DocNumber": doc_number,
        "SyncToken": "0",
        "TxnDate": "2026-10-01",
        "DueDate": "2026-10-31",
        "CustomerRef": {"value": customer_ref},
        "TotalAmt": 150.0,
        "Balance": balance,
        "TxnTaxDetail": {"TotalTax": 0},
        "Line": [
            {
                "Amount": 150.0,
                "DetailType": "SalesItemLineDetail",
                "Description": "Quarterly service",
                "SalesItemLineDetail": detail,
            },
            {"Amount": 150.0, "DetailType": "SubTotalLineDetail", "SubTotalLineDetail": {}},
        ],
    }


# ---------------------------------------------------------------------------
# QuickBooks double
# ---------------------------------------------------------------------------


class FakeQBOClient:
    """
    In-memory stand-in for QBOClient.

    Entities live in ``entities[name][id]``. Tokens in ``valid_tokens`` pass
    validation; ``refresh_result`` is what the next refresh returns (None
    makes the refresh fail). ``query_failures`` maps an entity name to an
    exception raised by the next query of that type.
    """

    def __init__(self) -> None:
        self.entities: dict[str, dict[str, dict]] = {"Customer": {}, "Item": {}, "Invoice": {}}
        self.valid_tokens: set[str] = {"access-valid"}
        self.refresh_result: Optional[dict] = {
            "access_token": "access-refreshed",
            "refresh_token": "refresh-2",
        }
        self.query_failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self.created: list[tuple[str, dict]] = []
        self.revoked: list[str] = []
        self.revoke_error: Optional[Exception] = None
        self._next_id = 1000

    def add(self, entity_type: str, record: dict) -> dict:
        self.entities[entity_type][str(record["Id"])] = record
        return record

    def get_authorization_url(self, state: str, scopes: Optional[list[str]] = None) -> str:
        return f"https://appcenter.intuit.com/connect/oauth2?state={state}"

    async def exchange_code(self, auth_code: str) -> dict:
        self.calls.append(("exchange_code", auth_code))
        if auth_code == "bad-code":
            raise QBOAuthError("oauth_code_exchange failed: invalid_grant")
        return {"access_token": "access-valid", "refresh_token": "refresh-1", "expires_in": 3600}

    async def refresh_tokens(self, refresh_token: str) -> dict:
        self.calls.append(("refresh_tokens", refresh_token))
        if self.refresh_result is None:
            raise QBOAuthError("token_refresh failed: invalid_grant")
        self.valid_tokens.add(self.refresh_result["access_token"])
        return dict(self.refresh_result)

    async def revoke_token(self, token: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)

    async def get_company_info(self, access_token: str, realm_id: str, validate: bool = False):
        self.calls.append(("get_company_info", access_token))
        if access_token not in self.valid_tokens:
            raise ProviderAPIError(401, "AuthenticationFailed")
        return {"CompanyName": "Acme Pest Control", "Id": realm_id}

    async def query_entities(self, access_token, realm_id, entity_type, since=None):
        self.calls.append(("query_entities", entity_type))
        failures = self.query_failures.get(entity_type)
        if failures:
            raise failures.pop(0)
        return list(self.entities[entity_type].values())

    async def get_entity(self, access_token, realm_id, entity_type, entity_id):
        self.calls.append(("get_entity", entity_type, entity_id))
        record = self.entities[entity_type].get(str(entity_id))
        if record is None:
            raise ProviderAPIError(404, f"{entity_type} {entity_id} not found")
        return record

    async def create_entity(self, access_token, realm_id, entity_type, payload):
        self._next_id += 1
        record = {**payload, "Id": str(self._next_id), "SyncToken": "0"}
        self.created.append((entity_type, payload))
        self.entities[entity_type][record["Id"]] = record
        return record

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def fake_qbo() -> FakeQBOClient:
    return FakeQBOClient()


@pytest.fixture
def services(settings, storage, fake_qbo):
    """Component graph wired on InMemoryStorage and FakeQBOClient."""
    return build_services(settings=settings, storage=storage, qbo_client=fake_qbo)


@pytest.fixture
async def connected(storage):
    """Stored active QuickBooks integration for ACCOUNT_ID."""
    return await storage.upsert_integration(make_integration())


@pytest.fixture
def auth_headers() -> dict[str, str]:
    from syncengine.auth.jwt import create_access_token

    return {"Authorization": f"Bearer {create_access_token({'sub': ACCOUNT_ID})}"}


@pytest.fixture
def client(services):
    """TestClient over the app wired to the ``services`` fixture."""
    from fastapi.testclient import TestClient

    from syncengine.main import create_app

    with TestClient(create_app(services)) as test_client:
        yield test_client
