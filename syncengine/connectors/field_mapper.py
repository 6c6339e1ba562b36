"""Bidirectional field mapping between QuickBooks Online and local records.

Inbound converters never raise on missing optional fields; absent values map
to None. The matchers implement first-sync linking of provider records to
existing local records that have no mapping yet.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from syncengine.models.entities import Customer, Invoice, Product
from syncengine.models.enums import InvoiceStatus, ProductType, SyncEntityType

# Local entity type -> QuickBooks entity name
QBO_ENTITY_NAMES: dict[SyncEntityType, str] = {
    SyncEntityType.CUSTOMER: "Customer",
    SyncEntityType.ITEM: "Item",
    SyncEntityType.INVOICE: "Invoice",
}

# QuickBooks field path -> local attribute
CUSTOMER_FIELD_MAP: dict[str, str] = {
    "CompanyName": "company_name",
    "PrimaryEmailAddr.Address": "email",
    "PrimaryPhone.FreeFormNumber": "phone",
    "BillAddr.Line1": "address",
    "BillAddr.City": "city",
    "BillAddr.CountrySubDivisionCode": "state",
    "BillAddr.PostalCode": "zip_code",
    "BillAddr.Country": "country",
}

LOCAL_TO_QBO_CUSTOMER: dict[str, str] = {v: k for k, v in CUSTOMER_FIELD_MAP.items()}

ITEM_FIELD_MAP: dict[str, str] = {
    "Name": "name",
    "Description": "description",
}

LOCAL_TO_QBO_ITEM: dict[str, str] = {v: k for k, v in ITEM_FIELD_MAP.items()}

DEFAULT_LINE_DESCRIPTION = "QuickBooks Item"
DEFAULT_INCOME_ACCOUNT = "1"

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"\D")


def _get_path(data: dict, path: str) -> Any:
    """Read a dotted path ("BillAddr.City") from a nested dict."""
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _set_path(data: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        data = data.setdefault(part, {})
    data[parts[-1]] = value


def _decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _ref(data: dict, key: str) -> Optional[str]:
    value = _get_path(data, f"{key}.value")
    return str(value) if value not in (None, "") else None


# =============================================================================
# Inbound: QuickBooks -> local
# =============================================================================


def qbo_customer_to_local(qbo_data: dict) -> dict:
    """Convert a QuickBooks Customer to local Customer fields."""
    result: dict[str, Any] = {
        local_key: _get_path(qbo_data, qbo_key)
        for qbo_key, local_key in CUSTOMER_FIELD_MAP.items()
    }
    result["name"] = (
        qbo_data.get("DisplayName")
        or qbo_data.get("Name")
        or qbo_data.get("CompanyName")
        or f"QuickBooks Customer {qbo_data.get('Id', '')}".strip()
    )
    result["active"] = qbo_data.get("Active", True) is not False
    return result


def qbo_item_to_local(qbo_data: dict) -> dict:
    """Convert a QuickBooks Item to local Product fields."""
    result: dict[str, Any] = {
        local_key: _get_path(qbo_data, qbo_key) for qbo_key, local_key in ITEM_FIELD_MAP.items()
    }
    result["name"] = result["name"] or f"QuickBooks Item {qbo_data.get('Id', '')}".strip()
    result["unit_price"] = _decimal(qbo_data.get("UnitPrice"))
    result["qty_on_hand"] = _decimal(qbo_data.get("QtyOnHand"), default=None)
    item_type = str(qbo_data.get("Type") or "").lower()
    result["type"] = ProductType.SERVICE if item_type == "service" else ProductType.PRODUCT
    result["active"] = qbo_data.get("Active", True) is not False
    return result


def qbo_invoice_to_local(qbo_data: dict) -> dict:
    """
    Convert a QuickBooks Invoice to local Invoice fields.

    References stay as QuickBooks ids: ``customer_ref`` and each line's
    ``item_ref`` must be resolved through the mapping table by the caller.
    Only SalesItemLineDetail lines become invoice items.
    """
    total = _decimal(qbo_data.get("TotalAmt"))
    tax = _decimal(_get_path(qbo_data, "TxnTaxDetail.TotalTax"))
    balance = _decimal(qbo_data.get("Balance"))

    lines = []
    subtotal: Optional[Decimal] = None
    for line in qbo_data.get("Line") or []:
        detail_type = line.get("DetailType")
        if detail_type == "SubTotalLineDetail":
            subtotal = _decimal(line.get("Amount"))
            continue
        if detail_type != "SalesItemLineDetail":
            continue
        detail = line.get("SalesItemLineDetail") or {}
        lines.append(
            {
                "item_ref": _ref(detail, "ItemRef"),
                "description": line.get("Description") or DEFAULT_LINE_DESCRIPTION,
                "quantity": _decimal(detail.get("Qty"), default=Decimal("1")),
                "unit_price": _decimal(detail.get("UnitPrice")),
                "amount": _decimal(line.get("Amount")),
            }
        )

    if subtotal is None:
        subtotal = total - tax

    return {
        "customer_ref": _ref(qbo_data, "CustomerRef"),
        "invoice_number": qbo_data.get("DocNumber") or f"QB-{qbo_data.get('Id', '')}",
        "invoice_date": _date(qbo_data.get("TxnDate")),
        "due_date": _date(qbo_data.get("DueDate")),
        "status": InvoiceStatus.SENT if balance > 0 else InvoiceStatus.PAID,
        "subtotal": subtotal,
        "tax_amount": tax,
        "total_amount": total,
        "notes": _get_path(qbo_data, "CustomerMemo.value"),
        "lines": lines,
    }


# =============================================================================
# Outbound: local -> QuickBooks
# =============================================================================


def local_customer_to_qbo(customer: Customer) -> dict:
    """Convert a local Customer to a QuickBooks create payload."""
    result: dict[str, Any] = {"DisplayName": customer.name}
    for local_key, qbo_key in LOCAL_TO_QBO_CUSTOMER.items():
        val = getattr(customer, local_key, None)
        if val is not None:
            _set_path(result, qbo_key, val)
    return result


def local_product_to_qbo(product: Product, income_account: str = DEFAULT_INCOME_ACCOUNT) -> dict:
    """Convert a local Product to a QuickBooks Item create payload."""
    result: dict[str, Any] = {}
    for local_key, qbo_key in LOCAL_TO_QBO_ITEM.items():
        val = getattr(product, local_key, None)
        if val is not None:
            result[qbo_key] = val
    result["Type"] = "Service" if product.type == ProductType.SERVICE else "NonInventory"
    result["UnitPrice"] = float(product.unit_price)
    result["IncomeAccountRef"] = {"value": income_account}
    return result


def local_invoice_to_qbo(
    invoice: Invoice, customer_ref: str, item_refs: dict[str, str]
) -> dict:
    """
    Convert a local Invoice to a QuickBooks create payload.

    Args:
        invoice: Local invoice
        customer_ref: QuickBooks id of the invoice's customer
        item_refs: Local product id -> QuickBooks item id for every line
    """
    lines = []
    for item in invoice.items:
        detail: dict[str, Any] = {
            "Qty": float(item.quantity),
            "UnitPrice": float(item.unit_price),
        }
        if item.product_id:
            detail["ItemRef"] = {"value": item_refs[item.product_id]}
        lines.append(
            {
                "Amount": float(item.amount),
                "DetailType": "SalesItemLineDetail",
                "Description": item.description,
                "SalesItemLineDetail": detail,
            }
        )

    result: dict[str, Any] = {
        "CustomerRef": {"value": customer_ref},
        "DocNumber": invoice.invoice_number,
        "Line": lines,
    }
    if invoice.invoice_date:
        result["TxnDate"] = invoice.invoice_date.isoformat()
    if invoice.due_date:
        result["DueDate"] = invoice.due_date.isoformat()
    if invoice.notes:
        result["CustomerMemo"] = {"value": invoice.notes}
    return result


# =============================================================================
# First-sync matching
# =============================================================================


def normalize_name(value: Optional[str]) -> str:
    """Lowercase, drop punctuation and collapse whitespace; word boundaries are kept."""
    without_punctuation = _PUNCTUATION.sub("", (value or "").lower())
    return _WHITESPACE.sub(" ", without_punctuation).strip()


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_phone(value: Optional[str]) -> str:
    """Digits only, so "(555) 010-2030" and "555.010.2030" compare equal."""
    return _NON_DIGIT.sub("", value or "")


def match_customer(candidates: Iterable[Customer], remote: dict) -> Optional[Customer]:
    """
    Find the local customer a provider customer should be linked to.

    Tried in order, first match wins: name or company name, email, phone.

    Args:
        candidates: Local customers that have no mapping yet
        remote: Provider customer already converted with qbo_customer_to_local
    """
    candidates = list(candidates)

    remote_names = {normalize_name(remote.get("name")), normalize_name(remote.get("company_name"))}
    remote_names.discard("")
    if remote_names:
        for customer in candidates:
            local_names = {normalize_name(customer.name), normalize_name(customer.company_name)}
            if remote_names & local_names - {""}:
                return customer

    remote_email = normalize_email(remote.get("email"))
    if remote_email:
        for customer in candidates:
            if normalize_email(customer.email) == remote_email:
                return customer

    remote_phone = normalize_phone(remote.get("phone"))
    if remote_phone:
        for customer in candidates:
            if normalize_phone(customer.phone) == remote_phone:
                return customer

    return None


def match_product(candidates: Iterable[Product], remote: dict) -> Optional[Product]:
    """Case-insensitive name match."""
    name = normalize_name(remote.get("name"))
    if not name:
        return None
    for product in candidates:
        if normalize_name(product.name) == name:
            return product
    return None


def match_invoice(candidates: Iterable[Invoice], remote: dict) -> Optional[Invoice]:
    """Exact invoice number match."""
    number = (remote.get("invoice_number") or "").strip()
    if not number:
        return None
    for invoice in candidates:
        if invoice.invoice_number.strip() == number:
            return invoice
    return None
