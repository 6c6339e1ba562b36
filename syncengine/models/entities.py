"""
Local business records touched by the sync engine.

Only the fields that take part in the QuickBooks field mapping are modelled;
the rest of the application schema is owned elsewhere.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .enums import InvoiceStatus, ProductType


class Customer(BaseModel):
    """A customer of the pest-control business."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    name: str = Field(description="Display name")
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = Field(default=None, description="Street line")
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Product(BaseModel):
    """A sellable product or service (a QuickBooks Item)."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    name: str
    description: Optional[str] = None
    type: ProductType = ProductType.SERVICE
    unit_price: Decimal = Field(default=Decimal("0"), description="Price per unit")
    qty_on_hand: Optional[Decimal] = None
    active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class InvoiceItem(BaseModel):
    """One line of an invoice."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    invoice_id: Optional[str] = None
    product_id: Optional[str] = None
    description: str = "QuickBooks Item"
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")


class Invoice(BaseModel):
    """
    An invoice with its line items.

    customer_id and every line's product_id point at local records. The sync
    executor only writes an invoice once all of those references resolve.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    customer_id: str
    invoice_number: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    notes: Optional[str] = None
    items: list[InvoiceItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ActivityLog(BaseModel):
    """User-visible activity feed entry (connections, deletions, schedule edits)."""

    activity_id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    activity_type: str = Field(description="snake_case activity name")
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
