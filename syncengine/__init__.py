"""
Integration sync engine for the field-operations platform.

Keeps customers, items/products and invoices consistent between the local
business records and QuickBooks Online: OAuth token lifecycle, scheduled and
webhook-driven syncs, and an append-only sync audit trail.
"""

__version__ = "0.1.0"
