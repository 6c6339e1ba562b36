"""
Integration and external mapping models.

An Integration is one account's connection to one provider (OAuth tokens plus
the provider-side company id). An ExternalMapping links a local record to its
counterpart on the provider so later syncs update instead of duplicating.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .enums import Provider, SyncEntityType


class Integration(BaseModel):
    """
    A connection between an account and an external provider.

    At most one active row exists per (account_id, provider). The row is
    created by the OAuth callback, mutated on every token refresh and sync
    completion, and logically deleted on revoke (is_active=False, tokens
    cleared). It is never hard-deleted.

    Attributes:
        integration_id: Unique identifier for this integration
        account_id: Owning account (tenant)
        provider: External system this row connects to
        access_token: Current OAuth access token
        refresh_token: Current OAuth refresh token
        realm_id: QuickBooks company id used in API paths and webhook routing
        company_id: Optional provider-side company identifier
        is_active: False once the connection was revoked
        last_sync_at: Completion time of the last successful sync
        settings: Provider specific settings (free-form)
    """

    integration_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for this integration",
    )
    account_id: str = Field(description="Owning account (tenant)")
    provider: Provider = Field(description="External system this row connects to")
    access_token: Optional[str] = Field(default=None, description="OAuth access token")
    refresh_token: Optional[str] = Field(default=None, description="OAuth refresh token")
    realm_id: Optional[str] = Field(default=None, description="QuickBooks company (realm) id")
    company_id: Optional[str] = Field(default=None, description="Provider company identifier")
    is_active: bool = Field(default=True, description="False once the connection is revoked")
    last_sync_at: Optional[datetime] = Field(
        default=None, description="Completion time of the last successful sync"
    )
    settings: dict[str, Any] = Field(default_factory=dict, description="Provider settings")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_connected(self) -> bool:
        """Active and holding an access token."""
        return self.is_active and bool(self.access_token)


class ExternalMapping(BaseModel):
    """
    Link between a local record and its provider-side counterpart.

    Within (account_id, provider, entity_type) both internal_id and
    external_id are unique, so the relation is strictly one-to-one.
    """

    mapping_id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str = Field(description="Owning account")
    provider: Provider = Field(description="Provider holding the external record")
    entity_type: SyncEntityType = Field(description="Kind of record being linked")
    internal_id: str = Field(description="Local record id")
    external_id: str = Field(description="Provider record id")
    last_synced_at: datetime = Field(default_factory=datetime.utcnow)
    sync_token: Optional[str] = Field(
        default=None, description="Provider SyncToken seen at last sync"
    )

    @field_validator("internal_id", "external_id")
    @classmethod
    def validate_ids(cls, v: str) -> str:
        """Mapping ids must be non-blank."""
        if not v or not str(v).strip():
            raise ValueError("mapping ids must be non-empty")
        return str(v).strip()
