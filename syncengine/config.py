"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # QuickBooks OAuth2
    intuit_client_id: str = Field(default="", description="Intuit OAuth2 client ID")
    intuit_client_secret: str = Field(default="", description="Intuit OAuth2 client secret")
    intuit_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/connection/callback",
        description="OAuth2 redirect URI",
    )
    intuit_env: str = Field(default="sandbox", description="Intuit environment (sandbox|production)")
    qbo_webhook_verifier: str = Field(
        default="", description="Webhook verifier token from the Intuit developer portal"
    )

    # QuickBooks HTTP behaviour
    qbo_http_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    qbo_validation_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for the token validation call"
    )
    qbo_max_retries: int = Field(
        default=3, ge=1, le=10, description="Attempts per request for transient failures"
    )
    qbo_retry_backoff_seconds: float = Field(
        default=1.0, ge=0, description="Base delay for exponential retry backoff"
    )
    qbo_page_size: int = Field(default=1000, ge=1, le=1000, description="MAXRESULTS per query page")
    qbo_minor_version: int = Field(default=65, description="QBO API minorversion parameter")

    # Security
    jwt_secret: str = Field(
        default="change-this-to-a-secure-random-string-in-production",
        description="JWT signing secret",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_minutes: int = Field(default=1440, description="JWT expiration (24h)")
    oauth_state_ttl_minutes: int = Field(default=15, description="OAuth state token lifetime")

    # Database
    db_type: str = Field(default="duckdb", description="Storage backend (duckdb|memory)")
    db_path: str = Field(default="./data/syncengine.duckdb", description="DuckDB file path")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Scheduling
    scheduler_autostart: bool = Field(
        default=True, description="Start schedule timers on application startup"
    )
    business_timezone: str = Field(
        default="America/Los_Angeles", description="Timezone of the business-hours window"
    )
    business_hours_start: int = Field(default=7, ge=0, le=23, description="Window start hour")
    business_hours_end: int = Field(default=19, ge=1, le=24, description="Window end hour (exclusive)")
    quickbooks_sync_interval_minutes: int = Field(
        default=60, ge=1, description="Default QuickBooks sync interval"
    )
    quickbooks_sync_enabled: bool = Field(
        default=False, description="Enable the QuickBooks schedule when no stored config exists"
    )
    quickbooks_retry_attempts: int = Field(default=3, ge=0, description="In-firing retries")
    recent_invoice_days: int = Field(
        default=0, ge=0, description="Limit invoice pulls to the last N days (0 = all)"
    )

    # Recommendations
    recommendation_window_days: int = Field(
        default=7, ge=1, description="History window analysed for recommendations"
    )
    manual_sync_threshold: int = Field(
        default=10, ge=1, description="Manual runs in the window that indicate under-scheduling"
    )

    # Webhooks
    webhook_dedup_window: int = Field(
        default=5000, ge=0, description="Remembered webhook idempotency keys"
    )

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("intuit_env")
    @classmethod
    def validate_intuit_env(cls, v: str) -> str:
        """Only sandbox and production exist on the Intuit side."""
        value = v.strip().lower()
        if value not in {"sandbox", "production"}:
            raise ValueError("intuit_env must be 'sandbox' or 'production'")
        return value

    @property
    def intuit_auth_url(self) -> str:
        """Intuit authorization endpoint (same host for both environments)."""
        return "https://appcenter.intuit.com/connect/oauth2"

    @property
    def intuit_token_url(self) -> str:
        """Intuit token endpoint."""
        return "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"

    @property
    def intuit_revoke_url(self) -> str:
        """Intuit token revocation endpoint."""
        return "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

    @property
    def intuit_api_base_url(self) -> str:
        """Construct QuickBooks API base URL."""
        if self.intuit_env == "production":
            return "https://quickbooks.api.intuit.com"
        return "https://sandbox-quickbooks.api.intuit.com"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
