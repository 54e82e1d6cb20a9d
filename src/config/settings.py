"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Mock modes enable local development without external services.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "Coach Messaging API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys accepted for the dispatch trigger."
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="COACHING",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="MESSAGING",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real Snowflake connection. Enables local dev without DB."
    )

    # Twilio Configuration
    twilio_account_sid: str = Field(
        default="",
        description="Twilio account SID"
    )
    twilio_auth_token: str = Field(
        default="",
        description="Twilio auth token"
    )
    twilio_from_number: Optional[str] = Field(
        default=None,
        description="E.164 sender number for outbound SMS"
    )
    twilio_messaging_service_sid: Optional[str] = Field(
        default=None,
        description="Messaging service SID; takes precedence over the from number"
    )
    twilio_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound on one provider call. A timeout counts as a failed send."
    )
    twilio_mock_mode: bool = Field(
        default=False,
        description="Record messages in memory instead of sending them."
    )

    # Dispatch Behavior
    dispatch_worker_id: Optional[str] = Field(
        default=None,
        description="Identifier written into claim markers. Defaults to host:pid."
    )
    dispatch_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between runs when the worker loops in-process."
    )
    dispatch_max_attempts: int = Field(
        default=5,
        description="Failed attempts after which a scheduled message is marked failed."
    )
    dispatch_claim_ttl_minutes: int = Field(
        default=10,
        description="Claims older than this are treated as abandoned and failed."
    )
    dispatch_stale_after_hours: int = Field(
        default=48,
        description="Messages overdue by more than this are failed instead of sent. 0 disables."
    )
    dispatch_keep_sent: bool = Field(
        default=False,
        description="Keep delivered rows as status 'sent' instead of deleting them."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def dispatch_claim_ttl(self) -> timedelta:
        return timedelta(minutes=self.dispatch_claim_ttl_minutes)

    @property
    def dispatch_stale_after(self) -> Optional[timedelta]:
        if self.dispatch_stale_after_hours <= 0:
            return None
        return timedelta(hours=self.dispatch_stale_after_hours)

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on whether we're in mock mode.
        """
        missing = []

        # Snowflake only required if not in mock mode
        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            # Need either password or private key
            if (
                not self.snowflake_password
                and not self.snowflake_private_key_path
                and not self.snowflake_private_key_base64
            ):
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        # Twilio only required if not in mock mode
        if not self.twilio_mock_mode:
            if not self.twilio_account_sid:
                missing.append("TWILIO_ACCOUNT_SID")
            if not self.twilio_auth_token:
                missing.append("TWILIO_AUTH_TOKEN")
            if not self.twilio_from_number and not self.twilio_messaging_service_sid:
                missing.append("TWILIO_FROM_NUMBER or TWILIO_MESSAGING_SERVICE_SID")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
