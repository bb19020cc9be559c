"""
Application settings configuration for the Stride notification service.

Centralized settings loaded from environment variables.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


DEFAULT_EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        STRIDE_DB_URL: SQLAlchemy database URL for users, tokens and notifications
        EXPO_PUSH_URL: Push gateway endpoint (default: Expo push API)
        EXPO_ACCESS_TOKEN: Optional bearer token for the push gateway
        PUSH_BATCH_SIZE: Messages per gateway request (max 100, gateway limit)
        PUSH_MAX_RETRIES: Attempts per push delivery (default: 3)
        PUSH_RETRY_DELAY_SECONDS: Base backoff delay, multiplied by attempt number
        PUSH_TIMEOUT_SECONDS: HTTP timeout for gateway calls
        TOKEN_MAX_AGE_HOURS: Freshness threshold used by token validation (default: 24)
        CLEAR_INVALID_TOKENS: Clear stored tokens the gateway reports as permanently invalid
        VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY / VAPID_SUBJECT: Browser push credentials
        REALTIME_NOTIFICATIONS_CHANNEL: Shared topic for notification fan-out
        RECIPIENT_CACHE_TTL_SECONDS: TTL for cached campus recipient lookups
    """

    database_url: str = Field(
        default="sqlite:///./stride.db",
        validation_alias="STRIDE_DB_URL",
    )

    # Push gateway
    expo_push_url: str = Field(
        default=DEFAULT_EXPO_PUSH_URL,
        validation_alias="EXPO_PUSH_URL",
    )

    expo_access_token: str = Field(
        default="",
        validation_alias="EXPO_ACCESS_TOKEN",
        description="Optional access token when enhanced push security is enabled"
    )

    push_batch_size: int = Field(
        default=100,
        validation_alias="PUSH_BATCH_SIZE",
        ge=1,
        le=100,
    )

    push_max_retries: int = Field(
        default=3,
        validation_alias="PUSH_MAX_RETRIES",
        ge=1,
        le=10,
    )

    push_retry_delay_seconds: float = Field(
        default=1.0,
        validation_alias="PUSH_RETRY_DELAY_SECONDS",
        ge=0,
    )

    push_timeout_seconds: float = Field(
        default=10.0,
        validation_alias="PUSH_TIMEOUT_SECONDS",
        gt=0,
    )

    # Token registry
    token_max_age_hours: int = Field(
        default=24,
        validation_alias="TOKEN_MAX_AGE_HOURS",
        ge=1,
    )

    clear_invalid_tokens: bool = Field(
        default=True,
        validation_alias="CLEAR_INVALID_TOKENS",
    )

    # VAPID settings for browser push
    vapid_public_key: str = Field(default="", validation_alias="VAPID_PUBLIC_KEY")
    vapid_private_key: str = Field(default="", validation_alias="VAPID_PRIVATE_KEY")
    vapid_subject: str = Field(
        default="",
        validation_alias="VAPID_SUBJECT",
        description="VAPID subject (mailto: or https: URL identifying the push sender)"
    )

    # Realtime
    notifications_channel: str = Field(
        default="user_notifications",
        validation_alias="REALTIME_NOTIFICATIONS_CHANNEL",
    )

    recipient_cache_ttl_seconds: int = Field(
        default=300,
        validation_alias="RECIPIENT_CACHE_TTL_SECONDS",
        ge=0,
    )

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("vapid_subject")
    @classmethod
    def validate_vapid_subject(cls, v: str) -> str:
        """VAPID subject must be a mailto: or https: URL when set."""
        if v and not (v.startswith("mailto:") or v.startswith("https://")):
            raise ValueError("VAPID_SUBJECT must start with 'mailto:' or 'https://'")
        return v

    @property
    def vapid_configured(self) -> bool:
        """Check if VAPID keys are configured for browser push."""
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_subject)

    @property
    def vapid_claims(self) -> dict:
        return {"sub": self.vapid_subject} if self.vapid_subject else {}


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()
