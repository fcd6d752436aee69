from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatseal.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Meta app credentials.
    # META_APP_SECRET doubles as the webhook HMAC key. Leaving it empty puts
    # the webhook in permissive mode: every POST passes the signature gate.
    # Only do that for local development; startup logs a warning.
    META_APP_ID: str = ""
    META_APP_SECRET: str = ""

    # Token echoed back during the webhook subscription handshake
    META_VERIFY_TOKEN: str = ""

    # Shared secret for the manual connect/verify endpoints (X-Admin-Key)
    ADMIN_API_KEY: str = ""

    # Fixed public URL used to build the OAuth redirect_uri.
    # When empty, the redirect_uri is derived from the request host.
    PUBLIC_BASE_URL: str = ""

    # Graph API
    GRAPH_API_VERSION: str = "v23.0"
    GRAPH_BASE_URL: str = "https://graph.facebook.com"
    OAUTH_DIALOG_BASE_URL: str = "https://www.facebook.com"
    GRAPH_TIMEOUT_SECONDS: float = 20.0
    PREFLIGHT_TIMEOUT_SECONDS: float = 15.0
    SEND_TIMEOUT_SECONDS: float = 30.0

    # Per-subscriber buffer for live notifications
    NOTIFICATION_QUEUE_SIZE: int = 100

    @property
    def signature_checks_enabled(self) -> bool:
        return bool(self.META_APP_SECRET)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
