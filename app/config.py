"""Application configuration."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
    )

    # Application
    app_name: str = Field(default="Imaging Portal API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_prefix: str = Field(default="/api", alias="API_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # Redis
    redis_host: str = Field(..., alias="REDIS_HOST")
    redis_port: int = Field(..., alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_decode_responses: bool = Field(default=True, alias="REDIS_DECODE_RESPONSES")

    # JWT
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    refresh_token_expire_days: int = Field(default=7, alias="REFRESH_TOKEN_EXPIRE_DAYS")

    # Firebase (identity provider)
    firebase_credentials_path: str | None = Field(
        default=None,
        alias="FIREBASE_CREDENTIALS_PATH",
        description="Path to Firebase service account JSON file",
    )
    firebase_config_json: str | None = Field(
        default=None,
        alias="FIREBASE_CONFIG_JSON",
        description="Raw JSON string of the Firebase service account",
    )
    firebase_web_api_key: str = Field(
        default="",
        alias="FIREBASE_WEB_API_KEY",
        description="Web API key used for Identity Toolkit password and MFA sign-in",
    )
    identity_toolkit_url: str = Field(
        default="https://identitytoolkit.googleapis.com",
        alias="IDENTITY_TOOLKIT_URL",
    )
    identity_request_timeout_seconds: float = Field(
        default=10.0, alias="IDENTITY_REQUEST_TIMEOUT_SECONDS"
    )

    # Pending MFA challenge
    pending_auth_cookie_name: str = Field(default="pendingAuth", alias="PENDING_AUTH_COOKIE_NAME")
    # 15 minutes, matches the provider's code lifetime
    pending_auth_ttl_seconds: int = Field(default=900, alias="PENDING_AUTH_TTL_SECONDS")
    pending_auth_cookie_secure: bool = Field(default=False, alias="PENDING_AUTH_COOKIE_SECURE")

    # Session handoff hints
    handoff_ttl_seconds: int = Field(default=86400, alias="HANDOFF_TTL_SECONDS")
    session_clean_cooldown_seconds: int = Field(
        default=30, alias="SESSION_CLEAN_COOLDOWN_SECONDS"
    )

    # User sync
    sync_max_attempts: int = Field(default=3, ge=1, alias="SYNC_MAX_ATTEMPTS")
    sync_base_delay_seconds: float = Field(default=1.0, ge=0, alias="SYNC_BASE_DELAY_SECONDS")
    sync_endpoint_url: str | None = Field(
        default=None,
        alias="SYNC_ENDPOINT_URL",
        description="Base URL of a remote backend exposing /api/auth/sync; in-process when unset",
    )
    sync_request_timeout_seconds: float = Field(default=10.0, alias="SYNC_REQUEST_TIMEOUT_SECONDS")

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
