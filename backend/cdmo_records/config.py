"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache

from sqlalchemy.engine import make_url

DEV_JWT_SECRET = "dev-only-secret-change-me"


class Settings(BaseSettings):
    """Application settings."""

    # App
    APP_NAME: str = "CDMO_Batch_Records"
    ENV: str = "development"
    DEBUG: bool = True
    PORT: int = 5002

    # Browser client origin(s), comma-separated. CLIENT_URL is kept for single-origin setups.
    CLIENT_URL: str = "http://localhost:5173"
    ALLOWED_ORIGINS: str | None = None

    # Database
    DATABASE_URL: str = "sqlite:///./cdmo_records.db"
    # Overrides the database component of DATABASE_URL when set.
    DATABASE_NAME: str | None = None
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery (audit delivery)
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # JWT
    JWT_SECRET_KEY: str = DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    JWT_LEEWAY_SECONDS: int = 30  # clock skew tolerance for exp validation

    # Credential cookie
    AUTH_COOKIE_NAME: str = "token"
    AUTH_COOKIE_SAMESITE: str = "lax"  # "lax" or "strict"
    # In production this MUST be True (requires HTTPS).
    AUTH_COOKIE_SECURE: bool = False

    # Only honour X-Real-IP / X-Forwarded-For behind a trusted reverse proxy.
    TRUST_PROXY_HEADERS: bool = False

    # Login throttling (enforced with Redis, fail-open)
    AUTH_LOGIN_IP_LIMIT_PER_MINUTE: int = 10
    AUTH_LOGIN_USER_FAIL_THRESHOLD: int = 5
    AUTH_LOGIN_USER_LOCK_SECONDS: int = 15 * 60

    PASSWORD_MIN_LENGTH: int = 8

    # Public API base URL (problem type URIs are built from it)
    API_BASE_URL: str = "http://localhost:5002"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Audit log listing
    LOG_LIST_DEFAULT_LIMIT: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as list."""
        raw = self.ALLOWED_ORIGINS or self.CLIENT_URL
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def database_url(self) -> str:
        """Connection string with DATABASE_NAME applied."""
        if not self.DATABASE_NAME:
            return self.DATABASE_URL
        url = make_url(self.DATABASE_URL).set(database=self.DATABASE_NAME)
        return url.render_as_string(hide_password=False)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
