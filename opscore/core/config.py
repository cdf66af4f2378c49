"""
Application configuration with environment variables.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Operations Core Platform"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "your-secret-key-change-in-production"

    # Database
    POSTGRES_USER: str = "opscore"
    POSTGRES_PASSWORD: str = "opscore"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "opscore"
    DATABASE_URL: Optional[str] = None

    # Redis (RQ worker + scheduler)
    REDIS_URL: str = "redis://redis:6379/0"
    OUTBOX_DISPATCH_INTERVAL_SECONDS: int = 60

    # JWT issued by the external identity provider
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # =========================================
    # Notification outbox
    # =========================================

    # Log messages instead of calling the email provider
    OUTBOX_DRY_RUN: bool = True
    OUTBOX_MAX_BATCH: int = 25
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_RETRY_MINUTES: int = 10
    # A row stuck in "processing" longer than this is reclaimed
    OUTBOX_LEASE_SECONDS: int = 900
    OUTBOX_WORKER_ID: str = "opscore-outbox"
    FROM_EMAIL: str = "no-reply@local.test"
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_HTTP_TIMEOUT: float = 10.0

    # =========================================
    # Object storage (attachments)
    # =========================================

    STORAGE_URL: str = "http://storage:5000/storage/v1"
    STORAGE_SERVICE_KEY: Optional[str] = None
    STORAGE_BUCKET: str = "request-attachments"
    SIGNED_URL_EXPIRY_SECONDS: int = 60 * 30
    STORAGE_HTTP_TIMEOUT: float = 10.0

    # =========================================
    # Bootstrap
    # =========================================

    # Demo seeding - MUST be false in production
    SEED_DEMO: bool = False

    # Grants the global system-admin flag to this user on startup
    SYSTEM_ADMIN_BOOTSTRAP_EMAIL: Optional[str] = None

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def assemble_db_url(cls, v: Optional[str], info) -> str:
        if isinstance(v, str) and v:
            return v

        data = info.data
        user = data.get("POSTGRES_USER", "opscore")
        password = data.get("POSTGRES_PASSWORD", "opscore")
        host = data.get("POSTGRES_HOST", "postgres")
        port = data.get("POSTGRES_PORT", "5432")
        db = data.get("POSTGRES_DB", "opscore")

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @field_validator('SECRET_KEY')
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Reject weak SECRET_KEY in production, warn in development."""
        weak_keys = {
            "your-secret-key-change-in-production",
            "change-me-in-production",
            "secret",
            "changeme",
        }
        is_weak = v in weak_keys or len(v) < 32
        if is_weak:
            debug = info.data.get("DEBUG", False)
            if not debug:
                raise ValueError(
                    "SECRET_KEY is weak or default. "
                    "Generate a strong key with: openssl rand -hex 32"
                )
            import warnings
            warnings.warn(
                "SECRET_KEY is weak or default! Set a strong key before deploying.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator('SEED_DEMO')
    @classmethod
    def validate_seed_demo(cls, v: bool, info) -> bool:
        """Prevent demo seeding in production."""
        if v and not info.data.get("DEBUG", False):
            raise ValueError(
                "SEED_DEMO=true is not allowed when DEBUG=false. "
                "Demo seeding creates predictable accounts."
            )
        return v

    @field_validator('OUTBOX_MAX_ATTEMPTS', 'OUTBOX_MAX_BATCH')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Outbox batch size and max attempts must be >= 1")
        return v


settings = Settings()
