from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Admin token for the /api/jobs endpoints (Bearer header or admin_token cookie)
    admin_token: str = ""

    # Database - DATABASE_URL in production, fallback to SQLite for local
    database_url: Optional[str] = None

    # App Settings
    app_name: str = "BulkQueue"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "8000"))
    allowed_origins: str = "http://localhost:3000"
    submit_rate_limit: str = "10/minute"

    # Job defaults (delays in milliseconds)
    default_batch_size: int = 5
    default_delay_between_batches_ms: int = 3000
    default_delay_between_items_ms: int = 2000
    default_max_retries: int = 3
    retry_base_delay_seconds: float = 2.0

    # Retention of completed/failed jobs
    job_retention_hours: float = 1.0
    cleanup_interval_minutes: float = 30.0

    # Producer service - one endpoint per category under this base URL
    producer_base_url: str = ""
    producer_timeout_seconds: float = 120.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL (DATABASE_URL is picked up by the field itself)
        db_url = self.database_url
        if not db_url:
            # Fallback to local SQLite
            self.database_url = "sqlite+aiosqlite:///./bulkqueue.db"
        elif db_url.startswith("postgres://"):
            # Hosted Postgres hands out postgres:// URLs, SQLAlchemy async needs postgresql+asyncpg://
            self.database_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif db_url.startswith("postgresql://"):
            self.database_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

@lru_cache()
def get_settings() -> Settings:
    return Settings()
