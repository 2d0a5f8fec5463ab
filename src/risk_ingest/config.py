# src/risk_ingest/config.py
from functools import lru_cache
from typing import Optional
import os

from pydantic import BaseModel


def _opt(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if value else None


class Settings(BaseModel):
    app_env: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"

    upload_dir: str = "./uploads"
    max_file_size: int = 10 * 1024 * 1024

    redis_url: str = "redis://localhost:6379/0"
    queue_backend: str = "redis"     # redis | memory | none
    cache_backend: str = "redis"     # redis | memory | none
    store_backend: str = "memory"    # memory | postgres

    pg_host: str = "postgres"
    pg_port: int = 5432
    pg_db: str = "risk_tracking"
    pg_user: str = "user"
    pg_password: str = "pass"

    inference_url: Optional[str] = None
    inference_api_key: Optional[str] = None
    inference_timeout: float = 10.0

    job_attempts: int = 3
    job_backoff_seconds: float = 2.0
    completed_job_ttl: int = 3600
    failed_job_ttl: int = 24 * 3600
    stall_timeout: float = 30.0
    max_stalled_count: int = 1
    worker_concurrency: int = 2

    list_cache_ttl: int = 300

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_env=os.getenv("APP_ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            upload_dir=os.getenv("UPLOAD_DIR", "./uploads"),
            max_file_size=int(os.getenv("MAX_FILE_SIZE", "10485760")),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            queue_backend=os.getenv("QUEUE_BACKEND", "redis").lower(),
            cache_backend=os.getenv("CACHE_BACKEND", "redis").lower(),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
            pg_host=os.getenv("POSTGRES_HOST", "postgres"),
            pg_port=int(os.getenv("POSTGRES_PORT", "5432")),
            pg_db=os.getenv("POSTGRES_DB", "risk_tracking"),
            pg_user=os.getenv("POSTGRES_USER", "user"),
            pg_password=os.getenv("POSTGRES_PASSWORD", "pass"),
            inference_url=_opt("INFERENCE_URL"),
            inference_api_key=_opt("INFERENCE_API_KEY"),
            inference_timeout=float(os.getenv("INFERENCE_TIMEOUT", "10")),
            job_attempts=int(os.getenv("JOB_ATTEMPTS", "3")),
            job_backoff_seconds=float(os.getenv("JOB_BACKOFF_SECONDS", "2")),
            completed_job_ttl=int(os.getenv("COMPLETED_JOB_TTL", "3600")),
            failed_job_ttl=int(os.getenv("FAILED_JOB_TTL", "86400")),
            stall_timeout=float(os.getenv("STALL_TIMEOUT", "30")),
            max_stalled_count=int(os.getenv("MAX_STALLED_COUNT", "1")),
            worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "2")),
            list_cache_ttl=int(os.getenv("LIST_CACHE_TTL", "300")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
