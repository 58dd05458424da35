from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Toolbox Jobs API"
    environment: Literal["dev", "test", "prod"] = "dev"
    debug: bool = False

    database_url: str = "sqlite:///./app.db"
    sqlite_busy_timeout_seconds: int = 30

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])
    rate_limit_per_minute: int = 120
    auto_create_tables: bool = True

    storage_dir: str = "data/storage"
    public_base_url: str = "http://localhost:8000"
    download_signing_secret: str = "change-me-download"
    presigned_url_ttl_hours: int = 24

    max_pdf_size_mb: int = 20
    max_image_size_mb: int = 10
    max_document_size_mb: int = 100
    max_video_size_mb: int = 500
    max_spreadsheet_size_mb: int = 10
    max_text_chars: int = 200_000
    pdf_merge_sync_threshold_mb: int = 20
    pdf_merge_max_files: int = 20
    pdf_merge_max_part_size_mb: int = 200
    pdf_split_max_size_mb: int = 50

    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_timeout_seconds: int = 600
    soffice_binary: str = "soffice"
    document_conversion_timeout_seconds: int = 300

    removebg_api_key: str = ""
    removebg_api_url: str = "https://api.remove.bg/v1.0/removebg"
    removebg_timeout_seconds: int = 60

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_task_always_eager: bool = False
    worker_concurrency: int | None = None
    job_max_retries: int = 3
    job_retry_delays_seconds: list[int] = Field(default_factory=lambda: [60, 120, 300])
    outbox_dispatch_interval_seconds: int = 15
    outbox_max_dispatch_attempts: int = 5
    outbox_claim_seconds: int = 60
    stale_job_check_interval_seconds: int = 300
    # Jobs report progress as they run; silence longer than this means the worker died.
    job_stale_after_seconds: int = 1800

    def get_celery_broker_url(self) -> str:
        if self.celery_broker_url:
            return self.celery_broker_url
        return f"sqla+{self.database_url}"

    def get_celery_result_backend(self) -> str:
        if self.celery_result_backend:
            return self.celery_result_backend
        return f"db+{self.database_url}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
