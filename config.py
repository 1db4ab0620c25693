from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application configuration loaded from environment variables or .env.

    Env prefix: APP_
    Example: APP_OUTPUT_DIR=/data/outputs
    """

    # App
    app_name: str = Field(default="Masonry Layout API")
    app_version: str = Field(default="1.0.0")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Paths
    output_dir: Path = Field(default=Path("outputs"))
    temp_dir: Path = Field(default=Path("temp"))

    # Limits
    max_image_size: int = Field(default=10 * 1024 * 1024)  # 10 MB
    max_total_size: int = Field(default=200 * 1024 * 1024)  # 200 MB
    max_canvas_pixels: int = Field(default=100_000_000)
    max_collage_images: int = Field(default=24)
    max_layout_images: int = Field(default=500)

    # Layout defaults
    default_gap: float = Field(default=5.0)
    default_padding: float = Field(default=5.0)
    arrange_gap: float = Field(default=20.0)
    arrange_padding: float = Field(default=20.0)

    # Rate limiting
    rate_limit_requests: int = Field(default=60)
    rate_limit_window_seconds: int = Field(default=60)

    # Redis
    redis_url: str | None = Field(default=None)
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    job_ttl_seconds: int = Field(default=1 * 60 * 60)  # 1h
    cleanup_interval_seconds: int = Field(default=600)  # 10 minutes

    # Celery
    celery_worker_pool: str | None = Field(default=None)
    celery_worker_concurrency: int | None = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_to_file: bool = Field(default=False)
    log_file_path: Path = Field(default=Path("layout-api.log"))
    log_max_bytes: int = Field(default=10 * 1024 * 1024)
    log_backup_count: int = Field(default=5)

    # CORS
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_headers: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
