"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
Every value has a development default so the CLI and the test suite run
without any environment; production deployments override them.
"""

import os
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings

from hlsingest.modules.ingest.ladder import unknown_labels


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "HLS Ingest API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./hlsingest.db"

    # Redis (Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery (falls back to REDIS_URL when empty)
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    RECOVERY_INTERVAL_S: float = 60.0

    # CORS
    CORS_ORIGINS: list[str] = []

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # Object-store prefix applied to every published key
    STORAGE_ROOT: str = ""

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True

    # CDN Configuration (optional, for any backend)
    CDN_DOMAIN: Optional[str] = None
    CDN_ENABLED: bool = False
    PLAYBACK_URL_TTL_S: int = 86400

    # Source validation
    MAX_SOURCE_DURATION_S: float = 21600.0
    SUPPORTED_CONTAINERS: list[str] = ["mp4", "mov", "mkv", "webm", "avi", "wmv", "flv"]
    PROBE_TIMEOUT_S: float = 60.0

    # Encoder
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    VIDEO_ENCODER: str = "libx264"
    ENCODER_PRESET: str = "medium"
    SEGMENT_SECONDS: int = 6
    TRANSCODE_TIMEOUT_S: float = 3600.0
    STDERR_MAX_BYTES: int = 10 * 1024 * 1024
    ERROR_DETAIL_MAX_BYTES: int = 4096
    QUALITY_LADDER_DEFAULT: list[str] = ["360p", "480p", "720p", "1080p"]

    # Retries
    MAX_RENDITION_RETRIES: int = 2
    TRANSIENT_EXIT_CODES: list[int] = [-9, 137, 255]
    RETRY_BACKOFF_BASE_S: float = 5.0
    RETRY_BACKOFF_CAP_S: float = 60.0
    MAX_UPLOAD_RETRIES: int = 3
    UPLOAD_TIMEOUT_S: float = 300.0
    MAX_STORE_RETRIES: int = 3
    MAX_JOB_ATTEMPTS: int = 3

    # Workers and leases
    WORKER_POOL_SIZE: int = os.cpu_count() or 1
    LEASE_TTL_S: float = 300.0
    LEASE_RENEW_S: float = 60.0
    CANCEL_GRACE_S: float = 10.0
    CANCEL_POLL_INTERVAL_S: float = 1.0
    WORKER_POLL_INTERVAL_S: float = 5.0
    SCRATCH_ROOT: str = "./scratch"

    # Thumbnails
    THUMBNAIL_ENABLED: bool = True
    THUMBNAIL_MAX_OFFSET_S: float = 10.0

    # Observability
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    OTLP_ENDPOINT: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @model_validator(mode="after")
    def check_worker_limits(self) -> "Settings":
        """Reject lease, pool and ladder settings the pipeline cannot honour."""
        if self.LEASE_RENEW_S >= self.LEASE_TTL_S:
            raise ValueError("LEASE_RENEW_S must be smaller than LEASE_TTL_S")
        if self.WORKER_POOL_SIZE < 1:
            raise ValueError("WORKER_POOL_SIZE must be at least 1")
        if self.SEGMENT_SECONDS < 1:
            raise ValueError("SEGMENT_SECONDS must be at least 1")
        if not self.QUALITY_LADDER_DEFAULT:
            raise ValueError("QUALITY_LADDER_DEFAULT must name at least one rendition")
        unknown = unknown_labels(self.QUALITY_LADDER_DEFAULT)
        if unknown:
            raise ValueError(f"Unknown labels in QUALITY_LADDER_DEFAULT: {', '.join(unknown)}")
        return self

    @property
    def celery_broker_url(self) -> str:
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @property
    def celery_result_backend(self) -> str:
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL


settings = Settings()
