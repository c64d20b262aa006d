"""Runtime configuration of the ingest pipeline."""

import os
from dataclasses import dataclass, field
from typing import Optional

from hlsingest.core.config import Settings, settings as default_settings
from hlsingest.modules.ingest.ladder import unknown_labels


@dataclass
class PipelineConfig:
    """Knobs consumed by the probe, driver, writer and orchestrator."""
    # Source validation
    max_source_duration_s: float = 21600.0
    supported_containers: frozenset = frozenset({"mp4", "mov", "mkv", "webm", "avi", "wmv", "flv"})
    probe_timeout_s: float = 60.0

    # Encoder
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    video_encoder: str = "libx264"
    encoder_preset: str = "medium"
    segment_seconds: int = 6
    transcode_timeout_s: float = 3600.0
    stderr_max_bytes: int = 10 * 1024 * 1024
    error_detail_max_bytes: int = 4096
    quality_ladder_default: tuple = ("360p", "480p", "720p", "1080p")

    # Retries
    max_rendition_retries: int = 2
    transient_exit_codes: frozenset = frozenset({-9, 137, 255})
    retry_backoff_base_s: float = 5.0
    retry_backoff_cap_s: float = 60.0
    max_upload_retries: int = 3
    upload_timeout_s: float = 300.0
    max_store_retries: int = 3
    max_job_attempts: int = 3

    # Workers and leases
    worker_pool_size: int = field(default_factory=lambda: os.cpu_count() or 1)
    lease_ttl_s: float = 300.0
    lease_renew_s: float = 60.0
    cancel_grace_s: float = 10.0
    cancel_poll_interval_s: float = 1.0
    worker_poll_interval_s: float = 5.0
    scratch_root: str = "./scratch"

    # Outputs
    thumbnail_enabled: bool = True
    thumbnail_max_offset_s: float = 10.0
    playback_url_ttl_s: int = 86400

    def __post_init__(self) -> None:
        unknown = unknown_labels(self.quality_ladder_default)
        if unknown:
            raise ValueError(f"Unknown labels in default ladder: {', '.join(unknown)}")
        if not self.quality_ladder_default:
            raise ValueError("Default ladder must not be empty")
        if self.lease_renew_s >= self.lease_ttl_s:
            raise ValueError("lease_renew_s must be smaller than lease_ttl_s")
        if self.worker_pool_size < 1:
            raise ValueError("worker_pool_size must be at least 1")

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "PipelineConfig":
        """Build the pipeline configuration from application settings."""
        s = source or default_settings
        return cls(
            max_source_duration_s=s.MAX_SOURCE_DURATION_S,
            supported_containers=frozenset(c.lower() for c in s.SUPPORTED_CONTAINERS),
            probe_timeout_s=s.PROBE_TIMEOUT_S,
            ffmpeg_path=s.FFMPEG_PATH,
            ffprobe_path=s.FFPROBE_PATH,
            video_encoder=s.VIDEO_ENCODER,
            encoder_preset=s.ENCODER_PRESET,
            segment_seconds=s.SEGMENT_SECONDS,
            transcode_timeout_s=s.TRANSCODE_TIMEOUT_S,
            stderr_max_bytes=s.STDERR_MAX_BYTES,
            error_detail_max_bytes=s.ERROR_DETAIL_MAX_BYTES,
            quality_ladder_default=tuple(s.QUALITY_LADDER_DEFAULT),
            max_rendition_retries=s.MAX_RENDITION_RETRIES,
            transient_exit_codes=frozenset(s.TRANSIENT_EXIT_CODES),
            retry_backoff_base_s=s.RETRY_BACKOFF_BASE_S,
            retry_backoff_cap_s=s.RETRY_BACKOFF_CAP_S,
            max_upload_retries=s.MAX_UPLOAD_RETRIES,
            upload_timeout_s=s.UPLOAD_TIMEOUT_S,
            max_store_retries=s.MAX_STORE_RETRIES,
            max_job_attempts=s.MAX_JOB_ATTEMPTS,
            worker_pool_size=s.WORKER_POOL_SIZE,
            lease_ttl_s=s.LEASE_TTL_S,
            lease_renew_s=s.LEASE_RENEW_S,
            cancel_grace_s=s.CANCEL_GRACE_S,
            cancel_poll_interval_s=s.CANCEL_POLL_INTERVAL_S,
            worker_poll_interval_s=s.WORKER_POLL_INTERVAL_S,
            scratch_root=s.SCRATCH_ROOT,
            thumbnail_enabled=s.THUMBNAIL_ENABLED,
            thumbnail_max_offset_s=s.THUMBNAIL_MAX_OFFSET_S,
            playback_url_ttl_s=s.PLAYBACK_URL_TTL_S,
        )
