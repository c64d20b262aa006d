"""Pydantic schemas for the ingest pipeline and its API."""

import re
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, Field, field_validator

from hlsingest.modules.ingest.ladder import QUALITY_LABELS, QUALITY_PROFILES
from hlsingest.modules.ingest.models import Asset, AssetStatus, ErrorKind, RenditionStatus

ASSET_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")


# ==================== Probe descriptor ====================

class VideoStreamInfo(BaseModel):
    """Primary video stream of a source."""
    codec: str
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    fps: float = Field(..., ge=0)
    bitrate_bps: Optional[int] = None
    rotation_deg: int = 0

    @property
    def effective_width(self) -> int:
        """Display width after applying rotation."""
        return self.height if self.rotation_deg in (90, 270) else self.width

    @property
    def effective_height(self) -> int:
        """Display height after applying rotation."""
        return self.width if self.rotation_deg in (90, 270) else self.height


class AudioStreamInfo(BaseModel):
    """Primary audio stream of a source."""
    codec: str
    channels: int = 0
    sample_rate_hz: int = 0
    bitrate_bps: Optional[int] = None


class ProbeDescriptor(BaseModel):
    """Normalized description of a source file."""
    container: str
    duration_s: float = Field(..., ge=0)
    total_bytes: Optional[int] = None
    video: VideoStreamInfo
    audio: Optional[AudioStreamInfo] = None


# ==================== Requests ====================

class SubmitRequest(BaseModel):
    """Schema for registering a source video."""
    asset_id: str = Field(..., description="Caller-supplied unique asset identifier")
    source_handle: str = Field(..., min_length=1, max_length=2048, description="URI or path of the source")
    ladder: Optional[list[str]] = Field(
        None, description="Requested rendition labels; omitted means the configured default"
    )

    @field_validator("asset_id")
    @classmethod
    def validate_asset_id(cls, v: str) -> str:
        if not ASSET_ID_PATTERN.match(v):
            raise ValueError(
                "asset_id must start with a letter or digit and contain only "
                "letters, digits, '.', '_' or '-' (max 255 characters)"
            )
        return v

    @field_validator("source_handle")
    @classmethod
    def validate_source_handle(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("source_handle must not be blank")
        return v

    @field_validator("ladder")
    @classmethod
    def validate_ladder(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return None
        labels = [label.strip().lower() for label in v if label.strip()]
        if not labels:
            raise ValueError("ladder must name at least one rendition")
        unknown = sorted(set(labels) - set(QUALITY_LABELS))
        if unknown:
            raise ValueError(
                f"unknown rendition labels {unknown}; expected a subset of {list(QUALITY_LABELS)}"
            )
        # Canonical order: ascending bitrate, no duplicates
        return sorted(set(labels), key=lambda label: QUALITY_PROFILES[label].video_kbps)


# ==================== Views ====================

class RenditionView(BaseModel):
    """Per-rendition summary."""
    label: str
    width: int
    height: int
    video_bitrate_bps: int
    audio_bitrate_bps: int
    bandwidth: int
    codec_v: str
    codec_a: str
    status: RenditionStatus
    attempt: int
    playlist_url: Optional[str] = None
    segment_count: Optional[int] = None
    avg_segment_seconds: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None


class AssetView(BaseModel):
    """Consistent snapshot of an asset returned to callers."""
    asset_id: str
    source_handle: str
    status: AssetStatus
    requested_ladder: Optional[list[str]] = None
    cancel_requested: bool = False
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    probe: Optional[ProbeDescriptor] = None
    renditions: list[RenditionView] = []
    master_manifest_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_asset(cls, asset: Asset, url_for: Callable[[str], str]) -> "AssetView":
        """Build a view; playback URLs are exposed only for READY assets.

        Args:
            asset: Asset with renditions and job loaded
            url_for: Maps a storage key to a client URL
        """
        ready = asset.status == AssetStatus.READY
        renditions = [
            RenditionView(
                label=r.label,
                width=r.width,
                height=r.height,
                video_bitrate_bps=r.video_bitrate_bps,
                audio_bitrate_bps=r.audio_bitrate_bps,
                bandwidth=r.bandwidth,
                codec_v=r.codec_v,
                codec_a=r.codec_a,
                status=r.status,
                attempt=r.attempt,
                playlist_url=url_for(r.playlist_key) if ready and r.playlist_key else None,
                segment_count=r.segment_count,
                avg_segment_seconds=r.avg_segment_seconds,
                error_kind=r.error_kind,
                error_detail=r.error_detail,
            )
            for r in asset.renditions
        ]
        return cls(
            asset_id=asset.asset_id,
            source_handle=asset.source_handle,
            status=asset.status,
            requested_ladder=asset.requested_ladder,
            cancel_requested=bool(asset.job and asset.job.cancel_requested),
            error_kind=asset.error_kind,
            error_detail=asset.error_detail,
            probe=ProbeDescriptor.model_validate(asset.probe) if asset.probe else None,
            renditions=renditions,
            master_manifest_url=(
                url_for(asset.master_manifest_key) if ready and asset.master_manifest_key else None
            ),
            thumbnail_url=url_for(asset.thumbnail_key) if ready and asset.thumbnail_key else None,
            created_at=asset.created_at,
            updated_at=asset.updated_at,
        )


class AssetStats(BaseModel):
    """Asset counts by status."""
    total: int
    by_status: dict[str, int]


class ComponentHealth(BaseModel):
    """Health of one dependency."""
    name: str
    healthy: bool
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Aggregate health of the service."""
    status: str
    components: list[ComponentHealth]
