"""Database models and enumerations for the ingest pipeline.

An ``Asset`` owns its ``Rendition`` rows and exactly one ``IngestJob`` row,
which carries the worker lease and the cancel flag.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from hlsingest.core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (portable across SQLite and PostgreSQL)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AssetStatus(str, Enum):
    """Lifecycle status of an asset."""
    QUEUED = "QUEUED"
    PROBING = "PROBING"
    PLANNED = "PLANNED"
    TRANSCODING = "TRANSCODING"
    PUBLISHING = "PUBLISHING"
    READY = "READY"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AssetStatus.READY, AssetStatus.FAILED, AssetStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[AssetStatus, frozenset] = {
    AssetStatus.QUEUED: frozenset({AssetStatus.PROBING, AssetStatus.CANCELLED}),
    AssetStatus.PROBING: frozenset({AssetStatus.PLANNED, AssetStatus.FAILED, AssetStatus.CANCELLED}),
    AssetStatus.PLANNED: frozenset({AssetStatus.TRANSCODING, AssetStatus.FAILED, AssetStatus.CANCELLED}),
    AssetStatus.TRANSCODING: frozenset({AssetStatus.PUBLISHING, AssetStatus.FAILED, AssetStatus.CANCELLED}),
    AssetStatus.PUBLISHING: frozenset({AssetStatus.READY, AssetStatus.FAILED, AssetStatus.CANCELLED}),
    AssetStatus.READY: frozenset(),
    AssetStatus.FAILED: frozenset(),
    AssetStatus.CANCELLED: frozenset(),
}


def can_transition(current: AssetStatus, new: AssetStatus) -> bool:
    """Check whether current -> new is an edge of the asset state machine."""
    return new in ALLOWED_TRANSITIONS[current]


class RenditionStatus(str, Enum):
    """Status of one rendition of an asset."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ErrorKind(str, Enum):
    """Stable error identifiers exposed to callers."""
    # Input errors
    SOURCE_UNREADABLE = "SourceUnreadable"
    UNSUPPORTED_CONTAINER = "UnsupportedContainer"
    DURATION_EXCEEDS_MAX = "DurationExceedsMax"
    NO_VIDEO_STREAM = "NoVideoStream"
    NO_ELIGIBLE_RENDITIONS = "NoEligibleRenditions"
    # Transient infrastructure errors
    ENCODER_TRANSIENT = "EncoderTransient"
    UPLOAD_TRANSIENT = "UploadTransient"
    STATE_STORE_TRANSIENT = "StateStoreTransient"
    # Permanent processing errors
    TRANSCODE_FAILED = "TranscodeFailed"
    PUBLISH_FAILED = "PublishFailed"
    # Lifecycle errors
    ASSET_ALREADY_EXISTS = "AssetAlreadyExists"
    ASSET_BUSY = "AssetBusy"
    UNKNOWN_ASSET = "UnknownAsset"



def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Asset(Base):
    """One logical video registered for ingestion."""
    __tablename__ = "assets"

    asset_id = Column(String(255), primary_key=True)
    source_handle = Column(String(2048), nullable=False)
    # Explicitly requested ladder; NULL means the configured default
    requested_ladder = Column(JSON, nullable=True)

    status = Column(
        SQLEnum(AssetStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=AssetStatus.QUEUED,
        index=True,
    )
    error_kind = Column(
        SQLEnum(ErrorKind, native_enum=False, length=32, values_callable=_enum_values),
        nullable=True,
    )
    error_detail = Column(Text, nullable=True)

    probe = Column(JSON, nullable=True)
    master_manifest_key = Column(String(1024), nullable=True)
    thumbnail_key = Column(String(1024), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    renditions = relationship(
        "Rendition",
        back_populates="asset",
        cascade="all, delete-orphan",
        order_by="Rendition.video_bitrate_bps",
        lazy="selectin",
    )
    job = relationship(
        "IngestJob",
        back_populates="asset",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Asset {self.asset_id} - {self.status.value}>"


class Rendition(Base):
    """One quality variant of an asset."""
    __tablename__ = "renditions"
    __table_args__ = (UniqueConstraint("asset_id", "label", name="uq_renditions_asset_label"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(
        String(255), ForeignKey("assets.asset_id", ondelete="CASCADE"), nullable=False, index=True
    )
    label = Column(String(16), nullable=False)

    # Predicted output dimensions (aspect-preserving, never above the source)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    video_bitrate_bps = Column(Integer, nullable=False)
    audio_bitrate_bps = Column(Integer, nullable=False)
    bandwidth = Column(Integer, nullable=False)
    codec_v = Column(String(16), nullable=False, default="h264")
    codec_a = Column(String(16), nullable=False, default="aac")

    status = Column(
        SQLEnum(RenditionStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=RenditionStatus.PENDING,
    )
    attempt = Column(Integer, nullable=False, default=0)
    playlist_key = Column(String(1024), nullable=True)
    segment_count = Column(Integer, nullable=True)
    avg_segment_seconds = Column(Float, nullable=True)
    error_kind = Column(
        SQLEnum(ErrorKind, native_enum=False, length=32, values_callable=_enum_values),
        nullable=True,
    )
    error_detail = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    asset = relationship("Asset", back_populates="renditions")

    def __repr__(self) -> str:
        return f"<Rendition {self.asset_id}/{self.label} - {self.status.value}>"


class IngestJob(Base):
    """Lease and cancellation record of an asset's ingestion."""
    __tablename__ = "ingest_jobs"

    asset_id = Column(
        String(255), ForeignKey("assets.asset_id", ondelete="CASCADE"), primary_key=True
    )
    worker_id = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    # Scratch directory name of the current (or last) holder
    scratch_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    asset = relationship("Asset", back_populates="job")

    def lease_is_live(self, now: datetime) -> bool:
        return (
            self.worker_id is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def __repr__(self) -> str:
        return f"<IngestJob {self.asset_id} - worker: {self.worker_id}>"
