"""Error taxonomy of the ingest pipeline.

Every class maps to one stable :class:`ErrorKind`; ``detail`` is bounded free
text (typically the tail of the encoder's stderr).
"""

from typing import Optional

from hlsingest.modules.ingest.models import ErrorKind

DEFAULT_DETAIL_LIMIT = 4096


def bound_detail(text: Optional[str], limit: int = DEFAULT_DETAIL_LIMIT) -> str:
    """Keep the last ``limit`` bytes of text (UTF-8), dropping partial characters."""
    if not text:
        return ""
    raw = text.encode("utf-8", errors="replace")
    if len(raw) <= limit:
        return text
    return raw[-limit:].decode("utf-8", errors="ignore")


class IngestError(Exception):
    """Base exception for ingest pipeline errors."""
    kind: ErrorKind = ErrorKind.TRANSCODE_FAILED

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind.value)
        self.detail = detail


# Input errors: surfaced to the caller, never retried.

class InputError(IngestError):
    """Base class for problems with the submitted source."""
    pass


class SourceUnreadable(InputError):
    """Source cannot be opened or parsed."""
    kind = ErrorKind.SOURCE_UNREADABLE


class UnsupportedContainer(InputError):
    """Container format is not in the accepted set."""
    kind = ErrorKind.UNSUPPORTED_CONTAINER


class DurationExceedsMax(InputError):
    """Source is longer than the configured maximum."""
    kind = ErrorKind.DURATION_EXCEEDS_MAX


class NoVideoStream(InputError):
    """Source has no decodable video stream."""
    kind = ErrorKind.NO_VIDEO_STREAM


class NoEligibleRenditions(InputError):
    """No requested rendition fits the source resolution."""
    kind = ErrorKind.NO_ELIGIBLE_RENDITIONS


# Permanent processing errors

class TranscodeFailed(IngestError):
    """Encoder failed for one rendition."""
    kind = ErrorKind.TRANSCODE_FAILED

    def __init__(self, label: str, reason: str, detail: str = ""):
        super().__init__(detail or reason)
        self.label = label
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.label}: {self.reason}"


class EncoderTransient(TranscodeFailed):
    """Encoder failure that is worth retrying (killed, I/O timeout)."""
    kind = ErrorKind.ENCODER_TRANSIENT


class PublishFailed(IngestError):
    """Outputs could not be written to, or removed from, the object store."""
    kind = ErrorKind.PUBLISH_FAILED


# Transient infrastructure errors

class UploadTransient(IngestError):
    """A single upload failed; retried by the segment writer."""
    kind = ErrorKind.UPLOAD_TRANSIENT


class StateStoreTransient(IngestError):
    """State store stayed unavailable after retries."""
    kind = ErrorKind.STATE_STORE_TRANSIENT


# Lifecycle errors

class AssetAlreadyExists(IngestError):
    """asset_id is in use by a non-terminal or READY asset."""
    kind = ErrorKind.ASSET_ALREADY_EXISTS


class AssetBusy(IngestError):
    """Operation requires a terminal (or FAILED) asset."""
    kind = ErrorKind.ASSET_BUSY


class UnknownAsset(IngestError):
    """No asset with this asset_id."""
    kind = ErrorKind.UNKNOWN_ASSET


# Control flow, not failures

class LeaseLost(Exception):
    """This worker no longer owns the asset; stop without committing."""
    pass


class Cancelled(Exception):
    """Work stopped because cancellation was requested."""
    pass
