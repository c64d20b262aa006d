"""HLS playlist reading and master manifest writing."""

from dataclasses import dataclass, field
from typing import Iterable, Optional

MASTER_CODECS = "avc1.640028,mp4a.40.2"
MASTER_PLAYLIST_NAME = "master.m3u8"
MEDIA_PLAYLIST_NAME = "playlist.m3u8"


@dataclass(frozen=True)
class MasterVariant:
    """One ``#EXT-X-STREAM-INF`` entry."""
    label: str
    bandwidth: int
    width: int
    height: int

    @property
    def uri(self) -> str:
        return f"{self.label}/{MEDIA_PLAYLIST_NAME}"


def build_master_manifest(variants: Iterable[MasterVariant]) -> str:
    """Render the master manifest, lowest bandwidth first.

    Args:
        variants: Ready renditions

    Returns:
        Manifest text (newline terminated)

    Raises:
        ValueError: If no variant is given
    """
    ordered = sorted(variants, key=lambda v: (v.bandwidth, v.height))
    if not ordered:
        raise ValueError("master manifest needs at least one variant")

    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for variant in ordered:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},"
            f"RESOLUTION={variant.width}x{variant.height},"
            f'CODECS="{MASTER_CODECS}"'
        )
        lines.append(variant.uri)
    return "\n".join(lines) + "\n"


def parse_master_manifest(text: str) -> list[MasterVariant]:
    """Read back the variants of a master manifest."""
    variants = []
    pending: Optional[dict] = None
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#EXT-X-STREAM-INF:"):
            attrs = _parse_attributes(line.split(":", 1)[1])
            width, _, height = attrs.get("RESOLUTION", "0x0").partition("x")
            pending = {"bandwidth": int(attrs["BANDWIDTH"]), "width": int(width), "height": int(height)}
        elif line and not line.startswith("#") and pending is not None:
            variants.append(MasterVariant(label=line.split("/", 1)[0], **pending))
            pending = None
    return variants


def _parse_attributes(text: str) -> dict[str, str]:
    attrs = {}
    key, value, in_quotes, reading_key = "", "", False, True
    for char in text + ",":
        if reading_key:
            if char == "=":
                reading_key = False
            else:
                key += char
        elif char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            attrs[key.strip()] = value
            key, value, reading_key = "", "", True
        else:
            value += char
    return attrs


@dataclass
class MediaPlaylist:
    """Parsed media (rendition) playlist."""
    target_duration: Optional[int] = None
    segments: list[tuple[str, float]] = field(default_factory=list)
    ended: bool = False
    playlist_type: Optional[str] = None

    @property
    def segment_count(self) -> int:
        return len(self.segments)

    @property
    def total_seconds(self) -> float:
        return sum(duration for _, duration in self.segments)

    @property
    def avg_segment_seconds(self) -> float:
        if not self.segments:
            return 0.0
        return round(self.total_seconds / len(self.segments), 3)


def parse_media_playlist(text: str) -> MediaPlaylist:
    """Parse the segment list of a media playlist.

    Args:
        text: Playlist contents

    Returns:
        MediaPlaylist with segment URIs in playback order

    Raises:
        ValueError: If the text is not an HLS playlist
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise ValueError("not an HLS playlist (missing #EXTM3U)")

    playlist = MediaPlaylist()
    pending_duration: Optional[float] = None
    for line in lines[1:]:
        if line.startswith("#EXT-X-TARGETDURATION:"):
            playlist.target_duration = int(line.split(":", 1)[1])
        elif line.startswith("#EXT-X-PLAYLIST-TYPE:"):
            playlist.playlist_type = line.split(":", 1)[1]
        elif line.startswith("#EXTINF:"):
            pending_duration = float(line.split(":", 1)[1].split(",", 1)[0])
        elif line == "#EXT-X-ENDLIST":
            playlist.ended = True
        elif not line.startswith("#"):
            if pending_duration is None:
                raise ValueError(f"segment {line} has no #EXTINF")
            playlist.segments.append((line, pending_duration))
            pending_duration = None
    return playlist
