"""Source introspection with ffprobe.

Runs ``ffprobe`` once per source and normalizes its JSON into a
:class:`ProbeDescriptor`. Validation happens in a fixed order: unreadable
source, missing video, container, then duration.
"""

import asyncio
import json
import logging
import os
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import (
    DurationExceedsMax,
    NoVideoStream,
    SourceUnreadable,
    UnsupportedContainer,
    bound_detail,
)
from hlsingest.modules.ingest.schemas import AudioStreamInfo, ProbeDescriptor, VideoStreamInfo

logger = logging.getLogger(__name__)

# ffprobe reports demuxer names; several demuxers cover more than one
# container, so the file extension breaks the tie.
FORMAT_ALIASES: dict[str, tuple[str, ...]] = {
    "mov": ("mp4", "mov"),
    "mp4": ("mp4", "mov"),
    "m4a": ("mp4", "mov"),
    "matroska": ("mkv", "webm"),
    "webm": ("webm", "mkv"),
    "avi": ("avi",),
    "asf": ("wmv",),
    "flv": ("flv",),
}

REMOTE_SCHEMES = ("http", "https", "s3", "gs")


def resolve_source(source_handle: str) -> str:
    """Turn a source handle into something the encoder can open.

    ``file://`` URIs become local paths; remote URLs are passed through.

    Raises:
        SourceUnreadable: If a local source does not exist
    """
    parsed = urlparse(source_handle)
    if parsed.scheme in REMOTE_SCHEMES:
        return source_handle
    if parsed.scheme == "file":
        path = unquote(parsed.path)
    else:
        path = source_handle
    if not os.path.isfile(path):
        raise SourceUnreadable(f"source not found: {path}")
    return path


def source_extension(source_handle: str) -> str:
    path = urlparse(source_handle).path or source_handle
    return os.path.splitext(path)[1].lstrip(".").lower()


def parse_fps(rate: Optional[str]) -> float:
    """Convert an ffprobe rational ("30000/1001") to a float.

    A zero denominator yields the numerator.
    """
    if not rate:
        return 0.0
    num_text, _, den_text = str(rate).partition("/")
    try:
        num = float(num_text)
        den = float(den_text) if den_text else 1.0
    except ValueError:
        return 0.0
    if den == 0:
        return num
    return round(num / den, 3)


def parse_rotation(stream: dict[str, Any]) -> int:
    """Rotation in degrees, normalized to 0, 90, 180 or 270."""
    raw = None
    tags = stream.get("tags") or {}
    if "rotate" in tags:
        raw = tags["rotate"]
    else:
        for side_data in stream.get("side_data_list") or []:
            if "rotation" in side_data:
                raw = side_data["rotation"]
                break
    if raw is None:
        return 0
    try:
        degrees = float(raw)
    except (TypeError, ValueError):
        return 0
    return int(round(degrees / 90.0)) * 90 % 360


def detect_container(format_name: str, source_handle: str) -> Optional[str]:
    """Map an ffprobe ``format_name`` to a container name from the accepted set."""
    extension = source_extension(source_handle)
    for demuxer in format_name.split(","):
        aliases = FORMAT_ALIASES.get(demuxer.strip())
        if aliases:
            return extension if extension in aliases else aliases[0]
    return None


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def parse_probe_output(data: dict[str, Any], source_handle: str, config: PipelineConfig) -> ProbeDescriptor:
    """Build and validate a descriptor from ffprobe's JSON output.

    Args:
        data: Parsed ``-show_format -show_streams`` JSON
        source_handle: Handle the data was produced from
        config: Pipeline configuration (containers, max duration)

    Returns:
        ProbeDescriptor for the source

    Raises:
        SourceUnreadable: If ffprobe found no format information
        NoVideoStream: If there is no real video stream
        UnsupportedContainer: If the container is not accepted
        DurationExceedsMax: If the source is too long
    """
    fmt = data.get("format")
    streams = data.get("streams") or []
    if not fmt:
        raise SourceUnreadable("ffprobe returned no format information")

    # Cover art in audio files is reported as a video stream
    video_streams = [
        s for s in streams
        if s.get("codec_type") == "video"
        and not (s.get("disposition") or {}).get("attached_pic")
    ]
    if not video_streams:
        raise NoVideoStream(f"no video stream in {fmt.get('format_name', 'unknown')} source")
    audio_streams = [s for s in streams if s.get("codec_type") == "audio"]

    format_name = fmt.get("format_name", "")
    container = detect_container(format_name, source_handle)
    if container is None or container not in config.supported_containers:
        raise UnsupportedContainer(
            f"container '{format_name}' is not one of {sorted(config.supported_containers)}"
        )

    video = video_streams[0]
    duration = _float_or_none(fmt.get("duration")) or _float_or_none(video.get("duration"))
    if duration is None or duration <= 0:
        raise SourceUnreadable("source duration could not be determined")
    if duration > config.max_source_duration_s:
        raise DurationExceedsMax(
            f"duration {duration:.1f}s exceeds maximum {config.max_source_duration_s:.0f}s"
        )

    width = _int_or_none(video.get("width"))
    height = _int_or_none(video.get("height"))
    if not width or not height:
        raise SourceUnreadable("video stream has no dimensions")

    audio_info = None
    if audio_streams:
        audio = audio_streams[0]
        audio_info = AudioStreamInfo(
            codec=audio.get("codec_name", "unknown"),
            channels=_int_or_none(audio.get("channels")) or 0,
            sample_rate_hz=_int_or_none(audio.get("sample_rate")) or 0,
            bitrate_bps=_int_or_none(audio.get("bit_rate")),
        )

    return ProbeDescriptor(
        container=container,
        duration_s=duration,
        total_bytes=_int_or_none(fmt.get("size")),
        video=VideoStreamInfo(
            codec=video.get("codec_name", "unknown"),
            width=width,
            height=height,
            fps=parse_fps(video.get("avg_frame_rate") or video.get("r_frame_rate")),
            bitrate_bps=_int_or_none(video.get("bit_rate")),
            rotation_deg=parse_rotation(video),
        ),
        audio=audio_info,
    )


class Prober:
    """Runs ffprobe against a source."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def build_command(self, source: str) -> list[str]:
        return [
            self.config.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            source,
        ]

    async def probe(self, source_handle: str) -> ProbeDescriptor:
        """Probe a source and return its validated descriptor.

        Raises:
            SourceUnreadable: If ffprobe fails, times out or emits garbage
            NoVideoStream, UnsupportedContainer, DurationExceedsMax: See
                :func:`parse_probe_output`
        """
        source = resolve_source(source_handle)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(source),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SourceUnreadable(f"ffprobe could not be started: {e}")
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.probe_timeout_s
            )
        except asyncio.TimeoutError:
            raise SourceUnreadable(f"probe timed out after {self.config.probe_timeout_s:.0f}s")
        finally:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if process.returncode != 0:
            raise SourceUnreadable(
                bound_detail(
                    stderr.decode("utf-8", errors="replace").strip() or f"ffprobe exited {process.returncode}",
                    self.config.error_detail_max_bytes,
                )
            )
        try:
            data = json.loads(stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as e:
            raise SourceUnreadable(f"unparseable ffprobe output: {e}")

        descriptor = parse_probe_output(data, source_handle, self.config)
        logger.info(
            "Probed source",
            extra={
                "container": descriptor.container,
                "duration_s": descriptor.duration_s,
                "width": descriptor.video.effective_width,
                "height": descriptor.video.effective_height,
                "has_audio": descriptor.audio is not None,
            },
        )
        return descriptor
