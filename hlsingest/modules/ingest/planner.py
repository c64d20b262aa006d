"""Rendition planning: picks the adaptive-bitrate ladder for a source.

A rung is kept only when the source is tall enough for it
(``effective_height >= 0.8 * target_height``); output dimensions are fitted
inside the rung's box without ever exceeding the source, so nothing is
upscaled. Every rung is encoded at a fixed frame rate and GOP so segment
boundaries line up across qualities.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

from hlsingest.modules.ingest.errors import NoEligibleRenditions
from hlsingest.modules.ingest.ladder import QUALITY_PROFILES, QualityProfile
from hlsingest.modules.ingest.schemas import ProbeDescriptor

OUTPUT_FPS = 30
GOP_SIZE = 2 * OUTPUT_FPS
BANDWIDTH_OVERHEAD = 1.10

# H.264 levels as (name, max frame size in macroblocks, max macroblocks per second).
# 4.0 is the floor so every rung up to 1080p30 matches the master CODECS string.
H264_LEVELS = (
    ("4.0", 8192, 245760),
    ("4.2", 8704, 522240),
    ("5.0", 22080, 589824),
    ("5.1", 36864, 983040),
    ("5.2", 36864, 2073600),
)


def calculate_bandwidth(video_kbps: int, audio_kbps: int) -> int:
    """Peak BANDWIDTH advertised in the master manifest (bits per second)."""
    return round((video_kbps + audio_kbps) * 1000 * BANDWIDTH_OVERHEAD)


def _floor_even(value: int) -> int:
    return max(2, value - value % 2)


def h264_level(width: int, height: int, fps: int = OUTPUT_FPS) -> str:
    """Smallest H.264 level whose frame-size and macroblock-rate limits fit the output."""
    frame_mbs = -(-width // 16) * -(-height // 16)
    for name, max_frame_mbs, max_mbs_per_s in H264_LEVELS:
        if frame_mbs <= max_frame_mbs and frame_mbs * fps <= max_mbs_per_s:
            return name
    raise ValueError(f"{width}x{height}@{fps} exceeds H.264 level {H264_LEVELS[-1][0]}")


def fit_dimensions(source_width: int, source_height: int, box_width: int, box_height: int) -> tuple[int, int]:
    """Predict the encoder's ``force_original_aspect_ratio=decrease`` output.

    Mirrors the scale filter: scale to the box height (or width) preserving
    aspect, keep whichever fits, then round each side down to an even number.

    Args:
        source_width: Display width of the source
        source_height: Display height of the source
        box_width: Bounding box width
        box_height: Bounding box height

    Returns:
        Tuple of (width, height)
    """
    scaled_width = int(box_height * source_width / source_height + 0.5)
    scaled_height = int(box_width * source_height / source_width + 0.5)
    width = min(scaled_width, box_width)
    height = min(scaled_height, box_height)
    return _floor_even(width), _floor_even(height)


@dataclass(frozen=True)
class RenditionSpec:
    """Encoding parameters for one rendition."""
    label: str
    box_width: int
    box_height: int
    width: int
    height: int
    video_kbps: int
    audio_kbps: int
    max_kbps: int
    buffer_kbps: int
    fps: int = OUTPUT_FPS
    gop: int = GOP_SIZE
    codec_v: str = "h264"
    codec_a: str = "aac"

    @property
    def video_bitrate_bps(self) -> int:
        return self.video_kbps * 1000

    @property
    def audio_bitrate_bps(self) -> int:
        return self.audio_kbps * 1000

    @property
    def bandwidth(self) -> int:
        return calculate_bandwidth(self.video_kbps, self.audio_kbps)

    @property
    def level(self) -> str:
        return h264_level(self.width, self.height, self.fps)

    @property
    def scale_filter(self) -> str:
        return (
            f"scale=w={self.box_width}:h={self.box_height}"
            ":force_original_aspect_ratio=decrease:force_divisible_by=2"
        )


@dataclass
class RenditionPlan:
    """Planner output: renditions to encode and requested rungs that were dropped."""
    renditions: list[RenditionSpec] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def get(self, label: str) -> Optional[RenditionSpec]:
        for spec in self.renditions:
            if spec.label == label:
                return spec
        return None


def is_eligible(profile: QualityProfile, source_height: int) -> bool:
    """A rung qualifies when the source is at least 80% of its height."""
    # Integer form of source_height >= 0.8 * height, free of float rounding
    return source_height * 10 >= profile.height * 8


def build_spec(profile: QualityProfile, descriptor: ProbeDescriptor) -> RenditionSpec:
    """Derive the spec for one rung, clamping the box to the source size."""
    source_width = descriptor.video.effective_width
    source_height = descriptor.video.effective_height
    box_width = min(profile.width, source_width)
    box_height = min(profile.height, source_height)
    width, height = fit_dimensions(source_width, source_height, box_width, box_height)
    return RenditionSpec(
        label=profile.label,
        box_width=box_width,
        box_height=box_height,
        width=width,
        height=height,
        video_kbps=profile.video_kbps,
        audio_kbps=profile.audio_kbps,
        max_kbps=profile.max_kbps,
        buffer_kbps=profile.buffer_kbps,
    )


def plan_renditions(
    descriptor: ProbeDescriptor,
    requested: Optional[Sequence[str]],
    default_ladder: Sequence[str],
) -> RenditionPlan:
    """Choose the renditions to encode for a source.

    Args:
        descriptor: Probe result of the source
        requested: Explicit ladder from the caller, or None for the default
        default_ladder: Configured default ladder

    Returns:
        RenditionPlan ordered by ascending bitrate. Dropped rungs are listed
        in ``skipped`` only when the caller asked for them explicitly.

    Raises:
        NoEligibleRenditions: If no rung fits the source.
        ValueError: If a label is unknown.
    """
    explicit = requested is not None
    labels = list(requested if explicit else default_ladder)
    unknown = [label for label in labels if label not in QUALITY_PROFILES]
    if unknown:
        raise ValueError(f"Unknown rendition labels: {', '.join(unknown)}")

    profiles = sorted(
        {QUALITY_PROFILES[label] for label in labels},
        key=lambda p: (p.video_kbps, p.height),
    )
    source_height = descriptor.video.effective_height

    plan = RenditionPlan()
    for profile in profiles:
        if is_eligible(profile, source_height):
            plan.renditions.append(build_spec(profile, descriptor))
        elif explicit:
            plan.skipped.append(profile.label)

    if not plan.renditions:
        raise NoEligibleRenditions(
            f"source height {source_height}px is below 80% of every requested rung "
            f"({', '.join(p.label for p in profiles)})"
        )
    return plan
