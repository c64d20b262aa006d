"""Quality ladder: the fixed encoding target of every rung.

Kept free of database imports so configuration loading can validate labels.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class QualityProfile:
    """Fixed encoding target for one ladder rung."""
    label: str
    width: int
    height: int
    video_kbps: int
    audio_kbps: int
    buffer_kbps: int

    @property
    def max_kbps(self) -> int:
        # Peak rate allowed above the average video bitrate
        return round(self.video_kbps * 1.07)


QUALITY_PROFILES: dict[str, QualityProfile] = {
    profile.label: profile
    for profile in (
        QualityProfile("240p", 426, 240, 300, 64, 450),
        QualityProfile("360p", 640, 360, 600, 64, 900),
        QualityProfile("480p", 854, 480, 1000, 96, 1500),
        QualityProfile("720p", 1280, 720, 2500, 128, 3750),
        QualityProfile("1080p", 1920, 1080, 5000, 192, 7500),
        QualityProfile("1440p", 2560, 1440, 9000, 192, 13500),
        QualityProfile("2160p", 3840, 2160, 16000, 192, 24000),
    )
}

QUALITY_LABELS: tuple[str, ...] = tuple(QUALITY_PROFILES)


def unknown_labels(labels) -> list[str]:
    """Labels that are not rungs of the ladder, in input order."""
    return [label for label in labels if label not in QUALITY_PROFILES]
