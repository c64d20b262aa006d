"""Tests for master manifest rendering and playlist parsing."""

import pytest

from hlsingest.modules.ingest.manifest import (
    MASTER_CODECS,
    MasterVariant,
    build_master_manifest,
    parse_master_manifest,
    parse_media_playlist,
)

S1_VARIANTS = [
    MasterVariant("1080p", 5711200, 1920, 1080),
    MasterVariant("360p", 730400, 640, 360),
    MasterVariant("720p", 2890800, 1280, 720),
    MasterVariant("480p", 1205600, 854, 480),
]

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:0
#EXT-X-PLAYLIST-TYPE:VOD
#EXT-X-INDEPENDENT-SEGMENTS
#EXTINF:6.000000,
segment_000.ts
#EXTINF:6.000000,
segment_001.ts
#EXTINF:3.500000,
segment_002.ts
#EXT-X-ENDLIST
"""


class TestMasterManifest:

    def test_variants_listed_in_ascending_bandwidth(self) -> None:
        text = build_master_manifest(S1_VARIANTS)
        lines = text.splitlines()

        assert lines[0] == "#EXTM3U"
        assert lines[1] == "#EXT-X-VERSION:3"
        assert lines[2] == f'#EXT-X-STREAM-INF:BANDWIDTH=730400,RESOLUTION=640x360,CODECS="{MASTER_CODECS}"'
        assert lines[3] == "360p/playlist.m3u8"
        assert [line for line in lines if not line.startswith("#")] == [
            "360p/playlist.m3u8",
            "480p/playlist.m3u8",
            "720p/playlist.m3u8",
            "1080p/playlist.m3u8",
        ]
        assert text.endswith("\n")

    def test_round_trip_preserves_variants(self) -> None:
        parsed = parse_master_manifest(build_master_manifest(S1_VARIANTS))

        assert [v.label for v in parsed] == ["360p", "480p", "720p", "1080p"]
        assert parsed[3] == MasterVariant("1080p", 5711200, 1920, 1080)

    def test_empty_variant_list_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_master_manifest([])


class TestMediaPlaylist:

    def test_parses_segments_and_end_marker(self) -> None:
        playlist = parse_media_playlist(MEDIA_PLAYLIST)

        assert playlist.target_duration == 6
        assert playlist.playlist_type == "VOD"
        assert playlist.ended is True
        assert playlist.segment_count == 3
        assert [uri for uri, _ in playlist.segments] == ["segment_000.ts", "segment_001.ts", "segment_002.ts"]
        assert playlist.total_seconds == pytest.approx(15.5)
        assert playlist.avg_segment_seconds == pytest.approx(5.167)

    def test_truncated_playlist_is_not_ended(self) -> None:
        playlist = parse_media_playlist(MEDIA_PLAYLIST.replace("#EXT-X-ENDLIST\n", ""))

        assert playlist.ended is False
        assert playlist.segment_count == 3

    def test_missing_header_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_media_playlist("segment_000.ts\n")

    def test_segment_without_duration_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_media_playlist("#EXTM3U\nsegment_000.ts\n")
