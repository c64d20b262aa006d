"""Tests for ffprobe output normalization and source validation."""

import json
import os
import stat
from dataclasses import replace

import pytest

from hlsingest.modules.ingest.errors import (
    DurationExceedsMax,
    NoVideoStream,
    SourceUnreadable,
    UnsupportedContainer,
)
from hlsingest.modules.ingest.probe import (
    Prober,
    detect_container,
    parse_fps,
    parse_probe_output,
    parse_rotation,
    resolve_source,
)


def probe_json(
    format_name: str = "mov,mp4,m4a,3gp,3g2,mj2",
    duration: str = "300.000000",
    width: int = 1920,
    height: int = 1080,
    with_video: bool = True,
    with_audio: bool = True,
) -> dict:
    streams = []
    if with_video:
        streams.append({
            "index": 0,
            "codec_type": "video",
            "codec_name": "h264",
            "width": width,
            "height": height,
            "avg_frame_rate": "30/1",
            "bit_rate": "6000000",
        })
    if with_audio:
        streams.append({
            "index": 1,
            "codec_type": "audio",
            "codec_name": "aac",
            "channels": 2,
            "sample_rate": "48000",
            "bit_rate": "128000",
        })
    return {
        "streams": streams,
        "format": {"format_name": format_name, "duration": duration, "size": "225000000"},
    }


class TestParseProbeOutput:

    def test_h264_mp4_descriptor(self, pipeline_config) -> None:
        descriptor = parse_probe_output(probe_json(), "/media/a1.mp4", pipeline_config)

        assert descriptor.container == "mp4"
        assert descriptor.duration_s == 300.0
        assert descriptor.total_bytes == 225000000
        assert descriptor.video.codec == "h264"
        assert (descriptor.video.width, descriptor.video.height) == (1920, 1080)
        assert descriptor.video.fps == 30.0
        assert descriptor.audio.channels == 2
        assert descriptor.audio.sample_rate_hz == 48000

    def test_wav_has_no_video_stream(self, pipeline_config) -> None:
        data = probe_json(format_name="wav", with_video=False)

        with pytest.raises(NoVideoStream):
            parse_probe_output(data, "/media/song.wav", pipeline_config)

    def test_cover_art_is_not_a_video_stream(self, pipeline_config) -> None:
        data = probe_json(format_name="mp3")
        data["streams"][0]["disposition"] = {"attached_pic": 1}

        with pytest.raises(NoVideoStream):
            parse_probe_output(data, "/media/song.mp3", pipeline_config)

    def test_seven_hour_source_exceeds_six_hour_limit(self, pipeline_config) -> None:
        config = replace(pipeline_config, max_source_duration_s=6 * 3600)

        with pytest.raises(DurationExceedsMax):
            parse_probe_output(probe_json(duration=str(7 * 3600)), "/media/long.mp4", config)

    def test_mpegts_container_is_rejected(self, pipeline_config) -> None:
        with pytest.raises(UnsupportedContainer):
            parse_probe_output(probe_json(format_name="mpegts"), "/media/capture.ts", pipeline_config)

    def test_missing_duration_is_unreadable(self, pipeline_config) -> None:
        with pytest.raises(SourceUnreadable):
            parse_probe_output(probe_json(duration="N/A"), "/media/a.mp4", pipeline_config)

    def test_missing_format_is_unreadable(self, pipeline_config) -> None:
        with pytest.raises(SourceUnreadable):
            parse_probe_output({"streams": []}, "/media/a.mp4", pipeline_config)

    def test_source_without_audio(self, pipeline_config) -> None:
        descriptor = parse_probe_output(probe_json(with_audio=False), "/media/a.mp4", pipeline_config)

        assert descriptor.audio is None

    def test_video_check_precedes_container_check(self, pipeline_config) -> None:
        data = probe_json(format_name="mpegts", with_video=False)

        with pytest.raises(NoVideoStream):
            parse_probe_output(data, "/media/audio.ts", pipeline_config)


class TestHelpers:

    @pytest.mark.parametrize(
        "rate, expected",
        [("30/1", 30.0), ("30000/1001", 29.97), ("25", 25.0), ("0/0", 0.0), ("", 0.0), ("abc", 0.0)],
    )
    def test_parse_fps(self, rate, expected) -> None:
        assert parse_fps(rate) == expected

    def test_rotation_from_tags(self) -> None:
        assert parse_rotation({"tags": {"rotate": "90"}}) == 90

    def test_rotation_from_side_data_is_normalized(self) -> None:
        assert parse_rotation({"side_data_list": [{"rotation": -90}]}) == 270

    def test_no_rotation(self) -> None:
        assert parse_rotation({}) == 0

    def test_matroska_demuxer_uses_extension(self) -> None:
        assert detect_container("matroska,webm", "/media/clip.webm") == "webm"
        assert detect_container("matroska,webm", "/media/clip.mkv") == "mkv"

    def test_mov_demuxer_defaults_to_mp4(self) -> None:
        assert detect_container("mov,mp4,m4a,3gp,3g2,mj2", "https://cdn.example.com/video") == "mp4"
        assert detect_container("mov,mp4,m4a,3gp,3g2,mj2", "/media/clip.mov") == "mov"

    def test_unknown_demuxer(self) -> None:
        assert detect_container("mpegts", "/media/a.ts") is None

    def test_resolve_file_uri(self, tmp_path) -> None:
        source = tmp_path / "in.mp4"
        source.write_bytes(b"x")

        assert resolve_source(source.as_uri()) == str(source)
        assert resolve_source(str(source)) == str(source)

    def test_resolve_missing_file(self, tmp_path) -> None:
        with pytest.raises(SourceUnreadable):
            resolve_source(str(tmp_path / "missing.mp4"))

    def test_remote_sources_pass_through(self) -> None:
        assert resolve_source("https://example.com/in.mp4") == "https://example.com/in.mp4"


def write_script(path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


@pytest.mark.skipif(os.name != "posix", reason="shell script fake")
class TestProber:

    @pytest.fixture
    def source(self, tmp_path):
        path = tmp_path / "a1.mp4"
        path.write_bytes(b"\x00" * 16)
        return str(path)

    async def test_probe_runs_ffprobe_and_parses(self, tmp_path, pipeline_config, source) -> None:
        output = tmp_path / "probe.json"
        output.write_text(json.dumps(probe_json()))
        ffprobe = write_script(tmp_path / "ffprobe", f'cat "{output}"\n')
        prober = Prober(replace(pipeline_config, ffprobe_path=ffprobe))

        descriptor = await prober.probe(source)

        assert descriptor.container == "mp4"
        assert descriptor.video.height == 1080

    async def test_ffprobe_failure_is_unreadable(self, tmp_path, pipeline_config, source) -> None:
        ffprobe = write_script(tmp_path / "ffprobe", 'echo "moov atom not found" >&2\nexit 1\n')
        prober = Prober(replace(pipeline_config, ffprobe_path=ffprobe))

        with pytest.raises(SourceUnreadable, match="moov atom not found"):
            await prober.probe(source)

    async def test_garbage_output_is_unreadable(self, tmp_path, pipeline_config, source) -> None:
        ffprobe = write_script(tmp_path / "ffprobe", "echo not-json\n")
        prober = Prober(replace(pipeline_config, ffprobe_path=ffprobe))

        with pytest.raises(SourceUnreadable):
            await prober.probe(source)

    async def test_probe_timeout(self, tmp_path, pipeline_config, source) -> None:
        ffprobe = write_script(tmp_path / "ffprobe", "exec sleep 10\n")
        prober = Prober(replace(pipeline_config, ffprobe_path=ffprobe, probe_timeout_s=0.3))

        with pytest.raises(SourceUnreadable, match="timed out"):
            await prober.probe(source)

    async def test_missing_ffprobe_binary(self, tmp_path, pipeline_config, source) -> None:
        prober = Prober(replace(pipeline_config, ffprobe_path=str(tmp_path / "nope")))

        with pytest.raises(SourceUnreadable):
            await prober.probe(source)

    def test_command_is_an_argument_vector(self, pipeline_config) -> None:
        cmd = Prober(pipeline_config).build_command("/media/a b.mp4")

        assert cmd[0] == "ffprobe"
        assert cmd[-1] == "/media/a b.mp4"
        assert "-show_streams" in cmd and "-show_format" in cmd
