"""FFmpeg driver for HLS renditions.

Runs one encoder child per rendition with a fixed argument vector (never a
shell string), bounds its stderr, enforces the wall-clock timeout and reacts
to cancellation by terminating the child. Output is verified before it is
handed to the segment writer; on any failure the rendition directory is
removed so partial files never leave scratch.
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Optional

from hlsingest.core.metrics import ACTIVE_TRANSCODES, TRANSCODE_DURATION_SECONDS
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import Cancelled, EncoderTransient, TranscodeFailed, bound_detail
from hlsingest.modules.ingest.manifest import MEDIA_PLAYLIST_NAME, parse_media_playlist
from hlsingest.modules.ingest.planner import RenditionSpec

logger = logging.getLogger(__name__)

SEGMENT_TEMPLATE = "segment_%03d.ts"
AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2

# stderr fragments that indicate an I/O problem rather than a bad source
TRANSIENT_STDERR_MARKERS = (
    "Connection timed out",
    "Connection reset by peer",
    "Input/output error",
    "Resource temporarily unavailable",
)


class StderrBuffer:
    """Keeps the most recent ``limit`` bytes of a stream."""

    def __init__(self, limit: int):
        self.limit = limit
        self.dropped = 0
        self._data = bytearray()

    def feed(self, chunk: bytes) -> None:
        self._data += chunk
        overflow = len(self._data) - self.limit
        if overflow > 0:
            del self._data[:overflow]
            self.dropped += overflow

    def __len__(self) -> int:
        return len(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


async def _drain(stream: Optional[asyncio.StreamReader], buffer: StderrBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        buffer.feed(chunk)


@dataclass
class RunResult:
    """Exit status of one encoder invocation."""
    returncode: Optional[int]
    stderr: str
    timed_out: bool = False


@dataclass
class RenditionOutput:
    """Verified encoder output for one rendition, still in scratch."""
    label: str
    directory: str
    playlist_path: str
    segment_files: list[str] = field(default_factory=list)
    segment_count: int = 0
    avg_segment_seconds: float = 0.0


class TranscodeDriver:
    """Invokes ffmpeg for renditions and thumbnails."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def build_command(self, source: str, spec: RenditionSpec, output_dir: str, has_audio: bool = True) -> list[str]:
        """Build the argument vector for one HLS rendition.

        Args:
            source: Local path or URL of the source
            spec: Rendition to produce
            output_dir: Directory receiving playlist and segments
            has_audio: Whether the source carries an audio stream; if not,
                a silent track is muxed in so every variant has AAC audio

        Returns:
            Command as a list of arguments
        """
        cmd = [self.config.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-i", source]
        if has_audio:
            cmd += ["-map", "0:v:0", "-map", "0:a:0"]
        else:
            cmd += [
                "-f", "lavfi",
                "-i", f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_SAMPLE_RATE}",
                "-map", "0:v:0", "-map", "1:a:0",
                "-shortest",
            ]
        cmd += [
            # Video
            "-c:v", self.config.video_encoder,
            "-preset", self.config.encoder_preset,
            "-profile:v", "high",
            "-level:v", spec.level,
            "-pix_fmt", "yuv420p",
            "-b:v", f"{spec.video_kbps}k",
            "-maxrate", f"{spec.max_kbps}k",
            "-bufsize", f"{spec.buffer_kbps}k",
            "-vf", spec.scale_filter,
            "-r", str(spec.fps),
            "-g", str(spec.gop),
            "-keyint_min", str(spec.gop),
            "-sc_threshold", "0",
            # Audio
            "-c:a", "aac",
            "-b:a", f"{spec.audio_kbps}k",
            "-ac", str(AUDIO_CHANNELS),
            "-ar", str(AUDIO_SAMPLE_RATE),
            # HLS muxer
            "-f", "hls",
            "-hls_time", str(self.config.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_flags", "independent_segments",
            "-hls_list_size", "0",
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", os.path.join(output_dir, SEGMENT_TEMPLATE),
            os.path.join(output_dir, MEDIA_PLAYLIST_NAME),
        ]
        return cmd

    def build_thumbnail_command(self, source: str, at_seconds: float, output_path: str) -> list[str]:
        return [
            self.config.ffmpeg_path, "-hide_banner", "-nostdin", "-y",
            "-ss", f"{at_seconds:.3f}",
            "-i", source,
            "-frames:v", "1",
            "-q:v", "2",
            output_path,
        ]

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the child, escalating to SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.cancel_grace_s)
        except asyncio.TimeoutError:
            logger.warning("Encoder ignored SIGTERM, killing", extra={"pid": process.pid})
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def run(
        self,
        cmd: list[str],
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunResult:
        """Run an encoder command under timeout and cancellation control.

        Raises:
            Cancelled: If ``cancel_event`` fired before the child exited
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        buffer = StderrBuffer(self.config.stderr_max_bytes)
        drain_task = asyncio.create_task(_drain(process.stderr, buffer))
        exit_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        timed_out = False
        cancelled = False
        try:
            waiters = {exit_task} if cancel_task is None else {exit_task, cancel_task}
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if exit_task not in done:
                if cancel_task is not None and cancel_task in done:
                    cancelled = True
                else:
                    timed_out = True
                await self._stop(process)
            try:
                await asyncio.wait_for(drain_task, timeout=self.config.cancel_grace_s)
            except asyncio.TimeoutError:
                logger.warning("stderr still open after encoder exit", extra={"pid": process.pid})
        finally:
            for task in (exit_task, cancel_task, drain_task):
                if task is not None and not task.done():
                    task.cancel()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if cancelled:
            raise Cancelled("encoder terminated on cancel")
        return RunResult(returncode=process.returncode, stderr=buffer.text(), timed_out=timed_out)

    def is_transient(self, result: RunResult) -> bool:
        if result.returncode in self.config.transient_exit_codes:
            return True
        return any(marker in result.stderr for marker in TRANSIENT_STDERR_MARKERS)

    async def transcode(
        self,
        source: str,
        spec: RenditionSpec,
        output_dir: str,
        has_audio: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RenditionOutput:
        """Encode one rendition into ``output_dir``.

        Args:
            source: Local path or URL of the source
            spec: Rendition to produce
            output_dir: Fresh directory for this rendition's files
            has_audio: Whether the source has audio
            cancel_event: Set to stop the encoder

        Returns:
            Verified RenditionOutput

        Raises:
            EncoderTransient: Retryable encoder failure
            TranscodeFailed: Permanent failure, timeout or bad output
            Cancelled: Cancel was requested while the encoder ran
        """
        shutil.rmtree(output_dir, ignore_errors=True)
        os.makedirs(output_dir)
        cmd = self.build_command(source, spec, output_dir, has_audio)
        logger.info("Starting encoder", extra={"label": spec.label, "argv": cmd})

        started = time.monotonic()
        ACTIVE_TRANSCODES.inc()
        try:
            result = await self.run(cmd, self.config.transcode_timeout_s, cancel_event)
        except OSError as e:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise TranscodeFailed(spec.label, "encoder could not be started", str(e))
        except BaseException:
            # Cancelled, hard stop or spawn failure: leave nothing behind
            shutil.rmtree(output_dir, ignore_errors=True)
            raise
        finally:
            ACTIVE_TRANSCODES.dec()
            TRANSCODE_DURATION_SECONDS.labels(label=spec.label).observe(time.monotonic() - started)

        detail = bound_detail(result.stderr, self.config.error_detail_max_bytes)
        if result.timed_out:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise TranscodeFailed(
                spec.label, f"timeout after {self.config.transcode_timeout_s:.0f}s", detail
            )
        if result.returncode != 0:
            shutil.rmtree(output_dir, ignore_errors=True)
            reason = f"exit code {result.returncode}"
            if self.is_transient(result):
                raise EncoderTransient(spec.label, reason, detail)
            raise TranscodeFailed(spec.label, reason, detail)

        try:
            output = self.verify_output(spec.label, output_dir)
        except TranscodeFailed:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise
        logger.info(
            "Encoder finished",
            extra={
                "label": spec.label,
                "segments": output.segment_count,
                "seconds": round(time.monotonic() - started, 3),
            },
        )
        return output

    def verify_output(self, label: str, output_dir: str) -> RenditionOutput:
        """Check that the playlist is complete and every segment exists.

        Raises:
            TranscodeFailed: If the playlist is missing, truncated or empty
        """
        playlist_path = os.path.join(output_dir, MEDIA_PLAYLIST_NAME)
        if not os.path.isfile(playlist_path):
            raise TranscodeFailed(label, "playlist missing")
        with open(playlist_path, encoding="utf-8") as f:
            text = f.read()
        try:
            playlist = parse_media_playlist(text)
        except ValueError as e:
            raise TranscodeFailed(label, "playlist unreadable", str(e))
        if not playlist.ended:
            raise TranscodeFailed(label, "playlist truncated (no #EXT-X-ENDLIST)")
        if playlist.segment_count == 0:
            raise TranscodeFailed(label, "playlist lists no segments")

        segment_files = []
        for uri, _ in playlist.segments:
            path = os.path.join(output_dir, os.path.basename(uri))
            if not os.path.isfile(path) or os.path.getsize(path) == 0:
                raise TranscodeFailed(label, f"segment {uri} missing or empty")
            segment_files.append(path)

        return RenditionOutput(
            label=label,
            directory=output_dir,
            playlist_path=playlist_path,
            segment_files=segment_files,
            segment_count=playlist.segment_count,
            avg_segment_seconds=playlist.avg_segment_seconds,
        )

    async def extract_thumbnail(
        self,
        source: str,
        at_seconds: float,
        output_path: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Grab a single JPEG frame at ``at_seconds``.

        Raises:
            TranscodeFailed: If no image was produced
            Cancelled: On cancel
        """
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = self.build_thumbnail_command(source, at_seconds, output_path)
        try:
            result = await self.run(cmd, self.config.probe_timeout_s, cancel_event)
        except OSError as e:
            raise TranscodeFailed("thumbnail", "encoder could not be started", str(e))
        if result.timed_out or result.returncode != 0 or not os.path.isfile(output_path):
            if os.path.exists(output_path):
                os.remove(output_path)
            reason = "timeout" if result.timed_out else f"exit code {result.returncode}"
            raise TranscodeFailed(
                "thumbnail", reason, bound_detail(result.stderr, self.config.error_detail_max_bytes)
            )
        return output_path

    async def check_available(self) -> bool:
        """Check that the encoder binary runs (``ffmpeg -version``)."""
        try:
            result = await self.run([self.config.ffmpeg_path, "-version"], timeout=10.0)
        except OSError:
            return False
        return result.returncode == 0 and not result.timed_out
