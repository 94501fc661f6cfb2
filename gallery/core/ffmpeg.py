"""ffmpeg / ffprobe collaborator.

Every external invocation goes through :class:`FfmpegCommand` (a typed builder
that validates numeric arguments before anything is spawned) and
:meth:`VideoTools.run` (bounded wall-clock, stderr reduced by
:func:`sanitize_stderr`). Results come back as :class:`Outcome` values.
"""
from __future__ import annotations

import glob
import json
import logging
import math
import os
import subprocess  # nosec B404
from dataclasses import dataclass, field
from typing import Optional, Sequence

from gallery.core.results import ErrorKind, Outcome
from gallery.fingerprint.geometry import Overlay

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = "seg_%05d.ts"
PLAYLIST_NAME = "index.m3u8"

# Lines ffmpeg prints before it says anything useful.
_BANNER_PREFIXES = (
    "ffmpeg version",
    "ffprobe version",
    "built with",
    "configuration:",
    "libavutil",
    "libavcodec",
    "libavformat",
    "libavdevice",
    "libavfilter",
    "libswscale",
    "libswresample",
    "libpostproc",
    "copyright",
)


def sanitize_stderr(stderr, limit: int = 400) -> str:
    """Strip tool banner noise and keep the tail of what is left."""
    if stderr is None:
        return "unknown error"
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    lines = []
    for raw in stderr.splitlines():
        line = raw.strip()
        if not line or line.lower().startswith(_BANNER_PREFIXES):
            continue
        lines.append(line)
    text = " | ".join(lines) or "unknown error"
    if len(text) > limit:
        text = "..." + text[-(limit - 3):]
    return text


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValueError(f"{name} must be a number")
    if not low <= value <= high:
        raise ValueError(f"{name}={value} outside allowed range [{low}, {high}]")


def _frac(value: float) -> str:
    return f"{value:.6f}".rstrip("0").rstrip(".") or "0"


def drawbox_filter(overlays: Sequence[Overlay], opacity: float) -> str:
    """ffmpeg ``-vf`` chain drawing each overlay as a filled translucent box."""
    _check_range("opacity", opacity, 1e-6, 1.0)
    return ",".join(
        "drawbox=x=iw*{x}:y=ih*{y}:w=iw*{w}:h=ih*{h}:color={color}@{alpha}:t=fill".format(
            x=_frac(o.region.x),
            y=_frac(o.region.y),
            w=_frac(o.region.w),
            h=_frac(o.region.h),
            color=o.color,
            alpha=_frac(opacity),
        )
        for o in overlays
    )


class FfmpegCommand:
    """Argument-list builder for a single ffmpeg invocation."""

    def __init__(self, binary: str = "ffmpeg"):
        self._binary = binary
        self._global = ["-hide_banner", "-nostats", "-loglevel", "error"]
        self._inputs: list[str] = []
        self._output_args: list[str] = []
        self._output: Optional[str] = None

    def overwrite(self) -> "FfmpegCommand":
        self._global.append("-y")
        return self

    def protocol_whitelist(self, protocols: str) -> "FfmpegCommand":
        self._inputs += ["-protocol_whitelist", protocols]
        return self

    def hls_input(self) -> "FfmpegCommand":
        # Only the HLS demuxer knows this option; other inputs fail to open with it.
        self._inputs += ["-allowed_extensions", "ALL"]
        return self

    def input(self, path: str, *, seek: Optional[float] = None) -> "FfmpegCommand":
        if not path:
            raise ValueError("input path is required")
        if seek is not None:
            _check_range("seek", seek, 0.0, 7 * 24 * 3600.0)
            self._inputs += ["-ss", f"{seek:.3f}"]
        self._inputs += ["-i", path]
        return self

    def duration(self, seconds: float) -> "FfmpegCommand":
        _check_range("duration", seconds, 0.1, 24 * 3600.0)
        self._output_args += ["-t", f"{seconds:g}"]
        return self

    def video_filter(self, graph: str) -> "FfmpegCommand":
        if graph:
            self._output_args += ["-vf", graph]
        return self

    def filter_complex(self, graph: str, out_label: str) -> "FfmpegCommand":
        self._output_args += ["-filter_complex", graph, "-map", f"[{out_label}]"]
        return self

    def frames(self, count: int) -> "FfmpegCommand":
        _check_range("frames", count, 1, 10_000)
        self._output_args += ["-frames:v", str(int(count))]
        return self

    def h264(self, bitrate_kbps: int, *, preset: str = "veryfast") -> "FfmpegCommand":
        _check_range("video bitrate", bitrate_kbps, 64, 50_000)
        kbps = int(bitrate_kbps)
        self._output_args += [
            "-c:v", "libx264",
            "-preset", preset,
            "-profile:v", "main",
            "-pix_fmt", "yuv420p",
            "-b:v", f"{kbps}k",
            "-maxrate", f"{kbps}k",
            "-bufsize", f"{max(kbps * 2, 256)}k",
        ]
        return self

    def aac(self, bitrate_kbps: int) -> "FfmpegCommand":
        _check_range("audio bitrate", bitrate_kbps, 32, 512)
        self._output_args += ["-c:a", "aac", "-b:a", f"{int(bitrate_kbps)}k", "-ac", "2"]
        return self

    def stream_copy(self) -> "FfmpegCommand":
        self._output_args += ["-c", "copy", "-bsf:a", "aac_adtstoasc"]
        return self

    def keyframes_every(self, seconds: int) -> "FfmpegCommand":
        _check_range("segment seconds", seconds, 2, 10)
        self._output_args += ["-force_key_frames", f"expr:gte(t,n_forced*{int(seconds)})", "-sc_threshold", "0"]
        return self

    def hls(self, segment_seconds: int, output_dir: str) -> "FfmpegCommand":
        _check_range("segment seconds", segment_seconds, 2, 10)
        self._output_args += [
            "-f", "hls",
            "-hls_time", str(int(segment_seconds)),
            "-hls_playlist_type", "vod",
            "-hls_flags", "independent_segments",
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", os.path.join(output_dir, SEGMENT_PATTERN),
        ]
        self._output = os.path.join(output_dir, PLAYLIST_NAME)
        return self

    def raw_gray(self) -> "FfmpegCommand":
        self._output_args += ["-f", "rawvideo", "-pix_fmt", "gray"]
        self._output = "-"
        return self

    def output(self, path: str) -> "FfmpegCommand":
        self._output = path
        return self

    def build(self) -> list[str]:
        if not self._inputs:
            raise ValueError("ffmpeg command has no input")
        if not self._output:
            raise ValueError("ffmpeg command has no output")
        return [self._binary, *self._global, *self._inputs, *self._output_args, self._output]


@dataclass(frozen=True)
class ProbeInfo:
    duration_seconds: Optional[float]
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: int = 0


@dataclass(frozen=True)
class SegmentedOutput:
    playlist_path: str
    segment_files: list = field(default_factory=list)


class VideoTools:
    """Probe / compose+segment / frame-sample operations backed by ffmpeg."""

    def __init__(self, config):
        self.config = config

    def command(self) -> FfmpegCommand:
        return FfmpegCommand(self.config.ffmpeg_path)

    def run(self, command: list[str], *, timeout: Optional[float] = None) -> Outcome[bytes]:
        timeout = timeout or self.config.tool_timeout_seconds
        logger.debug("Running tool command: %s", " ".join(command))
        try:
            result = subprocess.run(command, capture_output=True, shell=False, timeout=timeout, check=False)  # nosec B603
        except subprocess.TimeoutExpired:
            logger.warning("Tool %s timed out after %ss", command[0], timeout)
            return Outcome.failure(ErrorKind.TIMEOUT, f"{os.path.basename(command[0])} timed out after {timeout}s")
        except OSError as e:
            logger.error("Tool %s could not be started: %s", command[0], e)
            return Outcome.failure(ErrorKind.TOOL, f"{os.path.basename(command[0])} unavailable: {e}")

        if result.returncode != 0:
            reason = sanitize_stderr(result.stderr)
            logger.debug("Tool %s exited with %s: %s", command[0], result.returncode, reason)
            return Outcome.failure(ErrorKind.TOOL, f"exit {result.returncode}: {reason}")
        return Outcome.success(result.stdout)

    def probe(self, path: str) -> Outcome[ProbeInfo]:
        if not path or not os.path.isfile(path):
            return Outcome.failure(ErrorKind.INPUT, "file_missing")
        command = [
            self.config.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]
        ran = self.run(command)
        if not ran.ok:
            return Outcome.failure(ran.error, f"ffprobe_failed: {ran.reason}")
        try:
            data = json.loads(ran.value.decode("utf-8", errors="replace") or "{}")
        except ValueError:
            return Outcome.failure(ErrorKind.TOOL, "ffprobe_failed: unparseable output")

        duration = None
        try:
            duration = float((data.get("format") or {}).get("duration"))
        except (TypeError, ValueError):
            duration = None
        if duration is not None and (math.isnan(duration) or math.isinf(duration) or duration < 0):
            duration = None

        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        return Outcome.success(
            ProbeInfo(
                duration_seconds=duration,
                width=(video or {}).get("width"),
                height=(video or {}).get("height"),
                size_bytes=os.path.getsize(path),
            )
        )

    def compose_segments(
        self,
        input_path: str,
        output_dir: str,
        *,
        overlays: Sequence[Overlay],
        opacity: float,
        segment_seconds: int,
        video_bitrate_kbps: int,
        audio_bitrate_kbps: int = 128,
    ) -> Outcome[SegmentedOutput]:
        """Draw *overlays* on every frame, encode, and cut into HLS segments."""
        os.makedirs(output_dir, exist_ok=True)
        cmd = self.command().overwrite().input(input_path)
        if overlays:
            cmd.video_filter(drawbox_filter(overlays, opacity))
        cmd.h264(video_bitrate_kbps).aac(audio_bitrate_kbps).keyframes_every(segment_seconds).hls(segment_seconds, output_dir)

        ran = self.run(cmd.build(), timeout=self.config.package_timeout_seconds)
        if not ran.ok:
            return Outcome.failure(ran.error, f"ffmpeg_video_failed: {ran.reason}")

        playlist = os.path.join(output_dir, PLAYLIST_NAME)
        segments = sorted(glob.glob(os.path.join(output_dir, "seg_*.ts")))
        if not os.path.isfile(playlist) or not segments:
            return Outcome.failure(ErrorKind.TOOL, "ffmpeg_video_failed: no segments produced")
        return Outcome.success(SegmentedOutput(playlist_path=playlist, segment_files=segments))

    def sample_gray(self, path: str, t: float, filter_complex: str, *, expected_bytes: int) -> Outcome[bytes]:
        """Grab one frame at *t* through *filter_complex* (output label ``out``) as raw grey bytes."""
        cmd = self.command().input(path, seek=t).frames(1).filter_complex(filter_complex, "out").raw_gray()
        ran = self.run(cmd.build())
        if not ran.ok:
            return ran
        if len(ran.value) < expected_bytes:
            return Outcome.failure(ErrorKind.TOOL, f"short frame sample ({len(ran.value)}/{expected_bytes} bytes)")
        return ran

    def remux_command(self, input_path: str, output_path: str, *, seconds: float, playlist: bool = False) -> list[str]:
        cmd = self.command().overwrite().protocol_whitelist("file,http,https,tcp,tls,crypto")
        if playlist:
            cmd.hls_input()
        return (
            cmd.input(input_path)
            .duration(seconds)
            .stream_copy()
            .output(output_path)
            .build()
        )

    def remux(self, input_path: str, output_path: str, *, seconds: float, playlist: bool = False) -> Outcome[str]:
        """Copy the first *seconds* of a local or remote input (a playlist when *playlist*) into a local file."""
        cmd = self.remux_command(input_path, output_path, seconds=seconds, playlist=playlist)
        ran = self.run(cmd, timeout=self.config.package_timeout_seconds)
        if not ran.ok:
            return Outcome.failure(ran.error, ran.reason)
        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            return Outcome.failure(ErrorKind.TOOL, "remux produced no output")
        return Outcome.success(output_path)
