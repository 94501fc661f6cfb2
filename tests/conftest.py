import math
import os

import pytest

# Required at import time by gallery.core.config
os.environ.setdefault("SECRET_KEY", "Test-Secret-Key-For-Gallery-Forensics-0123456789!")
os.environ.setdefault("MONGO_DATABASE_URL", "mongodb://localhost:27017")
os.environ.setdefault("STORAGE_ROOT", "media_private_test")

from gallery.core.config import ForensicsConfig  # noqa: E402
from gallery.core.ffmpeg import PLAYLIST_NAME, ProbeInfo, SegmentedOutput, VideoTools  # noqa: E402
from gallery.core.results import ErrorKind, Outcome  # noqa: E402
from gallery.fingerprint.identity import Variant  # noqa: E402

TEST_SECRET = "unit-test-fingerprint-secret"


@pytest.fixture
def config(tmp_path):
    return ForensicsConfig(
        fingerprint_secret=TEST_SECRET,
        storage_root=str(tmp_path / "media"),
        analyzer_max_workers=2,
    )


@pytest.fixture
def source_video(tmp_path):
    path = tmp_path / "master.mp4"
    path.write_bytes(b"\x00" * 4096)
    return str(path)


class FakeVideoTools(VideoTools):
    """VideoTools stand-in that writes placeholder segments and synthesizes frame samples.

    ``leak_bits`` is the per-segment variant sequence the "leaked" file carries;
    sample_gray answers with a pixel strip whose brightness pairs encode it.
    """

    def __init__(
        self,
        config,
        *,
        duration=60.0,
        leak_bits=None,
        segment_seconds=None,
        probe_ok=True,
        fail_samples=(),
        fail_compose_in=None,
        width=1280,
        height=720,
    ):
        super().__init__(config)
        self.duration = duration
        self.leak_bits = list(leak_bits or [])
        self.segment_seconds = segment_seconds or config.segment_seconds
        self.probe_ok = probe_ok
        self.fail_samples = set(fail_samples)
        self.fail_compose_in = fail_compose_in
        self.width = width
        self.height = height
        self.compose_calls = []
        self.sample_calls = []
        self.remux_calls = []

    def probe(self, path):
        if not self.probe_ok:
            return Outcome.failure(ErrorKind.TOOL, "ffprobe_failed: exit 1: Invalid data found when processing input")
        return Outcome.success(
            ProbeInfo(duration_seconds=self.duration, width=self.width, height=self.height, size_bytes=os.path.getsize(path))
        )

    def compose_segments(self, input_path, output_dir, *, overlays, opacity, segment_seconds, video_bitrate_kbps, audio_bitrate_kbps=128):
        self.compose_calls.append({"output_dir": output_dir, "overlays": list(overlays), "opacity": opacity, "kbps": video_bitrate_kbps})
        if self.fail_compose_in and self.fail_compose_in in output_dir.replace("\\", "/"):
            return Outcome.failure(ErrorKind.TOOL, "ffmpeg_video_failed: exit 1: Conversion failed!")
        os.makedirs(output_dir, exist_ok=True)
        count = max(1, int(math.ceil(self.duration / segment_seconds)))
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", f"#EXT-X-TARGETDURATION:{segment_seconds}", "#EXT-X-PLAYLIST-TYPE:VOD"]
        segments = []
        for i in range(count):
            name = f"seg_{i:05d}.ts"
            with open(os.path.join(output_dir, name), "wb") as fh:
                fh.write(b"\x47" * 188)
            lines += [f"#EXTINF:{segment_seconds:.6f},", name]
            segments.append(os.path.join(output_dir, name))
        lines.append("#EXT-X-ENDLIST")
        playlist = os.path.join(output_dir, PLAYLIST_NAME)
        with open(playlist, "w", encoding="utf-8") as fh:
            fh.write("\n".join(lines) + "\n")
        return Outcome.success(SegmentedOutput(playlist_path=playlist, segment_files=segments))

    def sample_gray(self, path, t, filter_complex, *, expected_bytes):
        index = int(t // self.segment_seconds)
        self.sample_calls.append(index)
        if index in self.fail_samples:
            return Outcome.failure(ErrorKind.TIMEOUT, "ffmpeg timed out after 60s")
        bit = self.leak_bits[index] if index < len(self.leak_bits) else None
        if bit is Variant.A:
            pair = bytes([131, 125])
        elif bit is Variant.B:
            pair = bytes([125, 131])
        else:
            pair = bytes([128, 128])
        return Outcome.success(pair * (expected_bytes // 2))

    def remux(self, input_path, output_path, *, seconds, playlist=False):
        call = {"input": input_path, "seconds": seconds, "playlist": playlist}
        if playlist:
            with open(input_path, encoding="utf-8") as fh:
                call["playlist_text"] = fh.read()
        self.remux_calls.append(call)
        with open(output_path, "wb") as fh:
            fh.write(b"\x00" * 64)
        return Outcome.success(output_path)


@pytest.fixture
def fake_tools_factory(config):
    def _make(**kwargs):
        return FakeVideoTools(config, **kwargs)

    return _make
