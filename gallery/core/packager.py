"""Rendition packager: builds the A/B (or legacy single) HLS sets for a video.

Both variants are encoded from the same master with identical segment
boundaries; they differ only in which watermark regions are drawn light or
dark. Output is built in a private temp directory and swapped into place by
rename, so a failed or interrupted run never damages the published set.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from gallery.core import storage
from gallery.core.ffmpeg import ProbeInfo, VideoTools
from gallery.core.locks import media_lock, processing_lock
from gallery.core.results import ErrorKind, Outcome
from gallery.fingerprint.geometry import parse_layout, regions_for, variant_overlays
from gallery.fingerprint.identity import Variant

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_KBPS = 5000
MIN_VIDEO_KBPS = 800
MAX_VIDEO_KBPS = 12_000


@dataclass(frozen=True)
class RenditionSet:
    media_id: str
    root: str
    fingerprinted: bool
    layout: Optional[str]
    segment_seconds: int
    segment_count: int
    variants: tuple = field(default_factory=tuple)
    generated_at: str = ""
    width: Optional[int] = None
    height: Optional[int] = None
    duration_seconds: Optional[float] = None

    def as_metadata(self) -> dict:
        return {
            "ready": True,
            "fingerprinted": self.fingerprinted,
            "layout": self.layout,
            "segment_seconds": self.segment_seconds,
            "segment_count": self.segment_count,
            "variants": list(self.variants),
            "generated_at": self.generated_at,
        }


class _PackagingFailed(Exception):
    def __init__(self, kind: ErrorKind, reason: str):
        super().__init__(reason)
        self.kind = kind
        self.reason = reason


def estimate_video_bitrate_kbps(probe: Optional[ProbeInfo]) -> int:
    """Rough estimate from the master's size and duration, to avoid extreme re-encodes."""
    if probe is None or not probe.duration_seconds or probe.size_bytes <= 0:
        return DEFAULT_VIDEO_KBPS
    kbps = round((probe.size_bytes * 8.0 / probe.duration_seconds) / 1000.0)
    return max(MIN_VIDEO_KBPS, min(kbps, MAX_VIDEO_KBPS))


def master_playlist_content(probe: Optional[ProbeInfo]) -> str:
    bps = 5_000_000
    if probe is not None and probe.duration_seconds and probe.size_bytes > 0:
        bps = int(probe.size_bytes * 8 / probe.duration_seconds)
    bps = max(bps, 500_000)

    res = ""
    if probe is not None and probe.width and probe.height:
        res = f"RESOLUTION={probe.width}x{probe.height},"

    return (
        "#EXTM3U\n"
        "#EXT-X-VERSION:3\n"
        "#EXT-X-INDEPENDENT-SEGMENTS\n"
        f"#EXT-X-STREAM-INF:{res}BANDWIDTH={bps},AVERAGE-BANDWIDTH={bps}\n"
        f"{storage.TEMPLATE_VARIANT}/{storage.PLAYLIST_NAME}\n"
    )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_duration_policy(probed: Outcome[ProbeInfo], max_seconds: int) -> None:
    # With a duration policy active we never guess: unknown duration fails closed.
    if max_seconds <= 0:
        return
    if not probed.ok or probed.value.duration_seconds is None:
        raise _PackagingFailed(ErrorKind.POLICY, "duration_unknown")
    if probed.value.duration_seconds > max_seconds:
        raise _PackagingFailed(ErrorKind.POLICY, f"duration_exceeds_{max_seconds}_seconds")


def swap_in_published(final_root: str, tmp_root: str, item_root: str) -> Optional[str]:
    """Rename *tmp_root* to *final_root*, relocating any previous set first.

    Returns the relocated previous set (if any). If the final rename fails the
    previous set is moved back before the error propagates.
    """
    old_root = None
    if os.path.isdir(final_root):
        stamp = time.strftime("%Y%m%d%H%M%S", time.gmtime())
        old_root = os.path.join(item_root, f"{storage.OLD_PREFIX}{stamp}_{secrets.token_hex(4)}")
        os.rename(final_root, old_root)

    try:
        os.rename(tmp_root, final_root)
    except OSError:
        if os.path.isdir(final_root):
            shutil.rmtree(final_root, ignore_errors=True)
        if old_root and os.path.isdir(old_root):
            os.rename(old_root, final_root)
        raise
    return old_root


def _purge_temp(item_root: str) -> None:
    if not os.path.isdir(item_root):
        return
    for name in os.listdir(item_root):
        if name.startswith(storage.TMP_PREFIX):
            shutil.rmtree(os.path.join(item_root, name), ignore_errors=True)


def package_video(
    media_id,
    source_path: str,
    config,
    *,
    layout_mode=None,
    tools: Optional[VideoTools] = None,
    audio_bitrate_kbps: int = 128,
) -> Outcome[RenditionSet]:
    """Build and publish the rendition set for *media_id* from a transcoded master.

    With fingerprinting enabled this produces variants A and B using the
    watermark geometry for *layout_mode* (config default when omitted);
    otherwise a single unwatermarked set.
    """
    try:
        media = storage.safe_media_id(media_id)
        layout = parse_layout(layout_mode or config.layout)
    except ValueError as exc:
        return Outcome.failure(ErrorKind.INPUT, str(exc))
    if not source_path or not os.path.isfile(source_path):
        return Outcome.failure(ErrorKind.INPUT, "source_missing")

    tools = tools or VideoTools(config)
    os.makedirs(config.storage_root, exist_ok=True)

    with processing_lock(config.storage_root):
        with media_lock(config.storage_root, media):
            return _package_locked(media, source_path, config, layout.value, tools, audio_bitrate_kbps)


def _package_locked(media: str, source_path: str, config, layout: str, tools: VideoTools, audio_kbps: int) -> Outcome[RenditionSet]:
    item_root = storage.item_dir(config.storage_root, media)
    final_root = storage.hls_root(config.storage_root, media)
    os.makedirs(item_root, exist_ok=True)
    tmp_root = os.path.join(item_root, f"{storage.TMP_PREFIX}{secrets.token_hex(8)}")

    fingerprinted = bool(config.fingerprint_enabled)
    segment_seconds = config.segment_seconds

    try:
        probed = tools.probe(source_path)
        _check_duration_policy(probed, config.max_video_duration_seconds)
        probe = probed.value if probed.ok else None
        if probe is None:
            logger.warning("Probe failed for media %s (%s); packaging with default bitrate", media, probed.reason)
        video_kbps = estimate_video_bitrate_kbps(probe)

        if fingerprinted:
            regions = regions_for(media, layout, secret=config.fingerprint_secret)
            counts = {}
            for variant in (Variant.A, Variant.B):
                out = tools.compose_segments(
                    source_path,
                    storage.variant_dir(tmp_root, variant.value),
                    overlays=variant_overlays(regions, variant),
                    opacity=config.opacity,
                    segment_seconds=segment_seconds,
                    video_bitrate_kbps=video_kbps,
                    audio_bitrate_kbps=audio_kbps,
                )
                if not out.ok:
                    raise _PackagingFailed(out.error, f"variant {variant.value}: {out.reason}")
                counts[variant] = len(out.value.segment_files)
            if counts[Variant.A] != counts[Variant.B]:
                raise _PackagingFailed(ErrorKind.TOOL, f"variant_segment_mismatch a={counts[Variant.A]} b={counts[Variant.B]}")

            # The A playlist is the template (segment names + durations) rewritten per viewer.
            template = storage.template_playlist_path(tmp_root)
            os.makedirs(os.path.dirname(template), exist_ok=True)
            shutil.copyfile(os.path.join(storage.variant_dir(tmp_root, "a"), storage.PLAYLIST_NAME), template)
            segment_count = counts[Variant.A]
            variants = ("a", "b")
        else:
            out = tools.compose_segments(
                source_path,
                storage.variant_dir(tmp_root, storage.TEMPLATE_VARIANT),
                overlays=[],
                opacity=config.opacity,
                segment_seconds=segment_seconds,
                video_bitrate_kbps=video_kbps,
                audio_bitrate_kbps=audio_kbps,
            )
            if not out.ok:
                raise _PackagingFailed(out.error, out.reason)
            segment_count = len(out.value.segment_files)
            variants = (storage.TEMPLATE_VARIANT,)

        generated_at = _utc_now()
        with open(os.path.join(tmp_root, storage.MASTER_NAME), "w", encoding="utf-8") as fh:
            fh.write(master_playlist_content(probe))

        manifest = {
            "media_id": media,
            "fingerprinted": fingerprinted,
            "layout": layout if fingerprinted else None,
            "segment_seconds": segment_seconds,
            "segment_count": segment_count,
            "opacity": config.opacity if fingerprinted else None,
            "generated_at": generated_at,
        }
        with open(os.path.join(tmp_root, storage.MANIFEST_NAME), "w", encoding="utf-8") as fh:
            json.dump(manifest, fh, indent=2)

        with open(os.path.join(tmp_root, storage.COMPLETE_MARKER), "w", encoding="utf-8") as fh:
            fh.write(generated_at)

        _verify_build(tmp_root, variants)
        old_root = swap_in_published(final_root, tmp_root, item_root)
    except _PackagingFailed as failure:
        logger.error("HLS packaging failed media_id=%s kind=%s reason=%s", media, failure.kind.value, failure.reason)
        _purge_temp(item_root)
        return Outcome.failure(failure.kind, failure.reason)
    except OSError as exc:
        logger.error("HLS packaging storage error media_id=%s: %s", media, exc)
        _purge_temp(item_root)
        return Outcome.failure(ErrorKind.STORAGE, f"storage_error: {exc}")

    if old_root:
        logger.info("Previous HLS set for %s relocated to %s", media, old_root)
    logger.info("Published HLS set for %s (fingerprinted=%s layout=%s segments=%s)", media, fingerprinted, manifest["layout"], segment_count)

    return Outcome.success(
        RenditionSet(
            media_id=media,
            root=final_root,
            fingerprinted=fingerprinted,
            layout=manifest["layout"],
            segment_seconds=segment_seconds,
            segment_count=segment_count,
            variants=variants,
            generated_at=generated_at,
            width=probe.width if probe else None,
            height=probe.height if probe else None,
            duration_seconds=probe.duration_seconds if probe else None,
        ),
        degraded=probe is None,
    )


def _verify_build(tmp_root: str, variants: tuple) -> None:
    required = [
        os.path.join(tmp_root, storage.MASTER_NAME),
        os.path.join(tmp_root, storage.MANIFEST_NAME),
        os.path.join(tmp_root, storage.COMPLETE_MARKER),
        storage.template_playlist_path(tmp_root),
    ]
    missing = [p for p in required if not os.path.isfile(p)]
    if missing:
        raise _PackagingFailed(ErrorKind.STORAGE, "hls_outputs_incomplete: " + ", ".join(os.path.basename(p) for p in missing))
    if not any(os.path.isfile(os.path.join(storage.variant_dir(tmp_root, v), storage.PLAYLIST_NAME)) for v in variants):
        raise _PackagingFailed(ErrorKind.STORAGE, "hls_outputs_incomplete: no variant playlist")
