"""Leak sample analyzer.

Recovers the per-segment A/B variant sequence carried by a leaked copy of a
packaged video. One ffmpeg invocation per sample grabs a single frame at the
segment midpoint and area-averages the watermark regions down to a strip of
grey pixels; the brightness differences between those pixels decide the bit.
"""
from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from gallery.core import storage
from gallery.core.ffmpeg import VideoTools
from gallery.core.results import ForensicsInputError
from gallery.fingerprint.geometry import (
    V1_NEIGHBOURHOOD_FRAC,
    LayoutMode,
    WatermarkRegion,
    pair_bounds,
    parse_layout,
    regions_for,
    signal_count,
)
from gallery.fingerprint.identity import Variant

logger = logging.getLogger(__name__)

MAX_SAMPLES_CAP = 200
CONFIDENCE_FLOOR = 0.005


@dataclass
class SampleAnalysis:
    media_id: str
    layout: str
    layout_source: str
    segment_seconds: int
    duration_seconds: float
    max_offset: int = 0
    bits: list = field(default_factory=list)
    confidences: list = field(default_factory=list)
    failed_samples: int = 0

    @property
    def samples(self) -> int:
        return len(self.bits)

    @property
    def usable_samples(self) -> int:
        return sum(1 for b in self.bits if b is not None)

    @property
    def variants(self) -> str:
        return "".join(b.letter if b is not None else "?" for b in self.bits)

    def meta(self) -> dict:
        return {
            "media_id": self.media_id,
            "layout": self.layout,
            "layout_source": self.layout_source,
            "segment_seconds": self.segment_seconds,
            "duration_seconds": self.duration_seconds,
            "samples": self.samples,
            "usable_samples": self.usable_samples,
        }


def _num(value: float) -> str:
    return f"{value:.6f}".rstrip("0").rstrip(".") or "0"


def _crop(region: WatermarkRegion) -> str:
    return f"crop=w=iw*{_num(region.w)}:h=ih*{_num(region.h)}:x=iw*{_num(region.x)}:y=ih*{_num(region.y)}"


def neighbourhood(region: WatermarkRegion, size: float = V1_NEIGHBOURHOOD_FRAC) -> WatermarkRegion:
    """Square of *size* centred on *region*, clamped to stay inside the frame."""
    cx = region.x + region.w / 2.0
    cy = region.y + region.h / 2.0
    x = min(max(cx - size / 2.0, 0.0), 1.0 - size)
    y = min(max(cy - size / 2.0, 0.0), 1.0 - size)
    return WatermarkRegion(round(x, 6), round(y, 6), size, size, region.role, region.group)


def sample_filter(regions: Sequence[WatermarkRegion], layout: LayoutMode) -> tuple[str, int]:
    """filter_complex graph (output label ``out``) and the number of grey pixels it yields.

    v1_tiles: per tile, the tile and its neighbourhood each scaled to 1x1.
    v2_pairs: per pair, the pair's bounding box scaled to 2x1 (left, right).
    """
    if layout is LayoutMode.V2_PAIRS:
        crops = [(_crop(b), "2:1") for b in pair_bounds(regions)]
    else:
        crops = []
        for region in regions:
            crops.append((_crop(region), "1:1"))
            crops.append((_crop(neighbourhood(region)), "1:1"))

    n = len(crops)
    parts = [f"[0:v]format=gray,split={n}" + "".join(f"[s{i}]" for i in range(n))]
    for i, (crop, size) in enumerate(crops):
        parts.append(f"[s{i}]{crop},scale={size}:flags=area[c{i}]")
    parts.append("".join(f"[c{i}]" for i in range(n)) + f"hstack=inputs={n}[out]")
    pixels = sum(2 if size == "2:1" else 1 for _, size in crops)
    return ";".join(parts), pixels


def classify(pixels: bytes, count: int) -> tuple[Optional[Variant], float]:
    """Bit and confidence from a strip of (brighter-when-A, brighter-when-B) pixel pairs.

    Pairs are consecutive: v1 (tile, neighbourhood), v2 (left, right).
    """
    if count <= 0:
        return None, 0.0
    values = np.frombuffer(pixels, dtype=np.uint8, count=count * 2).astype(np.int32).reshape(count, 2)
    score = int(np.sum(values[:, 0] - values[:, 1]))
    confidence = round(abs(score) / (count * 255.0), 4)
    if confidence < CONFIDENCE_FLOOR:
        return None, confidence
    return (Variant.A if score >= 0 else Variant.B), confidence


def resolve_layout(storage_root: str, media_id: str, override, default) -> tuple[LayoutMode, str, Optional[dict]]:
    """Layout used for geometry reconstruction: manifest, then override, then default."""
    manifest = None
    try:
        manifest = storage.read_manifest(storage_root, media_id)
    except ValueError:
        manifest = None

    try:
        if manifest and manifest.get("layout"):
            return parse_layout(manifest["layout"]), "manifest", manifest
        if override:
            return parse_layout(override), "override", manifest
        return parse_layout(default), "default", manifest
    except ValueError as exc:
        raise ForensicsInputError(str(exc)) from None


def _segment_seconds(manifest: Optional[dict], fallback: int) -> int:
    value = (manifest or {}).get("segment_seconds")
    if isinstance(value, int) and not isinstance(value, bool) and 2 <= value <= 10:
        return value
    return fallback


def analyze(
    media_id,
    path: str,
    config,
    *,
    layout_override=None,
    max_samples: int = 60,
    max_offset: int = 30,
    tools: Optional[VideoTools] = None,
) -> SampleAnalysis:
    """Extract the observed variant sequence from a leaked sample file.

    Raises ForensicsInputError when the file cannot be probed or has no usable
    duration. Individual sample failures only degrade the result.
    """
    try:
        media = storage.safe_media_id(media_id)
    except ValueError as exc:
        raise ForensicsInputError(str(exc)) from None

    if layout_override and parse_layout_safe(layout_override) is None:
        raise ForensicsInputError(f"unsupported layout: {layout_override!r}")

    tools = tools or VideoTools(config)
    layout, layout_source, manifest = resolve_layout(config.storage_root, media, layout_override, config.layout)
    if layout_source == "manifest" and layout_override and parse_layout_safe(layout_override) is not layout:
        logger.info("Ignoring layout override %s for media %s; packaged with %s", layout_override, media, layout.value)
    seg = _segment_seconds(manifest, config.segment_seconds)

    probed = tools.probe(path)
    if not probed.ok:
        raise ForensicsInputError(f"probe_failed: {probed.reason}")
    duration = probed.value.duration_seconds
    if duration is None:
        raise ForensicsInputError("duration_unknown")

    cap = max(0, min(int(max_samples), MAX_SAMPLES_CAP))
    count = min(int(math.floor(duration / seg)), cap)

    result = SampleAnalysis(
        media_id=media,
        layout=layout.value,
        layout_source=layout_source,
        segment_seconds=seg,
        duration_seconds=round(duration, 3),
        max_offset=max(0, int(max_offset)),
    )
    if count <= 0:
        logger.info("Sample for media %s is shorter than one segment (%.2fs)", media, duration)
        return result

    regions = regions_for(media, layout, secret=config.fingerprint_secret)
    graph, pixels = sample_filter(regions, layout)
    signals = signal_count(regions)

    def _one(i: int):
        t = (i + 0.5) * seg
        sampled = tools.sample_gray(path, t, graph, expected_bytes=pixels)
        if not sampled.ok:
            logger.warning("Sample %s at %.2fs failed for media %s: %s", i, t, media, sampled.reason)
            return None, 0.0, True
        bit, confidence = classify(sampled.value, signals)
        return bit, confidence, False

    workers = max(1, min(config.analyzer_max_workers, count))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for bit, confidence, failed in pool.map(_one, range(count)):
            result.bits.append(bit)
            result.confidences.append(confidence)
            if failed:
                result.failed_samples += 1

    logger.info(
        "Analyzed media %s: layout=%s (%s) samples=%s usable=%s failed=%s",
        media, result.layout, layout_source, result.samples, result.usable_samples, result.failed_samples,
    )
    return result


def parse_layout_safe(value) -> Optional[LayoutMode]:
    try:
        return parse_layout(value)
    except ValueError:
        return None
