"""Watermark geometry generator.

Derives, per media item, the frame regions whose brightness differs between
the A and B renditions. Positions are fractions of the frame width/height so
the same geometry applies to any resolution, and they are re-derived from the
secret on demand (never stored) so old media stays analyzable.

Layouts
-------
v1_tiles
    Six independent tiles. Variant A lightens every tile, B darkens it; the
    analyzer compares each tile against its surrounding neighbourhood.
v2_pairs
    Three pairs of horizontally adjacent boxes. Variant A renders left light /
    right dark, B the inverse; the analyzer compares left against right, which
    cancels the scene's own brightness and doubles the usable signal.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from gallery.fingerprint._keystream import prng_bytes, u32_to_unit
from gallery.fingerprint.identity import Identifier, Variant, require_identifier

WATERMARK_SALT = "gallery_fingerprint_watermark_v1"

V1_BOX_COUNT = 6
V1_BOX_SIZE_FRAC = 0.12
V2_PAIR_COUNT = 3
V2_BOX_SIZE_FRAC = 0.12
DEFAULT_OPACITY = 0.006

# Keep away from the borders so mild crops don't remove everything.
MARGIN = 0.06

# v1 neighbourhood used by the analyzer: 1.5x the tile, centred on it.
V1_NEIGHBOURHOOD_FRAC = round(V1_BOX_SIZE_FRAC * 1.5, 6)


class LayoutMode(str, Enum):
    V1_TILES = "v1_tiles"
    V2_PAIRS = "v2_pairs"


class RegionRole(str, Enum):
    INDEPENDENT_TILE = "independent-tile"
    PAIRED_LIGHT = "paired-light"
    PAIRED_DARK = "paired-dark"


@dataclass(frozen=True)
class WatermarkRegion:
    x: float
    y: float
    w: float
    h: float
    role: RegionRole
    group: int = 0

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h


@dataclass(frozen=True)
class Overlay:
    """A filled translucent box to draw on every frame of one variant."""

    region: WatermarkRegion
    color: str


def parse_layout(value) -> LayoutMode:
    if isinstance(value, LayoutMode):
        return value
    try:
        return LayoutMode(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"unsupported layout: {value!r}") from None


def _placements(secret: str, label: str, count: int, width: float, height: float) -> list[tuple[float, float]]:
    seed = prng_bytes(secret, label, count * 8)

    max_x = 1.0 - MARGIN - width
    max_y = 1.0 - MARGIN - height
    span_x = max(max_x - MARGIN, 0.001)
    span_y = max(max_y - MARGIN, 0.001)

    out = []
    for i in range(count):
        x_r = u32_to_unit(seed, i * 8)
        y_r = u32_to_unit(seed, i * 8 + 4)
        out.append((round(MARGIN + span_x * x_r, 6), round(MARGIN + span_y * y_r, 6)))
    return out


def _v1_tiles(media: str, secret: str) -> list[WatermarkRegion]:
    label = f"wm|{WATERMARK_SALT}|{media}"
    return [
        WatermarkRegion(x, y, V1_BOX_SIZE_FRAC, V1_BOX_SIZE_FRAC, RegionRole.INDEPENDENT_TILE, group=i)
        for i, (x, y) in enumerate(_placements(secret, label, V1_BOX_COUNT, V1_BOX_SIZE_FRAC, V1_BOX_SIZE_FRAC))
    ]


def _v2_pairs(media: str, secret: str) -> list[WatermarkRegion]:
    label = f"wm|{WATERMARK_SALT}|{media}|v2"
    box = V2_BOX_SIZE_FRAC
    regions = []
    for i, (x, y) in enumerate(_placements(secret, label, V2_PAIR_COUNT, box * 2.0, box)):
        regions.append(WatermarkRegion(x, y, box, box, RegionRole.PAIRED_LIGHT, group=i))
        regions.append(WatermarkRegion(round(x + box, 6), y, box, box, RegionRole.PAIRED_DARK, group=i))
    return regions


def regions_for(media_id: Identifier, layout_mode, *, secret: str) -> list[WatermarkRegion]:
    """Deterministic region list for (media_id, layout_mode).

    v2 regions come in (light, dark) order per pair, pairs in placement order.
    """
    media = require_identifier(media_id, "media_id")
    layout = parse_layout(layout_mode)
    if layout is LayoutMode.V2_PAIRS:
        return _v2_pairs(media, secret)
    return _v1_tiles(media, secret)


def signal_count(regions: Sequence[WatermarkRegion]) -> int:
    """Number of independent A/B comparisons the regions carry (tiles or pairs)."""
    return len({r.group for r in regions})


def variant_overlays(regions: Sequence[WatermarkRegion], variant: Variant) -> list[Overlay]:
    """Colours to draw for *variant*.

    Light/dark roles describe variant A; variant B swaps them. Independent
    tiles are all white for A and all black for B.
    """
    overlays = []
    for region in regions:
        light = variant is Variant.A
        if region.role is RegionRole.PAIRED_DARK:
            light = not light
        overlays.append(Overlay(region, "white" if light else "black"))
    return overlays


def pair_bounds(regions: Sequence[WatermarkRegion]) -> list[WatermarkRegion]:
    """Collapse v2 (light, dark) regions into one bounding box per pair."""
    by_group: dict[int, list[WatermarkRegion]] = {}
    for region in regions:
        by_group.setdefault(region.group, []).append(region)
    out = []
    for group in sorted(by_group):
        members = by_group[group]
        left = min(m.x for m in members)
        top = min(m.y for m in members)
        right = max(m.right for m in members)
        bottom = max(m.bottom for m in members)
        out.append(WatermarkRegion(left, top, round(right - left, 6), round(bottom - top, 6), RegionRole.PAIRED_LIGHT, group=group))
    return out
