import json
import os

import pytest

from gallery.core import storage
from gallery.core.analyzer import analyze, classify, neighbourhood, sample_filter
from gallery.core.results import ForensicsInputError
from gallery.fingerprint.geometry import LayoutMode, RegionRole, WatermarkRegion, regions_for
from gallery.fingerprint.identity import Variant

MEDIA = "movie_1"


def _write_manifest(config, **fields):
    root = storage.hls_root(config.storage_root, MEDIA)
    os.makedirs(root, exist_ok=True)
    manifest = {"media_id": MEDIA, "fingerprinted": True, "segment_seconds": 6}
    manifest.update(fields)
    with open(os.path.join(root, storage.MANIFEST_NAME), "w", encoding="utf-8") as fh:
        json.dump(manifest, fh)


def test_classify_scores_brightness_pairs():
    bit, confidence = classify(bytes([140, 120]) * 3, 3)
    assert bit is Variant.A
    assert confidence == round(60 / (3 * 255), 4)

    bit, _ = classify(bytes([100, 130, 100, 130]), 2)
    assert bit is Variant.B


def test_classify_below_floor_is_unusable():
    bit, confidence = classify(bytes([121, 120]) * 3, 3)
    assert bit is None
    assert confidence < 0.005


def test_sample_filter_pixel_counts(config):
    v1 = regions_for(MEDIA, "v1_tiles", secret=config.fingerprint_secret)
    graph, pixels = sample_filter(v1, LayoutMode.V1_TILES)
    assert pixels == 12
    assert "split=12" in graph
    assert graph.endswith("hstack=inputs=12[out]")
    assert "scale=1:1:flags=area" in graph

    v2 = regions_for(MEDIA, "v2_pairs", secret=config.fingerprint_secret)
    graph, pixels = sample_filter(v2, LayoutMode.V2_PAIRS)
    assert pixels == 6
    assert graph.count("scale=2:1:flags=area") == 3
    assert graph.endswith("hstack=inputs=3[out]")


def test_neighbourhood_is_clamped_to_frame():
    corner = WatermarkRegion(0.0, 0.0, 0.12, 0.12, RegionRole.INDEPENDENT_TILE)
    box = neighbourhood(corner)
    assert box.x == 0.0 and box.y == 0.0
    far = WatermarkRegion(0.9, 0.9, 0.12, 0.12, RegionRole.INDEPENDENT_TILE)
    box = neighbourhood(far)
    assert box.right <= 1.0 + 1e-9 and box.bottom <= 1.0 + 1e-9


def test_sample_count_and_midpoints(config, source_video, fake_tools_factory):
    bits = [Variant.A, Variant.B] * 10
    tools = fake_tools_factory(duration=61.0, leak_bits=bits)
    result = analyze(MEDIA, source_video, config, max_samples=60, tools=tools)

    assert result.samples == 10
    assert result.bits == bits[:10]
    assert result.variants == "ABABABABAB"
    assert sorted(tools.sample_calls) == list(range(10))
    assert all(c > 0.005 for c in result.confidences)


def test_max_samples_bounds_the_run(config, source_video, fake_tools_factory):
    tools = fake_tools_factory(duration=600.0, leak_bits=[Variant.A] * 100)
    assert analyze(MEDIA, source_video, config, max_samples=4, tools=tools).samples == 4
    assert analyze(MEDIA, source_video, config, max_samples=500, tools=tools).samples == 100


def test_short_file_yields_zero_samples(config, source_video, fake_tools_factory):
    tools = fake_tools_factory(duration=5.0)
    result = analyze(MEDIA, source_video, config, tools=tools)
    assert result.samples == 0
    assert result.usable_samples == 0
    assert tools.sample_calls == []


def test_probe_failure_is_input_error(config, source_video, fake_tools_factory):
    with pytest.raises(ForensicsInputError, match="probe_failed"):
        analyze(MEDIA, source_video, config, tools=fake_tools_factory(probe_ok=False))


def test_unknown_duration_fails_closed(config, source_video, fake_tools_factory):
    with pytest.raises(ForensicsInputError, match="duration_unknown"):
        analyze(MEDIA, source_video, config, tools=fake_tools_factory(duration=None))


def test_failed_sample_degrades_instead_of_aborting(config, source_video, fake_tools_factory):
    tools = fake_tools_factory(duration=30.0, leak_bits=[Variant.B] * 5, fail_samples={2})
    result = analyze(MEDIA, source_video, config, tools=tools)
    assert result.variants == "BB?BB"
    assert result.confidences[2] == 0.0
    assert result.failed_samples == 1
    assert result.usable_samples == 4


def test_manifest_layout_beats_override(config, source_video, fake_tools_factory):
    _write_manifest(config, layout="v2_pairs")
    result = analyze(MEDIA, source_video, config, layout_override="v1_tiles", tools=fake_tools_factory(duration=12.0))
    assert result.layout == "v2_pairs"
    assert result.layout_source == "manifest"


def test_override_used_without_manifest(config, source_video, fake_tools_factory):
    result = analyze(MEDIA, source_video, config, layout_override="v2_pairs", tools=fake_tools_factory(duration=12.0))
    assert (result.layout, result.layout_source) == ("v2_pairs", "override")


def test_default_layout_from_config(config, source_video, fake_tools_factory):
    result = analyze(MEDIA, source_video, config.with_overrides(layout="v2_pairs"), tools=fake_tools_factory(duration=12.0))
    assert (result.layout, result.layout_source) == ("v2_pairs", "default")


def test_unsupported_override_is_rejected(config, source_video, fake_tools_factory):
    with pytest.raises(ForensicsInputError, match="unsupported layout"):
        analyze(MEDIA, source_video, config, layout_override="v9", tools=fake_tools_factory())


def test_manifest_segment_seconds_take_precedence(config, source_video, fake_tools_factory):
    _write_manifest(config, layout="v1_tiles", segment_seconds=4)
    tools = fake_tools_factory(duration=40.0, segment_seconds=4, leak_bits=[Variant.A] * 10)
    result = analyze(MEDIA, source_video, config, tools=tools)
    assert result.segment_seconds == 4
    assert result.samples == 10


def test_invalid_media_id_is_input_error(config, source_video, fake_tools_factory):
    with pytest.raises(ForensicsInputError):
        analyze("../etc", source_video, config, tools=fake_tools_factory())


def test_meta_shape(config, source_video, fake_tools_factory):
    result = analyze(MEDIA, source_video, config, tools=fake_tools_factory(duration=12.5, leak_bits=[Variant.A, None]))
    assert result.meta() == {
        "media_id": MEDIA,
        "layout": "v1_tiles",
        "layout_source": "default",
        "segment_seconds": 6,
        "duration_seconds": 12.5,
        "samples": 2,
        "usable_samples": 1,
    }
