import os

import pytest

from gallery.core import storage
from gallery.core.identify import identify_leak, identify_with_auto_extend, is_weak, strength
from gallery.core.matcher import KnownFingerprint
from gallery.core.packager import package_video
from gallery.fingerprint.identity import expected_sequence, identity_for

MEDIA = "leaked_movie"


def _known(config, users):
    return [KnownFingerprint(identity_for(u, MEDIA, secret=config.fingerprint_secret), u) for u in users]


def test_round_trip_v2_exact_copy(config, source_video, fake_tools_factory):
    assert package_video(MEDIA, source_video, config, layout_mode="v2_pairs", tools=fake_tools_factory(duration=60.0)).ok
    known = _known(config, ["alice", "bob", "carol"])
    leaker = known[0]
    bits = expected_sequence(leaker.identity, MEDIA, 10, secret=config.fingerprint_secret)

    payload = identify_leak(MEDIA, source_video, known, config, max_offset=0, tools=fake_tools_factory(duration=60.0, leak_bits=bits))

    assert payload["meta"]["layout"] == "v2_pairs"
    assert payload["meta"]["layout_source"] == "manifest"
    top = payload["candidates"][0]
    assert top["fingerprint_identity"] == leaker.identity
    assert top["user_reference"] == "alice"
    assert top["mismatches"] == 0
    assert top["match_ratio"] == 1.0
    assert top["best_offset"] == 0


def test_payload_shape(config, source_video, fake_tools_factory):
    known = _known(config, ["alice"])
    bits = expected_sequence(known[0].identity, MEDIA, 3, secret=config.fingerprint_secret)
    payload = identify_leak(MEDIA, source_video, known, config, tools=fake_tools_factory(duration=18.0, leak_bits=bits))

    assert set(payload) == {"meta", "observed", "candidates"}
    assert set(payload["meta"]) >= {"media_id", "layout", "segment_seconds", "duration_seconds", "samples", "usable_samples", "attempts"}
    assert len(payload["observed"]["variants"]) == 3
    assert set(payload["observed"]["variants"]) <= {"A", "B", "?"}
    assert len(payload["observed"]["confidences"]) == 3


def test_short_clip_produces_empty_result(config, source_video, fake_tools_factory):
    payload = identify_leak(MEDIA, source_video, _known(config, ["alice"]), config, tools=fake_tools_factory(duration=3.0))
    assert payload["meta"]["samples"] == 0
    assert payload["meta"]["usable_samples"] == 0
    assert payload["candidates"] == []


def test_auto_extend_retries_weak_result(config, source_video, fake_tools_factory):
    known = _known(config, ["alice"])
    bits = expected_sequence(known[0].identity, MEDIA, 40, secret=config.fingerprint_secret)
    tools = fake_tools_factory(duration=240.0, leak_bits=bits)

    payload = identify_with_auto_extend(MEDIA, source_video, known, config, max_samples=5, max_offset=0, tools=tools)

    assert payload["meta"]["attempts"] == [5, 10]
    assert payload["meta"]["samples"] == 10
    assert payload["candidates"][0]["user_reference"] == "alice"


def test_auto_extend_can_be_disabled(config, source_video, fake_tools_factory):
    known = _known(config, ["alice"])
    bits = expected_sequence(known[0].identity, MEDIA, 40, secret=config.fingerprint_secret)
    payload = identify_with_auto_extend(
        MEDIA, source_video, known, config, max_samples=5, auto_extend=False,
        tools=fake_tools_factory(duration=240.0, leak_bits=bits),
    )
    assert payload["meta"]["attempts"] == [5]


def test_auto_extend_skips_exhausted_sample(config, source_video, fake_tools_factory):
    known = _known(config, ["alice"])
    payload = identify_with_auto_extend(MEDIA, source_video, known, config, max_samples=60, tools=fake_tools_factory(duration=30.0))
    assert payload["meta"]["attempts"] == [60]
    assert payload["meta"]["samples"] == 5


def test_auto_extend_respects_sample_cap(config, source_video, fake_tools_factory):
    tools = fake_tools_factory(duration=6 * 300.0)
    payload = identify_with_auto_extend(MEDIA, source_video, _known(config, ["alice"]), config, max_samples=150, tools=tools)
    assert payload["meta"]["attempts"] == [150, 200]


def _payload(usable, *ratios):
    return {"meta": {"usable_samples": usable}, "candidates": [{"match_ratio": r} for r in ratios]}


@pytest.mark.parametrize(
    "payload,weak",
    [
        (_payload(30, 1.0, 0.5), False),
        (_payload(11, 1.0, 0.5), True),
        (_payload(30, 0.8, 0.5), True),
        (_payload(30, 0.95, 0.85), True),
        (_payload(30, 0.95), False),
        (_payload(30), True),
    ],
)
def test_is_weak(payload, weak):
    assert is_weak(payload) is weak


def test_strength_combines_ratio_gap_and_usable():
    assert strength(_payload(20, 0.9, 0.5)) == pytest.approx(0.9 * 100 + 0.4 * 40 + 20)
    assert strength(_payload(0)) == 0


def test_leak_from_assembled_viewer_copy_is_attributed(config, source_video, fake_tools_factory):
    assert package_video(MEDIA, source_video, config, tools=fake_tools_factory(duration=120.0)).ok
    known = _known(config, [f"viewer_{i}" for i in range(8)])
    leaker = known[5]
    # Leak starts four segments into the stream
    bits = expected_sequence(leaker.identity, MEDIA, 16, secret=config.fingerprint_secret, start=4)
    payload = identify_with_auto_extend(
        MEDIA, source_video, known, config, max_samples=16, max_offset=10,
        tools=fake_tools_factory(duration=96.0, leak_bits=bits),
    )
    top = payload["candidates"][0]
    assert top["user_reference"] == "viewer_5"
    assert top["best_offset"] == 4
    assert os.path.isdir(storage.hls_root(config.storage_root, MEDIA))
