"""Leak identification: analyzer + matcher combined into the report payload."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from gallery.core.analyzer import MAX_SAMPLES_CAP, SampleAnalysis, analyze
from gallery.core.ffmpeg import VideoTools
from gallery.core.matcher import KnownFingerprint, MatchCandidate, match_fingerprints

logger = logging.getLogger(__name__)

MAX_OFFSET_CAP = 300

WEAK_MIN_USABLE = 12
WEAK_MIN_RATIO = 0.85
WEAK_MIN_GAP = 0.15


def build_payload(analysis: SampleAnalysis, candidates: list[MatchCandidate], attempts: Optional[list] = None) -> dict:
    meta = analysis.meta()
    meta["attempts"] = list(attempts or [analysis.samples])
    return {
        "meta": meta,
        "observed": {
            "variants": analysis.variants,
            "confidences": list(analysis.confidences),
        },
        "candidates": [c.as_dict() for c in candidates],
    }


def identify_leak(
    media_id,
    path: str,
    known: Iterable[KnownFingerprint],
    config,
    *,
    layout_override=None,
    max_samples: int = 60,
    max_offset: int = 30,
    tools: Optional[VideoTools] = None,
) -> dict:
    """Analyze *path* and rank *known* fingerprints for *media_id*."""
    max_offset = max(0, min(int(max_offset), MAX_OFFSET_CAP))
    analysis = analyze(
        media_id,
        path,
        config,
        layout_override=layout_override,
        max_samples=max_samples,
        max_offset=max_offset,
        tools=tools,
    )
    candidates = match_fingerprints(
        analysis.media_id,
        analysis.bits,
        list(known),
        analysis.max_offset,
        secret=config.fingerprint_secret,
    )
    return build_payload(analysis, candidates)


def _top_two(payload: dict) -> tuple[float, float]:
    candidates = payload.get("candidates") or []
    top = float(candidates[0]["match_ratio"]) if candidates else 0.0
    second = float(candidates[1]["match_ratio"]) if len(candidates) > 1 else 0.0
    return top, second


def is_weak(payload: dict) -> bool:
    """Too few usable samples, a poor best match, or no clear winner."""
    if not payload.get("candidates"):
        return True
    top, second = _top_two(payload)
    usable = int(payload["meta"].get("usable_samples") or 0)
    return usable < WEAK_MIN_USABLE or top < WEAK_MIN_RATIO or (top - second) < WEAK_MIN_GAP


def strength(payload: dict) -> float:
    top, second = _top_two(payload)
    usable = int(payload["meta"].get("usable_samples") or 0)
    return top * 100.0 + (top - second) * 40.0 + usable


def identify_with_auto_extend(
    media_id,
    path: str,
    known: Iterable[KnownFingerprint],
    config,
    *,
    layout_override=None,
    max_samples: int = 60,
    max_offset: int = 30,
    auto_extend: bool = True,
    tools: Optional[VideoTools] = None,
) -> dict:
    """identify_leak, re-run once with twice the samples when the first result is weak."""
    known = list(known)
    max_samples = max(1, min(int(max_samples), MAX_SAMPLES_CAP))
    first = identify_leak(
        media_id, path, known, config,
        layout_override=layout_override, max_samples=max_samples, max_offset=max_offset, tools=tools,
    )
    attempts = [max_samples]
    best = first

    extended = min(max_samples * 2, MAX_SAMPLES_CAP)
    # A sample that already ran out of video can't get more segments.
    exhausted = first["meta"]["samples"] < max_samples
    if auto_extend and is_weak(first) and extended > max_samples and not exhausted:
        logger.info("Weak signal for media %s (%s usable); retrying with %s samples", media_id, first["meta"]["usable_samples"], extended)
        second = identify_leak(
            media_id, path, known, config,
            layout_override=layout_override, max_samples=extended, max_offset=max_offset, tools=tools,
        )
        attempts.append(extended)
        if strength(second) > strength(first):
            best = second

    best["meta"]["attempts"] = attempts
    return best
