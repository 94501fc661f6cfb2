"""Fingerprint matcher: ranks known identities against an observed variant sequence."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

from gallery.fingerprint.identity import Variant, expected_sequence

TOP_CANDIDATES = 10


@dataclass(frozen=True)
class KnownFingerprint:
    identity: str
    user_reference: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    fingerprint_identity: str
    user_reference: Optional[str]
    best_offset: int
    mismatches: int
    compared: int

    @property
    def match_ratio(self) -> float:
        if self.compared <= 0:
            return 0.0
        return round(1.0 - self.mismatches / self.compared, 4)

    def as_dict(self) -> dict:
        return {
            "fingerprint_identity": self.fingerprint_identity,
            "user_reference": self.user_reference,
            "best_offset": self.best_offset,
            "mismatches": self.mismatches,
            "compared": self.compared,
            "match_ratio": self.match_ratio,
        }


def _encode(bits: Sequence[Optional[Variant]]) -> tuple[np.ndarray, np.ndarray]:
    values = np.array([1 if b is Variant.B else 0 for b in bits], dtype=np.int8)
    mask = np.array([b is not None for b in bits], dtype=bool)
    return values, mask


def _best_alignment(expected: np.ndarray, observed: np.ndarray, mask: np.ndarray, max_offset: int) -> tuple[int, int, int]:
    n = len(observed)
    compared = int(mask.sum())
    best = None
    for offset in range(max_offset + 1):
        window = expected[offset:offset + n]
        mismatches = int(np.count_nonzero((window != observed) & mask))
        # Every offset compares the same samples, so fewest mismatches decides; first offset wins ties.
        if best is None or mismatches < best[1]:
            best = (offset, mismatches, compared)
    return best


def match_fingerprints(
    media_id,
    observed: Sequence[Optional[Variant]],
    known: Iterable[KnownFingerprint],
    max_offset: int,
    *,
    secret: str,
    limit: int = TOP_CANDIDATES,
) -> list[MatchCandidate]:
    """Rank *known* identities for *media_id* by agreement with *observed*.

    For each identity every offset in ``[0, max_offset]`` is tried; the offset
    with the fewest mismatches (then the most compared samples) is kept.
    Identities with nothing to compare are left out.
    """
    max_offset = max(0, int(max_offset))
    values, mask = _encode(observed)
    if not mask.any():
        return []

    candidates = []
    seen = set()
    for record in known:
        if not record.identity or record.identity in seen:
            continue
        seen.add(record.identity)
        expected = expected_sequence(record.identity, media_id, len(values) + max_offset, secret=secret)
        expected_values, _ = _encode(expected)
        offset, mismatches, compared = _best_alignment(expected_values, values, mask, max_offset)
        if compared <= 0:
            continue
        candidates.append(
            MatchCandidate(
                fingerprint_identity=record.identity,
                user_reference=record.user_reference,
                best_offset=offset,
                mismatches=mismatches,
                compared=compared,
            )
        )

    candidates.sort(key=lambda c: (c.mismatches, -c.compared))
    return candidates[:limit]
