"""Detect which viewer a leaked video copy was served to.

Usage:
    python scripts/identify_leak.py MEDIA_ID leaked.mp4 user1 user2 ...

Uses the configured storage root (for the packaging-time layout) and
fingerprint secret; no database access is needed since identities are
recomputed from the user ids.
"""
from __future__ import annotations

import json
import sys

from gallery.core.config import load_forensics_config
from gallery.core.identify import identify_with_auto_extend
from gallery.core.matcher import KnownFingerprint
from gallery.core.results import ForensicsInputError
from gallery.fingerprint.identity import identity_for


def main(argv: list[str]) -> int:
    if len(argv) < 3:
        print(__doc__)
        return 1
    media_id, path, users = argv[0], argv[1], argv[2:]
    config = load_forensics_config()
    known = [KnownFingerprint(identity_for(u, media_id, secret=config.fingerprint_secret), u) for u in users]
    try:
        payload = identify_with_auto_extend(media_id, path, known, config)
    except ForensicsInputError as exc:
        print(f"Cannot analyze {path}: {exc.reason}")
        return 2
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
