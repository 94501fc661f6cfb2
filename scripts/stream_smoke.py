"""Smoke test of the streaming endpoints against a running server.

Run after the server is up and MEDIA_ID has been packaged:
    python scripts/stream_smoke.py MEDIA_ID [BASE_URL]

Uses requests to:
1. Fetch the viewer playlist for two different viewers
2. Check both playlists list the same segments but from different A/B variants
3. Download the first segment (must succeed)
4. Tamper with a segment URL's variant (must be rejected with 403)
"""
from __future__ import annotations

import sys

import requests

from gallery.core.token_utils import create_access_token

if len(sys.argv) < 2:
    print(__doc__)
    sys.exit(1)

MEDIA_ID = sys.argv[1]
BASE_URL = sys.argv[2] if len(sys.argv) > 2 else "http://127.0.0.1:8000"

session = requests.Session()


def playlist_for(user_id: str) -> list[str]:
    token = create_access_token(user_id)
    resp = session.get(
        f"{BASE_URL}/api/v1/stream/playlist/{MEDIA_ID}",
        headers={"Authorization": f"Bearer {token}"},
        timeout=30,
    )
    resp.raise_for_status()
    return [line for line in resp.text.splitlines() if line and not line.startswith("#")]


print("=== 1. Playlists ===")
first = playlist_for("smoke_viewer_1")
second = playlist_for("smoke_viewer_2")
print(f"{len(first)} segments")

print("=== 2. Variant sequences ===")
seq_1 = "".join(url.split("/")[6] for url in first)
seq_2 = "".join(url.split("/")[6] for url in second)
print("viewer 1:", seq_1.upper())
print("viewer 2:", seq_2.upper())
if seq_1 == seq_2 and len(first) > 4:
    print("WARNING: identical sequences; is fingerprinting enabled?")

print("=== 3. Segment download ===")
try:
    resp = session.get(f"{BASE_URL}{first[0]}", timeout=30)
    print("status", resp.status_code, "bytes", len(resp.content))
except requests.RequestException as exc:
    print("segment request failed:", exc)
    sys.exit(2)

print("=== 4. Tampered variant ===")
parts = first[0].split("/")
if parts[6] in ("a", "b"):
    parts[6] = "b" if parts[6] == "a" else "a"
    resp = session.get(f"{BASE_URL}{'/'.join(parts)}", timeout=30)
    print("status", resp.status_code, "(expected 403)")
