"""Manual end-to-end run of packaging and leak identification on a local video.

Run with:
    python scripts/package_pipeline_demo.py input.mp4 [v1_tiles|v2_pairs]

The script:
1. Packages the video into A/B renditions under a temporary storage root.
2. Builds a "leaked" copy for a simulated viewer by concatenating the A/B
   segments their fingerprint identity dictates.
3. Runs identification against that viewer and a few decoys and prints the ranking.
"""
from __future__ import annotations

import os
import sys
import tempfile

from gallery.core import storage
from gallery.core.config import load_forensics_config
from gallery.core.ffmpeg import VideoTools
from gallery.core.identify import identify_with_auto_extend
from gallery.core.matcher import KnownFingerprint
from gallery.core.packager import package_video
from gallery.core.playlist import assemble_viewer_playlist
from gallery.fingerprint.identity import identity_for


def main() -> None:
    if len(sys.argv) < 2 or not os.path.isfile(sys.argv[1]):
        print("usage: package_pipeline_demo.py input.mp4 [layout]")
        sys.exit(1)
    source = sys.argv[1]
    layout = sys.argv[2] if len(sys.argv) > 2 else "v2_pairs"

    work = tempfile.mkdtemp(prefix="gallery_demo_")
    config = load_forensics_config().with_overrides(storage_root=work, fingerprint_enabled=True)
    media_id = "demo_media"

    print(f"Packaging {source} with {layout} into {work}")
    outcome = package_video(media_id, source, config, layout_mode=layout)
    if not outcome.ok:
        print(f"Packaging failed: {outcome.error.value}: {outcome.reason}")
        sys.exit(2)
    print(f"Published {outcome.value.segment_count} segments per variant")

    users = ["viewer_1", "viewer_2", "viewer_3"]
    known = [KnownFingerprint(identity_for(u, media_id, secret=config.fingerprint_secret), u) for u in users]
    leaker = known[1]

    root = storage.hls_root(work, media_id)
    with open(storage.template_playlist_path(root), "r", encoding="utf-8") as f:
        template = f.read()
    local = assemble_viewer_playlist(
        template,
        leaker.identity,
        media_id,
        secret=config.fingerprint_secret,
        segment_url=lambda variant, name: storage.segment_path(root, variant, name),
    )
    playlist = os.path.join(work, "leak.m3u8")
    with open(playlist, "w", encoding="utf-8") as f:
        f.write(local)

    leaked = os.path.join(work, "leak.mp4")
    remuxed = VideoTools(config).remux(playlist, leaked, seconds=outcome.value.segment_count * config.segment_seconds)
    if not remuxed.ok:
        print(f"Could not build leaked copy: {remuxed.reason}")
        sys.exit(3)

    payload = identify_with_auto_extend(media_id, leaked, known, config, max_samples=60, max_offset=5)
    print(f"Observed: {payload['observed']['variants']}")
    for c in payload["candidates"]:
        marker = "<- leaker" if c["fingerprint_identity"] == leaker.identity else ""
        print(f"  {c['user_reference']:<10} ratio={c['match_ratio']:.3f} offset={c['best_offset']} {marker}")


if __name__ == "__main__":
    main()
