"""
Endpoints serving per-viewer HLS playlists and signed segments.

Every playback session of a fingerprinted media item is served from the
viewer-specific A/B sequence: the playlist lists, for each segment index, the
variant the viewer's fingerprint identity dictates, and each segment URL is
signed for exactly that variant.
"""
import logging
import os
import secrets

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, Response
from motor.motor_asyncio import AsyncIOMotorDatabase

from gallery.api.v1.dependencies import Viewer, get_client_ip, get_forensics_config, get_playback_viewer
from gallery.core import storage
from gallery.core.config import RATE_LIMITS
from gallery.core.limiter import limiter
from gallery.core.playlist import assemble_viewer_playlist
from gallery.core.token_utils import segment_expiry, sign_segment, verify_segment_signature
from gallery.crud.fingerprints import log_playback_session, touch_fingerprint
from gallery.db.mongodb_utils import get_database
from gallery.fingerprint.identity import segment_index_from_filename

logger = logging.getLogger(__name__)
router = APIRouter()

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_MEDIA_TYPE = "video/mp2t"
SERVABLE_VARIANTS = ("a", "b", storage.TEMPLATE_VARIANT)


def _media_or_400(media_id: str) -> str:
    try:
        return storage.safe_media_id(media_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/playlist/{media_id}", response_class=Response, tags=["stream"])
@limiter.limit(RATE_LIMITS["playlist"])
async def get_viewer_playlist(
    media_id: str,
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_database),
    viewer: Viewer = Depends(get_playback_viewer),
    config=Depends(get_forensics_config),
):
    """
    Returns the viewer's playlist with signed segment URLs.
    - Fingerprinted media: each segment comes from variant A or B per the viewer's identity.
    - Legacy media: every segment comes from the single unwatermarked set.
    """
    media = _media_or_400(media_id)
    if not storage.is_ready(config.storage_root, media):
        raise HTTPException(status_code=404, detail="Media not ready")

    root = storage.hls_root(config.storage_root, media)
    manifest = storage.read_manifest(config.storage_root, media) or {}
    client_ip = get_client_ip(request)

    identity = None
    if manifest.get("fingerprinted"):
        identity = await touch_fingerprint(db, viewer.id, media, secret=config.fingerprint_secret, ip=client_ip)

    with open(storage.template_playlist_path(root), "r", encoding="utf-8") as f:
        template = f.read()

    expires_at = segment_expiry()

    def segment_url(variant: str, name: str) -> str:
        sig = sign_segment(media, variant, name, expires_at)
        return f"/api/v1/stream/segment/{media}/{variant}/{name}?ts={expires_at}&sig={sig}"

    content = assemble_viewer_playlist(
        template,
        identity,
        media,
        secret=config.fingerprint_secret,
        segment_url=segment_url,
    )

    play_token = secrets.token_urlsafe(24)
    if identity:
        await log_playback_session(
            db,
            user_id=viewer.id,
            media_id=media,
            fingerprint_id=identity,
            token=play_token,
            ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
    logger.info("Playlist issued for media %s to user %s (fingerprinted=%s)", media, viewer.id, bool(identity))
    return Response(content, media_type=PLAYLIST_MEDIA_TYPE)


@router.get("/segment/{media_id}/{variant}/{segment_name}", tags=["stream"])
@limiter.limit(RATE_LIMITS["stream_segment"])
async def get_segment(
    media_id: str,
    variant: str,
    segment_name: str,
    request: Request,
    ts: int = Query(...),
    sig: str = Query(...),
    config=Depends(get_forensics_config),
):
    """Serves one HLS segment after validating its signed, short-lived URL."""
    media = _media_or_400(media_id)
    if variant not in SERVABLE_VARIANTS:
        raise HTTPException(status_code=400, detail="Invalid variant.")
    # Validate segment name to prevent path traversal
    if segment_index_from_filename(segment_name) is None or os.path.basename(segment_name) != segment_name:
        raise HTTPException(status_code=400, detail="Invalid segment name format.")
    if not verify_segment_signature(media, variant, segment_name, ts, sig):
        raise HTTPException(status_code=403, detail="Invalid or expired signature.")

    path = storage.segment_path(storage.hls_root(config.storage_root, media), variant, segment_name)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Segment not found.")

    logger.debug("Serve segment %s/%s to IP %s", variant, segment_name, get_client_ip(request))
    return FileResponse(path, media_type=SEGMENT_MEDIA_TYPE)
