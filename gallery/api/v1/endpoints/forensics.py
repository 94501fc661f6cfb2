# gallery/api/v1/endpoints/forensics.py
import asyncio
import logging
import os
import tempfile
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from motor.motor_asyncio import AsyncIOMotorDatabase

from gallery.api.v1.dependencies import Viewer, get_forensics_config, require_admin
from gallery.core import storage
from gallery.core.analyzer import MAX_SAMPLES_CAP
from gallery.core.config import RATE_LIMITS
from gallery.core.identify import MAX_OFFSET_CAP, identify_with_auto_extend
from gallery.core.limiter import limiter
from gallery.core.matcher import KnownFingerprint
from gallery.core.results import ForensicsInputError
from gallery.core.sample_fetch import fetch_sample
from gallery.crud.fingerprints import list_for_media, recent_sessions
from gallery.db.mongodb_utils import get_database
from gallery.schemas.forensics import (
    FingerprintListResponse,
    FingerprintRecord,
    IdentifyResponse,
    PlaybackSessionOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()


UPLOAD_CHUNK_BYTES = 1024 * 1024


def save_upload(fileobj, suffix: str, max_bytes: int) -> str:
    """Copy an uploaded sample to a temp file, refusing more than *max_bytes*."""
    fd, path = tempfile.mkstemp(prefix="gallery_identify_upload_", suffix=suffix)
    written = 0
    try:
        with os.fdopen(fd, "wb") as buffer:
            while True:
                chunk = fileobj.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise HTTPException(status_code=413, detail=f"File size exceeds maximum of {max_bytes // (1024 * 1024)}MB")
                buffer.write(chunk)
    except BaseException:
        os.remove(path)
        raise
    return path


def _media_or_400(media_id: str) -> str:
    try:
        return storage.safe_media_id(media_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/fingerprints/{media_id}", response_model=FingerprintListResponse)
async def get_fingerprints(
    media_id: str,
    db: AsyncIOMotorDatabase = Depends(get_database),
    admin: Viewer = Depends(require_admin),
):
    """Fingerprint lookup rows and recent playback sessions for a media item."""
    media = _media_or_400(media_id)
    rows = await list_for_media(db, media)
    sessions = await recent_sessions(db, media)
    return FingerprintListResponse(
        media_id=media,
        fingerprints=[FingerprintRecord(**r) for r in rows],
        recent_sessions=[PlaybackSessionOut(**s) for s in sessions],
    )


@router.post("/identify/{media_id}", response_model=IdentifyResponse)
@limiter.limit(RATE_LIMITS["identify"])
async def identify(
    media_id: str,
    request: Request,
    file: Optional[UploadFile] = File(None),
    source_url: Optional[str] = Form(None),
    max_samples: int = Form(60),
    max_offset_segments: int = Form(30),
    layout: Optional[str] = Form(None),
    auto_extend: bool = Form(True),
    db: AsyncIOMotorDatabase = Depends(get_database),
    admin: Viewer = Depends(require_admin),
    config=Depends(get_forensics_config),
):
    """
    Attribute a leaked copy of a media item to the viewer it was served to.
    Accepts an uploaded file or a URL on this site (HLS playlist or direct video).
    """
    media = _media_or_400(media_id)
    if not file and not (source_url or "").strip():
        raise HTTPException(status_code=422, detail="Provide a file or source_url")

    max_samples = max(1, min(max_samples, MAX_SAMPLES_CAP))
    max_offset_segments = max(0, min(max_offset_segments, MAX_OFFSET_CAP))

    rows = await list_for_media(db, media)
    known = [KnownFingerprint(identity=r["fingerprint_id"], user_reference=str(r.get("user_id"))) for r in rows]

    sample_path = None
    try:
        if file:
            suffix = os.path.splitext(file.filename or "")[1][:10] or ".bin"
            max_bytes = config.max_upload_mb * 1024 * 1024
            if file.size is not None and file.size > max_bytes:
                raise HTTPException(status_code=413, detail=f"File size exceeds maximum of {config.max_upload_mb}MB")
            sample_path = await asyncio.to_thread(save_upload, file.file, suffix, max_bytes)
        else:
            manifest = storage.read_manifest(config.storage_root, media) or {}
            allowed_hosts = [request.url.hostname]
            sample_path = await asyncio.to_thread(
                fetch_sample,
                source_url,
                allowed_hosts,
                config,
                max_samples=max_samples,
                segment_seconds=manifest.get("segment_seconds"),
            )

        payload = await asyncio.to_thread(
            identify_with_auto_extend,
            media,
            sample_path,
            known,
            config,
            layout_override=layout,
            max_samples=max_samples,
            max_offset=max_offset_segments,
            auto_extend=auto_extend,
        )
    except ForensicsInputError as e:
        logger.warning(f"Identify rejected for media {media}: {e.reason}")
        raise HTTPException(status_code=422, detail=e.reason)
    finally:
        if sample_path and os.path.exists(sample_path):
            os.remove(sample_path)

    top = payload["candidates"][0] if payload["candidates"] else None
    logger.info(
        f"Identify media={media} by admin={admin.id}: usable={payload['meta']['usable_samples']} "
        f"top={top['fingerprint_identity'] if top else None} ratio={top['match_ratio'] if top else None}"
    )
    return payload
