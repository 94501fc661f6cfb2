# gallery/api/v1/endpoints/media.py
import asyncio
import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from gallery.api.v1.dependencies import Viewer, get_forensics_config, require_admin
from gallery.core import storage
from gallery.core.config import RATE_LIMITS
from gallery.core.limiter import limiter
from gallery.core.packager import package_video
from gallery.crud import media as media_crud
from gallery.db.mongodb_utils import get_database
from gallery.schemas.forensics import MediaItem, PackageRequest, PackageResponse

logger = logging.getLogger(__name__)

router = APIRouter()


async def run_packaging(db: AsyncIOMotorDatabase, media_id: str, source_path: str, layout, config):
    """Background task: package under the processing lock and record the outcome."""
    outcome = await asyncio.to_thread(package_video, media_id, source_path, config, layout_mode=layout)
    if outcome.ok:
        await media_crud.set_ready(db, media_id, outcome.value.as_metadata())
        if outcome.degraded:
            logger.warning(f"Media {media_id} packaged without a usable probe")
    else:
        await media_crud.set_failed(db, media_id, f"{outcome.error.value}: {outcome.reason}")


@router.post("/{media_id}/package", response_model=PackageResponse, status_code=202)
@limiter.limit(RATE_LIMITS["package"])
async def package_media(
    media_id: str,
    request: Request,
    payload: PackageRequest,
    background_tasks: BackgroundTasks,
    db: AsyncIOMotorDatabase = Depends(get_database),
    admin: Viewer = Depends(require_admin),
    config=Depends(get_forensics_config),
):
    """Queues (re)packaging of a media item into its A/B (or legacy) rendition set."""
    try:
        media = storage.safe_media_id(media_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    item = await media_crud.get_media_by_id(db, media)
    source_path = payload.source_path or (item or {}).get("source_path")
    if not source_path or not os.path.isfile(source_path):
        raise HTTPException(status_code=422, detail="Source video not found")

    await media_crud.set_processing(db, media, source_path)
    background_tasks.add_task(run_packaging, db, media, source_path, payload.layout, config)
    logger.info(f"Packaging queued for media {media} by admin {admin.id}")
    return PackageResponse(media_id=media, status="processing", message="Packaging queued")


@router.get("/{media_id}", response_model=MediaItem)
async def get_media_status(
    media_id: str,
    db: AsyncIOMotorDatabase = Depends(get_database),
    admin: Viewer = Depends(require_admin),
    config=Depends(get_forensics_config),
):
    """Packaging status and published rendition metadata."""
    try:
        media = storage.safe_media_id(media_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    item = await media_crud.get_media_by_id(db, media)
    if not item:
        raise HTTPException(status_code=404, detail="Media not found")
    result = MediaItem(**item)
    # Files on disk are authoritative for readiness
    result.hls.ready = storage.is_ready(config.storage_root, media)
    return result
