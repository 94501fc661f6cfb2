# gallery/api/v1/api.py
from fastapi import APIRouter
from gallery.api.v1.endpoints import forensics, media, stream

api_router = APIRouter()
api_router.include_router(stream.router, prefix="/stream", tags=["stream"])
api_router.include_router(media.router, prefix="/media", tags=["media"])
api_router.include_router(forensics.router, prefix="/forensics", tags=["forensics"])
