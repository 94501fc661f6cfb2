# gallery/api/v1/dependencies.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import OAuth2PasswordBearer

from gallery.core.config import FORENSICS
from gallery.core.token_utils import decode_access_token

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


@dataclass
class Viewer:
    id: str
    roles: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def get_client_ip(request: Request) -> str:
    """Extract client IP address securely"""
    # Check for proxy headers (be careful with spoofing)
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Take the first IP in the chain (original client)
        client_ip = forwarded_for.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else None

    return client_ip or "unknown"


def get_forensics_config():
    """Settings passed explicitly into engine calls; overridable in tests."""
    return FORENSICS


def _viewer_from_token(request: Request, token: Optional[str]) -> Viewer:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    try:
        payload = decode_access_token(token)
    except ValueError as e:
        logger.warning(f"Token validation failed: {e}")
        raise credentials_exception

    roles = payload.get("roles") or []
    viewer = Viewer(id=str(payload["sub"]), roles=[str(r) for r in roles] if isinstance(roles, list) else [])
    request.state.user = viewer
    return viewer


async def get_current_viewer(request: Request, token: str = Depends(oauth2_scheme)) -> Viewer:
    """Decode the bearer token and return the viewer."""
    return _viewer_from_token(request, token)


async def get_playback_viewer(
    request: Request,
    bearer: str = Depends(oauth2_scheme),
    token: Optional[str] = Query(None, description="Play token for players that cannot send headers"),
) -> Viewer:
    """Viewer for playlist requests: bearer header, or the ``token`` query parameter."""
    return _viewer_from_token(request, bearer or token)


async def require_admin(viewer: Viewer = Depends(get_current_viewer)) -> Viewer:
    """Forensics and packaging endpoints are admin-only."""
    if not viewer.is_admin:
        logger.warning(f"Insufficient permissions for user {viewer.id}: required admin, has {viewer.roles}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")
    return viewer
