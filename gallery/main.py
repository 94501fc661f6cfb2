# gallery/main.py
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

# Configure logging
logging.basicConfig(level=logging.INFO)

from gallery.api.v1.api import api_router
from gallery.core.config import FORENSICS, IS_PRODUCTION, SECURITY_HEADERS
from gallery.core.forensics_retention import retention_loop
from gallery.core.hls_cleanup import cleanup_loop
from gallery.core.limiter import limiter, log_rate_limit_violation
from gallery.db.mongodb_utils import close_mongo_connection, connect_to_mongo, get_database


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    # Startup
    app.state.limiter = limiter
    await connect_to_mongo()
    tasks = [
        asyncio.create_task(
            cleanup_loop(FORENSICS.storage_root, keep_seconds=FORENSICS.build_artifact_keep_seconds)
        ),
    ]
    if FORENSICS.playback_session_retention_days > 0:
        tasks.append(asyncio.create_task(retention_loop(get_database, FORENSICS)))

    try:
        yield  # ----- Application running -----
    finally:
        # Shutdown
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await close_mongo_connection()


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    log_rate_limit_violation(request, str(exc.detail))
    return _rate_limit_exceeded_handler(request, exc)


app = FastAPI(
    title="Gallery - Forensic Video Streaming",
    description="Per-viewer A/B watermarked HLS delivery with leak attribution.",
    version="1.0.0",
    lifespan=lifespan,
    exception_handlers={RateLimitExceeded: rate_limit_handler},
    docs_url="/docs" if not IS_PRODUCTION else None,  # Disable docs in production
    redoc_url="/redoc" if not IS_PRODUCTION else None,
)

app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Security headers on every response; streaming responses are never cached"""
    response = await call_next(request)

    for header, value in SECURITY_HEADERS.items():
        if value:  # Only set if value is not None
            response.headers[header] = value

    if request.url.path.startswith("/api/v1/stream/"):
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"

    # Remove server information disclosure
    if "server" in response.headers:
        del response.headers["server"]

    return response


# Include the API router
app.include_router(api_router, prefix="/api/v1")


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "fingerprinting": FORENSICS.fingerprint_enabled, "layout": FORENSICS.layout}
