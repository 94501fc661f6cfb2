# gallery/core/config.py
import os
import logging
from dataclasses import dataclass, replace
from typing import Mapping, Optional
from dotenv import load_dotenv

load_dotenv()

# Configure logging for security events
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LAYOUT_CHOICES = ("v1_tiles", "v2_pairs")


class SecurityConfigError(Exception):
    """Raised when security configuration is invalid"""
    pass


def validate_secret_key(key: Optional[str]) -> str:
    """Validate SECRET_KEY meets security requirements"""
    if not key:
        raise SecurityConfigError("SECRET_KEY environment variable is required")

    if len(key) < 32:
        raise SecurityConfigError("SECRET_KEY must be at least 32 characters long")

    # Check complexity
    has_upper = any(c.isupper() for c in key)
    has_lower = any(c.islower() for c in key)
    has_digit = any(c.isdigit() for c in key)
    has_special = any(not c.isalnum() for c in key)

    if not (has_upper and has_lower and has_digit and has_special):
        logger.warning("SECRET_KEY does not meet complexity requirements")

    return key


def validate_algorithm(algorithm: Optional[str]) -> str:
    """Validate JWT algorithm is secure"""
    if not algorithm:
        algorithm = "HS256"  # Secure default

    allowed_algorithms = ["HS256", "HS384", "HS512"]
    if algorithm not in allowed_algorithms:
        raise SecurityConfigError(f"Unsupported algorithm: {algorithm}")

    return algorithm


def validate_layout(layout: Optional[str]) -> str:
    """Validate the default watermark layout name"""
    if not layout:
        return "v1_tiles"
    layout = layout.strip().lower()
    if layout not in LAYOUT_CHOICES:
        raise SecurityConfigError(f"Unsupported FINGERPRINT_LAYOUT: {layout}")
    return layout


def validate_opacity(raw: Optional[str]) -> float:
    """Validate watermark opacity (fraction, not percent)"""
    if not raw:
        return 0.006
    try:
        opacity = float(raw)
    except ValueError:
        raise SecurityConfigError("WATERMARK_OPACITY must be a number")
    if not 0.0 < opacity <= 1.0:
        raise SecurityConfigError("WATERMARK_OPACITY must be in (0, 1]")
    if opacity > 0.05:
        logger.warning("WATERMARK_OPACITY %.3f will likely be visible to viewers", opacity)
    return opacity


def clamp_segment_seconds(raw: Optional[str]) -> int:
    """Segment duration in seconds, clamped to the 2..10 range HLS players handle well"""
    try:
        seconds = int(raw) if raw else 6
    except ValueError:
        seconds = 6
    if seconds <= 0:
        seconds = 6
    return max(2, min(seconds, 10))


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SecurityConfigError(f"{name} must be a valid integer")
    return max(value, minimum)


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ForensicsConfig:
    """Explicit settings passed into every fingerprinting/packaging/analysis call.

    The fingerprint secret must stay stable across restarts: rotating it makes
    every previously issued fingerprint and watermark geometry unrecoverable.
    """

    fingerprint_secret: str
    fingerprint_enabled: bool = True
    layout: str = "v1_tiles"
    opacity: float = 0.006
    segment_seconds: int = 6
    storage_root: str = "media_private"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    tool_timeout_seconds: int = 60
    package_timeout_seconds: int = 3600
    analyzer_max_workers: int = 4
    max_video_duration_seconds: int = 0
    build_artifact_keep_seconds: int = 1800
    playback_session_retention_days: int = 0
    forensics_export_enabled: bool = True
    forensics_export_root: str = ""
    forensics_export_retention_days: int = 0
    forensics_export_max_keep: int = 0
    max_upload_mb: int = 1024

    def with_overrides(self, **changes) -> "ForensicsConfig":
        return replace(self, **changes)

    @property
    def export_root(self) -> str:
        return self.forensics_export_root or os.path.join(self.storage_root, "forensics_exports")


def load_forensics_config(env: Optional[Mapping[str, str]] = None, *, secret_key: Optional[str] = None) -> ForensicsConfig:
    """Build a ForensicsConfig from environment variables."""
    env = os.environ if env is None else env

    secret = (env.get("FINGERPRINT_SECRET") or "").strip()
    if not secret:
        # Fallback to the application secret: rotating it invalidates all fingerprints.
        secret = secret_key or env.get("SECRET_KEY") or ""
    if not secret:
        raise SecurityConfigError("FINGERPRINT_SECRET or SECRET_KEY is required")

    return ForensicsConfig(
        fingerprint_secret=secret,
        fingerprint_enabled=_flag(env, "FINGERPRINT_ENABLED", True),
        layout=validate_layout(env.get("FINGERPRINT_LAYOUT")),
        opacity=validate_opacity(env.get("WATERMARK_OPACITY")),
        segment_seconds=clamp_segment_seconds(env.get("HLS_SEGMENT_SECONDS")),
        storage_root=env.get("STORAGE_ROOT", "media_private"),
        ffmpeg_path=env.get("FFMPEG_PATH") or "ffmpeg",
        ffprobe_path=env.get("FFPROBE_PATH") or "ffprobe",
        tool_timeout_seconds=_int(env, "TOOL_TIMEOUT_SECONDS", 60, minimum=1),
        package_timeout_seconds=_int(env, "PACKAGE_TIMEOUT_SECONDS", 3600, minimum=1),
        analyzer_max_workers=_int(env, "ANALYZER_MAX_WORKERS", 4, minimum=1),
        max_video_duration_seconds=_int(env, "MAX_VIDEO_DURATION_SECONDS", 0),
        build_artifact_keep_seconds=_int(env, "BUILD_ARTIFACT_KEEP_SECONDS", 1800),
        playback_session_retention_days=_int(env, "PLAYBACK_SESSION_RETENTION_DAYS", 0),
        forensics_export_enabled=_flag(env, "FORENSICS_EXPORT_ENABLED", True),
        forensics_export_root=env.get("FORENSICS_EXPORT_ROOT", ""),
        forensics_export_retention_days=_int(env, "FORENSICS_EXPORT_RETENTION_DAYS", 0),
        forensics_export_max_keep=_int(env, "FORENSICS_EXPORT_MAX_KEEP", 0),
        max_upload_mb=_int(env, "MAX_FILE_SIZE_MB", 1024, minimum=1),
    )


# Database Configuration
MONGO_DATABASE_URL = os.getenv("MONGO_DATABASE_URL")
MONGO_DATABASE_NAME = os.getenv("MONGO_DATABASE_NAME", "gallery_db")

if not MONGO_DATABASE_URL:
    raise SecurityConfigError("MONGO_DATABASE_URL environment variable is required")

# Security Configuration with validation
try:
    SECRET_KEY = validate_secret_key(os.getenv("SECRET_KEY"))
    ALGORITHM = validate_algorithm(os.getenv("ALGORITHM"))
    STREAM_TOKEN_EXPIRE_MINUTES = _int(os.environ, "STREAM_TOKEN_EXPIRE_MINUTES", 10, minimum=1)

    FORENSICS = load_forensics_config(secret_key=SECRET_KEY)

    # Production security flags
    IS_PRODUCTION = os.getenv("ENVIRONMENT", "development").lower() == "production"

    logger.info("Configuration validated successfully (layout=%s, segment=%ss)", FORENSICS.layout, FORENSICS.segment_seconds)

except SecurityConfigError as e:
    logger.error(f"Security configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected configuration error: {e}")
    raise SecurityConfigError(f"Configuration validation failed: {e}")

# Security headers configuration
SECURITY_HEADERS = {
    "Cache-Control": "no-store, private",
    "Referrer-Policy": "no-referrer",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains" if IS_PRODUCTION else None,
}

# Rate limiting configuration
RATE_LIMITS = {
    "playlist": "30/minute",
    "stream_segment": "120/minute",
    "identify": "3/minute",
    "package": "5/minute",
    "default": "100/minute"
}
