# gallery/core/limiter.py
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from gallery.core.config import RATE_LIMITS

logger = logging.getLogger(__name__)


def get_rate_limit_key(request: Request) -> str:
    """
    Rate limiting key: authenticated viewers are limited per user and IP,
    anonymous clients per IP.
    """
    ip = get_remote_address(request)
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.id}:{ip}"
    return f"anon:{ip}"


def log_rate_limit_violation(request: Request, limit: str):
    """Log rate limit violations for security monitoring"""
    ip = get_remote_address(request)
    user_agent = request.headers.get("user-agent", "unknown")
    logger.warning(
        f"Rate limit exceeded: {limit} | IP: {ip} | Endpoint: {request.url.path} | UA: {user_agent[:100]}"
    )


limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=[RATE_LIMITS["default"]],
)
