"""
FastAPI dependencies shared by the routers.

The origin fingerprint is derived here, once, from the transport layer and
passed down as a plain string; nothing below the routes ever looks at the
request again.
"""

import logging
from typing import Optional

from fastapi import Header, Request

from consensus_api.captcha import BotChallengeGate
from consensus_api.config import get_settings
from consensus_api.errors import Unauthorized
from consensus_api.rate_limiter import (
    CHALLENGE_FALLBACK_SCOPE, RateLimiterRegistry, build_rate_limit_store
)


logger = logging.getLogger(__name__)

UNKNOWN_ORIGIN = "unknown"
MAX_FINGERPRINT_LENGTH = 100


def get_origin_fingerprint(request: Request) -> str:
    """
    Network origin of the request.

    The first ``X-Forwarded-For`` hop is used only when the service is
    configured to sit behind a trusted proxy; otherwise the header is
    client-controlled and ignored.
    """
    if get_settings().trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop[:MAX_FINGERPRINT_LENGTH]

    if request.client and request.client.host:
        return request.client.host[:MAX_FINGERPRINT_LENGTH]
    return UNKNOWN_ORIGIN


# Process-wide singletons
_rate_limiters: Optional[RateLimiterRegistry] = None
_challenge_gate: Optional[BotChallengeGate] = None


def get_rate_limiters() -> RateLimiterRegistry:
    """Get or create the shared rate limiter registry."""
    global _rate_limiters
    if _rate_limiters is None:
        _rate_limiters = RateLimiterRegistry(build_rate_limit_store())
    return _rate_limiters


def get_challenge_gate() -> BotChallengeGate:
    """Get or create the shared bot-challenge gate."""
    global _challenge_gate
    if _challenge_gate is None:
        _challenge_gate = BotChallengeGate(get_rate_limiters().get(CHALLENGE_FALLBACK_SCOPE))
    return _challenge_gate


async def close_dependencies():
    """Release the rate-limit store connection and the adjudication HTTP client."""
    global _rate_limiters, _challenge_gate
    if _challenge_gate is not None:
        await _challenge_gate.close()
        _challenge_gate = None
    if _rate_limiters is not None:
        await _rate_limiters.close()
        _rate_limiters = None


def require_api_key(x_api_key: Optional[str] = Header(default=None)):
    """Maintenance endpoints require the API key when one is configured."""
    settings = get_settings()
    if settings.api_key and x_api_key != settings.api_key:
        logger.warning("Rejected maintenance request with invalid API key")
        raise Unauthorized()
