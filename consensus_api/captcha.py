"""
Bot-challenge gate (reCAPTCHA v3 compatible adjudication).

The client sends a challenge token; the gate asks the adjudication service
whether it is valid and how human the client looks.

- No token                      -> 400 CHALLENGE_REQUIRED
- success = false               -> 400 CHALLENGE_FAILED
- score below the minimum       -> 403 CHALLENGE_SUSPICIOUS
- service error or timeout      -> depends on the configured fail mode

FAIL-CLOSED rejects with 503 while the service is down. FAIL-OPEN lets the
request through, but only under a much stricter fallback rate limit (a
second sliding-window limiter, 3/hour by default) so an outage cannot be
used as an open door. Degraded responses carry ``X-Security-Degraded`` and
``X-Fallback-RateLimit-*`` headers so clients can back off.

Outages are logged at ERROR and rejected challenges at WARNING, which keeps
"infrastructure failure" and "attack in progress" apart in the logs.

The gate is skipped entirely in development and test environments, and
skipped with a warning when no secret is configured. It never touches the
database, so no transaction is open while it waits on the network.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from consensus_api.config import FailMode, Settings, get_settings
from consensus_api.errors import (
    ChallengeFailed, ChallengeRequired, ChallengeSuspicious, ChallengeUnavailable,
    FallbackRateLimitExceeded,
)
from consensus_api.rate_limiter import RateLimitResult, SlidingWindowRateLimiter


logger = logging.getLogger(__name__)


DEGRADED_HEADER = "X-Security-Degraded"
DEGRADED_VALUE = "challenge-unavailable"
FALLBACK_HEADER_PREFIX = "X-Fallback-RateLimit"


@dataclass
class ChallengeOutcome:
    """How a request got past the gate."""
    passed: bool
    skipped: bool = False
    degraded: bool = False
    score: Optional[float] = None
    fallback: Optional[RateLimitResult] = None

    def headers(self) -> Dict[str, str]:
        if not self.degraded or self.fallback is None:
            return {}
        return _degraded_headers(self.fallback)


def _degraded_headers(fallback: RateLimitResult) -> Dict[str, str]:
    headers = {DEGRADED_HEADER: DEGRADED_VALUE}
    headers.update(fallback.headers(prefix=FALLBACK_HEADER_PREFIX))
    return headers


class BotChallengeGate:
    """Validates client challenge tokens against the adjudication service."""

    def __init__(
        self,
        fallback_limiter: SlidingWindowRateLimiter,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.fallback_limiter = fallback_limiter
        self.secret = settings.challenge_secret
        self.verify_url = settings.challenge_verify_url
        self.min_score = settings.challenge_min_score
        self.timeout = settings.challenge_timeout_seconds
        self.fail_mode = FailMode(settings.challenge_fail_mode)
        self.enabled = settings.challenge_enabled
        self._client = client

        if self.enabled:
            description = (
                "requests allowed with fallback rate limiting if adjudication fails"
                if self.fail_mode == FailMode.OPEN
                else "requests blocked if adjudication fails"
            )
            logger.info(f"Bot challenge fail mode: {self.fail_mode.value} ({description})")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def verify(self, token: Optional[str], origin_fingerprint: str) -> ChallengeOutcome:
        """Adjudicate one request. Raises a ``ConsensusError`` subclass on rejection."""
        if not self.enabled:
            return ChallengeOutcome(passed=True, skipped=True)

        if not self.secret:
            logger.warning("Bot challenge not configured - secret missing. Skipping verification.")
            return ChallengeOutcome(passed=True, skipped=True)

        if not token:
            raise ChallengeRequired()

        try:
            data = await asyncio.wait_for(
                self._adjudicate(token, origin_fingerprint), timeout=self.timeout
            )
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            return await self._handle_unavailable(origin_fingerprint, e)

        if not data.get("success"):
            logger.warning(
                f"Bot challenge failed for origin {origin_fingerprint}: "
                f"errors={data.get('error-codes')}, action={data.get('action')}"
            )
            raise ChallengeFailed()

        score = data.get("score")
        if score is not None and score < self.min_score:
            logger.warning(
                f"Bot challenge low score for origin {origin_fingerprint}: "
                f"score={score}, threshold={self.min_score}, action={data.get('action')}"
            )
            raise ChallengeSuspicious()

        return ChallengeOutcome(passed=True, score=score)

    async def _adjudicate(self, token: str, origin_fingerprint: str) -> dict:
        client = await self._get_client()
        response = await client.post(
            self.verify_url,
            data={
                "secret": self.secret,
                "response": token,
                "remoteip": origin_fingerprint,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected adjudication payload: {type(data).__name__}")
        score = data.get("score")
        if score is not None:
            if isinstance(score, bool) or not isinstance(score, (int, float, str)):
                raise ValueError(f"Unexpected adjudication score: {score!r}")
            data["score"] = float(score)
        return data

    async def _handle_unavailable(self, origin_fingerprint: str, error: Exception) -> ChallengeOutcome:
        is_timeout = isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException))
        logger.error(
            f"Bot challenge service unavailable: origin={origin_fingerprint}, "
            f"timeout={is_timeout}, fail_mode={self.fail_mode.value}, error={error!r}"
        )

        if self.fail_mode == FailMode.CLOSED:
            logger.warning(f"FAIL-CLOSED: blocking request from {origin_fingerprint}")
            raise ChallengeUnavailable()

        fallback = await self.fallback_limiter.check(origin_fingerprint)
        if not fallback.allowed:
            logger.warning(
                f"FAIL-OPEN: fallback rate limit exceeded for {origin_fingerprint} "
                f"(limit={fallback.limit}/{self.fallback_limiter.window_seconds}s)"
            )
            raise FallbackRateLimitExceeded(
                retry_after=fallback.retry_after,
                headers=_degraded_headers(fallback),
            )

        logger.warning(
            f"FAIL-OPEN: allowing request from {origin_fingerprint} with fallback "
            f"rate limiting (remaining={fallback.remaining}, limit={fallback.limit})"
        )
        return ChallengeOutcome(passed=False, degraded=True, fallback=fallback)
