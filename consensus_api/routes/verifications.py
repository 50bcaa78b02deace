"""
API routes for submitting, voting on and reading verifications.

Write requests pass the defense layers in a fixed order:

    validation -> honeypot -> rate limiter -> bot challenge -> service

Validation is done by FastAPI before the handler body runs, so malformed
input is rejected before any limiter is charged. The rate limiter and the
bot challenge run on the event loop with no database transaction open;
the synchronous service call then runs in the threadpool.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from consensus_api.captcha import BotChallengeGate
from consensus_api.database import get_db
from consensus_api.dependencies import (
    get_challenge_gate, get_origin_fingerprint, get_rate_limiters
)
from consensus_api.models import (
    PairVerificationsResponse, RecentVerificationsResponse, SubmitVerificationRequest,
    SubmitVerificationResponse, VerificationStatsResponse, VoteRequest, VoteResponse,
)
from consensus_api.rate_limiter import (
    DEFAULT_SCOPE, SEARCH_SCOPE, SUBMIT_SCOPE, VOTE_SCOPE, RateLimiterRegistry
)
from consensus_api.verification_service import VerificationService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verifications", tags=["Verifications"])

HONEYPOT_RESPONSE = {"message": "Verification submitted successfully"}


def carry_limit_headers(http_request: Request, response: Response, headers: dict) -> None:
    """Set rate limit headers on the response and keep them for error responses."""
    response.headers.update(headers)
    http_request.state.rate_limit_headers = dict(headers)


# =============================================================================
# Submit
# =============================================================================


@router.post("", response_model=SubmitVerificationResponse, status_code=201)
async def submit_verification(
    request: SubmitVerificationRequest,
    http_request: Request,
    response: Response,
    origin_fingerprint: str = Depends(get_origin_fingerprint),
    rate_limiters: RateLimiterRegistry = Depends(get_rate_limiters),
    challenge_gate: BotChallengeGate = Depends(get_challenge_gate),
    db: Session = Depends(get_db),
    x_challenge_token: Optional[str] = Header(default=None),
):
    """
    Submit a verification that a provider does or does not accept a plan.

    The response carries the new submission id and the pair's recomputed
    aggregate. One origin (or one email) can submit once per pair every
    30 days.
    """
    if request.website:
        # Bots fill every field; answer as if it worked and store nothing
        logger.warning(f"Honeypot triggered on submission from {origin_fingerprint}")
        return JSONResponse(status_code=201, content=HONEYPOT_RESPONSE)

    limit = await rate_limiters.get(SUBMIT_SCOPE).enforce(origin_fingerprint)
    carry_limit_headers(http_request, response, limit.headers())

    outcome = await challenge_gate.verify(
        request.challenge_token or x_challenge_token, origin_fingerprint
    )
    response.headers.update(outcome.headers())

    service = VerificationService(db)
    return await run_in_threadpool(
        service.submit_verification,
        subject_id=request.subject_id,
        claim_id=request.claim_id,
        accepts=request.accepts,
        origin_fingerprint=origin_fingerprint,
        note=request.note,
        evidence_url=request.evidence_url,
        submitted_by=request.submitted_by,
    )


# =============================================================================
# Vote
# =============================================================================


@router.post("/{submission_id}/vote", response_model=VoteResponse)
async def vote_on_verification(
    request: VoteRequest,
    http_request: Request,
    response: Response,
    submission_id: int = Path(..., ge=1),
    origin_fingerprint: str = Depends(get_origin_fingerprint),
    rate_limiters: RateLimiterRegistry = Depends(get_rate_limiters),
    challenge_gate: BotChallengeGate = Depends(get_challenge_gate),
    db: Session = Depends(get_db),
    x_challenge_token: Optional[str] = Header(default=None),
):
    """
    Vote a verification up or down.

    Voting again in the other direction changes the existing vote; voting
    again in the same direction is rejected.
    """
    limit = await rate_limiters.get(VOTE_SCOPE).enforce(origin_fingerprint)
    carry_limit_headers(http_request, response, limit.headers())

    outcome = await challenge_gate.verify(
        request.challenge_token or x_challenge_token, origin_fingerprint
    )
    response.headers.update(outcome.headers())

    service = VerificationService(db)
    return await run_in_threadpool(
        service.vote_on_submission,
        submission_id=submission_id,
        direction=request.direction,
        origin_fingerprint=origin_fingerprint,
    )


# =============================================================================
# Reads
# =============================================================================


@router.get("/stats", response_model=VerificationStatsResponse)
async def get_verification_stats(
    http_request: Request,
    response: Response,
    origin_fingerprint: str = Depends(get_origin_fingerprint),
    rate_limiters: RateLimiterRegistry = Depends(get_rate_limiters),
    db: Session = Depends(get_db),
):
    """Get verification statistics."""
    limit = await rate_limiters.get(DEFAULT_SCOPE).enforce(origin_fingerprint)
    carry_limit_headers(http_request, response, limit.headers())

    return await run_in_threadpool(VerificationService(db).get_stats)


@router.get("/recent", response_model=RecentVerificationsResponse)
async def get_recent_verifications(
    http_request: Request,
    response: Response,
    limit: int = Query(default=20, ge=1, le=100),
    subject_id: Optional[str] = Query(default=None, min_length=1, max_length=50),
    claim_id: Optional[str] = Query(default=None, min_length=1, max_length=50),
    origin_fingerprint: str = Depends(get_origin_fingerprint),
    rate_limiters: RateLimiterRegistry = Depends(get_rate_limiters),
    db: Session = Depends(get_db),
):
    """Get recent verifications, newest first."""
    rate_limit = await rate_limiters.get(SEARCH_SCOPE).enforce(origin_fingerprint)
    carry_limit_headers(http_request, response, rate_limit.headers())

    return await run_in_threadpool(
        VerificationService(db).get_recent,
        limit=limit,
        subject_id=subject_id,
        claim_id=claim_id,
    )


@router.get("/{subject_id}/{claim_id}", response_model=PairVerificationsResponse)
async def get_pair_verifications(
    http_request: Request,
    response: Response,
    subject_id: str = Path(..., min_length=1, max_length=50),
    claim_id: str = Path(..., min_length=1, max_length=50),
    origin_fingerprint: str = Depends(get_origin_fingerprint),
    rate_limiters: RateLimiterRegistry = Depends(get_rate_limiters),
    db: Session = Depends(get_db),
):
    """
    Get the consensus record and recent verifications for a provider-plan pair.

    Includes the confidence breakdown and freshness metadata. Origin
    fingerprints and submitter emails are never returned.
    """
    limit = await rate_limiters.get(DEFAULT_SCOPE).enforce(origin_fingerprint)
    carry_limit_headers(http_request, response, limit.headers())

    return await run_in_threadpool(
        VerificationService(db).get_pair, subject_id=subject_id, claim_id=claim_id
    )
