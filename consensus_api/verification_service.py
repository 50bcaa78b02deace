"""
Verification service: submissions, votes and the aggregate read API.

Each write runs in one database transaction that holds the triggering
Submission/Vote change and the pair's aggregate recomputation together;
nothing is committed unless both succeed. Defense layers that talk to the
network (rate limiter, bot challenge) run in the route before this service
is called, so no transaction is ever open while waiting on them.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from consensus_api.catalog import Catalog, SqlCatalog
from consensus_api.config import Settings, get_settings
from consensus_api.confidence import (
    ConfidenceFactors, build_metadata, days_since, explain_score,
    get_level_description,
)
from consensus_api.consensus import ConsensusAggregator
from consensus_api.database import Aggregate, Submission, Vote, ensure_utc, utcnow
from consensus_api.duplicate_guard import DuplicateSubmissionGuard
from consensus_api.errors import DuplicateVote, NotFound
from consensus_api.models import (
    AcceptanceStatus, AggregateResponse, ConfidenceFactorsResponse, ConfidenceLevel,
    ConfidenceMetadataResponse, DataSource, FreshnessCategory, PairSummary,
    PairVerificationsResponse, RecentVerificationsResponse, SubmissionResponse,
    SubmitVerificationResponse, VerificationStatsResponse, VoteDirection, VoteResponse,
    VoteTallyResponse,
)


logger = logging.getLogger(__name__)


MAX_PAIR_SUBMISSIONS = 50
MAX_RECENT_SUBMISSIONS = 100


class VerificationService:
    """
    Orchestrates the write path behind the defense layers.

    submit: catalog check -> lock aggregate -> duplicate guard -> insert
            submission -> recompute aggregate -> commit
    vote:   lock submission -> create or flip vote -> adjust counters ->
            recompute aggregate -> commit
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        catalog: Optional[Catalog] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.catalog = catalog or SqlCatalog(db)
        self.aggregator = ConsensusAggregator(db, self.settings, self.catalog)
        self.duplicate_guard = DuplicateSubmissionGuard(db, self.settings.duplicate_window_days)

    # =========================================================================
    # Submissions
    # =========================================================================

    def submit_verification(
        self,
        subject_id: str,
        claim_id: str,
        accepts: bool,
        origin_fingerprint: str,
        note: Optional[str] = None,
        evidence_url: Optional[str] = None,
        submitted_by: Optional[str] = None,
        data_source: DataSource = DataSource.CROWDSOURCE,
        now: Optional[datetime] = None,
    ) -> SubmitVerificationResponse:
        """Persist one submission and recompute its pair's aggregate atomically."""
        now = ensure_utc(now) or utcnow()

        try:
            if not self.catalog.subject_exists(subject_id):
                raise NotFound(f"Provider {subject_id} not found")
            if not self.catalog.claim_exists(claim_id):
                raise NotFound(f"Plan {claim_id} not found")

            # Same-pair writers serialize here, before the duplicate lookback
            self.aggregator.lock_aggregate(subject_id, claim_id)
            self.duplicate_guard.check(
                subject_id, claim_id, origin_fingerprint, submitted_by, now=now
            )

            submission = Submission(
                subject_id=subject_id,
                claim_id=claim_id,
                claimed_value=accepts,
                data_source=DataSource(data_source).value,
                note=note,
                evidence_url=evidence_url,
                origin_fingerprint=origin_fingerprint,
                submitted_by=submitted_by,
                upvotes=0,
                downvotes=0,
                created_at=now,
                expires_at=now + timedelta(days=self.settings.verification_ttl_days),
            )
            self.db.add(submission)

            update = self.aggregator.recompute(subject_id, claim_id, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Submission {submission.id} recorded for {subject_id}/{claim_id} "
            f"(accepts={accepts}, score={update.aggregate.confidence_score}, "
            f"status={update.aggregate.status})"
        )

        upvotes, downvotes = self._vote_totals(subject_id, claim_id, now)
        return SubmitVerificationResponse(
            submission=submission_to_response(submission),
            aggregate=aggregate_to_response(update.aggregate, now, upvotes, downvotes),
        )

    # =========================================================================
    # Votes
    # =========================================================================

    def vote_on_submission(
        self,
        submission_id: int,
        direction: VoteDirection,
        origin_fingerprint: str,
        now: Optional[datetime] = None,
    ) -> VoteResponse:
        """
        Record or flip one origin's vote on a submission.

        A repeat vote in the same direction is rejected as a conflict. A
        vote in the other direction updates the existing row in place and
        moves one count across, so counters always match the votes table.
        """
        now = ensure_utc(now) or utcnow()
        direction = VoteDirection(direction)

        try:
            submission = self.db.execute(
                select(Submission).where(Submission.id == submission_id).with_for_update()
            ).scalar_one_or_none()
            if submission is None or ensure_utc(submission.expires_at) <= now:
                raise NotFound("Verification not found")

            existing = self.db.execute(
                select(Vote).where(
                    Vote.submission_id == submission_id,
                    Vote.origin_fingerprint == origin_fingerprint,
                )
            ).scalar_one_or_none()

            vote_changed = False
            if existing is not None:
                if existing.direction == direction.value:
                    raise DuplicateVote()
                _apply_vote_delta(submission, VoteDirection(existing.direction), -1)
                existing.direction = direction.value
                existing.updated_at = now
                vote_changed = True
            else:
                self.db.add(Vote(
                    submission_id=submission_id,
                    origin_fingerprint=origin_fingerprint,
                    direction=direction.value,
                    created_at=now,
                    updated_at=now,
                ))
            _apply_vote_delta(submission, direction, +1)

            subject_id, claim_id = submission.subject_id, submission.claim_id
            update = self.aggregator.recompute(subject_id, claim_id, now)
            self.db.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent first vote from the same origin
            self.db.rollback()
            logger.warning(f"Concurrent duplicate vote on submission {submission_id}")
            raise DuplicateVote() from e
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Vote {direction.value} on submission {submission_id} "
            f"({'changed' if vote_changed else 'new'}); pair {subject_id}/{claim_id} "
            f"score={update.aggregate.confidence_score}"
        )

        upvotes, downvotes = self._vote_totals(subject_id, claim_id, now)
        return VoteResponse(
            vote=VoteTallyResponse(
                submission_id=submission.id,
                direction=direction,
                upvotes=submission.upvotes,
                downvotes=submission.downvotes,
                net_votes=submission.upvotes - submission.downvotes,
                vote_changed=vote_changed,
            ),
            aggregate=aggregate_to_response(update.aggregate, now, upvotes, downvotes),
            message=(
                f"Vote changed to: {direction.value}" if vote_changed
                else f"Vote recorded: {direction.value}"
            ),
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_pair(
        self,
        subject_id: str,
        claim_id: str,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> PairVerificationsResponse:
        """Aggregate and recent submissions for one pair, identifying fields removed."""
        now = ensure_utc(now) or utcnow()

        if not self.catalog.subject_exists(subject_id) or not self.catalog.claim_exists(claim_id):
            raise NotFound("Provider or plan not found")

        aggregate = self.db.execute(
            select(Aggregate).where(
                Aggregate.subject_id == subject_id, Aggregate.claim_id == claim_id
            )
        ).scalar_one_or_none()

        query = select(Submission).where(
            Submission.subject_id == subject_id, Submission.claim_id == claim_id
        )
        if not include_expired:
            query = query.where(Submission.expires_at > now)
        submissions = self.db.execute(
            query.order_by(Submission.created_at.desc(), Submission.id.desc())
            .limit(MAX_PAIR_SUBMISSIONS)
        ).scalars().all()

        upvotes, downvotes = self._vote_totals(subject_id, claim_id, now)
        return PairVerificationsResponse(
            subject_id=subject_id,
            claim_id=claim_id,
            aggregate=(
                aggregate_to_response(aggregate, now, upvotes, downvotes)
                if aggregate is not None else None
            ),
            submissions=[submission_to_response(s) for s in submissions],
            summary=PairSummary(
                total_submissions=len(submissions),
                total_upvotes=sum(s.upvotes for s in submissions),
                total_downvotes=sum(s.downvotes for s in submissions),
            ),
        )

    def get_recent(
        self,
        limit: int = 20,
        subject_id: Optional[str] = None,
        claim_id: Optional[str] = None,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> RecentVerificationsResponse:
        now = ensure_utc(now) or utcnow()

        query = select(Submission)
        if not include_expired:
            query = query.where(Submission.expires_at > now)
        if subject_id:
            query = query.where(Submission.subject_id == subject_id)
        if claim_id:
            query = query.where(Submission.claim_id == claim_id)

        submissions = self.db.execute(
            query.order_by(Submission.created_at.desc(), Submission.id.desc())
            .limit(min(limit, MAX_RECENT_SUBMISSIONS))
        ).scalars().all()

        return RecentVerificationsResponse(
            submissions=[submission_to_response(s) for s in submissions],
            count=len(submissions),
        )

    def get_stats(self, now: Optional[datetime] = None) -> VerificationStatsResponse:
        """Submission totals, moderation split and per-source/per-status counts."""
        now = ensure_utc(now) or utcnow()
        last_24_hours = now - timedelta(hours=24)

        total = self.db.scalar(select(func.count(Submission.id))) or 0
        approved = self.db.scalar(
            select(func.count(Submission.id)).where(Submission.is_approved.is_(True))
        ) or 0
        pending_review = self.db.scalar(
            select(func.count(Submission.id)).where(Submission.is_approved.is_(None))
        ) or 0
        recent_count = self.db.scalar(
            select(func.count(Submission.id)).where(Submission.created_at >= last_24_hours)
        ) or 0

        by_source = {source.value: 0 for source in DataSource}
        for source, count in self.db.execute(
            select(Submission.data_source, func.count(Submission.id)).group_by(Submission.data_source)
        ).all():
            by_source[source] = count

        by_status = {status.value: 0 for status in AcceptanceStatus}
        for status, count in self.db.execute(
            select(Aggregate.status, func.count(Aggregate.id)).group_by(Aggregate.status)
        ).all():
            by_status[status] = count

        return VerificationStatsResponse(
            total=total,
            approved=approved,
            pending_review=pending_review,
            by_source=by_source,
            by_status=by_status,
            recent_count=recent_count,
        )

    def _vote_totals(self, subject_id: str, claim_id: str, now: datetime) -> Tuple[int, int]:
        """Up/down vote totals across the pair's unexpired submissions."""
        upvotes, downvotes = self.db.execute(
            select(
                func.coalesce(func.sum(Submission.upvotes), 0),
                func.coalesce(func.sum(Submission.downvotes), 0),
            ).where(
                Submission.subject_id == subject_id,
                Submission.claim_id == claim_id,
                Submission.expires_at > now,
                Submission.is_approved.isnot(False),
            )
        ).one()
        return int(upvotes), int(downvotes)


# =============================================================================
# Helper Functions
# =============================================================================


def _apply_vote_delta(submission: Submission, direction: VoteDirection, delta: int):
    """Move one submission counter by ``delta``, never below zero."""
    if direction == VoteDirection.UP:
        submission.upvotes = max(0, (submission.upvotes or 0) + delta)
    else:
        submission.downvotes = max(0, (submission.downvotes or 0) + delta)


def submission_to_response(submission: Submission) -> SubmissionResponse:
    """Convert a database Submission to its public form (no fingerprint, no submitter)."""
    return SubmissionResponse(
        id=submission.id,
        subject_id=submission.subject_id,
        claim_id=submission.claim_id,
        accepts=submission.claimed_value,
        data_source=submission.data_source,
        note=submission.note,
        evidence_url=submission.evidence_url,
        upvotes=submission.upvotes,
        downvotes=submission.downvotes,
        is_approved=submission.is_approved,
        created_at=ensure_utc(submission.created_at),
        expires_at=ensure_utc(submission.expires_at),
    )


def aggregate_to_response(
    aggregate: Aggregate,
    now: Optional[datetime] = None,
    upvotes: int = 0,
    downvotes: int = 0,
) -> AggregateResponse:
    """
    Convert a database Aggregate to the read model.

    Score, level and factors come from the cached columns; only the
    time-relative metadata (days since verification, staleness) is derived
    against ``now``.
    """
    now = ensure_utc(now) or utcnow()

    stored = aggregate.confidence_factors or {}
    factors = ConfidenceFactors(
        data_source_score=int(stored.get("data_source_score", 0)),
        recency_score=int(stored.get("recency_score", 0)),
        verification_score=int(stored.get("verification_score", 0)),
        agreement_score=int(stored.get("agreement_score", 0)),
    )

    count = aggregate.verification_count or 0
    threshold = aggregate.freshness_threshold
    days = days_since(aggregate.last_verified_at, now)
    category = FreshnessCategory(aggregate.freshness_category or FreshnessCategory.OTHER.value)
    level = ConfidenceLevel(aggregate.confidence_level)
    explanation = explain_score(
        aggregate.confidence_score, factors, count, days, threshold, upvotes, downvotes
    )
    metadata = build_metadata(days, threshold, category, explanation)

    expires_at = ensure_utc(aggregate.expires_at)
    return AggregateResponse(
        subject_id=aggregate.subject_id,
        claim_id=aggregate.claim_id,
        status=AcceptanceStatus(aggregate.status),
        confidence_score=aggregate.confidence_score,
        confidence_level=level,
        confidence_description=get_level_description(level, count),
        verification_count=count,
        accept_count=aggregate.accept_count,
        reject_count=aggregate.reject_count,
        last_verified_at=ensure_utc(aggregate.last_verified_at),
        expires_at=expires_at,
        is_expired=expires_at is not None and expires_at <= now,
        factors=ConfidenceFactorsResponse(**factors.as_dict()),
        metadata=ConfidenceMetadataResponse(
            days_since_verification=metadata.days_since_verification,
            days_until_stale=metadata.days_until_stale,
            is_stale=metadata.is_stale,
            recommend_re_verification=metadata.recommend_re_verification,
            freshness_threshold=metadata.freshness_threshold,
            freshness_category=metadata.freshness_category,
            explanation=metadata.explanation,
            freshness_note=metadata.freshness_note,
        ),
    )
