"""
Consensus aggregation for (subject, claim) pairs.

After every submission or vote write, the pair's aggregate is recomputed
from the committed-plus-pending state of the current transaction:

    UNKNOWN -> PENDING -> ACCEPTED / REJECTED -> PENDING / UNKNOWN

A pair leaves PENDING only when all three gates hold: enough
verifications, a high enough confidence score, and a strong enough
majority. The aggregate row is locked for the duration of the caller's
transaction so concurrent writers to the same pair serialize.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from consensus_api.catalog import Catalog, SqlCatalog
from consensus_api.config import Settings, get_settings
from consensus_api.confidence import (
    ConfidenceResult, get_freshness_category, is_contributing, score_history
)
from consensus_api.database import Aggregate, Submission, ensure_utc, utcnow
from consensus_api.models import AcceptanceStatus


logger = logging.getLogger(__name__)


def decide_status(
    verification_count: int,
    confidence_score: int,
    accept_count: int,
    reject_count: int,
    min_verifications: int = 3,
    min_confidence: int = 60,
    majority_ratio: float = 2.0,
) -> AcceptanceStatus:
    """
    Apply the consensus bar.

    ACCEPTED/REJECTED require verification_count >= min_verifications,
    confidence_score >= min_confidence and a majority of at least
    ``majority_ratio``:1 in that direction. Otherwise PENDING while any
    verification exists, UNKNOWN when none does.
    """
    if verification_count <= 0:
        return AcceptanceStatus.UNKNOWN

    if verification_count >= min_verifications and confidence_score >= min_confidence:
        if accept_count > 0 and accept_count >= majority_ratio * reject_count:
            return AcceptanceStatus.ACCEPTED
        if reject_count > 0 and reject_count >= majority_ratio * accept_count:
            return AcceptanceStatus.REJECTED

    return AcceptanceStatus.PENDING


@dataclass
class AggregateUpdate:
    """Outcome of one recomputation."""
    aggregate: Aggregate
    result: ConfidenceResult
    previous_status: AcceptanceStatus
    previous_score: int

    @property
    def status_changed(self) -> bool:
        return AcceptanceStatus(self.aggregate.status) != self.previous_status

    @property
    def changed(self) -> bool:
        return self.status_changed or self.aggregate.confidence_score != self.previous_score


class ConsensusAggregator:
    """
    Owns the aggregate record of each (subject, claim) pair.

    Never commits: the caller's transaction, which also holds the triggering
    submission or vote write, is the unit of atomicity.
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

    def lock_aggregate(self, subject_id: str, claim_id: str) -> Aggregate:
        """Fetch the pair's aggregate under a row lock, creating it if missing."""
        aggregate = self._select_for_update(subject_id, claim_id)
        if aggregate is not None:
            return aggregate

        self._insert_if_missing(subject_id, claim_id)
        aggregate = self._select_for_update(subject_id, claim_id)
        logger.debug(f"Created aggregate for pair {subject_id}/{claim_id}")
        return aggregate

    def recompute(
        self,
        subject_id: str,
        claim_id: str,
        now: Optional[datetime] = None,
    ) -> AggregateUpdate:
        """Rebuild every cached field of the pair's aggregate from its submissions."""
        now = ensure_utc(now) or utcnow()

        # Pending submission/vote writes must be visible to the read below
        self.db.flush()

        aggregate = self.lock_aggregate(subject_id, claim_id)
        previous_status = AcceptanceStatus(aggregate.status)
        previous_score = aggregate.confidence_score

        contributing = self._contributing_submissions(subject_id, claim_id, now)
        category_text = self.catalog.subject_category(subject_id)
        result = score_history(contributing, category_text, now)

        accept_count = sum(1 for s in contributing if s.claimed_value)
        reject_count = len(contributing) - accept_count

        status = decide_status(
            verification_count=len(contributing),
            confidence_score=result.score,
            accept_count=accept_count,
            reject_count=reject_count,
            min_verifications=self.settings.min_verifications_for_consensus,
            min_confidence=self.settings.min_confidence_for_status_change,
            majority_ratio=self.settings.consensus_majority_ratio,
        )

        aggregate.status = status.value
        aggregate.confidence_score = result.score
        aggregate.confidence_level = result.level.value
        aggregate.confidence_factors = result.factors.as_dict()
        aggregate.freshness_threshold = result.metadata.freshness_threshold
        aggregate.freshness_category = get_freshness_category(category_text).value
        aggregate.verification_count = len(contributing)
        aggregate.accept_count = accept_count
        aggregate.reject_count = reject_count
        aggregate.updated_at = now

        if contributing:
            newest = max(contributing, key=lambda s: ensure_utc(s.created_at))
            aggregate.data_source = newest.data_source
            aggregate.last_verified_at = ensure_utc(newest.created_at)
            aggregate.expires_at = max(ensure_utc(s.expires_at) for s in contributing)
        else:
            aggregate.data_source = None
            aggregate.last_verified_at = None

        update = AggregateUpdate(
            aggregate=aggregate,
            result=result,
            previous_status=previous_status,
            previous_score=previous_score,
        )
        if update.status_changed:
            logger.info(
                f"Pair {subject_id}/{claim_id} moved {previous_status.value} -> {status.value} "
                f"(score={result.score}, count={len(contributing)}, "
                f"accept={accept_count}, reject={reject_count})"
            )
        return update

    def _contributing_submissions(
        self, subject_id: str, claim_id: str, now: datetime
    ) -> List[Submission]:
        rows = self.db.execute(
            select(Submission).where(
                Submission.subject_id == subject_id,
                Submission.claim_id == claim_id,
                Submission.expires_at > now,
            )
        ).scalars().all()
        return [s for s in rows if is_contributing(s, now)]

    def _select_for_update(self, subject_id: str, claim_id: str) -> Optional[Aggregate]:
        return self.db.execute(
            select(Aggregate)
            .where(Aggregate.subject_id == subject_id, Aggregate.claim_id == claim_id)
            .with_for_update()
        ).scalar_one_or_none()

    def _insert_if_missing(self, subject_id: str, claim_id: str) -> None:
        """Race-safe lazy creation; a concurrent creator wins silently."""
        now = utcnow()
        values = dict(
            subject_id=subject_id,
            claim_id=claim_id,
            status=AcceptanceStatus.UNKNOWN.value,
            confidence_score=0,
            verification_count=0,
            accept_count=0,
            reject_count=0,
            created_at=now,
            updated_at=now,
        )
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(Aggregate).values(**values).on_conflict_do_nothing(
                index_elements=["subject_id", "claim_id"]
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(Aggregate).values(**values).on_conflict_do_nothing(
                index_elements=["subject_id", "claim_id"]
            )
        else:
            stmt = insert(Aggregate).values(**values)
        self.db.execute(stmt)
