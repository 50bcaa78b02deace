"""
Expiration sweeper.

Submissions live for a fixed TTL (6 months by default). Network
participation turns over steadily, so an expired verification says nothing
about the present and is hard-deleted, its votes with it. Each batch
deletes its submissions and recomputes every affected aggregate in one
committed transaction: an interrupted run leaves every finished batch
consistent, and re-running picks up where it stopped.

A second pass resets aggregates whose own ``expires_at`` has passed but
which still carry a status or count (for example, pairs whose only
unexpired submissions were excluded by moderation). Recomputed with no
contributing submissions they fall back to UNKNOWN.
"""

import json
import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from consensus_api.config import Settings, get_settings
from consensus_api.consensus import ConsensusAggregator
from consensus_api.database import Aggregate, MaintenanceRun, Submission, Vote, ensure_utc, utcnow
from consensus_api.models import (
    AcceptanceStatus, ExpirationStatsResponse, SweepResultResponse, TTLStats
)


logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Batch deletion of expired submissions plus aggregate recomputation."""

    JOB_NAME = "sweep"

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.aggregator = ConsensusAggregator(db, self.settings)

    def run(
        self,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SweepResultResponse:
        """
        Sweep everything that expired at or before ``now``.

        Args:
            dry_run: Only count expired rows; write nothing but the run log
            batch_size: Submissions deleted per transaction (default from settings)
            now: Reference time (default: current UTC time)

        Returns:
            Counts of what was found, deleted and recomputed
        """
        start_time = time.time()
        now = ensure_utc(now) or utcnow()
        batch_size = batch_size or self.settings.sweeper_batch_size

        maintenance_run = MaintenanceRun(
            job=self.JOB_NAME,
            started_at=utcnow(),
            dry_run=dry_run,
            config_snapshot=json.dumps({
                "batch_size": batch_size,
                "verification_ttl_days": self.settings.verification_ttl_days,
                "reference_time": now.isoformat(),
            })
        )
        self.db.add(maintenance_run)
        self.db.commit()

        stats = {
            "expired_submissions": 0,
            "expired_aggregates": 0,
            "deleted_submissions": 0,
            "deleted_votes": 0,
            "aggregates_recomputed": 0,
            "batches": 0,
        }

        try:
            stats["expired_submissions"] = self.db.scalar(
                select(func.count(Submission.id)).where(Submission.expires_at <= now)
            ) or 0
            stats["expired_aggregates"] = self.db.scalar(
                select(func.count(Aggregate.id)).where(self._stale_aggregate_filter(now))
            ) or 0

            if dry_run:
                logger.info(
                    f"Sweep dry run: {stats['expired_submissions']} expired submissions, "
                    f"{stats['expired_aggregates']} expired aggregates"
                )
                return self._finalize_run(maintenance_run, stats, start_time, dry_run)

            while True:
                rows = self.db.execute(
                    select(Submission.id, Submission.subject_id, Submission.claim_id)
                    .where(Submission.expires_at <= now)
                    .order_by(Submission.id)
                    .limit(batch_size)
                ).all()
                if not rows:
                    break
                self._sweep_batch(rows, now, stats)

            self._reset_stale_aggregates(now, batch_size, stats)

            return self._finalize_run(maintenance_run, stats, start_time, dry_run)

        except Exception as e:
            logger.exception("Error during expiration sweep")
            self.db.rollback()
            maintenance_run.success = False
            maintenance_run.error_message = str(e)
            maintenance_run.completed_at = utcnow()
            maintenance_run.deleted = stats["deleted_submissions"]
            maintenance_run.updated = stats["aggregates_recomputed"]
            self.db.commit()
            raise

    def _sweep_batch(self, rows: List[Tuple[int, str, str]], now: datetime, stats: dict):
        """Delete one batch and recompute its pairs, committed together."""
        submission_ids = [row[0] for row in rows]
        pairs = sorted({(row[1], row[2]) for row in rows})

        try:
            # Votes would go with the FK cascade anyway; deleting them first gives a count
            deleted_votes = self.db.execute(
                delete(Vote).where(Vote.submission_id.in_(submission_ids)),
                execution_options={"synchronize_session": False},
            ).rowcount
            deleted_submissions = self.db.execute(
                delete(Submission).where(Submission.id.in_(submission_ids)),
                execution_options={"synchronize_session": False},
            ).rowcount
            self.db.expire_all()

            for subject_id, claim_id in pairs:
                self.aggregator.recompute(subject_id, claim_id, now)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        stats["deleted_votes"] += deleted_votes
        stats["deleted_submissions"] += deleted_submissions
        stats["aggregates_recomputed"] += len(pairs)
        stats["batches"] += 1
        logger.debug(
            f"Sweep batch {stats['batches']}: {deleted_submissions} submissions, "
            f"{deleted_votes} votes, {len(pairs)} pairs recomputed"
        )

    def _reset_stale_aggregates(self, now: datetime, batch_size: int, stats: dict):
        cursor = 0
        while True:
            rows = self.db.execute(
                select(Aggregate.id, Aggregate.subject_id, Aggregate.claim_id)
                .where(self._stale_aggregate_filter(now), Aggregate.id > cursor)
                .order_by(Aggregate.id)
                .limit(batch_size)
            ).all()
            if not rows:
                break

            try:
                for aggregate_id, subject_id, claim_id in rows:
                    cursor = aggregate_id
                    self.aggregator.recompute(subject_id, claim_id, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            stats["aggregates_recomputed"] += len(rows)
            stats["batches"] += 1

    @staticmethod
    def _stale_aggregate_filter(now: datetime):
        """Expired aggregates that have not yet been reset."""
        return (
            Aggregate.expires_at.isnot(None)
            & (Aggregate.expires_at <= now)
            & or_(
                Aggregate.verification_count > 0,
                Aggregate.status != AcceptanceStatus.UNKNOWN.value,
            )
        )

    def _finalize_run(
        self,
        maintenance_run: MaintenanceRun,
        stats: dict,
        start_time: float,
        dry_run: bool,
    ) -> SweepResultResponse:
        """Finalize and log the sweep run."""
        duration = time.time() - start_time
        completed_at = utcnow()

        maintenance_run.completed_at = completed_at
        maintenance_run.processed = stats["expired_submissions"]
        maintenance_run.deleted = stats["deleted_submissions"]
        maintenance_run.updated = stats["aggregates_recomputed"]
        maintenance_run.duration_seconds = duration
        maintenance_run.success = True
        self.db.commit()

        logger.info(
            f"Sweep complete{' (dry run)' if dry_run else ''}: "
            f"{stats['deleted_submissions']} submissions and {stats['deleted_votes']} votes deleted, "
            f"{stats['aggregates_recomputed']} aggregates recomputed in {duration:.2f}s"
        )

        return SweepResultResponse(
            success=True,
            dry_run=dry_run,
            duration_seconds=duration,
            completed_at=completed_at,
            **stats,
        )

    # =========================================================================
    # Monitoring
    # =========================================================================

    def expiration_stats(self, now: Optional[datetime] = None) -> ExpirationStatsResponse:
        """TTL statistics for submissions and aggregates."""
        now = ensure_utc(now) or utcnow()
        return ExpirationStatsResponse(
            submissions=self._ttl_stats(Submission, now),
            aggregates=self._ttl_stats(Aggregate, now),
        )

    def _ttl_stats(self, model, now: datetime) -> TTLStats:
        in_7_days = now + timedelta(days=7)
        in_30_days = now + timedelta(days=30)

        def count(*criteria) -> int:
            return self.db.scalar(select(func.count(model.id)).where(*criteria)) or 0

        return TTLStats(
            total=count(),
            with_ttl=count(model.expires_at.isnot(None)),
            expired=count(model.expires_at.isnot(None), model.expires_at <= now),
            expiring_within_7_days=count(model.expires_at > now, model.expires_at <= in_7_days),
            expiring_within_30_days=count(model.expires_at > now, model.expires_at <= in_30_days),
        )
