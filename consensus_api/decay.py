"""
Time-based confidence recalculation.

The recency component decays with wall-clock time even when a pair gets no
new submissions or votes, so cached scores drift upward of their true value
between writes. This job walks every aggregate that has at least one
verification and recomputes it through the consensus aggregator, which also
re-applies the consensus bar (a pair can fall back to PENDING once its score
decays below the confidence gate).

Each pair is recomputed and committed on its own; a failure on one pair is
logged and counted and the run moves on.
"""

import json
import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from consensus_api.config import Settings, get_settings
from consensus_api.consensus import ConsensusAggregator
from consensus_api.database import Aggregate, MaintenanceRun, ensure_utc, utcnow
from consensus_api.models import RecalculationResultResponse


logger = logging.getLogger(__name__)


class ScoreRecalculator:
    """Batch recalculation of cached confidence scores."""

    JOB_NAME = "recalculate"

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.aggregator = ConsensusAggregator(db, self.settings)

    def run(
        self,
        dry_run: bool = False,
        limit: Optional[int] = None,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RecalculationResultResponse:
        """
        Recalculate every aggregate with verifications.

        Args:
            dry_run: Compute and count changes, then roll each one back
            limit: Stop after this many aggregates
            batch_size: Aggregate ids fetched per query (default from settings)
            now: Reference time (default: current UTC time)
        """
        start_time = time.time()
        now = ensure_utc(now) or utcnow()
        batch_size = batch_size or self.settings.recalculation_batch_size

        maintenance_run = MaintenanceRun(
            job=self.JOB_NAME,
            started_at=utcnow(),
            dry_run=dry_run,
            config_snapshot=json.dumps({
                "batch_size": batch_size,
                "limit": limit,
                "min_verifications_for_consensus": self.settings.min_verifications_for_consensus,
                "min_confidence_for_status_change": self.settings.min_confidence_for_status_change,
            })
        )
        self.db.add(maintenance_run)
        self.db.commit()
        run_id = maintenance_run.id

        processed = updated = unchanged = errors = 0
        cursor = 0

        while limit is None or processed < limit:
            take = batch_size if limit is None else min(batch_size, limit - processed)
            rows = self.db.execute(
                select(Aggregate.id, Aggregate.subject_id, Aggregate.claim_id)
                .where(Aggregate.verification_count >= 1, Aggregate.id > cursor)
                .order_by(Aggregate.id)
                .limit(take)
            ).all()
            if not rows:
                break

            for aggregate_id, subject_id, claim_id in rows:
                cursor = aggregate_id
                processed += 1
                try:
                    update = self.aggregator.recompute(subject_id, claim_id, now)
                    changed = update.changed
                    if update.status_changed:
                        logger.info(
                            f"Recalculation moved {subject_id}/{claim_id} "
                            f"{update.previous_status.value} -> {update.aggregate.status}"
                        )
                    if dry_run:
                        self.db.rollback()
                    else:
                        self.db.commit()
                except Exception as e:
                    self.db.rollback()
                    errors += 1
                    logger.error(f"Failed to recalculate {subject_id}/{claim_id}: {e}")
                    continue

                if changed:
                    updated += 1
                else:
                    unchanged += 1

            logger.debug(f"Recalculation progress: {processed} processed, {updated} updated")

        duration = time.time() - start_time
        completed_at = utcnow()

        maintenance_run = self.db.get(MaintenanceRun, run_id)
        maintenance_run.completed_at = completed_at
        maintenance_run.processed = processed
        maintenance_run.updated = updated
        maintenance_run.duration_seconds = duration
        maintenance_run.success = errors == 0
        if errors:
            maintenance_run.error_message = f"{errors} aggregate(s) failed to recalculate"
        self.db.commit()

        logger.info(
            f"Recalculation complete{' (dry run)' if dry_run else ''}: "
            f"{processed} processed, {updated} updated, {unchanged} unchanged, "
            f"{errors} errors in {duration:.2f}s"
        )

        return RecalculationResultResponse(
            success=errors == 0,
            dry_run=dry_run,
            processed=processed,
            updated=updated,
            unchanged=unchanged,
            errors=errors,
            duration_seconds=duration,
            completed_at=completed_at,
        )
