"""
Duplicate-submission guard.

Rate limiting bounds how much an origin can send; this guard bounds how
often the same actor can repeat a claim about the same pair. A second
active submission for the same (subject, claim) from the same origin
fingerprint, or from the same submitter identifier, inside the lookback
window is rejected as a conflict and never merged.

Call it inside the submission transaction after the pair's aggregate row
is locked; concurrent submissions for one pair then serialize on that
lock, and the later one sees the earlier one here.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from consensus_api.config import get_settings
from consensus_api.database import Submission, ensure_utc, utcnow
from consensus_api.errors import DuplicateSubmission


logger = logging.getLogger(__name__)


class DuplicateSubmissionGuard:

    def __init__(self, db: Session, window_days: Optional[int] = None):
        self.db = db
        self.window = timedelta(
            days=window_days if window_days is not None else get_settings().duplicate_window_days
        )

    def find_duplicate(
        self,
        subject_id: str,
        claim_id: str,
        origin_fingerprint: str,
        submitted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Submission]:
        now = ensure_utc(now) or utcnow()
        cutoff = now - self.window

        base = select(Submission).where(
            Submission.subject_id == subject_id,
            Submission.claim_id == claim_id,
            Submission.created_at >= cutoff,
            Submission.expires_at > now,
        )

        existing = self.db.execute(
            base.where(Submission.origin_fingerprint == origin_fingerprint).limit(1)
        ).scalar_one_or_none()
        if existing is not None or not submitted_by:
            return existing

        return self.db.execute(
            base.where(Submission.submitted_by == submitted_by).limit(1)
        ).scalar_one_or_none()

    def check(
        self,
        subject_id: str,
        claim_id: str,
        origin_fingerprint: str,
        submitted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise ``DuplicateSubmission`` if the actor already spoke on this pair."""
        existing = self.find_duplicate(
            subject_id, claim_id, origin_fingerprint, submitted_by, now
        )
        if existing is None:
            return

        days = self.window.days
        if existing.origin_fingerprint == origin_fingerprint:
            logger.warning(
                f"Duplicate submission for {subject_id}/{claim_id} from origin "
                f"(existing submission {existing.id})"
            )
            raise DuplicateSubmission(
                "You have already submitted a verification for this provider-plan "
                f"pair within the last {days} days."
            )

        logger.warning(
            f"Duplicate submission for {subject_id}/{claim_id} from submitter "
            f"(existing submission {existing.id})"
        )
        raise DuplicateSubmission(
            "This email has already submitted a verification for this provider-plan "
            f"pair within the last {days} days."
        )
