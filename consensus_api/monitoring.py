"""
Abuse monitoring.

Summarizes recent activity per origin fingerprint so coordinated
manipulation (one origin submitting across many pairs, cycling submitter
emails, or mass-voting) shows up in one place. Fingerprints are reported as
short SHA-256 digests, never in the clear.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from consensus_api.config import Settings, get_settings
from consensus_api.database import Submission, Vote, ensure_utc, utcnow
from consensus_api.models import AbuseReportResponse, OriginActivity, VoteDirection


logger = logging.getLogger(__name__)


SUBMISSION_COLUMNS = ["submissions", "distinct_pairs", "distinct_submitters"]
VOTE_COLUMNS = ["votes", "upvotes", "downvotes"]


def origin_digest(origin_fingerprint: str) -> str:
    """Stable, non-reversible label for an origin fingerprint."""
    return hashlib.sha256(origin_fingerprint.encode("utf-8")).hexdigest()[:16]


class AbuseMonitor:
    """Builds per-origin activity reports from the submissions and votes tables."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def build_report(
        self,
        window_hours: int = 24,
        threshold: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AbuseReportResponse:
        """
        Per-origin activity over the last ``window_hours``.

        An origin is flagged when its submissions or its votes in the
        window reach ``threshold``.
        """
        now = ensure_utc(now) or utcnow()
        threshold = threshold if threshold is not None else self.settings.abuse_report_threshold
        since = now - timedelta(hours=window_hours)

        submissions_df = self._submissions_dataframe(since)
        votes_df = self._votes_dataframe(since)

        activity = self._submission_stats(submissions_df).join(
            self._vote_stats(votes_df), how="outer"
        )
        activity = activity.reindex(columns=SUBMISSION_COLUMNS + VOTE_COLUMNS).fillna(0).astype(int)
        activity["flagged"] = (activity["submissions"] >= threshold) | (activity["votes"] >= threshold)
        activity = activity.sort_values(["submissions", "votes"], ascending=False)

        origins = [
            OriginActivity(
                origin_digest=origin_digest(str(origin)),
                submissions=int(row["submissions"]),
                distinct_pairs=int(row["distinct_pairs"]),
                distinct_submitters=int(row["distinct_submitters"]),
                votes=int(row["votes"]),
                upvotes=int(row["upvotes"]),
                downvotes=int(row["downvotes"]),
                flagged=bool(row["flagged"]),
            )
            for origin, row in activity.iterrows()
        ]
        flagged_count = sum(1 for o in origins if o.flagged)

        if flagged_count:
            logger.warning(
                f"Abuse report: {flagged_count} origin(s) at or above {threshold} "
                f"actions in the last {window_hours}h"
            )
        else:
            logger.info(f"Abuse report: {len(origins)} active origin(s), none flagged")

        return AbuseReportResponse(
            window_hours=window_hours,
            threshold=threshold,
            origins=origins,
            flagged_count=flagged_count,
            generated_at=now,
        )

    def _submissions_dataframe(self, since: datetime) -> pd.DataFrame:
        rows = self.db.execute(
            select(
                Submission.origin_fingerprint,
                Submission.subject_id,
                Submission.claim_id,
                Submission.submitted_by,
            ).where(Submission.created_at >= since)
        ).all()
        return pd.DataFrame(
            [tuple(r) for r in rows],
            columns=["origin", "subject_id", "claim_id", "submitted_by"],
        )

    def _votes_dataframe(self, since: datetime) -> pd.DataFrame:
        rows = self.db.execute(
            select(Vote.origin_fingerprint, Vote.direction).where(Vote.updated_at >= since)
        ).all()
        return pd.DataFrame([tuple(r) for r in rows], columns=["origin", "direction"])

    def _submission_stats(self, submissions_df: pd.DataFrame) -> pd.DataFrame:
        if submissions_df.empty:
            return pd.DataFrame(columns=SUBMISSION_COLUMNS, index=pd.Index([], name="origin"))

        submissions_df = submissions_df.assign(
            pair=submissions_df["subject_id"] + "/" + submissions_df["claim_id"]
        )
        return submissions_df.groupby("origin").agg(
            submissions=("pair", "size"),
            distinct_pairs=("pair", "nunique"),
            distinct_submitters=("submitted_by", "nunique"),
        )

    def _vote_stats(self, votes_df: pd.DataFrame) -> pd.DataFrame:
        if votes_df.empty:
            return pd.DataFrame(columns=VOTE_COLUMNS, index=pd.Index([], name="origin"))

        votes_df = votes_df.assign(
            is_up=(votes_df["direction"] == VoteDirection.UP.value).astype(int),
            is_down=(votes_df["direction"] == VoteDirection.DOWN.value).astype(int),
        )
        return votes_df.groupby("origin").agg(
            votes=("direction", "size"),
            upvotes=("is_up", "sum"),
            downvotes=("is_down", "sum"),
        )
