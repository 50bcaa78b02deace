"""Tests for the expiration sweeper."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from consensus_api.database import Aggregate, MaintenanceRun, Submission, Vote
from consensus_api.models import AcceptanceStatus, VoteDirection
from consensus_api.sweeper import ExpirationSweeper
from consensus_api.verification_service import VerificationService
from tests.conftest import GENERALIST, HOSPITALIST, NOW, PLAN_A, PLAN_B, PSYCHIATRIST


OLD = NOW - timedelta(days=190)


def aggregate_for(db, subject_id, claim_id):
    db.expire_all()
    return db.execute(
        select(Aggregate).where(Aggregate.subject_id == subject_id, Aggregate.claim_id == claim_id)
    ).scalar_one()


@pytest.fixture
def seeded(db, settings):
    """
    Pair A: three accepting submissions, all expired by NOW, one with a vote.
    Pair B: two expired submissions and one fresh one.
    """
    service = VerificationService(db, settings)
    a_ids = [
        service.submit_verification(PSYCHIATRIST, PLAN_A, True, origin, now=OLD).submission.id
        for origin in ("a1", "a2", "a3")
    ]
    service.vote_on_submission(a_ids[0], VoteDirection.UP, "voter", now=OLD + timedelta(days=1))
    for origin in ("b1", "b2"):
        service.submit_verification(GENERALIST, PLAN_B, False, origin, now=OLD)
    service.submit_verification(GENERALIST, PLAN_B, False, "b3", now=NOW - timedelta(days=1))

    assert aggregate_for(db, PSYCHIATRIST, PLAN_A).status == AcceptanceStatus.ACCEPTED.value
    return a_ids


class TestSweep:

    def test_deletes_expired_and_recomputes_pairs(self, db, settings, seeded):
        result = ExpirationSweeper(db, settings).run(now=NOW)

        assert result.success
        assert result.expired_submissions == 5
        assert result.expired_aggregates == 1
        assert result.deleted_submissions == 5
        assert result.deleted_votes == 1
        assert result.aggregates_recomputed == 2

        assert db.query(Submission).count() == 1
        assert db.query(Vote).count() == 0

        pair_a = aggregate_for(db, PSYCHIATRIST, PLAN_A)
        assert pair_a.status == AcceptanceStatus.UNKNOWN.value
        assert pair_a.verification_count == 0
        assert pair_a.last_verified_at is None

        pair_b = aggregate_for(db, GENERALIST, PLAN_B)
        assert pair_b.status == AcceptanceStatus.PENDING.value
        assert pair_b.verification_count == 1

    def test_rerun_is_a_no_op(self, db, settings, seeded):
        sweeper = ExpirationSweeper(db, settings)
        sweeper.run(now=NOW)

        second = sweeper.run(now=NOW)

        assert second.expired_submissions == 0
        assert second.deleted_submissions == 0
        assert second.aggregates_recomputed == 0
        assert second.batches == 0

    def test_dry_run_only_counts(self, db, settings, seeded):
        result = ExpirationSweeper(db, settings).run(dry_run=True, now=NOW)

        assert result.dry_run
        assert result.expired_submissions == 5
        assert result.deleted_submissions == 0
        assert db.query(Submission).count() == 6
        assert aggregate_for(db, PSYCHIATRIST, PLAN_A).status == AcceptanceStatus.ACCEPTED.value

    def test_small_batches_each_commit(self, db, settings, seeded):
        result = ExpirationSweeper(db, settings).run(batch_size=2, now=NOW)

        assert result.batches == 3
        assert result.deleted_submissions == 5
        assert aggregate_for(db, PSYCHIATRIST, PLAN_A).status == AcceptanceStatus.UNKNOWN.value

    def test_interrupted_sweep_keeps_finished_batches_and_resumes(self, db, settings, seeded):
        sweeper = ExpirationSweeper(db, settings)
        original = sweeper.aggregator.recompute
        calls = []

        def fail_on_second_batch(subject_id, claim_id, now=None):
            calls.append((subject_id, claim_id))
            if len(calls) == 2:
                raise RuntimeError("connection lost")
            return original(subject_id, claim_id, now)

        sweeper.aggregator.recompute = fail_on_second_batch
        with pytest.raises(RuntimeError):
            sweeper.run(batch_size=2, now=NOW)

        # First batch (two of pair A's submissions and their vote) stayed committed
        assert db.query(Submission).count() == 4
        assert db.query(Vote).count() == 0
        pair_a = aggregate_for(db, PSYCHIATRIST, PLAN_A)
        assert pair_a.verification_count == 0
        assert pair_a.status == AcceptanceStatus.UNKNOWN.value
        assert db.query(Submission).filter(Submission.subject_id == GENERALIST).count() == 3

        failed = db.query(MaintenanceRun).one()
        assert failed.success is False
        assert failed.deleted == 2
        assert failed.error_message == "connection lost"

        sweeper.aggregator.recompute = original
        result = sweeper.run(batch_size=2, now=NOW)

        assert result.success
        assert result.deleted_submissions == 3
        assert db.query(Submission).count() == 1
        assert aggregate_for(db, PSYCHIATRIST, PLAN_A).status == AcceptanceStatus.UNKNOWN.value
        pair_b = aggregate_for(db, GENERALIST, PLAN_B)
        assert pair_b.status == AcceptanceStatus.PENDING.value
        assert pair_b.verification_count == 1

    def test_nothing_expires_before_its_time(self, db, settings, seeded):
        result = ExpirationSweeper(db, settings).run(now=OLD + timedelta(days=2))

        assert result.deleted_submissions == 0
        assert db.query(Submission).count() == 6

    def test_run_is_logged(self, db, settings, seeded):
        ExpirationSweeper(db, settings).run(now=NOW)

        run = db.query(MaintenanceRun).one()
        assert run.job == "sweep"
        assert run.success is True
        assert run.deleted == 5
        assert run.completed_at is not None
        assert run.dry_run is False


class TestStaleAggregates:

    def test_expired_aggregate_without_submissions_is_reset(self, db, settings):
        db.add(Aggregate(
            subject_id=HOSPITALIST,
            claim_id=PLAN_A,
            status=AcceptanceStatus.PENDING.value,
            confidence_score=40,
            verification_count=2,
            accept_count=2,
            reject_count=0,
            expires_at=NOW - timedelta(days=1),
        ))
        db.commit()

        result = ExpirationSweeper(db, settings).run(now=NOW)

        assert result.expired_aggregates == 1
        assert result.aggregates_recomputed == 1
        aggregate = aggregate_for(db, HOSPITALIST, PLAN_A)
        assert aggregate.status == AcceptanceStatus.UNKNOWN.value
        assert aggregate.verification_count == 0

    def test_moderated_out_pair_is_reset(self, db, settings, make_submission):
        make_submission(HOSPITALIST, PLAN_B, origin="x", is_approved=False)
        db.add(Aggregate(
            subject_id=HOSPITALIST,
            claim_id=PLAN_B,
            status=AcceptanceStatus.PENDING.value,
            verification_count=1,
            accept_count=1,
            expires_at=NOW,
        ))
        db.commit()

        ExpirationSweeper(db, settings).run(now=NOW)

        assert aggregate_for(db, HOSPITALIST, PLAN_B).status == AcceptanceStatus.UNKNOWN.value
        assert db.query(Submission).count() == 1


class TestExpirationStats:

    def test_ttl_counts(self, db, settings, seeded, make_submission):
        make_submission(HOSPITALIST, PLAN_A, origin="soon", created_at=NOW - timedelta(days=175))

        stats = ExpirationSweeper(db, settings).expiration_stats(now=NOW)

        assert stats.submissions.total == 7
        assert stats.submissions.with_ttl == 7
        assert stats.submissions.expired == 5
        assert stats.submissions.expiring_within_7_days == 1
        assert stats.submissions.expiring_within_30_days == 1
        assert stats.aggregates.total == 2
        assert stats.aggregates.expired == 1
