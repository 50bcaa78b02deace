"""Test configuration and common fixtures."""

import os

# Must be set before the package creates its module-level engine
os.environ.setdefault("CV_DATABASE_URL", "sqlite://")
os.environ.setdefault("CV_ENVIRONMENT", "test")

from datetime import datetime, timedelta, UTC
from typing import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from consensus_api.app import app
from consensus_api.captcha import BotChallengeGate
from consensus_api.config import Settings
from consensus_api.database import Base, Claim, Subject, Submission, Vote, get_db
from consensus_api.dependencies import (
    get_challenge_gate, get_origin_fingerprint, get_rate_limiters
)
from consensus_api.rate_limiter import (
    CHALLENGE_FALLBACK_SCOPE, MemoryRateLimitStore, RateLimiterRegistry
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

PSYCHIATRIST = "1234567890"
HOSPITALIST = "2222222222"
GENERALIST = "3333333333"
PLAN_A = "PLAN-A"
PLAN_B = "PLAN-B"


class FakeClock:
    """Manually advanced clock for the rate limiter."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session in a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Session with the catalog reference rows seeded."""
    session = session_factory()
    session.add_all([
        Subject(id=PSYCHIATRIST, name="Dr. Ada Mind", category="Psychiatry"),
        Subject(id=HOSPITALIST, name="Dr. Ben Ward", category="Hospital Medicine"),
        Subject(id=GENERALIST, name="Dr. Cy Plain", category=None),
        Claim(id=PLAN_A, name="Acme Gold PPO"),
        Claim(id=PLAN_B, name="Acme Silver HMO"),
    ])
    session.commit()
    yield session
    session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test", database_url="sqlite://")


@pytest.fixture
def make_submission(db):
    """Insert a submission row directly, bypassing the service."""

    def _make(
        subject_id: str = PSYCHIATRIST,
        claim_id: str = PLAN_A,
        origin: str = "10.0.0.1",
        accepts: bool = True,
        created_at: datetime = NOW,
        ttl_days: int = 180,
        **fields,
    ) -> Submission:
        submission = Submission(
            subject_id=subject_id,
            claim_id=claim_id,
            claimed_value=accepts,
            origin_fingerprint=origin,
            created_at=created_at,
            expires_at=created_at + timedelta(days=ttl_days),
            upvotes=fields.pop("upvotes", 0),
            downvotes=fields.pop("downvotes", 0),
            **fields,
        )
        db.add(submission)
        db.commit()
        return submission

    return _make


@pytest.fixture
def make_vote(db):
    def _make(submission: Submission, origin: str, direction: str = "up", at: datetime = NOW) -> Vote:
        vote = Vote(
            submission_id=submission.id,
            origin_fingerprint=origin,
            direction=direction,
            created_at=at,
            updated_at=at,
        )
        db.add(vote)
        db.commit()
        return vote

    return _make


def _test_origin(request: Request) -> str:
    """Lets a test pick the origin fingerprint through a header."""
    return request.headers.get("x-test-origin", "testclient")


@pytest.fixture
def rate_limiters() -> RateLimiterRegistry:
    return RateLimiterRegistry(MemoryRateLimitStore(), settings=Settings(environment="test"))


@pytest.fixture
def client(db, session_factory, rate_limiters) -> Generator[TestClient, None, None]:
    """API client on the in-memory database, with the challenge gate disabled (test env)."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    gate = BotChallengeGate(
        rate_limiters.get(CHALLENGE_FALLBACK_SCOPE), settings=Settings(environment="test")
    )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_limiters] = lambda: rate_limiters
    app.dependency_overrides[get_challenge_gate] = lambda: gate
    app.dependency_overrides[get_origin_fingerprint] = _test_origin

    yield TestClient(app)

    app.dependency_overrides.clear()
