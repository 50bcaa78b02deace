"""
Database models and session management for the consensus service.

Uses SQLAlchemy with SQLite for local runs.
PostgreSQL is expected in production, where ``SELECT ... FOR UPDATE``
provides the per-pair row locking the aggregator relies on.
"""

from datetime import datetime, UTC
from typing import Optional, List

from sqlalchemy import (
    Integer, String, Text, DateTime, Boolean, Float, ForeignKey, Index,
    UniqueConstraint, create_engine, event, JSON
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase, relationship, sessionmaker, Mapped, mapped_column
)

from consensus_api.config import get_settings
from consensus_api.models import AcceptanceStatus, ConfidenceLevel, DataSource, FreshnessCategory


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# =============================================================================
# Database Setup
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def get_engine(database_url: Optional[str] = None):
    """Create database engine."""
    settings = get_settings()
    url = database_url or settings.database_url
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=not url.startswith("sqlite"),
        echo=settings.debug
    )


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = get_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


# =============================================================================
# Catalog reference tables (populated by the import pipeline)
# =============================================================================


class Subject(Base):
    """A provider known to the catalog."""

    __tablename__ = "subjects"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    # Free-text specialty, used to pick a freshness threshold
    category: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class Claim(Base):
    """An insurance plan known to the catalog."""

    __tablename__ = "claims"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")


# =============================================================================
# Consensus Models
# =============================================================================


class Submission(Base):
    """
    One user's claim about one (subject, claim) pair.

    Never mutated after creation except for vote counters; removed by the
    expiration sweeper once ``expires_at`` has passed.
    """

    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    subject_id: Mapped[str] = mapped_column(String(50), nullable=False)
    claim_id: Mapped[str] = mapped_column(String(50), nullable=False)

    claimed_value: Mapped[bool] = mapped_column(Boolean, nullable=False)
    data_source: Mapped[str] = mapped_column(
        String(30), default=DataSource.CROWDSOURCE.value, nullable=False
    )

    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Identifying fields; never returned by the API
    origin_fingerprint: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Vote counts (denormalized, kept in step with the votes table)
    upvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    downvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Moderation: None = not reviewed, False = excluded from scoring
    is_approved: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    votes: Mapped[List["Vote"]] = relationship(
        "Vote", back_populates="submission", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index('ix_submissions_pair', 'subject_id', 'claim_id'),
        Index('ix_submissions_origin_created', 'origin_fingerprint', 'created_at'),
        Index('ix_submissions_submitter_created', 'submitted_by', 'created_at'),
        Index('ix_submissions_expires_at', 'expires_at'),
    )


class Vote(Base):
    """One origin's up/down opinion on one submission."""

    __tablename__ = "votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    submission_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("submissions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    origin_fingerprint: Mapped[str] = mapped_column(String(100), index=True, nullable=False)

    direction: Mapped[str] = mapped_column(String(10), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    submission: Mapped["Submission"] = relationship("Submission", back_populates="votes")

    __table_args__ = (
        # Each origin can only vote on a submission once
        UniqueConstraint('submission_id', 'origin_fingerprint', name='uq_vote_submission_origin'),
    )


class Aggregate(Base):
    """
    The externally visible consensus record for a (subject, claim) pair.

    Every scoring column is a cache of the confidence scorer run over the
    pair's current submissions; it is rewritten in the same transaction as
    each submission or vote that touches the pair.
    """

    __tablename__ = "aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    subject_id: Mapped[str] = mapped_column(String(50), nullable=False)
    claim_id: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=AcceptanceStatus.UNKNOWN.value, index=True, nullable=False
    )

    confidence_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    confidence_level: Mapped[str] = mapped_column(
        String(20), default=ConfidenceLevel.VERY_LOW.value, nullable=False
    )
    confidence_factors: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    data_source: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    freshness_threshold: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    freshness_category: Mapped[str] = mapped_column(
        String(20), default=FreshnessCategory.OTHER.value, nullable=False
    )

    verification_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accept_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reject_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint('subject_id', 'claim_id', name='uq_aggregate_pair'),
        Index('ix_aggregates_expires_at', 'expires_at'),
    )


class MaintenanceRun(Base):
    """
    Log of sweeper and score-recalculation runs.

    Tracks when maintenance was performed and results for monitoring.
    """

    __tablename__ = "maintenance_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    job: Mapped[str] = mapped_column(String(30), index=True, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Results
    processed: Mapped[int] = mapped_column(Integer, default=0)
    deleted: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)

    # Performance
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Errors
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    config_snapshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
