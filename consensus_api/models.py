"""
Pydantic models for consensus API requests and responses.

Response models never carry origin fingerprints or submitter identifiers.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class DataSource(str, Enum):
    """Where a piece of acceptance data came from."""
    CMS_NPPES = "CMS_NPPES"                # Official registry data
    CMS_PLAN_FINDER = "CMS_PLAN_FINDER"    # Official registry data
    CMS_DATA = "CMS_DATA"                  # Legacy registry label
    CARRIER_API = "CARRIER_API"            # Insurance carrier data
    CARRIER_DATA = "CARRIER_DATA"          # Legacy carrier label
    PROVIDER_PORTAL = "PROVIDER_PORTAL"    # Provider-confirmed
    USER_UPLOAD = "USER_UPLOAD"
    PHONE_CALL = "PHONE_CALL"
    CROWDSOURCE = "CROWDSOURCE"
    AUTOMATED = "AUTOMATED"                # Inferred, no human in the loop


class AcceptanceStatus(str, Enum):
    """Consensus status of a (subject, claim) pair."""
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class ConfidenceLevel(str, Enum):
    VERY_HIGH = "VERY_HIGH"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


class FreshnessCategory(str, Enum):
    """Subject categories with distinct data-churn rates."""
    MENTAL_HEALTH = "MENTAL_HEALTH"
    PRIMARY_CARE = "PRIMARY_CARE"
    SPECIALIST = "SPECIALIST"
    HOSPITAL_BASED = "HOSPITAL_BASED"
    OTHER = "OTHER"


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"


# =============================================================================
# Request Models
# =============================================================================


class SubmitVerificationRequest(BaseModel):
    """Request to submit a verification for a (subject, claim) pair."""

    subject_id: str = Field(..., min_length=1, max_length=50, description="Provider identifier")
    claim_id: str = Field(..., min_length=1, max_length=50, description="Insurance plan identifier")

    accepts: bool = Field(..., description="Does the provider accept this plan?")

    note: Optional[str] = Field(default=None, max_length=1000)
    evidence_url: Optional[str] = Field(default=None, max_length=500)
    submitted_by: Optional[EmailStr] = Field(
        default=None,
        description="Optional contact email of the submitter"
    )

    challenge_token: Optional[str] = Field(default=None, max_length=4096)

    # Hidden form field; humans leave it empty
    website: Optional[str] = Field(default=None, max_length=500)

    @field_validator('evidence_url')
    @classmethod
    def validate_evidence_url(cls, v):
        """Ensure evidence is a web URL."""
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError(f'Invalid URL: {v}')
        return v

    @field_validator('submitted_by')
    @classmethod
    def validate_submitted_by(cls, v):
        if v is not None and len(v) > 200:
            raise ValueError('Email must be at most 200 characters')
        return v.lower() if v is not None else v


class VoteRequest(BaseModel):
    """Request to vote on a verification."""

    direction: VoteDirection = Field(..., description="up or down")
    challenge_token: Optional[str] = Field(default=None, max_length=4096)


class TriggerSweepRequest(BaseModel):
    """Request to manually run the expiration sweeper (admin only)."""

    dry_run: bool = Field(default=False, description="Count expired rows without deleting")
    batch_size: Optional[int] = Field(default=None, ge=1, le=10000)


class TriggerRecalculationRequest(BaseModel):
    """Request to manually recalculate cached confidence scores (admin only)."""

    dry_run: bool = False
    limit: Optional[int] = Field(default=None, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)


# =============================================================================
# Response Models
# =============================================================================


class ConfidenceFactorsResponse(BaseModel):
    data_source_score: int
    recency_score: int
    verification_score: int
    agreement_score: int


class ConfidenceMetadataResponse(BaseModel):
    days_since_verification: Optional[int] = None
    days_until_stale: int
    is_stale: bool
    recommend_re_verification: bool
    freshness_threshold: int
    freshness_category: FreshnessCategory
    explanation: str
    freshness_note: str


class AggregateResponse(BaseModel):
    """Consensus record for a (subject, claim) pair."""

    subject_id: str
    claim_id: str

    status: AcceptanceStatus
    confidence_score: int
    confidence_level: ConfidenceLevel
    confidence_description: str

    verification_count: int = 0
    accept_count: int = 0
    reject_count: int = 0

    last_verified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False

    factors: ConfidenceFactorsResponse
    metadata: ConfidenceMetadataResponse


class SubmissionResponse(BaseModel):
    """A single verification, with identifying fields removed."""

    id: int
    subject_id: str
    claim_id: str
    accepts: bool
    data_source: DataSource

    note: Optional[str] = None
    evidence_url: Optional[str] = None

    upvotes: int = 0
    downvotes: int = 0
    is_approved: Optional[bool] = None

    created_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class SubmitVerificationResponse(BaseModel):
    submission: SubmissionResponse
    aggregate: AggregateResponse
    message: str = "Verification submitted successfully"


class VoteTallyResponse(BaseModel):
    submission_id: int
    direction: VoteDirection
    upvotes: int
    downvotes: int
    net_votes: int
    vote_changed: bool = False


class VoteResponse(BaseModel):
    vote: VoteTallyResponse
    aggregate: AggregateResponse
    message: str


class PairSummary(BaseModel):
    total_submissions: int
    total_upvotes: int
    total_downvotes: int


class PairVerificationsResponse(BaseModel):
    """Aggregate plus the recent submissions behind it."""

    subject_id: str
    claim_id: str
    aggregate: Optional[AggregateResponse] = None
    submissions: List[SubmissionResponse]
    summary: PairSummary


class RecentVerificationsResponse(BaseModel):
    submissions: List[SubmissionResponse]
    count: int


class VerificationStatsResponse(BaseModel):
    total: int
    approved: int
    pending_review: int
    by_source: Dict[str, int]
    by_status: Dict[str, int]
    recent_count: int


class SweepResultResponse(BaseModel):
    success: bool
    dry_run: bool
    expired_submissions: int
    expired_aggregates: int
    deleted_submissions: int
    deleted_votes: int
    aggregates_recomputed: int
    batches: int
    duration_seconds: float
    completed_at: datetime


class RecalculationResultResponse(BaseModel):
    success: bool
    dry_run: bool
    processed: int
    updated: int
    unchanged: int
    errors: int
    duration_seconds: float
    completed_at: datetime


class TTLStats(BaseModel):
    total: int
    with_ttl: int
    expired: int
    expiring_within_7_days: int
    expiring_within_30_days: int


class ExpirationStatsResponse(BaseModel):
    submissions: TTLStats
    aggregates: TTLStats


class OriginActivity(BaseModel):
    origin_digest: str
    submissions: int = 0
    distinct_pairs: int = 0
    distinct_submitters: int = 0
    votes: int = 0
    upvotes: int = 0
    downvotes: int = 0
    flagged: bool = False


class AbuseReportResponse(BaseModel):
    window_hours: int
    threshold: int
    origins: List[OriginActivity]
    flagged_count: int
    generated_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    database_connected: bool
    last_maintenance_run: Optional[datetime] = None
    submissions_count: int = 0
    votes_count: int = 0
    aggregates_count: int = 0
