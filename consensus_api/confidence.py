"""
Confidence scoring for provider/plan acceptance data.

The score (0-100) is the sum of four independently bounded components:

- data source      0-25  how authoritative the newest contribution is
- recency          0-30  tiered decay against a category freshness threshold
- verifications    0-25  number of contributing submissions, saturating at 3
- agreement        0-20  community upvote ratio across the pair's submissions

Everything here is a pure function of its inputs. Missing data maps to
documented defaults (unknown source -> 10, never verified -> 0 recency)
so scoring never raises.
"""

import math
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Iterable, Optional

from consensus_api.database import ensure_utc, utcnow
from consensus_api.models import ConfidenceLevel, FreshnessCategory


# Component bounds
MAX_DATA_SOURCE_SCORE = 25
MAX_RECENCY_SCORE = 30
MAX_VERIFICATION_SCORE = 25
MAX_AGREEMENT_SCORE = 20
MAX_SCORE = 100

# Three independent submissions are the corroboration threshold; below it
# the level is capped at MEDIUM.
MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE = 3

DEFAULT_DATA_SOURCE_SCORE = 10

DATA_SOURCE_SCORES = {
    "CMS_NPPES": 25,
    "CMS_PLAN_FINDER": 25,
    "CMS_DATA": 25,
    "CARRIER_API": 20,
    "CARRIER_DATA": 20,
    "PROVIDER_PORTAL": 20,
    "USER_UPLOAD": 15,
    "PHONE_CALL": 15,
    "CROWDSOURCE": 15,
    "AUTOMATED": 10,
}

# Days after which data for a category is considered stale
FRESHNESS_THRESHOLDS = {
    FreshnessCategory.MENTAL_HEALTH: 30,
    FreshnessCategory.PRIMARY_CARE: 60,
    FreshnessCategory.SPECIALIST: 60,
    FreshnessCategory.HOSPITAL_BASED: 90,
    FreshnessCategory.OTHER: 60,
}

# Past this many days recency is always worth nothing
MAX_RECENCY_DAYS = 180

# Past this fraction of the threshold we ask for a re-verification
RE_VERIFICATION_FRACTION = 0.8

_CATEGORY_KEYWORDS = (
    (FreshnessCategory.MENTAL_HEALTH, (
        "psychiatr", "psycholog", "mental health", "behavioral health",
        "counselor", "therapist",
    )),
    (FreshnessCategory.PRIMARY_CARE, (
        "family medicine", "family practice", "internal medicine",
        "general practice", "primary care",
    )),
    (FreshnessCategory.HOSPITAL_BASED, (
        "hospital", "radiology", "anesthesiology", "pathology",
        "emergency medicine",
    )),
)

FRESHNESS_NOTES = {
    FreshnessCategory.MENTAL_HEALTH:
        "Mental health providers change networks often; their data goes stale quickly.",
    FreshnessCategory.PRIMARY_CARE:
        "Primary care network participation turns over steadily year to year.",
    FreshnessCategory.SPECIALIST:
        "Specialist network participation changes regularly.",
    FreshnessCategory.HOSPITAL_BASED:
        "Hospital-based providers typically keep stable network participation.",
    FreshnessCategory.OTHER:
        "Network participation changes over time; re-verify periodically.",
}

LEVEL_DESCRIPTIONS = {
    ConfidenceLevel.VERY_HIGH: "Verified through multiple authoritative sources.",
    ConfidenceLevel.HIGH: "Verified through authoritative sources or multiple community verifications.",
    ConfidenceLevel.MEDIUM: "Some verification exists, but may need confirmation.",
    ConfidenceLevel.LOW: "Limited verification data. Call the provider to confirm before visiting.",
    ConfidenceLevel.VERY_LOW: "Unverified or potentially inaccurate. Always call to confirm.",
}


@dataclass
class ConfidenceInput:
    """Everything the scorer needs about one (subject, claim) pair."""
    data_source: Optional[str]
    last_verified_at: Optional[datetime]
    verification_count: int
    upvotes: int
    downvotes: int
    subject_category: Optional[str] = None


@dataclass
class ConfidenceFactors:
    data_source_score: int
    recency_score: int
    verification_score: int
    agreement_score: int

    @property
    def total(self) -> int:
        return (
            self.data_source_score
            + self.recency_score
            + self.verification_score
            + self.agreement_score
        )

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConfidenceMetadata:
    days_since_verification: Optional[int]
    days_until_stale: int
    is_stale: bool
    recommend_re_verification: bool
    freshness_threshold: int
    freshness_category: FreshnessCategory
    explanation: str
    freshness_note: str


@dataclass
class ConfidenceResult:
    score: int
    level: ConfidenceLevel
    description: str
    factors: ConfidenceFactors
    metadata: ConfidenceMetadata


# =============================================================================
# Components
# =============================================================================


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def get_freshness_category(category_text: Optional[str]) -> FreshnessCategory:
    """Map a free-text subject category (e.g. a specialty) to a freshness category."""
    if not category_text or not category_text.strip():
        return FreshnessCategory.OTHER

    text = category_text.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return FreshnessCategory.SPECIALIST


def get_freshness_threshold(category_text: Optional[str]) -> int:
    return FRESHNESS_THRESHOLDS[get_freshness_category(category_text)]


def days_since(timestamp: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole days elapsed since ``timestamp``; None if never. Future times count as 0."""
    if timestamp is None:
        return None
    now = ensure_utc(now) or utcnow()
    elapsed = (now - ensure_utc(timestamp)).total_seconds()
    return max(0, math.floor(elapsed / 86400))


def calculate_data_source_score(source: Optional[str]) -> int:
    """Data source score (0-25). Unknown or missing sources score 10."""
    if not source:
        return DEFAULT_DATA_SOURCE_SCORE
    key = getattr(source, "value", source)
    score = DATA_SOURCE_SCORES.get(key, DEFAULT_DATA_SOURCE_SCORE)
    return _clamp(score, 0, MAX_DATA_SOURCE_SCORE)


def calculate_recency_score(days: Optional[int], freshness_threshold: int) -> int:
    """
    Recency score (0-30), tiered relative to the freshness threshold T.

    - d <= min(30, T/2)   -> 30
    - d <= T              -> 20
    - d <= 1.5 T          -> 10
    - d <= 180            -> 5
    - older, or never     -> 0
    """
    if days is None:
        return 0

    tier1 = min(30, freshness_threshold * 0.5)
    tier2 = freshness_threshold
    tier3 = freshness_threshold * 1.5

    if days <= tier1:
        return 30
    if days <= tier2:
        return 20
    if days <= tier3:
        return 10
    if days <= MAX_RECENCY_DAYS:
        return 5
    return 0


def calculate_verification_score(verification_count: int) -> int:
    """
    Verification count score (0-25).

    One submission may be an outlier, two are close, three independent
    corroborations saturate the component so flooding buys nothing more.
    """
    if verification_count <= 0:
        return 0
    if verification_count == 1:
        return 10
    if verification_count == 2:
        return 15
    return MAX_VERIFICATION_SCORE


def calculate_agreement_score(upvotes: int, downvotes: int) -> int:
    """
    Agreement score (0-20) from the upvote ratio r.

    r = 100% -> 20, [80%, 100%) -> 15, [60%, 80%) -> 10, [40%, 60%) -> 5,
    below 40% -> 0. No votes at all -> 0. An even split lands in the 5
    point band.
    """
    upvotes = max(0, upvotes)
    downvotes = max(0, downvotes)
    total = upvotes + downvotes
    if total == 0:
        return 0

    ratio = upvotes / total
    if ratio == 1.0:
        return 20
    if ratio >= 0.8:
        return 15
    if ratio >= 0.6:
        return 10
    if ratio >= 0.4:
        return 5
    return 0


# =============================================================================
# Levels
# =============================================================================


def get_confidence_level(score: int, verification_count: int) -> ConfidenceLevel:
    """
    Map a raw score to a level.

    With one or two verifications the level never exceeds MEDIUM, whatever
    the raw score: a single well-sourced claim is not yet corroborated.
    """
    if 0 < verification_count < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        if score >= 51:
            return ConfidenceLevel.MEDIUM
        if score >= 26:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.VERY_LOW

    if score >= 91:
        return ConfidenceLevel.VERY_HIGH
    if score >= 76:
        return ConfidenceLevel.HIGH
    if score >= 51:
        return ConfidenceLevel.MEDIUM
    if score >= 26:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


def get_level_description(level: ConfidenceLevel, verification_count: int) -> str:
    description = LEVEL_DESCRIPTIONS.get(ConfidenceLevel(level), "Unknown confidence level")
    if verification_count < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        missing = MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE - max(0, verification_count)
        description += f" {missing} more verification(s) needed for full confidence."
    return description


# =============================================================================
# Explanation & metadata
# =============================================================================


def _describe_source(points: int) -> str:
    if points >= 25:
        return "official registry data"
    if points >= 20:
        return "insurance carrier or provider-confirmed data"
    if points >= 15:
        return "community submissions"
    return "limited authoritative data"


def _describe_recency(points: int, days: Optional[int], freshness_threshold: int) -> str:
    if days is None:
        return "never verified"
    if points == 30:
        return f"verified within {int(min(30, freshness_threshold * 0.5))} days"
    if points == 20:
        return f"recent verification ({days} days ago)"
    if points == 10:
        return f"aging data ({days} days old)"
    if points == 5:
        return f"stale data ({days} days old)"
    return f"very stale data ({days} days old), needs re-verification"


def _describe_count(count: int) -> str:
    if count <= 0:
        return "no verifications yet"
    if count < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        missing = MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE - count
        return f"{count} verification(s), {missing} more needed for corroboration"
    return f"{count} verifications (corroborated)"


def _describe_agreement(points: int, upvotes: int, downvotes: int) -> str:
    if upvotes + downvotes <= 0:
        return "no community votes yet"
    return {
        20: "complete community agreement",
        15: "strong community agreement",
        10: "moderate community agreement",
        5: "weak community agreement",
    }.get(points, "conflicting community votes")


def explain_score(
    score: int,
    factors: ConfidenceFactors,
    verification_count: int,
    days: Optional[int],
    freshness_threshold: int,
    upvotes: int = 0,
    downvotes: int = 0,
) -> str:
    """Human-readable breakdown listing each component's contribution."""
    parts = [
        f"data source +{factors.data_source_score}/{MAX_DATA_SOURCE_SCORE} "
        f"({_describe_source(factors.data_source_score)})",
        f"recency +{factors.recency_score}/{MAX_RECENCY_SCORE} "
        f"({_describe_recency(factors.recency_score, days, freshness_threshold)})",
        f"verifications +{factors.verification_score}/{MAX_VERIFICATION_SCORE} "
        f"({_describe_count(verification_count)})",
        f"community agreement +{factors.agreement_score}/{MAX_AGREEMENT_SCORE} "
        f"({_describe_agreement(factors.agreement_score, upvotes, downvotes)})",
    ]
    return f"This {score}% confidence score is based on: {', '.join(parts)}."


def build_metadata(
    days: Optional[int],
    freshness_threshold: int,
    category: FreshnessCategory,
    explanation: str,
) -> ConfidenceMetadata:
    is_stale = days is not None and days > freshness_threshold
    days_until_stale = (
        max(0, freshness_threshold - days) if days is not None else freshness_threshold
    )
    recommend = (
        is_stale
        or days is None
        or days > freshness_threshold * RE_VERIFICATION_FRACTION
    )
    return ConfidenceMetadata(
        days_since_verification=days,
        days_until_stale=days_until_stale,
        is_stale=is_stale,
        recommend_re_verification=recommend,
        freshness_threshold=freshness_threshold,
        freshness_category=category,
        explanation=explanation,
        freshness_note=FRESHNESS_NOTES[category],
    )


# =============================================================================
# Entry points
# =============================================================================


def calculate_confidence(
    confidence_input: ConfidenceInput,
    now: Optional[datetime] = None,
) -> ConfidenceResult:
    """Score one pair. Total over its inputs; never raises for missing data."""
    category = get_freshness_category(confidence_input.subject_category)
    freshness_threshold = FRESHNESS_THRESHOLDS[category]
    count = max(0, confidence_input.verification_count or 0)
    upvotes = max(0, confidence_input.upvotes or 0)
    downvotes = max(0, confidence_input.downvotes or 0)
    days = days_since(confidence_input.last_verified_at, now)

    factors = ConfidenceFactors(
        data_source_score=_clamp(
            calculate_data_source_score(confidence_input.data_source), 0, MAX_DATA_SOURCE_SCORE
        ),
        recency_score=_clamp(
            calculate_recency_score(days, freshness_threshold), 0, MAX_RECENCY_SCORE
        ),
        verification_score=_clamp(
            calculate_verification_score(count), 0, MAX_VERIFICATION_SCORE
        ),
        agreement_score=_clamp(
            calculate_agreement_score(upvotes, downvotes), 0, MAX_AGREEMENT_SCORE
        ),
    )
    score = _clamp(factors.total, 0, MAX_SCORE)
    level = get_confidence_level(score, count)

    explanation = explain_score(
        score, factors, count, days, freshness_threshold, upvotes, downvotes
    )

    return ConfidenceResult(
        score=score,
        level=level,
        description=get_level_description(level, count),
        factors=factors,
        metadata=build_metadata(days, freshness_threshold, category, explanation),
    )


def is_contributing(submission, now: Optional[datetime] = None) -> bool:
    """A submission counts while unexpired and not rejected by moderation."""
    now = ensure_utc(now) or utcnow()
    if getattr(submission, "is_approved", None) is False:
        return False
    expires_at = ensure_utc(getattr(submission, "expires_at", None))
    return expires_at is None or expires_at > now


def confidence_input_from_history(
    submissions: Iterable,
    subject_category: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConfidenceInput:
    """
    Derive scorer input from a pair's submission history.

    ``submissions`` may be ORM rows or any objects with ``data_source``,
    ``created_at``, ``expires_at``, ``is_approved``, ``upvotes`` and
    ``downvotes``. Vote history is read through the per-submission
    counters. The newest contributing submission sets source and recency.
    """
    contributing = [s for s in submissions if is_contributing(s, now)]
    if not contributing:
        return ConfidenceInput(
            data_source=None,
            last_verified_at=None,
            verification_count=0,
            upvotes=0,
            downvotes=0,
            subject_category=subject_category,
        )

    newest = max(contributing, key=lambda s: ensure_utc(s.created_at))
    return ConfidenceInput(
        data_source=newest.data_source,
        last_verified_at=ensure_utc(newest.created_at),
        verification_count=len(contributing),
        upvotes=sum(max(0, s.upvotes or 0) for s in contributing),
        downvotes=sum(max(0, s.downvotes or 0) for s in contributing),
        subject_category=subject_category,
    )


def score_history(
    submissions: Iterable,
    subject_category: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConfidenceResult:
    """(submission history, vote history) -> score plus explanatory metadata."""
    return calculate_confidence(
        confidence_input_from_history(submissions, subject_category, now), now
    )
