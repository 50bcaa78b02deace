"""
Error taxonomy for the consensus service.

Every rejection carries a stable, machine-readable ``code`` and an HTTP
status. Messages are safe to show to end users; internal diagnostics
belong in the logs, never in the message.
"""

from typing import Dict, Optional


class ConsensusError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.message = message or self.default_message
        self.headers = headers or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "status_code": self.status_code,
            }
        }


class InvalidRequest(ConsensusError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation error"


class Unauthorized(ConsensusError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Invalid API key"


class NotFound(ConsensusError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class DuplicateSubmission(ConsensusError):
    status_code = 409
    code = "DUPLICATE_SUBMISSION"
    default_message = "A verification for this pair was already submitted recently"


class DuplicateVote(ConsensusError):
    status_code = 409
    code = "DUPLICATE_VOTE"
    default_message = "You have already voted on this verification"


class RateLimitExceeded(ConsensusError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests, please try again later"

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after: int = 1,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.retry_after = retry_after
        headers = dict(headers or {})
        headers["Retry-After"] = str(retry_after)
        super().__init__(message, headers)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["error"]["retry_after"] = self.retry_after
        return body


class ChallengeRequired(ConsensusError):
    status_code = 400
    code = "CHALLENGE_REQUIRED"
    default_message = "A challenge token is required for this request"


class ChallengeFailed(ConsensusError):
    status_code = 400
    code = "CHALLENGE_FAILED"
    default_message = "Challenge verification failed"


class ChallengeSuspicious(ConsensusError):
    status_code = 403
    code = "CHALLENGE_SUSPICIOUS"
    default_message = "Request blocked due to suspicious activity"


class ChallengeUnavailable(ConsensusError):
    status_code = 503
    code = "CHALLENGE_UNAVAILABLE"
    default_message = (
        "Security verification temporarily unavailable. "
        "Please try again in a few minutes."
    )


class FallbackRateLimitExceeded(RateLimitExceeded):
    code = "CHALLENGE_FALLBACK_RATE_LIMITED"
    default_message = (
        "Too many requests while security verification is unavailable. "
        "Please try again later."
    )


class StorageError(ConsensusError):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"
