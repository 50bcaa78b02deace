"""
Plan Acceptance Consensus Service.

Aggregates independent, untrusted community submissions about whether a
provider accepts an insurance plan into a single confidence score and
acceptance status.

The service allows users to:
- Submit a verification for a (provider, plan) pair
- Vote on other users' verifications
- Read the consensus status and confidence score for a pair

Submissions pass through rate limiting, a bot challenge and a duplicate
guard before they are allowed to influence the consensus.
"""

__version__ = "0.1.0"
