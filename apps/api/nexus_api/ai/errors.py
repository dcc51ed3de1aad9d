from __future__ import annotations

from typing import Any


class ProposalError(Exception):
    """Base error for the AI action pipeline; carries an API code and HTTP status."""

    code = "ai_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(ProposalError):
    code = "ai_not_found"
    status_code = 404


class ConflictError(ProposalError):
    """Raised when a status transition lost to a concurrent resolution."""

    code = "ai_proposal_already_resolved"
    status_code = 409


class InvalidArgumentError(ProposalError):
    code = "ai_invalid_argument"
    status_code = 422


class RateLimitedError(ProposalError):
    """Oracle backpressure; `retry_after_ms` is the provider's suggested wait."""

    code = "rate_limit"
    status_code = 429

    def __init__(self, message: str, retry_after_ms: int) -> None:
        super().__init__(message, details={"retry_after_ms": retry_after_ms})
        self.retry_after_ms = retry_after_ms


class DispatchFailureError(ProposalError):
    code = "ai_dispatch_failed"
    status_code = 502

    def __init__(self, proposal_type: str, message: str) -> None:
        super().__init__(f"{proposal_type} dispatch failed: {message}", details={"proposal_type": proposal_type})
        self.proposal_type = proposal_type


class OracleError(ProposalError):
    """Generic oracle failure (bad response, provider outage)."""

    code = "ai_oracle_failed"
    status_code = 502
