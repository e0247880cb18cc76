"""Error taxonomy for round finalization and settlement.

Every failure the engine reports is one of these types. Precondition
failures (phase, validation) are raised before any state is touched.
External submission failures never roll back local results: the
ranked, prized round stays persisted and only the submission is retried.

"Already finalized" is not an error. It is an idempotent success,
reported as a flag on the result, never as an exception.
"""

from __future__ import annotations

from typing import Any, Optional


class PodiumError(Exception):
    """Base class for all engine errors. ``code`` is stable for API bodies."""

    code = "podium_error"


class NotFound(PodiumError):
    """Referenced round or entry does not exist. Not retried."""

    code = "not_found"


class InvalidPhaseTransition(PodiumError):
    """A lifecycle guard was violated, or an operation is not allowed in
    the round's current phase (e.g. settling a LIVE round)."""

    code = "invalid_phase_transition"


class ValidationError(PodiumError):
    """Malformed payout configuration, non-positive prize pool, payment
    outside the allowed ticket tiers, or malformed settings."""

    code = "validation_error"


class CommitmentFailure(PodiumError):
    """The winner set cannot be committed: empty, or holds a malformed
    leaf. Fatal for the attempt; nothing is persisted."""

    code = "commitment_failure"


class ExternalSubmissionFailure(PodiumError):
    """The settlement contract call reverted, timed out, or found the round
    already settled with a different root. Local state remains valid."""

    code = "external_submission_failure"

    def __init__(self, message: str, failure: Optional[Any] = None) -> None:
        super().__init__(message)
        self.failure = failure
