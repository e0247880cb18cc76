"""Core data models for Podium."""

from podium.models.round import Entry, EntryOutcome, Round, RoundPhase, RoundSnapshot
from podium.models.settlement import (
    ClaimProof,
    FinalizeResult,
    OnChainRound,
    PublishResult,
    SubmissionFailure,
    SubmissionFailureKind,
    SubmissionReceipt,
    Winner,
    WinnerSummary,
)

__all__ = [
    "ClaimProof",
    "Entry",
    "EntryOutcome",
    "FinalizeResult",
    "OnChainRound",
    "PublishResult",
    "Round",
    "RoundPhase",
    "RoundSnapshot",
    "SubmissionFailure",
    "SubmissionFailureKind",
    "SubmissionReceipt",
    "Winner",
    "WinnerSummary",
]
