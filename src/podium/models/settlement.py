"""Settlement models — winners, finalize/publish results, and the typed
outcomes of external ledger submissions.

A Winner is never stored on its own. It is derived from persisted Entry
and Round state every time it is needed, so the Merkle root and every
proof can be regenerated byte-for-byte long after settlement.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional


@dataclass(frozen=True)
class Winner:
    """A (round, recipient, amount) triple: the exact leaf content.

    amount is in token base units (e.g. USDC with 6 decimals).
    """
    round_onchain_id: str
    recipient: str
    amount: int


@dataclass(frozen=True)
class WinnerSummary:
    """A prize-bearing entry as reported to callers."""
    rank: int
    prize: Decimal
    recipient: str

    def to_dict(self) -> dict[str, Any]:
        return {"rank": self.rank, "prize": str(self.prize), "recipient": self.recipient}


@dataclass(frozen=True)
class FinalizeResult:
    """Result of finalize(). Identical for every caller of the same round."""
    round_id: str
    entries_ranked: int
    prizes_distributed: int
    prize_pool: Decimal
    winners: list[WinnerSummary] = field(default_factory=list)
    already_finalized: bool = False
    commitment_root: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "roundId": self.round_id,
            "alreadyFinalized": self.already_finalized,
            "entriesRanked": self.entries_ranked,
            "prizesDistributed": self.prizes_distributed,
            "prizePool": str(self.prize_pool),
            "winners": [w.to_dict() for w in self.winners],
            "commitmentRoot": self.commitment_root,
        }


@dataclass(frozen=True)
class PublishResult:
    """Result of publishing a round's commitment root."""
    round_id: str
    commitment_root: str
    tx_hash: Optional[str]
    winners_count: int
    already_published: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "roundId": self.round_id,
            "commitmentRoot": self.commitment_root,
            "txHash": self.tx_hash,
            "winnersCount": self.winners_count,
            "alreadyPublished": self.already_published,
        }


@dataclass(frozen=True)
class ClaimProof:
    """Everything a winner needs to claim: the leaf values and the proof."""
    round_id: str
    round_onchain_id: str
    recipient: str
    amount: int
    prize: Decimal
    proof: list[str]
    root: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "roundId": self.round_id,
            "onchainId": self.round_onchain_id,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "prize": str(self.prize),
            "proof": list(self.proof),
            "root": self.root,
        }


@dataclass(frozen=True)
class OnChainRound:
    """Round state as read from the settlement contract."""
    entry_fee: int
    ticket_count: int
    merkle_root: str
    settled_at: int
    ended: bool

    @property
    def has_root(self) -> bool:
        return int(self.merkle_root, 16) != 0


class SubmissionFailureKind(str, enum.Enum):
    """Why an external submission did not confirm."""
    REVERTED = "reverted"
    TIMEOUT = "timeout"
    ALREADY_SETTLED = "already_settled"
    RPC_ERROR = "rpc_error"


# Failures worth retrying. Reverts and already-settled are deterministic.
RETRYABLE_FAILURES = frozenset({
    SubmissionFailureKind.TIMEOUT,
    SubmissionFailureKind.RPC_ERROR,
})


@dataclass(frozen=True)
class SubmissionReceipt:
    """A confirmed external transaction."""
    tx_hash: str
    block_number: int


@dataclass(frozen=True)
class SubmissionFailure:
    """A typed submission failure. Never used to mark local state settled."""
    kind: SubmissionFailureKind
    message: str
    tx_hash: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_FAILURES
