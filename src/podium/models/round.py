"""Round and entry models — the persisted shapes the ledger stores.

All monetary values use Decimal. No floats in prize money.

Round lifecycle: OPEN → LIVE → ENDED → SETTLED (linear, no skipping).

Persisted invariants:
- finalized_at moves from None to set exactly once, in the same unit of
  work that writes every eligible entry's rank and prize.
- settled_at and commitment_root move from None to set exactly once,
  together, and only after the root is confirmed on the external ledger.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class RoundPhase(str, enum.Enum):
    """Lifecycle phase of a round."""
    OPEN = "open"
    LIVE = "live"
    ENDED = "ended"
    SETTLED = "settled"


@dataclass
class Round:
    """One instance of the game being played, finalized and settled.

    onchain_id is the bytes32 identifier the settlement contract uses.
    It is the first field of every Merkle leaf, so it must never change
    after the round is created.

    token_decimals is the payment token precision fixed at creation. Leaf
    amounts are always converted with it, so the commitment does not
    depend on the settings of the process that rebuilds it.
    """
    round_id: str
    onchain_id: str
    prize_pool: Decimal
    payout_table: tuple[Decimal, ...]
    phase: RoundPhase = RoundPhase.OPEN
    question_count: int = 0
    ticket_tiers: tuple[Decimal, ...] = ()
    token_decimals: int = 6
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    commitment_root: Optional[str] = None
    settlement_tx: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None


@dataclass
class Entry:
    """One participant's record within a round.

    paid_at is the payment marker: only entries with a non-null paid_at
    are eligible for ranking. rank and prize stay None until the round is
    finalized; unpaid entries keep them None forever.
    """
    entry_id: str
    round_id: str
    recipient: str
    score: int = 0
    joined_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    paid_amount: Optional[Decimal] = None
    rank: Optional[int] = None
    prize: Optional[Decimal] = None

    @property
    def is_eligible(self) -> bool:
        return self.paid_at is not None


@dataclass(frozen=True)
class EntryOutcome:
    """Rank and prize computed for one eligible entry during finalization."""
    entry_id: str
    recipient: str
    rank: int
    prize: Decimal


@dataclass(frozen=True)
class RoundSnapshot:
    """A consistent read of a round and its entries."""
    round: Round
    entries: list[Entry] = field(default_factory=list)
