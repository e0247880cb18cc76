"""Shared fixtures and builders for the podium test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence

import pytest

from podium.chain.submitter import SettlementSubmitter, SubmissionOutcome
from podium.models.round import Entry, Round, RoundPhase
from podium.models.settlement import (
    OnChainRound,
    SubmissionFailure,
    SubmissionReceipt,
)
from podium.payout.prizes import PrizeCalculator
from podium.persistence.ledger import EntryLedger, InMemoryEntryLedger

ONCHAIN_ID = "0x" + "ab" * 32
OTHER_ONCHAIN_ID = "0x" + "cd" * 32
ZERO_ROOT = "0x" + "00" * 32
TX_HASH = "0x" + "ef" * 32
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
STANDARD_TABLE = (Decimal("0.60"), Decimal("0.30"), Decimal("0.10"))


def addr(n: int) -> str:
    """A valid lower-case EVM address derived from n."""
    return f"0x{n:040x}"


def make_round(
    round_id: str = "round-1",
    onchain_id: str = ONCHAIN_ID,
    prize_pool: Decimal = Decimal("100"),
    payout_table: Sequence[Decimal] = STANDARD_TABLE,
    question_count: int = 5,
    ticket_tiers: Sequence[Decimal] = (),
    token_decimals: int = 6,
) -> Round:
    return Round(
        round_id=round_id,
        onchain_id=onchain_id,
        prize_pool=prize_pool,
        payout_table=tuple(payout_table),
        question_count=question_count,
        ticket_tiers=tuple(ticket_tiers),
        token_decimals=token_decimals,
    )


def make_entry(
    entry_id: str,
    recipient: str,
    score: int = 0,
    joined_at: Optional[datetime] = None,
    paid: bool = True,
    round_id: str = "round-1",
) -> Entry:
    return Entry(
        entry_id=entry_id,
        round_id=round_id,
        recipient=recipient,
        score=score,
        joined_at=joined_at,
        paid_at=T0 if paid else None,
        paid_amount=Decimal("5") if paid else None,
    )


def seed_ended_round(
    ledger: EntryLedger,
    players: Sequence[tuple[int, int, bool]],
    round_: Optional[Round] = None,
) -> Round:
    """Create a round, add players as (address_seed, score, paid), end it.

    Players join one minute apart in the order given.
    """
    round_ = round_ or make_round()
    ledger.create_round(round_)
    for position, (seed, score, paid) in enumerate(players):
        ledger.add_entry(Entry(
            entry_id=f"e{position + 1:03d}",
            round_id=round_.round_id,
            recipient=addr(seed),
            score=score,
            joined_at=T0 + timedelta(minutes=position),
        ))
        if paid:
            ledger.record_payment(f"e{position + 1:03d}", Decimal("5"), T0)
    ledger.transition_phase(round_.round_id, RoundPhase.OPEN, RoundPhase.LIVE)
    ledger.transition_phase(round_.round_id, RoundPhase.LIVE, RoundPhase.ENDED)
    return ledger.get_round(round_.round_id)


class FakeSubmitter(SettlementSubmitter):
    """In-memory stand-in for the settlement contract.

    publish_outcomes / end_outcomes are consumed in order; once empty,
    calls succeed.
    """

    def __init__(self) -> None:
        self.rounds: dict[str, OnChainRound] = {}
        self.publish_outcomes: list[SubmissionFailure] = []
        self.end_outcomes: list[SubmissionFailure] = []
        self.publish_calls: list[tuple[str, str]] = []
        self.end_calls: list[str] = []

    def register(self, onchain_id: str = ONCHAIN_ID, ended: bool = True, root: str = ZERO_ROOT) -> None:
        self.rounds[onchain_id.lower()] = OnChainRound(
            entry_fee=5_000_000, ticket_count=3, merkle_root=root, settled_at=0, ended=ended,
        )

    def read_round(self, onchain_id: str) -> Optional[OnChainRound]:
        return self.rounds.get(onchain_id.lower())

    def end_round(self, onchain_id: str) -> SubmissionOutcome:
        self.end_calls.append(onchain_id)
        if self.end_outcomes:
            return self.end_outcomes.pop(0)
        current = self.rounds[onchain_id.lower()]
        self.rounds[onchain_id.lower()] = OnChainRound(
            current.entry_fee, current.ticket_count, current.merkle_root, 0, True,
        )
        return SubmissionReceipt(tx_hash=TX_HASH, block_number=10)

    def publish_root(self, onchain_id: str, root: str) -> SubmissionOutcome:
        self.publish_calls.append((onchain_id, root))
        if self.publish_outcomes:
            return self.publish_outcomes.pop(0)
        current = self.rounds[onchain_id.lower()]
        self.rounds[onchain_id.lower()] = OnChainRound(
            current.entry_fee, current.ticket_count, root, 1_700_000_000, current.ended,
        )
        return SubmissionReceipt(tx_hash=TX_HASH, block_number=11)


@pytest.fixture
def ledger() -> InMemoryEntryLedger:
    return InMemoryEntryLedger()


@pytest.fixture
def calculator() -> PrizeCalculator:
    return PrizeCalculator(token_decimals=6)


@pytest.fixture
def submitter() -> FakeSubmitter:
    fake = FakeSubmitter()
    fake.register()
    return fake
