"""Entry ledger — the persisted rounds and entries the engine reads and writes.

The ledger is passed explicitly into the coordinator; there is no global
database handle. Two operations carry the concurrency guarantees:

- apply_finalization: a compare-and-set on finalized_at being unset.
  Only the caller that wins the claim runs the computation, and its rank,
  prize and finalized_at writes land together or not at all.
- record_settlement: a compare-and-set on settled_at being unset. Root,
  settled_at, tx reference and phase SETTLED land together exactly once.

InMemoryEntryLedger keeps everything in process memory behind per-round
locks. SqlEntryLedger (persistence.sql_ledger) provides the same contract
on a relational database.
"""

from __future__ import annotations

import abc
import re
import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from eth_utils import is_address

from podium.errors import InvalidPhaseTransition, NotFound, ValidationError
from podium.models.round import Entry, EntryOutcome, Round, RoundPhase, RoundSnapshot
from podium.payout.prizes import validate_payout_table, validate_prize_pool


# Phases during which entries may be created and scores may change.
MUTABLE_ENTRY_PHASES = frozenset({RoundPhase.OPEN, RoundPhase.LIVE})

FinalizeComputation = Callable[[RoundSnapshot], List[EntryOutcome]]

_ONCHAIN_ID = re.compile(r"0x[0-9a-fA-F]{64}")


class EntryLedger(abc.ABC):
    """Read/write interface over persisted rounds and entries."""

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def create_round(self, round_: Round) -> Round:
        """Persist a new round. Raises ValidationError on a duplicate id."""

    @abc.abstractmethod
    def get_round(self, round_id: str) -> Round:
        """Return a copy of the round. Raises NotFound."""

    @abc.abstractmethod
    def list_rounds(self) -> list[Round]:
        """Return all rounds ordered by round_id."""

    @abc.abstractmethod
    def transition_phase(
        self, round_id: str, expected: RoundPhase, target: RoundPhase,
    ) -> Round:
        """Move a round from expected to target phase atomically.

        Raises InvalidPhaseTransition if the round is no longer in the
        expected phase. SETTLED is only reachable via record_settlement.
        """

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def add_entry(self, entry: Entry) -> Entry:
        """Create an entry. One per (round, recipient), only in OPEN/LIVE."""

    @abc.abstractmethod
    def record_payment(
        self, entry_id: str, paid_amount: Decimal, paid_at: Optional[datetime] = None,
    ) -> Entry:
        """Set the payment marker on an entry."""

    @abc.abstractmethod
    def record_score(self, entry_id: str, score: int) -> Entry:
        """Overwrite an entry's accumulated score. Refused once play ends."""

    @abc.abstractmethod
    def snapshot(self, round_id: str) -> RoundSnapshot:
        """A consistent read of the round and its entries (by entry_id)."""

    # ------------------------------------------------------------------
    # Finalization and settlement
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def apply_finalization(
        self, round_id: str, finalized_at: datetime, compute: FinalizeComputation,
    ) -> bool:
        """Claim the round's finalization slot and apply compute's outcomes.

        Returns True if this caller claimed the slot and its outcomes were
        persisted; False if the round was already finalized (compute is
        not called). Any exception from compute aborts the whole unit of
        work, leaving the round unfinalized.
        """

    @abc.abstractmethod
    def record_settlement(
        self, round_id: str, commitment_root: str, tx_hash: Optional[str], settled_at: datetime,
    ) -> bool:
        """Record a confirmed commitment and mark the round SETTLED.

        Returns False if the round was already settled (nothing written).
        """


class InMemoryEntryLedger(EntryLedger):
    """Process-local ledger with per-round locks.

    Usage:
        ledger = InMemoryEntryLedger()
        ledger.create_round(Round(...))
        ledger.add_entry(Entry(...))
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._round_locks: Dict[str, threading.Lock] = {}
        self._rounds: Dict[str, Round] = {}
        self._entries: Dict[str, Entry] = {}
        self._entries_by_round: Dict[str, List[str]] = {}

    def create_round(self, round_: Round) -> Round:
        validate_new_round(round_)
        with self._registry_lock:
            if round_.round_id in self._rounds:
                raise ValidationError(f"Round already exists: {round_.round_id}")
            onchain_id = round_.onchain_id.lower()
            if any(r.onchain_id.lower() == onchain_id for r in self._rounds.values()):
                raise ValidationError(f"onchain_id already in use: {round_.onchain_id}")
            self._rounds[round_.round_id] = replace(round_)
            self._round_locks[round_.round_id] = threading.Lock()
            self._entries_by_round[round_.round_id] = []
        return replace(round_)

    def get_round(self, round_id: str) -> Round:
        with self._lock_for(round_id):
            return replace(self._rounds[round_id])

    def list_rounds(self) -> list[Round]:
        with self._registry_lock:
            ids = sorted(self._rounds)
        return [self.get_round(round_id) for round_id in ids]

    def transition_phase(
        self, round_id: str, expected: RoundPhase, target: RoundPhase,
    ) -> Round:
        if target == RoundPhase.SETTLED:
            raise InvalidPhaseTransition("SETTLED is only set by record_settlement")
        with self._lock_for(round_id):
            stored = self._rounds[round_id]
            if stored.phase != expected:
                raise InvalidPhaseTransition(
                    f"Round {round_id} is {stored.phase.value}, expected {expected.value}"
                )
            stored.phase = target
            return replace(stored)

    def add_entry(self, entry: Entry) -> Entry:
        validate_new_entry(entry)
        with self._lock_for(entry.round_id):
            stored_round = self._rounds[entry.round_id]
            _require_mutable(stored_round)
            if entry.entry_id in self._entries:
                raise ValidationError(f"Entry already exists: {entry.entry_id}")
            recipient = entry.recipient.lower()
            for existing_id in self._entries_by_round[entry.round_id]:
                if self._entries[existing_id].recipient.lower() == recipient:
                    raise ValidationError(
                        f"Recipient {entry.recipient} already has an entry in {entry.round_id}"
                    )
            stored = replace(
                entry,
                joined_at=entry.joined_at or datetime.now(timezone.utc),
                rank=None,
                prize=None,
            )
            self._entries[entry.entry_id] = stored
            self._entries_by_round[entry.round_id].append(entry.entry_id)
            return replace(stored)

    def record_payment(
        self, entry_id: str, paid_amount: Decimal, paid_at: Optional[datetime] = None,
    ) -> Entry:
        round_id = self._round_of(entry_id)
        with self._lock_for(round_id):
            _require_mutable(self._rounds[round_id])
            stored = self._entries[entry_id]
            stored.paid_amount = paid_amount
            stored.paid_at = paid_at or datetime.now(timezone.utc)
            return replace(stored)

    def record_score(self, entry_id: str, score: int) -> Entry:
        round_id = self._round_of(entry_id)
        with self._lock_for(round_id):
            _require_mutable(self._rounds[round_id])
            stored = self._entries[entry_id]
            stored.score = score
            return replace(stored)

    def snapshot(self, round_id: str) -> RoundSnapshot:
        with self._lock_for(round_id):
            return self._snapshot_locked(round_id)

    def apply_finalization(
        self, round_id: str, finalized_at: datetime, compute: FinalizeComputation,
    ) -> bool:
        with self._lock_for(round_id):
            stored_round = self._rounds[round_id]
            if stored_round.finalized_at is not None:
                return False
            if stored_round.phase != RoundPhase.ENDED:
                raise InvalidPhaseTransition(
                    f"Round {round_id} is {stored_round.phase.value}; finalization requires ended"
                )

            # Compute against copies; nothing is written unless it succeeds.
            outcomes = compute(self._snapshot_locked(round_id))

            by_id = {o.entry_id: o for o in outcomes}
            unknown = set(by_id) - set(self._entries_by_round[round_id])
            if unknown:
                raise ValidationError(f"Outcomes reference unknown entries: {sorted(unknown)}")

            for entry_id in self._entries_by_round[round_id]:
                outcome = by_id.get(entry_id)
                stored = self._entries[entry_id]
                stored.rank = outcome.rank if outcome else None
                stored.prize = outcome.prize if outcome else None
            stored_round.finalized_at = finalized_at
            return True

    def record_settlement(
        self, round_id: str, commitment_root: str, tx_hash: Optional[str], settled_at: datetime,
    ) -> bool:
        with self._lock_for(round_id):
            stored = self._rounds[round_id]
            if stored.settled_at is not None:
                return False
            if stored.finalized_at is None or stored.phase != RoundPhase.ENDED:
                raise InvalidPhaseTransition(
                    f"Round {round_id} must be ended and finalized before settlement"
                )
            stored.commitment_root = commitment_root
            stored.settlement_tx = tx_hash
            stored.settled_at = settled_at
            stored.phase = RoundPhase.SETTLED
            return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lock_for(self, round_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._round_locks.get(round_id)
        if lock is None:
            raise NotFound(f"Round not found: {round_id}")
        return lock

    def _round_of(self, entry_id: str) -> str:
        with self._registry_lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise NotFound(f"Entry not found: {entry_id}")
            return entry.round_id

    def _snapshot_locked(self, round_id: str) -> RoundSnapshot:
        entry_ids = sorted(self._entries_by_round[round_id])
        return RoundSnapshot(
            round=replace(self._rounds[round_id]),
            entries=[replace(self._entries[e]) for e in entry_ids],
        )


def _require_mutable(round_: Round) -> None:
    if round_.phase not in MUTABLE_ENTRY_PHASES:
        raise InvalidPhaseTransition(
            f"Round {round_.round_id} is {round_.phase.value}; entries are frozen"
        )


def validate_new_round(round_: Round) -> None:
    """Reject rounds that could never be finalized or committed."""
    if not _ONCHAIN_ID.fullmatch(round_.onchain_id):
        raise ValidationError(
            f"onchain_id must be a 0x-prefixed 32-byte hex string, got {round_.onchain_id!r}"
        )
    if round_.phase != RoundPhase.OPEN:
        raise ValidationError(f"New rounds start OPEN, got {round_.phase.value}")
    if round_.question_count < 0:
        raise ValidationError("question_count must be non-negative")
    validate_prize_pool(round_.prize_pool)
    if not 0 <= round_.token_decimals <= 36:
        raise ValidationError(f"token_decimals out of range: {round_.token_decimals}")
    validate_payout_table(round_.payout_table)
    for tier in round_.ticket_tiers:
        if not tier.is_finite() or tier <= 0:
            raise ValidationError(f"Ticket tiers must be positive, got {tier}")


def validate_new_entry(entry: Entry) -> None:
    if not is_address(entry.recipient):
        raise ValidationError(f"Invalid recipient address: {entry.recipient!r}")
