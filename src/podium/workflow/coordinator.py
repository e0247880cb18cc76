"""Finalization coordinator — turns an ended round into a settled one.

Two operations, both safe to call any number of times:

finalize(round_id)
    Ranks paid entries, allocates prizes and computes the commitment, all
    inside the ledger's finalization claim. Exactly one caller performs
    the computation; every other caller (concurrent or later) gets the
    persisted result flagged already_finalized.

publish(round_id)
    Rebuilds the winner set from persisted state, checks the settlement
    contract, submits the commitment root and, only after a confirmed
    receipt, records root, settled_at and phase SETTLED in one step.
    A failed submission leaves the finalized round untouched so publish
    can simply be retried; the same persisted state yields the same root.

No ledger lock is held while waiting on the settlement contract.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from podium.chain.submitter import SettlementSubmitter, SubmissionOutcome, submit_with_retry
from podium.crypto.commitment_builder import Commitment, build_commitment, derive_winners
from podium.engine.state_machine import RoundStateMachine
from podium.errors import (
    CommitmentFailure,
    ExternalSubmissionFailure,
    InvalidPhaseTransition,
)
from podium.models.round import Entry, EntryOutcome, Round, RoundPhase, RoundSnapshot
from podium.models.settlement import (
    FinalizeResult,
    PublishResult,
    SubmissionFailure,
    SubmissionFailureKind,
    WinnerSummary,
)
from podium.payout.prizes import (
    PrizeCalculator,
    describe_distribution,
    validate_payout_table,
    validate_prize_pool,
    validate_ticket_tiers,
)
from podium.payout.ranking import rank_entries
from podium.persistence.ledger import EntryLedger

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FinalizationCoordinator:
    """Runs finalization and publication against an entry ledger.

    Usage:
        coordinator = FinalizationCoordinator(ledger, PrizeCalculator(), submitter)
        result = coordinator.finalize("round-42")
        published = coordinator.publish("round-42")
    """

    def __init__(
        self,
        ledger: EntryLedger,
        calculator: PrizeCalculator,
        submitter: Optional[SettlementSubmitter] = None,
        state_machine: Optional[RoundStateMachine] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._calculator = calculator
        self._submitter = submitter
        self._state_machine = state_machine or RoundStateMachine()
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._clock = clock

    @property
    def has_submitter(self) -> bool:
        return self._submitter is not None

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(self, round_id: str) -> FinalizeResult:
        """Rank, allocate and commit a round exactly once.

        Raises NotFound, InvalidPhaseTransition (round not ENDED),
        ValidationError (bad payout config or payments) or
        CommitmentFailure (malformed winner set). Nothing is written
        when any of these is raised.
        """
        round_ = self._ledger.get_round(round_id)
        if round_.is_finalized:
            logger.info("Round %s already finalized", round_id)
            return self._persisted_result(round_id, already_finalized=True)

        if round_.phase != RoundPhase.ENDED:
            raise InvalidPhaseTransition(
                f"Round {round_id} is {round_.phase.value}; only ended rounds can be finalized"
            )

        validate_payout_table(round_.payout_table)
        validate_prize_pool(round_.prize_pool)
        validate_ticket_tiers(self._ledger.snapshot(round_id).entries, round_.ticket_tiers)

        claimed = self._ledger.apply_finalization(round_id, self._clock(), self._compute)
        if not claimed:
            logger.info("Round %s was finalized by a concurrent caller", round_id)
            return self._persisted_result(round_id, already_finalized=True)

        result = self._persisted_result(round_id, already_finalized=False)
        logger.info(
            "Finalized round %s: %d ranked, %d prizes, root=%s",
            round_id, result.entries_ranked, result.prizes_distributed,
            result.commitment_root,
        )
        return result

    def _compute(self, snapshot: RoundSnapshot) -> list[EntryOutcome]:
        """The single computation pass run under the finalization claim."""
        round_ = snapshot.round
        validate_ticket_tiers(snapshot.entries, round_.ticket_tiers)

        ranked = rank_entries(snapshot.entries)
        distribution = self._calculator.for_decimals(round_.token_decimals).allocate(
            ranked, round_.prize_pool, round_.payout_table,
        )

        # The commitment must be buildable before anything is persisted.
        by_id = {o.entry_id: o for o in distribution.outcomes}
        projected = [_apply_outcome(e, by_id.get(e.entry_id)) for e in snapshot.entries]
        winners = derive_winners(round_, projected)
        if winners:
            build_commitment(winners)

        logger.info("Round %s distribution:\n%s", round_.round_id, describe_distribution(distribution))
        return distribution.outcomes

    def _persisted_result(self, round_id: str, already_finalized: bool) -> FinalizeResult:
        snapshot = self._ledger.snapshot(round_id)
        ranked = sorted(
            (e for e in snapshot.entries if e.rank is not None),
            key=lambda e: e.rank,
        )
        summaries = [
            WinnerSummary(rank=e.rank, prize=e.prize, recipient=e.recipient)
            for e in ranked
            if e.prize is not None and e.prize > 0
        ]
        commitment = self._commitment_or_none(snapshot)
        return FinalizeResult(
            round_id=round_id,
            entries_ranked=len(ranked),
            prizes_distributed=len(summaries),
            prize_pool=snapshot.round.prize_pool,
            winners=summaries,
            already_finalized=already_finalized,
            commitment_root=commitment.root if commitment else None,
        )

    def _commitment_or_none(self, snapshot: RoundSnapshot) -> Optional[Commitment]:
        winners = derive_winners(snapshot.round, snapshot.entries)
        if not winners:
            return None
        return build_commitment(winners)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(self, round_id: str) -> PublishResult:
        """Publish the round's commitment root and mark it SETTLED.

        Raises NotFound, InvalidPhaseTransition (not finalized),
        CommitmentFailure (no winners) or ExternalSubmissionFailure.
        """
        snapshot = self._ledger.snapshot(round_id)
        round_ = snapshot.round
        if not round_.is_finalized:
            raise InvalidPhaseTransition(
                f"Round {round_id} must be finalized before publishing"
            )

        commitment = self._commitment_or_none(snapshot)
        if commitment is None:
            raise CommitmentFailure(f"No winners to publish for round {round_id}")
        winners_count = len(commitment.winners)

        if round_.is_settled:
            return PublishResult(
                round_id=round_id,
                commitment_root=round_.commitment_root,
                tx_hash=round_.settlement_tx,
                winners_count=winners_count,
                already_published=True,
            )

        if round_.phase != RoundPhase.ENDED:
            raise InvalidPhaseTransition(
                f"Round {round_id} is {round_.phase.value}; only ended rounds can be published"
            )
        submitter = self._require_submitter()

        onchain = submitter.read_round(round_.onchain_id)
        if onchain is None:
            raise ExternalSubmissionFailure(
                f"Round {round_id} ({round_.onchain_id}) does not exist on the settlement contract"
            )
        if not onchain.ended:
            raise ExternalSubmissionFailure(
                f"Round {round_id} has not been ended on the settlement contract"
            )
        if onchain.has_root:
            return self._reconcile(round_, commitment, onchain.merkle_root, winners_count)

        outcome = submit_with_retry(
            lambda: submitter.publish_root(round_.onchain_id, commitment.root),
            max_attempts=self._max_attempts,
            backoff_seconds=self._backoff_seconds,
            sleep=self._sleep,
        )
        if isinstance(outcome, SubmissionFailure):
            if outcome.kind == SubmissionFailureKind.ALREADY_SETTLED:
                current = submitter.read_round(round_.onchain_id)
                if current is not None and current.has_root:
                    return self._reconcile(round_, commitment, current.merkle_root, winners_count)
            logger.error(
                "Publishing round %s failed: %s: %s",
                round_id, outcome.kind.value, outcome.message,
            )
            raise ExternalSubmissionFailure(
                f"Publishing round {round_id} failed ({outcome.kind.value}): {outcome.message}",
                failure=outcome,
            )

        return self._record(round_, commitment.root, outcome.tx_hash, winners_count)

    def _reconcile(
        self, round_: Round, commitment: Commitment, onchain_root: str, winners_count: int,
    ) -> PublishResult:
        """The contract already holds a root for this round."""
        if onchain_root.lower() != commitment.root.lower():
            failure = SubmissionFailure(
                SubmissionFailureKind.ALREADY_SETTLED,
                f"on-chain root {onchain_root} != computed root {commitment.root}",
            )
            logger.error("Round %s settled on-chain with a different root", round_.round_id)
            raise ExternalSubmissionFailure(
                f"Round {round_.round_id} is already settled on-chain with a different root",
                failure=failure,
            )
        logger.info("Round %s root already on-chain; recording locally", round_.round_id)
        return self._record(round_, commitment.root, round_.settlement_tx, winners_count)

    def _record(
        self, round_: Round, root: str, tx_hash: Optional[str], winners_count: int,
    ) -> PublishResult:
        self._state_machine.require(round_, RoundPhase.SETTLED, confirmed_root=root)
        recorded = self._ledger.record_settlement(round_.round_id, root, tx_hash, self._clock())
        if not recorded:
            stored = self._ledger.get_round(round_.round_id)
            return PublishResult(
                round_id=round_.round_id,
                commitment_root=stored.commitment_root,
                tx_hash=stored.settlement_tx,
                winners_count=winners_count,
                already_published=True,
            )
        logger.info("Round %s settled with root %s (tx %s)", round_.round_id, root, tx_hash)
        return PublishResult(
            round_id=round_.round_id,
            commitment_root=root,
            tx_hash=tx_hash,
            winners_count=winners_count,
        )

    # ------------------------------------------------------------------
    # End on-chain
    # ------------------------------------------------------------------

    def end_on_chain(self, round_id: str) -> Optional[SubmissionOutcome]:
        """Close ticket sales on the settlement contract.

        Returns None when there is nothing to do (no submitter, the round
        is unknown on-chain, or already ended there).
        """
        if self._submitter is None:
            return None
        round_ = self._ledger.get_round(round_id)
        onchain = self._submitter.read_round(round_.onchain_id)
        if onchain is None or onchain.ended:
            return None
        submitter = self._submitter
        return submit_with_retry(
            lambda: submitter.end_round(round_.onchain_id),
            max_attempts=self._max_attempts,
            backoff_seconds=self._backoff_seconds,
            sleep=self._sleep,
        )

    def _require_submitter(self) -> SettlementSubmitter:
        if self._submitter is None:
            raise ExternalSubmissionFailure("No settlement submitter is configured")
        return self._submitter


def _apply_outcome(entry: Entry, outcome: Optional[EntryOutcome]) -> Entry:
    if outcome is None:
        return replace(entry, rank=None, prize=None)
    return replace(entry, rank=outcome.rank, prize=outcome.prize)

