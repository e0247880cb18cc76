"""Podium service — unified facade for round finalization and settlement.

This is the primary interface for programmatic access. The HTTP API and
the CLI are thin wrappers around it. It wires together:
- The entry ledger (in-memory or SQL)
- The lifecycle state machine (start, end, settle)
- The finalization coordinator (finalize, publish)
- The proof generator (claim proofs)
- The audit event log

Operations raise PodiumError subclasses for every failure a caller must
handle. Non-fatal problems (an on-chain end call that did not confirm)
are returned as warnings on the ServiceResult instead.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from podium.chain.submitter import SettlementSubmitter, Web3SettlementSubmitter
from podium.config import Settings
from podium.crypto.commitment_builder import leaf_hash
from podium.crypto.merkle import verify_proof
from podium.crypto.proofs import ProofGenerator
from podium.engine.state_machine import ACTION_TARGETS, LifecycleAction, RoundStateMachine
from podium.errors import ExternalSubmissionFailure, InvalidPhaseTransition, NotFound
from podium.models.round import Entry, Round, RoundPhase
from podium.models.settlement import (
    ClaimProof,
    FinalizeResult,
    PublishResult,
    SubmissionFailure,
    Winner,
)
from podium.payout.prizes import PrizeCalculator, parse_payout_table
from podium.persistence.event_log import EventKind, EventLog
from podium.persistence.ledger import EntryLedger, InMemoryEntryLedger
from podium.workflow.coordinator import FinalizationCoordinator

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class ServiceResult:
    """Result of a lifecycle action."""
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class SettlementService:
    """Round finalization and settlement facade.

    Usage:
        service = SettlementService.from_settings(Settings.from_env())

        service.create_round("round-42", onchain_id, Decimal("100"))
        service.add_entry("round-42", "0xabc...", paid_amount=Decimal("5"))
        service.dispatch(LifecycleAction.START, "round-42")
        ...
        service.dispatch(LifecycleAction.END, "round-42")
        service.finalize("round-42")
        service.proof("round-42", "0xabc...")
    """

    def __init__(
        self,
        ledger: EntryLedger,
        calculator: Optional[PrizeCalculator] = None,
        submitter: Optional[SettlementSubmitter] = None,
        event_log: Optional[EventLog] = None,
        default_payout_table: Sequence[Decimal] = parse_payout_table("0.60,0.30,0.10"),
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ledger = ledger
        self._calculator = calculator or PrizeCalculator()
        self._state_machine = RoundStateMachine()
        self._event_log = event_log if event_log is not None else EventLog()
        self._default_payout_table = tuple(default_payout_table)
        self._coordinator = FinalizationCoordinator(
            ledger,
            self._calculator,
            submitter=submitter,
            state_machine=self._state_machine,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            sleep=sleep,
        )
        self._proofs = ProofGenerator(ledger)
        self._handlers: dict[LifecycleAction, Callable[[str, str], ServiceResult]] = {
            LifecycleAction.START: self._start,
            LifecycleAction.END: self._end,
            LifecycleAction.SETTLE: self._settle,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> SettlementService:
        """Build the service and its collaborators from runtime settings."""
        if settings.database_url:
            from podium.persistence.sql_ledger import SqlEntryLedger
            ledger: EntryLedger = SqlEntryLedger(settings.database_url)
        else:
            ledger = InMemoryEntryLedger()

        submitter: Optional[SettlementSubmitter] = None
        if settings.chain_enabled:
            submitter = Web3SettlementSubmitter(
                rpc_url=settings.rpc_url,
                private_key=settings.private_key,
                contract_address=settings.contract_address,
                chain_id=settings.chain_id,
                receipt_timeout=settings.receipt_timeout,
            )
        else:
            logger.warning("Settlement contract not configured; publication disabled")

        return cls(
            ledger,
            calculator=PrizeCalculator(
                token_decimals=settings.token_decimals,
                platform_fee_bps=settings.platform_fee_bps,
            ),
            submitter=submitter,
            event_log=EventLog(settings.event_log_path),
            default_payout_table=settings.payout_table,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
        )

    @property
    def ledger(self) -> EntryLedger:
        return self._ledger

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def handled_actions(self) -> frozenset[LifecycleAction]:
        return frozenset(self._handlers)

    # ------------------------------------------------------------------
    # Rounds and entries
    # ------------------------------------------------------------------

    def create_round(
        self,
        round_id: str,
        onchain_id: str,
        prize_pool: Decimal,
        payout_table: Optional[Sequence[Decimal]] = None,
        question_count: int = 0,
        ticket_tiers: Sequence[Decimal] = (),
        opens_at: Optional[datetime] = None,
        closes_at: Optional[datetime] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Round:
        """Create a new round in OPEN phase."""
        round_ = self._ledger.create_round(Round(
            round_id=round_id,
            onchain_id=onchain_id,
            prize_pool=prize_pool,
            payout_table=tuple(payout_table or self._default_payout_table),
            question_count=question_count,
            ticket_tiers=tuple(ticket_tiers),
            token_decimals=self._calculator.token_decimals,
            opens_at=opens_at,
            closes_at=closes_at,
        ))
        self._event_log.record(EventKind.ROUND_CREATED, actor_id, {
            "round_id": round_id,
            "onchain_id": onchain_id,
            "prize_pool": str(prize_pool),
            "token_decimals": round_.token_decimals,
        })
        return round_

    def add_entry(
        self,
        round_id: str,
        recipient: str,
        entry_id: Optional[str] = None,
        score: int = 0,
        paid_amount: Optional[Decimal] = None,
        joined_at: Optional[datetime] = None,
        paid_at: Optional[datetime] = None,
    ) -> Entry:
        """Register a participant. A paid_amount marks the entry as paid."""
        entry = self._ledger.add_entry(Entry(
            entry_id=entry_id or f"ent-{uuid.uuid4().hex[:12]}",
            round_id=round_id,
            recipient=recipient,
            score=score,
            joined_at=joined_at,
        ))
        if paid_amount is not None:
            entry = self._ledger.record_payment(entry.entry_id, paid_amount, paid_at)
        return entry

    def record_score(self, entry_id: str, score: int) -> Entry:
        return self._ledger.record_score(entry_id, score)

    def record_payment(
        self, entry_id: str, paid_amount: Decimal, paid_at: Optional[datetime] = None,
    ) -> Entry:
        return self._ledger.record_payment(entry_id, paid_amount, paid_at)

    def get_round(self, round_id: str) -> Round:
        return self._ledger.get_round(round_id)

    def round_status(self, round_id: str) -> dict[str, Any]:
        """Summary of a round for operators."""
        snapshot = self._ledger.snapshot(round_id)
        round_ = snapshot.round
        return {
            "roundId": round_.round_id,
            "onchainId": round_.onchain_id,
            "phase": round_.phase.value,
            "prizePool": str(round_.prize_pool),
            "payoutTable": [str(p) for p in round_.payout_table],
            "questionCount": round_.question_count,
            "tokenDecimals": round_.token_decimals,
            "entries": len(snapshot.entries),
            "paidEntries": sum(1 for e in snapshot.entries if e.is_eligible),
            "finalizedAt": _iso(round_.finalized_at),
            "settledAt": _iso(round_.settled_at),
            "commitmentRoot": round_.commitment_root,
            "settlementTx": round_.settlement_tx,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def dispatch(
        self, action: LifecycleAction, round_id: str, actor_id: str = SYSTEM_ACTOR,
    ) -> ServiceResult:
        """Run one operator lifecycle action against a round."""
        handler = self._handlers.get(action)
        if handler is None:
            raise ValueError(f"Unhandled lifecycle action: {action}")
        result = handler(round_id, actor_id)
        result.data["newPhase"] = ACTION_TARGETS[action].value
        return result

    def _start(self, round_id: str, actor_id: str) -> ServiceResult:
        round_ = self._ledger.get_round(round_id)
        self._state_machine.require(round_, RoundPhase.LIVE)
        self._ledger.transition_phase(round_id, RoundPhase.OPEN, RoundPhase.LIVE)
        self._event_log.record(EventKind.ROUND_STARTED, actor_id, {"round_id": round_id})
        logger.info("Round %s is live", round_id)
        return ServiceResult(success=True, data={"roundId": round_id})

    def _end(self, round_id: str, actor_id: str) -> ServiceResult:
        round_ = self._ledger.get_round(round_id)
        if self._state_machine.require(round_, RoundPhase.ENDED):
            try:
                self._ledger.transition_phase(round_id, RoundPhase.LIVE, RoundPhase.ENDED)
            except InvalidPhaseTransition:
                # A concurrent END trigger won the compare-and-set.
                if self._ledger.get_round(round_id).phase != RoundPhase.ENDED:
                    raise
                logger.info("Round %s was ended by a concurrent trigger", round_id)
            else:
                self._event_log.record(EventKind.ROUND_ENDED, actor_id, {"round_id": round_id})
                logger.info("Round %s ended", round_id)

        result = ServiceResult(success=True, data={"roundId": round_id})

        # Closing ticket sales on-chain is best effort.
        try:
            outcome = self._coordinator.end_on_chain(round_id)
        except ExternalSubmissionFailure as exc:
            outcome = exc.failure
            if outcome is None:
                raise
        if isinstance(outcome, SubmissionFailure):
            message = f"On-chain end failed ({outcome.kind.value}): {outcome.message}"
            logger.warning("Round %s: %s", round_id, message)
            result.warnings.append(message)
            self._event_log.record(EventKind.SUBMISSION_FAILED, actor_id, {
                "round_id": round_id, "call": "end", "kind": outcome.kind.value,
            })
        elif outcome is not None:
            result.data["endTxHash"] = outcome.tx_hash
            self._event_log.record(EventKind.ROUND_END_SUBMITTED, actor_id, {
                "round_id": round_id, "tx_hash": outcome.tx_hash,
            })
        return result

    def _settle(self, round_id: str, actor_id: str) -> ServiceResult:
        self.finalize_round(round_id, actor_id=actor_id)
        published = self.publish(round_id, actor_id=actor_id)
        return ServiceResult(success=True, data={
            "roundId": round_id,
            "winnersCount": published.winners_count,
            "commitmentRoot": published.commitment_root,
            "txHash": published.tx_hash,
        })

    # ------------------------------------------------------------------
    # Finalization and settlement
    # ------------------------------------------------------------------

    def finalize_round(self, round_id: str, actor_id: str = SYSTEM_ACTOR) -> FinalizeResult:
        """Finalize a round (idempotent)."""
        result = self._coordinator.finalize(round_id)
        if not result.already_finalized:
            self._event_log.record(EventKind.ROUND_FINALIZED, actor_id, {
                "round_id": round_id,
                "entries_ranked": result.entries_ranked,
                "prizes_distributed": result.prizes_distributed,
                "commitment_root": result.commitment_root,
            })
        return result

    def finalize(self, round_id: str, actor_id: str = SYSTEM_ACTOR) -> dict[str, Any]:
        """Finalize, then publish when there is something to publish.

        A publication failure does not fail the finalization: the
        response carries published=False and the error instead.
        """
        result = self.finalize_round(round_id, actor_id=actor_id)
        body = result.to_dict()
        body.update({"published": False, "txHash": None, "error": None})

        if not result.winners or not self._coordinator.has_submitter:
            return body

        try:
            published = self.publish(round_id, actor_id=actor_id)
        except ExternalSubmissionFailure as exc:
            body["error"] = str(exc)
            return body
        body["published"] = True
        body["txHash"] = published.tx_hash
        body["commitmentRoot"] = published.commitment_root
        return body

    def publish(self, round_id: str, actor_id: str = SYSTEM_ACTOR) -> PublishResult:
        """Publish the commitment root and mark the round SETTLED."""
        try:
            published = self._coordinator.publish(round_id)
        except ExternalSubmissionFailure as exc:
            self._event_log.record(EventKind.SUBMISSION_FAILED, actor_id, {
                "round_id": round_id,
                "call": "publish",
                "kind": exc.failure.kind.value if exc.failure else None,
                "message": str(exc),
            })
            raise
        if not published.already_published:
            self._event_log.record(EventKind.RESULTS_PUBLISHED, actor_id, {
                "round_id": round_id,
                "commitment_root": published.commitment_root,
                "tx_hash": published.tx_hash,
                "winners_count": published.winners_count,
            })
        return published

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    def proof(self, round_id: str, recipient: str) -> ClaimProof:
        """Return a recipient's claim proof. Raises NotFound for non-winners."""
        claim = self._proofs.proof_for(round_id, recipient)
        if claim is None:
            raise NotFound(f"{recipient} has no winning entry in round {round_id}")
        return claim

    @staticmethod
    def verify_claim(
        root: str, onchain_id: str, recipient: str, amount: int, proof: Sequence[str],
    ) -> bool:
        """Check a claim the way the settlement contract does."""
        leaf = leaf_hash(Winner(round_onchain_id=onchain_id, recipient=recipient, amount=amount))
        return verify_proof(root, leaf, list(proof))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
