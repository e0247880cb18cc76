"""Tests for publishing the commitment root to the settlement contract."""

import pytest

from podium.chain.submitter import submit_with_retry
from podium.errors import CommitmentFailure, ExternalSubmissionFailure, InvalidPhaseTransition
from podium.models.round import RoundPhase
from podium.models.settlement import (
    SubmissionFailure,
    SubmissionFailureKind,
    SubmissionReceipt,
)
from podium.payout.prizes import PrizeCalculator
from podium.workflow.coordinator import FinalizationCoordinator

from conftest import ONCHAIN_ID, T0, TX_HASH, seed_ended_round


def _timeout() -> SubmissionFailure:
    return SubmissionFailure(SubmissionFailureKind.TIMEOUT, "receipt not found")


def _setup(ledger, submitter, **kwargs):
    sleeps = []
    seed_ended_round(ledger, [(1, 9, True), (2, 7, True), (3, 5, True)])
    coordinator = FinalizationCoordinator(
        ledger, PrizeCalculator(), submitter,
        clock=lambda: T0, sleep=sleeps.append, **kwargs,
    )
    return coordinator, sleeps


class TestPublish:
    def test_publish_settles_round(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        finalized = coordinator.finalize("round-1")

        published = coordinator.publish("round-1")

        assert published.commitment_root == finalized.commitment_root
        assert published.tx_hash == TX_HASH
        assert published.winners_count == 3
        assert submitter.publish_calls == [(ONCHAIN_ID, finalized.commitment_root)]
        stored = ledger.get_round("round-1")
        assert stored.phase == RoundPhase.SETTLED
        assert stored.commitment_root == finalized.commitment_root
        assert stored.settled_at == T0

    def test_publish_is_idempotent(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        coordinator.finalize("round-1")
        first = coordinator.publish("round-1")
        second = coordinator.publish("round-1")
        assert second.already_published
        assert second.commitment_root == first.commitment_root
        assert len(submitter.publish_calls) == 1

    def test_requires_finalization(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        with pytest.raises(InvalidPhaseTransition):
            coordinator.publish("round-1")

    def test_zero_winners_cannot_publish(self, ledger, submitter) -> None:
        seed_ended_round(ledger, [(1, 9, False)])
        coordinator = FinalizationCoordinator(ledger, PrizeCalculator(), submitter)
        coordinator.finalize("round-1")
        with pytest.raises(CommitmentFailure):
            coordinator.publish("round-1")
        assert submitter.publish_calls == []

    def test_no_submitter_configured(self, ledger) -> None:
        seed_ended_round(ledger, [(1, 9, True)])
        coordinator = FinalizationCoordinator(ledger, PrizeCalculator())
        coordinator.finalize("round-1")
        with pytest.raises(ExternalSubmissionFailure):
            coordinator.publish("round-1")

    def test_round_must_exist_and_be_ended_on_chain(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        coordinator.finalize("round-1")

        submitter.register(ended=False)
        with pytest.raises(ExternalSubmissionFailure, match="not been ended"):
            coordinator.publish("round-1")

        submitter.rounds.clear()
        with pytest.raises(ExternalSubmissionFailure, match="does not exist"):
            coordinator.publish("round-1")
        assert ledger.get_round("round-1").phase == RoundPhase.ENDED


class TestFailures:
    def test_timeouts_are_retried_with_backoff(self, ledger, submitter) -> None:
        coordinator, sleeps = _setup(ledger, submitter, max_attempts=3, backoff_seconds=1.5)
        coordinator.finalize("round-1")
        submitter.publish_outcomes = [_timeout(), _timeout()]

        published = coordinator.publish("round-1")

        assert published.tx_hash == TX_HASH
        assert len(submitter.publish_calls) == 3
        assert sleeps == [1.5, 3.0]

    def test_failure_keeps_local_results(self, ledger, submitter) -> None:
        # A timeout after finalization leaves ranks and prizes in place.
        coordinator, _ = _setup(ledger, submitter, max_attempts=2)
        finalized = coordinator.finalize("round-1")
        submitter.publish_outcomes = [_timeout(), _timeout()]

        with pytest.raises(ExternalSubmissionFailure) as excinfo:
            coordinator.publish("round-1")
        assert excinfo.value.failure.kind == SubmissionFailureKind.TIMEOUT

        stored = ledger.snapshot("round-1")
        assert stored.round.phase == RoundPhase.ENDED
        assert stored.round.settled_at is None
        assert stored.round.commitment_root is None
        assert [e.rank for e in stored.entries] == [1, 2, 3]

        # Retrying resubmits the identical root.
        published = coordinator.publish("round-1")
        assert published.commitment_root == finalized.commitment_root
        assert {root for _, root in submitter.publish_calls} == {finalized.commitment_root}

    def test_revert_is_not_retried(self, ledger, submitter) -> None:
        coordinator, sleeps = _setup(ledger, submitter)
        coordinator.finalize("round-1")
        submitter.publish_outcomes = [
            SubmissionFailure(SubmissionFailureKind.REVERTED, "execution reverted"),
        ]
        with pytest.raises(ExternalSubmissionFailure):
            coordinator.publish("round-1")
        assert len(submitter.publish_calls) == 1
        assert sleeps == []

    def test_identical_root_on_chain_is_reconciled(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        finalized = coordinator.finalize("round-1")
        submitter.register(root=finalized.commitment_root)

        published = coordinator.publish("round-1")

        assert published.commitment_root == finalized.commitment_root
        assert submitter.publish_calls == []
        assert ledger.get_round("round-1").phase == RoundPhase.SETTLED

    def test_different_root_on_chain_is_refused(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        coordinator.finalize("round-1")
        submitter.register(root="0x" + "77" * 32)

        with pytest.raises(ExternalSubmissionFailure, match="different root"):
            coordinator.publish("round-1")
        assert ledger.get_round("round-1").settled_at is None


class TestEndOnChain:
    def test_ends_open_onchain_round(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        submitter.register(ended=False)
        outcome = coordinator.end_on_chain("round-1")
        assert isinstance(outcome, SubmissionReceipt)
        assert submitter.end_calls == [ONCHAIN_ID]

    def test_already_ended_is_skipped(self, ledger, submitter) -> None:
        coordinator, _ = _setup(ledger, submitter)
        assert coordinator.end_on_chain("round-1") is None
        assert submitter.end_calls == []


class TestSubmitWithRetry:
    def test_returns_first_receipt(self) -> None:
        receipt = SubmissionReceipt(TX_HASH, 1)
        assert submit_with_retry(lambda: receipt, sleep=lambda s: None) is receipt

    def test_gives_up_after_max_attempts(self) -> None:
        calls = []

        def failing():
            calls.append(1)
            return SubmissionFailure(SubmissionFailureKind.RPC_ERROR, "connection refused")

        outcome = submit_with_retry(failing, max_attempts=4, backoff_seconds=0, sleep=lambda s: None)
        assert isinstance(outcome, SubmissionFailure)
        assert len(calls) == 4

    def test_already_settled_not_retried(self) -> None:
        calls = []

        def settled():
            calls.append(1)
            return SubmissionFailure(SubmissionFailureKind.ALREADY_SETTLED, "already settled")

        submit_with_retry(settled, max_attempts=5, sleep=lambda s: None)
        assert len(calls) == 1

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            submit_with_retry(lambda: None, max_attempts=0)
