"""Tests for the HTTP API."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from podium.api import create_app
from podium.config import Settings
from podium.engine.state_machine import LifecycleAction
from podium.models.settlement import SubmissionFailure, SubmissionFailureKind
from podium.persistence.ledger import InMemoryEntryLedger
from podium.service import SettlementService

from conftest import ONCHAIN_ID, TX_HASH, FakeSubmitter, addr

FINALIZE = {"Authorization": "Bearer finalize-secret"}
OPERATOR = {"Authorization": "Bearer operator-token"}


@pytest.fixture
def onchain() -> FakeSubmitter:
    fake = FakeSubmitter()
    fake.register()
    return fake


@pytest.fixture
def service(onchain) -> SettlementService:
    service = SettlementService(InMemoryEntryLedger(), submitter=onchain, sleep=lambda s: None)
    service.create_round("round-1", ONCHAIN_ID, Decimal("100"), question_count=3)
    for seed, score in ((1, 3), (2, 2), (3, 1)):
        service.add_entry("round-1", addr(seed), entry_id=f"e{seed}", score=score,
                          paid_amount=Decimal("5"))
    return service


@pytest.fixture
def client(service) -> TestClient:
    settings = Settings(finalize_secret="finalize-secret", operator_token="operator-token")
    return TestClient(create_app(service, settings))


def _lifecycle(client: TestClient, action: str, round_id: str = "round-1"):
    return client.post(
        "/api/v1/admin/lifecycle",
        json={"action": action, "roundId": round_id},
        headers=OPERATOR,
    )


class TestAuth:
    def test_finalize_requires_bearer(self, client) -> None:
        response = client.post("/api/v1/internal/rounds/round-1/finalize")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_wrong_token(self, client) -> None:
        response = client.post(
            "/api/v1/internal/rounds/round-1/finalize",
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    def test_operator_token_is_not_finalize_secret(self, client) -> None:
        response = client.post("/api/v1/internal/rounds/round-1/finalize", headers=OPERATOR)
        assert response.status_code == 401

    def test_unset_secret_disables_endpoint(self, service) -> None:
        client = TestClient(create_app(service, Settings()))
        response = _lifecycle(client, "start")
        assert response.status_code == 401


class TestLifecycleRoute:
    def test_start_end_settle(self, client, onchain) -> None:
        onchain.register(ended=False)
        started = _lifecycle(client, "start")
        assert started.status_code == 200
        assert started.json() == {"success": True, "roundId": "round-1", "newPhase": "live"}

        ended = _lifecycle(client, "end").json()
        assert ended["newPhase"] == "ended"
        assert ended["endTxHash"] == TX_HASH

        settled = _lifecycle(client, "settle").json()
        assert settled["newPhase"] == "settled"
        assert settled["winnersCount"] == 3

    def test_unknown_action(self, client) -> None:
        response = _lifecycle(client, "explode")
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_illegal_transition(self, client) -> None:
        response = _lifecycle(client, "end")
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_phase_transition"

    def test_unknown_round(self, client) -> None:
        response = _lifecycle(client, "start", round_id="nope")
        assert response.status_code == 404

    def test_end_warning(self, client, onchain) -> None:
        onchain.register(ended=False)
        onchain.end_outcomes = [SubmissionFailure(SubmissionFailureKind.TIMEOUT, "slow")] * 3
        _lifecycle(client, "start")
        body = _lifecycle(client, "end").json()
        assert body["success"] is True
        assert body["warnings"]


class TestFinalizeRoute:
    def _end(self, service) -> None:
        service.dispatch(LifecycleAction.START, "round-1")
        service.dispatch(LifecycleAction.END, "round-1")

    def test_finalize_and_publish(self, client, service) -> None:
        self._end(service)
        response = client.post("/api/v1/internal/rounds/round-1/finalize", headers=FINALIZE)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["alreadyFinalized"] is False
        assert body["prizePool"] == "100"
        assert [w["rank"] for w in body["winners"]] == [1, 2, 3]
        assert body["published"] is True
        assert body["txHash"] == TX_HASH

    def test_second_trigger_is_idempotent(self, client, service) -> None:
        self._end(service)
        first = client.post("/api/v1/internal/rounds/round-1/finalize", headers=FINALIZE).json()
        second = client.post("/api/v1/internal/rounds/round-1/finalize", headers=FINALIZE).json()
        assert second["alreadyFinalized"] is True
        assert second["winners"] == first["winners"]
        assert second["commitmentRoot"] == first["commitmentRoot"]

    def test_live_round_is_conflict(self, client, service) -> None:
        service.dispatch(LifecycleAction.START, "round-1")
        response = client.post("/api/v1/internal/rounds/round-1/finalize", headers=FINALIZE)
        assert response.status_code == 409

    def test_publication_failure_in_body(self, client, service, onchain) -> None:
        self._end(service)
        onchain.publish_outcomes = [
            SubmissionFailure(SubmissionFailureKind.REVERTED, "execution reverted"),
        ]
        body = client.post("/api/v1/internal/rounds/round-1/finalize", headers=FINALIZE).json()
        assert body["success"] is True
        assert body["published"] is False
        assert body["error"]


class TestReadRoutes:
    def test_round_status(self, client) -> None:
        body = client.get("/api/v1/rounds/round-1").json()
        assert body["success"] is True
        assert body["phase"] == "open"
        assert body["paidEntries"] == 3

    def test_proof(self, client, service) -> None:
        service.dispatch(LifecycleAction.START, "round-1")
        service.dispatch(LifecycleAction.END, "round-1")
        service.finalize_round("round-1")

        body = client.get("/api/v1/rounds/round-1/proof", params={"recipient": addr(1)}).json()
        assert body["amount"] == "60000000"
        assert SettlementService.verify_claim(
            body["root"], ONCHAIN_ID, body["recipient"], int(body["amount"]), body["proof"],
        )

    def test_proof_for_non_winner(self, client, service) -> None:
        service.dispatch(LifecycleAction.START, "round-1")
        service.dispatch(LifecycleAction.END, "round-1")
        service.finalize_round("round-1")
        response = client.get("/api/v1/rounds/round-1/proof", params={"recipient": addr(7)})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_proof_requires_recipient(self, client) -> None:
        response = client.get("/api/v1/rounds/round-1/proof")
        assert response.status_code == 400
