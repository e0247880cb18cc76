"""Settlement submitter — the boundary to the external settlement contract.

The contract holds the prize funds and verifies claims against the
commitment root. The engine needs three calls:

    getGame(bytes32)                 -> (entryFee, ticketCount, merkleRoot, settledAt, ended)
    endGame(bytes32)                 stops ticket sales
    submitResults(bytes32, bytes32)  publishes the commitment root

Every write blocks for a receipt. A submission returns either a
SubmissionReceipt or a typed SubmissionFailure; nothing here raises for
an on-chain outcome. Callers must never mark a round settled without a
receipt.
"""

from __future__ import annotations

import abc
import logging
import time
from typing import Any, Callable, Optional, Union

from podium.crypto.commitment_builder import onchain_id_bytes
from podium.errors import ExternalSubmissionFailure
from podium.models.settlement import (
    OnChainRound,
    SubmissionFailure,
    SubmissionFailureKind,
    SubmissionReceipt,
)

logger = logging.getLogger(__name__)

SubmissionOutcome = Union[SubmissionReceipt, SubmissionFailure]

SETTLEMENT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getGame",
        "stateMutability": "view",
        "inputs": [{"name": "gameId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "entryFee", "type": "uint256"},
                    {"name": "ticketCount", "type": "uint256"},
                    {"name": "merkleRoot", "type": "bytes32"},
                    {"name": "settledAt", "type": "uint256"},
                    {"name": "ended", "type": "bool"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "endGame",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "gameId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "submitResults",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "gameId", "type": "bytes32"},
            {"name": "merkleRoot", "type": "bytes32"},
        ],
        "outputs": [],
    },
]


class SettlementSubmitter(abc.ABC):
    """Interface to the settlement contract. Subclass per transport."""

    @abc.abstractmethod
    def read_round(self, onchain_id: str) -> Optional[OnChainRound]:
        """Return the contract's view of a round, or None if it does not exist.

        Raises ExternalSubmissionFailure when the contract cannot be read.
        """

    @abc.abstractmethod
    def end_round(self, onchain_id: str) -> SubmissionOutcome:
        """Close ticket sales for a round on-chain."""

    @abc.abstractmethod
    def publish_root(self, onchain_id: str, root: str) -> SubmissionOutcome:
        """Publish a commitment root for a round on-chain."""


class Web3SettlementSubmitter(SettlementSubmitter):
    """SettlementSubmitter over a JSON-RPC endpoint using web3.

    Usage:
        submitter = Web3SettlementSubmitter(
            rpc_url="https://sepolia.base.org",
            private_key=os.environ["SETTLEMENT_PRIVATE_KEY"],
            contract_address="0x...",
            chain_id=84532,
        )
        outcome = submitter.publish_root(onchain_id, root)
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        chain_id: int = 84532,
        receipt_timeout: float = 300,
    ) -> None:
        from web3 import Web3, HTTPProvider
        from eth_account import Account

        self._w3 = Web3(HTTPProvider(rpc_url))
        self._account = Account.from_key(private_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=SETTLEMENT_ABI,
        )
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout

    @property
    def sender(self) -> str:
        return self._account.address

    def read_round(self, onchain_id: str) -> Optional[OnChainRound]:
        from web3.exceptions import Web3Exception

        try:
            raw = self._contract.functions.getGame(onchain_id_bytes(onchain_id)).call()
        except (Web3Exception, OSError, ValueError) as exc:
            failure = SubmissionFailure(SubmissionFailureKind.RPC_ERROR, str(exc))
            raise ExternalSubmissionFailure(
                f"Could not read round {onchain_id} from the settlement contract: {exc}",
                failure=failure,
            ) from exc
        entry_fee, ticket_count, merkle_root, settled_at, ended = raw
        # The contract returns a zeroed struct for unknown ids.
        if entry_fee == 0:
            return None
        return OnChainRound(
            entry_fee=int(entry_fee),
            ticket_count=int(ticket_count),
            merkle_root="0x" + bytes(merkle_root).hex(),
            settled_at=int(settled_at),
            ended=bool(ended),
        )

    def end_round(self, onchain_id: str) -> SubmissionOutcome:
        call = self._contract.functions.endGame(onchain_id_bytes(onchain_id))
        return self._transact(call, f"endGame({onchain_id})")

    def publish_root(self, onchain_id: str, root: str) -> SubmissionOutcome:
        call = self._contract.functions.submitResults(
            onchain_id_bytes(onchain_id),
            bytes.fromhex(root.removeprefix("0x")),
        )
        return self._transact(call, f"submitResults({onchain_id}, {root})")

    def _transact(self, call: Any, label: str) -> SubmissionOutcome:
        """Build, sign, send and wait. Maps every failure to a SubmissionFailure."""
        from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

        tx_hash: Optional[str] = None
        try:
            tx = call.build_transaction({
                "from": self._account.address,
                "nonce": self._w3.eth.get_transaction_count(self._account.address),
                "chainId": self._chain_id,
            })
            signed = self._account.sign_transaction(tx)
            raw_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            tx_hash = "0x" + bytes(raw_hash).hex()
            logger.info("Sent %s tx=%s", label, tx_hash)

            receipt = self._w3.eth.wait_for_transaction_receipt(
                raw_hash, timeout=self._receipt_timeout,
            )
        except ContractLogicError as exc:
            return _revert_failure(str(exc), tx_hash)
        except TimeExhausted as exc:
            return SubmissionFailure(SubmissionFailureKind.TIMEOUT, str(exc), tx_hash)
        except (Web3Exception, OSError, ValueError) as exc:
            return SubmissionFailure(SubmissionFailureKind.RPC_ERROR, str(exc), tx_hash)

        if receipt["status"] != 1:
            return SubmissionFailure(
                SubmissionFailureKind.REVERTED,
                f"{label} reverted in block {receipt['blockNumber']}",
                tx_hash,
            )
        logger.info("Confirmed %s in block %s", label, receipt["blockNumber"])
        return SubmissionReceipt(tx_hash=tx_hash, block_number=int(receipt["blockNumber"]))


def _revert_failure(message: str, tx_hash: Optional[str]) -> SubmissionFailure:
    lowered = message.lower()
    if "already" in lowered and ("settled" in lowered or "submitted" in lowered):
        return SubmissionFailure(SubmissionFailureKind.ALREADY_SETTLED, message, tx_hash)
    return SubmissionFailure(SubmissionFailureKind.REVERTED, message, tx_hash)


def submit_with_retry(
    submit: Callable[[], SubmissionOutcome],
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SubmissionOutcome:
    """Call submit until it confirms or fails for good.

    TIMEOUT and RPC_ERROR are retried with exponential backoff
    (backoff, 2x backoff, 4x backoff, ...). Reverts and already-settled
    failures return immediately. Returns the last outcome.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    outcome: SubmissionOutcome
    for attempt in range(1, max_attempts + 1):
        outcome = submit()
        if isinstance(outcome, SubmissionReceipt):
            return outcome
        if not outcome.retryable or attempt == max_attempts:
            break
        delay = backoff_seconds * (2 ** (attempt - 1))
        logger.warning(
            "Submission attempt %d/%d failed (%s: %s); retrying in %.1fs",
            attempt, max_attempts, outcome.kind.value, outcome.message, delay,
        )
        sleep(delay)

    logger.error(
        "Submission failed after %d attempt(s): %s: %s",
        attempt, outcome.kind.value, outcome.message,
    )
    return outcome
