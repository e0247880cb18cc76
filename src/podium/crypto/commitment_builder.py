"""Commitment builder — turns a winner set into a Merkle commitment.

Leaf encoding (OpenZeppelin StandardMerkleTree, types
["bytes32", "address", "uint256"]):

    leaf = keccak256(keccak256(abi.encode(roundId, recipient, amount)))

The double hash is mandatory: the settlement contract verifies claims
with exactly this construction, and any other scheme silently breaks
every proof.

The builder is deterministic: winners are ordered by recipient before
insertion and the tree sorts leaf hashes, so the same winner set always
produces the same root, whatever order the ledger returned rows in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from eth_abi import encode
from eth_utils import is_address, keccak, to_checksum_address

from podium.crypto.merkle import MerkleProof, MerkleTree
from podium.errors import CommitmentFailure
from podium.models.round import Entry, Round
from podium.models.settlement import Winner
from podium.payout.prizes import to_base_units


LEAF_TYPES = ["bytes32", "address", "uint256"]

_UINT256_MAX = 2 ** 256 - 1


def onchain_id_bytes(onchain_id: str) -> bytes:
    """Decode a 0x-prefixed bytes32 round id. Raises CommitmentFailure."""
    raw = onchain_id.removeprefix("0x")
    try:
        value = bytes.fromhex(raw)
    except ValueError as exc:
        raise CommitmentFailure(f"Round id is not hex: {onchain_id!r}") from exc
    if len(value) != 32:
        raise CommitmentFailure(f"Round id must be 32 bytes, got {len(value)}")
    return value


def leaf_hash(winner: Winner) -> bytes:
    """Compute the double-hashed leaf for one winner."""
    if not is_address(winner.recipient):
        raise CommitmentFailure(f"Invalid recipient address: {winner.recipient!r}")
    if not 0 < winner.amount <= _UINT256_MAX:
        raise CommitmentFailure(
            f"Winner {winner.recipient} has out-of-range amount {winner.amount}"
        )
    encoded = encode(
        LEAF_TYPES,
        [
            onchain_id_bytes(winner.round_onchain_id),
            to_checksum_address(winner.recipient),
            winner.amount,
        ],
    )
    return keccak(keccak(encoded))


@dataclass
class Commitment:
    """A built commitment: the root, the tree, and the winners behind it."""
    root: str
    winners: list[Winner]
    _tree: MerkleTree = field(repr=False)

    def proof_for(self, recipient: str) -> Optional[tuple[Winner, MerkleProof]]:
        """Return (winner, proof) for a recipient, or None if not a winner."""
        wanted = recipient.lower()
        for winner in self.winners:
            if winner.recipient.lower() == wanted:
                proof = self._tree.inclusion_proof(leaf_hash(winner))
                if proof is None:
                    return None
                return winner, proof
        return None


class CommitmentBuilder:
    """Builds the Merkle commitment for one round.

    Usage:
        builder = CommitmentBuilder("0x" + "ab" * 32)
        builder.add_winner("0x1111...", 60_000_000)
        builder.add_winner("0x2222...", 30_000_000)
        commitment = builder.build()
        commitment.root
    """

    def __init__(self, round_onchain_id: str) -> None:
        onchain_id_bytes(round_onchain_id)
        self._round_onchain_id = round_onchain_id
        self._winners: dict[str, Winner] = {}

    def add_winner(self, recipient: str, amount: int) -> None:
        """Add one winner. A recipient may appear only once."""
        key = recipient.lower()
        if key in self._winners:
            raise CommitmentFailure(f"Duplicate recipient in winner set: {recipient}")
        self._winners[key] = Winner(
            round_onchain_id=self._round_onchain_id,
            recipient=recipient,
            amount=amount,
        )

    def build(self) -> Commitment:
        """Build the tree. Raises CommitmentFailure on an empty winner set."""
        if not self._winners:
            raise CommitmentFailure("Cannot build a commitment over zero winners")

        winners = [self._winners[key] for key in sorted(self._winners)]
        tree = MerkleTree()
        for winner in winners:
            tree.add_leaf(leaf_hash(winner))
        root = tree.compute_root()
        return Commitment(root=root, winners=winners, _tree=tree)


def derive_winners(round_: Round, entries: Iterable[Entry]) -> list[Winner]:
    """Rebuild the winner list from persisted round and entry state.

    Only ranked entries with a positive prize are winners. Amounts are
    converted at the round's own token precision.
    """
    winners = []
    for entry in entries:
        if entry.rank is None or entry.prize is None or entry.prize <= 0:
            continue
        winners.append(Winner(
            round_onchain_id=round_.onchain_id,
            recipient=entry.recipient,
            amount=to_base_units(entry.prize, round_.token_decimals),
        ))
    return sorted(winners, key=lambda w: w.recipient.lower())


def build_commitment(winners: Iterable[Winner]) -> Commitment:
    """Build a commitment from already-derived winners (same round id)."""
    winners = list(winners)
    if not winners:
        raise CommitmentFailure("Cannot build a commitment over zero winners")
    round_ids = {w.round_onchain_id.lower() for w in winners}
    if len(round_ids) != 1:
        raise CommitmentFailure("Winner set spans more than one round")
    builder = CommitmentBuilder(winners[0].round_onchain_id)
    for winner in winners:
        builder.add_winner(winner.recipient, winner.amount)
    return builder.build()
