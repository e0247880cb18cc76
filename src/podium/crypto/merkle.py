"""Merkle tree compatible with OpenZeppelin's StandardMerkleTree.

Uses keccak256. The layout matches the JS/Solidity reference so that the
settlement contract's MerkleProof.verify accepts every proof produced here:

- Leaves are hashed by the caller (see commitment_builder.leaf_hash).
- Leaves are sorted bytewise before tree construction (canonical order).
- The tree is a complete binary tree stored in an array of 2n-1 nodes,
  leaves occupying the tail in reverse order.
- Internal nodes hash the *sorted* pair: keccak256(min(a, b) ‖ max(a, b)),
  so proofs carry no left/right markers.

An empty tree has no root; constructing one is an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from eth_utils import keccak

from podium.errors import ValidationError


@dataclass(frozen=True)
class MerkleProof:
    """An inclusion proof for a single leaf. Hashes are 0x-prefixed hex."""
    leaf_hash: str
    path: list[str]  # Sibling hashes, leaf level first
    root: str


class MerkleTree:
    """A deterministic Merkle tree over 32-byte leaf hashes.

    Usage:
        tree = MerkleTree()
        tree.add_leaf(leaf_hash(winner_a))
        tree.add_leaf(leaf_hash(winner_b))
        root = tree.compute_root()
        proof = tree.inclusion_proof(leaf_hash(winner_a))
    """

    def __init__(self) -> None:
        self._leaves: list[bytes] = []
        self._nodes: list[bytes] = []
        self._computed = False

    def add_leaf(self, leaf: bytes) -> None:
        """Add a 32-byte leaf hash. Must be called before compute_root."""
        if self._computed:
            raise RuntimeError("Tree already computed. Create a new tree.")
        if len(leaf) != 32:
            raise ValueError(f"Leaf must be 32 bytes, got {len(leaf)}")
        self._leaves.append(bytes(leaf))

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    def compute_root(self) -> str:
        """Compute the Merkle root as 0x-prefixed hex.

        Raises ValueError on an empty tree.
        """
        if not self._leaves:
            raise ValueError("Cannot build a Merkle tree with no leaves")

        sorted_leaves = sorted(self._leaves)
        size = 2 * len(sorted_leaves) - 1
        nodes: list[bytes] = [b""] * size
        for i, leaf in enumerate(sorted_leaves):
            nodes[size - 1 - i] = leaf
        for i in range(size - 1 - len(sorted_leaves), -1, -1):
            nodes[i] = hash_pair(nodes[_left(i)], nodes[_right(i)])

        self._nodes = nodes
        self._computed = True
        return _hex(nodes[0])

    def inclusion_proof(self, leaf: bytes) -> MerkleProof | None:
        """Generate an inclusion proof for a leaf.

        Returns None if the leaf is not in the tree.
        Must call compute_root first.
        """
        if not self._computed:
            raise RuntimeError("Must call compute_root before generating proofs")

        try:
            index = self._nodes.index(bytes(leaf), len(self._nodes) - len(self._leaves))
        except ValueError:
            return None

        path: list[str] = []
        while index > 0:
            path.append(_hex(self._nodes[_sibling(index)]))
            index = _parent(index)

        return MerkleProof(leaf_hash=_hex(leaf), path=path, root=_hex(self._nodes[0]))


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Hash two nodes in sorted order (commutative)."""
    left, right = (a, b) if a <= b else (b, a)
    return keccak(left + right)


def process_proof(leaf: bytes, path: Sequence[str | bytes]) -> bytes:
    """Fold a proof onto a leaf, returning the implied root."""
    current = bytes(leaf)
    for sibling in path:
        current = hash_pair(current, _to_bytes(sibling))
    return current


def verify_proof(root: str | bytes, leaf: bytes, path: Sequence[str | bytes]) -> bool:
    """Check that leaf is included under root. Mirrors MerkleProof.verify."""
    return process_proof(leaf, path) == _to_bytes(root)


def _left(i: int) -> int:
    return 2 * i + 1


def _right(i: int) -> int:
    return 2 * i + 2


def _parent(i: int) -> int:
    return (i - 1) // 2


def _sibling(i: int) -> int:
    return i + 1 if i % 2 == 1 else i - 1


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        decoded = bytes.fromhex(value.removeprefix("0x"))
    except ValueError as exc:
        raise ValidationError(f"Not a hex node hash: {value!r}") from exc
    if len(decoded) != 32:
        raise ValidationError(f"Node hash must be 32 bytes, got {len(decoded)}: {value!r}")
    return decoded
