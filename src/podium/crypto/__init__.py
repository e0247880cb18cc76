"""Cryptographic primitives — Merkle tree, commitment building, claim proofs."""

from podium.crypto.commitment_builder import CommitmentBuilder, build_commitment, leaf_hash
from podium.crypto.merkle import MerkleTree, verify_proof

__all__ = ["CommitmentBuilder", "MerkleTree", "build_commitment", "leaf_hash", "verify_proof"]
