"""Proof generator — inclusion proofs for prize claims.

Proofs are never cached. Every request rebuilds the winner set from the
ledger and recomputes the tree, so a proof always verifies against the
root computed from the persisted winner list. Generation is read-only.
"""

from __future__ import annotations

from typing import Optional

from podium.crypto.commitment_builder import build_commitment, derive_winners
from podium.errors import InvalidPhaseTransition
from podium.models.settlement import ClaimProof
from podium.persistence.ledger import EntryLedger


class ProofGenerator:
    """Produces claim proofs for individual recipients.

    Usage:
        generator = ProofGenerator(ledger)
        claim = generator.proof_for("round-42", "0xabc...")
        if claim is None:
            ...  # recipient has no winning entry
    """

    def __init__(self, ledger: EntryLedger) -> None:
        self._ledger = ledger

    def proof_for(self, round_id: str, recipient: str) -> Optional[ClaimProof]:
        """Return the recipient's claim proof, or None if not a winner.

        Raises NotFound for an unknown round and InvalidPhaseTransition
        if the round has not been finalized yet.
        """
        snapshot = self._ledger.snapshot(round_id)
        round_ = snapshot.round
        if not round_.is_finalized:
            raise InvalidPhaseTransition(
                f"Round {round_id} has not been finalized; no winners to prove"
            )

        winners = derive_winners(round_, snapshot.entries)
        if not winners:
            return None

        commitment = build_commitment(winners)
        found = commitment.proof_for(recipient)
        if found is None:
            return None
        winner, proof = found

        prize = next(
            e.prize for e in snapshot.entries
            if e.recipient.lower() == winner.recipient.lower() and e.prize
        )
        return ClaimProof(
            round_id=round_id,
            round_onchain_id=round_.onchain_id,
            recipient=winner.recipient,
            amount=winner.amount,
            prize=prize,
            proof=proof.path,
            root=commitment.root,
        )
