"""Round lifecycle state machine — enforces the exact transition rules.

Transitions are fail-closed: any transition not explicitly allowed is
rejected. Phases only move forward, one step at a time:

    OPEN → LIVE → ENDED → SETTLED

SETTLED is never applied speculatively. It requires a finalized round and
a commitment root that the external ledger has already confirmed.
"""

from __future__ import annotations

import enum
from typing import Optional

from podium.errors import InvalidPhaseTransition
from podium.models.round import Round, RoundPhase


# Legal transitions: (from_phase, to_phase)
_TRANSITIONS: set[tuple[RoundPhase, RoundPhase]] = {
    (RoundPhase.OPEN, RoundPhase.LIVE),
    (RoundPhase.LIVE, RoundPhase.ENDED),
    (RoundPhase.ENDED, RoundPhase.SETTLED),
}

# Repeated triggers that are accepted without changing anything.
_NO_OPS: set[tuple[RoundPhase, RoundPhase]] = {
    (RoundPhase.ENDED, RoundPhase.ENDED),
}


class LifecycleAction(str, enum.Enum):
    """Operator-facing lifecycle actions."""
    START = "start"
    END = "end"
    SETTLE = "settle"


ACTION_TARGETS: dict[LifecycleAction, RoundPhase] = {
    LifecycleAction.START: RoundPhase.LIVE,
    LifecycleAction.END: RoundPhase.ENDED,
    LifecycleAction.SETTLE: RoundPhase.SETTLED,
}


class RoundStateMachine:
    """Validates round phase transitions.

    The machine never mutates a round. Callers ask it first, then apply
    the change through the ledger's compare-and-set.
    """

    def transition(
        self,
        round_: Round,
        target: RoundPhase,
        confirmed_root: Optional[str] = None,
    ) -> list[str]:
        """Return the list of violated guards. Empty list means legal.

        confirmed_root is the commitment root the external ledger has
        confirmed; only the ENDED → SETTLED transition reads it.
        """
        if (round_.phase, target) in _NO_OPS:
            return []
        if (round_.phase, target) not in _TRANSITIONS:
            return [f"Illegal transition: {round_.phase.value} → {target.value}"]

        errors: list[str] = []
        if target == RoundPhase.LIVE:
            if round_.question_count < 1:
                errors.append(
                    f"{round_.round_id}: cannot start a round with no questions"
                )

        elif target == RoundPhase.SETTLED:
            if not round_.is_finalized:
                errors.append(f"{round_.round_id}: round has not been finalized")
            if not confirmed_root:
                errors.append(
                    f"{round_.round_id}: no confirmed commitment root to settle with"
                )

        return errors

    def require(
        self,
        round_: Round,
        target: RoundPhase,
        confirmed_root: Optional[str] = None,
    ) -> bool:
        """Raise InvalidPhaseTransition unless the transition is legal.

        Returns False when the transition is an accepted no-op (the round
        is already in the target phase), True when it must be applied.
        """
        errors = self.transition(round_, target, confirmed_root)
        if errors:
            raise InvalidPhaseTransition("; ".join(errors))
        return round_.phase != target

    @staticmethod
    def is_terminal(phase: RoundPhase) -> bool:
        return phase == RoundPhase.SETTLED
