"""Round lifecycle engine — phase transitions and operator actions."""

from podium.engine.state_machine import ACTION_TARGETS, LifecycleAction, RoundStateMachine

__all__ = ["ACTION_TARGETS", "LifecycleAction", "RoundStateMachine"]
