"""Turn loop phase machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Phase Diagram:

    REQUESTING ──> STREAMING ──> ACCUMULATING ──┬──> REQUESTING
                                                │
                                                ├──> DISPATCHING ──┬──> AWAITING_APPROVAL
                                                │                  ├──> SPAWNING
                                                │                  └──> REQUESTING
                                                │
                                                └──> TERMINATED

    Any phase ──> TERMINATED  (final answer, cancellation, fatal error)
"""
from __future__ import annotations

from .models import TurnPhase

VALID_TRANSITIONS: dict[TurnPhase, set[TurnPhase]] = {
    TurnPhase.REQUESTING: {
        TurnPhase.STREAMING,
        TurnPhase.TERMINATED,
    },
    TurnPhase.STREAMING: {
        TurnPhase.ACCUMULATING,
        TurnPhase.TERMINATED,
    },
    TurnPhase.ACCUMULATING: {
        TurnPhase.DISPATCHING,
        # Empty turn answered with a nudge
        TurnPhase.REQUESTING,
        TurnPhase.TERMINATED,
    },
    TurnPhase.DISPATCHING: {
        TurnPhase.AWAITING_APPROVAL,
        TurnPhase.SPAWNING,
        TurnPhase.REQUESTING,
        TurnPhase.TERMINATED,
    },
    TurnPhase.AWAITING_APPROVAL: {
        TurnPhase.DISPATCHING,
        TurnPhase.SPAWNING,
        TurnPhase.REQUESTING,
        TurnPhase.TERMINATED,
    },
    TurnPhase.SPAWNING: {
        TurnPhase.DISPATCHING,
        TurnPhase.AWAITING_APPROVAL,
        TurnPhase.REQUESTING,
        TurnPhase.TERMINATED,
    },
    TurnPhase.TERMINATED: set(),
}


def validate_transition(current: TurnPhase, target: TurnPhase) -> None:
    """Validate a phase transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(
            sorted(p.value for p in allowed)
        ) or "none (terminal)"
        raise ValueError(
            f"Invalid phase transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
