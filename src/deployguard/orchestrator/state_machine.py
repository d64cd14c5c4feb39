"""Update session state machine for the deployguard orchestrator.

This module defines the states of one update session and the authoritative
table of allowed transitions. The orchestrator advances a
``SessionStateMachine`` after every step; any transition not listed in
``VALID_TRANSITIONS`` is a programming error and raises
``InvalidTransitionError``.
"""

from __future__ import annotations

from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class UpdateState(str, Enum):
    """States of an update session."""

    IDLE = "idle"
    CHECKING_FOR_UPDATES = "checking_for_updates"
    NO_UPDATE = "no_update"
    BACKING_UP = "backing_up"
    STOPPING = "stopping"
    PULLING = "pulling"
    BUILDING = "building"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    SUCCESS = "success"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current session state.
        target: The attempted target state.
    """

    def __init__(self, current: UpdateState, target: UpdateState):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition from {current.value} to {target.value}")


# Authoritative state machine definition
VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.CHECKING_FOR_UPDATES, UpdateState.ROLLING_BACK},
    UpdateState.CHECKING_FOR_UPDATES: {
        UpdateState.NO_UPDATE,
        UpdateState.BACKING_UP,
        UpdateState.FAILED,
    },
    UpdateState.BACKING_UP: {UpdateState.STOPPING},
    UpdateState.STOPPING: {UpdateState.PULLING, UpdateState.FAILED},
    UpdateState.PULLING: {UpdateState.BUILDING, UpdateState.ROLLING_BACK, UpdateState.FAILED},
    UpdateState.BUILDING: {UpdateState.STARTING, UpdateState.ROLLING_BACK, UpdateState.FAILED},
    UpdateState.STARTING: {
        UpdateState.HEALTH_CHECKING,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.HEALTH_CHECKING: {
        UpdateState.SUCCESS,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.ROLLING_BACK: {UpdateState.ROLLED_BACK, UpdateState.FAILED},
    UpdateState.NO_UPDATE: {UpdateState.IDLE},
    UpdateState.SUCCESS: {UpdateState.IDLE},
    UpdateState.ROLLED_BACK: {UpdateState.IDLE},
    UpdateState.FAILED: {UpdateState.IDLE},
}

TERMINAL_STATES: frozenset[UpdateState] = frozenset(
    {
        UpdateState.NO_UPDATE,
        UpdateState.SUCCESS,
        UpdateState.ROLLED_BACK,
        UpdateState.FAILED,
    }
)


def validate_transition(current: UpdateState, target: UpdateState) -> bool:
    """Return True if the transition is listed in VALID_TRANSITIONS."""
    return target in VALID_TRANSITIONS.get(current, set())


class SessionStateMachine:
    """Tracks the current state of one session and records its history."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="SessionStateMachine")
        self.state = UpdateState.IDLE
        self.history: list[UpdateState] = [UpdateState.IDLE]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: UpdateState) -> UpdateState:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        if not validate_transition(self.state, target):
            raise InvalidTransitionError(self.state, target)

        self.logger.info(
            "state_transition",
            from_state=self.state.value,
            to_state=target.value,
        )
        self.state = target
        self.history.append(target)
        return target
