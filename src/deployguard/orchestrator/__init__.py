"""Orchestrator subsystem for deployguard.

This module implements the update session state machine, the session
context and result types, and the orchestrator that drives one update or
rollback session to a terminal state.
"""

from __future__ import annotations

from deployguard.orchestrator.session import (
    DeploymentState,
    ErrorKind,
    SessionMode,
    SessionOutcome,
    UpdateOptions,
    UpdateResult,
    UpdateSession,
)
from deployguard.orchestrator.state_machine import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    SessionStateMachine,
    UpdateState,
    validate_transition,
)
from deployguard.orchestrator.updater import UpdateOrchestrator

__all__ = [
    # Session
    "DeploymentState",
    "ErrorKind",
    "SessionMode",
    "SessionOutcome",
    "UpdateOptions",
    "UpdateResult",
    "UpdateSession",
    # State machine
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "InvalidTransitionError",
    "SessionStateMachine",
    "UpdateState",
    "validate_transition",
    # Orchestrator
    "UpdateOrchestrator",
]
