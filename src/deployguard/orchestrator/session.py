"""Update session context and typed results.

An UpdateSession lives for exactly one invocation. Its UpdateResult is the
only thing returned to the caller; nothing but the last-backup record
outlives the session.
"""

from __future__ import annotations

import uuid
from enum import Enum

from pydantic import BaseModel, Field

from deployguard.orchestrator.state_machine import UpdateState
from deployguard.pipeline.backup import BackupHandle
from deployguard.pipeline.git_ops import StashRecord


class DeploymentState(str, Enum):
    """Observable lifecycle state of the deployed service."""

    STOPPED = "stopped"
    BUILDING = "building"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class SessionOutcome(str, Enum):
    """Final classification of a session.

    Attributes:
        SUCCESS: Update applied and verified healthy
        NO_UPDATE: Already at the remote revision, nothing done
        ROLLED_BACK: Update failed, previous state restored and healthy
        FATAL_ABORT: Session halted; deployment left in its last state
    """

    SUCCESS = "success"
    NO_UPDATE = "no_update"
    ROLLED_BACK = "rolled_back"
    FATAL_ABORT = "fatal_abort"


class ErrorKind(str, Enum):
    """Reason a session did not succeed."""

    SOURCE_UNREACHABLE = "source_unreachable"
    LOCAL_CHANGES = "local_changes"
    STOP_FAILED = "stop_failed"
    PULL_FAILED = "pull_failed"
    MANIFEST_MISSING = "manifest_missing"
    BUILD_FAILED = "build_failed"
    START_FAILED = "start_failed"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"
    BACKUP_NOT_FOUND = "backup_not_found"
    ROLLBACK_FAILED = "rollback_failed"


class SessionMode(str, Enum):
    """Kind of session an invocation runs."""

    UPDATE = "update"
    ROLLBACK = "rollback"


class UpdateOptions(BaseModel):
    """Input flags of an update session.

    Attributes:
        force: Update even without a new revision, skip the confirmation
        skip_backup: Do not back up; disables rollback
        no_cache: Build images without the layer cache
    """

    force: bool = Field(default=False, description="Force update")
    skip_backup: bool = Field(default=False, description="Skip backup")
    no_cache: bool = Field(default=False, description="Disable build cache")


class UpdateResult(BaseModel):
    """Typed result of an update or standalone rollback session.

    Attributes:
        session_id: Identifier shared by all log events of the session
        mode: Update session or standalone rollback
        outcome: Final classification
        error_kind: Why the session did not succeed (None on success/no-op)
        error: Human-readable error detail
        rollback_error: Why the rollback attempt failed, if one was made
        prior_revision: Revision deployed when the session started
        target_revision: Revision the session tried to deploy
        new_revision: Revision deployed when the session ended
        backup_name: Backup taken or restored by this session
        backup_count: Number of retained backups at the end of the session
        deployment_state: Last observed deployment state
        states: State machine history
        steps_completed: Completed steps in order
        stash: Local modifications set aside by the pre-flight guard
        recent_commits: One-line summaries of recent commits (success only)
        service_status: Output of ``docker compose ps`` (success only)
        workspace_size_bytes: Disk usage of the workspace directory, if configured
        duration_seconds: Session duration
    """

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    mode: SessionMode = Field(default=SessionMode.UPDATE)
    outcome: SessionOutcome = Field(default=SessionOutcome.FATAL_ABORT)
    error_kind: ErrorKind | None = Field(default=None)
    error: str | None = Field(default=None)
    rollback_error: str | None = Field(default=None)
    prior_revision: str | None = Field(default=None)
    target_revision: str | None = Field(default=None)
    new_revision: str | None = Field(default=None)
    backup_name: str | None = Field(default=None)
    backup_count: int = Field(default=0, ge=0)
    deployment_state: DeploymentState = Field(default=DeploymentState.UNKNOWN)
    states: list[UpdateState] = Field(default_factory=list)
    steps_completed: list[str] = Field(default_factory=list)
    stash: StashRecord | None = Field(default=None)
    recent_commits: list[str] = Field(default_factory=list)
    service_status: str | None = Field(default=None)
    workspace_size_bytes: int | None = Field(default=None, ge=0)
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def exit_code(self) -> int:
        """Process exit code: 0 for success or no-op, 1 otherwise.

        A restored backup counts as success for a standalone rollback, but
        not for an update session whose requested revision did not apply.
        """
        if self.outcome in (SessionOutcome.SUCCESS, SessionOutcome.NO_UPDATE):
            return 0
        if self.outcome == SessionOutcome.ROLLED_BACK and self.mode == SessionMode.ROLLBACK:
            return 0
        return 1


class UpdateSession:
    """Mutable context of one invocation, owned by the orchestrator.

    Attributes:
        options: Input flags
        result: Result being assembled
        backup: Backup taken for this session, if any
        rollback_eligible: Whether a failure may trigger a rollback
        initial_state: Deployment state observed before any command
    """

    def __init__(
        self,
        options: UpdateOptions,
        mode: SessionMode = SessionMode.UPDATE,
    ) -> None:
        self.options = options
        self.result = UpdateResult(mode=mode)
        self.backup: BackupHandle | None = None
        self.rollback_eligible = False
        self.initial_state = DeploymentState.UNKNOWN

    @property
    def session_id(self) -> str:
        return self.result.session_id

    def fail(self, kind: ErrorKind, error: str) -> None:
        """Record why the session is not succeeding."""
        self.result.error_kind = kind
        self.result.error = error
