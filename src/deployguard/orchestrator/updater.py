"""Update orchestrator: sequences one update or rollback session.

Lifecycle of an update session:
1. Compare the deployed revision with the remote one (no-op if equal)
2. Guard against uncommitted local modifications
3. Back up the deployment artifacts and the current revision
4. Stop the service
5. Advance the checkout to the target revision and check the manifest
6. Rebuild the images
7. Start the service
8. Poll health
9. On failure, restore the session backup once and verify it

Each step is a handler returning the next UpdateState; the run loop is a
plain dispatch over SessionStateMachine until a terminal state is reached.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from git import GitCommandError

from deployguard.config import DeployguardConfig
from deployguard.logging import bind_session_context, get_logger
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
    VALID_TRANSITIONS,
    SessionStateMachine,
    UpdateState,
)
from deployguard.pipeline.backup import BackupError, BackupManager, BackupNotFound
from deployguard.pipeline.container import ComposeManager, ServiceStatus
from deployguard.pipeline.git_ops import SourceUnreachable, VersionTracker
from deployguard.pipeline.health import HealthMonitor, HealthVerdict

ConfirmCallback = Callable[[str], bool]
StepHandler = Callable[[UpdateSession], Awaitable[UpdateState]]

_OUTCOMES: dict[UpdateState, SessionOutcome] = {
    UpdateState.SUCCESS: SessionOutcome.SUCCESS,
    UpdateState.NO_UPDATE: SessionOutcome.NO_UPDATE,
    UpdateState.ROLLED_BACK: SessionOutcome.ROLLED_BACK,
    UpdateState.FAILED: SessionOutcome.FATAL_ABORT,
}

_STEP_ERRORS: dict[UpdateState, ErrorKind] = {
    UpdateState.CHECKING_FOR_UPDATES: ErrorKind.SOURCE_UNREACHABLE,
    UpdateState.STOPPING: ErrorKind.STOP_FAILED,
    UpdateState.PULLING: ErrorKind.PULL_FAILED,
    UpdateState.BUILDING: ErrorKind.BUILD_FAILED,
    UpdateState.STARTING: ErrorKind.START_FAILED,
    UpdateState.HEALTH_CHECKING: ErrorKind.UNHEALTHY,
    UpdateState.ROLLING_BACK: ErrorKind.ROLLBACK_FAILED,
}

_SERVICE_TO_DEPLOYMENT: dict[ServiceStatus, DeploymentState] = {
    ServiceStatus.HEALTHY: DeploymentState.HEALTHY,
    ServiceStatus.UNHEALTHY: DeploymentState.UNHEALTHY,
    ServiceStatus.RUNNING: DeploymentState.STARTING,
    ServiceStatus.UNKNOWN: DeploymentState.UNKNOWN,
}


def _decline(prompt: str) -> bool:
    return False


def _directory_size(path: Path) -> int:
    """Return the apparent size in bytes of all regular files under ``path``."""
    return sum(
        entry.stat().st_size
        for entry in path.rglob("*")
        if entry.is_file() and not entry.is_symlink()
    )


class UpdateOrchestrator:
    """Runs update and standalone rollback sessions.

    Sessions are strictly sequential; the orchestrator holds no lock and
    assumes no other invocation touches the project or backup directory.

    Attributes:
        config: Root configuration
        tracker: Revision tracker over the project checkout
        backups: Backup manager
        compose: Container lifecycle controller
        monitor: Health monitor for the gated service
        confirm: Callback asked before stashing local modifications
    """

    def __init__(
        self,
        config: DeployguardConfig,
        tracker: VersionTracker,
        backups: BackupManager,
        compose: ComposeManager,
        monitor: HealthMonitor,
        confirm: ConfirmCallback | None = None,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.backups = backups
        self.compose = compose
        self.monitor = monitor
        self.confirm = confirm or _decline
        self.logger = get_logger(__name__)

        self._handlers: dict[UpdateState, StepHandler] = {
            UpdateState.CHECKING_FOR_UPDATES: self._check_for_updates,
            UpdateState.BACKING_UP: self._back_up,
            UpdateState.STOPPING: self._stop,
            UpdateState.PULLING: self._pull,
            UpdateState.BUILDING: self._build,
            UpdateState.STARTING: self._start,
            UpdateState.HEALTH_CHECKING: self._health_check,
            UpdateState.ROLLING_BACK: self._roll_back,
        }

    @classmethod
    def from_config(
        cls,
        config: DeployguardConfig,
        confirm: ConfirmCallback | None = None,
    ) -> UpdateOrchestrator:
        """Wire the orchestrator and its collaborators from configuration.

        Raises:
            InvalidGitRepositoryError: If the project directory is not a git checkout
            NoSuchPathError: If the project directory does not exist
        """
        tracker = VersionTracker(config.project)
        backups = BackupManager(config.backup, config.project, tracker)
        compose = ComposeManager(config.docker, config.project.project_dir)
        monitor = HealthMonitor(compose, config.docker.service_name)
        return cls(config, tracker, backups, compose, monitor, confirm=confirm)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def run_update(self, options: UpdateOptions | None = None) -> UpdateResult:
        """Run one update session to a terminal state.

        Args:
            options: Session flags (defaults to no flags)

        Returns:
            UpdateResult describing the outcome
        """
        session = UpdateSession(options or UpdateOptions())
        machine = SessionStateMachine()
        bind_session_context(session.session_id, mode=SessionMode.UPDATE.value)
        start = time.monotonic()

        self.logger.info(
            "update_session_started",
            force=session.options.force,
            skip_backup=session.options.skip_backup,
            no_cache=session.options.no_cache,
            project_dir=str(self.config.project.project_dir),
        )

        session.initial_state = await self._observe_state()
        session.result.deployment_state = session.initial_state

        machine.transition(UpdateState.CHECKING_FOR_UPDATES)
        await self._drive(session, machine)

        if machine.state == UpdateState.SUCCESS:
            await self._complete_success(session)

        return self._finish(session, machine, start)

    async def rollback(self) -> UpdateResult:
        """Restore the most recent backup outside of an update session.

        The backup named by the last-backup record is preferred; otherwise
        the newest archive in the backup directory is used.
        """
        session = UpdateSession(UpdateOptions(), mode=SessionMode.ROLLBACK)
        machine = SessionStateMachine()
        bind_session_context(session.session_id, mode=SessionMode.ROLLBACK.value)
        start = time.monotonic()

        self.logger.info("rollback_session_started")

        session.backup = self.backups.last_recorded() or self.backups.most_recent()
        session.rollback_eligible = session.backup is not None
        session.result.prior_revision = self.tracker.current()
        session.result.new_revision = session.result.prior_revision

        machine.transition(UpdateState.ROLLING_BACK)
        if session.backup is None:
            self.logger.error("rollback_no_backup", backup_dir=str(self.backups.backup_dir))
            session.fail(ErrorKind.BACKUP_NOT_FOUND, "No backup information found. Cannot rollback.")
            machine.transition(UpdateState.FAILED)
        else:
            session.result.target_revision = session.backup.revision
            await self._drive(session, machine)

        return self._finish(session, machine, start)

    async def _drive(self, session: UpdateSession, machine: SessionStateMachine) -> None:
        """Dispatch step handlers until the machine reaches a terminal state."""
        while not machine.is_terminal:
            current = machine.state
            handler = self._handlers[current]
            try:
                target = await handler(session)
            except Exception as e:
                self.logger.exception(
                    "update_step_crashed",
                    state=current.value,
                    error=str(e),
                )
                if current == UpdateState.ROLLING_BACK:
                    self._mark_rollback_failed(session, f"Unexpected error: {e}")
                    target = UpdateState.FAILED
                elif current == UpdateState.BACKING_UP:
                    session.rollback_eligible = False
                    target = UpdateState.STOPPING
                else:
                    session.fail(_STEP_ERRORS[current], f"Unexpected error: {e}")
                    target = self._recover(session, current)
            machine.transition(target)

    def _finish(
        self,
        session: UpdateSession,
        machine: SessionStateMachine,
        start: float,
    ) -> UpdateResult:
        result = session.result
        result.outcome = _OUTCOMES[machine.state]
        result.backup_count = self.backups.count()
        machine.transition(UpdateState.IDLE)
        result.states = list(machine.history)
        result.duration_seconds = round(time.monotonic() - start, 2)

        log = self.logger.info if result.exit_code == 0 else self.logger.error
        log(
            "session_finished",
            outcome=result.outcome.value,
            error_kind=result.error_kind.value if result.error_kind else None,
            error=result.error,
            prior_revision=result.prior_revision,
            target_revision=result.target_revision,
            new_revision=result.new_revision,
            backup_count=result.backup_count,
            deployment_state=result.deployment_state.value,
            duration_seconds=result.duration_seconds,
        )
        return result

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    async def _check_for_updates(self, session: UpdateSession) -> UpdateState:
        result = session.result
        try:
            current = self.tracker.current()
            remote = self.tracker.remote()
        except SourceUnreachable as e:
            session.fail(ErrorKind.SOURCE_UNREACHABLE, str(e))
            return UpdateState.FAILED

        result.prior_revision = current
        result.target_revision = remote
        result.new_revision = current

        if not self.tracker.has_update(current, remote):
            if not session.options.force:
                self.logger.info("already_up_to_date", revision=current)
                return UpdateState.NO_UPDATE
            self.logger.info("forced_update_without_changes", revision=current)
        else:
            self.logger.info(
                "update_available",
                current_revision=current[:7],
                remote_revision=remote[:7],
            )

        if self.tracker.is_dirty():
            self.logger.warning(
                "local_changes_detected",
                project_dir=str(self.config.project.project_dir),
            )
            if not session.options.force:
                prompt = (
                    f"Uncommitted changes detected in {self.config.project.project_dir}. "
                    "Stash these changes and continue?"
                )
                if not self.confirm(prompt):
                    session.fail(ErrorKind.LOCAL_CHANGES, "Update cancelled: uncommitted local changes")
                    return UpdateState.FAILED
                try:
                    result.stash = self.tracker.stash_changes()
                except GitCommandError as e:
                    self.logger.warning("stash_skipped", error=str(e))

        result.steps_completed.append("check_for_updates")
        return UpdateState.BACKING_UP

    async def _back_up(self, session: UpdateSession) -> UpdateState:
        if session.options.skip_backup:
            self.logger.warning("backup_skipped", reason="--skip-backup specified")
            return UpdateState.STOPPING

        try:
            handle = self.backups.create_backup(session.result.prior_revision or "")
        except (BackupError, OSError) as e:
            self.logger.error(
                "backup_failed_rollback_disabled",
                error=str(e),
            )
            return UpdateState.STOPPING

        session.backup = handle
        session.rollback_eligible = True
        session.result.backup_name = handle.name
        try:
            self.backups.record_last_backup(handle)
        except OSError as e:
            self.logger.warning("last_backup_record_failed", error=str(e))

        session.result.steps_completed.append("backup")
        return UpdateState.STOPPING

    async def _stop(self, session: UpdateSession) -> UpdateState:
        action = await self.compose.down()
        if not action.success:
            session.fail(ErrorKind.STOP_FAILED, action.error or "Container stop failed")
            return UpdateState.FAILED

        session.result.deployment_state = DeploymentState.STOPPED
        session.result.steps_completed.append("stop")
        return UpdateState.PULLING

    async def _pull(self, session: UpdateSession) -> UpdateState:
        result = session.result
        target = result.target_revision or ""
        try:
            result.new_revision = self.tracker.advance_to(target)
        except GitCommandError as e:
            session.fail(ErrorKind.PULL_FAILED, f"Failed to advance to {target[:7]}: {e}")
            return self._recover(session, UpdateState.PULLING)

        manifest = self.config.project.project_dir / self.config.project.manifest_file
        if not manifest.is_file():
            self.logger.error("manifest_missing", manifest=str(manifest))
            session.fail(
                ErrorKind.MANIFEST_MISSING,
                f"{self.config.project.manifest_file} not found after update",
            )
            return self._recover(session, UpdateState.PULLING)

        result.steps_completed.append("pull")
        return UpdateState.BUILDING

    async def _build(self, session: UpdateSession) -> UpdateState:
        session.result.deployment_state = DeploymentState.BUILDING
        if session.options.no_cache:
            self.logger.info("building_without_cache")
        action = await self.compose.build(use_cache=not session.options.no_cache)
        if not action.success:
            session.result.deployment_state = DeploymentState.STOPPED
            session.fail(ErrorKind.BUILD_FAILED, action.error or "Docker build failed")
            return self._recover(session, UpdateState.BUILDING)

        session.result.steps_completed.append("build")
        return UpdateState.STARTING

    async def _start(self, session: UpdateSession) -> UpdateState:
        session.result.deployment_state = DeploymentState.STARTING
        action = await self.compose.up(detached=True)
        if not action.success:
            session.result.deployment_state = DeploymentState.UNKNOWN
            session.fail(ErrorKind.START_FAILED, action.error or "Container start failed")
            return self._recover(session, UpdateState.STARTING)

        session.result.steps_completed.append("start")
        return UpdateState.HEALTH_CHECKING

    async def _health_check(self, session: UpdateSession) -> UpdateState:
        poll = await self.monitor.poll(
            self.config.health.max_attempts,
            self.config.health.interval_seconds,
        )
        if poll.verdict == HealthVerdict.HEALTHY:
            session.result.deployment_state = DeploymentState.HEALTHY
            session.result.steps_completed.append("health_check")
            return UpdateState.SUCCESS

        if poll.verdict == HealthVerdict.UNHEALTHY:
            session.result.deployment_state = DeploymentState.UNHEALTHY
            session.fail(ErrorKind.UNHEALTHY, "Container is unhealthy")
        else:
            session.result.deployment_state = DeploymentState.UNKNOWN
            session.fail(
                ErrorKind.TIMED_OUT,
                f"Container health check timed out after {poll.attempts} attempts",
            )
        return self._recover(session, UpdateState.HEALTH_CHECKING)

    async def _roll_back(self, session: UpdateSession) -> UpdateState:
        """Restore the session backup, rebuild, restart and verify once."""
        handle = session.backup
        result = session.result
        if handle is None:
            self._mark_rollback_failed(session, "No backup available for rollback")
            return UpdateState.FAILED

        self.logger.warning("rolling_back", backup=handle.name, revision=handle.revision)

        try:
            restored = self.backups.restore_backup(handle)
        except BackupNotFound as e:
            # Only a standalone rollback reports the missing archive itself
            standalone = session.result.error is None
            kind = ErrorKind.BACKUP_NOT_FOUND if standalone else ErrorKind.ROLLBACK_FAILED
            self._mark_rollback_failed(session, str(e), kind=kind)
            return UpdateState.FAILED
        except (BackupError, GitCommandError, OSError) as e:
            self._mark_rollback_failed(session, str(e))
            return UpdateState.FAILED

        result.new_revision = restored.revision
        result.backup_name = handle.name
        result.steps_completed.append("restore")

        result.deployment_state = DeploymentState.BUILDING
        action = await self.compose.build(use_cache=True)
        if not action.success:
            result.deployment_state = DeploymentState.STOPPED
            self._mark_rollback_failed(session, action.error or "Rollback build failed")
            return UpdateState.FAILED

        result.deployment_state = DeploymentState.STARTING
        action = await self.compose.up(detached=True)
        if not action.success:
            result.deployment_state = DeploymentState.UNKNOWN
            self._mark_rollback_failed(session, action.error or "Rollback start failed")
            return UpdateState.FAILED

        poll = await self.monitor.poll(
            self.config.health.max_attempts,
            self.config.health.interval_seconds,
        )
        if poll.verdict != HealthVerdict.HEALTHY:
            result.deployment_state = (
                DeploymentState.UNHEALTHY
                if poll.verdict == HealthVerdict.UNHEALTHY
                else DeploymentState.UNKNOWN
            )
            self._mark_rollback_failed(
                session, f"Health check after rollback: {poll.verdict.value}"
            )
            return UpdateState.FAILED

        result.deployment_state = DeploymentState.HEALTHY
        result.steps_completed.append("rollback")
        self.logger.info("rollback_completed", backup=handle.name, revision=restored.revision)
        return UpdateState.ROLLED_BACK

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _recover(self, session: UpdateSession, current: UpdateState) -> UpdateState:
        """Choose between rollback and fatal abort after a failed step."""
        can_roll_back = UpdateState.ROLLING_BACK in VALID_TRANSITIONS[current]
        if session.rollback_eligible and can_roll_back:
            self.logger.warning(
                "attempting_rollback",
                failed_state=current.value,
                error=session.result.error,
            )
            return UpdateState.ROLLING_BACK

        if can_roll_back:
            self.logger.warning("rollback_unavailable", reason="no backup for this session")
        return UpdateState.FAILED

    def _mark_rollback_failed(
        self,
        session: UpdateSession,
        error: str,
        kind: ErrorKind = ErrorKind.ROLLBACK_FAILED,
    ) -> None:
        self.logger.error("rollback_failed", error=error)
        session.result.rollback_error = error
        session.result.error_kind = kind
        if session.result.error is None:
            session.result.error = error

    async def _observe_state(self) -> DeploymentState:
        status = await self.compose.status_of(self.config.docker.service_name)
        state = _SERVICE_TO_DEPLOYMENT[status]
        if status == ServiceStatus.UNKNOWN:
            self.logger.warning("service_not_running", service_name=self.config.docker.service_name)
        else:
            self.logger.info("service_running", status=status.value)
        return state

    async def _complete_success(self, session: UpdateSession) -> None:
        result = session.result
        self.backups.clear_last_backup()

        # Summary details only; the update is already verified healthy.
        try:
            result.recent_commits = self.tracker.log(5)
        except Exception as e:
            self.logger.warning("summary_log_unavailable", error=str(e))
        try:
            ps = await self.compose.ps()
            result.service_status = ps.output.strip() if ps.success else None
        except Exception as e:
            self.logger.warning("summary_status_unavailable", error=str(e))

        workspace_dir = self.config.project.workspace_dir
        if workspace_dir is not None and not workspace_dir.is_dir():
            self.logger.warning("workspace_dir_missing", workspace_dir=str(workspace_dir))
        elif workspace_dir is not None:
            try:
                result.workspace_size_bytes = _directory_size(workspace_dir)
            except OSError as e:
                self.logger.warning(
                    "workspace_size_unavailable",
                    workspace_dir=str(workspace_dir),
                    error=str(e),
                )

        self.logger.info(
            "update_completed",
            prior_revision=result.prior_revision,
            new_revision=result.new_revision,
        )
