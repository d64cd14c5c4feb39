"""Unit tests for the update orchestrator.

All collaborators are mocked; the tests drive whole sessions and check the
terminal outcome, the visited states and which side effects happened.

Tests cover:
- No-op sessions when already up to date
- The full success path
- Rollback after pull, build, start and health failures
- Fatal aborts without a backup and when rollback itself fails
- The pre-flight guard for local modifications
- Standalone rollback
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from git import GitCommandError

from deployguard.config import DeployguardConfig, HealthConfig, ProjectConfig
from deployguard.orchestrator import (
    DeploymentState,
    ErrorKind,
    SessionMode,
    SessionOutcome,
    UpdateOptions,
    UpdateOrchestrator,
    UpdateState,
)
from deployguard.pipeline.backup import (
    BackupError,
    BackupHandle,
    BackupManager,
    BackupNotFound,
    PartialArtifact,
    RestoreResult,
)
from deployguard.pipeline.container import ComposeAction, ComposeManager, ServiceStatus
from deployguard.pipeline.git_ops import SourceUnreachable, StashRecord, VersionTracker
from deployguard.pipeline.health import HealthPollResult, HealthVerdict

CURRENT = "abc123" + "0" * 34
REMOTE = "def456" + "0" * 34


def _ok(action: str) -> ComposeAction:
    return ComposeAction(success=True, action=action, output=f"{action} ok")


def _failed(action: str) -> ComposeAction:
    return ComposeAction(success=False, action=action, error=f"{action} exploded")


def _poll(verdict: HealthVerdict, attempts: int = 1) -> HealthPollResult:
    return HealthPollResult(verdict=verdict, attempts=attempts)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "app"
    project.mkdir()
    (project / "package.json").write_text("{}")
    return project


@pytest.fixture
def config(project_dir: Path, tmp_path: Path) -> DeployguardConfig:
    return DeployguardConfig(
        project=ProjectConfig(project_dir=project_dir),
        health=HealthConfig(max_attempts=3, interval_seconds=0.1),
    )


@pytest.fixture
def handle(tmp_path: Path) -> BackupHandle:
    return BackupHandle(
        name="deploy-backup-20250101-120000-000000",
        archive_path=tmp_path / "backups" / "deploy-backup-20250101-120000-000000.tar.gz",
        created_at=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
        revision=CURRENT,
    )


@pytest.fixture
def tracker() -> MagicMock:
    tracker = MagicMock(spec=VersionTracker)
    tracker.current.return_value = CURRENT
    tracker.remote.return_value = REMOTE
    tracker.has_update.side_effect = VersionTracker.has_update
    tracker.is_dirty.return_value = False
    tracker.advance_to.return_value = REMOTE
    tracker.log.return_value = [f"{REMOTE[:7]} Add feature", f"{CURRENT[:7]} Initial"]
    return tracker


@pytest.fixture
def backups(handle: BackupHandle, tmp_path: Path) -> MagicMock:
    backups = MagicMock(spec=BackupManager)
    backups.backup_dir = tmp_path / "backups"
    backups.create_backup.return_value = handle
    backups.restore_backup.return_value = RestoreResult(
        backup_name=handle.name,
        revision=CURRENT,
        restored_artifacts=["docker-compose.yml"],
    )
    backups.count.return_value = 1
    backups.last_recorded.return_value = None
    backups.most_recent.return_value = None
    return backups


@pytest.fixture
def compose() -> MagicMock:
    compose = MagicMock(spec=ComposeManager)
    compose.status_of = AsyncMock(return_value=ServiceStatus.HEALTHY)
    compose.down = AsyncMock(return_value=_ok("down"))
    compose.build = AsyncMock(return_value=_ok("build"))
    compose.up = AsyncMock(return_value=_ok("up"))
    compose.ps = AsyncMock(return_value=_ok("ps"))
    return compose


@pytest.fixture
def monitor() -> MagicMock:
    monitor = MagicMock()
    monitor.poll = AsyncMock(return_value=_poll(HealthVerdict.HEALTHY))
    return monitor


@pytest.fixture
def orchestrator(config, tracker, backups, compose, monitor) -> UpdateOrchestrator:
    return UpdateOrchestrator(config, tracker, backups, compose, monitor)


class TestNoUpdate:
    """Sessions where the deployed revision already matches the remote."""

    @pytest.mark.asyncio
    async def test_up_to_date_is_a_no_op(self, orchestrator, tracker, backups, compose):
        tracker.remote.return_value = CURRENT

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.NO_UPDATE
        assert result.exit_code == 0
        assert result.error_kind is None
        assert result.states == [
            UpdateState.IDLE,
            UpdateState.CHECKING_FOR_UPDATES,
            UpdateState.NO_UPDATE,
            UpdateState.IDLE,
        ]
        backups.create_backup.assert_not_called()
        compose.down.assert_not_awaited()
        compose.build.assert_not_awaited()
        compose.up.assert_not_awaited()
        tracker.advance_to.assert_not_called()

    @pytest.mark.asyncio
    async def test_repeated_no_op_sessions_are_identical(self, orchestrator, tracker, compose):
        tracker.remote.return_value = CURRENT

        first = await orchestrator.run_update()
        second = await orchestrator.run_update()

        assert first.outcome == second.outcome == SessionOutcome.NO_UPDATE
        assert first.states == second.states
        compose.down.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_up_to_date_ignores_local_changes(self, orchestrator, tracker):
        tracker.remote.return_value = CURRENT
        tracker.is_dirty.return_value = True

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.NO_UPDATE
        tracker.stash_changes.assert_not_called()

    @pytest.mark.asyncio
    async def test_source_unreachable_is_fatal(self, orchestrator, tracker, backups, compose):
        tracker.remote.side_effect = SourceUnreachable("origin", "network down")

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.SOURCE_UNREACHABLE
        assert result.exit_code == 1
        backups.create_backup.assert_not_called()
        compose.down.assert_not_awaited()


class TestSuccessfulUpdate:
    """The full update path."""

    @pytest.mark.asyncio
    async def test_update_to_new_revision(self, orchestrator, tracker, backups, compose, handle):
        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.SUCCESS
        assert result.exit_code == 0
        assert result.prior_revision == CURRENT
        assert result.target_revision == REMOTE
        assert result.new_revision == REMOTE
        assert result.backup_name == handle.name
        assert result.backup_count == 1
        assert result.deployment_state == DeploymentState.HEALTHY
        assert result.states == [
            UpdateState.IDLE,
            UpdateState.CHECKING_FOR_UPDATES,
            UpdateState.BACKING_UP,
            UpdateState.STOPPING,
            UpdateState.PULLING,
            UpdateState.BUILDING,
            UpdateState.STARTING,
            UpdateState.HEALTH_CHECKING,
            UpdateState.SUCCESS,
            UpdateState.IDLE,
        ]
        assert result.steps_completed == [
            "check_for_updates",
            "backup",
            "stop",
            "pull",
            "build",
            "start",
            "health_check",
        ]

        backups.create_backup.assert_called_once_with(CURRENT)
        backups.record_last_backup.assert_called_once_with(handle)
        backups.clear_last_backup.assert_called_once()
        tracker.advance_to.assert_called_once_with(REMOTE)
        compose.build.assert_awaited_once_with(use_cache=True)
        compose.up.assert_awaited_once_with(detached=True)
        backups.restore_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_summary_on_success(self, orchestrator, tracker):
        result = await orchestrator.run_update()

        tracker.log.assert_called_once_with(5)
        assert result.recent_commits[0].startswith(REMOTE[:7])
        assert result.service_status == "ps ok"
        assert result.workspace_size_bytes is None

    @pytest.mark.asyncio
    async def test_summary_failures_keep_success(self, orchestrator, tracker, backups, compose):
        tracker.log.side_effect = GitCommandError("log", 128)
        compose.ps.side_effect = OSError("docker socket gone")

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.SUCCESS
        assert result.exit_code == 0
        assert result.recent_commits == []
        assert result.service_status is None
        backups.clear_last_backup.assert_called_once()

    @pytest.mark.asyncio
    async def test_summary_reports_workspace_size(
        self, config, tracker, backups, compose, monitor, tmp_path
    ):
        workspace = tmp_path / "workspace"
        (workspace / "src").mkdir(parents=True)
        (workspace / "README.md").write_bytes(b"x" * 100)
        (workspace / "src" / "main.ts").write_bytes(b"y" * 28)
        config.project.workspace_dir = workspace
        orchestrator = UpdateOrchestrator(config, tracker, backups, compose, monitor)

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.SUCCESS
        assert result.workspace_size_bytes == 128

    @pytest.mark.asyncio
    async def test_missing_workspace_is_not_reported(
        self, config, tracker, backups, compose, monitor, tmp_path
    ):
        config.project.workspace_dir = tmp_path / "nowhere"
        orchestrator = UpdateOrchestrator(config, tracker, backups, compose, monitor)

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.SUCCESS
        assert result.workspace_size_bytes is None

    @pytest.mark.asyncio
    async def test_no_cache_build(self, orchestrator, compose):
        result = await orchestrator.run_update(UpdateOptions(no_cache=True))

        assert result.outcome == SessionOutcome.SUCCESS
        compose.build.assert_awaited_once_with(use_cache=False)

    @pytest.mark.asyncio
    async def test_force_without_new_revision(self, orchestrator, tracker, compose):
        tracker.remote.return_value = CURRENT
        tracker.advance_to.return_value = CURRENT

        result = await orchestrator.run_update(UpdateOptions(force=True))

        assert result.outcome == SessionOutcome.SUCCESS
        compose.build.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health_poll_uses_configured_schedule(self, orchestrator, monitor):
        await orchestrator.run_update()
        monitor.poll.assert_awaited_once_with(3, 0.1)

    @pytest.mark.asyncio
    async def test_skip_backup_still_succeeds(self, orchestrator, backups):
        result = await orchestrator.run_update(UpdateOptions(skip_backup=True))

        assert result.outcome == SessionOutcome.SUCCESS
        assert UpdateState.BACKING_UP in result.states
        assert result.backup_name is None
        backups.create_backup.assert_not_called()
        backups.record_last_backup.assert_not_called()


class TestRollback:
    """Failures after a backup was taken trigger exactly one rollback."""

    @pytest.mark.asyncio
    async def test_build_failure_restores_previous_state(
        self, orchestrator, backups, compose, handle
    ):
        compose.build.side_effect = [_failed("build"), _ok("build")]

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.mode == SessionMode.UPDATE
        assert result.exit_code == 1
        assert result.error_kind == ErrorKind.BUILD_FAILED
        assert result.new_revision == CURRENT
        assert result.deployment_state == DeploymentState.HEALTHY
        assert result.states[-3:] == [
            UpdateState.ROLLING_BACK,
            UpdateState.ROLLED_BACK,
            UpdateState.IDLE,
        ]
        backups.restore_backup.assert_called_once_with(handle)
        assert compose.build.await_count == 2
        backups.clear_last_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_unhealthy_service_rolls_back(self, orchestrator, backups, monitor):
        monitor.poll.side_effect = [
            _poll(HealthVerdict.UNHEALTHY, attempts=2),
            _poll(HealthVerdict.HEALTHY),
        ]

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.error_kind == ErrorKind.UNHEALTHY
        assert monitor.poll.await_count == 2
        backups.restore_backup.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_failure_rolls_back(self, orchestrator, compose):
        compose.up.side_effect = [_failed("up"), _ok("up")]

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.error_kind == ErrorKind.START_FAILED

    @pytest.mark.asyncio
    async def test_pull_failure_rolls_back(self, orchestrator, tracker, compose):
        tracker.advance_to.side_effect = GitCommandError("merge", 128)

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.error_kind == ErrorKind.PULL_FAILED
        assert compose.build.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_manifest_rolls_back(self, orchestrator, project_dir):
        (project_dir / "package.json").unlink()

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.error_kind == ErrorKind.MANIFEST_MISSING

    @pytest.mark.asyncio
    async def test_unexpected_error_in_step_rolls_back(self, orchestrator, compose):
        compose.build.side_effect = [RuntimeError("daemon vanished"), _ok("build")]

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.error_kind == ErrorKind.BUILD_FAILED
        assert "daemon vanished" in (result.error or "")

    @pytest.mark.asyncio
    async def test_failed_rollback_is_fatal(self, orchestrator, monitor):
        monitor.poll.side_effect = [
            _poll(HealthVerdict.UNHEALTHY),
            _poll(HealthVerdict.TIMED_OUT, attempts=3),
        ]

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.ROLLBACK_FAILED
        assert result.error == "Container is unhealthy"
        assert "timed_out" in (result.rollback_error or "")
        assert result.states.count(UpdateState.ROLLING_BACK) == 1
        assert monitor.poll.await_count == 2

    @pytest.mark.asyncio
    async def test_partial_backup_fails_rollback(self, orchestrator, backups, compose):
        compose.build.return_value = _failed("build")
        backups.restore_backup.side_effect = PartialArtifact("b", [".env"])

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.ROLLBACK_FAILED
        assert ".env" in (result.rollback_error or "")
        assert compose.build.await_count == 1


    @pytest.mark.asyncio
    async def test_vanished_archive_fails_rollback(self, orchestrator, backups, compose, handle):
        compose.up.return_value = _failed("up")
        backups.restore_backup.side_effect = BackupNotFound(handle.archive_path)

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.ROLLBACK_FAILED
        assert "not found" in (result.rollback_error or "")

    @pytest.mark.asyncio
    async def test_crash_while_backing_up_disables_rollback(
        self, orchestrator, backups, compose
    ):
        backups.create_backup.side_effect = RuntimeError("unexpected")
        compose.build.return_value = _failed("build")

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.BUILD_FAILED
        backups.restore_backup.assert_not_called()


class TestFatalAbort:
    """Failures that halt the session without a rollback."""

    @pytest.mark.asyncio
    async def test_build_failure_without_backup(self, orchestrator, backups, compose):
        compose.build.return_value = _failed("build")

        result = await orchestrator.run_update(UpdateOptions(skip_backup=True))

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.exit_code == 1
        assert result.error_kind == ErrorKind.BUILD_FAILED
        assert result.new_revision == REMOTE
        assert UpdateState.ROLLING_BACK not in result.states
        backups.restore_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_backup_failure_disables_rollback(self, orchestrator, backups, compose):
        backups.create_backup.side_effect = BackupError("disk full")
        compose.build.return_value = _failed("build")

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.BUILD_FAILED
        backups.restore_backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_without_backup(self, orchestrator, monitor):
        monitor.poll.return_value = _poll(HealthVerdict.TIMED_OUT, attempts=3)

        result = await orchestrator.run_update(UpdateOptions(skip_backup=True))

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.TIMED_OUT
        assert result.deployment_state == DeploymentState.UNKNOWN

    @pytest.mark.asyncio
    async def test_stop_failure_never_rolls_back(self, orchestrator, backups, compose, tracker):
        compose.down.return_value = _failed("down")

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.STOP_FAILED
        backups.restore_backup.assert_not_called()
        tracker.advance_to.assert_not_called()


class TestLocalChanges:
    """The pre-flight guard for uncommitted modifications."""

    @pytest.mark.asyncio
    async def test_declined_changes_abort(self, orchestrator, tracker, backups, compose):
        tracker.is_dirty.return_value = True

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.LOCAL_CHANGES
        backups.create_backup.assert_not_called()
        compose.down.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirmed_changes_are_stashed(
        self, config, tracker, backups, compose, monitor
    ):
        tracker.is_dirty.return_value = True
        record = StashRecord(message="auto", commit_sha="f" * 40, created_at="now")
        tracker.stash_changes.return_value = record
        confirm = MagicMock(return_value=True)
        orchestrator = UpdateOrchestrator(
            config, tracker, backups, compose, monitor, confirm=confirm
        )

        result = await orchestrator.run_update()

        confirm.assert_called_once()
        tracker.stash_changes.assert_called_once()
        assert result.stash == record
        assert result.outcome == SessionOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_stash_failure_is_a_warning(self, config, tracker, backups, compose, monitor):
        tracker.is_dirty.return_value = True
        tracker.stash_changes.side_effect = GitCommandError("stash", 1)
        orchestrator = UpdateOrchestrator(
            config, tracker, backups, compose, monitor, confirm=lambda prompt: True
        )

        result = await orchestrator.run_update()

        assert result.outcome == SessionOutcome.SUCCESS
        assert result.stash is None

    @pytest.mark.asyncio
    async def test_force_skips_confirmation(self, config, tracker, backups, compose, monitor):
        tracker.is_dirty.return_value = True
        confirm = MagicMock(return_value=False)
        orchestrator = UpdateOrchestrator(
            config, tracker, backups, compose, monitor, confirm=confirm
        )

        result = await orchestrator.run_update(UpdateOptions(force=True))

        assert result.outcome == SessionOutcome.SUCCESS
        confirm.assert_not_called()
        tracker.stash_changes.assert_not_called()


class TestStandaloneRollback:
    """Rollback invoked outside of an update session."""

    @pytest.mark.asyncio
    async def test_rollback_to_recorded_backup(self, orchestrator, backups, compose, handle):
        backups.last_recorded.return_value = handle

        result = await orchestrator.rollback()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        assert result.mode == SessionMode.ROLLBACK
        assert result.exit_code == 0
        assert result.backup_name == handle.name
        assert result.new_revision == CURRENT
        assert result.states == [
            UpdateState.IDLE,
            UpdateState.ROLLING_BACK,
            UpdateState.ROLLED_BACK,
            UpdateState.IDLE,
        ]
        backups.restore_backup.assert_called_once_with(handle)
        compose.build.assert_awaited_once_with(use_cache=True)
        compose.up.assert_awaited_once_with(detached=True)

    @pytest.mark.asyncio
    async def test_rollback_falls_back_to_newest_archive(self, orchestrator, backups, handle):
        backups.most_recent.return_value = handle

        result = await orchestrator.rollback()

        assert result.outcome == SessionOutcome.ROLLED_BACK
        backups.restore_backup.assert_called_once_with(handle)

    @pytest.mark.asyncio
    async def test_rollback_to_unhealthy_service_exits_one(
        self, orchestrator, backups, monitor, handle
    ):
        backups.last_recorded.return_value = handle
        monitor.poll.return_value = _poll(HealthVerdict.TIMED_OUT, attempts=3)

        result = await orchestrator.rollback()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.ROLLBACK_FAILED
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_rollback_without_backup(self, orchestrator, backups, compose):
        result = await orchestrator.rollback()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.BACKUP_NOT_FOUND
        backups.restore_backup.assert_not_called()
        compose.build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rollback_with_missing_archive(self, orchestrator, backups, handle):
        backups.last_recorded.return_value = handle
        backups.restore_backup.side_effect = BackupNotFound(handle.archive_path)

        result = await orchestrator.rollback()

        assert result.outcome == SessionOutcome.FATAL_ABORT
        assert result.error_kind == ErrorKind.BACKUP_NOT_FOUND
        assert result.exit_code == 1
