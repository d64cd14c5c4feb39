"""Point-in-time backups of the deployment configuration.

A backup copies the configured artifact files out of the project directory,
records the revision that was active when they were captured and compresses
both into one ``tar.gz`` archive in the backup directory. The directory is a
bounded FIFO: after each capture only the ``max_backups`` most recent archives
are kept.

Archive layout::

    deploy-backup-20250101-120000-000000/
        backup.json          # BackupMetadata
        docker-compose.yml
        .env
        Dockerfile

Example usage:
    >>> manager = BackupManager(config.backup, config.project, tracker)
    >>> handle = manager.create_backup(tracker.current())
    >>> ...
    >>> result = manager.restore_backup(handle)
    >>> result.revision == handle.revision
    True
"""

from __future__ import annotations

import json
import re
import shutil
import tarfile
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from deployguard.config import BackupConfig, ProjectConfig
from deployguard.logging import get_logger
from deployguard.pipeline.git_ops import VersionTracker

METADATA_FILE = "backup.json"
LAST_BACKUP_FILE = "last-backup.json"
ARCHIVE_SUFFIX = ".tar.gz"
_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"


class BackupError(Exception):
    """Raised when a backup cannot be created, read or extracted."""

    pass


class BackupNotFound(BackupError):
    """Raised when the archive referenced by a handle does not exist."""

    def __init__(self, archive_path: Path) -> None:
        self.archive_path = archive_path
        super().__init__(f"Backup archive not found: {archive_path}")


class PartialArtifact(BackupError):
    """Raised when an expected artifact is missing inside an archive."""

    def __init__(self, backup_name: str, missing: list[str]) -> None:
        self.backup_name = backup_name
        self.missing = missing
        super().__init__(
            f"Backup {backup_name} is missing artifacts: {', '.join(missing)}"
        )


class BackupMetadata(BaseModel):
    """Metadata stored inside each archive.

    Attributes:
        name: Backup name (archive stem)
        revision: Revision active when the backup was captured
        created_at: ISO 8601 creation timestamp
        artifacts: Artifact file names captured in the archive
    """

    name: str = Field(description="Backup name")
    revision: str = Field(description="Captured revision")
    created_at: str = Field(description="Creation timestamp")
    artifacts: list[str] = Field(default_factory=list, description="Captured artifacts")


class BackupHandle(BaseModel):
    """Reference to one backup archive.

    Attributes:
        name: Backup name (archive file name without suffix)
        archive_path: Absolute path of the archive
        created_at: Creation time parsed from the name
        revision: Captured revision, when known without opening the archive
    """

    name: str = Field(description="Backup name")
    archive_path: Path = Field(description="Archive path")
    created_at: datetime = Field(description="Creation time")
    revision: str | None = Field(default=None, description="Captured revision")


class RestoreResult(BaseModel):
    """Result of restoring a backup.

    Attributes:
        backup_name: Name of the restored backup
        revision: Revision the checkout was reset to
        restored_artifacts: Artifact files rewritten from the snapshot
    """

    backup_name: str = Field(description="Restored backup")
    revision: str = Field(description="Restored revision")
    restored_artifacts: list[str] = Field(default_factory=list, description="Restored files")


def compress(source_dir: Path) -> Path:
    """Compress a directory into ``<source_dir>.tar.gz`` beside it.

    The archive holds a single top-level directory named after source_dir.
    """
    archive_path = source_dir.with_name(source_dir.name + ARCHIVE_SUFFIX)
    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(source_dir, arcname=source_dir.name)
    return archive_path


def extract(archive_path: Path, dest_dir: Path) -> None:
    """Extract an archive into dest_dir, rejecting members that escape it.

    Raises:
        BackupError: If the archive is unreadable or holds unsafe members
    """
    dest_root = dest_dir.resolve()
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            for member in tar.getmembers():
                member_path = dest_root / member.name
                try:
                    member_path.resolve().relative_to(dest_root)
                except ValueError as err:
                    raise BackupError(f"Unsafe archive member path: {member.name}") from err
                if member.issym() or member.islnk():
                    raise BackupError(f"Links are not allowed in backups: {member.name}")
            tar.extractall(dest_root, filter="data")
    except (tarfile.TarError, OSError, EOFError) as e:
        raise BackupError(f"Failed to extract {archive_path}: {e}") from e


class BackupManager:
    """Creates, retains and restores deployment backups.

    Attributes:
        config: Backup configuration
        project: Project configuration (artifact source directory)
        tracker: Version tracker used to reset the revision on restore
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: BackupConfig,
        project: ProjectConfig,
        tracker: VersionTracker,
    ) -> None:
        self.config = config
        self.project = project
        self.tracker = tracker
        self.logger = get_logger(__name__)
        self._name_pattern = re.compile(
            rf"^{re.escape(config.name_prefix)}-backup-(?P<ts>\d{{8}}-\d{{6}}-\d{{6}})$"
        )

    @property
    def backup_dir(self) -> Path:
        return self.config.backup_dir

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def create_backup(self, revision: str) -> BackupHandle:
        """Snapshot the artifact set and the given revision.

        Artifacts are only copied, never moved, so an interrupted capture
        leaves the project directory untouched.

        Args:
            revision: Revision active at capture time

        Returns:
            Handle of the new archive

        Raises:
            BackupError: If the snapshot cannot be written
        """
        created_at = datetime.now(timezone.utc)
        name = self._next_name(created_at)
        staging = self.backup_dir / name

        self.logger.info("backup_started", backup=name, revision=revision)

        try:
            staging.mkdir(parents=True)
            captured: list[str] = []
            for artifact in self.config.artifacts:
                source = self.project.project_dir / artifact
                if source.is_file():
                    shutil.copy2(source, staging / artifact)
                    captured.append(artifact)
                    self.logger.debug("artifact_captured", artifact=artifact)
                else:
                    self.logger.info("artifact_absent", artifact=artifact)

            metadata = BackupMetadata(
                name=name,
                revision=revision,
                created_at=created_at.isoformat(),
                artifacts=captured,
            )
            (staging / METADATA_FILE).write_text(
                metadata.model_dump_json(indent=2), encoding="utf-8"
            )

            archive_path = compress(staging)
        except OSError as e:
            self.logger.error("backup_failed", backup=name, error=str(e))
            raise BackupError(f"Failed to create backup {name}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        self.logger.info(
            "backup_created",
            backup=name,
            archive=str(archive_path),
            artifacts=captured,
        )

        self.evict()

        return BackupHandle(
            name=name,
            archive_path=archive_path,
            created_at=created_at,
            revision=revision,
        )

    def _next_name(self, created_at: datetime) -> str:
        """Return an unused, time-ordered backup name."""
        stamp = created_at
        while True:
            name = f"{self.config.name_prefix}-backup-{stamp.strftime(_TIMESTAMP_FORMAT)}"
            archive = self.backup_dir / (name + ARCHIVE_SUFFIX)
            if not archive.exists() and not (self.backup_dir / name).exists():
                return name
            stamp += timedelta(microseconds=1)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupHandle]:
        """Return all backups ordered oldest first."""
        if not self.backup_dir.is_dir():
            return []

        handles: list[BackupHandle] = []
        for path in self.backup_dir.glob(f"*{ARCHIVE_SUFFIX}"):
            name = path.name[: -len(ARCHIVE_SUFFIX)]
            match = self._name_pattern.match(name)
            if match is None:
                continue
            created_at = datetime.strptime(match.group("ts"), _TIMESTAMP_FORMAT).replace(
                tzinfo=timezone.utc
            )
            handles.append(BackupHandle(name=name, archive_path=path, created_at=created_at))

        handles.sort(key=lambda h: (h.created_at, h.name))
        return handles

    def most_recent(self) -> BackupHandle | None:
        """Return the newest backup, or None if there are none."""
        handles = self.list_backups()
        return handles[-1] if handles else None

    def count(self) -> int:
        return len(self.list_backups())

    def evict(self) -> list[str]:
        """Delete the oldest archives beyond the retention bound.

        Failures to delete are logged as warnings and skipped.

        Returns:
            Names of the evicted backups
        """
        handles = self.list_backups()
        excess = len(handles) - self.config.max_backups
        if excess <= 0:
            return []

        evicted: list[str] = []
        for handle in handles[:excess]:
            try:
                handle.archive_path.unlink()
                evicted.append(handle.name)
            except OSError as e:
                self.logger.warning(
                    "backup_eviction_failed",
                    backup=handle.name,
                    error=str(e),
                )

        if evicted:
            self.logger.info(
                "backups_evicted",
                evicted=evicted,
                max_backups=self.config.max_backups,
            )
        return evicted

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_backup(self, handle: BackupHandle) -> RestoreResult:
        """Restore the revision and artifacts recorded in a backup.

        The archive is fully extracted and validated before the checkout is
        touched; a missing artifact never leads to a half-applied restore.

        Args:
            handle: Backup to restore

        Returns:
            RestoreResult naming the revision and rewritten artifacts

        Raises:
            BackupNotFound: If the archive does not exist
            PartialArtifact: If an expected artifact is absent from the archive
            BackupError: If the archive cannot be extracted
        """
        if not handle.archive_path.is_file():
            self.logger.error("backup_not_found", archive=str(handle.archive_path))
            raise BackupNotFound(handle.archive_path)

        self.logger.info("restore_started", backup=handle.name)

        with tempfile.TemporaryDirectory(prefix="deployguard-restore-") as tmp:
            extract(handle.archive_path, Path(tmp))
            snapshot = Path(tmp) / handle.name

            metadata = self._read_metadata(handle.name, snapshot)
            missing = [a for a in metadata.artifacts if not (snapshot / a).is_file()]
            if missing:
                self.logger.error(
                    "backup_artifacts_missing",
                    backup=handle.name,
                    missing=missing,
                )
                raise PartialArtifact(handle.name, missing)

            self.tracker.reset_to(metadata.revision)

            for artifact in metadata.artifacts:
                shutil.copy2(snapshot / artifact, self.project.project_dir / artifact)
                self.logger.info("artifact_restored", artifact=artifact)

        self.logger.info(
            "restore_completed",
            backup=handle.name,
            revision=metadata.revision,
        )
        return RestoreResult(
            backup_name=handle.name,
            revision=metadata.revision,
            restored_artifacts=list(metadata.artifacts),
        )

    def _read_metadata(self, name: str, snapshot: Path) -> BackupMetadata:
        metadata_path = snapshot / METADATA_FILE
        if not metadata_path.is_file():
            self.logger.error("backup_metadata_missing", backup=name)
            raise PartialArtifact(name, [METADATA_FILE])
        try:
            return BackupMetadata.model_validate_json(metadata_path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise BackupError(f"Invalid metadata in backup {name}: {e}") from e

    # ------------------------------------------------------------------
    # Last-backup record
    # ------------------------------------------------------------------

    @property
    def last_backup_path(self) -> Path:
        return self.backup_dir / LAST_BACKUP_FILE

    def record_last_backup(self, handle: BackupHandle) -> None:
        """Remember the backup taken by the current session.

        A later standalone rollback restores this backup.
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.last_backup_path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps({"name": handle.name, "revision": handle.revision}, indent=2),
            encoding="utf-8",
        )
        tmp_path.replace(self.last_backup_path)

    def last_recorded(self) -> BackupHandle | None:
        """Return the backup named by the last-backup record, if any.

        The handle is returned even if its archive has since disappeared so
        that the caller can report BackupNotFound.
        """
        if not self.last_backup_path.is_file():
            return None
        try:
            data = json.loads(self.last_backup_path.read_text(encoding="utf-8"))
            name = str(data["name"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.warning("last_backup_record_unreadable", error=str(e))
            return None

        match = self._name_pattern.match(name)
        if match is None:
            self.logger.warning("last_backup_record_invalid", backup=name)
            return None

        created_at = datetime.strptime(match.group("ts"), _TIMESTAMP_FORMAT).replace(
            tzinfo=timezone.utc
        )
        return BackupHandle(
            name=name,
            archive_path=self.backup_dir / (name + ARCHIVE_SUFFIX),
            created_at=created_at,
            revision=data.get("revision"),
        )

    def clear_last_backup(self) -> None:
        self.last_backup_path.unlink(missing_ok=True)
