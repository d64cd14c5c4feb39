"""Revision tracking for the deployed project using GitPython.

The project directory is a git checkout; its ``HEAD`` commit is the deployed
revision and the configured remote tracking branch is the latest available
one. This module also owns the stash side-channel used when an operator
agrees to set aside uncommitted local modifications before an update.

Example usage:
    >>> from deployguard.config import ProjectConfig
    >>> from deployguard.pipeline.git_ops import VersionTracker
    >>>
    >>> tracker = VersionTracker(ProjectConfig(project_dir=Path("/opt/app")))
    >>> current = tracker.current()
    >>> remote = tracker.remote()
    >>> if tracker.has_update(current, remote):
    ...     print(f"{current[:7]} -> {remote[:7]}")
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone

import git
from git import BadName, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from deployguard.config import ProjectConfig
from deployguard.logging import get_logger

_STASH_REF_PATTERN = re.compile(r"[0-9a-f]{7,40}")


class SourceUnreachable(Exception):
    """Raised when the remote revision history cannot be fetched or resolved."""

    def __init__(self, remote: str, reason: str) -> None:
        self.remote = remote
        self.reason = reason
        super().__init__(f"Source '{remote}' unreachable: {reason}")


@dataclass(frozen=True)
class StashRecord:
    """Local modifications set aside before an update.

    The modifications are not re-applied automatically; the record names
    them so an operator can restore them with ``VersionTracker.restore_stash``.

    Attributes:
        message: Stash message used to locate the entry
        commit_sha: SHA of the stash commit
        created_at: ISO 8601 timestamp of the stash
    """

    message: str
    commit_sha: str
    created_at: str


class VersionTracker:
    """Resolves deployed and available revisions of the project checkout.

    Attributes:
        config: Project configuration
        repo: GitPython Repo object
        logger: Structured logger instance
    """

    def __init__(self, config: ProjectConfig) -> None:
        """Initialize VersionTracker for the configured project directory.

        Args:
            config: Project configuration settings

        Raises:
            InvalidGitRepositoryError: If project_dir is not a git repository
            NoSuchPathError: If project_dir does not exist
        """
        self.config = config
        self.logger = get_logger(__name__)

        try:
            self.repo = git.Repo(config.project_dir)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            self.logger.error(
                "version_tracker_init_failed",
                project_dir=str(config.project_dir),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    # ------------------------------------------------------------------
    # Revision queries
    # ------------------------------------------------------------------

    def current(self) -> str:
        """Return the locally recorded active revision (``HEAD``)."""
        return self.current_revision()

    def current_revision(self) -> str:
        return self.repo.head.commit.hexsha

    def remote(self) -> str:
        """Fetch and return the latest available revision.

        Only remote-tracking refs are updated; the working tree and ``HEAD``
        are left untouched.

        Returns:
            SHA of the first configured branch that exists on the remote

        Raises:
            SourceUnreachable: If the fetch fails or no tracked branch resolves
        """
        self.fetch()
        return self.remote_revision()

    def fetch(self) -> None:
        """Fetch the configured remote.

        Raises:
            SourceUnreachable: On network or IO failure
        """
        remote_name = self.config.remote
        try:
            self.repo.remote(remote_name).fetch()
        except (GitCommandError, ValueError) as e:
            self.logger.error(
                "remote_fetch_failed",
                remote=remote_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise SourceUnreachable(remote_name, str(e)) from e

        self.logger.info("remote_fetched", remote=remote_name)

    def remote_revision(self) -> str:
        """Resolve the remote tracking branch without fetching.

        Raises:
            SourceUnreachable: If none of the configured branches exist
        """
        for branch in self.config.branches:
            ref = f"{self.config.remote}/{branch}"
            try:
                return self.repo.commit(ref).hexsha
            except (BadName, ValueError, GitCommandError):
                self.logger.debug("remote_branch_missing", ref=ref)
                continue

        raise SourceUnreachable(
            self.config.remote,
            f"none of the branches {self.config.branches} exist on the remote",
        )

    @staticmethod
    def has_update(current: str, remote: str) -> bool:
        """Return True when the deployed revision differs from the remote one."""
        return current != remote

    def log(self, n: int = 5) -> list[str]:
        """Return one-line summaries of the last ``n`` commits at ``HEAD``."""
        return [
            f"{commit.hexsha[:7]} {commit.summary}"
            for commit in self.repo.iter_commits("HEAD", max_count=n)
        ]

    # ------------------------------------------------------------------
    # Working tree mutation
    # ------------------------------------------------------------------

    def is_dirty(self) -> bool:
        """Return True if tracked files carry uncommitted modifications."""
        return self.repo.is_dirty(untracked_files=False)

    def advance_to(self, revision: str) -> str:
        """Fast-forward the checkout to a target revision.

        Args:
            revision: Target revision resolved earlier in the session

        Returns:
            The new ``HEAD`` revision

        Raises:
            GitCommandError: If the checkout cannot fast-forward
        """
        try:
            self.repo.git.merge("--ff-only", revision)
        except GitCommandError as e:
            self.logger.error(
                "advance_failed",
                target_revision=revision,
                error=str(e),
            )
            raise

        new_revision = self.current_revision()
        self.logger.info(
            "revision_advanced",
            target_revision=revision,
            new_revision=new_revision,
        )
        return new_revision

    def reset_to(self, revision: str) -> None:
        """Hard-reset the checkout to ``revision``.

        Newer local commits and uncommitted modifications are discarded.

        Raises:
            GitCommandError: If the revision is unknown or the reset fails
        """
        try:
            self.repo.git.reset("--hard", revision)
        except GitCommandError as e:
            self.logger.error(
                "reset_failed",
                revision=revision,
                error=str(e),
            )
            raise

        self.logger.info("revision_reset", revision=revision)

    def stash_changes(self, message: str | None = None) -> StashRecord:
        """Set aside uncommitted modifications as a named stash entry.

        Args:
            message: Stash message (defaults to a timestamped one)

        Returns:
            StashRecord describing the new stash entry

        Raises:
            GitCommandError: If there is nothing to stash or the stash fails
        """
        created_at = datetime.now(timezone.utc)
        if message is None:
            message = f"Auto-stash before update {created_at.strftime('%Y%m%d-%H%M%S')}"

        try:
            self.repo.git.stash("push", "-m", message)
            commit_sha = self.repo.git.rev_parse("stash@{0}")
        except GitCommandError as e:
            self.logger.warning(
                "stash_failed",
                message=message,
                error=str(e),
            )
            raise

        record = StashRecord(
            message=message,
            commit_sha=commit_sha.strip(),
            created_at=created_at.isoformat(),
        )
        self.logger.info(
            "changes_stashed",
            message=message,
            commit_sha=record.commit_sha[:8],
        )
        return record

    def restore_stash(self, ref: StashRecord | str) -> None:
        """Re-apply a stash entry and drop it from the stash list.

        Args:
            ref: StashRecord from an earlier session, or a stash commit SHA
                (full or an unambiguous prefix of at least 7 characters)

        Raises:
            ValueError: If the ref is malformed, matches no stash entry or
                matches more than one
            GitCommandError: If applying the stash fails
        """
        commit_sha = (ref.commit_sha if isinstance(ref, StashRecord) else ref).strip().lower()
        if not _STASH_REF_PATTERN.fullmatch(commit_sha):
            raise ValueError(
                f"Stash reference must be 7 to 40 hex characters, got {commit_sha!r}"
            )

        entries = [sha.strip() for sha in self.repo.git.stash("list", "--format=%H").splitlines()]
        matches = [i for i, sha in enumerate(entries) if sha.startswith(commit_sha)]
        if not matches:
            self.logger.error("stash_not_found", commit_sha=commit_sha)
            raise ValueError(f"No stash entry matches {commit_sha}")
        if len(matches) > 1:
            self.logger.error("stash_ref_ambiguous", commit_sha=commit_sha, matches=len(matches))
            raise ValueError(f"Stash reference {commit_sha} matches {len(matches)} entries")
        index = matches[0]

        try:
            self.repo.git.stash("pop", f"stash@{{{index}}}")
        except GitCommandError as e:
            self.logger.error(
                "stash_restore_failed",
                commit_sha=commit_sha,
                error=str(e),
            )
            raise

        self.logger.info("stash_restored", commit_sha=commit_sha[:8])
