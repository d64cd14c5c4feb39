"""Pytest fixtures for integration tests.

Provides real git repositories in temporary directories: a bare ``origin``
remote, an ``upstream`` working copy that publishes new revisions to it, and
a ``deployment`` clone that plays the role of the deployed project.
"""

from __future__ import annotations

from pathlib import Path

import git
import pytest


def configure_user(repo: git.Repo) -> None:
    """Set the commit identity required for commits in a test repository."""
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Test User")
        writer.set_value("user", "email", "test@example.com")


def commit_file(repo: git.Repo, name: str, content: str, message: str) -> str:
    """Write a file, commit it, and return the new commit SHA."""
    path = Path(repo.working_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message).hexsha


@pytest.fixture
def origin(tmp_path: Path) -> git.Repo:
    """Create a bare repository acting as the source of truth."""
    bare = git.Repo.init(tmp_path / "origin.git", bare=True)
    bare.git.symbolic_ref("HEAD", "refs/heads/main")
    return bare


@pytest.fixture
def upstream(tmp_path: Path, origin: git.Repo) -> git.Repo:
    """Create a working copy that publishes revisions to ``origin``.

    The initial commit holds a compose file, a Dockerfile and a manifest.
    """
    repo = git.Repo.init(tmp_path / "upstream")
    configure_user(repo)
    commit_file(repo, "docker-compose.yml", "services:\n  theia:\n    build: .\n", "Add compose")
    commit_file(repo, "Dockerfile", "FROM node:20\n", "Add Dockerfile")
    commit_file(repo, "package.json", '{"name": "theia-app"}\n', "Initial commit")
    repo.git.branch("-M", "main")
    repo.create_remote("origin", origin.git_dir)
    repo.git.push("origin", "main")
    return repo


@pytest.fixture
def deployment(tmp_path: Path, origin: git.Repo, upstream: git.Repo) -> git.Repo:
    """Clone ``origin`` as the deployed project checkout."""
    repo = git.Repo.clone_from(origin.git_dir, tmp_path / "deployment", branch="main")
    configure_user(repo)
    return repo


@pytest.fixture
def publish(upstream: git.Repo):
    """Return a callable that commits a change in ``upstream`` and pushes it."""

    def _publish(name: str, content: str, message: str) -> str:
        sha = commit_file(upstream, name, content, message)
        upstream.git.push("origin", "main")
        return sha

    return _publish
