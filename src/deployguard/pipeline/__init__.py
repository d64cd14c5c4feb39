"""Deployment pipeline components for deployguard.

This package holds the collaborators sequenced by the update orchestrator:
revision tracking over git, backup capture and restore, Docker Compose
lifecycle control, and bounded health polling.
"""

from __future__ import annotations

from deployguard.pipeline.backup import (
    BackupError,
    BackupHandle,
    BackupManager,
    BackupMetadata,
    BackupNotFound,
    PartialArtifact,
    RestoreResult,
)
from deployguard.pipeline.container import (
    ComposeAction,
    ComposeManager,
    ContainerInfo,
    ContainerManager,
    ServiceStatus,
)
from deployguard.pipeline.git_ops import SourceUnreachable, StashRecord, VersionTracker
from deployguard.pipeline.health import (
    HealthMonitor,
    HealthPollResult,
    HealthVerdict,
    StatusSource,
)

__all__ = [
    # Backups
    "BackupError",
    "BackupHandle",
    "BackupManager",
    "BackupMetadata",
    "BackupNotFound",
    "PartialArtifact",
    "RestoreResult",
    # Container lifecycle
    "ComposeAction",
    "ComposeManager",
    "ContainerInfo",
    "ContainerManager",
    "ServiceStatus",
    # Revision tracking
    "SourceUnreachable",
    "StashRecord",
    "VersionTracker",
    # Health polling
    "HealthMonitor",
    "HealthPollResult",
    "HealthVerdict",
    "StatusSource",
]
