"""Deployguard - guarded update and rollback of a containerized service.

This package provides a single-shot deployment lifecycle controller: it
checks a git remote for a newer revision, backs up the deployment
configuration, rebuilds and restarts a Docker Compose service, verifies its
health and rolls back to the backup when the update fails.
"""

__version__ = "0.1.0"
