"""Container lifecycle control for the deployed Compose project.

ComposeManager drives the ``docker compose`` CLI (build, up, down, ps) as an
async subprocess. ContainerManager uses docker-py to inspect individual
containers so that the health status reported by the container's own
HEALTHCHECK can be read reliably.

Example usage:
    >>> from deployguard.config import DockerConfig
    >>> from deployguard.pipeline.container import ComposeManager
    >>>
    >>> compose = ComposeManager(DockerConfig(), project_dir=Path("/opt/app"))
    >>> action = await compose.build(use_cache=False)
    >>> if action.success:
    ...     await compose.up(detached=True)
    >>> status = await compose.status_of("theia")
"""

from __future__ import annotations

import asyncio
import os
import time
from enum import Enum
from pathlib import Path

from docker.errors import DockerException, NotFound
from pydantic import BaseModel, Field

import docker
from deployguard.config import DockerConfig
from deployguard.logging import get_logger


class ServiceStatus(str, Enum):
    """Status of a compose service as reported by the container runtime.

    Attributes:
        RUNNING: Containers are running without a health verdict yet
        HEALTHY: The container HEALTHCHECK reports healthy
        UNHEALTHY: The container HEALTHCHECK reports unhealthy
        UNKNOWN: No running container or status unavailable
    """

    RUNNING = "running"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ContainerInfo(BaseModel):
    """Information about a Docker container.

    Attributes:
        container_id: Docker container ID
        name: Container name
        image: Image name and tag
        status: Runtime state (running, exited, ...)
        health: HEALTHCHECK status, None if the image defines none
    """

    container_id: str = Field(description="Container ID")
    name: str = Field(description="Container name")
    image: str = Field(description="Image name")
    status: str = Field(description="Container state")
    health: str | None = Field(default=None, description="Health status")


class ComposeAction(BaseModel):
    """Result of a Docker Compose operation.

    Attributes:
        success: Whether the operation completed successfully
        action: Action performed (build, up, down, ps)
        output: Captured stdout of the command
        error: Error message if operation failed
        duration_seconds: Time taken for the operation
    """

    success: bool = Field(description="Operation success flag")
    action: str = Field(description="Action performed")
    output: str = Field(default="", description="Command output")
    error: str | None = Field(default=None, description="Error message if failed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


class ContainerManager:
    """Docker SDK wrapper used to inspect containers.

    Attributes:
        config: Docker configuration
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig) -> None:
        """Initialize ContainerManager; the client connects on first use."""
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                docker_host = os.environ.get("DOCKER_HOST")
                if docker_host:
                    self._client = docker.DockerClient(base_url=docker_host)
                elif self.config.rootless and hasattr(os, "getuid"):
                    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                    try:
                        self._client = docker.DockerClient(
                            base_url=f"unix://{xdg_runtime}/docker.sock"
                        )
                    except DockerException:
                        self._client = docker.DockerClient.from_env()
                else:
                    self._client = docker.DockerClient.from_env()
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    rootless=self.config.rootless,
                )
                raise

        return self._client

    async def get_container_status(self, container_id: str) -> ContainerInfo:
        """Inspect a container.

        Raises:
            NotFound: If the container does not exist
            DockerException: If the daemon is unreachable
        """
        client = await asyncio.to_thread(self._get_client)
        container = await asyncio.to_thread(client.containers.get, container_id)
        await asyncio.to_thread(container.reload)

        state = container.attrs.get("State", {})
        health = state.get("Health", {}).get("Status") if state.get("Health") else None
        image = container.image.tags[0] if container.image and container.image.tags else ""

        return ContainerInfo(
            container_id=container.id or container_id,
            name=container.name or "",
            image=image,
            status=container.status,
            health=health,
        )

    async def close(self) -> None:
        """Close the Docker client connection. Safe to call multiple times."""
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
            except Exception as e:
                self.logger.warning("docker_client_close_error", error=str(e))
            finally:
                self._client = None


class ComposeManager:
    """Async Docker Compose lifecycle controller for one project.

    Attributes:
        config: Docker configuration
        project_dir: Project directory holding the compose file
        compose_file: Absolute path of the compose file
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: DockerConfig,
        project_dir: Path,
        container_manager: ContainerManager | None = None,
    ) -> None:
        self.config = config
        self.project_dir = project_dir
        self.compose_file = project_dir / config.compose_file
        self.containers = container_manager or ContainerManager(config)
        self.logger = get_logger(__name__)

    async def _run_compose_command(self, *args: str, timeout: int) -> tuple[bool, str, str]:
        """Run a docker compose command via subprocess.

        Returns:
            Tuple of (success, stdout, stderr)
        """
        cmd = [
            "docker",
            "compose",
            "-f",
            str(self.compose_file),
            *args,
        ]

        self.logger.debug(
            "running_compose_command",
            command=" ".join(cmd),
            timeout=timeout,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.project_dir),
            )
        except FileNotFoundError:
            self.logger.error("compose_command_not_found")
            return False, "", "docker compose command not found. Is Docker Compose installed?"

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.logger.error(
                "compose_command_timeout",
                command=" ".join(cmd),
                timeout=timeout,
            )
            return False, "", f"Command timed out after {timeout} seconds"

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        success = proc.returncode == 0

        if not success:
            self.logger.error(
                "compose_command_failed",
                command=" ".join(cmd),
                returncode=proc.returncode,
                stderr=stderr[:500],
            )

        return success, stdout, stderr

    async def _action(self, action: str, *args: str, timeout: int) -> ComposeAction:
        start_time = time.monotonic()

        if not self.compose_file.exists():
            self.logger.error("compose_file_not_found", compose_file=str(self.compose_file))
            return ComposeAction(
                success=False,
                action=action,
                error=f"Compose file not found: {self.compose_file}",
                duration_seconds=time.monotonic() - start_time,
            )

        success, stdout, stderr = await self._run_compose_command(*args, timeout=timeout)
        duration = time.monotonic() - start_time

        self.logger.info(
            f"compose_{action}_{'succeeded' if success else 'failed'}",
            duration_seconds=round(duration, 2),
        )
        return ComposeAction(
            success=success,
            action=action,
            output=stdout,
            error=None if success else (stderr.strip() or f"docker compose {action} failed"),
            duration_seconds=duration,
        )

    async def build(self, use_cache: bool = True) -> ComposeAction:
        """Rebuild the project images."""
        args = ["build"] if use_cache else ["build", "--no-cache"]
        return await self._action("build", *args, timeout=self.config.build_timeout_seconds)

    async def up(self, detached: bool = True) -> ComposeAction:
        """Create and start the project services."""
        args = ["up", "-d"] if detached else ["up"]
        return await self._action("up", *args, timeout=self.config.command_timeout_seconds)

    async def down(self) -> ComposeAction:
        """Stop and remove the project services."""
        return await self._action("down", "down", timeout=self.config.command_timeout_seconds)

    async def ps(self) -> ComposeAction:
        """List the project containers (human-readable table)."""
        return await self._action("ps", "ps", timeout=self.config.command_timeout_seconds)

    async def status_of(self, service_name: str) -> ServiceStatus:
        """Classify the current status of a compose service.

        The first container that reports a HEALTHCHECK verdict decides;
        containers without one count as running.

        Args:
            service_name: Compose service to inspect

        Returns:
            ServiceStatus classification; UNKNOWN when nothing is running
        """
        success, stdout, stderr = await self._run_compose_command(
            "ps", "-q", service_name, timeout=self.config.command_timeout_seconds
        )
        if not success:
            self.logger.warning(
                "service_status_unavailable",
                service_name=service_name,
                error=stderr[:500],
            )
            return ServiceStatus.UNKNOWN

        container_ids = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not container_ids:
            return ServiceStatus.UNKNOWN

        running = False
        for container_id in container_ids:
            try:
                info = await self.containers.get_container_status(container_id)
            except NotFound:
                self.logger.warning(
                    "compose_container_not_found",
                    container_id=container_id,
                    service_name=service_name,
                )
                continue
            except DockerException as e:
                self.logger.warning(
                    "compose_container_status_error",
                    container_id=container_id,
                    service_name=service_name,
                    error=str(e),
                )
                continue

            if info.health == ServiceStatus.UNHEALTHY.value:
                return ServiceStatus.UNHEALTHY
            if info.health == ServiceStatus.HEALTHY.value:
                return ServiceStatus.HEALTHY
            if info.status == "running":
                running = True

        return ServiceStatus.RUNNING if running else ServiceStatus.UNKNOWN

    async def close(self) -> None:
        await self.containers.close()
