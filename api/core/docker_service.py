"""
Docker service for container restarts after deployment.

Provides an async-safe wrapper around the Docker SDK for listing
containers (deploy-action picker) and restarting them.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from core.errors import CertManagerError, DockerUnavailableError, ErrorKind

logger = logging.getLogger(__name__)


class ContainerNotFoundError(CertManagerError):
    """Container not found."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ContainerOperationError(CertManagerError):
    """Error during container operation."""

    kind = ErrorKind.COMMAND_FAILED
    status_code = 502


class DockerService:
    """Service for listing and restarting Docker containers."""

    def __init__(self, client_factory: Callable[[], docker.DockerClient] = docker.from_env):
        self._client_factory = client_factory
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = self._client_factory()
            except (DockerException, requests.exceptions.RequestException) as e:
                raise DockerUnavailableError(
                    f"Cannot connect to Docker daemon: {e}",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _unavailable(self, e: Exception) -> DockerUnavailableError:
        # drop the cached client so the next call reconnects
        self._client = None
        return DockerUnavailableError(
            f"Docker daemon is unreachable: {e}",
            suggestion="Ensure Docker daemon is running and socket is accessible",
        )

    def _get_container(self, ref: str):
        """Get a container by id or name."""
        try:
            return self.client.containers.get(ref)
        except NotFound:
            raise ContainerNotFoundError(
                f"Container '{ref}' not found",
                suggestion="Check the container name or id in the deploy action",
                container=ref,
            )
        except APIError as e:
            raise ContainerOperationError(
                f"Docker API error: {e}",
                suggestion="Check Docker daemon status and permissions",
            )
        except (DockerException, requests.exceptions.RequestException) as e:
            raise self._unavailable(e)

    async def list_containers(self, include_stopped: bool = True) -> list[dict[str, Any]]:
        """List containers for the deploy-action picker."""
        return await asyncio.to_thread(self._list_containers_sync, include_stopped)

    def _list_containers_sync(self, include_stopped: bool) -> list[dict[str, Any]]:
        try:
            containers = self.client.containers.list(all=include_stopped)
        except APIError as e:
            raise ContainerOperationError(f"Docker API error: {e}")
        except (DockerException, requests.exceptions.RequestException) as e:
            raise self._unavailable(e)

        result = []
        for container in containers:
            attrs = container.attrs or {}
            result.append(
                {
                    "id": container.short_id,
                    "name": container.name,
                    "image": attrs.get("Config", {}).get("Image", ""),
                    "status": container.status,
                    "created": attrs.get("Created"),
                }
            )
        result.sort(key=lambda c: c["name"])
        return result

    async def restart_container(self, ref: str, timeout: int = 10) -> dict[str, Any]:
        """
        Restart a container by id or name.

        Args:
            ref: Container id or name
            timeout: Seconds to wait for graceful stop before killing

        Returns:
            Dict with the restarted container's id, name and status
        """
        logger.info(f"Restarting container '{ref}' with {timeout}s timeout")
        return await asyncio.to_thread(self._restart_container_sync, ref, timeout)

    def _restart_container_sync(self, ref: str, timeout: int) -> dict[str, Any]:
        """Synchronous container restart."""
        container = self._get_container(ref)
        try:
            container.restart(timeout=timeout)
            container.reload()
        except NotFound:
            raise ContainerNotFoundError(f"Container '{ref}' disappeared during restart", container=ref)
        except APIError as e:
            raise ContainerOperationError(f"Failed to restart '{ref}': {e}", container=ref)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise self._unavailable(e)
        logger.info(f"Container '{container.name}' restart completed")
        return {"id": container.short_id, "name": container.name, "status": container.status}

    async def get_status(self) -> dict[str, Any]:
        """Docker daemon availability for health reporting."""
        return await asyncio.to_thread(self._get_status_sync)

    def _get_status_sync(self) -> dict[str, Any]:
        checked_at = datetime.now(timezone.utc).isoformat()
        try:
            version = self.client.version()
        except DockerUnavailableError as e:
            return {"available": False, "error": e.message, "checked_at": checked_at}
        except (DockerException, requests.exceptions.RequestException) as e:
            self._client = None
            return {"available": False, "error": str(e), "checked_at": checked_at}
        return {"available": True, "version": version.get("Version"), "checked_at": checked_at}
