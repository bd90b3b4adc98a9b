"""
Unit tests for the Docker service.
"""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from core.docker_service import ContainerNotFoundError, ContainerOperationError, DockerService
from core.errors import DockerUnavailableError


def _container(name, status="running"):
    container = MagicMock()
    container.short_id = f"{name}-id"
    container.name = name
    container.status = status
    container.attrs = {"Config": {"Image": f"{name}:latest"}, "Created": "2024-01-01T00:00:00Z"}
    return container


@pytest.fixture
def docker_client():
    return MagicMock()


@pytest.fixture
def service(docker_client):
    return DockerService(client_factory=lambda: docker_client)


class TestListContainers:
    @pytest.mark.asyncio
    async def test_sorted_by_name(self, service, docker_client):
        docker_client.containers.list.return_value = [_container("web"), _container("api", "exited")]

        containers = await service.list_containers()

        assert [c["name"] for c in containers] == ["api", "web"]
        assert containers[0]["image"] == "api:latest"
        docker_client.containers.list.assert_called_once_with(all=True)

    @pytest.mark.asyncio
    async def test_unreachable_daemon(self):
        def factory():
            raise DockerException("socket missing")

        with pytest.raises(DockerUnavailableError):
            await DockerService(client_factory=factory).list_containers()

    @pytest.mark.asyncio
    async def test_connection_lost_resets_client(self, service, docker_client):
        docker_client.containers.list.side_effect = DockerException("gone")
        with pytest.raises(DockerUnavailableError):
            await service.list_containers()
        assert service._client is None


class TestRestart:
    @pytest.mark.asyncio
    async def test_restart(self, service, docker_client):
        container = _container("web")
        docker_client.containers.get.return_value = container

        result = await service.restart_container("web", timeout=3)

        container.restart.assert_called_once_with(timeout=3)
        assert result == {"id": "web-id", "name": "web", "status": "running"}

    @pytest.mark.asyncio
    async def test_missing_container(self, service, docker_client):
        docker_client.containers.get.side_effect = NotFound("no such container")
        with pytest.raises(ContainerNotFoundError) as exc_info:
            await service.restart_container("ghost")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_restart_api_error(self, service, docker_client):
        container = _container("web")
        container.restart.side_effect = APIError("conflict")
        docker_client.containers.get.return_value = container
        with pytest.raises(ContainerOperationError):
            await service.restart_container("web")


class TestStatus:
    @pytest.mark.asyncio
    async def test_available(self, service, docker_client):
        docker_client.version.return_value = {"Version": "25.0.3"}
        status = await service.get_status()
        assert status["available"] is True
        assert status["version"] == "25.0.3"

    @pytest.mark.asyncio
    async def test_unavailable(self):
        def factory():
            raise DockerException("socket missing")

        status = await DockerService(client_factory=factory).get_status()
        assert status["available"] is False
        assert "socket missing" in status["error"]
