"""
Global test fixtures.

Every test gets a fresh certificate root, config directory and service
container under ``tmp_path``; background jobs, rate limiting and Docker
access are disabled unless a test opts in.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

# Keep the settings file lookup away from /config
os.environ.setdefault("SETTINGS_FILE", os.path.join(os.path.dirname(__file__), "nonexistent-settings.json"))

from docker.errors import DockerException  # noqa: E402

from config import load_settings  # noqa: E402
from core import crypto_driver  # noqa: E402
from core.docker_service import DockerService  # noqa: E402
from core.services import build_services  # noqa: E402
from models.certificate import CertType, KeyType  # noqa: E402

TEST_VAULT_ITERATIONS = 1000


def make_cert(
    common_name: str = "example.test",
    domains: list[str] | None = None,
    validity_days: int = 90,
    cert_type: CertType = CertType.STANDARD,
    passphrase: str | None = None,
) -> tuple[bytes, bytes]:
    """Self-signed ECDSA certificate and key for tests."""
    params = crypto_driver.CertificateParams(
        common_name=common_name,
        domains=[common_name] if domains is None else domains,
        cert_type=cert_type,
        key_type=KeyType.ECDSA,
        key_size=256,
        validity_days=validity_days,
    )
    return crypto_driver.create_self_signed(params, passphrase)


def _no_docker():
    raise DockerException("Error while fetching server API version: socket not found")


@pytest.fixture
def app_settings(tmp_path):
    """Startup settings rooted in a temporary directory."""
    return load_settings(
        config_dir=str(tmp_path / "config"),
        cert_root=str(tmp_path / "certs"),
        vault_master_secret="unit-test-master-secret",
        enable_scheduler=False,
        enable_file_watch=False,
        rate_limit_enabled=False,
        request_wait_timeout=30.0,
        passphrase_timeout=30.0,
        command_timeout=10.0,
    )


@pytest.fixture
def services(app_settings):
    """Fresh service container with an unreachable Docker daemon."""
    services = build_services(app_settings, vault_iterations=TEST_VAULT_ITERATIONS)
    services.docker = DockerService(client_factory=_no_docker)
    services.pipeline.docker = services.docker
    return services


@pytest.fixture
def client(services):
    """TestClient running the full application lifespan."""
    from fastapi.testclient import TestClient

    from main import create_app

    app = create_app(services=services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def cert_pair():
    return make_cert()


@pytest.fixture
def cert_factory():
    """The make_cert helper, for tests that need several certificates."""
    return make_cert
