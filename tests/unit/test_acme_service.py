"""
Unit tests for the ACME client adapter.

Network access is never used; orders are exercised through error
classification, challenge side effects and mocked order flows.
"""

import sys
from unittest.mock import AsyncMock, patch

import pytest
import requests
from acme import errors as acme_errors
from acme import messages

from core.acme_service import ACMEService, OrderSpec, classify_acme_error
from core.errors import AcmeError
from models.certificate import ChallengeType


@pytest.fixture
def acme(tmp_path):
    return ACMEService(
        config_dir=tmp_path / "config",
        directory_url="https://acme.invalid/directory",
        challenge_dir=tmp_path / "webroot",
        timeout=5,
    )


class TestClassification:
    """Map library failures onto ACME error sub-kinds."""

    def test_rate_limited(self):
        error = classify_acme_error(messages.Error.with_code("rateLimited", detail="too many"))
        assert error.sub == AcmeError.RATE_LIMITED
        assert error.suggestion

    def test_unauthorized_is_challenge_failure(self):
        error = classify_acme_error(messages.Error.with_code("unauthorized", detail="bad token"))
        assert error.sub == AcmeError.CHALLENGE_FAILED

    def test_validation_error(self):
        assert classify_acme_error(acme_errors.ValidationError([])).sub == AcmeError.CHALLENGE_FAILED

    def test_transport(self):
        error = classify_acme_error(requests.exceptions.ConnectionError("refused"))
        assert error.sub == AcmeError.TRANSPORT
        assert error.to_dict()["sub"] == "transport"

    def test_unknown_is_order_failure(self):
        assert classify_acme_error(RuntimeError("boom")).sub == AcmeError.ORDER_FAILED


class TestChallengeFiles:
    """HTTP-01 webroot challenge files."""

    @pytest.mark.asyncio
    async def test_setup_and_cleanup(self, acme):
        path = await acme.setup_challenge_file(b"tok123", "tok123.thumb")
        assert path.read_text() == "tok123.thumb"

        await acme.cleanup_challenge("tok123")
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_cleanup_missing_file_is_noop(self, acme):
        await acme.cleanup_challenge("never-created")


class TestDnsHook:
    """DNS-01 TXT records through the hook command."""

    @pytest.mark.asyncio
    async def test_missing_hook(self, acme):
        with pytest.raises(AcmeError) as exc_info:
            await acme._run_dns_hook("add", "example.test", "_acme-challenge.example.test", "v")
        assert exc_info.value.sub == AcmeError.CHALLENGE_FAILED

    @pytest.mark.asyncio
    async def test_hook_receives_environment(self, acme, tmp_path):
        out = tmp_path / "hook.out"
        acme.dns_hook = f'{sys.executable} -c "import os; open(r\'{out}\', \'w\').write(os.environ[\'ACME_ACTION\'] + \' \' + os.environ[\'ACME_TXT_NAME\'])"'

        await acme._run_dns_hook("add", "example.test", "_acme-challenge.example.test", "v")

        assert out.read_text() == "add _acme-challenge.example.test"

    @pytest.mark.asyncio
    async def test_hook_failure(self, acme):
        acme.dns_hook = f'{sys.executable} -c "import sys; sys.stderr.write(\'nope\'); sys.exit(3)"'
        with pytest.raises(AcmeError) as exc_info:
            await acme._run_dns_hook("del", "example.test", "_acme-challenge.example.test", "v")
        assert "exit 3" in exc_info.value.message
        assert exc_info.value.details["stderr"] == "nope"


class TestIssue:
    """Order entry point."""

    @pytest.mark.asyncio
    async def test_no_challenge_type(self, acme):
        with pytest.raises(AcmeError):
            await acme.issue(OrderSpec(domains=["example.test"], challenge_type=ChallengeType.NONE))

    @pytest.mark.asyncio
    async def test_requires_domains(self, acme):
        with pytest.raises(AcmeError):
            await acme.issue(OrderSpec(domains=[]))

    @pytest.mark.asyncio
    async def test_library_errors_classified_and_client_reset(self, acme):
        acme._clients["x"] = object()
        with patch.object(acme, "_issue", AsyncMock(side_effect=messages.Error.with_code("rateLimited"))):
            with pytest.raises(AcmeError) as exc_info:
                await acme.issue(OrderSpec(domains=["example.test"]))
        assert exc_info.value.sub == AcmeError.RATE_LIMITED
        assert acme._clients == {}

    @pytest.mark.asyncio
    async def test_success_passes_through(self, acme):
        result = (b"cert", b"chain", b"key")
        with patch.object(acme, "_issue", AsyncMock(return_value=result)):
            assert await acme.issue(OrderSpec(domains=["example.test"])) == result

    def test_account_key_persisted_per_directory(self, acme):
        first = acme._load_or_create_account_key("https://one.invalid/dir")
        again = acme._load_or_create_account_key("https://one.invalid/dir")
        other = acme._load_or_create_account_key("https://two.invalid/dir")

        assert first.thumbprint() == again.thumbprint()
        assert first.thumbprint() != other.thumbprint()
        assert oct(acme._account_key_path("https://one.invalid/dir").stat().st_mode & 0o777) == "0o600"
