"""
Deployment pipeline.

Runs a record's post-renewal actions in their configured order. A failed
action is reported and the next one still runs; the overall result is ok
only when every action is ok.
"""

import asyncio
import logging
import os
import re
import shlex
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

from core.cert_store import write_file_atomic
from core.docker_service import ContainerNotFoundError, ContainerOperationError, DockerService
from core.errors import (
    CertManagerError,
    CommandFailedError,
    DockerUnavailableError,
    ErrorKind,
    StorageError,
    classify_exception,
)
from models.certificate import (
    CertificateRecord,
    CommandAction,
    CopyAction,
    DeployAction,
    DockerRestartAction,
    WebhookAction,
)
from models.renewal import ActionResult, DeploymentResult

logger = logging.getLogger(__name__)

OUTPUT_CAP = 64 * 1024
SECRET_ENV_PATTERN = re.compile(r"PASS|SECRET|TOKEN|KEY|CREDENTIAL|AUTH", re.IGNORECASE)
PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


def _cap(data: bytes) -> str:
    text = data.decode("utf-8", "replace")
    if len(text) > OUTPUT_CAP:
        return text[:OUTPUT_CAP] + f"\n... [truncated {len(text) - OUTPUT_CAP} characters]"
    return text


def placeholder_values(record: CertificateRecord) -> dict[str, str]:
    domains = record.sans.domains
    return {
        "name": record.name,
        "fingerprint": record.fingerprint,
        "cert_path": record.cert_path,
        "key_path": record.key_path or "",
        "chain_path": record.chain_path or "",
        "domains": ",".join(record.sans.all),
        "domain": domains[0] if domains else record.name,
        "valid_to": record.valid_to.isoformat(),
        "cert_type": record.cert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def render_command(template: str, record: CertificateRecord) -> str:
    """Substitute ``{placeholder}`` tokens with shell-quoted record values; unknown tokens stay as-is."""
    values = placeholder_values(record)

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            return shlex.quote(values[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def sanitized_environment(record: CertificateRecord) -> dict[str, str]:
    """Process environment without secret-looking variables, plus certificate details."""
    env = {k: v for k, v in os.environ.items() if not SECRET_ENV_PATTERN.search(k)}
    env.update(
        {
            "CERT_NAME": record.name,
            "CERT_FINGERPRINT": record.fingerprint,
            "CERT_PATH": record.cert_path,
            "CERT_KEY_PATH": record.key_path or "",
            "CERT_CHAIN_PATH": record.chain_path or "",
            "CERT_DOMAINS": ",".join(record.sans.all),
        }
    )
    return env


def copy_targets(destination: str, record: CertificateRecord) -> list[tuple[Path, Path, int | None]]:
    """(source, target, mode) triples for a copy action."""
    sources = [(Path(record.cert_path), "cert.pem", ".crt", None)]
    if record.key_path:
        sources.append((Path(record.key_path), "key.pem", ".key", 0o600))
    if record.chain_path:
        sources.append((Path(record.chain_path), "chain.pem", ".chain.crt", None))

    targets = []
    if destination.endswith("/"):
        directory = Path(destination)
        for source, filename, _, mode in sources:
            targets.append((source, directory / filename, mode))
    else:
        base = Path(destination)
        for source, _, suffix, mode in sources:
            targets.append((source, base.with_name(base.name + suffix), mode))
    return targets


class DeployActionNotFoundError(CertManagerError):
    """No deploy action at the requested position."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class DeploymentPipeline:
    """Executes post-renewal deploy actions with ordered, reportable outcomes."""

    def __init__(
        self,
        docker: DockerService,
        command_timeout: float = 120.0,
        webhook_timeout: float = 30.0,
        http_client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ):
        self.docker = docker
        self.command_timeout = command_timeout
        self.webhook_timeout = webhook_timeout
        self._http_client_factory = http_client_factory

    async def run(self, record: CertificateRecord, actions: list[DeployAction] | None = None) -> DeploymentResult:
        """
        Run deploy actions for a record in array order.

        Args:
            record: The live record whose material is deployed
            actions: Override the record's configured actions

        Returns:
            DeploymentResult with one ActionResult per action
        """
        actions = record.config.deploy_actions if actions is None else actions
        results: list[ActionResult] = []
        for index, action in enumerate(actions):
            started = time.monotonic()
            try:
                message, stdout, stderr = await self._run_action(action, record)
                result = ActionResult(index=index, type=action.type, ok=True, message=message, stdout=stdout, stderr=stderr)
            except CertManagerError as e:
                result = ActionResult(
                    index=index,
                    type=action.type,
                    ok=False,
                    error_kind=e.kind.value,
                    message=e.message,
                    stderr=getattr(e, "stderr", "") or "",
                )
            except Exception as e:
                error = classify_exception(e)
                result = ActionResult(index=index, type=action.type, ok=False, error_kind=error.kind.value, message=error.message)
            result.duration_ms = round((time.monotonic() - started) * 1000, 1)
            if result.ok:
                logger.info(f"Deploy action {index} ({action.type}) for '{record.name}' succeeded")
            else:
                logger.warning(f"Deploy action {index} ({action.type}) for '{record.name}' failed: {result.error_kind}: {result.message}")
            results.append(result)

        return DeploymentResult(fingerprint=record.fingerprint, ok=all(r.ok for r in results), actions=results)

    async def run_one(self, record: CertificateRecord, index: int) -> ActionResult:
        """
        Run a single configured deploy action by position.

        Raises:
            DeployActionNotFoundError: If the record has no action at ``index``
        """
        actions = record.config.deploy_actions
        if not 0 <= index < len(actions):
            raise DeployActionNotFoundError(
                f"Deploy action {index} not found for '{record.name}'", index=index, count=len(actions)
            )
        result = (await self.run(record, [actions[index]])).actions[0]
        result.index = index
        return result

    async def _run_action(self, action: DeployAction, record: CertificateRecord) -> tuple[str, str, str]:
        if isinstance(action, CopyAction):
            return await self._copy(action, record)
        if isinstance(action, DockerRestartAction):
            return await self._docker_restart(action)
        if isinstance(action, CommandAction):
            return await self._command(action, record)
        if isinstance(action, WebhookAction):
            return await self._webhook(action, record)
        raise CommandFailedError(f"Unsupported deploy action: {getattr(action, 'type', action)!r}")

    async def _docker_restart(self, action: DockerRestartAction) -> tuple[str, str, str]:
        try:
            info = await self.docker.restart_container(action.container_ref)
        except (ContainerNotFoundError, ContainerOperationError) as e:
            # deploy outcomes report every Docker failure under one kind
            raise DockerUnavailableError(
                e.message,
                suggestion=e.suggestion or "Check the container reference and the Docker daemon",
                container=action.container_ref,
            )
        return f"Restarted container {info.get('name', action.container_ref)}", "", ""

    async def _copy(self, action: CopyAction, record: CertificateRecord) -> tuple[str, str, str]:
        targets = copy_targets(action.destination, record)

        def do_copy() -> list[str]:
            written = []
            for source, target, mode in targets:
                target.parent.mkdir(parents=True, exist_ok=True)
                write_file_atomic(target, source.read_bytes(), mode=mode)
                written.append(str(target))
            return written

        try:
            written = await asyncio.to_thread(do_copy)
        except OSError as e:
            raise StorageError(f"Copy to {action.destination} failed: {e.strerror or e}")
        return f"Copied {len(written)} file(s) to {action.destination}", "\n".join(written), ""

    async def _command(self, action: CommandAction, record: CertificateRecord) -> tuple[str, str, str]:
        command = render_command(action.command, record)
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitized_environment(record),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandFailedError(f"Command timed out after {self.command_timeout:.0f}s", exit_code=None)
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        out, err = _cap(stdout), _cap(stderr)
        if proc.returncode != 0:
            raise CommandFailedError(f"Command exited with status {proc.returncode}", exit_code=proc.returncode, stderr=err)
        return "Command completed", out, err

    async def _webhook(self, action: WebhookAction, record: CertificateRecord) -> tuple[str, str, str]:
        payload: dict[str, Any] = {
            "event": "certificate.deployed",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "certificate": {
                "name": record.name,
                "fingerprint": record.fingerprint,
                "subject": record.subject,
                "issuer": record.issuer,
                "validFrom": record.valid_from.isoformat(),
                "validTo": record.valid_to.isoformat(),
                "domains": record.sans.domains,
                "ips": record.sans.ips,
                "certType": record.cert_type.value,
            },
        }
        try:
            async with self._http_client_factory(timeout=self.webhook_timeout) as client:
                response = await client.request(action.method, action.url, json=payload, headers=action.headers)
        except httpx.HTTPError as e:
            raise CommandFailedError(f"Webhook request failed: {e}", exit_code=None)
        if not response.is_success:
            raise CommandFailedError(
                f"Webhook returned HTTP {response.status_code}",
                exit_code=response.status_code,
                stderr=response.text[:2000],
            )
        return f"Webhook returned HTTP {response.status_code}", response.text[:2000], ""
