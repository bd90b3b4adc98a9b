"""
ACME client adapter.

Provides certificate issuance using the acme library with HTTP-01
(webroot), DNS-01 (hook command) and standalone HTTP-01 challenges.
The rest of the service only calls ``issue``.
"""

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import josepy as jose
import requests
from acme import challenges, client, messages, standalone
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from core import crypto_driver
from core.errors import AcmeError
from models.certificate import ChallengeType, KeyType

logger = logging.getLogger(__name__)

USER_AGENT = "cert-manager/1.0"


@dataclass
class OrderSpec:
    """Everything needed to obtain one certificate."""

    domains: list[str]
    challenge_type: ChallengeType = ChallengeType.HTTP
    email: str | None = None
    directory_url: str | None = None
    csr_pem: bytes | None = None
    key_pem: bytes | None = field(default=None, repr=False)
    key_type: KeyType = KeyType.RSA
    key_size: int = 2048


def classify_acme_error(exc: BaseException) -> AcmeError:
    """Map acme/requests exceptions onto AcmeError sub-kinds."""
    if isinstance(exc, AcmeError):
        return exc
    if isinstance(exc, messages.Error):
        if exc.code == "rateLimited":
            return AcmeError(
                f"ACME rate limit reached: {exc.detail}",
                sub=AcmeError.RATE_LIMITED,
                suggestion="Wait before retrying or use the staging directory for tests",
            )
        if exc.code in ("unauthorized", "incorrectResponse", "connection", "dns", "caa", "tls"):
            return AcmeError(f"ACME challenge failed: {exc.detail}", sub=AcmeError.CHALLENGE_FAILED)
        return AcmeError(f"ACME order failed: {exc.detail or exc}", sub=AcmeError.ORDER_FAILED)
    if isinstance(exc, acme_errors.ValidationError):
        return AcmeError(
            "ACME challenge validation failed",
            sub=AcmeError.CHALLENGE_FAILED,
            suggestion="Check that the domain points to this server and the challenge is reachable",
        )
    if isinstance(exc, acme_errors.TimeoutError):
        return AcmeError("ACME order timed out", sub=AcmeError.TIMEOUT)
    if isinstance(exc, (requests.exceptions.RequestException, ConnectionError)):
        return AcmeError(
            f"Unable to reach ACME server: {exc}",
            sub=AcmeError.TRANSPORT,
            suggestion="Check network access to the ACME directory URL",
        )
    return AcmeError(f"ACME order failed: {exc}", sub=AcmeError.ORDER_FAILED)


class ACMEService:
    """
    ACME protocol operations.

    Handles account registration, certificate orders and challenge
    side effects. One client is kept per directory URL.
    """

    def __init__(
        self,
        config_dir: str | Path,
        directory_url: str,
        account_email: str | None = None,
        challenge_dir: str | Path = "/var/www/.well-known/acme-challenge",
        standalone_port: int = 80,
        dns_hook: str = "",
        dns_propagation_seconds: int = 30,
        timeout: float = 600.0,
    ):
        self.config_dir = Path(config_dir) / "acme"
        self.directory_url = directory_url
        self.account_email = account_email or None
        self._challenge_dir = Path(challenge_dir)
        self.standalone_port = standalone_port
        self.dns_hook = dns_hook
        self.dns_propagation_seconds = dns_propagation_seconds
        self.timeout = timeout
        self._clients: dict[str, ClientV2] = {}
        self._lock = asyncio.Lock()

    def reset(self):
        """Reset client state. Call after failures to prevent stale client reuse."""
        logger.info("Resetting ACME client state")
        self._clients = {}

    def _account_key_path(self, directory_url: str) -> Path:
        digest = hashlib.sha1(directory_url.encode("utf-8")).hexdigest()[:12]
        return self.config_dir / f"account-{digest}.pem"

    def _load_or_create_account_key(self, directory_url: str) -> jose.JWK:
        key_path = self._account_key_path(directory_url)
        if key_path.exists():
            private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
            return jose.JWKRSA(key=private_key)

        logger.info("Generating new ACME account key")
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        key_path.write_bytes(crypto_driver.serialize_private_key(private_key))
        key_path.chmod(0o600)
        return jose.JWKRSA(key=private_key)

    async def _get_client(self, directory_url: str, email: str | None) -> ClientV2:
        """Get or create a registered ACME client for a directory."""
        async with self._lock:
            if directory_url in self._clients:
                return self._clients[directory_url]

            def create_client():
                account_key = self._load_or_create_account_key(directory_url)
                net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
                directory = messages.Directory.from_json(net.get(directory_url).json())
                acme_client = ClientV2(directory, net=net)

                regr = messages.NewRegistration.from_data(terms_of_service_agreed=True)
                if email:
                    regr = regr.update(contact=(f"mailto:{email}",))
                try:
                    acme_client.new_account(regr)
                    logger.info(f"Created new ACME account at {directory_url}")
                except acme_errors.ConflictError as conflict:
                    # Account already exists; bind the client to it
                    logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                    existing = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                    acme_client.net.account = acme_client.query_registration(existing)
                return acme_client

            acme_client = await asyncio.to_thread(create_client)
            self._clients[directory_url] = acme_client
            return acme_client

    async def issue(self, spec: OrderSpec) -> tuple[bytes, bytes, bytes]:
        """
        Obtain a certificate for ``spec.domains``.

        Args:
            spec: Domains, challenge type, contact and optional CSR/key

        Returns:
            Tuple of (certificate_pem, chain_pem, private_key_pem)

        Raises:
            AcmeError: With sub-kind transport, challenge_failed,
                rate_limited, order_failed or timeout
        """
        if spec.challenge_type == ChallengeType.NONE:
            raise AcmeError("No ACME challenge type configured", sub=AcmeError.ORDER_FAILED)
        if not spec.domains:
            raise AcmeError("ACME orders need at least one domain", sub=AcmeError.ORDER_FAILED)
        try:
            return await asyncio.wait_for(self._issue(spec), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.reset()
            raise AcmeError(f"ACME order timed out after {self.timeout:.0f}s", sub=AcmeError.TIMEOUT)
        except AcmeError:
            raise
        except Exception as e:
            self.reset()
            raise classify_acme_error(e) from e

    async def _issue(self, spec: OrderSpec) -> tuple[bytes, bytes, bytes]:
        directory_url = spec.directory_url or self.directory_url
        key_pem = spec.key_pem
        if key_pem is None:
            key_pem = crypto_driver.serialize_private_key(
                crypto_driver.generate_private_key(spec.key_type, spec.key_size)
            )
        csr_pem = spec.csr_pem or crypto_driver.create_csr(
            crypto_driver.CertificateParams(common_name=spec.domains[0], domains=spec.domains), key_pem
        )

        acme_client = await self._get_client(directory_url, spec.email or self.account_email)
        order = await asyncio.to_thread(acme_client.new_order, csr_pem)
        logger.info(f"Created ACME order for domains: {spec.domains}")

        cleanups = []
        servers = None
        try:
            responses = []
            standalone_resources = set()
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue
                domain = authz.body.identifier.value
                challb = self._select_challenge(authz, spec.challenge_type)
                response, validation = challb.chall.response_and_validation(acme_client.net.key)

                if spec.challenge_type == ChallengeType.HTTP:
                    token = challb.chall.encode("token")
                    await self.setup_challenge_file(token, validation)
                    cleanups.append(("http", token, None))
                elif spec.challenge_type == ChallengeType.DNS:
                    txt_name = challb.chall.validation_domain_name(domain)
                    await self._run_dns_hook("add", domain, txt_name, validation)
                    cleanups.append(("dns", domain, (txt_name, validation)))
                else:
                    standalone_resources.add(
                        standalone.HTTP01RequestHandler.HTTP01Resource(
                            chall=challb.chall, response=response, validation=validation
                        )
                    )
                responses.append((challb, response))

            if standalone_resources:
                servers = standalone.HTTP01DualNetworkedServers(("", self.standalone_port), standalone_resources)
                servers.serve_forever()
                logger.info(f"Standalone challenge server listening on port {self.standalone_port}")

            if spec.challenge_type == ChallengeType.DNS and responses:
                logger.info(f"Waiting {self.dns_propagation_seconds}s for DNS propagation")
                await asyncio.sleep(self.dns_propagation_seconds)

            for challb, response in responses:
                await asyncio.to_thread(acme_client.answer_challenge, challb, response)

            deadline = datetime.now() + timedelta(seconds=self.timeout)
            order = await asyncio.to_thread(acme_client.poll_authorizations, order, deadline)
            logger.info("All authorizations validated")
            finalized = await asyncio.to_thread(acme_client.finalize_order, order, deadline)
        finally:
            if servers is not None:
                servers.shutdown_and_server_close()
            for kind, ref, extra in cleanups:
                try:
                    if kind == "http":
                        await self.cleanup_challenge(ref)
                    else:
                        await self._run_dns_hook("del", ref, extra[0], extra[1])
                except (OSError, AcmeError) as e:
                    logger.warning(f"Challenge cleanup failed for {ref}: {e}")

        cert_pem, chain_pem = crypto_driver.split_pem_bundle(finalized.fullchain_pem.encode("utf-8"))
        logger.info(f"Successfully obtained certificate for {spec.domains}")
        return cert_pem, chain_pem, key_pem

    def _select_challenge(self, authz: messages.AuthorizationResource, challenge_type: ChallengeType):
        wanted = challenges.DNS01 if challenge_type == ChallengeType.DNS else challenges.HTTP01
        for challb in authz.body.challenges:
            if isinstance(challb.chall, wanted):
                return challb
        raise AcmeError(
            f"No {wanted.typ} challenge offered for {authz.body.identifier.value}",
            sub=AcmeError.CHALLENGE_FAILED,
            suggestion="Choose a challenge type the ACME server supports",
        )

    async def setup_challenge_file(self, token, key_authorization: str) -> Path:
        """
        Create HTTP-01 challenge file.

        Args:
            token: Challenge token (str or bytes)
            key_authorization: Key authorization string

        Returns:
            Path to created challenge file
        """
        self._challenge_dir.mkdir(parents=True, exist_ok=True)

        if isinstance(token, bytes):
            token = token.decode("utf-8")

        challenge_path = self._challenge_dir / token
        challenge_path.write_text(key_authorization)

        logger.info(f"Created challenge file at {challenge_path}")
        return challenge_path

    async def cleanup_challenge(self, token) -> None:
        """Remove HTTP-01 challenge file."""
        if isinstance(token, bytes):
            token = token.decode("utf-8")

        challenge_path = self._challenge_dir / token
        if challenge_path.exists():
            challenge_path.unlink()
            logger.info(f"Removed challenge file {challenge_path}")

    async def _run_dns_hook(self, action: str, domain: str, txt_name: str, txt_value: str) -> None:
        """Publish (add) or remove (del) a DNS-01 TXT record through the hook command."""
        if not self.dns_hook:
            raise AcmeError(
                "DNS-01 challenge requested but no DNS hook is configured",
                sub=AcmeError.CHALLENGE_FAILED,
                suggestion="Set ACME_DNS_HOOK to a command that manages TXT records",
            )
        env = {
            **os.environ,
            "ACME_ACTION": action,
            "ACME_DOMAIN": domain,
            "ACME_TXT_NAME": txt_name,
            "ACME_TXT_VALUE": txt_value,
        }
        proc = await asyncio.create_subprocess_shell(
            self.dns_hook, env=env, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=120)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise AcmeError(f"DNS hook timed out ({action} {txt_name})", sub=AcmeError.CHALLENGE_FAILED)
        if proc.returncode != 0:
            raise AcmeError(
                f"DNS hook failed ({action} {txt_name}): exit {proc.returncode}",
                sub=AcmeError.CHALLENGE_FAILED,
                stderr=stderr.decode("utf-8", "replace")[-2000:],
            )
        logger.info(f"DNS hook {action} {txt_name}")
