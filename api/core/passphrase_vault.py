"""
Passphrase vault for CA private keys.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256) from the
cryptography library for entries persisted at rest. Each persisted entry
is bound to the fingerprint of the record it belongs to and is rekeyed
when that record is renewed.
"""

import asyncio
import base64
import json
import logging
import secrets
import threading
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.cert_store import write_file_atomic
from core.errors import InvalidRequestError, PassphraseNotFoundError, PassphraseRequiredError, RenewalCancelledError
from models.certificate import CertType

logger = logging.getLogger(__name__)

VAULT_FILE = "passphrases.enc"
VAULT_KEY_FILE = ".vault-key"
VAULT_SALT = b"cert-manager-vault-salt-v1"


def derive_fernet_key(master_secret: str, iterations: int = 480000) -> bytes:
    """Derive a Fernet key from the master secret with PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=VAULT_SALT,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(master_secret.encode("utf-8")))


class PassphraseVault:
    """
    Custody of CA private-key passphrases.

    Entries are memory-only (lost at process exit) or persistent
    (encrypted on disk). ``get`` does not distinguish a missing entry
    from one that fails to decrypt.
    """

    def __init__(self, config_dir: str | Path, master_secret: str | None = None, iterations: int = 480000):
        self.config_dir = Path(config_dir)
        self.vault_path = self.config_dir / VAULT_FILE
        self._memory: dict[str, str] = {}
        self._persisted: dict[str, str] = {}
        self._lock = threading.Lock()
        self._events: dict[str, asyncio.Event] = {}
        self._waiting: dict[str, int] = {}
        self._fernet = Fernet(derive_fernet_key(master_secret or self._load_or_create_secret(), iterations))
        self._load()

    def _load_or_create_secret(self) -> str:
        key_path = self.config_dir / VAULT_KEY_FILE
        if key_path.exists():
            return key_path.read_text().strip()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        secret = secrets.token_urlsafe(32)
        write_file_atomic(key_path, secret.encode("utf-8"), mode=0o600)
        logger.warning(
            f"VAULT_MASTER_SECRET is not set; generated a vault key at {key_path}. "
            "Persisted passphrases are only as safe as this file."
        )
        return secret

    def _load(self) -> None:
        if not self.vault_path.exists():
            return
        try:
            self._persisted = json.loads(self.vault_path.read_text())
            logger.info(f"Loaded {len(self._persisted)} persisted passphrase entr{'y' if len(self._persisted) == 1 else 'ies'}")
        except (OSError, ValueError) as e:
            logger.error(f"Passphrase vault file unreadable, starting empty: {e}")
            self._persisted = {}

    def _save(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        write_file_atomic(self.vault_path, json.dumps(self._persisted, indent=2).encode("utf-8"), mode=0o600)

    def _seal(self, fingerprint: str, secret: str) -> str:
        payload = json.dumps({"fingerprint": fingerprint, "passphrase": secret}).encode("utf-8")
        return self._fernet.encrypt(payload).decode("utf-8")

    def _unseal(self, fingerprint: str, token: str) -> str | None:
        try:
            payload = json.loads(self._fernet.decrypt(token.encode("utf-8")))
        except (InvalidToken, ValueError):
            return None
        if payload.get("fingerprint") != fingerprint:
            return None
        return payload.get("passphrase")

    def has(self, fingerprint: str) -> bool:
        try:
            self.get(fingerprint)
            return True
        except PassphraseNotFoundError:
            return False

    def get(self, fingerprint: str) -> str:
        """
        Return the passphrase for a record.

        Raises:
            PassphraseNotFoundError: If absent or undecryptable
        """
        with self._lock:
            if fingerprint in self._memory:
                return self._memory[fingerprint]
            token = self._persisted.get(fingerprint)
        if token is not None:
            secret = self._unseal(fingerprint, token)
            if secret is not None:
                return secret
        raise PassphraseNotFoundError("No passphrase stored for this certificate")

    def set(self, fingerprint: str, secret: str, persist: bool = False, cert_type: CertType = CertType.STANDARD) -> None:
        """
        Store a passphrase and wake any renewal waiting for it.

        Args:
            fingerprint: Record fingerprint
            secret: The passphrase
            persist: Encrypt at rest instead of keeping it in memory only
            cert_type: Type of the record; only CA records are accepted

        Raises:
            InvalidRequestError: If the record is not a CA
        """
        if not CertType(cert_type).is_ca:
            raise InvalidRequestError(
                "Passphrases are only stored for CA certificates",
                suggestion="Provide the passphrase with the request instead",
            )
        if not secret:
            raise InvalidRequestError("Passphrase must not be empty")
        with self._lock:
            self._memory[fingerprint] = secret
            if persist:
                self._persisted[fingerprint] = self._seal(fingerprint, secret)
                self._save()
            elif fingerprint in self._persisted:
                del self._persisted[fingerprint]
                self._save()
        logger.info(f"Stored {'persistent' if persist else 'memory-only'} passphrase for {fingerprint[:16]}...")
        event = self._events.get(fingerprint)
        if event is not None:
            event.set()

    def delete(self, fingerprint: str) -> bool:
        with self._lock:
            found = self._memory.pop(fingerprint, None) is not None
            if self._persisted.pop(fingerprint, None) is not None:
                found = True
                self._save()
        if found:
            logger.info(f"Deleted passphrase for {fingerprint[:16]}...")
        return found

    def rekey(self, old_fingerprint: str, new_fingerprint: str) -> bool:
        """Move an entry to a record's new fingerprint after renewal."""
        with self._lock:
            moved = False
            if old_fingerprint in self._memory:
                self._memory[new_fingerprint] = self._memory.pop(old_fingerprint)
                moved = True
            token = self._persisted.pop(old_fingerprint, None)
            if token is not None:
                secret = self._unseal(old_fingerprint, token)
                if secret is not None:
                    self._persisted[new_fingerprint] = self._seal(new_fingerprint, secret)
                    moved = True
                self._save()
        if moved:
            logger.info(f"Rekeyed passphrase {old_fingerprint[:16]}... -> {new_fingerprint[:16]}...")
        return moved

    def is_persistent(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._persisted

    def is_waiting(self, fingerprint: str) -> bool:
        return self._waiting.get(fingerprint, 0) > 0

    async def wait_for(self, fingerprint: str, timeout: float, cancel_event: asyncio.Event | None = None) -> str:
        """
        Wait until a passphrase is set for ``fingerprint``.

        Raises:
            RenewalCancelledError: If ``cancel_event`` fires first
            PassphraseRequiredError: If the timeout elapses
        """
        event = self._events.setdefault(fingerprint, asyncio.Event())
        self._waiting[fingerprint] = self._waiting.get(fingerprint, 0) + 1
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                try:
                    return self.get(fingerprint)
                except PassphraseNotFoundError:
                    pass
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PassphraseRequiredError(
                        f"Timed out after {timeout:.0f}s waiting for a CA passphrase",
                        suggestion="Set the passphrase and renew again",
                        fingerprint=fingerprint,
                    )
                waiters = [asyncio.ensure_future(event.wait())]
                if cancel_event is not None:
                    waiters.append(asyncio.ensure_future(cancel_event.wait()))
                try:
                    await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()
                event.clear()
                if cancel_event is not None and cancel_event.is_set():
                    raise RenewalCancelledError("Renewal cancelled while waiting for a passphrase")
        finally:
            self._waiting[fingerprint] -= 1
            if self._waiting[fingerprint] <= 0:
                del self._waiting[fingerprint]
                self._events.pop(fingerprint, None)
