"""Per-tenant credential vault.

Secrets at rest (remote auth tokens, add-on URLs, manifests, protected
add-on lists) are sealed with AES-256-GCM. The key is either a session
data-encryption key (DEK), derived at login from the server key and the
user's password, or a per-tenant fallback key derived from the server key
alone for background jobs with no live session.

Blob layout (url-safe base64)::

    version (1) | key kind (1) | nonce (12) | ciphertext + tag

The tenant id is bound as associated data, so a blob sealed for one tenant
never opens for another.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger("addonsync.vault")

BLOB_VERSION = 1
KEY_KIND_SESSION = 0x01
KEY_KIND_SERVER = 0x02
NONCE_SIZE = 12
KEY_SIZE = 32
DEFAULT_DEK_TTL = 8 * 60 * 60  # seconds
DEFAULT_SCRYPT_N = 1 << 14

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")


class VaultError(Exception):
    """Raised when the vault cannot be configured or used."""


class DecryptionError(VaultError):
    """Raised when a blob cannot be opened; the credential is unusable."""


def load_server_key(raw: Optional[str]) -> bytes:
    """Normalize the configured server key to 32 bytes.

    Base64 input that decodes to at least 32 bytes is used directly;
    anything else is taken as UTF-8 text padded or cut to 32 bytes.
    """
    if not raw:
        raise VaultError("Server encryption key is not configured")
    if _BASE64_RE.match(raw) and len(raw) >= 44:
        try:
            decoded = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) >= KEY_SIZE:
            return decoded[:KEY_SIZE]
    return raw.encode("utf-8").ljust(KEY_SIZE, b"0")[:KEY_SIZE]


def derive_user_key(password: str, email: str, n: int = DEFAULT_SCRYPT_N) -> bytes:
    """Stretch a login password with scrypt, salted by the (lowercased) email."""
    kdf = Scrypt(salt=email.strip().lower().encode("utf-8"), length=KEY_SIZE, n=n, r=8, p=1)
    return kdf.derive(password.encode("utf-8"))


def derive_dek(server_key: bytes, user_key: bytes) -> bytes:
    """Combine the server key and the stretched user key into a DEK."""
    return _hkdf(user_key, salt=server_key, info=b"addonsync-dek")


def _hkdf(ikm: bytes, salt: bytes, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, info=info).derive(ikm)


@dataclass
class _DekEntry:
    dek: bytes
    expires_at: float


class DekStore:
    """In-memory, lock-guarded cache of session DEKs keyed by tenant id."""

    def __init__(
        self,
        ttl: float = DEFAULT_DEK_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, _DekEntry] = {}
        self._lock = threading.Lock()

    def set(self, tenant: str, dek: bytes, ttl: Optional[float] = None) -> None:
        if not tenant or not dek:
            return
        expires_at = self._clock() + (self.ttl if ttl is None else ttl)
        with self._lock:
            self._entries[str(tenant)] = _DekEntry(bytes(dek), expires_at)

    def get(self, tenant: str) -> Optional[bytes]:
        if not tenant:
            return None
        with self._lock:
            entry = self._entries.get(str(tenant))
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._entries[str(tenant)]
                return None
            return entry.dek

    def clear(self, tenant: str) -> None:
        with self._lock:
            self._entries.pop(str(tenant), None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CredentialVault:
    """Encrypts and decrypts tenant secrets."""

    def __init__(
        self,
        server_key: bytes,
        dek_store: Optional[DekStore] = None,
        scrypt_n: int = DEFAULT_SCRYPT_N,
    ) -> None:
        if len(server_key) != KEY_SIZE:
            raise VaultError(f"Server key must be {KEY_SIZE} bytes")
        self._server_key = server_key
        self.deks = dek_store or DekStore()
        self.scrypt_n = scrypt_n

    @classmethod
    def from_config(cls, vault_config: Dict[str, Any], env: Optional[Dict[str, str]] = None) -> "CredentialVault":
        env_source = env if env is not None else os.environ
        key_env = str(vault_config.get("key_env", "ADDONSYNC_ENCRYPTION_KEY"))
        ttl_hours = float(vault_config.get("dek_ttl_hours", 8))
        return cls(
            load_server_key(env_source.get(key_env)),
            DekStore(ttl=ttl_hours * 3600),
            scrypt_n=int(vault_config.get("scrypt_n", DEFAULT_SCRYPT_N)),
        )

    # -- session lifecycle -------------------------------------------------

    def open_session(self, tenant: str, email: str, password: str) -> None:
        """Derive and cache the tenant DEK after a successful login."""
        user_key = derive_user_key(password, email, n=self.scrypt_n)
        self.deks.set(tenant, derive_dek(self._server_key, user_key))
        logger.debug("Opened vault session for tenant %s", tenant)

    def close_session(self, tenant: str) -> None:
        self.deks.clear(tenant)
        logger.debug("Closed vault session for tenant %s", tenant)

    def has_session(self, tenant: str) -> bool:
        return self.deks.get(tenant) is not None

    # -- sealing -------------------------------------------------------------

    def encrypt(self, plaintext: str, tenant: str) -> str:
        dek = self.deks.get(tenant)
        if dek is not None:
            kind, key = KEY_KIND_SESSION, dek
        else:
            kind, key = KEY_KIND_SERVER, self._fallback_key(tenant)
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), self._aad(tenant))
        blob = bytes([BLOB_VERSION, kind]) + nonce + sealed
        return base64.urlsafe_b64encode(blob).decode("ascii")

    def decrypt(self, blob: str, tenant: str) -> str:
        try:
            raw = base64.urlsafe_b64decode(blob.encode("ascii"))
        except (binascii.Error, ValueError, AttributeError, UnicodeEncodeError) as exc:
            raise DecryptionError("Encrypted value is not valid base64") from exc

        if len(raw) < 2 + NONCE_SIZE + 16 or raw[0] != BLOB_VERSION:
            raise DecryptionError("Encrypted value has an unknown format")

        kind = raw[1]
        if kind == KEY_KIND_SESSION:
            key = self.deks.get(tenant)
            if key is None:
                raise DecryptionError(f"No session key available for tenant {tenant}")
        elif kind == KEY_KIND_SERVER:
            key = self._fallback_key(tenant)
        else:
            raise DecryptionError(f"Unknown key kind {kind}")

        nonce = raw[2:2 + NONCE_SIZE]
        try:
            plaintext = AESGCM(key).decrypt(nonce, raw[2 + NONCE_SIZE:], self._aad(tenant))
        except InvalidTag as exc:
            raise DecryptionError("Authentication failed while decrypting") from exc
        return plaintext.decode("utf-8")

    def encrypt_json(self, value: Any, tenant: str) -> str:
        return self.encrypt(json.dumps(value, separators=(",", ":")), tenant)

    def decrypt_json(self, blob: str, tenant: str) -> Any:
        text = self.decrypt(blob, tenant)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid JSON") from exc

    def fingerprint(self, value: str, tenant: str) -> str:
        """Keyed hash for equality lookups over encrypted columns.

        Always derived from the server key so it stays stable across
        sessions.
        """
        key = _hkdf(self._server_key, salt=self._aad(tenant), info=b"addonsync-fingerprint")
        return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()

    # -- internals -------------------------------------------------------

    def _fallback_key(self, tenant: str) -> bytes:
        return _hkdf(self._server_key, salt=self._aad(tenant), info=b"addonsync-fallback")

    @staticmethod
    def _aad(tenant: str) -> bytes:
        return f"tenant:{tenant}".encode("utf-8")


__all__ = [
    "CredentialVault",
    "DecryptionError",
    "DekStore",
    "VaultError",
    "derive_dek",
    "derive_user_key",
    "load_server_key",
]
