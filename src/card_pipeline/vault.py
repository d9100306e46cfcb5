"""Encrypted-at-rest storage for per-service API keys.

Records are sealed with AES-256-GCM. The encryption key is derived with HKDF
from a configured master secret, every record gets a fresh random 96-bit
nonce, and the service name is bound in as associated data so a record
cannot be replayed under another service. The stored value is
``base64(nonce || ciphertext || tag)``.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import Settings, get_settings
from .errors import (
    CredentialNotFound,
    DataSourceFailure,
    IntegrityCheckFailed,
    SecurityFailure,
    SecurityFailureKind,
    ValidationFailure,
    VaultConfigError,
)
from .security import SecurityGate

logger = logging.getLogger(__name__)

KEY_PREFIX = "api_key_"
NONCE_LENGTH = 12
TAG_LENGTH = 16
MIN_API_KEY_LENGTH = 10

SERVICE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
API_KEY_RE = re.compile(r"^[a-zA-Z0-9\-_.]+$")

_HKDF_SALT = b"card-pipeline/credential-vault"
_HKDF_INFO = b"aes-256-gcm record key"


@runtime_checkable
class SecureStorage(Protocol):
    """Opaque key/value store underneath the vault (platform keychain, file, ...)."""

    async def read(self, key: str) -> str | None: ...

    async def write(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


class InMemorySecureStorage:
    """Process-local storage. Contents are lost on exit."""

    def __init__(self):
        self._data: dict[str, str] = {}

    async def read(self, key: str) -> str | None:
        return self._data.get(key)

    async def write(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)


class FileSecureStorage:
    """JSON file storage readable only by the owner (mode 0600)."""

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise OSError(f"credential file {self._path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise OSError(f"credential file {self._path} does not hold an object")
        return data

    def _dump(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self._path)

    async def read(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def write(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data[key] = value
            await asyncio.to_thread(self._dump, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._dump, data)

    async def keys(self) -> list[str]:
        data = await asyncio.to_thread(self._load)
        return list(data)


class CredentialVault:
    """Stores API keys encrypted under a master secret.

    Args:
        storage: Backend for the sealed records. Defaults to file storage at
            ``settings.credential_storage_path`` or in-memory storage.
        master_key: Secret the record key is derived from. Defaults to
            ``settings.credential_master_key``.
        gate: Security gate used for content checks.
    """

    def __init__(
        self,
        storage: SecureStorage | None = None,
        master_key: str | bytes | None = None,
        gate: SecurityGate | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        if storage is None:
            if self._settings.credential_storage_path:
                storage = FileSecureStorage(self._settings.credential_storage_path)
            else:
                storage = InMemorySecureStorage()
        self._storage = storage
        self._gate = gate or SecurityGate(self._settings)
        self._aead = AESGCM(self._derive_key(master_key))
        self._locks: dict[str, asyncio.Lock] = {}

    def _derive_key(self, master_key: str | bytes | None) -> bytes:
        if master_key is None:
            master_key = self._settings.credential_master_key.get_secret_value()
        if isinstance(master_key, str):
            master_key = master_key.encode("utf-8")
        if not master_key:
            raise VaultConfigError("Set CREDENTIAL_MASTER_KEY to use the credential vault")

        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=_HKDF_SALT, info=_HKDF_INFO)
        return hkdf.derive(master_key)

    @staticmethod
    def generate_master_key() -> str:
        """Generate a random master secret suitable for CREDENTIAL_MASTER_KEY."""
        return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def _get_lock(self, service: str) -> asyncio.Lock:
        """Get or create a lock for a specific service."""
        if service not in self._locks:
            self._locks[service] = asyncio.Lock()
        return self._locks[service]

    # Validation

    @staticmethod
    def validate_service_name(service: str) -> str:
        if not service or not SERVICE_NAME_RE.match(service):
            raise ValidationFailure(
                "service",
                f"service name {service!r} does not match {SERVICE_NAME_RE.pattern}",
                "Service name is not valid.",
            )
        return service

    @staticmethod
    def validate_api_key(api_key: str) -> str:
        if not api_key or len(api_key) < MIN_API_KEY_LENGTH:
            raise ValidationFailure(
                "api_key",
                f"api key shorter than {MIN_API_KEY_LENGTH} characters",
                "API key is too short.",
            )
        if not API_KEY_RE.match(api_key):
            raise ValidationFailure("api_key", "api key contains disallowed characters", "API key format is not valid.")
        return api_key

    # Sealing

    def _seal(self, service: str, api_key: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aead.encrypt(nonce, api_key.encode("utf-8"), service.encode("utf-8"))
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def _open(self, service: str, blob: str) -> str:
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as e:
            raise IntegrityCheckFailed(f"record for {service} is not valid base64") from e

        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise IntegrityCheckFailed(f"record for {service} is truncated ({len(raw)} bytes)")

        nonce, ciphertext = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, service.encode("utf-8"))
        except InvalidTag as e:
            raise IntegrityCheckFailed(
                f"authentication tag mismatch for {service}",
                "Data integrity check failed.",
            ) from e
        return plaintext.decode("utf-8")

    # Public API

    async def store(self, service: str, api_key: str) -> None:
        """Validate, encrypt and persist a key, replacing any existing one.

        Raises:
            ValidationFailure: Service name or key format is invalid
            SecurityFailure: Key carries a known malicious payload
            DataSourceFailure: Storage I/O failed
        """
        self.validate_service_name(service)
        if api_key and self._gate.contains_malicious_payload(api_key):
            raise SecurityFailure(
                SecurityFailureKind.MALICIOUS_CONTENT,
                f"api key for {service} contains a malicious payload",
                "The API key contains content that is not allowed.",
            )
        self.validate_api_key(api_key)

        sealed = self._seal(service, api_key)
        async with self._get_lock(service):
            try:
                await self._storage.write(KEY_PREFIX + service, sealed)
            except OSError as e:
                raise DataSourceFailure(f"failed to write credential for {service}: {e}") from e
        logger.info(f"Stored credential for service '{service}'")

    async def get(self, service: str) -> str:
        """Return the decrypted key.

        Raises:
            CredentialNotFound: No key stored for service
            IntegrityCheckFailed: Record was tampered with or corrupted
        """
        self.validate_service_name(service)
        async with self._get_lock(service):
            try:
                blob = await self._storage.read(KEY_PREFIX + service)
            except OSError as e:
                raise DataSourceFailure(f"failed to read credential for {service}: {e}") from e

        if blob is None:
            raise CredentialNotFound(f"no credential stored for {service}")

        try:
            return self._open(service, blob)
        except IntegrityCheckFailed:
            logger.error(f"Integrity check failed for stored credential '{service}'")
            raise

    async def has(self, service: str) -> bool:
        try:
            self.validate_service_name(service)
        except ValidationFailure:
            return False
        try:
            return await self._storage.read(KEY_PREFIX + service) is not None
        except OSError as e:
            raise DataSourceFailure(f"failed to read credential for {service}: {e}") from e

    async def delete(self, service: str) -> bool:
        """Delete a stored key. Returns whether one existed."""
        self.validate_service_name(service)
        async with self._get_lock(service):
            try:
                existed = await self._storage.read(KEY_PREFIX + service) is not None
                if existed:
                    await self._storage.delete(KEY_PREFIX + service)
            except OSError as e:
                raise DataSourceFailure(f"failed to delete credential for {service}: {e}") from e
        if existed:
            logger.info(f"Deleted credential for service '{service}'")
        return existed

    async def list_services(self) -> list[str]:
        try:
            keys = await self._storage.keys()
        except OSError as e:
            raise DataSourceFailure(f"failed to list credentials: {e}") from e
        return sorted(key[len(KEY_PREFIX):] for key in keys if key.startswith(KEY_PREFIX))

    async def clear_all(self) -> int:
        """Delete every stored key. Returns the number deleted."""
        deleted = 0
        for service in await self.list_services():
            if await self.delete(service):
                deleted += 1
        return deleted
