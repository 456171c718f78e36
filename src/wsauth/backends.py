"""Secret backends: async string key/value persistence.

Three implementations share the ``SecretBackend`` contract:

- ``MemorySecretBackend``: a dict, for tests and throwaway sessions.
- ``EncryptedFileBackend``: the default. One JSON object encrypted as a single
  AES-256-GCM blob whose key is derived from the machine and user identity,
  so the file is useless if copied elsewhere.
- ``KeyringSecretBackend``: the OS keyring (macOS Keychain, Windows Credential
  Locker, Linux Secret Service) through the ``keyring`` library.

Values are opaque strings; JSON shapes belong to ``wsauth.store``.
"""

from __future__ import annotations

import asyncio
import getpass
import json
import os
import socket
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from loguru import logger

from wsauth.config import APP_NAME, write_private_file
from wsauth.exceptions import ConfigError, DecryptionError

SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH

# Anything shorter cannot hold a header plus at least one byte of ciphertext.
MIN_FILE_LENGTH = HEADER_LENGTH + 1

SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

KEYRING_INDEX_USERNAME = "__index__"


class SecretBackend(ABC):
    """Async key/value store of strings."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Removing an absent key is not an error."""

    @abstractmethod
    async def keys(self) -> list[str]:
        """List all stored keys."""


class MemorySecretBackend(SecretBackend):
    """In-memory backend."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)


def machine_identity() -> bytes:
    """Seed for key derivation: hostname and OS user joined by NUL."""
    return f"{socket.gethostname()}\0{getpass.getuser()}".encode()


def derive_key(salt: bytes, identity: bytes | None = None) -> bytes:
    """Derive the 32-byte AES key from the machine identity and a salt (scrypt)."""
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(identity if identity is not None else machine_identity())


class EncryptedFileBackend(SecretBackend):
    """Backend persisting all entries as one encrypted file.

    File layout: ``salt(16) || iv(12) || tag(16) || ciphertext``. Every write
    re-reads the file, applies the change and rewrites everything with a fresh
    salt and IV. Writes through one instance are serialized.

    Args:
        path: Location of the encrypted file.
        identity: Key derivation seed. Defaults to ``machine_identity()``.
    """

    def __init__(self, path: Path, identity: bytes | None = None) -> None:
        self.path = Path(path)
        self._identity = identity
        self._write_lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        def mutate(data: dict[str, str]) -> None:
            data[key] = value

        async with self._write_lock:
            await asyncio.to_thread(self._update, mutate)

    async def delete(self, key: str) -> None:
        def mutate(data: dict[str, str]) -> None:
            data.pop(key, None)

        async with self._write_lock:
            await asyncio.to_thread(self._update, mutate)

    async def keys(self) -> list[str]:
        data = await asyncio.to_thread(self._load)
        return list(data)

    def _load(self) -> dict[str, str]:
        try:
            blob = self.path.read_bytes()
        except FileNotFoundError:
            return {}

        if len(blob) < MIN_FILE_LENGTH:
            logger.warning(
                "Credential store too short, treating as empty",
                extra={"path": str(self.path), "length": len(blob)},
            )
            return {}

        salt = blob[:SALT_LENGTH]
        iv = blob[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = blob[SALT_LENGTH + IV_LENGTH : HEADER_LENGTH]
        ciphertext = blob[HEADER_LENGTH:]

        key = derive_key(salt, self._identity)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError(str(self.path)) from e

        try:
            data: Any = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionError(str(self.path), f"payload is not JSON: {e}") from e

        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            raise DecryptionError(str(self.path), "payload is not an object of strings")
        return data

    def _save(self, data: dict[str, str]) -> None:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = derive_key(salt, self._identity)
        sealed = AESGCM(key).encrypt(iv, json.dumps(data).encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        write_private_file(self.path, salt + iv + tag + ciphertext)

    def _update(self, mutate: Callable[[dict[str, str]], None]) -> None:
        data = self._load()
        mutate(data)
        self._save(data)
        logger.debug(
            "Credential store written", extra={"path": str(self.path), "entries": len(data)}
        )


class KeyringSecretBackend(SecretBackend):
    """Backend storing each entry in the OS keyring.

    The keyring API cannot enumerate entries, so a JSON list of keys is kept
    under the reserved ``__index__`` username.

    Args:
        service_name: Keyring service name.
        keyring_module: Object exposing ``get_password``/``set_password``/
            ``delete_password``. Defaults to the ``keyring`` package.
    """

    def __init__(self, service_name: str = APP_NAME, keyring_module: Any = None) -> None:
        self.service_name = service_name
        self._keyring = keyring_module if keyring_module is not None else keyring
        self._index_lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._keyring.get_password, self.service_name, key)

    async def set(self, key: str, value: str) -> None:
        async with self._index_lock:
            await asyncio.to_thread(self._set_sync, key, value)

    async def delete(self, key: str) -> None:
        async with self._index_lock:
            await asyncio.to_thread(self._delete_sync, key)

    async def keys(self) -> list[str]:
        return await asyncio.to_thread(self._read_index)

    def _read_index(self) -> list[str]:
        raw = self._keyring.get_password(self.service_name, KEYRING_INDEX_USERNAME)
        if not raw:
            return []
        try:
            index = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(
                f"keyring index for {self.service_name} is corrupt: {e}",
                remediation=f"delete the {KEYRING_INDEX_USERNAME} entry of {self.service_name}",
            ) from e
        return [k for k in index if isinstance(k, str)]

    def _write_index(self, index: list[str]) -> None:
        self._keyring.set_password(
            self.service_name, KEYRING_INDEX_USERNAME, json.dumps(sorted(index))
        )

    def _set_sync(self, key: str, value: str) -> None:
        self._keyring.set_password(self.service_name, key, value)
        index = self._read_index()
        if key not in index:
            index.append(key)
            self._write_index(index)

    def _delete_sync(self, key: str) -> None:
        if self._keyring.get_password(self.service_name, key) is not None:
            self._keyring.delete_password(self.service_name, key)
        index = self._read_index()
        if key in index:
            index.remove(key)
            self._write_index(index)


def open_backend(name: str, path: Path) -> SecretBackend:
    """Create the backend selected by name.

    Args:
        name: ``auto`` or ``file`` (encrypted file), ``keyring`` or ``memory``.
        path: Encrypted file location, used by the file backend.

    Raises:
        ConfigError: For an unknown backend name.
    """
    normalized = name.strip().lower() or "auto"
    if normalized in ("auto", "file"):
        return EncryptedFileBackend(path)
    if normalized == "keyring":
        return KeyringSecretBackend(APP_NAME)
    if normalized == "memory":
        return MemorySecretBackend()
    raise ConfigError(
        f"unknown keyring backend {name!r}",
        remediation="set keyring_backend to one of: auto, file, keyring, memory",
    )
