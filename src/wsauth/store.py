"""Credential store: tokens, default-account pointers and service-account keys.

Key namespace inside the secret backend:

- ``token:<client>:<email>``: a stored user token
- ``token:<email>``: legacy alias, default client only
- ``default_account:<client>`` and the global ``default_account``
- ``default_service_account``
- ``sa_key:<email>``

This module owns every JSON shape stored in the backend.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from wsauth.backends import SecretBackend, open_backend
from wsauth.clients import DEFAULT_CLIENT_NAME, normalize_client_name_or_default
from wsauth.config import (
    Settings,
    config_path,
    credentials_enc_path,
    read_config,
    resolve_keyring_backend,
)
from wsauth.exceptions import InvalidInputError, TokenNotFoundError

TOKEN_PREFIX = "token:"
DEFAULT_ACCOUNT_KEY = "default_account"
DEFAULT_SERVICE_ACCOUNT_KEY = "default_service_account"
SA_KEY_PREFIX = "sa_key:"


@dataclass
class Token:
    """A stored user credential."""

    email: str
    refresh_token: str
    client: str = DEFAULT_CLIENT_NAME
    services: list[str] | None = None
    scopes: list[str] | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Stored JSON shape. Client and email live in the key, not the value."""
        data: dict[str, Any] = {"refresh_token": self.refresh_token}
        if self.services:
            data["services"] = list(self.services)
        if self.scopes:
            data["scopes"] = list(self.scopes)
        if self.created_at is not None:
            data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, client: str, email: str) -> Token:
        refresh_token = data.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise ValueError("missing refresh_token")
        created_at = None
        raw_created = data.get("created_at")
        if isinstance(raw_created, str) and raw_created:
            created_at = datetime.fromisoformat(raw_created.replace("Z", "+00:00"))
        return cls(
            email=email,
            client=client,
            refresh_token=refresh_token,
            services=data.get("services"),
            scopes=data.get("scopes"),
            created_at=created_at,
        )


def normalize_email(email: str) -> str:
    return email.strip().lower()


def token_key(client: str, email: str) -> str:
    return f"{TOKEN_PREFIX}{client}:{email}"


def legacy_token_key(email: str) -> str:
    return f"{TOKEN_PREFIX}{email}"


def parse_token_key(key: str) -> tuple[str, str] | None:
    """Parse ``(client, email)`` from a backend key.

    ``token:<client>:<email>`` gives ``(client, email)``; the legacy
    ``token:<email>`` gives ``(default, email)``. Anything else, or a form
    with an empty part, is not a token key.
    """
    if not key.startswith(TOKEN_PREFIX):
        return None
    rest = key[len(TOKEN_PREFIX) :]
    parts = rest.split(":")
    if len(parts) == 1:
        client, email = DEFAULT_CLIENT_NAME, parts[0]
    elif len(parts) == 2:
        client, email = parts
    else:
        return None
    client, email = client.strip(), email.strip()
    if not client or not email:
        return None
    return client, email


@dataclass
class CredentialStore:
    """Structured credential operations on top of a secret backend."""

    backend: SecretBackend

    async def keys(self) -> list[str]:
        return await self.backend.keys()

    async def set_token(self, client: str, email: str, token: Token) -> None:
        """Store a token for (client, email), overwriting any previous one.

        Raises:
            InvalidInputError: If the email or refresh token is empty.
        """
        email = normalize_email(email)
        if not email:
            raise InvalidInputError("missing email")
        if not token.refresh_token.strip():
            raise InvalidInputError(f"missing refresh token for {email}")
        client = normalize_client_name_or_default(client)

        if token.created_at is None:
            token = replace(token, created_at=datetime.now(UTC))
        payload = json.dumps(token.to_dict())

        await self.backend.set(token_key(client, email), payload)
        if client == DEFAULT_CLIENT_NAME:
            await self.backend.set(legacy_token_key(email), payload)
        logger.info("Token stored", extra={"client": client, "email": email})

    async def get_token(self, client: str, email: str) -> Token:
        """Load the token for (client, email).

        For the default client a token found only under the legacy key is
        migrated to the namespaced key.

        Raises:
            TokenNotFoundError: If nothing is stored.
            InvalidInputError: If the stored value is not valid token JSON or
                has no refresh token.
        """
        email = normalize_email(email)
        if not email:
            raise InvalidInputError("missing email")
        client = normalize_client_name_or_default(client)

        key = token_key(client, email)
        raw = await self.backend.get(key)
        if raw is None and client == DEFAULT_CLIENT_NAME:
            raw = await self.backend.get(legacy_token_key(email))
            if raw is not None:
                await self.backend.set(key, raw)
                logger.info("Migrated legacy token key", extra={"email": email})
        if raw is None:
            raise TokenNotFoundError(client, email)

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"decode token {key}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidInputError(f"decode token {key}: expected a JSON object")
        try:
            return Token.from_dict(data, client=client, email=email)
        except ValueError as e:
            raise InvalidInputError(f"decode token {key}: {e}") from e

    async def delete_token(self, client: str, email: str) -> None:
        email = normalize_email(email)
        if not email:
            raise InvalidInputError("missing email")
        client = normalize_client_name_or_default(client)

        await self.backend.delete(token_key(client, email))
        if client == DEFAULT_CLIENT_NAME:
            await self.backend.delete(legacy_token_key(email))
        logger.info("Token deleted", extra={"client": client, "email": email})

    async def list_tokens(self) -> list[Token]:
        """All stored tokens, one per (client, email)."""
        seen: set[tuple[str, str]] = set()
        tokens: list[Token] = []
        for key in await self.backend.keys():
            parsed = parse_token_key(key)
            if parsed is None:
                continue
            try:
                client = normalize_client_name_or_default(parsed[0])
            except InvalidInputError:
                logger.warning("Skipping token with invalid client name", extra={"key": key})
                continue
            email = normalize_email(parsed[1])
            if (client, email) in seen:
                continue
            seen.add((client, email))
            tokens.append(await self.get_token(client, email))
        return tokens

    async def get_default_account(self, client: str) -> str:
        """Default account for a client, falling back to the global pointer."""
        client = normalize_client_name_or_default(client)
        value = await self.backend.get(f"{DEFAULT_ACCOUNT_KEY}:{client}")
        if value:
            return value
        return await self.backend.get(DEFAULT_ACCOUNT_KEY) or ""

    async def set_default_account(self, client: str, email: str) -> None:
        email = normalize_email(email)
        if not email:
            raise InvalidInputError("missing email")
        client = normalize_client_name_or_default(client)
        await self.backend.set(f"{DEFAULT_ACCOUNT_KEY}:{client}", email)
        await self.backend.set(DEFAULT_ACCOUNT_KEY, email)

    async def get_default_service_account(self) -> str:
        return await self.backend.get(DEFAULT_SERVICE_ACCOUNT_KEY) or ""

    async def set_default_service_account(self, email: str) -> None:
        email = normalize_email(email)
        if not email:
            raise InvalidInputError("missing service account email")
        await self.backend.set(DEFAULT_SERVICE_ACCOUNT_KEY, email)

    async def get_service_account_key(self, email: str) -> str | None:
        """Raw key JSON for a service account, or None."""
        return await self.backend.get(f"{SA_KEY_PREFIX}{normalize_email(email)}")

    async def set_service_account_key(self, email: str, key_json: str) -> None:
        email = normalize_email(email)
        if not email:
            raise InvalidInputError("missing service account email")
        if not key_json.strip():
            raise InvalidInputError(f"empty service account key for {email}")
        await self.backend.set(f"{SA_KEY_PREFIX}{email}", key_json)
        logger.info("Service account key stored", extra={"email": email})


def open_default_store(settings: Settings | None = None) -> CredentialStore:
    """Open the store on the backend chosen by config.json or the environment."""
    config = read_config(config_path(settings))
    backend_name = resolve_keyring_backend(config, settings)
    logger.debug("Opening credential store", extra={"backend": backend_name})
    return CredentialStore(open_backend(backend_name, credentials_enc_path(settings)))
