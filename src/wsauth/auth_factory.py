"""Build ready-to-use Google credentials for an API call.

The account resolver decides which identity a call uses; this module turns
that identity into either service-account (JWT) credentials, optionally
delegated to a user, or user OAuth credentials built from a stored refresh
token. Nothing here talks to the network.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import google.oauth2.credentials
from google.oauth2 import service_account
from loguru import logger

from wsauth.clients import ClientCredentials, read_client_credentials_for
from wsauth.exceptions import (
    AuthRequiredError,
    InvalidServiceAccountKeyError,
    ServiceAccountKeyNotFoundError,
    TokenNotFoundError,
)
from wsauth.oauth_flow import GOOGLE_TOKEN_URI
from wsauth.store import CredentialStore, open_default_store

SERVICE_ACCOUNT_KEY_TYPE = "service_account"


@dataclass(frozen=True)
class ResolvedAccount:
    """The identity selected for a call."""

    email: str = ""
    client_override: str = ""
    service_account: str | None = None
    impersonate: str | None = None


@dataclass
class ServiceAccountKeyData:
    """A Google service-account JSON key.

    ``extra`` keeps every other field of the key file so the whole key can be
    handed to google-auth unchanged.
    """

    type: str
    client_email: str
    private_key: str
    project_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, raw: str, email: str = "") -> ServiceAccountKeyData:
        """Parse and validate a key.

        Raises:
            InvalidServiceAccountKeyError: If the JSON is unparsable, has the
                wrong ``type`` or lacks ``client_email``/``private_key``.
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidServiceAccountKeyError(email, f"unparsable JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidServiceAccountKeyError(email, "key must be a JSON object")
        return cls.from_dict(data, email)

    @classmethod
    def from_dict(cls, data: dict[str, Any], email: str = "") -> ServiceAccountKeyData:
        key_type = data.get("type")
        if key_type != SERVICE_ACCOUNT_KEY_TYPE:
            raise InvalidServiceAccountKeyError(
                email, f"expected type {SERVICE_ACCOUNT_KEY_TYPE!r}, got {key_type!r}"
            )
        client_email = data.get("client_email")
        private_key = data.get("private_key")
        if not isinstance(client_email, str) or not client_email.strip():
            raise InvalidServiceAccountKeyError(email, "missing client_email")
        if not isinstance(private_key, str) or not private_key.strip():
            raise InvalidServiceAccountKeyError(email, "missing private_key")

        known = {"type", "client_email", "private_key", "project_id"}
        return cls(
            type=key_type,
            client_email=client_email,
            private_key=private_key,
            project_id=data.get("project_id"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_info(self) -> dict[str, Any]:
        """The key as google-auth's ``from_service_account_info`` expects it."""
        info: dict[str, Any] = dict(self.extra)
        info.update(
            {
                "type": self.type,
                "client_email": self.client_email,
                "private_key": self.private_key,
            }
        )
        if self.project_id is not None:
            info["project_id"] = self.project_id
        info.setdefault("token_uri", GOOGLE_TOKEN_URI)
        return info


AccountResolver = Callable[[], Awaitable[ResolvedAccount]]
ServiceAccountKeyReader = Callable[[str], Awaitable[ServiceAccountKeyData]]


async def _load_service_account_key(
    email: str,
    store: CredentialStore,
    read_service_account_key: ServiceAccountKeyReader | None,
) -> ServiceAccountKeyData:
    if read_service_account_key is not None:
        key = await read_service_account_key(email)
        if key.type != SERVICE_ACCOUNT_KEY_TYPE:
            raise InvalidServiceAccountKeyError(
                email, f"expected type {SERVICE_ACCOUNT_KEY_TYPE!r}, got {key.type!r}"
            )
        return key

    raw = await store.get_service_account_key(email)
    if raw is None:
        raise ServiceAccountKeyNotFoundError(email)
    return ServiceAccountKeyData.from_json(raw, email)


async def create_authenticated_client(
    resolve_account: AccountResolver,
    *,
    store: CredentialStore,
    read_client_credentials: Callable[[str], ClientCredentials],
    read_service_account_key: ServiceAccountKeyReader | None = None,
    resolve_client: Callable[[str, str], str] | None = None,
    scopes: list[str] | None = None,
    service_account_credentials_class: Any = service_account.Credentials,
    oauth_credentials_class: Any = google.oauth2.credentials.Credentials,
) -> Any:
    """Resolve the current identity and build credentials for it.

    Args:
        resolve_account: Called on every invocation to pick the identity.
        store: Credential store holding tokens and service-account keys.
        read_client_credentials: Client name to OAuth id/secret (blocking).
        read_service_account_key: Optional override of the store's key lookup.
        resolve_client: ``(email, override) -> client name``. Defaults to the
            override, or the default client.
        scopes: Scopes for the credentials.
        service_account_credentials_class: Injectable for tests.
        oauth_credentials_class: Injectable for tests.

    Returns:
        A google-auth credentials object, not yet refreshed.

    Raises:
        AuthRequiredError: No identity was resolved, or no token is stored.
        ServiceAccountKeyNotFoundError: No key stored for the service account.
        InvalidServiceAccountKeyError: The stored key is unusable.
        MissingCredentialsError: No OAuth client credentials for the client.
    """
    account = await resolve_account()
    email = account.email.strip().lower()
    service_account_email = (account.service_account or "").strip().lower()
    impersonate = (account.impersonate or "").strip() or None

    if not email and not service_account_email:
        raise AuthRequiredError(
            "",
            detail="no account specified; use --account <email> or --sa <email> or log in first",
        )

    if service_account_email:
        key = await _load_service_account_key(service_account_email, store, read_service_account_key)
        try:
            credentials = service_account_credentials_class.from_service_account_info(
                key.to_info(), scopes=scopes, subject=impersonate
            )
        except ValueError as e:
            raise InvalidServiceAccountKeyError(service_account_email, str(e)) from e
        logger.debug(
            "Using service account credentials",
            extra={"service_account": service_account_email, "impersonate": impersonate},
        )
        return credentials

    client = (
        resolve_client(email, account.client_override)
        if resolve_client is not None
        else (account.client_override.strip() or "default")
    )
    client_credentials = await asyncio.to_thread(read_client_credentials, client)
    try:
        token = await store.get_token(client, email)
    except TokenNotFoundError as e:
        raise AuthRequiredError(email, client) from e

    logger.debug("Using OAuth credentials", extra={"email": email, "client": client})
    return oauth_credentials_class(
        token=None,
        refresh_token=token.refresh_token,
        client_id=client_credentials.client_id,
        client_secret=client_credentials.client_secret,
        token_uri=GOOGLE_TOKEN_URI,
        scopes=scopes,
    )


class ServiceRuntime:
    """Per-call credentials facade for API-calling code.

    Each ``get_client`` call re-runs the resolver, so flag changes are seen.
    Without an explicit store the configured default store is opened once.
    Keyword arguments are passed through to ``create_authenticated_client``.
    """

    def __init__(
        self,
        resolve_account: AccountResolver,
        store: CredentialStore | None = None,
        read_client_credentials: Callable[[str], ClientCredentials] = read_client_credentials_for,
        **factory_options: Any,
    ) -> None:
        self._resolve_account = resolve_account
        self._store = store
        self._read_client_credentials = read_client_credentials
        self._factory_options = factory_options

    async def get_client(self, scopes: list[str]) -> Any:
        if self._store is None:
            self._store = await asyncio.to_thread(open_default_store)
        return await create_authenticated_client(
            self._resolve_account,
            store=self._store,
            read_client_credentials=self._read_client_credentials,
            scopes=scopes,
            **self._factory_options,
        )
