"""Account management: login, listing, removal and service-account import.

``AuthManager`` drives the OAuth strategies and the credential store on behalf
of the ``wsauth`` CLI. Which strategy a login uses:

- ``--remote`` without a step, URL or code: local callback server
- ``--remote --step 1``: print an authorization URL and stop
- ``--remote --step 2 --auth-url <url>``: exchange, with the state required
- anything else: direct exchange of ``--auth-url``/``--auth-code``
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from loguru import logger

from wsauth.auth_factory import ServiceAccountKeyData
from wsauth.clients import DEFAULT_CLIENT_NAME, client_credentials_exist, resolve_client_for_account
from wsauth.config import (
    ConfigFile,
    Settings,
    config_path,
    get_settings,
    read_config,
    resolve_keyring_backend,
)
from wsauth.exceptions import InvalidInputError, InvalidServiceAccountKeyError
from wsauth.oauth_flow import AuthorizeOptions, LocalServerOptions, OAuthAuthorizer
from wsauth.services import parse_service, scopes_for_manage, user_services
from wsauth.store import CredentialStore, Token, normalize_email


@dataclass
class AddTokenResult:
    email: str
    message: str
    client: str = DEFAULT_CLIENT_NAME
    auth_url: str = ""
    state_reused: bool = False


@dataclass
class TokenSummary:
    client: str
    email: str
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, str]:
        data = {"client": self.client, "email": self.email}
        if self.created_at is not None:
            data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class AuthStatus:
    token_count: int
    config_path: str
    keyring_backend: str


def _print_auth_url(url: str) -> None:
    sys.stderr.write(f"Open this URL in your browser:\n{url}\n\nWaiting for authorization...\n")
    sys.stderr.flush()


def _require_email(email: str) -> str:
    normalized = normalize_email(email)
    if not normalized:
        raise InvalidInputError("missing email")
    return normalized


class AuthManager:
    """Login and account bookkeeping on top of the store and the authorizer.

    Args:
        store: Credential store.
        authorizer: OAuth strategies.
        settings: Settings for paths and the keyring backend (default: cached).
        load_config: Reads config.json (default: from the settings' path).
        credentials_exist: Whether client credentials exist for a client name,
            used when a client is inferred from the email domain.
    """

    def __init__(
        self,
        store: CredentialStore,
        authorizer: OAuthAuthorizer,
        *,
        settings: Settings | None = None,
        load_config: Callable[[], ConfigFile] | None = None,
        credentials_exist: Callable[[str], bool] | None = None,
    ) -> None:
        self._store = store
        self._authorizer = authorizer
        self._settings = settings or get_settings()
        self._load_config = load_config or (lambda: read_config(config_path(self._settings)))
        self._credentials_exist = credentials_exist or (
            lambda client: client_credentials_exist(client, self._settings)
        )

    async def _resolve_client(self, email: str, override: str) -> str:
        config = await asyncio.to_thread(self._load_config)
        return resolve_client_for_account(config, email, override, self._credentials_exist)

    async def _store_login(
        self, client: str, email: str, services: list[str], scopes: list[str], refresh_token: str
    ) -> AddTokenResult:
        await self._store.set_token(
            client,
            email,
            Token(
                email=email,
                client=client,
                refresh_token=refresh_token,
                services=sorted(services),
                scopes=scopes,
            ),
        )
        await self._store.set_default_account(client, email)
        logger.info("Login stored", extra={"email": email, "client": client})
        return AddTokenResult(email=email, client=client, message=f"Stored token for {email}")

    async def add_token(
        self,
        email: str,
        *,
        client: str = "",
        auth_url: str = "",
        auth_code: str = "",
        force_consent: bool = False,
        manual: bool = False,
        remote: bool = False,
        step: int = 0,
        services: list[str] | None = None,
        on_auth_url: Callable[[str], None] | None = None,
    ) -> AddTokenResult:
        """Authorize an account and store its refresh token.

        Raises:
            InvalidInputError: On an invalid step/flag combination.
        """
        email = _require_email(email)
        if step not in (0, 1, 2):
            raise InvalidInputError("step must be 1 or 2")
        if step != 0 and not remote:
            raise InvalidInputError("--step requires --remote")

        auth_url = auth_url.strip()
        auth_code = auth_code.strip()
        service_names = [parse_service(s) for s in services] if services else user_services()
        scopes = scopes_for_manage(service_names)
        resolved_client = await self._resolve_client(email, client)

        if remote:
            effective_step = step
            if effective_step == 0:
                if auth_url or auth_code:
                    effective_step = 2
                else:
                    result = await self._authorizer.authorize_with_local_server(
                        LocalServerOptions(
                            scopes=scopes,
                            client=resolved_client,
                            force_consent=force_consent,
                            timeout_ms=self._settings.callback_timeout_ms,
                            on_auth_url=on_auth_url or _print_auth_url,
                        )
                    )
                    return await self._store_login(
                        resolved_client, email, service_names, scopes, result.refresh_token
                    )

            if effective_step == 1:
                if auth_url or auth_code:
                    raise InvalidInputError(
                        "remote step 1 does not accept --auth-url or --auth-code"
                    )
                manual_result = await self._authorizer.manual_auth_url(
                    AuthorizeOptions(
                        scopes=scopes, client=resolved_client, force_consent=force_consent
                    )
                )
                return AddTokenResult(
                    email=email,
                    client=resolved_client,
                    message="Run again with --remote --step 2 --auth-url <redirect-url>",
                    auth_url=manual_result.url,
                    state_reused=manual_result.state_reused,
                )

            if auth_code:
                raise InvalidInputError(
                    "--auth-code is not valid with --remote (state check is mandatory)"
                )
            if not auth_url:
                raise InvalidInputError("remote step 2 requires --auth-url")

        if manual and not auth_url and not auth_code:
            raise InvalidInputError(
                "manual login needs --auth-url or --auth-code; "
                "use --remote --step 1 to get an authorization URL"
            )

        refresh_token = await self._authorizer.authorize(
            AuthorizeOptions(
                scopes=scopes,
                client=resolved_client,
                auth_url=auth_url,
                auth_code=auth_code,
                require_state=remote,
                force_consent=force_consent,
            )
        )
        return await self._store_login(resolved_client, email, service_names, scopes, refresh_token)

    async def list_tokens(self) -> list[TokenSummary]:
        tokens = await self._store.list_tokens()
        summaries = [TokenSummary(t.client, t.email, t.created_at) for t in tokens]
        return sorted(summaries, key=lambda s: (s.client, s.email))

    async def status(self) -> AuthStatus:
        tokens = await self._store.list_tokens()
        config = await asyncio.to_thread(self._load_config)
        return AuthStatus(
            token_count=len(tokens),
            config_path=str(config_path(self._settings)),
            keyring_backend=resolve_keyring_backend(config, self._settings),
        )

    async def remove_token(self, email: str) -> bool:
        """Remove every client's token for an email. Returns whether any existed."""
        target = _require_email(email)
        removed = False
        for token in await self._store.list_tokens():
            if normalize_email(token.email) != target:
                continue
            await self._store.delete_token(token.client, token.email)
            removed = True
        return removed

    async def add_service_account(self, key_file: Path) -> str:
        """Import a service-account key file and make it the default.

        Returns:
            The service account email.

        Raises:
            InvalidServiceAccountKeyError: If the file is unreadable, not JSON,
                not a service-account key or lacks ``client_email``.
        """
        try:
            content = await asyncio.to_thread(Path(key_file).read_text, encoding="utf-8")
        except OSError as e:
            raise InvalidServiceAccountKeyError("", f"read {key_file}: {e}") from e

        key = ServiceAccountKeyData.from_json(content)
        email = normalize_email(key.client_email)
        await self._store.set_service_account_key(email, content)
        await self._store.set_default_service_account(email)
        logger.info("Service account imported", extra={"email": email})
        return email

    async def set_default_service_account(self, email: str) -> str:
        email = _require_email(email)
        await self._store.set_default_service_account(email)
        return email
