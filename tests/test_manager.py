"""Tests for AuthManager."""

import json
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from tests.fakes import FakeCallbackServer, FakeClientCredentialsReader, FakeCodeExchanger
from wsauth.backends import MemorySecretBackend
from wsauth.config import ConfigFile, Settings
from wsauth.exceptions import (
    InvalidInputError,
    InvalidRedirectError,
    InvalidServiceAccountKeyError,
    StateMismatchError,
)
from wsauth.manager import AuthManager
from wsauth.oauth_flow import CALLBACK_PATH, OAuthAuthorizer
from wsauth.services import scopes_for_manage, user_services
from wsauth.store import CredentialStore, Token

REDIRECT = "http://127.0.0.1:5555/oauth2/callback"


@pytest.fixture
def config() -> ConfigFile:
    return ConfigFile(client_domains={"corp.com": "team"})


@pytest.fixture
def manager(
    store: CredentialStore, authorizer: OAuthAuthorizer, settings: Settings, config: ConfigFile
) -> AuthManager:
    return AuthManager(
        store,
        authorizer,
        settings=settings,
        load_config=lambda: config,
        credentials_exist=lambda client: False,
    )


class TestAddToken:
    """Login strategies chosen by add_token."""

    async def test_direct_exchange_stores_token(
        self, manager: AuthManager, store: CredentialStore, exchanger: FakeCodeExchanger
    ) -> None:
        result = await manager.add_token(
            "Alice@Example.com",
            auth_url="http://127.0.0.1:9/cb?code=abc",
            services=["gmail", "Drive"],
        )

        assert result.email == "alice@example.com"
        assert result.client == "default"
        assert result.message == "Stored token for alice@example.com"

        token = await store.get_token("default", "alice@example.com")
        assert token.refresh_token == "rt-1"
        assert token.services == ["drive", "gmail"]
        assert token.scopes == scopes_for_manage(["gmail", "drive"])
        assert exchanger.requests[0].scopes == token.scopes
        assert await store.get_default_account("default") == "alice@example.com"

    async def test_default_services_are_user_services(
        self, manager: AuthManager, store: CredentialStore
    ) -> None:
        await manager.add_token("a@example.com", auth_url="http://127.0.0.1:9/cb?code=abc")
        token = await store.get_token("default", "a@example.com")
        assert token.services == sorted(user_services())

    async def test_client_from_domain_mapping(
        self,
        manager: AuthManager,
        store: CredentialStore,
        credentials_reader: FakeClientCredentialsReader,
    ) -> None:
        result = await manager.add_token("bob@corp.com", auth_url="http://127.0.0.1:9/cb?code=x")

        assert result.client == "team"
        assert credentials_reader.calls == ["team"]
        assert (await store.get_token("team", "bob@corp.com")).refresh_token == "rt-1"
        assert await store.get_default_account("team") == "bob@corp.com"

    async def test_explicit_client_overrides_mapping(
        self, manager: AuthManager, credentials_reader: FakeClientCredentialsReader
    ) -> None:
        result = await manager.add_token(
            "bob@corp.com", client="default", auth_url="http://127.0.0.1:9/cb?code=x"
        )
        assert result.client == "default"
        assert credentials_reader.calls == ["default"]

    async def test_remote_step_one_prints_url_only(
        self, manager: AuthManager, store: CredentialStore, exchanger: FakeCodeExchanger
    ) -> None:
        result = await manager.add_token("a@example.com", remote=True, step=1)

        query = parse_qs(urlsplit(result.auth_url).query)
        assert query["state"] == ["fixed-state"]
        assert query["redirect_uri"] == [REDIRECT]
        assert "--step 2" in result.message
        assert exchanger.requests == []
        assert await store.list_tokens() == []

    async def test_remote_step_two_requires_state(
        self, manager: AuthManager, exchanger: FakeCodeExchanger
    ) -> None:
        with pytest.raises(InvalidRedirectError, match="missing state"):
            await manager.add_token(
                "a@example.com", remote=True, step=2, auth_url=f"{REDIRECT}?code=abc"
            )
        assert exchanger.requests == []

    async def test_remote_step_two_exchanges(
        self, manager: AuthManager, exchanger: FakeCodeExchanger
    ) -> None:
        result = await manager.add_token(
            "a@example.com",
            remote=True,
            step=2,
            auth_url=f"{REDIRECT}?code=abc&state=fixed-state",
        )
        assert result.message == "Stored token for a@example.com"
        assert exchanger.requests[0].redirect_uri == REDIRECT
        assert exchanger.requests[0].state == "fixed-state"

    async def test_remote_url_without_step_is_step_two(
        self, manager: AuthManager, exchanger: FakeCodeExchanger
    ) -> None:
        await manager.add_token(
            "a@example.com", remote=True, auth_url=f"{REDIRECT}?code=abc&state=s"
        )
        assert exchanger.requests[0].code == "abc"

    async def test_remote_local_server(
        self,
        manager: AuthManager,
        store: CredentialStore,
        callback_server: FakeCallbackServer,
        settings: Settings,
    ) -> None:
        urls: list[str] = []

        def on_auth_url(url: str) -> None:
            urls.append(url)
            callback_server.deliver(f"{CALLBACK_PATH}?state=fixed-state&code=abc")

        result = await manager.add_token(
            "a@example.com", remote=True, services=["drive"], on_auth_url=on_auth_url
        )

        assert len(urls) == 1
        assert result.email == "a@example.com"
        assert (await store.get_token("default", "a@example.com")).services == ["drive"]
        assert callback_server.closed

    async def test_local_server_state_mismatch_stores_nothing(
        self, manager: AuthManager, store: CredentialStore, callback_server: FakeCallbackServer
    ) -> None:
        def on_auth_url(url: str) -> None:
            callback_server.deliver(f"{CALLBACK_PATH}?state=other&code=abc")

        with pytest.raises(StateMismatchError):
            await manager.add_token("a@example.com", remote=True, on_auth_url=on_auth_url)
        assert await store.list_tokens() == []

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"step": 3, "remote": True}, "step must be 1 or 2"),
            ({"step": 1}, "--step requires --remote"),
            (
                {"remote": True, "step": 1, "auth_url": "http://x/cb?code=a"},
                "does not accept",
            ),
            ({"remote": True, "step": 2}, "requires --auth-url"),
            ({"remote": True, "auth_code": "abc"}, "--auth-code is not valid with --remote"),
            ({"manual": True}, "manual login needs"),
            ({}, "no auth-url or auth-code"),
            ({"services": ["photos"]}, "unknown service"),
        ],
    )
    async def test_invalid_combinations(
        self, manager: AuthManager, kwargs: dict[str, Any], message: str
    ) -> None:
        with pytest.raises(InvalidInputError, match=message):
            await manager.add_token("a@example.com", **kwargs)

    async def test_missing_email(self, manager: AuthManager) -> None:
        with pytest.raises(InvalidInputError, match="missing email"):
            await manager.add_token("  ", auth_code="abc")


class TestListingAndRemoval:
    """list_tokens, status and remove_token."""

    async def test_list_tokens_sorted(self, manager: AuthManager, store: CredentialStore) -> None:
        await store.set_token("team", "b@example.com", Token("b@example.com", "rt"))
        await store.set_token("default", "z@example.com", Token("z@example.com", "rt"))
        await store.set_token("default", "a@example.com", Token("a@example.com", "rt"))

        summaries = await manager.list_tokens()

        assert [(s.client, s.email) for s in summaries] == [
            ("default", "a@example.com"),
            ("default", "z@example.com"),
            ("team", "b@example.com"),
        ]
        assert set(summaries[0].to_dict()) == {"client", "email", "created_at"}

    async def test_status(
        self, manager: AuthManager, store: CredentialStore, settings: Settings
    ) -> None:
        await store.set_token("default", "a@example.com", Token("a@example.com", "rt"))

        status = await manager.status()

        assert status.token_count == 1
        assert status.config_path == str(settings.app_dir / "config.json")
        assert status.keyring_backend == "auto"

    async def test_remove_token_all_clients(
        self, manager: AuthManager, store: CredentialStore, backend: MemorySecretBackend
    ) -> None:
        await store.set_token("default", "a@example.com", Token("a@example.com", "rt"))
        await store.set_token("team", "a@example.com", Token("a@example.com", "rt"))
        await store.set_token("team", "b@example.com", Token("b@example.com", "rt"))

        assert await manager.remove_token("A@example.com")
        assert [(t.client, t.email) for t in await store.list_tokens()] == [
            ("team", "b@example.com")
        ]
        assert await backend.get("token:a@example.com") is None

    async def test_remove_unknown(self, manager: AuthManager) -> None:
        assert not await manager.remove_token("nobody@example.com")


class TestServiceAccounts:
    """add_service_account and set_default_service_account."""

    async def test_import_key(
        self,
        manager: AuthManager,
        store: CredentialStore,
        tmp_path: Path,
        service_account_json: str,
    ) -> None:
        key_file = tmp_path / "key.json"
        key_file.write_text(service_account_json)

        email = await manager.add_service_account(key_file)

        assert email == "robot@test-project.iam.gserviceaccount.com"
        assert await store.get_service_account_key(email) == service_account_json
        assert await store.get_default_service_account() == email

    async def test_missing_file(self, manager: AuthManager, tmp_path: Path) -> None:
        with pytest.raises(InvalidServiceAccountKeyError, match="missing.json"):
            await manager.add_service_account(tmp_path / "missing.json")

    async def test_not_a_service_account(
        self, manager: AuthManager, store: CredentialStore, tmp_path: Path
    ) -> None:
        key_file = tmp_path / "key.json"
        key_file.write_text(json.dumps({"type": "authorized_user", "client_email": "x@y.z"}))

        with pytest.raises(InvalidServiceAccountKeyError, match="authorized_user"):
            await manager.add_service_account(key_file)
        assert await store.get_default_service_account() == ""

    async def test_set_default(self, manager: AuthManager, store: CredentialStore) -> None:
        assert await manager.set_default_service_account(" Robot@X.com ") == "robot@x.com"
        assert await store.get_default_service_account() == "robot@x.com"
