"""Shared fixtures for wsauth tests."""

import json
from pathlib import Path
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tests.fakes import FakeCallbackServer, FakeClientCredentialsReader, FakeCodeExchanger
from wsauth.backends import MemorySecretBackend
from wsauth.config import Settings
from wsauth.oauth_flow import OAuthAuthorizer
from wsauth.store import CredentialStore


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary config directory."""
    return Settings(config_dir=tmp_path / "wsauth")


@pytest.fixture
def backend() -> MemorySecretBackend:
    return MemorySecretBackend()


@pytest.fixture
def store(backend: MemorySecretBackend) -> CredentialStore:
    return CredentialStore(backend)


@pytest.fixture
def credentials_reader() -> FakeClientCredentialsReader:
    return FakeClientCredentialsReader()


@pytest.fixture
def exchanger() -> FakeCodeExchanger:
    return FakeCodeExchanger()


@pytest.fixture
def callback_server() -> FakeCallbackServer:
    return FakeCallbackServer()


@pytest.fixture
def authorizer(
    credentials_reader: FakeClientCredentialsReader,
    exchanger: FakeCodeExchanger,
    callback_server: FakeCallbackServer,
) -> OAuthAuthorizer:
    """Authorizer with fake collaborators and deterministic state/redirect URI."""

    async def redirect_uri() -> str:
        return "http://127.0.0.1:5555/oauth2/callback"

    return OAuthAuthorizer(
        read_client_credentials=credentials_reader,
        exchange_code=exchanger,
        callback_server_factory=lambda: callback_server,
        random_state=lambda: "fixed-state",
        redirect_uri_factory=redirect_uri,
    )


@pytest.fixture(scope="session")
def private_key_pem() -> str:
    """A real RSA private key so google-auth can build a signer."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def service_account_info(private_key_pem: str) -> dict[str, Any]:
    return {
        "type": "service_account",
        "project_id": "test-project",
        "private_key_id": "key-1",
        "private_key": private_key_pem,
        "client_email": "robot@test-project.iam.gserviceaccount.com",
        "client_id": "1234567890",
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def service_account_json(service_account_info: dict[str, Any]) -> str:
    return json.dumps(service_account_info)
