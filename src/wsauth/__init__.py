"""wsauth - Multi-account credentials for Google Workspace command-line tools.

Obtains, stores and selects the credential for an API call: user OAuth2
refresh tokens across several OAuth clients and accounts, or service-account
keys with optional domain-wide delegation. Secrets are kept in a file
encrypted with a key bound to the machine and OS user, or in the OS keyring.

Example:
    from wsauth import ExecutionContext, build_service_runtime, open_default_store
    from wsauth.config import read_config

    config = read_config()
    store = open_default_store()
    runtime = build_service_runtime(ExecutionContext.from_flags("me@example.com"), store, config)
    credentials = await runtime.get_client(["https://www.googleapis.com/auth/drive"])
"""

from wsauth.accounts import ExecutionContext, build_account_resolver, build_service_runtime
from wsauth.auth_factory import (
    ResolvedAccount,
    ServiceAccountKeyData,
    ServiceRuntime,
    create_authenticated_client,
)
from wsauth.backends import EncryptedFileBackend, KeyringSecretBackend, MemorySecretBackend
from wsauth.exceptions import ErrorKind, WsAuthError
from wsauth.oauth_flow import OAuthAuthorizer
from wsauth.store import CredentialStore, Token, open_default_store

__version__ = "0.1.0"
__all__ = [
    "CredentialStore",
    "EncryptedFileBackend",
    "ErrorKind",
    "ExecutionContext",
    "KeyringSecretBackend",
    "MemorySecretBackend",
    "OAuthAuthorizer",
    "ResolvedAccount",
    "ServiceAccountKeyData",
    "ServiceRuntime",
    "Token",
    "WsAuthError",
    "build_account_resolver",
    "build_service_runtime",
    "create_authenticated_client",
    "open_default_store",
]
