"""Custom exceptions for wsauth.

Every error carries a machine-checkable ``kind`` and a human ``remediation``
string so callers never have to match on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Categories of authentication errors."""

    MISSING_CREDENTIALS = "missing_credentials"
    AUTH_REQUIRED = "auth_required"
    INVALID_REDIRECT = "invalid_redirect"
    STATE_MISMATCH = "state_mismatch"
    TIMEOUT = "timeout"
    NO_REFRESH_TOKEN = "no_refresh_token"
    INVALID_SERVICE_ACCOUNT_KEY = "invalid_service_account_key"
    DECRYPTION_FAILURE = "decryption_failure"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    INVALID_INPUT = "invalid_input"
    CONFIG = "config"


class WsAuthError(Exception):
    """Base exception for all wsauth errors."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, *, remediation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON output."""
        return {
            "error": True,
            "kind": self.kind.value,
            "message": self.message,
            "remediation": self.remediation,
        }


class InvalidInputError(WsAuthError, ValueError):
    """Raised when caller-supplied options are invalid."""

    kind = ErrorKind.INVALID_INPUT


class ConfigError(WsAuthError):
    """Raised when a config file or setting is unusable."""

    kind = ErrorKind.CONFIG


class MissingCredentialsError(WsAuthError):
    """Raised when no OAuth client id/secret is stored for a client name."""

    kind = ErrorKind.MISSING_CREDENTIALS

    def __init__(self, client: str, path: str) -> None:
        self.client = client
        self.path = path
        flag = "" if client == "default" else f" --client {client}"
        super().__init__(
            f"OAuth client credentials missing for client {client!r} (expected {path})",
            remediation=f"run: wsauth credentials <credentials.json>{flag}",
        )


class AuthRequiredError(WsAuthError):
    """Raised when no stored token exists for the resolved identity."""

    kind = ErrorKind.AUTH_REQUIRED

    def __init__(
        self,
        email: str,
        client: str = "",
        *,
        service: str = "api",
        detail: str = "",
    ) -> None:
        self.email = email
        self.client = client
        self.service = service
        if client:
            message = f"auth required for {service} {email} (client {client})"
        else:
            message = f"auth required for {service} {email}".rstrip()
        if detail:
            message = f"{message}: {detail}"
        if email:
            remediation = f"run: wsauth login {email}"
            if client and client != "default":
                remediation += f" --client {client}"
        else:
            remediation = "use --account <email> or --sa <email>, or run: wsauth login <email>"
        super().__init__(message, remediation=remediation)


class InvalidRedirectError(WsAuthError):
    """Raised for a malformed or code-less OAuth redirect."""

    kind = ErrorKind.INVALID_REDIRECT

    def __init__(self, message: str) -> None:
        super().__init__(
            message,
            remediation="paste the full URL your browser was redirected to after consent",
        )


class StateMismatchError(WsAuthError):
    """Raised when the OAuth callback state does not match the one issued."""

    kind = ErrorKind.STATE_MISMATCH

    def __init__(self) -> None:
        super().__init__(
            "OAuth state mismatch",
            remediation="start the login again and use only the most recent authorization URL",
        )


class CallbackTimeoutError(WsAuthError):
    """Raised when the local callback server receives nothing in time."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            f"timed out waiting for OAuth callback after {timeout_ms}ms",
            remediation="run the login again, or use --remote --step 1 for a copy-paste flow",
        )


class NoRefreshTokenError(WsAuthError):
    """Raised when the provider omitted the refresh token."""

    kind = ErrorKind.NO_REFRESH_TOKEN

    def __init__(self, client: str = "") -> None:
        self.client = client
        super().__init__(
            "no refresh token received; try again with --force-consent",
            remediation="re-run login with --force-consent",
        )


class InvalidServiceAccountKeyError(WsAuthError):
    """Raised when a service-account key is unparsable or of the wrong type."""

    kind = ErrorKind.INVALID_SERVICE_ACCOUNT_KEY

    def __init__(self, email: str, reason: str, *, message: str | None = None) -> None:
        self.email = email
        self.reason = reason
        subject = f"service account key for {email}" if email else "service account key"
        super().__init__(
            message or f"invalid {subject}: {reason}",
            remediation="download a JSON key of type service_account and run: wsauth add-sa <key.json>",
        )


class ServiceAccountKeyNotFoundError(InvalidServiceAccountKeyError):
    """Raised when no key is stored for a service account."""

    def __init__(self, email: str) -> None:
        super().__init__(
            email,
            "no key stored",
            message=f"no service account key found for {email}; run: wsauth add-sa <key.json>",
        )


class DecryptionError(WsAuthError):
    """Raised when the encrypted store cannot be authenticated or decoded."""

    kind = ErrorKind.DECRYPTION_FAILURE

    def __init__(self, path: str, reason: str = "authentication tag mismatch") -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"cannot decrypt credential store {path}: {reason}",
            remediation=(
                "the file was modified or copied from another machine/user; "
                "move it aside and log in again"
            ),
        )


class TokenNotFoundError(WsAuthError):
    """Raised when no token is stored for (client, email)."""

    kind = ErrorKind.TOKEN_NOT_FOUND

    def __init__(self, client: str, email: str) -> None:
        self.client = client
        self.email = email
        super().__init__(
            f"read token: not found for {email} (client {client})",
            remediation=f"run: wsauth login {email}",
        )


class TokenExchangeError(WsAuthError):
    """Raised when exchanging an authorization code fails."""

    kind = ErrorKind.TOKEN_EXCHANGE_FAILED

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(
            message,
            remediation="authorization codes are single-use; run the login again",
        )
