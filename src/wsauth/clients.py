"""OAuth client identities.

An OAuth client is a named (client_id, client_secret) pair downloaded from the
Google Cloud Console. Several can be stored side by side; ``default`` lives in
``credentials.json`` and every other name in ``credentials-<name>.json``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from wsauth.config import ConfigFile, Settings, get_settings, write_private_file
from wsauth.exceptions import ConfigError, InvalidInputError, MissingCredentialsError

DEFAULT_CLIENT_NAME = "default"

_NAME_PATTERN = re.compile(r"^[a-z0-9._-]+$")


@dataclass(frozen=True)
class ClientCredentials:
    """OAuth client id and secret."""

    client_id: str
    client_secret: str

    def to_dict(self) -> dict[str, str]:
        return {"clientId": self.client_id, "clientSecret": self.client_secret}


def normalize_client_name(raw: str) -> str:
    """Lowercase and validate a client name.

    Raises:
        InvalidInputError: If the name is empty or has characters outside
            ``[a-z0-9._-]``.
    """
    name = raw.strip().lower()
    if not name:
        raise InvalidInputError("invalid client name: empty")
    if not _NAME_PATTERN.match(name):
        raise InvalidInputError(f"invalid client name: {raw}")
    return name


def normalize_client_name_or_default(raw: str) -> str:
    """Like ``normalize_client_name`` but an empty name means the default client."""
    if not raw.strip():
        return DEFAULT_CLIENT_NAME
    return normalize_client_name(raw)


def normalize_domain(raw: str) -> str:
    """Normalize an email domain such as ``@Example.com`` to ``example.com``."""
    domain = raw.strip().lower().removeprefix("@")
    if not domain:
        raise InvalidInputError("invalid domain name: empty")
    if "." not in domain or not _NAME_PATTERN.match(domain):
        raise InvalidInputError(f"invalid domain name: {raw}")
    return domain


def domain_from_email(email: str) -> str:
    """Return the domain part of an email, or "" if it is not a single-@ address."""
    parts = email.strip().lower().split("@")
    if len(parts) != 2:
        return ""
    return parts[1].strip()


def client_credentials_path_for(client: str, settings: Settings | None = None) -> Path:
    """Path of the credentials file for a client name."""
    name = normalize_client_name_or_default(client)
    app_dir = (settings or get_settings()).app_dir
    if name == DEFAULT_CLIENT_NAME:
        return app_dir / "credentials.json"
    return app_dir / f"credentials-{name}.json"


def parse_google_oauth_client_json(raw: str) -> ClientCredentials:
    """Parse a client secret JSON as downloaded from the Cloud Console.

    Accepts both ``installed`` (desktop) and ``web`` client types.
    """
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"decode credentials json: {e}") from e

    if not isinstance(data, dict):
        raise InvalidInputError(
            "invalid credentials.json (expected installed/web client_id and client_secret)"
        )

    source = data.get("installed") or data.get("web") or {}
    client_id = source.get("client_id", "") if isinstance(source, dict) else ""
    client_secret = source.get("client_secret", "") if isinstance(source, dict) else ""
    if not client_id or not client_secret:
        raise InvalidInputError(
            "invalid credentials.json (expected installed/web client_id and client_secret)"
        )
    return ClientCredentials(client_id=client_id, client_secret=client_secret)


def write_client_credentials_for(
    client: str, credentials: ClientCredentials, settings: Settings | None = None
) -> Path:
    """Store client credentials for a client name (atomic, owner-only)."""
    path = client_credentials_path_for(client, settings)
    write_private_file(path, json.dumps(credentials.to_dict(), indent=2) + "\n")
    logger.info(
        "Client credentials stored",
        extra={"client": normalize_client_name_or_default(client), "path": str(path)},
    )
    return path


def read_client_credentials_for(
    client: str, settings: Settings | None = None
) -> ClientCredentials:
    """Load stored client credentials for a client name.

    Raises:
        MissingCredentialsError: If no credentials file exists for the client.
        ConfigError: If the file exists but is unreadable or incomplete.
    """
    name = normalize_client_name_or_default(client)
    path = client_credentials_path_for(name, settings)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise MissingCredentialsError(name, str(path)) from e
    except OSError as e:
        raise ConfigError(f"read credentials {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"decode credentials {path}: {e}") from e

    if not isinstance(data, dict) or not data.get("clientId") or not data.get("clientSecret"):
        raise ConfigError(
            f"stored credentials {path} are missing clientId/clientSecret",
            remediation=f"run: wsauth credentials <credentials.json> --client {name}",
        )
    return ClientCredentials(client_id=data["clientId"], client_secret=data["clientSecret"])


def client_credentials_exist(client: str, settings: Settings | None = None) -> bool:
    """Check whether a credentials file exists for a client name."""
    return client_credentials_path_for(client, settings).exists()


def resolve_client_for_account(
    config: ConfigFile,
    email: str,
    override: str = "",
    credentials_exist: Callable[[str], bool] | None = None,
) -> str:
    """Pick the OAuth client to use for an account.

    Precedence:
    1. Explicit override (``--client``)
    2. ``account_clients[email]`` from config
    3. ``client_domains[domain]`` from config
    4. A client named after the email domain, if its credentials exist
    5. The default client
    """
    if override.strip():
        return normalize_client_name_or_default(override)

    exists = credentials_exist or client_credentials_exist
    normalized_email = email.strip().lower()
    if normalized_email:
        account_client = config.account_clients.get(normalized_email, "")
        if account_client.strip():
            return normalize_client_name_or_default(account_client)

    domain = domain_from_email(normalized_email)
    if domain:
        mapped = config.client_domains.get(domain, "")
        if mapped.strip():
            return normalize_client_name_or_default(mapped)
        if _NAME_PATTERN.match(domain) and exists(domain):
            return normalize_client_name(domain)

    return DEFAULT_CLIENT_NAME
