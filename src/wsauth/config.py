"""Configuration for wsauth.

Two sources:
- ``Settings``: process-level settings from ``WSAUTH_*`` environment variables
  (pydantic-settings).
- ``ConfigFile``: the user's ``config.json`` in the config directory, holding
  account/client mappings and the keyring backend choice.
"""

from __future__ import annotations

import json
import os
import stat
import sys
import tempfile
from functools import lru_cache
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wsauth.exceptions import ConfigError

APP_NAME = "wsauth"

DEFAULT_CALLBACK_TIMEOUT_MS = 120_000

KEYRING_BACKENDS = frozenset({"auto", "file", "keyring", "memory"})


def user_config_dir() -> Path:
    """Return the platform's per-user config directory."""
    if sys.platform == "win32":
        app_data = os.environ.get("APPDATA", "").strip()
        if app_data:
            return Path(app_data)

    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    if xdg:
        return Path(xdg)

    return Path.home() / ".config"


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Environment variables:
    - WSAUTH_CONFIG_DIR: Directory holding config.json, client credentials and
      the encrypted credential store
    - WSAUTH_KEYRING_BACKEND: Secret backend when config.json does not set one
    - WSAUTH_LOG_LEVEL: CLI log level
    - WSAUTH_CALLBACK_TIMEOUT_MS: Local OAuth callback wait
    """

    model_config = SettingsConfigDict(
        env_prefix="WSAUTH_",
        case_sensitive=False,
        extra="ignore",
    )

    config_dir: Path | None = None
    keyring_backend: str = ""
    log_level: str = "WARNING"
    callback_timeout_ms: int = DEFAULT_CALLBACK_TIMEOUT_MS

    @property
    def app_dir(self) -> Path:
        """Directory for all wsauth files."""
        if self.config_dir is not None:
            return self.config_dir
        return user_config_dir() / APP_NAME

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a known value."""
        allowed = {"TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {sorted(allowed)}")
        return v_upper

    @field_validator("callback_timeout_ms")
    @classmethod
    def validate_callback_timeout(cls, v: int) -> int:
        """Validate the callback timeout is positive."""
        if v <= 0:
            raise ValueError("callback_timeout_ms must be positive")
        return v

    @field_validator("keyring_backend")
    @classmethod
    def validate_keyring_backend(cls, v: str) -> str:
        """Validate keyring backend name (empty means unset)."""
        v = v.strip().lower()
        if v and v not in KEYRING_BACKENDS:
            raise ValueError(f"keyring_backend must be one of: {sorted(KEYRING_BACKENDS)}")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def config_path(settings: Settings | None = None) -> Path:
    """Path of the user's config.json."""
    return (settings or get_settings()).app_dir / "config.json"


def credentials_enc_path(settings: Settings | None = None) -> Path:
    """Path of the encrypted credential store."""
    return (settings or get_settings()).app_dir / "credentials.enc"


class ConfigFile(BaseModel):
    """Contents of config.json."""

    model_config = ConfigDict(extra="ignore")

    keyring_backend: str = ""
    account_aliases: dict[str, str] = Field(default_factory=dict)
    account_clients: dict[str, str] = Field(default_factory=dict)
    client_domains: dict[str, str] = Field(default_factory=dict)

    def resolve_alias(self, account: str) -> str:
        """Map an account alias to its email, or return the input unchanged."""
        key = account.strip().lower()
        if not key:
            return ""
        for alias, email in self.account_aliases.items():
            if alias.strip().lower() == key:
                return email.strip().lower()
        return account.strip()


def read_config(path: Path | None = None) -> ConfigFile:
    """Read config.json. A missing file yields defaults.

    Raises:
        ConfigError: If the file exists but is not a valid config object.
    """
    path = path or config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ConfigFile()
    except OSError as e:
        raise ConfigError(f"read config {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"parse config {path}: {e}", remediation=f"fix or remove {path}"
        ) from e
    if not isinstance(data, dict):
        raise ConfigError(
            f"parse config {path}: config must be a JSON object",
            remediation=f"fix or remove {path}",
        )

    try:
        return ConfigFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"invalid config {path}: {e}", remediation=f"fix or remove {path}"
        ) from e


def write_private_file(path: Path, content: str | bytes) -> None:
    """Write a file readable only by the owner, atomically.

    Creates the parent directory (0700) if missing, writes a uniquely named
    sibling temp file (0600) and renames it over the target. An existing
    parent directory keeps its mode.
    """
    parent = path.parent
    if not parent.is_dir():
        parent.mkdir(parents=True, exist_ok=True)
        parent.chmod(stat.S_IRWXU)

    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, temp_name = tempfile.mkstemp(dir=parent, prefix=f".{path.name}.", suffix=".tmp")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def write_config(config: ConfigFile, path: Path | None = None) -> None:
    """Write config.json atomically with owner-only permissions."""
    path = path or config_path()
    write_private_file(path, json.dumps(config.model_dump(), indent=2) + "\n")
    logger.debug("Config written", extra={"path": str(path)})


def resolve_keyring_backend(config: ConfigFile, settings: Settings | None = None) -> str:
    """Pick the secret backend name: config file, then environment, then auto."""
    if config.keyring_backend.strip():
        return config.keyring_backend.strip().lower()
    settings = settings or get_settings()
    if settings.keyring_backend:
        return settings.keyring_backend
    return "auto"
