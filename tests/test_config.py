"""Tests for settings and config.json handling."""

import json
import os
import stat
from pathlib import Path

import pytest
from pydantic import ValidationError

from wsauth.config import (
    ConfigFile,
    Settings,
    config_path,
    credentials_enc_path,
    read_config,
    resolve_keyring_backend,
    user_config_dir,
    write_config,
    write_private_file,
)
from wsauth.exceptions import ConfigError


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("CONFIG_DIR", "KEYRING_BACKEND", "LOG_LEVEL", "CALLBACK_TIMEOUT_MS"):
            monkeypatch.delenv(f"WSAUTH_{name}", raising=False)
        settings = Settings()
        assert settings.keyring_backend == ""
        assert settings.log_level == "WARNING"
        assert settings.callback_timeout_ms == 120_000

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("WSAUTH_CONFIG_DIR", str(tmp_path))
        monkeypatch.setenv("WSAUTH_KEYRING_BACKEND", "Keyring")
        monkeypatch.setenv("WSAUTH_LOG_LEVEL", "debug")
        monkeypatch.setenv("WSAUTH_CALLBACK_TIMEOUT_MS", "500")

        settings = Settings()
        assert settings.app_dir == tmp_path
        assert settings.keyring_backend == "keyring"
        assert settings.log_level == "DEBUG"
        assert settings.callback_timeout_ms == 500

    @pytest.mark.parametrize(
        "kwargs",
        [{"log_level": "loud"}, {"keyring_backend": "vault"}, {"callback_timeout_ms": 0}],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValidationError):
            Settings(**kwargs)

    def test_app_dir_follows_xdg(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("WSAUTH_CONFIG_DIR", raising=False)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        monkeypatch.setattr("sys.platform", "linux")
        assert user_config_dir() == tmp_path
        assert Settings().app_dir == tmp_path / "wsauth"

    def test_paths(self, settings: Settings) -> None:
        assert config_path(settings) == settings.app_dir / "config.json"
        assert credentials_enc_path(settings) == settings.app_dir / "credentials.enc"


class TestConfigFile:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        assert read_config(tmp_path / "nope.json") == ConfigFile()

    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg" / "config.json"
        config = ConfigFile(
            keyring_backend="file",
            account_aliases={"work": "a@corp.com"},
            client_domains={"corp.com": "corp"},
        )
        write_config(config, path)

        assert read_config(path) == config
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"keyring_backend": "memory", "future_option": 1}))
        assert read_config(path).keyring_backend == "memory"

    @pytest.mark.parametrize("content", ["{broken", "[]", '{"account_aliases": "nope"}'])
    def test_invalid_content(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "config.json"
        path.write_text(content)
        with pytest.raises(ConfigError) as exc_info:
            read_config(path)
        assert str(path) in exc_info.value.remediation

    def test_resolve_alias(self) -> None:
        config = ConfigFile(account_aliases={"Work": "Alice@Corp.com"})
        assert config.resolve_alias(" work ") == "alice@corp.com"
        assert config.resolve_alias("bob@corp.com") == "bob@corp.com"
        assert config.resolve_alias("  ") == ""


class TestKeyringBackendChoice:
    def test_config_wins(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"keyring_backend": "memory"})
        assert resolve_keyring_backend(ConfigFile(keyring_backend=" Keyring "), settings) == (
            "keyring"
        )

    def test_environment_next(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"keyring_backend": "memory"})
        assert resolve_keyring_backend(ConfigFile(), settings) == "memory"

    def test_auto_last(self, settings: Settings) -> None:
        assert resolve_keyring_backend(ConfigFile(), settings) == "auto"


class TestWritePrivateFile:
    def test_replaces_atomically(self, tmp_path: Path) -> None:
        path = tmp_path / "dir" / "secret.bin"
        write_private_file(path, b"one")
        write_private_file(path, "two")

        assert path.read_text() == "two"
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700
        assert sorted(p.name for p in path.parent.iterdir()) == ["secret.bin"]

    def test_failed_rename_leaves_target_and_no_temp(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = tmp_path / "secret.bin"
        write_private_file(path, "original")

        def fail(src: object, dst: object) -> None:
            raise OSError("disk full")

        monkeypatch.setattr("os.replace", fail)
        with pytest.raises(OSError, match="disk full"):
            write_private_file(path, "new")

        assert path.read_text() == "original"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["secret.bin"]

    def test_existing_directory_keeps_its_mode(self, tmp_path: Path) -> None:
        shared = tmp_path / "shared"
        shared.mkdir()
        shared.chmod(0o755)

        write_private_file(shared / "secret.bin", "x")

        assert stat.S_IMODE(shared.stat().st_mode) == 0o755
        assert stat.S_IMODE((shared / "secret.bin").stat().st_mode) == 0o600

    def test_each_write_uses_its_own_temp_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = tmp_path / "secret.bin"
        sources: list[str] = []
        real_replace = os.replace

        def record(src: str, dst: str) -> None:
            sources.append(str(src))
            real_replace(src, dst)

        monkeypatch.setattr("os.replace", record)
        write_private_file(path, "one")
        write_private_file(path, "two")

        assert len(set(sources)) == 2
        assert all(Path(s).parent == tmp_path for s in sources)
        assert path.read_text() == "two"
