"""Tests for the service catalogue and scope selection."""

import pytest

from wsauth.exceptions import InvalidInputError
from wsauth.services import (
    DriveScopeMode,
    all_services,
    drive_scope,
    parse_service,
    scopes_for,
    scopes_for_manage,
    scopes_for_services,
    services_info,
    services_markdown,
    user_services,
)

G = "https://www.googleapis.com/auth/"
IDENTITY_SCOPES = {"openid", "email", G + "userinfo.email"}


def test_catalogue_order() -> None:
    services = all_services()
    assert len(services) == 16
    assert services[0] == "gmail"
    assert services[-1] == "workspace"


def test_user_services_exclude_admin_only() -> None:
    services = user_services()
    assert "drive" in services
    assert not {"groups", "keep", "workspace"} & set(services)


@pytest.mark.parametrize("raw", ["Drive", " gmail ", "APPSCRIPT"])
def test_parse_service_normalizes(raw: str) -> None:
    assert parse_service(raw) == raw.strip().lower()


def test_parse_service_unknown() -> None:
    with pytest.raises(InvalidInputError, match="unknown service photos"):
        parse_service("photos")


def test_scopes_for_services_dedupes_drive() -> None:
    scopes = scopes_for_services(["docs", "sheets"])
    assert scopes == sorted([G + "documents", G + "drive", G + "spreadsheets"])


def test_scopes_for_returns_copy() -> None:
    scopes_for("drive").append("mutated")
    assert scopes_for("drive") == [G + "drive"]


class TestDriveScope:
    @pytest.mark.parametrize(
        ("mode", "expected"),
        [
            (DriveScopeMode.FULL, G + "drive"),
            ("readonly", G + "drive.readonly"),
            ("file", G + "drive.file"),
        ],
    )
    def test_modes(self, mode: DriveScopeMode | str, expected: str) -> None:
        assert drive_scope(mode=mode) == expected

    def test_readonly_overrides_mode(self) -> None:
        assert drive_scope(readonly=True, mode="file") == G + "drive.readonly"

    def test_invalid_mode(self) -> None:
        with pytest.raises(InvalidInputError, match="invalid drive scope"):
            drive_scope(mode="everything")


class TestScopesForManage:
    def test_adds_identity_scopes_and_sorts(self) -> None:
        scopes = scopes_for_manage(["gmail"])
        assert IDENTITY_SCOPES <= set(scopes)
        assert scopes == sorted(scopes)
        assert G + "gmail.modify" in scopes

    def test_readonly_uses_readonly_scopes(self) -> None:
        scopes = set(scopes_for_manage(["gmail", "calendar", "drive"], readonly=True))
        assert scopes - IDENTITY_SCOPES == {
            G + "gmail.readonly",
            G + "calendar.readonly",
            G + "drive.readonly",
        }

    def test_drive_file_mode_applies_to_drive_backed_services(self) -> None:
        scopes = set(scopes_for_manage(["docs"], drive_scope_mode=DriveScopeMode.FILE))
        assert scopes - IDENTITY_SCOPES == {G + "drive.file", G + "documents"}

    def test_readonly_drive_backed_service(self) -> None:
        scopes = set(scopes_for_manage(["sheets"], readonly=True))
        assert scopes - IDENTITY_SCOPES == {G + "drive.readonly", G + "spreadsheets.readonly"}

    def test_service_without_readonly_variant_keeps_scopes(self) -> None:
        scopes = set(scopes_for_manage(["groups"], readonly=True))
        assert scopes - IDENTITY_SCOPES == {G + "admin.directory.group"}

    def test_no_services_gives_identity_only(self) -> None:
        assert set(scopes_for_manage([])) == IDENTITY_SCOPES


def test_services_markdown() -> None:
    markdown = services_markdown(services_info()[:2])
    lines = markdown.splitlines()
    assert lines[0] == "| Service | User | APIs | Scopes | Notes |"
    assert lines[2].startswith("| gmail | yes | Gmail API | `")
    assert len(lines) == 4
    assert markdown.endswith("\n")


def test_services_markdown_empty() -> None:
    assert services_markdown([]) == ""
