"""Google Workspace services and the OAuth scopes each one needs."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from wsauth.exceptions import InvalidInputError

SCOPE_OPENID = "openid"
SCOPE_EMAIL = "email"
SCOPE_USERINFO_EMAIL = "https://www.googleapis.com/auth/userinfo.email"

_G = "https://www.googleapis.com/auth/"


class DriveScopeMode(str, Enum):
    """How much of Drive a login asks for."""

    FULL = "full"
    READONLY = "readonly"
    FILE = "file"


@dataclass(frozen=True)
class ServiceInfo:
    service: str
    scopes: list[str]
    user: bool
    apis: list[str]
    note: str = ""
    readonly_scopes: list[str] = field(default_factory=list, repr=False)


_SERVICES: list[ServiceInfo] = [
    ServiceInfo(
        "gmail",
        [_G + "gmail.modify", _G + "gmail.settings.basic", _G + "gmail.settings.sharing"],
        True,
        ["Gmail API"],
        readonly_scopes=[_G + "gmail.readonly"],
    ),
    ServiceInfo(
        "calendar",
        [_G + "calendar"],
        True,
        ["Calendar API"],
        readonly_scopes=[_G + "calendar.readonly"],
    ),
    ServiceInfo(
        "chat",
        [
            _G + "chat.spaces",
            _G + "chat.messages",
            _G + "chat.memberships",
            _G + "chat.users.readstate.readonly",
        ],
        True,
        ["Chat API"],
        readonly_scopes=[
            _G + "chat.spaces.readonly",
            _G + "chat.messages.readonly",
            _G + "chat.memberships.readonly",
            _G + "chat.users.readstate.readonly",
        ],
    ),
    ServiceInfo(
        "classroom",
        [
            _G + "classroom.courses",
            _G + "classroom.rosters",
            _G + "classroom.coursework.students",
            _G + "classroom.coursework.me",
            _G + "classroom.courseworkmaterials",
            _G + "classroom.announcements",
            _G + "classroom.topics",
            _G + "classroom.guardianlinks.students",
            _G + "classroom.profile.emails",
            _G + "classroom.profile.photos",
        ],
        True,
        ["Classroom API"],
        readonly_scopes=[
            _G + "classroom.courses.readonly",
            _G + "classroom.rosters.readonly",
            _G + "classroom.coursework.students.readonly",
            _G + "classroom.coursework.me.readonly",
            _G + "classroom.courseworkmaterials.readonly",
            _G + "classroom.announcements.readonly",
            _G + "classroom.topics.readonly",
            _G + "classroom.guardianlinks.students.readonly",
            _G + "classroom.profile.emails",
            _G + "classroom.profile.photos",
        ],
    ),
    ServiceInfo("drive", [_G + "drive"], True, ["Drive API"]),
    ServiceInfo(
        "docs",
        [_G + "drive", _G + "documents"],
        True,
        ["Docs API", "Drive API"],
        note="Export/copy/create via Drive",
        readonly_scopes=[_G + "documents.readonly"],
    ),
    ServiceInfo(
        "slides",
        [_G + "drive", _G + "presentations"],
        True,
        ["Slides API", "Drive API"],
        note="Create/edit presentations",
        readonly_scopes=[_G + "presentations.readonly"],
    ),
    ServiceInfo(
        "contacts",
        [_G + "contacts", _G + "contacts.other.readonly", _G + "directory.readonly"],
        True,
        ["People API"],
        note="Contacts + other contacts + directory",
        readonly_scopes=[
            _G + "contacts.readonly",
            _G + "contacts.other.readonly",
            _G + "directory.readonly",
        ],
    ),
    ServiceInfo(
        "tasks",
        [_G + "tasks"],
        True,
        ["Tasks API"],
        readonly_scopes=[_G + "tasks.readonly"],
    ),
    ServiceInfo(
        "sheets",
        [_G + "drive", _G + "spreadsheets"],
        True,
        ["Sheets API", "Drive API"],
        note="Export via Drive",
        readonly_scopes=[_G + "spreadsheets.readonly"],
    ),
    ServiceInfo("people", ["profile"], True, ["People API"], note="OIDC profile scope"),
    ServiceInfo(
        "forms",
        [_G + "forms.body", _G + "forms.responses.readonly"],
        True,
        ["Forms API"],
        readonly_scopes=[_G + "forms.body.readonly", _G + "forms.responses.readonly"],
    ),
    ServiceInfo(
        "appscript",
        [
            _G + "drive",
            _G + "script.projects",
            _G + "script.deployments",
            _G + "script.processes",
        ],
        True,
        ["Apps Script API", "Drive API"],
        note="List scripts via Drive",
        readonly_scopes=[_G + "script.projects.readonly", _G + "script.deployments.readonly"],
    ),
    ServiceInfo(
        "groups",
        [_G + "admin.directory.group"],
        False,
        ["Admin SDK Directory API"],
        note="Workspace only; requires Admin SDK directory_v1",
    ),
    ServiceInfo(
        "keep",
        [_G + "keep.readonly"],
        False,
        ["Keep API"],
        note="Workspace only; service account (domain-wide delegation)",
    ),
    ServiceInfo(
        "workspace",
        [
            _G + "admin.directory.user",
            _G + "admin.directory.user.security",
            _G + "admin.directory.orgunit",
            _G + "admin.directory.group",
            _G + "admin.directory.group.member",
            _G + "admin.directory.device.chromeos",
            _G + "admin.directory.device.mobile",
            _G + "admin.reports.audit.readonly",
        ],
        False,
        ["Admin SDK Directory API", "Admin SDK Reports API"],
        note="Workspace admin: users, org units, groups, devices, reports",
    ),
]

_BY_NAME = {info.service: info for info in _SERVICES}

# Services whose first scope is Drive and follows the drive scope mode.
_DRIVE_BACKED = {"docs", "slides", "sheets"}


def all_services() -> list[str]:
    return [info.service for info in _SERVICES]


def user_services() -> list[str]:
    """Services a regular (non-admin) user account can log in for."""
    return [info.service for info in _SERVICES if info.user]


def parse_service(raw: str) -> str:
    name = raw.strip().lower()
    if name not in _BY_NAME:
        raise InvalidInputError(f"unknown service {raw} (expected {'|'.join(all_services())})")
    return name


def scopes_for(service: str) -> list[str]:
    return list(_BY_NAME[parse_service(service)].scopes)


def scopes_for_services(services: Iterable[str]) -> list[str]:
    """Sorted, deduplicated scopes for a set of services."""
    return sorted({scope for service in services for scope in scopes_for(service)})


def drive_scope(readonly: bool = False, mode: DriveScopeMode | str = DriveScopeMode.FULL) -> str:
    if readonly:
        return _G + "drive.readonly"
    try:
        mode = DriveScopeMode(mode)
    except ValueError as e:
        raise InvalidInputError(f"invalid drive scope {mode} (expected full|readonly|file)") from e
    if mode is DriveScopeMode.FILE:
        return _G + "drive.file"
    if mode is DriveScopeMode.READONLY:
        return _G + "drive.readonly"
    return _G + "drive"


def _scopes_with_options(
    service: str, readonly: bool, drive_scope_mode: DriveScopeMode | str
) -> list[str]:
    info = _BY_NAME[parse_service(service)]
    if info.service == "drive":
        return [drive_scope(readonly, drive_scope_mode)]
    if info.service in _DRIVE_BACKED:
        own = info.readonly_scopes if readonly else info.scopes[1:]
        return [drive_scope(readonly, drive_scope_mode), *own]
    if readonly and info.readonly_scopes:
        return list(info.readonly_scopes)
    return list(info.scopes)


def scopes_for_manage(
    services: Iterable[str],
    *,
    readonly: bool = False,
    drive_scope_mode: DriveScopeMode | str = DriveScopeMode.FULL,
) -> list[str]:
    """Scopes a login requests: the services' scopes plus identity scopes.

    Identity scopes (``openid``, ``email``, userinfo.email) let the login
    confirm which account consented.
    """
    scopes = {
        scope
        for service in services
        for scope in _scopes_with_options(service, readonly, drive_scope_mode)
    }
    scopes.update({SCOPE_OPENID, SCOPE_EMAIL, SCOPE_USERINFO_EMAIL})
    return sorted(scope for scope in scopes if scope.strip())


def services_info() -> list[ServiceInfo]:
    return list(_SERVICES)


def services_markdown(infos: list[ServiceInfo]) -> str:
    """Render services as a Markdown table."""
    if not infos:
        return ""
    lines = [
        "| Service | User | APIs | Scopes | Notes |",
        "| --- | --- | --- | --- | --- |",
    ]
    for info in infos:
        scopes = "<br>".join(f"`{scope}`" for scope in info.scopes)
        lines.append(
            f"| {info.service} | {'yes' if info.user else 'no'} | {', '.join(info.apis)} "
            f"| {scopes} | {info.note} |"
        )
    return "\n".join(lines) + "\n"
