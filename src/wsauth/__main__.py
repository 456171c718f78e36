"""CLI entry point for wsauth.

Usage:
    wsauth login <email> [--remote [--step 1|2]] [--auth-url URL | --auth-code CODE]
    wsauth list                      # Stored tokens
    wsauth status                    # Token count, config path, keyring backend
    wsauth remove <email>            # Remove an account's tokens
    wsauth add-sa <key.json>         # Import a service-account key
    wsauth default-sa <email>        # Choose the default service account
    wsauth credentials <file.json>   # Store OAuth client credentials
    wsauth services                  # Services and their scopes
    wsauth check --service drive     # Show which identity a call would use
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from wsauth.accounts import ExecutionContext, build_service_runtime
from wsauth.clients import (
    normalize_client_name_or_default,
    parse_google_oauth_client_json,
    write_client_credentials_for,
)
from wsauth.config import config_path, get_settings, read_config
from wsauth.exceptions import WsAuthError
from wsauth.logging import configure_logging
from wsauth.manager import AuthManager
from wsauth.oauth_flow import OAuthAuthorizer
from wsauth.services import scopes_for_services, services_info, services_markdown
from wsauth.store import open_default_store


def _split_csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _emit(args: argparse.Namespace, data: Any, text: str) -> None:
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        print(text)


def _build_manager() -> AuthManager:
    settings = get_settings()
    authorizer = OAuthAuthorizer(default_timeout_ms=settings.callback_timeout_ms)
    return AuthManager(open_default_store(settings), authorizer, settings=settings)


async def _login(args: argparse.Namespace) -> int:
    result = await _build_manager().add_token(
        args.email,
        client=args.client or "",
        auth_url=args.auth_url or "",
        auth_code=args.auth_code or "",
        force_consent=args.force_consent,
        manual=args.manual,
        remote=args.remote,
        step=args.step,
        services=_split_csv(args.services) or None,
    )
    data = {"email": result.email, "client": result.client, "message": result.message}
    if result.auth_url:
        data["auth_url"] = result.auth_url
        data["state_reused"] = result.state_reused
        _emit(args, data, f"{result.auth_url}\n\n{result.message}")
    else:
        _emit(args, data, result.message)
    return 0


async def _list(args: argparse.Namespace) -> int:
    tokens = await _build_manager().list_tokens()
    if not tokens and not args.json:
        print("No tokens stored.")
        return 0
    lines = [
        f"{t.email}\t{t.client}\t{t.created_at.isoformat() if t.created_at else ''}"
        for t in tokens
    ]
    _emit(args, [t.to_dict() for t in tokens], "\n".join(lines))
    return 0


async def _status(args: argparse.Namespace) -> int:
    status = await _build_manager().status()
    data = {
        "token_count": status.token_count,
        "config_path": status.config_path,
        "keyring_backend": status.keyring_backend,
    }
    _emit(args, data, "\n".join(f"{key}\t{value}" for key, value in data.items()))
    return 0


async def _remove(args: argparse.Namespace) -> int:
    removed = await _build_manager().remove_token(args.email)
    email = args.email.strip().lower()
    message = f"Removed tokens for {email}" if removed else f"No tokens found for {email}"
    _emit(args, {"email": email, "removed": removed}, message)
    return 0


async def _add_sa(args: argparse.Namespace) -> int:
    email = await _build_manager().add_service_account(Path(args.key_file))
    _emit(args, {"email": email}, f"Imported service account: {email}")
    return 0


async def _default_sa(args: argparse.Namespace) -> int:
    email = await _build_manager().set_default_service_account(args.email)
    _emit(args, {"email": email}, f"Default service account set to {email}")
    return 0


async def _check(args: argparse.Namespace) -> int:
    settings = get_settings()
    config = read_config(config_path(settings))
    store = open_default_store(settings)
    context = ExecutionContext.from_flags(
        args.account, args.client, args.sa, args.impersonate, config=config
    )
    runtime = build_service_runtime(context, store, config)
    credentials = await runtime.get_client(scopes_for_services(_split_csv(args.service)))

    data = {
        "type": type(credentials).__name__,
        "service_account": getattr(credentials, "service_account_email", None),
        "client_id": getattr(credentials, "client_id", None),
    }
    _emit(args, data, "\n".join(f"{k}\t{v}" for k, v in data.items() if v))
    return 0


def cmd_credentials(args: argparse.Namespace) -> int:
    """Store OAuth client credentials downloaded from the Cloud Console."""
    raw = sys.stdin.read() if args.file == "-" else Path(args.file).read_text(encoding="utf-8")
    credentials = parse_google_oauth_client_json(raw)
    client = normalize_client_name_or_default(args.client or "")
    path = write_client_credentials_for(client, credentials)
    _emit(args, {"client": client, "path": str(path)}, f"Stored credentials for client {client}: {path}")
    return 0


def cmd_services(args: argparse.Namespace) -> int:
    """List services and their scopes."""
    infos = services_info()
    if args.markdown:
        print(services_markdown(infos), end="")
        return 0
    data = [
        {"service": i.service, "user": i.user, "apis": i.apis, "scopes": i.scopes, "note": i.note}
        for i in infos
    ]
    lines = [f"{i.service}\t{'user' if i.user else 'admin'}\t{', '.join(i.apis)}" for i in infos]
    _emit(args, data, "\n".join(lines))
    return 0


def _run_async(handler: Any) -> Any:
    def run(args: argparse.Namespace) -> int:
        return asyncio.run(handler(args))

    return run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsauth",
        description="Google Workspace credentials: accounts, OAuth clients and service accounts",
    )
    parser.add_argument("--log-level", help="Log level (or set WSAUTH_LOG_LEVEL)")
    parser.add_argument("-j", "--json", action="store_true", help="Output JSON to stdout")
    parser.add_argument("-a", "--account", help="Account email or alias")
    parser.add_argument("--client", help="OAuth client name")
    parser.add_argument("--sa", help="Use a service account instead of user OAuth")
    parser.add_argument("--impersonate", help="Impersonate a user via domain-wide delegation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login_parser = subparsers.add_parser("login", help="Authorize an account and store its token")
    login_parser.add_argument("email", help="Account email")
    login_parser.add_argument("--auth-url", help="Redirect URL from the browser after consent")
    login_parser.add_argument("--auth-code", help="Bare authorization code")
    login_parser.add_argument("--force-consent", action="store_true", help="Force the consent prompt")
    login_parser.add_argument("--manual", action="store_true", help="Browserless flow")
    login_parser.add_argument(
        "--remote", action="store_true", help="Local callback server, or two-step with --step"
    )
    login_parser.add_argument("--step", type=int, default=0, choices=[0, 1, 2], help="Remote step")
    login_parser.add_argument("--services", help="Comma-separated services (default: user services)")
    login_parser.set_defaults(func=_run_async(_login))

    list_parser = subparsers.add_parser("list", help="List stored tokens")
    list_parser.set_defaults(func=_run_async(_list))

    status_parser = subparsers.add_parser("status", help="Show credential store status")
    status_parser.set_defaults(func=_run_async(_status))

    remove_parser = subparsers.add_parser("remove", help="Remove an account's tokens")
    remove_parser.add_argument("email", help="Account email")
    remove_parser.set_defaults(func=_run_async(_remove))

    add_sa_parser = subparsers.add_parser("add-sa", help="Import a service-account key file")
    add_sa_parser.add_argument("key_file", help="Path to the JSON key")
    add_sa_parser.set_defaults(func=_run_async(_add_sa))

    default_sa_parser = subparsers.add_parser("default-sa", help="Set the default service account")
    default_sa_parser.add_argument("email", help="Service account email")
    default_sa_parser.set_defaults(func=_run_async(_default_sa))

    credentials_parser = subparsers.add_parser(
        "credentials", help="Store OAuth client credentials (Cloud Console download)"
    )
    credentials_parser.add_argument("file", help="Path to the client JSON, or - for stdin")
    credentials_parser.set_defaults(func=cmd_credentials)

    services_parser = subparsers.add_parser("services", help="List services and scopes")
    services_parser.add_argument("--markdown", action="store_true", help="Markdown table")
    services_parser.set_defaults(func=cmd_services)

    check_parser = subparsers.add_parser(
        "check", help="Build credentials for the selected identity without calling any API"
    )
    check_parser.add_argument("--service", default="drive", help="Comma-separated services")
    check_parser.set_defaults(func=_run_async(_check))

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or get_settings().log_level)
    try:
        return args.func(args)
    except WsAuthError as e:
        if args.json:
            print(json.dumps(e.to_dict(), indent=2))
            return 1
        print(f"Error: {e.message}", file=sys.stderr)
        if e.remediation:
            print(f"Hint: {e.remediation}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
