"""OAuth2 authorization: turn user consent into a refresh token.

Three strategies, all returning a refresh token for the requested scopes:

1. ``authorize``: exchange a pasted redirect URL (or a bare code) directly.
2. ``manual_auth_url``: build an authorization URL to print; the user later
   pastes the redirect URL back into ``authorize``.
3. ``authorize_with_local_server``: serve a one-shot loopback callback, wait
   for the browser redirect and exchange the code it carries.

Reading client credentials, exchanging codes and serving the callback are
injected so the flows run in tests without network or sockets.
"""

from __future__ import annotations

import asyncio
import secrets
import socket
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import parse_qs, urlsplit

import certifi
import httpx
from google_auth_oauthlib.flow import Flow
from loguru import logger

from wsauth.clients import ClientCredentials, read_client_credentials_for
from wsauth.config import DEFAULT_CALLBACK_TIMEOUT_MS
from wsauth.exceptions import (
    CallbackTimeoutError,
    InvalidInputError,
    InvalidRedirectError,
    NoRefreshTokenError,
    StateMismatchError,
    TokenExchangeError,
)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

CALLBACK_PATH = "/oauth2/callback"
LOOPBACK_HOST = "127.0.0.1"

TOKEN_EXCHANGE_TIMEOUT = 30

SSL_CONTEXT = ssl.create_default_context(cafile=certifi.where())


@dataclass
class AuthorizeOptions:
    """Inputs for ``authorize`` and ``manual_auth_url``."""

    scopes: list[str]
    client: str = ""
    auth_url: str = ""
    auth_code: str = ""
    require_state: bool = False
    force_consent: bool = False


@dataclass
class LocalServerOptions:
    """Inputs for ``authorize_with_local_server``."""

    scopes: list[str]
    client: str = ""
    force_consent: bool = False
    timeout_ms: int | None = None
    on_auth_url: Callable[[str], None] | None = None


@dataclass
class ExchangeCodeRequest:
    """What a code exchanger needs to redeem an authorization code."""

    client_id: str
    client_secret: str
    code: str
    redirect_uri: str
    scopes: list[str] = field(default_factory=list)
    force_consent: bool = False
    state: str = ""


@dataclass
class ExchangeCodeResult:
    refresh_token: str | None = None


@dataclass
class ManualAuthURLResult:
    url: str
    state: str
    redirect_uri: str
    state_reused: bool = False


@dataclass
class LocalServerResult:
    refresh_token: str
    auth_url: str


@dataclass
class CallbackResponse:
    """HTTP status and plain-text body returned to the browser."""

    status: int
    body: str = ""


CallbackHandler = Callable[[str], CallbackResponse]


class CallbackServer(Protocol):
    """A loopback HTTP listener for the OAuth redirect."""

    async def start(self, handler: CallbackHandler) -> int:
        """Start listening and return the bound port.

        ``handler`` receives each request target (path and query).
        """
        ...

    def close(self) -> None:
        """Stop listening. Must be idempotent and free the port immediately."""
        ...


_REASONS = {200: "OK", 400: "Bad Request", 404: "Not Found"}


class LoopbackCallbackServer:
    """``CallbackServer`` on ``asyncio.start_server`` bound to 127.0.0.1."""

    def __init__(self, host: str = LOOPBACK_HOST) -> None:
        self.host = host
        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self, handler: CallbackHandler) -> int:
        async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            self._writers.add(writer)
            try:
                request_line = await reader.readline()
                if not request_line:
                    return
                parts = request_line.decode("latin-1").split()
                target = parts[1] if len(parts) >= 2 else "/"
                while True:
                    line = await reader.readline()
                    if line in (b"\r\n", b"\n", b""):
                        break

                response = handler(target)
                body = response.body.encode("utf-8")
                head = (
                    f"HTTP/1.1 {response.status} {_REASONS.get(response.status, 'Error')}\r\n"
                    "Content-Type: text/plain; charset=utf-8\r\n"
                    f"Content-Length: {len(body)}\r\n"
                    "Connection: close\r\n\r\n"
                )
                writer.write(head.encode("latin-1") + body)
                await writer.drain()
            except ConnectionError as e:
                logger.debug("Callback connection dropped", extra={"error": str(e)})
            finally:
                self._writers.discard(writer)
                writer.close()

        self._server = await asyncio.start_server(on_connection, self.host, 0)
        return self._server.sockets[0].getsockname()[1]

    def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        # Browsers keep idle preconnections open; drop them so nothing lingers.
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        self._server = None


def random_state() -> str:
    """32 random bytes, URL-safe base64 without padding."""
    return secrets.token_urlsafe(32)


async def random_manual_redirect_uri() -> str:
    """Loopback redirect URI on a port that was free a moment ago.

    Nothing is served there; the port only gives the URI a plausible shape.
    """

    def probe() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((LOOPBACK_HOST, 0))
            return sock.getsockname()[1]

    port = await asyncio.to_thread(probe)
    return f"http://{LOOPBACK_HOST}:{port}{CALLBACK_PATH}"


def build_auth_url(
    credentials: ClientCredentials,
    scopes: list[str],
    redirect_uri: str,
    state: str,
    *,
    force_consent: bool = False,
) -> str:
    """Build Google's authorization URL for an offline-access code grant."""
    client_config = {
        "installed": {
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "auth_uri": GOOGLE_AUTH_URI,
            "token_uri": GOOGLE_TOKEN_URI,
            "redirect_uris": [redirect_uri],
        }
    }
    flow = Flow.from_client_config(
        client_config,
        scopes=scopes,
        redirect_uri=redirect_uri,
        autogenerate_code_verifier=False,
    )
    params: dict[str, str] = {
        "access_type": "offline",
        "include_granted_scopes": "true",
        "state": state,
    }
    if force_consent:
        params["prompt"] = "consent"
    url, _ = flow.authorization_url(**params)
    return url


async def exchange_code_with_google(
    request: ExchangeCodeRequest, *, transport: httpx.AsyncBaseTransport | None = None
) -> ExchangeCodeResult:
    """Redeem an authorization code at Google's token endpoint.

    A response without a refresh token gives an empty result.

    Raises:
        TokenExchangeError: On an HTTP error status or a network failure.
    """
    data = {
        "grant_type": "authorization_code",
        "code": request.code,
        "redirect_uri": request.redirect_uri,
        "client_id": request.client_id,
        "client_secret": request.client_secret,
    }
    async with httpx.AsyncClient(
        timeout=TOKEN_EXCHANGE_TIMEOUT, verify=SSL_CONTEXT, transport=transport
    ) as client:
        try:
            response = await client.post(GOOGLE_TOKEN_URI, data=data)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TokenExchangeError(
                f"exchange code: HTTP {e.response.status_code}: {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise TokenExchangeError(f"exchange code: network error: {e}") from e

    try:
        payload: Any = response.json()
    except ValueError as e:
        raise TokenExchangeError(f"exchange code: invalid JSON response: {e}") from e

    refresh_token = payload.get("refresh_token") if isinstance(payload, dict) else None
    if isinstance(refresh_token, str) and refresh_token.strip():
        return ExchangeCodeResult(refresh_token=refresh_token)
    return ExchangeCodeResult()


def validate_authorize_options(options: AuthorizeOptions) -> None:
    """Checks shared by every strategy.

    Raises:
        InvalidInputError: On conflicting or missing inputs.
    """
    if options.auth_url.strip() and options.auth_code.strip():
        raise InvalidInputError("cannot combine auth-url with auth-code")
    if options.require_state and options.auth_code.strip():
        raise InvalidInputError("auth-code is not valid when state is required; provide auth-url")
    if not options.scopes:
        raise InvalidInputError("missing scopes")


@dataclass
class ParsedRedirect:
    code: str
    state: str
    redirect_uri: str


def parse_redirect_url(raw_url: str) -> ParsedRedirect:
    """Pull ``code``, ``state`` and the redirect URI out of a redirect URL.

    Raises:
        InvalidRedirectError: If the URL has no scheme/host or no code.
    """
    try:
        parsed = urlsplit(raw_url.strip())
        host = parsed.netloc
    except ValueError as e:
        raise InvalidRedirectError(f"parse redirect url: {e}") from e
    if not parsed.scheme or not host:
        raise InvalidRedirectError("parse redirect url: invalid redirect URL")

    params = parse_qs(parsed.query)
    code = params.get("code", [""])[0]
    if not code:
        raise InvalidRedirectError("no code found in URL")
    state = params.get("state", [""])[0]
    return ParsedRedirect(
        code=code,
        state=state,
        redirect_uri=f"{parsed.scheme}://{host}{parsed.path or '/'}",
    )


def _callback_handler(expected_state: str, result: asyncio.Future[str]) -> CallbackHandler:
    """Request handler for the local-server flow.

    The state is checked before the code is looked at.
    """

    def handle(target: str) -> CallbackResponse:
        parsed = urlsplit(target)
        if parsed.path != CALLBACK_PATH:
            return CallbackResponse(404)
        if result.done():
            return CallbackResponse(400, "Authorization already handled.")

        params = parse_qs(parsed.query)
        if params.get("state", [""])[0] != expected_state:
            result.set_exception(StateMismatchError())
            return CallbackResponse(400, "OAuth state mismatch")

        code = params.get("code", [""])[0]
        if not code:
            result.set_exception(InvalidRedirectError("no authorization code in callback"))
            return CallbackResponse(400, "No authorization code in callback")

        result.set_result(code)
        return CallbackResponse(200, "Authorization received. You can close this tab.")

    return handle


class OAuthAuthorizer:
    """Runs the authorization strategies with injectable collaborators.

    Args:
        read_client_credentials: Client name to id/secret. Blocking; run in a
            worker thread.
        exchange_code: Async code exchanger.
        callback_server_factory: Creates the listener for the local-server flow.
        random_state: State generator.
        redirect_uri_factory: Async source of the manual-flow redirect URI.
        default_timeout_ms: Local-server wait when the call does not set one.
    """

    def __init__(
        self,
        read_client_credentials: Callable[[str], ClientCredentials] = read_client_credentials_for,
        exchange_code: Callable[
            [ExchangeCodeRequest], Awaitable[ExchangeCodeResult]
        ] = exchange_code_with_google,
        callback_server_factory: Callable[[], CallbackServer] = LoopbackCallbackServer,
        random_state: Callable[[], str] = random_state,
        redirect_uri_factory: Callable[[], Awaitable[str]] = random_manual_redirect_uri,
        default_timeout_ms: int = DEFAULT_CALLBACK_TIMEOUT_MS,
    ) -> None:
        self._read_client_credentials = read_client_credentials
        self._exchange_code = exchange_code
        self._callback_server_factory = callback_server_factory
        self._random_state = random_state
        self._redirect_uri_factory = redirect_uri_factory
        self._default_timeout_ms = default_timeout_ms

    async def _credentials(self, client: str) -> ClientCredentials:
        return await asyncio.to_thread(self._read_client_credentials, client.strip())

    async def _redeem(self, request: ExchangeCodeRequest, client: str) -> str:
        result = await self._exchange_code(request)
        refresh_token = (result.refresh_token or "").strip()
        if not refresh_token:
            raise NoRefreshTokenError(client)
        return refresh_token

    async def authorize(self, options: AuthorizeOptions) -> str:
        """Exchange a pasted redirect URL or bare code for a refresh token.

        Raises:
            InvalidInputError: If neither a URL nor a code is given, or on
                conflicting options.
            InvalidRedirectError: For an unusable redirect URL.
            NoRefreshTokenError: If the provider returned no refresh token.
        """
        validate_authorize_options(options)

        auth_url = options.auth_url.strip()
        auth_code = options.auth_code.strip()
        if not auth_url and not auth_code:
            raise InvalidInputError(
                "no auth-url or auth-code given; use the manual or local-server flow"
            )

        credentials = await self._credentials(options.client)

        code, state, redirect_uri = auth_code, "", ""
        if auth_url:
            parsed = parse_redirect_url(auth_url)
            code, state, redirect_uri = parsed.code, parsed.state, parsed.redirect_uri

        if options.require_state and not state:
            raise InvalidRedirectError("missing state in redirect URL")
        if not code:
            raise InvalidRedirectError("missing code")
        if not redirect_uri:
            raise InvalidRedirectError("missing redirect uri; provide auth-url")

        request = ExchangeCodeRequest(
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            code=code,
            redirect_uri=redirect_uri,
            scopes=list(options.scopes),
            force_consent=options.force_consent,
            state=state,
        )
        logger.info(
            "Exchanging authorization code",
            extra={"client": options.client.strip() or "default", "redirect_uri": redirect_uri},
        )
        return await self._redeem(request, options.client.strip())

    async def manual_auth_url(self, options: AuthorizeOptions) -> ManualAuthURLResult:
        """Build an authorization URL for a copy-paste flow."""
        validate_authorize_options(options)

        credentials = await self._credentials(options.client)
        state = self._random_state()
        redirect_uri = await self._redirect_uri_factory()
        url = build_auth_url(
            credentials,
            options.scopes,
            redirect_uri,
            state,
            force_consent=options.force_consent,
        )
        return ManualAuthURLResult(url=url, state=state, redirect_uri=redirect_uri)

    async def authorize_with_local_server(self, options: LocalServerOptions) -> LocalServerResult:
        """Serve a one-shot loopback callback and exchange the code it receives.

        ``on_auth_url`` is called with the authorization URL before waiting.

        Raises:
            StateMismatchError: If the callback carries a different state.
            InvalidRedirectError: If the callback carries no code.
            CallbackTimeoutError: If no callback arrives in time.
            NoRefreshTokenError: If the provider returned no refresh token.
        """
        if not options.scopes:
            raise InvalidInputError("missing scopes")

        credentials = await self._credentials(options.client)
        timeout_ms = options.timeout_ms or self._default_timeout_ms
        state = self._random_state()

        loop = asyncio.get_running_loop()
        code_future: asyncio.Future[str] = loop.create_future()
        server = self._callback_server_factory()
        try:
            port = await server.start(_callback_handler(state, code_future))
            redirect_uri = f"http://{LOOPBACK_HOST}:{port}{CALLBACK_PATH}"
            auth_url = build_auth_url(
                credentials,
                options.scopes,
                redirect_uri,
                state,
                force_consent=options.force_consent,
            )
            logger.debug("Callback server listening", extra={"port": port})

            if options.on_auth_url is not None:
                options.on_auth_url(auth_url)

            try:
                code = await asyncio.wait_for(code_future, timeout=timeout_ms / 1000)
            except TimeoutError as e:
                raise CallbackTimeoutError(timeout_ms) from e
        finally:
            server.close()

        request = ExchangeCodeRequest(
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            code=code,
            redirect_uri=redirect_uri,
            scopes=list(options.scopes),
            force_consent=options.force_consent,
            state=state,
        )
        refresh_token = await self._redeem(request, options.client.strip())
        return LocalServerResult(refresh_token=refresh_token, auth_url=auth_url)
