"""Account selection for API calls.

The identity flags of one CLI invocation (``--account``, ``--client``,
``--sa``, ``--impersonate``) are captured in an immutable ``ExecutionContext``
and closed over by the account resolver, so nothing reads global state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from wsauth.auth_factory import AccountResolver, ResolvedAccount, ServiceRuntime
from wsauth.clients import DEFAULT_CLIENT_NAME, read_client_credentials_for, resolve_client_for_account
from wsauth.config import ConfigFile
from wsauth.store import CredentialStore


@dataclass(frozen=True)
class ExecutionContext:
    """Identity flags for one invocation."""

    account: str = ""
    client_override: str = ""
    service_account: str = ""
    impersonate: str = ""

    @classmethod
    def from_flags(
        cls,
        account: str | None = None,
        client: str | None = None,
        sa: str | None = None,
        impersonate: str | None = None,
        config: ConfigFile | None = None,
    ) -> ExecutionContext:
        """Build a context from raw flag values, resolving account aliases."""
        account = (account or "").strip()
        if account and config is not None:
            account = config.resolve_alias(account)
        return cls(
            account=account,
            client_override=(client or "").strip(),
            service_account=(sa or "").strip(),
            impersonate=(impersonate or "").strip(),
        )


def build_account_resolver(context: ExecutionContext, store: CredentialStore) -> AccountResolver:
    """Resolver applying the account fallback chain.

    1. ``--account`` (optionally with ``--sa``)
    2. ``--sa`` alone: the service account is the identity
    3. default account of the default client
    4. first stored token
    5. default service account
    6. nothing (the factory then raises ``AuthRequiredError``)
    """

    async def resolve() -> ResolvedAccount:
        sa = context.service_account
        impersonate = context.impersonate or None

        if context.account:
            return ResolvedAccount(
                email=context.account,
                client_override=context.client_override,
                service_account=sa or None,
                impersonate=impersonate,
            )

        if sa:
            return ResolvedAccount(
                email=sa,
                client_override=context.client_override,
                service_account=sa,
                impersonate=impersonate,
            )

        default_email = await store.get_default_account(DEFAULT_CLIENT_NAME)
        if default_email:
            return ResolvedAccount(email=default_email, client_override=context.client_override)

        tokens = await store.list_tokens()
        if tokens:
            return ResolvedAccount(email=tokens[0].email, client_override=context.client_override)

        default_sa = await store.get_default_service_account()
        if default_sa:
            logger.debug("Falling back to default service account", extra={"email": default_sa})
            return ResolvedAccount(
                email=default_sa,
                client_override=context.client_override,
                service_account=default_sa,
            )

        return ResolvedAccount(client_override=context.client_override)

    return resolve


def build_service_runtime(
    context: ExecutionContext, store: CredentialStore, config: ConfigFile, **factory_options: Any
) -> ServiceRuntime:
    """Runtime wired to the config's client mappings and stored client credentials.

    Extra keyword arguments are passed through to ``ServiceRuntime``.
    """

    def resolve_client(email: str, override: str) -> str:
        return resolve_client_for_account(config, email, override)

    return ServiceRuntime(
        build_account_resolver(context, store),
        store=store,
        read_client_credentials=read_client_credentials_for,
        resolve_client=resolve_client,
        **factory_options,
    )
