"""
Auth Resolver

Turns an account record into a credential the IMAP session can use:
a decrypted password, or a fresh OAuth bearer token. Tokens expiring
inside the skew window are refreshed first. Refreshes are serialized
per OAuth account; concurrent callers wait on the one in-flight refresh
and share its result.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from mailsync.core.config import settings
from mailsync.core.credential_vault import CredentialVault, DecryptionError, get_vault
from mailsync.core.errors import AuthenticationError, TokenUnavailableError
from mailsync.models.schemas import Account, OAuthToken
from mailsync.providers.base import ProviderAuthAdapter, UserInfo
from mailsync.providers.registry import create_adapter
from mailsync.services.accounts import OAuthTokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_xoauth2_payload(user: str, access_token: str) -> str:
    """SASL XOAUTH2 initial response, base64-encoded."""
    raw = f"user={user}\x01auth=Bearer {access_token}\x01\x01"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


@dataclass
class ResolvedCredential:
    """Ready-to-use login material for one account."""
    username: str
    password: Optional[str] = None
    access_token: Optional[str] = None

    @property
    def is_oauth(self) -> bool:
        return self.access_token is not None

    @property
    def xoauth2_payload(self) -> str:
        if not self.access_token:
            raise TokenUnavailableError(f"No bearer token resolved for {self.username}")
        return build_xoauth2_payload(self.username, self.access_token)

    def __repr__(self) -> str:
        kind = "oauth" if self.is_oauth else "password"
        return f"ResolvedCredential(username={self.username!r}, kind={kind})"


class AuthResolver:
    """Resolves and refreshes account credentials."""

    def __init__(
        self,
        token_store: OAuthTokenStore,
        vault: Optional[CredentialVault] = None,
        adapter_factory: Callable[[str], ProviderAuthAdapter] = create_adapter,
        refresh_skew_seconds: Optional[int] = None,
    ):
        self.token_store = token_store
        self.vault = vault or get_vault()
        self.adapter_factory = adapter_factory
        self.refresh_skew_seconds = (
            settings.token_refresh_skew_seconds if refresh_skew_seconds is None else refresh_skew_seconds
        )
        self._refreshes: Dict[str, asyncio.Task] = {}

    async def resolve(self, account: Account, force_refresh: bool = False) -> ResolvedCredential:
        """
        Resolve a credential for `account`.

        Args:
            account: Account record
            force_refresh: Refresh the OAuth token even if it looks valid
                (used after the server rejected it)

        Raises:
            TokenUnavailableError: OAuth account without usable tokens
            AuthenticationError: Password cannot be decrypted or the
                provider rejected the refresh
        """
        if not account.is_oauth:
            return ResolvedCredential(username=account.login, password=self._password(account))

        if not account.oauth_account_id:
            raise TokenUnavailableError(f"Account {account.id} has no linked OAuth account")

        token = await self.token_store.get(account.oauth_account_id)
        if token is None:
            raise TokenUnavailableError(f"No OAuth token stored for account {account.id}")

        if force_refresh or token.expires_within(self.refresh_skew_seconds):
            token = await self.refresh(account.oauth_account_id, stale_access_token=token.access_token)

        return ResolvedCredential(username=token.email or account.login, access_token=token.access_token)

    def _password(self, account: Account) -> str:
        if not account.password_encrypted:
            raise AuthenticationError(f"Account {account.id} has no stored password")
        try:
            return self.vault.decrypt_field(account.password_encrypted)
        except DecryptionError as e:
            raise AuthenticationError(f"Password for account {account.id} cannot be decrypted") from e

    async def refresh(self, oauth_account_id: str, stale_access_token: Optional[str] = None) -> OAuthToken:
        """
        Refresh the token of one OAuth account.

        A refresh already running for the same account is joined rather
        than duplicated.
        """
        task = self._refreshes.get(oauth_account_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(oauth_account_id, stale_access_token))
            self._refreshes[oauth_account_id] = task
            task.add_done_callback(lambda _: self._refreshes.pop(oauth_account_id, None))
        else:
            logger.debug(f"Joining in-flight token refresh for {oauth_account_id}")
        return await asyncio.shield(task)

    async def _refresh(self, oauth_account_id: str, stale_access_token: Optional[str]) -> OAuthToken:
        token = await self.token_store.get(oauth_account_id)
        if token is None:
            raise TokenUnavailableError(f"OAuth account {oauth_account_id} not found")

        if (
            stale_access_token is not None
            and token.access_token != stale_access_token
            and not token.expires_within(self.refresh_skew_seconds)
        ):
            # Another refresh already replaced the token we were told is stale.
            return token

        if not token.refresh_token:
            raise TokenUnavailableError(f"No refresh token for OAuth account {oauth_account_id}")

        adapter = self.adapter_factory(token.provider)
        tokens = await adapter.refresh_token(token.refresh_token)
        await self.token_store.save_tokens(
            oauth_account_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
        )
        logger.info(f"Refreshed {token.provider} token for OAuth account {oauth_account_id}")

        return OAuthToken(
            id=token.id,
            provider=token.provider,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            email=token.email,
            user_id=token.user_id,
        )

    async def link_account(
        self,
        provider_id: str,
        code: str,
        pkce_verifier: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> tuple:
        """
        Complete an authorization-code flow and store the tokens.

        Returns (oauth_account_id, UserInfo).
        """
        adapter = self.adapter_factory(provider_id)
        tokens = await adapter.exchange_code(code, pkce_verifier)
        info: UserInfo = await adapter.get_user_info(tokens.access_token)
        oauth_account_id = await self.token_store.create(
            provider=provider_id,
            email=info.email or "",
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            user_id=user_id,
        )
        logger.info(f"Linked {provider_id} account {info.email} as {oauth_account_id}")
        return oauth_account_id, info


async def with_auth_retry(
    resolver: AuthResolver,
    account: Account,
    operation: Callable[[ResolvedCredential], Awaitable[T]],
) -> T:
    """
    Run `operation` with a resolved credential.

    An OAuth account whose credential the server rejects gets exactly one
    forced refresh and one retry.
    """
    credential = await resolver.resolve(account)
    try:
        return await operation(credential)
    except TokenUnavailableError:
        raise
    except AuthenticationError as e:
        if not credential.is_oauth:
            raise
        logger.warning(f"Server rejected token for account {account.id}, refreshing once: {e}")
    credential = await resolver.resolve(account, force_refresh=True)
    return await operation(credential)
