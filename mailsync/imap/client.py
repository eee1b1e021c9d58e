"""
IMAP session over aioimaplib.

One ``ImapSession`` is one authenticated connection. Network failures
surface as TransientNetworkError, rejected credentials as
AuthenticationError and missing mailboxes as FolderNotFoundError.
"""

import asyncio
import logging
import ssl
from typing import Any, List, Optional, Tuple

import aioimaplib

from mailsync.core.config import settings
from mailsync.core.errors import (
    AuthenticationError,
    FolderNotFoundError,
    MailSyncError,
    PartialItemError,
    TransientNetworkError,
)
from mailsync.imap.parser import (
    FetchedMessage,
    FolderStatus,
    parse_fetch_response,
    parse_search_response,
    parse_status_response,
    quote_mailbox,
)
from mailsync.models.schemas import Account

logger = logging.getLogger(__name__)

HEADER_FIELDS = "DATE FROM TO CC SUBJECT MESSAGE-ID IN-REPLY-TO REFERENCES"
HEADER_FETCH_ITEMS = (
    f"(UID FLAGS RFC822.SIZE INTERNALDATE BODYSTRUCTURE BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})])"
)
RAW_FETCH_ITEMS = "(UID BODY.PEEK[])"

AUTH_FAILURE_MARKERS = ("AUTHENTICATIONFAILED", "INVALID CREDENTIALS", "AUTHENTICATE FAILED", "LOGIN FAILED")

_NETWORK_ERRORS = (asyncio.TimeoutError, OSError, aioimaplib.Abort, aioimaplib.CommandTimeout)


def _describe(response: Any) -> str:
    lines = getattr(response, "lines", None) or []
    text = " ".join(
        bytes(line).decode("utf-8", errors="replace") if isinstance(line, (bytes, bytearray)) else str(line)
        for line in lines
    )
    return text.strip() or str(response)


def is_auth_failure(detail: str) -> bool:
    upper = detail.upper()
    return any(marker in upper for marker in AUTH_FAILURE_MARKERS)


class ImapSession:
    """Authenticated IMAP connection for one account."""

    def __init__(
        self,
        host: str,
        port: int = 993,
        use_ssl: bool = True,
        timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout or settings.imap_timeout_seconds
        self._client: Optional[aioimaplib.IMAP4] = None
        self._connected = False
        self._selected: Optional[str] = None

    @classmethod
    def for_account(cls, account: Account) -> "ImapSession":
        return cls(
            host=account.imap_host,
            port=account.imap_port,
            use_ssl=account.use_implicit_tls,
        )

    @property
    def connected(self) -> bool:
        return self._connected

    async def open(self, credential) -> None:
        """Connect, upgrade to TLS when possible and authenticate."""
        try:
            if self.use_ssl:
                self._client = aioimaplib.IMAP4_SSL(
                    host=self.host,
                    port=self.port,
                    ssl_context=ssl.create_default_context(),
                    timeout=self.timeout,
                )
            else:
                self._client = aioimaplib.IMAP4(host=self.host, port=self.port, timeout=self.timeout)

            await self._client.wait_hello_from_server()
            self._connected = True

            if not self.use_ssl and self._client.has_capability("STARTTLS"):
                logger.debug(f"Upgrading {self.host} connection via STARTTLS")
                await self._client.starttls()

            if credential.is_oauth:
                response = await self._client.xoauth2(credential.username, credential.access_token)
            else:
                response = await self._client.login(credential.username, credential.password)
        except _NETWORK_ERRORS as e:
            if not self._connected:
                self._drop_transport()
            raise TransientNetworkError(f"IMAP connection to {self.host}:{self.port} failed: {e}") from e

        if response.result != "OK":
            detail = _describe(response)
            logger.warning(f"IMAP authentication rejected for {credential.username}@{self.host}: {detail}")
            raise AuthenticationError(f"IMAP authentication failed for {credential.username}: {detail}")

        logger.debug(f"Authenticated to {self.host} as {credential.username}")

    def _drop_transport(self) -> None:
        """Close a socket that never completed the server greeting."""
        protocol = getattr(self._client, "protocol", None)
        transport = getattr(protocol, "transport", None)
        if transport is not None:
            transport.close()
        self._client = None

    async def _command(self, description: str, call) -> Any:
        if self._client is None or not self._connected:
            raise TransientNetworkError(f"IMAP session to {self.host} is not open")
        try:
            return await call()
        except _NETWORK_ERRORS as e:
            raise TransientNetworkError(f"IMAP {description} failed on {self.host}: {e}") from e

    def _raise_for_auth(self, response: Any) -> None:
        detail = _describe(response)
        if is_auth_failure(detail):
            raise AuthenticationError(f"IMAP session on {self.host} lost authorization: {detail}")

    async def folder_status(self, mailbox: str) -> FolderStatus:
        """STATUS query; a NO answer means the mailbox does not exist."""
        response = await self._command(
            f"STATUS {mailbox}",
            lambda: self._client.status(quote_mailbox(mailbox), "(MESSAGES UIDNEXT UIDVALIDITY UNSEEN)"),
        )
        if response.result != "OK":
            self._raise_for_auth(response)
            raise FolderNotFoundError(mailbox)
        return parse_status_response(response.lines)

    async def select(self, mailbox: str) -> None:
        response = await self._command(f"SELECT {mailbox}", lambda: self._client.select(quote_mailbox(mailbox)))
        if response.result != "OK":
            self._raise_for_auth(response)
            raise FolderNotFoundError(mailbox)
        self._selected = mailbox

    async def search_uids(self, criteria: str = "ALL") -> List[int]:
        """UID SEARCH in the selected mailbox, ascending."""
        response = await self._command(f"UID SEARCH {criteria}", lambda: self._client.uid_search(criteria))
        if response.result != "OK":
            raise MailSyncError(f"UID SEARCH {criteria} failed: {_describe(response)}")
        return parse_search_response(response.lines)

    async def fetch_headers(self, uids: List[int]) -> Tuple[List[FetchedMessage], List[PartialItemError]]:
        """Fetch flags, structure and the headers the cache needs."""
        if not uids:
            return [], []
        uid_set = ",".join(str(uid) for uid in uids)
        response = await self._command(
            f"UID FETCH {uid_set}",
            lambda: self._client.uid("fetch", uid_set, HEADER_FETCH_ITEMS),
        )
        if response.result != "OK":
            raise MailSyncError(f"UID FETCH failed in {self._selected}: {_describe(response)}")
        return parse_fetch_response(response.lines)

    async def fetch_raw(self, uid: int) -> bytes:
        """Fetch the full RFC822 source of one message."""
        response = await self._command(
            f"UID FETCH {uid} BODY[]",
            lambda: self._client.uid("fetch", str(uid), RAW_FETCH_ITEMS),
        )
        if response.result != "OK":
            raise MailSyncError(f"UID FETCH {uid} failed in {self._selected}: {_describe(response)}")
        messages, _ = parse_fetch_response(response.lines)
        for message in messages:
            if message.uid == uid and message.raw is not None:
                return message.raw
        raise PartialItemError(f"Message {uid} not returned by server", uid=uid)

    async def logout(self) -> None:
        """Log out; errors are logged, never raised."""
        if self._client and self._connected:
            try:
                await asyncio.wait_for(self._client.logout(), timeout=self.timeout)
            except _NETWORK_ERRORS as e:
                logger.warning(f"Error during logout from {self.host}: {e}")
            finally:
                self._connected = False
                self._client = None
                self._selected = None
