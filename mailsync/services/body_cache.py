"""
Body Cache

Fetches full message bodies on demand and keeps them, gzip-compressed,
on the header row until they expire. Attachments are written once per
content checksum under ``{base}/{YYYY-MM-DD}/{checksum}_{filename}``
and described by one metadata row per (email, checksum, filename).
"""

import asyncio
import email
import email.header
import gzip
import hashlib
import json
import logging
import re
import zlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from email import policy
from email.message import Message
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from mailsync.core.config import settings
from mailsync.core.database import ATTACHMENTS_COLLECTION, HEADERS_COLLECTION
from mailsync.core.errors import (
    AccountNotFoundError,
    CacheCorruptionError,
    EmailNotFoundError,
    MailSyncError,
    TransientNetworkError,
)
from mailsync.imap.client import ImapSession
from mailsync.models.schemas import Account, BodyContent
from mailsync.services.accounts import AccountStore, id_filter
from mailsync.services.auth_resolver import AuthResolver, ResolvedCredential, with_auth_retry
from mailsync.services.folder_sync import SessionFactory, decode_mime_header, make_snippet

logger = logging.getLogger(__name__)

BODY_SNIPPET_LENGTH = 200


# ============== Payload codec ==============

def encode_body(text: str, html: str) -> bytes:
    return gzip.compress(json.dumps({"text": text, "html": html}).encode("utf-8"))


def decode_body(blob: bytes) -> Tuple[str, str]:
    """
    Raises:
        CacheCorruptionError: If the blob is not a gzip JSON payload
    """
    try:
        payload = json.loads(gzip.decompress(bytes(blob)).decode("utf-8"))
        return payload.get("text") or "", payload.get("html") or ""
    except (OSError, EOFError, zlib.error, ValueError, TypeError, AttributeError) as e:
        raise CacheCorruptionError(f"Cached body cannot be decoded: {e}") from e


def html_to_text(html: str) -> str:
    text = re.sub(r"(?is)<(script|style).*?</\1>", " ", html)
    return re.sub(r"<[^>]+>", " ", text)


# ============== MIME extraction ==============

@dataclass
class ExtractedAttachment:
    """Attachment bytes pulled out of a message."""
    filename: str
    content_type: str
    content: bytes
    content_id: Optional[str] = None
    is_inline: bool = False

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


def _decode_payload(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_parts(raw: bytes) -> Tuple[str, str, List[ExtractedAttachment]]:
    """Split a raw message into plain text, HTML and attachments."""
    msg = email.message_from_bytes(raw, policy=policy.default)
    body_plain = ""
    body_html = ""
    attachments: List[ExtractedAttachment] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = (part.get_content_disposition() or "").lower()
        filename = part.get_filename()

        if disposition == "attachment" or filename:
            payload = part.get_payload(decode=True) or b""
            attachments.append(ExtractedAttachment(
                filename=decode_mime_header(filename) if filename else "attachment",
                content_type=content_type,
                content=payload,
                content_id=(part.get("Content-ID") or "").strip("<> ") or None,
                is_inline=disposition == "inline",
            ))
            continue

        if content_type == "text/plain" and not body_plain:
            body_plain = _decode_payload(part)
        elif content_type == "text/html" and not body_html:
            body_html = _decode_payload(part)

    return body_plain, body_html, attachments


# ============== Keyed locks ==============

class KeyedLocks:
    """One asyncio.Lock per key, dropped once no caller holds or awaits it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ============== Attachment storage ==============

def safe_filename(filename: str) -> str:
    cleaned = re.sub(r"[^\w.\-]+", "_", filename).strip("._")
    return cleaned[:120] or "attachment"


class AttachmentStore:
    """Content-addressed attachment files plus their metadata rows."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        base_path: Optional[Path] = None,
        ttl_days: Optional[int] = None,
    ):
        self.collection = db[ATTACHMENTS_COLLECTION]
        self.base_path = Path(base_path or settings.attachment_storage_path)
        self.ttl_days = ttl_days if ttl_days is not None else settings.attachment_ttl_days
        self._write_locks = KeyedLocks()

    def path_for(self, checksum: str, filename: str, day: Optional[datetime] = None) -> Path:
        day = day or datetime.utcnow()
        return self.base_path / day.strftime("%Y-%m-%d") / f"{checksum}_{safe_filename(filename)}"

    async def _existing_path(self, checksum: str, filename: str) -> Optional[Path]:
        doc = await self.collection.find_one(
            {"checksum": checksum, "filename": filename, "storage_path": {"$ne": None}},
            sort=[("expires_at", DESCENDING)],
        )
        if doc and Path(doc["storage_path"]).exists():
            return Path(doc["storage_path"])
        return None

    async def save(self, header: dict, attachments: List[ExtractedAttachment]) -> List[dict]:
        """Write files that are not on disk yet and upsert their rows."""
        rows = []
        now = datetime.utcnow()
        expires_at = now + timedelta(days=self.ttl_days)
        email_id = str(header["_id"])

        for attachment in attachments:
            checksum = attachment.checksum
            path = await self._existing_path(checksum, attachment.filename)
            if path is None:
                path = self.path_for(checksum, attachment.filename, now)
                async with self._write_locks.hold(str(path)):
                    if not path.exists():
                        path.parent.mkdir(parents=True, exist_ok=True)
                        with open(path, "wb") as f:
                            f.write(attachment.content)
                        logger.debug(f"Stored attachment {path.name} ({len(attachment.content)} bytes)")

            row = {
                "email_id": email_id,
                "account_id": header.get("account_id"),
                "filename": attachment.filename,
                "content_type": attachment.content_type,
                "size": len(attachment.content),
                "content_id": attachment.content_id,
                "is_inline": attachment.is_inline,
                "checksum": checksum,
                "storage_path": str(path),
                "expires_at": expires_at,
                "updated_at": now,
            }
            await self.collection.update_one(
                {"email_id": email_id, "checksum": checksum, "filename": attachment.filename},
                {"$set": row, "$setOnInsert": {"created_at": now}},
                upsert=True,
            )
            rows.append(row)

        return rows

    async def list_for_email(self, email_id: str) -> List[dict]:
        cursor = self.collection.find({"email_id": email_id}, {"_id": 0})
        return [doc async for doc in cursor]


# ============== Body cache ==============

class BodyCache:
    """Lazy body fetch with compression, TTL and attachment extraction."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        accounts: AccountStore,
        auth_resolver: AuthResolver,
        session_factory: SessionFactory = ImapSession.for_account,
        attachments: Optional[AttachmentStore] = None,
        ttl_days: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.headers = db[HEADERS_COLLECTION]
        self.accounts = accounts
        self.auth_resolver = auth_resolver
        self.session_factory = session_factory
        self.attachments = attachments or AttachmentStore(db)
        self.ttl_days = ttl_days if ttl_days is not None else settings.body_ttl_days
        self.timeout_seconds = timeout_seconds or settings.folder_sync_timeout_seconds
        self._fetch_locks = KeyedLocks()

    async def fetch_body(self, email_id: str) -> BodyContent:
        """
        Return the body of a cached email, fetching it from the server on a miss.

        Raises:
            EmailNotFoundError: No header row with this id
            AccountNotFoundError: The owning account is gone
            MailSyncError: The server fetch failed
        """
        header = await self._header(email_id)
        cached = await self._cached(header)
        if cached is not None:
            return cached

        async with self._fetch_locks.hold(email_id):
            header = await self._header(email_id)
            cached = await self._cached(header)
            if cached is not None:
                return cached

            account = await self.accounts.get(header["account_id"])
            if account is None:
                raise AccountNotFoundError(f"Account {header['account_id']} not found")

            raw = await with_auth_retry(
                self.auth_resolver,
                account,
                lambda credential: self._fetch_raw(account, header, credential),
            )
            text, html, extracted = extract_parts(raw)
            await self._store(header, text, html)
            rows = await self.attachments.save(header, extracted)
            logger.info(f"Cached body of email {email_id} ({len(raw)} bytes, {len(rows)} attachments)")
            return BodyContent(text=text, html=html, attachments=rows, from_cache=False)

    async def _header(self, email_id: str) -> dict:
        header = await self.headers.find_one(id_filter(email_id))
        if not header:
            raise EmailNotFoundError(f"Email {email_id} not found")
        return header

    async def _cached(self, header: dict) -> Optional[BodyContent]:
        blob = header.get("body_compressed")
        expires_at = header.get("body_expires_at")
        if blob is None or expires_at is None or expires_at <= datetime.utcnow():
            return None
        try:
            text, html = decode_body(blob)
        except CacheCorruptionError as e:
            logger.warning(f"Discarding cached body of email {header['_id']}: {e}")
            return None
        attachments = await self.attachments.list_for_email(str(header["_id"]))
        return BodyContent(text=text, html=html, attachments=attachments, from_cache=True)

    async def _fetch_raw(self, account: Account, header: dict, credential: ResolvedCredential) -> bytes:
        session = self.session_factory(account)
        try:
            await session.open(credential)
            await session.select(header.get("mailbox") or header["folder"])
            return await asyncio.wait_for(session.fetch_raw(header["uid"]), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Fetching UID {header['uid']} timed out") from e
        finally:
            await session.logout()

    async def _store(self, header: dict, text: str, html: str) -> None:
        now = datetime.utcnow()
        searchable = text or html_to_text(html)
        update = {
            "body_compressed": encode_body(text, html),
            "body_text": searchable[:settings.search_body_chars],
            "body_fetched_at": now,
            "body_expires_at": now + timedelta(days=self.ttl_days),
            "updated_at": now,
        }
        if searchable.strip():
            update["snippet"] = make_snippet(searchable, BODY_SNIPPET_LENGTH)
        await self.headers.update_one({"_id": header["_id"]}, {"$set": update})

    async def prefetch(
        self,
        account_id: str,
        folder: str,
        count: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ) -> int:
        """
        Warm bodies for the newest recent headers of a folder that have none.

        Items are fetched one at a time with a fixed pause between them.
        """
        count = settings.prefetch_count if count is None else count
        delay_seconds = settings.prefetch_delay_seconds if delay_seconds is None else delay_seconds
        cutoff = datetime.utcnow() - timedelta(days=settings.prefetch_max_age_days)

        cursor = self.headers.find(
            {
                "account_id": account_id,
                "folder": folder,
                "body_compressed": None,
                "date": {"$gte": cutoff},
            },
            {"_id": 1},
        ).sort("date", DESCENDING).limit(count)
        email_ids = [str(doc["_id"]) async for doc in cursor]

        warmed = 0
        for index, email_id in enumerate(email_ids):
            if index:
                await asyncio.sleep(delay_seconds)
            try:
                await self.fetch_body(email_id)
                warmed += 1
            except MailSyncError as e:
                logger.warning(f"Prefetch of email {email_id} failed: {e}")

        if email_ids:
            logger.info(f"Prefetched {warmed}/{len(email_ids)} bodies in {folder} for account {account_id}")
        return warmed
