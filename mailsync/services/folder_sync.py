"""
Folder Synchronizer

Brings one (account, folder) header cache up to date:

1. open an authenticated session
2. resolve logical roles (SENT, DRAFTS, ...) to the server's mailbox name
3. STATUS the mailbox and store its metadata
4. pick the UID window: the newest `limit` UIDs on first sync, otherwise
   UIDs above the checkpoint
5. fetch headers in batches and insert rows for unseen UIDs
6. advance the checkpoint and log out

Only one sync per (account, folder) runs at a time in this process, and
the checkpoint's sync_in_progress flag is always cleared on exit.
"""

import asyncio
import email
import email.errors
import email.header
import email.utils
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from mailsync.core.config import settings
from mailsync.core.database import FOLDERS_COLLECTION, HEADERS_COLLECTION
from mailsync.core.errors import FolderNotFoundError, PartialItemError, TransientNetworkError
from mailsync.imap.client import ImapSession
from mailsync.imap.folders import FolderAliasTable, FolderType, classify_folder
from mailsync.imap.parser import FetchedMessage, FolderStatus, has_attachments
from mailsync.models.schemas import Account, FolderCheckpoint, FolderSyncResult
from mailsync.services.auth_resolver import AuthResolver, ResolvedCredential, with_auth_retry
from mailsync.services.checkpoints import CheckpointStore

logger = logging.getLogger(__name__)

HEADER_SNIPPET_LENGTH = 150

SessionFactory = Callable[[Account], ImapSession]


# ============== Header derivation ==============

def decode_mime_header(value: Optional[str]) -> str:
    """Decode RFC 2047 encoded words."""
    if not value:
        return ""
    try:
        return str(email.header.make_header(email.header.decode_header(value)))
    except (email.errors.HeaderParseError, LookupError, UnicodeDecodeError):
        return str(value)


def make_snippet(text: Optional[str], length: int = HEADER_SNIPPET_LENGTH) -> str:
    """Collapse whitespace and truncate with an ellipsis."""
    collapsed = re.sub(r"\s+", " ", text or "").strip()
    if len(collapsed) <= length:
        return collapsed
    return collapsed[:length] + "..."


def compute_thread_id(
    references: List[str],
    in_reply_to: Optional[str],
    message_id: Optional[str],
    fallback: str,
) -> str:
    """md5 of the thread root: first Reference, else In-Reply-To, else Message-ID."""
    root = (references[0] if references else None) or in_reply_to or message_id or fallback
    return hashlib.md5(root.encode("utf-8")).hexdigest()


def derive_flags(flags: List[str], folder_type: FolderType) -> Dict[str, bool]:
    upper = {flag.upper() for flag in flags}
    return {
        "is_read": "\\SEEN" in upper,
        "is_starred": "\\FLAGGED" in upper,
        "is_draft": "\\DRAFT" in upper or folder_type == FolderType.DRAFTS,
        "is_trash": "\\DELETED" in upper or folder_type == FolderType.TRASH,
        "is_spam": "$JUNK" in upper or "JUNK" in upper or folder_type == FolderType.SPAM,
        "is_archived": folder_type == FolderType.ARCHIVE,
        "is_snoozed": "$SNOOZED" in upper,
    }


def _parse_date(date_header: Optional[str], internal_date: Optional[str]) -> datetime:
    parsed = None
    if date_header:
        try:
            parsed = email.utils.parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            parsed = None
    if parsed is None and internal_date:
        try:
            parsed = datetime.strptime(internal_date.strip(), "%d-%b-%Y %H:%M:%S %z")
        except ValueError:
            parsed = None
    if parsed is None:
        return datetime.utcnow()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _message_ids(value: Optional[str]) -> List[str]:
    return re.findall(r"<[^<>]+>", value or "") or ([value.strip()] if value and value.strip() else [])


def build_header_document(
    account: Account,
    folder: str,
    mailbox: str,
    folder_type: FolderType,
    message: FetchedMessage,
) -> dict:
    """
    Build the cached header row for one fetched message.

    Raises:
        PartialItemError: If the header block cannot be parsed
    """
    try:
        headers = email.message_from_bytes(message.headers or b"")
        subject = decode_mime_header(headers.get("Subject"))
        from_name, from_address = email.utils.parseaddr(decode_mime_header(headers.get("From")))
        to_addresses = [addr for _, addr in email.utils.getaddresses([decode_mime_header(headers.get("To"))]) if addr]
        cc_addresses = [addr for _, addr in email.utils.getaddresses([decode_mime_header(headers.get("Cc"))]) if addr]
        message_id = (headers.get("Message-ID") or "").strip() or None
        in_reply_to_ids = _message_ids(headers.get("In-Reply-To"))
        references = _message_ids(headers.get("References"))
        date = _parse_date(headers.get("Date"), message.internal_date)
    except (TypeError, ValueError, UnicodeError) as e:
        raise PartialItemError(f"Unparseable headers for UID {message.uid}: {e}", uid=message.uid) from e

    in_reply_to = in_reply_to_ids[0] if in_reply_to_ids else None
    now = datetime.utcnow()
    doc = {
        "account_id": account.id,
        "user_id": account.user_id,
        "folder": folder,
        "mailbox": mailbox,
        "folder_type": folder_type.value,
        "uid": message.uid,
        "message_id": message_id,
        "subject": subject,
        "from_address": from_address,
        "from_name": from_name,
        "to_addresses": to_addresses,
        "cc_addresses": cc_addresses,
        "date": date,
        "flags": message.flags,
        "has_attachments": has_attachments(message.structure),
        "thread_id": compute_thread_id(
            references, in_reply_to, message_id, f"{account.id}:{folder}:{message.uid}"
        ),
        "snippet": make_snippet(subject),
        "size": message.size,
        "in_reply_to": in_reply_to,
        "references": references,
        "body_compressed": None,
        "body_text": None,
        "body_fetched_at": None,
        "body_expires_at": None,
        "created_at": now,
        "updated_at": now,
    }
    doc.update(derive_flags(message.flags, folder_type))
    return doc


def _batches(items: List[int], size: int) -> Iterator[List[int]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


# ============== Locks ==============

class MailboxLocks:
    """Per-(account, folder) locks for this process."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def get(self, account_id: str, folder: str) -> asyncio.Lock:
        return self._locks.setdefault((account_id, folder), asyncio.Lock())


# ============== Synchronizer ==============

class FolderSynchronizer:
    """Syncs the header cache of one folder at a time."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        auth_resolver: AuthResolver,
        session_factory: SessionFactory = ImapSession.for_account,
        checkpoints: Optional[CheckpointStore] = None,
        aliases: Optional[FolderAliasTable] = None,
        batch_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.headers = db[HEADERS_COLLECTION]
        self.folders = db[FOLDERS_COLLECTION]
        self.auth_resolver = auth_resolver
        self.session_factory = session_factory
        self.checkpoints = checkpoints or CheckpointStore(db)
        self.aliases = aliases or FolderAliasTable()
        self.batch_size = batch_size or settings.fetch_batch_size
        self.timeout_seconds = timeout_seconds or settings.folder_sync_timeout_seconds
        self.locks = MailboxLocks()

    async def sync(self, account: Account, folder: str, limit: int) -> FolderSyncResult:
        """
        Sync one folder of one account.

        Returns a result with `skipped=True` when another sync of the same
        folder is already running. A folder the server does not have
        yields zero counts.

        Raises:
            MailSyncError: On any other failure, after recording it on the
                folder's checkpoint
        """
        lock = self.locks.get(account.id, folder)
        if lock.locked():
            logger.info(f"Sync of {folder} for account {account.id} already running, skipping")
            return FolderSyncResult(folder=folder, skipped=True)

        async with lock:
            await self.checkpoints.mark_started(account.id, folder)
            try:
                result = await asyncio.wait_for(
                    with_auth_retry(
                        self.auth_resolver,
                        account,
                        lambda credential: self._sync_once(account, folder, limit, credential),
                    ),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                error = TransientNetworkError(
                    f"Sync of {folder} for account {account.id} exceeded {self.timeout_seconds}s"
                )
                logger.error(str(error))
                await self.checkpoints.record_error(account.id, folder, str(error))
                raise error from e
            except Exception as e:
                logger.error(f"Sync of {folder} for account {account.id} failed: {e}")
                await self.checkpoints.record_error(account.id, folder, str(e))
                raise
            finally:
                await self.checkpoints.mark_finished(account.id, folder)

        logger.info(
            f"Synced {folder} for account {account.id}: {result.synced} new of {result.total}"
        )
        return result

    async def _sync_once(
        self,
        account: Account,
        folder: str,
        limit: int,
        credential: ResolvedCredential,
    ) -> FolderSyncResult:
        session = self.session_factory(account)
        try:
            await session.open(credential)

            mailbox, status = await self._resolve_mailbox(session, folder)
            if mailbox is None:
                logger.info(f"Folder {folder} does not exist for account {account.id}")
                return FolderSyncResult(folder=folder)

            role = self.aliases.role_for(folder)
            folder_type = classify_folder(mailbox, role)
            await self._save_folder_metadata(account, folder, mailbox, folder_type, status)

            checkpoint = await self.checkpoints.get(account.id, folder)
            self._check_uid_validity(account, folder, checkpoint, status)

            await session.select(mailbox)
            uids = await self._window(session, checkpoint, limit)
            synced = 0
            if uids:
                synced = await self._fetch_and_store(session, account, folder, mailbox, folder_type, uids)

            await self.checkpoints.advance(
                account.id, folder, mailbox, max(uids) if uids else 0, status.uid_validity
            )
            return FolderSyncResult(folder=folder, mailbox=mailbox, synced=synced, total=status.messages)
        finally:
            await session.logout()

    async def _resolve_mailbox(
        self, session: ImapSession, folder: str
    ) -> Tuple[Optional[str], Optional[FolderStatus]]:
        """Probe candidate names in order; the first one with a STATUS wins."""
        for candidate in self.aliases.candidates(folder):
            try:
                status = await session.folder_status(candidate)
            except FolderNotFoundError:
                logger.debug(f"Mailbox {candidate!r} not found while resolving {folder}")
                continue
            return candidate, status
        return None, None

    async def _save_folder_metadata(
        self,
        account: Account,
        folder: str,
        mailbox: str,
        folder_type: FolderType,
        status: FolderStatus,
    ) -> None:
        await self.folders.update_one(
            {"account_id": account.id, "folder_name": mailbox},
            {"$set": {
                "folder": folder,
                "folder_type": folder_type.value,
                "messages_count": status.messages,
                "unseen_count": status.unseen,
                "uid_validity": status.uid_validity,
                "uid_next": status.uid_next,
                "updated_at": datetime.utcnow(),
            }},
            upsert=True,
        )

    def _check_uid_validity(
        self,
        account: Account,
        folder: str,
        checkpoint: Optional[FolderCheckpoint],
        status: FolderStatus,
    ) -> None:
        if (
            checkpoint is not None
            and checkpoint.uid_validity is not None
            and status.uid_validity is not None
            and checkpoint.uid_validity != status.uid_validity
        ):
            logger.warning(
                f"UIDVALIDITY of {folder} for account {account.id} changed "
                f"({checkpoint.uid_validity} -> {status.uid_validity}); cached UIDs may be stale"
            )

    async def _window(
        self, session: ImapSession, checkpoint: Optional[FolderCheckpoint], limit: int
    ) -> List[int]:
        last_uid = checkpoint.last_uid_synced if checkpoint else 0
        if last_uid <= 0:
            uids = await session.search_uids("ALL")
            return uids[-limit:] if limit > 0 else []

        # "N:*" always matches the highest UID, even when it is below N.
        uids = [uid for uid in await session.search_uids(f"UID {last_uid + 1}:*") if uid > last_uid]
        return uids[:limit] if limit > 0 else []

    async def _existing_uids(self, account_id: str, folder: str, uids: List[int]) -> Set[int]:
        cursor = self.headers.find(
            {"account_id": account_id, "folder": folder, "uid": {"$in": uids}},
            {"uid": 1},
        )
        return {doc["uid"] async for doc in cursor}

    async def _fetch_and_store(
        self,
        session: ImapSession,
        account: Account,
        folder: str,
        mailbox: str,
        folder_type: FolderType,
        uids: List[int],
    ) -> int:
        existing = await self._existing_uids(account.id, folder, uids)
        synced = 0

        for batch in _batches(uids, self.batch_size):
            messages, failures = await session.fetch_headers(batch)
            for failure in failures:
                logger.warning(f"Skipping unparseable message in {mailbox}: {failure}")

            for message in messages:
                try:
                    doc = build_header_document(account, folder, mailbox, folder_type, message)
                except PartialItemError as e:
                    logger.warning(f"Skipping message in {mailbox}: {e}")
                    continue

                if message.uid in existing:
                    await self._refresh_flags(account.id, folder, message.uid, doc)
                    continue
                if await self._insert_header(doc):
                    existing.add(message.uid)
                    synced += 1

        return synced

    async def _insert_header(self, doc: dict) -> bool:
        key = {"account_id": doc["account_id"], "folder": doc["folder"], "uid": doc["uid"]}
        try:
            result = await self.headers.update_one(key, {"$setOnInsert": doc}, upsert=True)
        except DuplicateKeyError:
            return False
        return result.upserted_id is not None

    async def _refresh_flags(self, account_id: str, folder: str, uid: int, doc: dict) -> None:
        flag_fields = {
            key: doc[key]
            for key in ("flags", "is_read", "is_starred", "is_draft", "is_trash", "is_spam", "is_archived", "is_snoozed")
        }
        flag_fields["updated_at"] = datetime.utcnow()
        await self.headers.update_one(
            {"account_id": account_id, "folder": folder, "uid": uid},
            {"$set": flag_fields},
        )
