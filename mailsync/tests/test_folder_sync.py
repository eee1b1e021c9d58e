"""
Unit tests for incremental folder sync against a fake IMAP server.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailsync.core.database import CHECKPOINTS_COLLECTION, FOLDERS_COLLECTION, HEADERS_COLLECTION
from mailsync.core.errors import TransientNetworkError
from mailsync.imap.folders import FolderType
from mailsync.providers.base import OAuthTokens
from mailsync.services.accounts import OAuthTokenStore
from mailsync.services.auth_resolver import AuthResolver
from mailsync.services.checkpoints import CheckpointStore
from mailsync.services.folder_sync import (
    FolderSynchronizer,
    compute_thread_id,
    derive_flags,
    make_snippet,
)
from mailsync.tests.fakes import insert_oauth_account, insert_password_account


def make_synchronizer(db, vault, server, adapter=None, **kwargs):
    resolver = AuthResolver(
        OAuthTokenStore(db, vault=vault),
        vault=vault,
        adapter_factory=lambda provider: adapter or MagicMock(),
    )
    kwargs.setdefault("batch_size", 20)
    return FolderSynchronizer(db, resolver, session_factory=server.session_factory, **kwargs)


async def header_uids(db, account_id, folder="INBOX"):
    cursor = db[HEADERS_COLLECTION].find({"account_id": account_id, "folder": folder})
    return sorted([doc["uid"] async for doc in cursor])


class TestHeaderDerivation:
    """Tests for the pure header helpers."""

    def test_snippet_truncates(self):
        assert make_snippet("  a   b \n c ") == "a b c"
        assert make_snippet("x" * 200, 150) == "x" * 150 + "..."

    def test_thread_id_prefers_first_reference(self):
        by_ref = compute_thread_id(["<root@x>", "<mid@x>"], "<mid@x>", "<me@x>", "fallback")
        by_root = compute_thread_id([], "<root@x>", "<other@x>", "fallback")
        assert by_ref == by_root
        assert compute_thread_id([], None, None, "a:b:1") != compute_thread_id([], None, None, "a:b:2")

    def test_flags(self):
        flags = derive_flags(["\\Seen", "\\Flagged", "$Junk"], FolderType.INBOX)
        assert flags["is_read"] and flags["is_starred"] and flags["is_spam"]
        assert not flags["is_draft"]
        assert derive_flags([], FolderType.DRAFTS)["is_draft"]
        assert derive_flags([], FolderType.ARCHIVE)["is_archived"]


class TestIncrementalSync:
    """Tests for the UID window and checkpoint."""

    @pytest.mark.asyncio
    async def test_first_sync_takes_newest_then_only_new(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 120)
        account = await insert_password_account(db, vault)
        synchronizer = make_synchronizer(db, vault, imap_server)

        first = await synchronizer.sync(account, "INBOX", 50)
        assert first.synced == 50
        assert first.total == 120
        assert await header_uids(db, account.id) == list(range(71, 121))

        second = await synchronizer.sync(account, "INBOX", 50)
        assert second.synced == 0

        imap_server.add_messages("INBOX", 3, start=121)
        third = await synchronizer.sync(account, "INBOX", 50)
        assert third.synced == 3

        checkpoint = await CheckpointStore(db).get(account.id, "INBOX")
        assert checkpoint.last_uid_synced == 123
        assert checkpoint.sync_in_progress is False
        assert checkpoint.uid_validity == 1

    @pytest.mark.asyncio
    async def test_incremental_window_is_capped_oldest_first(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 10)
        account = await insert_password_account(db, vault)
        synchronizer = make_synchronizer(db, vault, imap_server)
        await synchronizer.sync(account, "INBOX", 50)

        imap_server.add_messages("INBOX", 30, start=11)
        result = await synchronizer.sync(account, "INBOX", 20)

        assert result.synced == 20
        assert (await CheckpointStore(db).get(account.id, "INBOX")).last_uid_synced == 30
        result = await synchronizer.sync(account, "INBOX", 20)
        assert result.synced == 10
        assert await header_uids(db, account.id) == list(range(1, 41))

    @pytest.mark.asyncio
    async def test_star_range_returning_old_uid_adds_nothing(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 10)
        account = await insert_password_account(db, vault)
        synchronizer = make_synchronizer(db, vault, imap_server)
        await synchronizer.sync(account, "INBOX", 50)

        result = await synchronizer.sync(account, "INBOX", 50)

        assert result.synced == 0
        assert (await CheckpointStore(db).get(account.id, "INBOX")).last_uid_synced == 10

    @pytest.mark.asyncio
    async def test_header_row_contents(self, db, vault, imap_server):
        imap_server.add_message("INBOX", 1, subject="Quarterly invoice", flags=["\\Seen"])
        account = await insert_password_account(db, vault)
        await make_synchronizer(db, vault, imap_server).sync(account, "INBOX", 50)

        doc = await db[HEADERS_COLLECTION].find_one({"account_id": account.id, "uid": 1})
        assert doc["subject"] == "Quarterly invoice"
        assert doc["from_address"] == "alice@example.com"
        assert doc["from_name"] == "Alice"
        assert doc["to_addresses"] == ["bob@example.com"]
        assert doc["message_id"] == "<msg-1@example.com>"
        assert doc["is_read"] is True
        assert doc["folder_type"] == "inbox"
        assert doc["snippet"] == "Quarterly invoice"
        assert doc["body_compressed"] is None

    @pytest.mark.asyncio
    async def test_existing_uid_gets_flags_refreshed(self, db, vault, imap_server):
        imap_server.add_message("INBOX", 5, flags=["\\Seen"])
        account = await insert_password_account(db, vault)
        await db[HEADERS_COLLECTION].insert_one({
            "account_id": account.id, "folder": "INBOX", "uid": 5, "is_read": False, "flags": [],
        })

        result = await make_synchronizer(db, vault, imap_server).sync(account, "INBOX", 50)

        assert result.synced == 0
        doc = await db[HEADERS_COLLECTION].find_one({"account_id": account.id, "uid": 5})
        assert doc["is_read"] is True
        assert await db[HEADERS_COLLECTION].count_documents({"account_id": account.id}) == 1

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_backwards(self, db):
        store = CheckpointStore(db)
        await store.advance("acc", "INBOX", "INBOX", 50)
        await store.advance("acc", "INBOX", "INBOX", 20)
        assert (await store.get("acc", "INBOX")).last_uid_synced == 50


class TestFolderResolution:
    """Tests for logical folder roles."""

    @pytest.mark.asyncio
    async def test_sent_resolves_to_gmail_name(self, db, vault, imap_server):
        imap_server.add_messages("[Gmail]/Sent Mail", 4)
        account = await insert_password_account(db, vault)

        result = await make_synchronizer(db, vault, imap_server).sync(account, "SENT", 50)

        assert result.mailbox == "[Gmail]/Sent Mail"
        assert result.synced == 4
        assert imap_server.status_probes[-1] == "[Gmail]/Sent Mail"
        doc = await db[HEADERS_COLLECTION].find_one({"account_id": account.id, "folder": "SENT"})
        assert doc["mailbox"] == "[Gmail]/Sent Mail"
        assert doc["folder_type"] == "sent"
        folder = await db[FOLDERS_COLLECTION].find_one({"account_id": account.id})
        assert folder["folder_name"] == "[Gmail]/Sent Mail"
        assert folder["messages_count"] == 4

    @pytest.mark.asyncio
    async def test_missing_folder_yields_zero(self, db, vault, imap_server):
        account = await insert_password_account(db, vault)

        result = await make_synchronizer(db, vault, imap_server).sync(account, "DRAFTS", 50)

        assert result.synced == 0
        assert result.total == 0
        assert result.error is None
        assert imap_server.logouts == 1


class TestFailureHandling:
    """Tests for fault isolation and the in-progress flag."""

    @pytest.mark.asyncio
    async def test_fault_clears_in_progress_flag(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 5)
        imap_server.fail_fetch = True
        account = await insert_password_account(db, vault)

        with pytest.raises(TransientNetworkError):
            await make_synchronizer(db, vault, imap_server).sync(account, "INBOX", 50)

        checkpoint = await db[CHECKPOINTS_COLLECTION].find_one({"account_id": account.id, "folder": "INBOX"})
        assert checkpoint["sync_in_progress"] is False
        assert "connection reset" in checkpoint["error_message"]
        assert checkpoint["last_uid_synced"] == 0
        assert imap_server.logouts == 1

    @pytest.mark.asyncio
    async def test_deadline_clears_in_progress_flag(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 5)
        imap_server.fetch_delay = 1.0
        account = await insert_password_account(db, vault)
        synchronizer = make_synchronizer(db, vault, imap_server, timeout_seconds=0.05)

        with pytest.raises(TransientNetworkError):
            await synchronizer.sync(account, "INBOX", 50)

        checkpoint = await CheckpointStore(db).get(account.id, "INBOX")
        assert checkpoint.sync_in_progress is False
        assert checkpoint.error_message

    @pytest.mark.asyncio
    async def test_concurrent_sync_of_same_folder_is_skipped(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 30)
        imap_server.fetch_delay = 0.05
        account = await insert_password_account(db, vault)
        synchronizer = make_synchronizer(db, vault, imap_server)

        results = await asyncio.gather(
            synchronizer.sync(account, "INBOX", 50),
            synchronizer.sync(account, "INBOX", 50),
        )

        assert sorted(r.skipped for r in results) == [False, True]
        assert sum(r.synced for r in results) == 30
        assert await header_uids(db, account.id) == list(range(1, 31))

    @pytest.mark.asyncio
    async def test_rejected_token_refreshes_once(self, db, vault, imap_server):
        imap_server.add_messages("INBOX", 3)
        imap_server.rejected_tokens.add("access-1")
        adapter = MagicMock()
        adapter.refresh_token = AsyncMock(return_value=OAuthTokens(access_token="access-2", refresh_token="r"))
        account = await insert_oauth_account(db, vault)

        result = await make_synchronizer(db, vault, imap_server, adapter=adapter).sync(account, "INBOX", 50)

        assert result.synced == 3
        assert adapter.refresh_token.await_count == 1
        assert imap_server.sessions_opened == 2
