"""
Unit tests for the cache janitor.
"""

from datetime import datetime, timedelta

import pytest

from mailsync.core.database import ATTACHMENTS_COLLECTION, HEADERS_COLLECTION
from mailsync.services.body_cache import encode_body
from mailsync.services.janitor import CacheJanitor

NOW = datetime(2024, 6, 30, 12, 0, 0)


def write_file(tmp_path, day, name, content=b"data"):
    path = tmp_path / day / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def attachment_row(email_id, path, expires_at):
    return {
        "email_id": email_id,
        "account_id": "acc-1",
        "filename": path.name,
        "checksum": path.name.split("_")[0],
        "storage_path": str(path),
        "expires_at": expires_at,
    }


class TestBodyEviction:
    """Tests for clearing expired bodies."""

    @pytest.mark.asyncio
    async def test_expired_bodies_cleared_headers_kept(self, db):
        await db[HEADERS_COLLECTION].insert_many([
            {
                "uid": 1, "subject": "old",
                "body_compressed": encode_body("a", ""), "body_text": "a",
                "body_fetched_at": NOW - timedelta(days=8), "body_expires_at": NOW - timedelta(days=1),
            },
            {
                "uid": 2, "subject": "fresh",
                "body_compressed": encode_body("b", ""), "body_text": "b",
                "body_fetched_at": NOW, "body_expires_at": NOW + timedelta(days=6),
            },
        ])

        stats = await CacheJanitor(db).sweep(now=NOW)

        assert stats["bodies_cleared"] == 1
        old = await db[HEADERS_COLLECTION].find_one({"uid": 1})
        assert old["subject"] == "old"
        assert old["body_compressed"] is None
        assert old["body_text"] is None
        assert old["body_expires_at"] is None
        fresh = await db[HEADERS_COLLECTION].find_one({"uid": 2})
        assert fresh["body_compressed"] is not None
        assert await db[HEADERS_COLLECTION].count_documents({}) == 2


class TestAttachmentEviction:
    """Tests for clearing expired attachment files."""

    @pytest.mark.asyncio
    async def test_expired_file_deleted_and_reference_cleared(self, db, tmp_path):
        path = write_file(tmp_path, "2024-06-20", "abc_report.pdf")
        await db[ATTACHMENTS_COLLECTION].insert_one(attachment_row("e1", path, NOW - timedelta(days=1)))

        stats = await CacheJanitor(db).sweep(now=NOW)

        assert stats == {"bodies_cleared": 0, "attachments_cleared": 1, "files_deleted": 1}
        assert not path.exists()
        assert not path.parent.exists()
        row = await db[ATTACHMENTS_COLLECTION].find_one({"email_id": "e1"})
        assert row["storage_path"] is None
        assert row["filename"] == "abc_report.pdf"

    @pytest.mark.asyncio
    async def test_shared_file_kept_while_referenced(self, db, tmp_path):
        path = write_file(tmp_path, "2024-06-20", "abc_report.pdf")
        await db[ATTACHMENTS_COLLECTION].insert_many([
            attachment_row("e1", path, NOW - timedelta(days=1)),
            attachment_row("e2", path, NOW + timedelta(days=3)),
        ])

        stats = await CacheJanitor(db).sweep(now=NOW)

        assert stats["attachments_cleared"] == 1
        assert stats["files_deleted"] == 0
        assert path.exists()
        assert (await db[ATTACHMENTS_COLLECTION].find_one({"email_id": "e1"}))["storage_path"] is None
        assert (await db[ATTACHMENTS_COLLECTION].find_one({"email_id": "e2"}))["storage_path"] == str(path)

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_reference(self, db, tmp_path):
        # A directory where the file should be makes unlink fail.
        path = tmp_path / "2024-06-20" / "abc_report.pdf"
        path.mkdir(parents=True)
        await db[ATTACHMENTS_COLLECTION].insert_one(attachment_row("e1", path, NOW - timedelta(days=1)))

        stats = await CacheJanitor(db).sweep(now=NOW)

        assert stats["attachments_cleared"] == 0
        row = await db[ATTACHMENTS_COLLECTION].find_one({"email_id": "e1"})
        assert row["storage_path"] == str(path)

    @pytest.mark.asyncio
    async def test_missing_file_still_clears_reference(self, db, tmp_path):
        path = tmp_path / "2024-06-20" / "gone_report.pdf"
        await db[ATTACHMENTS_COLLECTION].insert_one(attachment_row("e1", path, NOW - timedelta(days=1)))

        stats = await CacheJanitor(db).sweep(now=NOW)

        assert stats["attachments_cleared"] == 1
        assert stats["files_deleted"] == 0
        assert (await db[ATTACHMENTS_COLLECTION].find_one({"email_id": "e1"}))["storage_path"] is None
