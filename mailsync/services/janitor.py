"""
Cache Janitor

Evicts cached bodies and attachment files past their expiry. Header rows
are never removed. An attachment file is deleted before its row's
storage_path is cleared, so an interrupted sweep can leave a reference to
a missing file but never a file nothing points at.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from mailsync.core.database import ATTACHMENTS_COLLECTION, HEADERS_COLLECTION

logger = logging.getLogger(__name__)


class CacheJanitor:
    """Periodic TTL sweep of the body and attachment caches."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.headers = db[HEADERS_COLLECTION]
        self.attachments = db[ATTACHMENTS_COLLECTION]

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        bodies_cleared = await self._clear_bodies(now)
        attachments_cleared, files_deleted = await self._clear_attachments(now)

        logger.info(
            f"Cache sweep: {bodies_cleared} bodies, {attachments_cleared} attachments, "
            f"{files_deleted} files deleted"
        )
        return {
            "bodies_cleared": bodies_cleared,
            "attachments_cleared": attachments_cleared,
            "files_deleted": files_deleted,
        }

    async def _clear_bodies(self, now: datetime) -> int:
        result = await self.headers.update_many(
            {"body_expires_at": {"$lt": now}, "body_compressed": {"$ne": None}},
            {"$set": {
                "body_compressed": None,
                "body_text": None,
                "body_fetched_at": None,
                "body_expires_at": None,
            }},
        )
        return result.modified_count

    async def _still_referenced(self, storage_path: str, row_id, now: datetime) -> bool:
        other = await self.attachments.find_one({
            "_id": {"$ne": row_id},
            "storage_path": storage_path,
            "expires_at": {"$gte": now},
        })
        return other is not None

    async def _clear_attachments(self, now: datetime):
        cleared = 0
        deleted = 0
        cursor = self.attachments.find({"expires_at": {"$lt": now}, "storage_path": {"$ne": None}})
        expired = [row async for row in cursor]

        for row in expired:
            storage_path = row["storage_path"]
            if not await self._still_referenced(storage_path, row["_id"], now):
                path = Path(storage_path)
                try:
                    if path.exists():
                        path.unlink()
                        deleted += 1
                    parent = path.parent
                    if parent.exists() and not any(parent.iterdir()):
                        parent.rmdir()
                except OSError as e:
                    logger.warning(f"Failed to delete attachment file {storage_path}: {e}")
                    continue

            await self.attachments.update_one({"_id": row["_id"]}, {"$set": {"storage_path": None}})
            cleared += 1

        return cleared, deleted
