"""
Folder Checkpoint Store

One row per (account, folder): the highest UID already cached, when the
folder was last synced, whether a sync is running and the last error.
"""

import logging
from datetime import datetime
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from mailsync.core.database import CHECKPOINTS_COLLECTION
from mailsync.models.schemas import FolderCheckpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Persistence for FolderCheckpoint rows."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db[CHECKPOINTS_COLLECTION]

    @staticmethod
    def _key(account_id: str, folder: str) -> dict:
        return {"account_id": account_id, "folder": folder}

    async def get(self, account_id: str, folder: str) -> Optional[FolderCheckpoint]:
        doc = await self.collection.find_one(self._key(account_id, folder))
        return FolderCheckpoint.from_document(doc) if doc else None

    async def list_for_account(self, account_id: str) -> List[FolderCheckpoint]:
        cursor = self.collection.find({"account_id": account_id})
        return [FolderCheckpoint.from_document(doc) async for doc in cursor]

    async def mark_started(self, account_id: str, folder: str) -> None:
        await self.collection.update_one(
            self._key(account_id, folder),
            {
                "$set": {"sync_in_progress": True, "sync_started_at": datetime.utcnow()},
                "$setOnInsert": {"last_uid_synced": 0},
            },
            upsert=True,
        )

    async def mark_finished(self, account_id: str, folder: str) -> None:
        await self.collection.update_one(
            self._key(account_id, folder),
            {"$set": {"sync_in_progress": False}},
        )

    async def advance(
        self,
        account_id: str,
        folder: str,
        mailbox: str,
        max_uid: int,
        uid_validity: Optional[int] = None,
    ) -> None:
        """Record a successful sync. The stored UID never decreases."""
        update: dict = {
            "$set": {
                "mailbox": mailbox,
                "last_sync_at": datetime.utcnow(),
                "error_message": None,
                "error_at": None,
            },
            "$max": {"last_uid_synced": max_uid},
        }
        if uid_validity is not None:
            update["$set"]["uid_validity"] = uid_validity
        await self.collection.update_one(self._key(account_id, folder), update, upsert=True)

    async def record_error(self, account_id: str, folder: str, message: str) -> None:
        await self.collection.update_one(
            self._key(account_id, folder),
            {"$set": {"error_message": message, "error_at": datetime.utcnow()}},
            upsert=True,
        )

    async def reset_stale_flags(self) -> int:
        """Clear in-progress flags left behind by a process that died mid-sync."""
        result = await self.collection.update_many(
            {"sync_in_progress": True},
            {"$set": {"sync_in_progress": False}},
        )
        if result.modified_count:
            logger.warning(f"Cleared {result.modified_count} stale sync_in_progress flags")
        return result.modified_count
