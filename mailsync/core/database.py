"""Database connection manager."""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from mailsync.core.config import settings

logger = logging.getLogger(__name__)

# Collection names
ACCOUNTS_COLLECTION = "email_accounts"
OAUTH_ACCOUNTS_COLLECTION = "oauth_accounts"
HEADERS_COLLECTION = "email_headers"
FOLDERS_COLLECTION = "email_folders"
CHECKPOINTS_COLLECTION = "email_sync_checkpoints"
ATTACHMENTS_COLLECTION = "email_attachments"
SYNC_LOG_COLLECTION = "email_sync_log"
SEARCH_HISTORY_COLLECTION = "email_search_history"


class DatabaseManager:
    """Async MongoDB connection manager."""

    def __init__(self, client: Optional[AsyncIOMotorClient] = None):
        self.client = client
        self.db = None
        self._current_database: Optional[str] = None

    async def connect(self, database: Optional[str] = None):
        """Establish database connection."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(settings.mongodb_uri)
                await self.client.admin.command("ping")

            self._current_database = database or settings.mongodb_database
            self.db = self.client[self._current_database]

            logger.info(f"Connected to MongoDB: {self._current_database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    async def ensure_indexes(self):
        """Create the indexes the sync engine relies on."""
        await self.headers_collection.create_index(
            [("account_id", ASCENDING), ("folder", ASCENDING), ("uid", ASCENDING)],
            unique=True,
            name="account_folder_uid",
        )
        await self.headers_collection.create_index(
            [("account_id", ASCENDING), ("date", DESCENDING)],
            name="account_date",
        )
        await self.headers_collection.create_index("body_expires_at", name="body_expiry")
        await self.checkpoints_collection.create_index(
            [("account_id", ASCENDING), ("folder", ASCENDING)],
            unique=True,
            name="account_folder",
        )
        await self.folders_collection.create_index(
            [("account_id", ASCENDING), ("folder_name", ASCENDING)],
            unique=True,
            name="account_folder_name",
        )
        await self.attachments_collection.create_index(
            [("email_id", ASCENDING), ("checksum", ASCENDING), ("filename", ASCENDING)],
            unique=True,
            name="email_checksum_filename",
        )
        await self.attachments_collection.create_index("expires_at", name="attachment_expiry")
        await self.sync_log_collection.create_index(
            [("account_id", ASCENDING), ("synced_at", DESCENDING)],
            name="account_synced_at",
        )
        await self.search_history_collection.create_index(
            [("user_id", ASCENDING), ("searched_at", DESCENDING)],
            name="user_searched_at",
        )
        logger.info("Ensured mail sync indexes")

    @property
    def current_database_name(self) -> str:
        return self._current_database or settings.mongodb_database

    @property
    def accounts_collection(self):
        return self.db[ACCOUNTS_COLLECTION]

    @property
    def oauth_accounts_collection(self):
        return self.db[OAUTH_ACCOUNTS_COLLECTION]

    @property
    def headers_collection(self):
        return self.db[HEADERS_COLLECTION]

    @property
    def folders_collection(self):
        return self.db[FOLDERS_COLLECTION]

    @property
    def checkpoints_collection(self):
        return self.db[CHECKPOINTS_COLLECTION]

    @property
    def attachments_collection(self):
        return self.db[ATTACHMENTS_COLLECTION]

    @property
    def sync_log_collection(self):
        return self.db[SYNC_LOG_COLLECTION]

    @property
    def search_history_collection(self):
        return self.db[SEARCH_HISTORY_COLLECTION]


# Global database manager instance
db_manager = DatabaseManager()
