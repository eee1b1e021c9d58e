"""
Account and OAuth Token Stores

Account records belong to the account-management service; this engine
only reads them. OAuth token records are read here and rewritten only
by the auth resolver after a refresh. Token values are encrypted at
rest with the credential vault.
"""

import logging
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from mailsync.core.credential_vault import CredentialVault, DecryptionError, get_vault
from mailsync.core.database import ACCOUNTS_COLLECTION, OAUTH_ACCOUNTS_COLLECTION
from mailsync.core.errors import TokenUnavailableError
from mailsync.models.schemas import Account, OAuthToken

logger = logging.getLogger(__name__)


def id_filter(value: str) -> dict:
    """Match a document by ObjectId when `value` is one, else by raw id."""
    try:
        return {"_id": ObjectId(value)}
    except (InvalidId, TypeError):
        return {"_id": value}


class AccountStore:
    """Read access to mail account records."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db[ACCOUNTS_COLLECTION]

    async def get(self, account_id: str) -> Optional[Account]:
        doc = await self.collection.find_one(id_filter(account_id))
        return Account.from_document(doc) if doc else None

    async def list_active(self) -> List[Account]:
        cursor = self.collection.find({"is_active": {"$ne": False}})
        return [Account.from_document(doc) async for doc in cursor]

    async def list_for_user(self, user_id: str, active_only: bool = True) -> List[Account]:
        query: dict = {"user_id": user_id}
        if active_only:
            query["is_active"] = {"$ne": False}
        cursor = self.collection.find(query)
        return [Account.from_document(doc) async for doc in cursor]


class OAuthTokenStore:
    """Encrypted OAuth token records."""

    def __init__(self, db: AsyncIOMotorDatabase, vault: Optional[CredentialVault] = None):
        self.collection = db[OAUTH_ACCOUNTS_COLLECTION]
        self.vault = vault or get_vault()

    async def get(self, oauth_account_id: str) -> Optional[OAuthToken]:
        doc = await self.collection.find_one(id_filter(oauth_account_id))
        if not doc:
            return None
        try:
            secrets = self.vault.decrypt(doc["encrypted_tokens"]) if doc.get("encrypted_tokens") else {}
        except DecryptionError as e:
            raise TokenUnavailableError(f"Stored tokens for {oauth_account_id} cannot be decrypted: {e}") from e
        if not secrets.get("access_token"):
            return None
        return OAuthToken(
            id=str(doc["_id"]),
            provider=doc.get("provider", ""),
            access_token=secrets["access_token"],
            refresh_token=secrets.get("refresh_token"),
            expires_at=doc.get("expires_at"),
            email=doc.get("email"),
            user_id=doc.get("user_id"),
        )

    async def save_tokens(
        self,
        oauth_account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        await self.collection.update_one(
            id_filter(oauth_account_id),
            {"$set": {
                "encrypted_tokens": self.vault.encrypt({
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                }),
                "expires_at": expires_at,
                "updated_at": datetime.utcnow(),
            }},
        )
        logger.debug(f"Stored refreshed tokens for OAuth account {oauth_account_id}")

    async def create(
        self,
        provider: str,
        email: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        user_id: Optional[str] = None,
    ) -> str:
        """Store tokens from a completed authorization."""
        result = await self.collection.insert_one({
            "provider": provider,
            "email": email,
            "user_id": user_id,
            "encrypted_tokens": self.vault.encrypt({
                "access_token": access_token,
                "refresh_token": refresh_token,
            }),
            "expires_at": expires_at,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        })
        return str(result.inserted_id)
