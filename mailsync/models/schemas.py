"""
Sync engine data models.

Dataclasses for the records the engine reads and writes in MongoDB, and
pydantic models for the search surface.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============== Enums ==============

class AuthType(str, Enum):
    """How an account authenticates against its IMAP server."""
    PASSWORD = "password"
    OAUTH = "oauth"


class AccountStatus(str, Enum):
    """Per-account state held by the coordinator registry."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncType(str, Enum):
    """Cycle that produced a sync-audit row."""
    QUICK = "quick"
    DEEP = "deep"
    MANUAL = "manual"


# ============== Consumed records ==============

@dataclass
class Account:
    """
    Mail account record, owned by the account-management service.

    Read-only here. The password stays encrypted until the auth resolver
    needs it.
    """
    id: str
    email: str
    imap_host: str
    imap_port: int = 993
    imap_security: Optional[str] = None
    username: Optional[str] = None
    user_id: Optional[str] = None
    auth_type: AuthType = AuthType.PASSWORD
    password_encrypted: Optional[str] = None
    oauth_account_id: Optional[str] = None
    provider: Optional[str] = None
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @property
    def login(self) -> str:
        return self.username or self.email

    @property
    def is_oauth(self) -> bool:
        return self.auth_type == AuthType.OAUTH

    @property
    def use_implicit_tls(self) -> bool:
        if self.imap_security:
            return self.imap_security.lower() in ("ssl", "tls")
        return self.imap_port == 993

    @classmethod
    def from_document(cls, doc: dict) -> "Account":
        auth_type = doc.get("auth_type") or (
            AuthType.OAUTH.value if doc.get("oauth_account_id") else AuthType.PASSWORD.value
        )
        oauth_account_id = doc.get("oauth_account_id")
        return cls(
            id=str(doc["_id"]),
            email=doc.get("email", ""),
            imap_host=doc.get("imap_host", ""),
            imap_port=int(doc.get("imap_port") or 993),
            imap_security=doc.get("imap_security"),
            username=doc.get("username"),
            user_id=str(doc["user_id"]) if doc.get("user_id") is not None else None,
            auth_type=AuthType(auth_type.lower()),
            password_encrypted=doc.get("password_encrypted"),
            oauth_account_id=str(oauth_account_id) if oauth_account_id else None,
            provider=doc.get("provider"),
            is_active=doc.get("is_active", True),
            updated_at=doc.get("updated_at"),
        )


@dataclass
class OAuthToken:
    """Decrypted OAuth token record for one linked provider account."""
    id: str
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    email: Optional[str] = None
    user_id: Optional[str] = None

    def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        """True when the token is expired or expires within `seconds`."""
        if self.expires_at is None:
            return False
        now = now or datetime.utcnow()
        return now + timedelta(seconds=seconds) >= self.expires_at


# ============== Sync state ==============

@dataclass
class FolderCheckpoint:
    """Incremental sync position for one (account, folder)."""
    account_id: str
    folder: str
    mailbox: Optional[str] = None
    last_uid_synced: int = 0
    last_sync_at: Optional[datetime] = None
    sync_in_progress: bool = False
    uid_validity: Optional[int] = None
    error_message: Optional[str] = None
    error_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> "FolderCheckpoint":
        return cls(
            account_id=doc["account_id"],
            folder=doc["folder"],
            mailbox=doc.get("mailbox"),
            last_uid_synced=doc.get("last_uid_synced", 0),
            last_sync_at=doc.get("last_sync_at"),
            sync_in_progress=doc.get("sync_in_progress", False),
            uid_validity=doc.get("uid_validity"),
            error_message=doc.get("error_message"),
            error_at=doc.get("error_at"),
        )


@dataclass
class FolderSyncResult:
    """Outcome of one folder sync."""
    folder: str
    synced: int = 0
    total: int = 0
    mailbox: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folder": self.folder,
            "mailbox": self.mailbox,
            "synced": self.synced,
            "total": self.total,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class AccountSyncResult:
    """Aggregated outcome of one account sync."""
    account_id: str
    sync_type: SyncType
    folders: List[FolderSyncResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def total_synced(self) -> int:
        return sum(r.synced for r in self.folders)

    @property
    def errors(self) -> List[str]:
        return [f"{r.folder}: {r.error}" for r in self.folders if r.error]

    def to_log_document(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "sync_type": self.sync_type.value,
            "results": [r.to_dict() for r in self.folders],
            "total_synced": self.total_synced,
            "errors": self.errors,
            "started_at": self.started_at,
            "synced_at": self.finished_at or datetime.utcnow(),
        }


@dataclass
class BodyContent:
    """Decoded body of a cached email."""
    text: str = ""
    html: str = ""
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    from_cache: bool = False


# ============== Search Models ==============

class SearchFilters(BaseModel):
    """Structured search request. All set filters are ANDed."""
    query: str = Field(default="", description="Free-text query")
    user_id: Optional[str] = Field(None, description="Restrict to this user's accounts")
    account_id: Optional[str] = None
    folder: Optional[str] = None
    from_address: Optional[str] = Field(None, description="Substring of the sender")
    to_address: Optional[str] = Field(None, description="Substring of any recipient")
    subject: Optional[str] = Field(None, description="Substring of the subject")
    has_attachments: Optional[bool] = None
    is_unread: Optional[bool] = None
    is_starred: Optional[bool] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class FacetBucket(BaseModel):
    """One facet value and its count."""
    value: str
    count: int


class SearchFacets(BaseModel):
    """Facet breakdowns over the full matching set."""
    folders: List[FacetBucket] = Field(default_factory=list)
    accounts: List[FacetBucket] = Field(default_factory=list)
    dates: List[FacetBucket] = Field(default_factory=list)


class SearchResponse(BaseModel):
    """Ranked page of results plus facets."""
    results: List[Dict[str, Any]]
    total: int
    facets: SearchFacets
