"""
Logical folder roles and their provider-specific names.

A role like SENT is not a mailbox name; each provider spells it
differently. The alias table lists candidates in probe order, the first
one the server answers a STATUS for wins.
"""

from enum import Enum
from typing import Dict, List, Optional


class FolderRole(str, Enum):
    """Logical mailbox roles."""
    INBOX = "INBOX"
    SENT = "SENT"
    DRAFTS = "DRAFTS"
    TRASH = "TRASH"
    SPAM = "SPAM"
    ARCHIVE = "ARCHIVE"


class FolderType(str, Enum):
    """Classification of a concrete mailbox name."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    OTHER = "other"


FOLDER_ALIASES: Dict[FolderRole, List[str]] = {
    FolderRole.INBOX: ["INBOX"],
    FolderRole.SENT: ["Sent", "Sent Items", "Sent Mail", "INBOX.Sent", "[Gmail]/Sent Mail"],
    FolderRole.DRAFTS: ["Drafts", "[Gmail]/Drafts", "INBOX.Drafts"],
    FolderRole.TRASH: ["Trash", "Deleted", "Deleted Items", "[Gmail]/Trash", "INBOX.Trash"],
    FolderRole.SPAM: ["Spam", "Junk", "Junk E-mail", "[Gmail]/Spam", "INBOX.Spam"],
    FolderRole.ARCHIVE: ["Archive", "All Mail", "[Gmail]/All Mail", "INBOX.Archive", "Archives"],
}

DEFAULT_SYNC_FOLDERS = ["INBOX", "SENT", "DRAFTS"]

PROVIDER_SYNC_FOLDERS: Dict[str, List[str]] = {
    "google": ["INBOX", "[Gmail]/Sent Mail", "[Gmail]/Drafts"],
}


class FolderAliasTable:
    """Maps logical roles to candidate mailbox names."""

    def __init__(self, aliases: Optional[Dict[FolderRole, List[str]]] = None):
        self._aliases = aliases or FOLDER_ALIASES

    @staticmethod
    def role_for(folder: str) -> Optional[FolderRole]:
        try:
            return FolderRole(folder.upper())
        except ValueError:
            return None

    def candidates(self, folder: str) -> List[str]:
        """Names to probe for `folder`; a concrete name is its own only candidate."""
        role = self.role_for(folder)
        if role is None:
            return [folder]
        return list(self._aliases.get(role, [folder]))


def sync_folders_for(provider: Optional[str]) -> List[str]:
    """Folders a scheduled cycle syncs for an account of this provider."""
    return list(PROVIDER_SYNC_FOLDERS.get(provider or "", DEFAULT_SYNC_FOLDERS))


def classify_folder(name: str, role: Optional[FolderRole] = None) -> FolderType:
    """Guess a folder's type from its role or its name."""
    if role is not None:
        return FolderType(role.value.lower())

    lower = name.lower()
    if lower == "inbox":
        return FolderType.INBOX
    if "sent" in lower:
        return FolderType.SENT
    if "draft" in lower:
        return FolderType.DRAFTS
    if "trash" in lower or "deleted" in lower or lower.rsplit("/", 1)[-1] == "bin":
        return FolderType.TRASH
    if "spam" in lower or "junk" in lower:
        return FolderType.SPAM
    if "archive" in lower or "all mail" in lower:
        return FolderType.ARCHIVE
    return FolderType.OTHER
