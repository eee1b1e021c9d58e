"""
Error taxonomy for the sync engine.

Network, protocol and provider failures are translated into these
exceptions at the IMAP session and OAuth adapter boundaries, so the
synchronizers and coordinator only ever reason about this hierarchy.
"""

from typing import Optional


class MailSyncError(Exception):
    """Base exception for mail sync operations."""
    pass


class TransientNetworkError(MailSyncError):
    """Connect, read or deadline failure. Retried by the next scheduled cycle."""
    pass


class AuthenticationError(MailSyncError):
    """Server or provider rejected the credentials."""
    pass


class TokenUnavailableError(AuthenticationError):
    """No usable OAuth token (missing record or no refresh token)."""
    pass


class FolderNotFoundError(MailSyncError):
    """Mailbox does not exist on the server."""

    def __init__(self, folder: str):
        super().__init__(f"Folder not found: {folder}")
        self.folder = folder


class PartialItemError(MailSyncError):
    """A single message could not be parsed."""

    def __init__(self, message: str, uid: Optional[int] = None):
        super().__init__(message)
        self.uid = uid


class CacheCorruptionError(MailSyncError):
    """A cached body could not be decompressed or decoded."""
    pass


class EmailNotFoundError(MailSyncError):
    """No cached header exists for the requested email id."""
    pass


class AccountNotFoundError(MailSyncError):
    """Account record is missing or inactive."""
    pass


class ProviderError(MailSyncError):
    """OAuth provider endpoint returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
