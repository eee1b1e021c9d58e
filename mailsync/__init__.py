"""
Mailsync - background email synchronization and caching engine.

Pulls headers from IMAP servers on a schedule, caches bodies and
attachments on demand, refreshes OAuth tokens and serves search over
the local cache.
"""

__version__ = "0.1.0"
