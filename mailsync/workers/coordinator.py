"""
Account Sync Coordinator

Keeps a registry of per-account sync jobs and drives the folder
synchronizer for each of them. Quick cycles run accounts in small
parallel batches; deep cycles run them one at a time and queue body
prefetch work on the background task pool.

An account is never synced twice at once: a request for an account that
is already syncing is skipped, not queued.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from mailsync.core.config import settings
from mailsync.core.database import SYNC_LOG_COLLECTION
from mailsync.core.errors import AccountNotFoundError, AuthenticationError, MailSyncError
from mailsync.imap.client import ImapSession
from mailsync.imap.folders import sync_folders_for
from mailsync.models.schemas import (
    Account,
    AccountStatus,
    AccountSyncResult,
    FolderSyncResult,
    SyncType,
)
from mailsync.services.accounts import AccountStore, OAuthTokenStore
from mailsync.services.auth_resolver import AuthResolver
from mailsync.services.body_cache import BodyCache
from mailsync.services.checkpoints import CheckpointStore
from mailsync.services.folder_sync import FolderSynchronizer, SessionFactory
from mailsync.workers.task_pool import TaskHandle, TaskPool

logger = logging.getLogger(__name__)


@dataclass
class AccountSyncJob:
    """Registry entry for one account."""
    account: Account
    status: AccountStatus = AccountStatus.IDLE
    last_sync: Optional[datetime] = None
    error_message: Optional[str] = None
    auth_failed: bool = False

    def to_status(self) -> Dict[str, Any]:
        return {
            "account_id": self.account.id,
            "user_id": self.account.user_id,
            "email": self.account.email,
            "status": self.status.value,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "error_message": self.error_message,
            "auth_failed": self.auth_failed,
        }


class AccountSyncCoordinator:
    """Schedules and isolates per-account syncs."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        accounts: Optional[AccountStore] = None,
        auth_resolver: Optional[AuthResolver] = None,
        synchronizer: Optional[FolderSynchronizer] = None,
        body_cache: Optional[BodyCache] = None,
        task_pool: Optional[TaskPool] = None,
        checkpoints: Optional[CheckpointStore] = None,
        session_factory: SessionFactory = ImapSession.for_account,
    ):
        self.accounts = accounts or AccountStore(db)
        self.auth_resolver = auth_resolver or AuthResolver(OAuthTokenStore(db))
        self.checkpoints = checkpoints or CheckpointStore(db)
        self.synchronizer = synchronizer or FolderSynchronizer(
            db, self.auth_resolver, session_factory=session_factory, checkpoints=self.checkpoints
        )
        self.body_cache = body_cache or BodyCache(
            db, self.accounts, self.auth_resolver, session_factory=session_factory
        )
        self.task_pool = task_pool or TaskPool()
        self.sync_log = db[SYNC_LOG_COLLECTION]

        self._jobs: Dict[str, AccountSyncJob] = {}
        self.is_running = False
        self.last_sync: Optional[datetime] = None

    # ============== Lifecycle ==============

    async def start(self):
        if self.is_running:
            logger.info("Sync coordinator already running")
            return
        await self.checkpoints.reset_stale_flags()
        self.task_pool.start()
        await self.refresh_accounts()
        self.is_running = True
        logger.info("Sync coordinator started")

    async def stop(self):
        self.is_running = False
        await self.task_pool.stop()
        logger.info("Sync coordinator stopped")

    async def refresh_accounts(self) -> int:
        """
        Reload active accounts into the registry.

        Existing entries keep their state. An account flagged after an
        authentication failure is cleared once its record has been updated.
        Accounts no longer active are dropped unless a sync is running.
        """
        active = await self.accounts.list_active()
        active_ids = set()

        for account in active:
            active_ids.add(account.id)
            job = self._jobs.get(account.id)
            if job is None:
                self._jobs[account.id] = AccountSyncJob(account=account)
                continue
            if job.auth_failed and account.updated_at != job.account.updated_at:
                logger.info(f"Account {account.id} was updated, retrying after auth failure")
                job.auth_failed = False
                job.status = AccountStatus.IDLE
                job.error_message = None
            job.account = account

        for account_id in list(self._jobs):
            if account_id not in active_ids and self._jobs[account_id].status != AccountStatus.SYNCING:
                del self._jobs[account_id]

        logger.info(f"Loaded {len(active_ids)} email accounts for syncing")
        return len(active_ids)

    def _eligible_jobs(self) -> List[AccountSyncJob]:
        return [
            job for job in self._jobs.values()
            if job.status != AccountStatus.SYNCING and not job.auth_failed
        ]

    # ============== Cycles ==============

    async def sync_all_accounts(self, limit: Optional[int] = None) -> List[AccountSyncResult]:
        """Quick cycle: small parallel batches, recently synced folders skipped."""
        limit = limit or settings.quick_sync_limit
        await self.refresh_accounts()
        jobs = self._eligible_jobs()
        batch_size = max(1, settings.quick_sync_parallelism)
        results: List[AccountSyncResult] = []

        for start in range(0, len(jobs), batch_size):
            batch = jobs[start:start + batch_size]
            outcomes = await asyncio.gather(
                *[
                    self.sync_account(job.account.id, limit, SyncType.QUICK, skip_recent=True)
                    for job in batch
                ],
                return_exceptions=True,
            )
            for job, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Quick sync of account {job.account.id} failed: {outcome}")
                elif outcome is not None:
                    results.append(outcome)

        self.last_sync = datetime.utcnow()
        return results

    async def deep_sync_all_accounts(self, limit: Optional[int] = None) -> List[AccountSyncResult]:
        """
        Deep cycle: accounts one at a time, each followed by its body prefetch.

        The prefetch of one account finishes before the next account starts,
        so at most one session per cycle is open at any time.
        """
        limit = limit or settings.deep_sync_limit
        await self.refresh_accounts()
        results: List[AccountSyncResult] = []

        for job in self._eligible_jobs():
            try:
                result = await self.sync_account(job.account.id, limit, SyncType.DEEP)
            except Exception as e:
                logger.error(f"Deep sync of account {job.account.id} failed: {e}", exc_info=True)
                continue
            if result is None:
                continue
            results.append(result)
            await self._run_prefetch(result)

        self.last_sync = datetime.utcnow()
        return results

    async def _prefetch_account(self, result: AccountSyncResult) -> int:
        """Warm bodies folder by folder for one synced account."""
        warmed = 0
        for folder_result in result.folders:
            if folder_result.error or folder_result.skipped or not folder_result.mailbox:
                continue
            warmed += await self.body_cache.prefetch(result.account_id, folder_result.folder)
        return warmed

    async def _run_prefetch(self, result: AccountSyncResult) -> Optional[TaskHandle]:
        if not self.task_pool.is_running:
            try:
                await self._prefetch_account(result)
            except Exception as e:
                logger.error(f"Prefetch for account {result.account_id} failed: {e}", exc_info=True)
            return None

        handle = self.task_pool.submit(
            f"prefetch:{result.account_id}",
            functools.partial(self._prefetch_account, result),
        )
        await handle.wait()
        return handle

    # ============== Single account ==============

    async def _recently_synced(self, account_id: str, folder: str) -> bool:
        checkpoint = await self.checkpoints.get(account_id, folder)
        if checkpoint is None or checkpoint.last_sync_at is None:
            return False
        cutoff = datetime.utcnow() - timedelta(seconds=settings.recent_sync_skip_seconds)
        return checkpoint.last_sync_at > cutoff

    async def _job_for(self, account_id: str) -> AccountSyncJob:
        job = self._jobs.get(account_id)
        if job is None:
            account = await self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            # Another caller may have registered the account while we awaited.
            job = self._jobs.setdefault(account_id, AccountSyncJob(account=account))
        return job

    async def sync_account(
        self,
        account_id: str,
        limit: Optional[int] = None,
        sync_type: SyncType = SyncType.MANUAL,
        skip_recent: bool = False,
    ) -> Optional[AccountSyncResult]:
        """
        Sync every logical folder of one account, one folder at a time.

        Returns None when the account is already syncing. A folder failure
        is recorded and the next folder is attempted; an authentication
        failure stops the account and flags it.

        Raises:
            AccountNotFoundError: Unknown account id
        """
        job = await self._job_for(account_id)
        if job.status == AccountStatus.SYNCING:
            logger.info(f"Account {account_id} is already syncing, skipping")
            return None

        job.status = AccountStatus.SYNCING
        limit = limit or settings.quick_sync_limit
        account = job.account
        result = AccountSyncResult(account_id=account_id, sync_type=sync_type)
        folder = None

        try:
            for folder in sync_folders_for(account.provider):
                if skip_recent and await self._recently_synced(account_id, folder):
                    logger.debug(f"Skipping {folder} for account {account_id}, synced recently")
                    result.folders.append(FolderSyncResult(folder=folder, skipped=True))
                    continue
                try:
                    result.folders.append(await self.synchronizer.sync(account, folder, limit))
                except AuthenticationError:
                    raise
                except MailSyncError as e:
                    result.folders.append(FolderSyncResult(folder=folder, error=str(e)))
                except Exception as e:
                    logger.error(f"Unexpected failure syncing {folder} for account {account_id}: {e}", exc_info=True)
                    result.folders.append(FolderSyncResult(folder=folder, error=str(e) or type(e).__name__))

            job.auth_failed = False
            job.last_sync = datetime.utcnow()
            job.error_message = "; ".join(result.errors) or None
            job.status = AccountStatus.ERROR if result.errors else AccountStatus.IDLE

        except AuthenticationError as e:
            logger.error(f"Authentication failed for account {account_id}: {e}")
            result.folders.append(FolderSyncResult(folder=folder or "", error=str(e)))
            job.auth_failed = True
            job.error_message = str(e)
            job.status = AccountStatus.ERROR

        finally:
            if job.status == AccountStatus.SYNCING:
                job.status = AccountStatus.ERROR
            result.finished_at = datetime.utcnow()

        await self._log_sync(result)
        logger.info(
            f"{sync_type.value.capitalize()} sync of account {account_id} finished: "
            f"{result.total_synced} new, {len(result.errors)} errors"
        )
        return result

    async def _log_sync(self, result: AccountSyncResult):
        await self.sync_log.insert_one(result.to_log_document())

    # ============== On-demand entry points ==============

    async def sync_user_accounts(self, user_id: str) -> List[AccountSyncResult]:
        """Sync a user's active accounts, e.g. right after login."""
        results = []
        for account in await self.accounts.list_for_user(user_id):
            job = self._jobs.get(account.id)
            if job is None:
                self._jobs[account.id] = AccountSyncJob(account=account)
            elif job.status != AccountStatus.SYNCING:
                job.account = account
            try:
                result = await self.sync_account(account.id, settings.user_sync_limit, SyncType.MANUAL)
            except MailSyncError as e:
                logger.error(f"Sync of account {account.id} for user {user_id} failed: {e}")
                continue
            if result is not None:
                results.append(result)
        return results

    def trigger_sync(self) -> TaskHandle:
        """Queue a full quick cycle on the task pool."""
        logger.info("Manual sync triggered")
        return self.task_pool.submit("manual-sync", self.sync_all_accounts)

    async def fetch_email_body(self, email_id: str):
        return await self.body_cache.fetch_body(email_id)

    def get_sync_status(self) -> Dict[str, Any]:
        """Snapshot of the registry for monitoring."""
        accounts = [job.to_status() for job in self._jobs.values()]
        syncing = sum(1 for job in self._jobs.values() if job.status == AccountStatus.SYNCING)
        return {
            "is_running": self.is_running,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "queue_size": self.task_pool.stats()["queued"] + syncing,
            "total_accounts": len(accounts),
            "syncing": syncing,
            "errors": sum(1 for job in self._jobs.values() if job.status == AccountStatus.ERROR),
            "accounts": accounts,
        }
