"""
Sync Engine Test Configuration.

In-memory MongoDB through mongomock-motor, a fixed credential vault and
a fake IMAP server.
"""

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from mailsync.core.credential_vault import CredentialVault
from mailsync.core.database import DatabaseManager
from mailsync.tests.fakes import FakeImapServer


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(master_key="test-master-key", salt="test-salt")


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database with the engine's indexes."""
    manager = DatabaseManager(client=AsyncMongoMockClient())
    await manager.connect("mailsync_test")
    await manager.ensure_indexes()
    return manager.db


@pytest.fixture
def imap_server() -> FakeImapServer:
    server = FakeImapServer()
    server.add_mailbox("INBOX")
    return server
