"""Unit tests for ImapSession connection handling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mailsync.core.errors import TransientNetworkError
from mailsync.imap.client import ImapSession


class TestOpen:
    """Tests for ImapSession.open failure paths."""

    @pytest.mark.asyncio
    async def test_greeting_timeout_closes_transport(self):
        client = MagicMock()
        client.wait_hello_from_server = AsyncMock(side_effect=asyncio.TimeoutError())

        with patch("mailsync.imap.client.aioimaplib.IMAP4", return_value=client):
            session = ImapSession("imap.example.com", 143, use_ssl=False)
            with pytest.raises(TransientNetworkError):
                await session.open(MagicMock(is_oauth=False))

        client.protocol.transport.close.assert_called_once()
        assert session._client is None
        assert not session.connected

    @pytest.mark.asyncio
    async def test_greeting_failure_without_transport(self):
        client = MagicMock()
        client.protocol = None
        client.wait_hello_from_server = AsyncMock(side_effect=ConnectionRefusedError())

        with patch("mailsync.imap.client.aioimaplib.IMAP4", return_value=client):
            session = ImapSession("imap.example.com", 143, use_ssl=False)
            with pytest.raises(TransientNetworkError):
                await session.open(MagicMock(is_oauth=False))

        assert session._client is None
