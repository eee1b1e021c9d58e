"""
Unit tests for the provider capability table and OAuth adapters.

Token endpoints are served by httpx.MockTransport.
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mailsync.core.errors import AuthenticationError, ProviderError, TransientNetworkError
from mailsync.providers import (
    create_adapter,
    detect_provider,
    generate_pkce_pair,
    get_adapter_class,
    get_provider_config,
    list_providers,
)
from mailsync.providers.base import pkce_challenge
from mailsync.providers.generic import GenericAuthAdapter
from mailsync.providers.microsoft import MAIL_REFRESH_SCOPE, MicrosoftAuthAdapter
from mailsync.providers.registry import list_registered_adapters


class RecordingTransport:
    """Serves canned token responses and records request bodies."""

    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {
            "access_token": "new-access",
            "expires_in": 1800,
            "token_type": "Bearer",
        }
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def form(self, index=-1) -> dict:
        body = self.requests[index].content.decode()
        return {k: v[0] for k, v in parse_qs(body).items()}


class TestCapabilityTable:
    """Tests for the YAML provider table."""

    def test_known_providers(self):
        ids = {p.id for p in list_providers()}
        assert {"google", "microsoft", "yahoo", "icloud", "fastmail", "aol"} <= ids

    def test_provider_config(self):
        config = get_provider_config("microsoft")
        assert config.features.oauth
        assert config.imap.host == "outlook.office365.com"
        assert config.smtp.security == "starttls"
        assert config.redirect_uri.endswith("/oauth/microsoft/callback")

    def test_detect_provider(self):
        assert detect_provider("someone@gmail.com") == "google"
        assert detect_provider("outlook.office365.com") == "microsoft"
        assert detect_provider("someone@unknown.example") is None

    def test_adapter_registry(self):
        assert get_adapter_class("microsoft") is MicrosoftAuthAdapter
        assert get_adapter_class("not-registered") is GenericAuthAdapter
        assert {"google", "microsoft", "yahoo"} <= set(list_registered_adapters())

    def test_password_only_provider_has_no_adapter(self):
        with pytest.raises(ProviderError):
            create_adapter("icloud")
        with pytest.raises(ProviderError):
            create_adapter("nope")


class TestAuthorizationUrls:
    """Tests for provider-specific authorization parameters."""

    def query(self, url: str) -> dict:
        return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}

    def test_google(self):
        verifier, challenge = generate_pkce_pair()
        params = self.query(create_adapter("google").build_authorization_url("state-1", challenge))

        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["code_challenge"] == challenge
        assert params["code_challenge_method"] == "S256"
        assert pkce_challenge(verifier) == challenge

    def test_microsoft(self):
        params = self.query(create_adapter("microsoft").build_authorization_url("state-1", "challenge"))
        assert params["response_mode"] == "query"
        assert params["prompt"] == "consent"

    def test_yahoo_omits_pkce(self):
        params = self.query(create_adapter("yahoo").build_authorization_url("state-1", "challenge"))
        assert "code_challenge" not in params
        assert params["language"] == "en-us"

    def test_pkce_challenge_has_no_padding(self):
        _, challenge = generate_pkce_pair()
        assert "=" not in challenge
        assert len(challenge) == 43


class TestTokenRequests:
    """Tests for code exchange and refresh."""

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self):
        recorder = RecordingTransport()
        adapter = create_adapter("google", transport=recorder.transport)

        tokens = await adapter.refresh_token("old-refresh")

        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "old-refresh"
        assert tokens.expires_in == 1800
        assert recorder.form()["grant_type"] == "refresh_token"

    @pytest.mark.asyncio
    async def test_microsoft_refresh_resends_mail_scopes(self):
        recorder = RecordingTransport()
        adapter = create_adapter("microsoft", transport=recorder.transport)

        await adapter.refresh_token("r")

        assert recorder.form()["scope"] == MAIL_REFRESH_SCOPE

    @pytest.mark.asyncio
    async def test_yahoo_exchange_has_no_verifier(self):
        recorder = RecordingTransport(payload={"access_token": "a", "refresh_token": "b"})
        adapter = create_adapter("yahoo", transport=recorder.transport)

        tokens = await adapter.exchange_code("code-1", pkce_verifier="verifier")

        form = recorder.form()
        assert form["code"] == "code-1"
        assert "code_verifier" not in form
        assert tokens.refresh_token == "b"
        assert tokens.expires_in == 3600

    @pytest.mark.asyncio
    async def test_invalid_grant_is_authentication_error(self):
        recorder = RecordingTransport(status_code=400, payload={"error": "invalid_grant"})
        adapter = create_adapter("google", transport=recorder.transport)

        with pytest.raises(AuthenticationError):
            await adapter.refresh_token("revoked")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        recorder = RecordingTransport(status_code=503, payload={"error": "unavailable"})
        adapter = create_adapter("google", transport=recorder.transport)

        with pytest.raises(TransientNetworkError):
            await adapter.refresh_token("r")

    @pytest.mark.asyncio
    async def test_other_rejection_is_provider_error(self):
        recorder = RecordingTransport(status_code=400, payload={"error": "invalid_request"})
        adapter = create_adapter("google", transport=recorder.transport)

        with pytest.raises(ProviderError) as exc_info:
            await adapter.refresh_token("r")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_microsoft_user_info(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer tok"
            assert request.headers["Accept"] == "application/json"
            return httpx.Response(200, content=json.dumps({
                "id": "42",
                "userPrincipalName": "me@contoso.com",
                "displayName": "Me",
            }), headers={"content-type": "application/json"})

        adapter = create_adapter("microsoft", transport=httpx.MockTransport(handler))
        info = await adapter.get_user_info("tok")

        assert info.email == "me@contoso.com"
        assert info.name == "Me"
