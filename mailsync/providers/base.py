"""
OAuth Provider Adapter Interface

Each mail provider's OAuth flavour (authorization URL parameters, token
exchange, refresh quirks, user-info mapping) lives behind one adapter
class. Endpoints, scopes and server settings come from the provider
capability table, not from code.
"""

import base64
import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from mailsync.core.errors import AuthenticationError, ProviderError, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600


# ============== Capability table records ==============

@dataclass
class ServerSettings:
    """IMAP or SMTP endpoint of a provider."""
    host: str
    port: int
    security: str = "ssl"
    auth_method: str = "login"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ServerSettings"]:
        if not data:
            return None
        return cls(
            host=data["host"],
            port=int(data["port"]),
            security=data.get("security", "ssl"),
            auth_method=data.get("auth_method", "login"),
        )


@dataclass
class ProviderFeatures:
    """What a provider supports."""
    oauth: bool = False
    imap: bool = True
    smtp: bool = True
    token_refresh: bool = False
    pkce: bool = True


@dataclass
class ProviderConfig:
    """One row of the provider capability table plus client credentials."""
    id: str
    name: str
    features: ProviderFeatures = field(default_factory=ProviderFeatures)
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    scope: str = ""
    imap: Optional[ServerSettings] = None
    smtp: Optional[ServerSettings] = None
    domains: List[str] = field(default_factory=list)
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""

    @classmethod
    def from_dict(cls, provider_id: str, data: dict) -> "ProviderConfig":
        oauth = data.get("oauth") or {}
        return cls(
            id=provider_id,
            name=data.get("name", provider_id),
            features=ProviderFeatures(**(data.get("features") or {})),
            authorization_url=oauth.get("authorization_url"),
            token_url=oauth.get("token_url"),
            userinfo_url=oauth.get("userinfo_url"),
            scope=oauth.get("scope", ""),
            imap=ServerSettings.from_dict(data.get("imap")),
            smtp=ServerSettings.from_dict(data.get("smtp")),
            domains=list(data.get("domains") or []),
        )


# ============== Token and identity records ==============

@dataclass
class OAuthTokens:
    """Tokens returned by a token endpoint."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = DEFAULT_TOKEN_LIFETIME
    token_type: str = "Bearer"
    scope: Optional[str] = None
    id_token: Optional[str] = None
    issued_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    @classmethod
    def from_response(cls, data: dict) -> "OAuthTokens":
        if not data.get("access_token"):
            raise ProviderError("Token response did not include an access token")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
            id_token=data.get("id_token"),
        )


@dataclass
class UserInfo:
    """Identity of the account behind an access token."""
    id: Optional[str]
    email: Optional[str]
    name: Optional[str] = None
    picture: Optional[str] = None


# ============== PKCE ==============

def generate_state() -> str:
    return secrets.token_urlsafe(32)


def pkce_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair() -> tuple:
    """Return (verifier, challenge)."""
    verifier = secrets.token_urlsafe(64)[:128]
    return verifier, pkce_challenge(verifier)


# ============== Adapter ==============

class ProviderAuthAdapter(ABC):
    """
    OAuth flow for one provider.

    Subclasses override the parameter hooks to express provider quirks
    and implement parse_user_info for the provider's identity payload.
    """

    def __init__(
        self,
        config: ProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.config = config
        self._transport = transport
        self._timeout = timeout

    @property
    def provider_id(self) -> str:
        return self.config.id

    @property
    def uses_pkce(self) -> bool:
        return self.config.features.pkce

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    # --- parameter hooks ---

    def authorization_params(self, state: str, pkce_challenge: Optional[str]) -> Dict[str, str]:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": self.config.scope,
            "state": state,
        }
        if self.uses_pkce and pkce_challenge:
            params["code_challenge"] = pkce_challenge
            params["code_challenge_method"] = "S256"
        return params

    def exchange_params(self, code: str, pkce_verifier: Optional[str]) -> Dict[str, str]:
        data = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "grant_type": "authorization_code",
        }
        if self.uses_pkce and pkce_verifier:
            data["code_verifier"] = pkce_verifier
        return data

    def refresh_params(self, refresh_token: str) -> Dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    def userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @abstractmethod
    def parse_user_info(self, data: Dict[str, Any]) -> UserInfo:
        """Map the provider's user-info payload."""
        pass

    # --- flow ---

    def build_authorization_url(self, state: str, pkce_challenge: Optional[str] = None) -> str:
        if not self.config.authorization_url:
            raise ProviderError(f"Provider {self.provider_id} does not support OAuth")
        return f"{self.config.authorization_url}?{urlencode(self.authorization_params(state, pkce_challenge))}"

    async def exchange_code(self, code: str, pkce_verifier: Optional[str] = None) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        tokens = await self._post_token(self.exchange_params(code, pkce_verifier))
        logger.info(f"Exchanged authorization code with {self.provider_id}")
        return tokens

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token. Keeps the old refresh token if none is returned."""
        tokens = await self._post_token(self.refresh_params(refresh_token))
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        logger.info(f"Refreshed access token with {self.provider_id}")
        return tokens

    async def get_user_info(self, access_token: str) -> UserInfo:
        if not self.config.userinfo_url:
            return UserInfo(id=None, email=None)
        try:
            async with self._http_client() as client:
                response = await client.get(self.config.userinfo_url, headers=self.userinfo_headers(access_token))
        except httpx.TransportError as e:
            raise TransientNetworkError(f"User info request to {self.provider_id} failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(
                f"Failed to get user info from {self.provider_id}: {self._error_detail(response)}",
                status_code=response.status_code,
            )
        return self.parse_user_info(response.json())

    async def _post_token(self, data: Dict[str, str]) -> OAuthTokens:
        if not self.config.token_url:
            raise ProviderError(f"Provider {self.provider_id} has no token endpoint")
        try:
            async with self._http_client() as client:
                response = await client.post(
                    self.config.token_url,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Token request to {self.provider_id} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Token endpoint of {self.provider_id} returned {response.status_code}"
            )
        if response.status_code != 200:
            detail = self._error_detail(response)
            if response.status_code in (400, 401) and self._is_grant_rejection(response):
                raise AuthenticationError(f"{self.provider_id} rejected the grant: {detail}")
            raise ProviderError(
                f"Token request to {self.provider_id} failed: {detail}",
                status_code=response.status_code,
            )
        return OAuthTokens.from_response(response.json())

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        if not response.headers.get("content-type", "").startswith("application/json"):
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _error_detail(self, response: httpx.Response) -> str:
        error_data = self._json_body(response)
        return (
            error_data.get("error_description")
            or error_data.get("error")
            or error_data.get("message")
            or f"status {response.status_code}"
        )

    def _is_grant_rejection(self, response: httpx.Response) -> bool:
        return self._json_body(response).get("error") in ("invalid_grant", "unauthorized_client")
