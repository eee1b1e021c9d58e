"""Yahoo OAuth adapter. Yahoo does not accept PKCE parameters."""

from typing import Any, Dict, Optional

from mailsync.providers.base import ProviderAuthAdapter, UserInfo
from mailsync.providers.registry import register_adapter

MAIL_REFRESH_SCOPE = "openid profile email mail-r mail-w"


@register_adapter("yahoo")
class YahooAuthAdapter(ProviderAuthAdapter):

    @property
    def uses_pkce(self) -> bool:
        return False

    def authorization_params(self, state: str, pkce_challenge: Optional[str]) -> Dict[str, str]:
        params = super().authorization_params(state, None)
        params["language"] = "en-us"
        return params

    def refresh_params(self, refresh_token: str) -> Dict[str, str]:
        data = super().refresh_params(refresh_token)
        data["scope"] = MAIL_REFRESH_SCOPE
        return data

    def parse_user_info(self, data: Dict[str, Any]) -> UserInfo:
        return UserInfo(
            id=data.get("sub") or data.get("user_id"),
            email=data.get("email"),
            name=data.get("name") or data.get("given_name"),
            picture=data.get("picture"),
        )
