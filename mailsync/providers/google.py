"""Google OAuth adapter."""

from typing import Any, Dict, Optional

from mailsync.providers.base import ProviderAuthAdapter, UserInfo
from mailsync.providers.registry import register_adapter


@register_adapter("google")
class GoogleAuthAdapter(ProviderAuthAdapter):
    """Google only issues a refresh token for offline access with forced consent."""

    def authorization_params(self, state: str, pkce_challenge: Optional[str]) -> Dict[str, str]:
        params = super().authorization_params(state, pkce_challenge)
        params["access_type"] = "offline"
        params["prompt"] = "consent"
        return params

    def parse_user_info(self, data: Dict[str, Any]) -> UserInfo:
        return UserInfo(
            id=data.get("id") or data.get("sub"),
            email=data.get("email"),
            name=data.get("name"),
            picture=data.get("picture"),
        )
