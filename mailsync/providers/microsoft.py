"""Microsoft identity platform adapter (Outlook / Office 365)."""

from typing import Any, Dict, Optional

from mailsync.providers.base import ProviderAuthAdapter, UserInfo
from mailsync.providers.registry import register_adapter

# Refreshes must name the mail scopes again or the new token lacks them.
MAIL_REFRESH_SCOPE = (
    "https://outlook.office.com/IMAP.AccessAsUser.All "
    "https://outlook.office.com/SMTP.Send offline_access"
)


@register_adapter("microsoft")
class MicrosoftAuthAdapter(ProviderAuthAdapter):

    def authorization_params(self, state: str, pkce_challenge: Optional[str]) -> Dict[str, str]:
        params = super().authorization_params(state, pkce_challenge)
        params["response_mode"] = "query"
        params["prompt"] = "consent"
        return params

    def refresh_params(self, refresh_token: str) -> Dict[str, str]:
        data = super().refresh_params(refresh_token)
        data["scope"] = MAIL_REFRESH_SCOPE
        return data

    def userinfo_headers(self, access_token: str) -> Dict[str, str]:
        headers = super().userinfo_headers(access_token)
        headers["Accept"] = "application/json"
        return headers

    def parse_user_info(self, data: Dict[str, Any]) -> UserInfo:
        return UserInfo(
            id=data.get("id"),
            email=data.get("mail") or data.get("userPrincipalName") or data.get("email"),
            name=data.get("displayName") or data.get("name"),
            picture=data.get("photo"),
        )
