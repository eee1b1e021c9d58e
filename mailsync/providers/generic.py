"""Standard authorization-code + PKCE flow for providers without quirks."""

from typing import Any, Dict

from mailsync.providers.base import ProviderAuthAdapter, UserInfo
from mailsync.providers.registry import GENERIC_PROVIDER, register_adapter


@register_adapter(GENERIC_PROVIDER)
class GenericAuthAdapter(ProviderAuthAdapter):
    """Default adapter used when a provider registers none of its own."""

    def parse_user_info(self, data: Dict[str, Any]) -> UserInfo:
        return UserInfo(
            id=data.get("id") or data.get("sub") or data.get("user_id"),
            email=data.get("email") or data.get("mail") or data.get("email_address"),
            name=data.get("name") or data.get("display_name") or data.get("displayName"),
            picture=data.get("picture") or data.get("avatar") or data.get("profile_image"),
        )
