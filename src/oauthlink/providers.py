"""Per-provider OAuth2 presets.

Provider quirks (endpoints, default scopes, how the client authenticates at
the token endpoint, extra authorization URL parameters) are data here rather
than branches in the flow code. Configuration values always win over a
preset; the ``custom`` type has no defaults and must be fully configured.
"""

from typing import Literal

from pydantic import Field

from .models import LinkBaseModel

ProviderType = Literal["google", "github", "gitlab", "microsoft", "custom"]

AuthStyle = Literal["body", "header"]


class ProviderPreset(LinkBaseModel):
    """Default OAuth2 settings for a known provider."""

    auth_url: str | None = None
    token_url: str | None = None
    scopes: list[str] = Field(default_factory=list)
    auth_style: AuthStyle = "body"
    extra_auth_params: dict[str, str] = Field(default_factory=dict)


PROVIDER_PRESETS: dict[str, ProviderPreset] = {
    "google": ProviderPreset(
        auth_url="https://accounts.google.com/o/oauth2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=[
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ],
    ),
    "github": ProviderPreset(
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scopes=["read:user", "user:email"],
    ),
    "gitlab": ProviderPreset(
        auth_url="https://gitlab.com/oauth/authorize",
        token_url="https://gitlab.com/oauth/token",
        scopes=["read_user"],
    ),
    "microsoft": ProviderPreset(
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        scopes=["openid", "email", "profile", "offline_access"],
        extra_auth_params={"response_mode": "query"},
    ),
    "custom": ProviderPreset(),
}


def get_preset(provider_type: str) -> ProviderPreset:
    """Return the preset for ``provider_type``.

    Raises:
        ValueError: If the provider type is not known
    """
    try:
        return PROVIDER_PRESETS[provider_type]
    except KeyError:
        known = ", ".join(sorted(PROVIDER_PRESETS))
        raise ValueError(
            f"Unknown provider type '{provider_type}' (expected one of: {known})"
        ) from None


__all__ = ["PROVIDER_PRESETS", "AuthStyle", "ProviderPreset", "ProviderType", "get_preset"]
