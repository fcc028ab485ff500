"""Pydantic models shared across oauthlink.

The base model forbids unknown fields and is frozen, so values such as
``OAuthToken`` and ``PendingAuthorization`` can be passed around and replaced
wholesale rather than mutated. ``Account`` is the exception: it belongs to the
caller and its token fields are written back after a refresh.
"""

import time

from pydantic import BaseModel, ConfigDict

# Tokens expiring within this many seconds are treated as already expired.
EXPIRY_LEEWAY = 10.0

ACCOUNT_TOKEN_FIELDS = (
    "provider_access_token",
    "provider_refresh_token",
    "provider_expires_at",
)


class LinkBaseModel(BaseModel):
    """Base model for all oauthlink models.

    - extra="forbid": Rejects any fields not defined in the model
    - frozen=True: Makes instances immutable
    """

    model_config = ConfigDict(extra="forbid", frozen=True)


class OAuthToken(LinkBaseModel):
    """Provider credentials as returned by a token endpoint."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds, None never expires

    def is_valid(self, now: float | None = None) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        current = time.time() if now is None else now
        return self.expires_at - EXPIRY_LEEWAY > current

    def authorization_header(self) -> str:
        token_type = self.token_type or "Bearer"
        lowered = token_type.lower()
        if lowered == "bearer":
            token_type = "Bearer"
        elif lowered == "mac":
            token_type = "MAC"
        elif lowered == "basic":
            token_type = "Basic"
        return f"{token_type} {self.access_token}"


class PendingAuthorization(LinkBaseModel):
    """An outstanding authorization request, keyed by its correlation state."""

    id: str
    remote_callback: str
    remote_state: str
    remote_secret: str
    type: str
    version: int
    created_at: float
    expires_at: float


class Account(LinkBaseModel):
    """The token-bearing part of an externally owned account record."""

    # Token fields are rewritten in place after a refresh
    model_config = ConfigDict(extra="forbid", frozen=False)

    id: str | None = None
    type: str
    provider_access_token: str | None = None
    provider_refresh_token: str | None = None
    provider_expires_at: float | None = None

    def to_token(self) -> OAuthToken:
        return OAuthToken(
            access_token=self.provider_access_token or "",
            token_type="Bearer",
            refresh_token=self.provider_refresh_token,
            expires_at=self.provider_expires_at,
        )


__all__ = [
    "ACCOUNT_TOKEN_FIELDS",
    "EXPIRY_LEEWAY",
    "Account",
    "LinkBaseModel",
    "OAuthToken",
    "PendingAuthorization",
]
