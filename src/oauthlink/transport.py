"""OAuth2 client primitives built on httpx.

This module holds the pieces a provider configuration and its clients share:

- ``ClientDescriptor``: the immutable client registration used for every call
- ``retrieve_token``: one grant request against the provider token endpoint
- ``RefreshTokenSource`` / ``ReuseTokenSource``: lazy refresh of expired tokens
- ``BearerAuth``: an ``httpx.Auth`` that signs each request with the current token
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Generator, Mapping
from typing import Any, Protocol
from urllib.parse import parse_qsl

import httpx
from pydantic import ConfigDict, Field, ValidationError

from .errors import ProviderError
from .models import LinkBaseModel, OAuthToken
from .providers import AuthStyle

logger = logging.getLogger(__name__)


class ClientDescriptor(LinkBaseModel):
    """Client registration for one provider, derived from its configuration."""

    client_id: str
    client_secret: str
    redirect_uri: str
    auth_url: str
    token_url: str
    scopes: list[str] = Field(default_factory=list)
    auth_style: AuthStyle = "body"
    extra_auth_params: dict[str, str] = Field(default_factory=dict)


class _TokenResponse(LinkBaseModel):
    """Minimal token endpoint response (successful or error)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: float | None = None
    token_type: str | None = None

    error: str | None = None
    error_description: str | None = None


def create_http_client(
    transport: httpx.BaseTransport | None = None, auth: httpx.Auth | None = None
) -> httpx.Client:
    """Create the httpx client used for provider calls."""
    return httpx.Client(transport=transport, auth=auth, follow_redirects=True)


def _decode_token_payload(response: httpx.Response) -> dict[str, Any]:
    content_type = response.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "text/plain" in content_type:
        return dict(parse_qsl(response.text))
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderError(
            "invalid_response",
            "Token endpoint returned a non-JSON body",
            status_code=response.status_code,
        ) from exc
    if not isinstance(data, dict):
        raise ProviderError(
            "invalid_response",
            "Token endpoint returned an unexpected payload",
            status_code=response.status_code,
        )
    return data


def retrieve_token(
    client: httpx.Client, descriptor: ClientDescriptor, payload: Mapping[str, str]
) -> OAuthToken:
    """Post a grant to the token endpoint and return the issued token.

    Raises:
        ProviderError: If the provider rejects the grant or returns no access token
        httpx.HTTPError: If the request itself fails
    """
    data = dict(payload)
    auth: httpx.BasicAuth | None = None
    if descriptor.auth_style == "header":
        auth = httpx.BasicAuth(descriptor.client_id, descriptor.client_secret)
    else:
        data["client_id"] = descriptor.client_id
        data["client_secret"] = descriptor.client_secret

    resp = client.post(
        descriptor.token_url,
        data=data,
        auth=auth,
        headers={"Accept": "application/json"},
    )

    if not resp.is_success:
        description = resp.text or "Unknown error"
        raise ProviderError("invalid_grant", description, status_code=resp.status_code)

    try:
        token = _TokenResponse.model_validate(_decode_token_payload(resp))
    except ValidationError as exc:
        raise ProviderError(
            "invalid_grant",
            "Invalid token response payload",
            status_code=resp.status_code,
        ) from exc

    if token.error is not None:
        raise ProviderError(
            token.error,
            token.error_description or "Token request rejected",
            status_code=resp.status_code,
        )

    if not token.access_token:
        raise ProviderError("invalid_grant", "No access_token in response", status_code=400)

    expires_at = time.time() + float(token.expires_in) if token.expires_in else None
    return OAuthToken(
        access_token=token.access_token,
        token_type=token.token_type or "Bearer",
        refresh_token=token.refresh_token,
        expires_at=expires_at,
    )


def exchange_code(client: httpx.Client, descriptor: ClientDescriptor, code: str) -> OAuthToken:
    """Exchange an authorization code for provider tokens."""
    logger.debug(f"Exchanging authorization code at {descriptor.token_url}")
    return retrieve_token(
        client,
        descriptor,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": descriptor.redirect_uri,
        },
    )


class TokenSource(Protocol):
    def token(self) -> OAuthToken: ...


class RefreshTokenSource:
    """Obtains a fresh token from the refresh-token grant on every call."""

    def __init__(
        self, client: httpx.Client, descriptor: ClientDescriptor, refresh_token: str | None
    ):
        self._client = client
        self._descriptor = descriptor
        self._refresh_token = refresh_token

    def token(self) -> OAuthToken:
        if not self._refresh_token:
            raise ProviderError("invalid_grant", "Refresh token is not set")

        logger.debug(f"Refreshing access token at {self._descriptor.token_url}")
        token = retrieve_token(
            self._client,
            self._descriptor,
            {"grant_type": "refresh_token", "refresh_token": self._refresh_token},
        )
        # Providers may omit the refresh token when it is not rotated
        if not token.refresh_token:
            token = token.model_copy(update={"refresh_token": self._refresh_token})
        self._refresh_token = token.refresh_token
        return token


class ReuseTokenSource:
    """Returns the cached token until it expires, then asks ``new`` for one."""

    def __init__(self, token: OAuthToken | None, new: TokenSource):
        self._token = token
        self._new = new
        self._lock = threading.Lock()

    def token(self) -> OAuthToken:
        with self._lock:
            if self._token is not None and self._token.is_valid():
                return self._token
            token = self._new.token()
            self._token = token
            return token


class BearerAuth(httpx.Auth):
    """Attach the token source's current token to every request."""

    def __init__(self, source: TokenSource):
        self.source = source

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = self.source.token().authorization_header()
        yield request


__all__ = [
    "BearerAuth",
    "ClientDescriptor",
    "RefreshTokenSource",
    "ReuseTokenSource",
    "TokenSource",
    "create_http_client",
    "exchange_code",
    "retrieve_token",
]
