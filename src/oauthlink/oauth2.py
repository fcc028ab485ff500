"""OAuth2 authorization-code flow for one provider registration.

Typical flow:

```python
provider = ProviderConfig.from_settings(config.get_provider("google")).configure()

url = provider.request_authorization(store, remote_state, remote_secret, remote_callback, 1)
# ... redirect the user to url, receive ?state=...&code=... on the callback ...
account, pending = provider.authorize(store, state, code)
account = account.model_copy(update={"id": new_account_id})
store.insert(account)

with provider.new_client(account) as client:
    profile = client.get_json("https://www.googleapis.com/oauth2/v2/userinfo")
    client.refresh_and_persist(store)
```
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from urllib.parse import urlencode

import httpx

from .client import ProviderClient
from .config import DEFAULT_STATE_TTL, ProviderSettingsModel
from .errors import NotFoundError, ProviderError, UnknownApiError
from .models import Account, PendingAuthorization
from .providers import AuthStyle, get_preset
from .storage import Store, StoreError, parse_store_error
from .transport import (
    BearerAuth,
    ClientDescriptor,
    RefreshTokenSource,
    ReuseTokenSource,
    create_http_client,
    exchange_code,
)
from .utils import random_string

logger = logging.getLogger(__name__)

STATE_LENGTH = 64


class ProviderConfig:
    """One provider's OAuth2 app registration.

    Call ``configure()`` once after construction; the instance is then meant to
    be shared by reference for the lifetime of the application. Settings are
    read-only after construction.
    """

    def __init__(
        self,
        *,
        type: str,
        client_id: str,
        client_secret: str,
        callback_url: str,
        auth_url: str,
        token_url: str,
        scopes: Sequence[str] = (),
        auth_style: AuthStyle = "body",
        extra_auth_params: Mapping[str, str] | None = None,
        state_ttl: float = DEFAULT_STATE_TTL,
        transport: httpx.BaseTransport | None = None,
    ):
        self._type = type
        self._state_ttl = state_ttl
        self._settings = ClientDescriptor(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=callback_url,
            auth_url=auth_url,
            token_url=token_url,
            scopes=list(scopes),
            auth_style=auth_style,
            extra_auth_params=dict(extra_auth_params or {}),
        )
        self._transport = transport
        self._lock = threading.Lock()
        self._conf: ClientDescriptor | None = None
        self._http: httpx.Client | None = None
        self._closed = False

    @property
    def type(self) -> str:
        return self._type

    @property
    def client_id(self) -> str:
        return self._settings.client_id

    @property
    def callback_url(self) -> str:
        return self._settings.redirect_uri

    @property
    def auth_url(self) -> str:
        return self._settings.auth_url

    @property
    def token_url(self) -> str:
        return self._settings.token_url

    @property
    def scopes(self) -> tuple[str, ...]:
        return tuple(self._settings.scopes)

    @property
    def auth_style(self) -> AuthStyle:
        return self._settings.auth_style

    @property
    def extra_auth_params(self) -> dict[str, str]:
        return dict(self._settings.extra_auth_params)

    @property
    def state_ttl(self) -> float:
        return self._state_ttl

    @classmethod
    def from_settings(
        cls, settings: ProviderSettingsModel, *, transport: httpx.BaseTransport | None = None
    ) -> ProviderConfig:
        """Build a provider from configuration, filling gaps from its preset."""
        preset = get_preset(settings.type)
        auth_url = settings.auth_url or preset.auth_url
        token_url = settings.token_url or preset.token_url
        if not auth_url or not token_url:
            raise ValueError(f"Provider '{settings.type}' requires auth_url and token_url")

        return cls(
            type=settings.type,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            callback_url=settings.callback_url,
            auth_url=auth_url,
            token_url=token_url,
            scopes=settings.scopes if settings.scopes is not None else preset.scopes,
            auth_style=settings.auth_style or preset.auth_style,
            extra_auth_params={**preset.extra_auth_params, **(settings.extra_auth_params or {})},
            state_ttl=settings.state_ttl,
            transport=transport,
        )

    def configure(self) -> ProviderConfig:
        """Derive the client descriptor and token-endpoint client.

        Calling it again on a configured provider is a no-op.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Provider '{self.type}' has been closed")
            if self._conf is None:
                self._conf = self._settings
                self._http = create_http_client(transport=self._transport)
        return self

    @property
    def conf(self) -> ClientDescriptor:
        if self._conf is None:
            raise RuntimeError(f"Provider '{self.type}' used before configure()")
        return self._conf

    def close(self) -> None:
        """Release the token-endpoint client.

        Clients already returned by ``new_client`` keep working; they own
        their connections.
        """
        with self._lock:
            self._closed = True
            if self._http is not None:
                self._http.close()
                self._http = None

    def authorization_url(self, state: str) -> str:
        """Build the provider authorization URL for ``state``.

        Offline access and forced approval are always requested so the provider
        issues a refresh token even when the user has consented before.
        """
        conf = self.conf
        params: list[tuple[str, str]] = [
            ("client_id", conf.client_id),
            ("redirect_uri", conf.redirect_uri),
            ("response_type", "code"),
        ]
        if conf.scopes:
            params.append(("scope", " ".join(conf.scopes)))
        params.extend(
            [
                ("state", state),
                ("access_type", "offline"),
                ("approval_prompt", "force"),
            ]
        )
        params.extend(conf.extra_auth_params.items())

        separator = "&" if "?" in conf.auth_url else "?"
        return f"{conf.auth_url}{separator}{urlencode(params)}"

    def request_authorization(
        self,
        store: Store,
        remote_state: str,
        remote_secret: str,
        remote_callback: str,
        version: int,
    ) -> str:
        """Record a pending authorization and return the URL to redirect the user to.

        Raises:
            PersistenceError: If the pending authorization cannot be stored
        """
        state = random_string(STATE_LENGTH)
        url = self.authorization_url(state)

        now = time.time()
        pending = PendingAuthorization(
            id=state,
            remote_callback=remote_callback,
            remote_state=remote_state,
            remote_secret=remote_secret,
            type=self.type,
            version=version,
            created_at=now,
            expires_at=now + self.state_ttl,
        )
        try:
            store.insert(pending)
        except StoreError as exc:
            raise parse_store_error(exc) from exc

        logger.debug(f"Recorded pending {self.type} authorization for {remote_callback}")
        return url

    def authorize(
        self, store: Store, state: str, code: str
    ) -> tuple[Account, PendingAuthorization]:
        """Complete an authorization from its callback parameters.

        The pending authorization is consumed before the code is exchanged, so
        each state can be used once.

        Raises:
            NotFoundError: If the state is unknown, expired, consumed or belongs
                           to another provider
            PersistenceError: If the store fails
            UnknownApiError: If the provider rejects the code exchange
        """
        conf = self.conf
        http = self._http_client()
        try:
            pending = store.find_one_by_id(PendingAuthorization, state)
        except StoreError as exc:
            raise parse_store_error(exc) from exc

        if pending.type != self.type:
            logger.warning(
                f"Authorization state issued for provider '{pending.type}' "
                f"was presented to '{self.type}'"
            )
            raise NotFoundError("oauth2: Authorization state not found")

        try:
            store.remove(PendingAuthorization, state)
        except StoreError as exc:
            raise parse_store_error(exc) from exc

        try:
            token = exchange_code(http, conf, code)
        except (httpx.HTTPError, ProviderError) as exc:
            raise UnknownApiError(f"oauth2: Unknown api error: {exc}") from exc

        logger.debug(f"Exchanged authorization code for {self.type} tokens")
        account = Account(
            type=self.type,
            provider_access_token=token.access_token,
            provider_refresh_token=token.refresh_token,
            provider_expires_at=token.expires_at,
        )
        return account, pending

    def new_client(self, account: Account) -> ProviderClient:
        """Return a client making authenticated calls with ``account``'s tokens."""
        conf = self.conf
        token = account.to_token()
        token_client = create_http_client(transport=self._transport)
        source = ReuseTokenSource(
            token,
            RefreshTokenSource(token_client, conf, token.refresh_token),
        )
        http_client = create_http_client(transport=self._transport, auth=BearerAuth(source))
        return ProviderClient(
            account, token, source, http_client, token_client=token_client, provider=self
        )

    def _http_client(self) -> httpx.Client:
        with self._lock:
            if self._http is None:
                raise RuntimeError(f"Provider '{self.type}' has been closed")
            return self._http


__all__ = ["STATE_LENGTH", "ProviderConfig"]
