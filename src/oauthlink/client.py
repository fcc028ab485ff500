"""Authenticated provider access on behalf of one account."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, TypeVar, overload

import httpx
from pydantic import BaseModel, ValidationError

from .errors import ProviderError, UnknownApiError, UnknownParseError, UnknownTokenError
from .models import ACCOUNT_TOKEN_FIELDS, Account, OAuthToken
from .storage import Store, StoreError, parse_store_error
from .transport import TokenSource

if TYPE_CHECKING:
    from .oauth2 import ProviderConfig

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ProviderClient:
    """HTTP client bound to one account's provider tokens.

    Requests are signed with the account's access token; an expired token is
    refreshed on first use. ``check_refresh`` detects such a refresh and
    ``refresh_and_persist`` writes the new tokens back to the account.
    """

    def __init__(
        self,
        account: Account,
        token: OAuthToken,
        source: TokenSource,
        http_client: httpx.Client,
        *,
        token_client: httpx.Client | None = None,
        provider: ProviderConfig | None = None,
    ):
        self.account = account
        self.token = token
        self.provider = provider
        self._source = source
        self._client = http_client
        self._token_client = token_client

    def __enter__(self) -> ProviderClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()
        if self._token_client is not None:
            self._token_client.close()

    def check_refresh(self) -> bool:
        """Fetch the current token from the source and report whether it changed.

        Raises:
            UnknownTokenError: If the source cannot produce a token
        """
        try:
            token = self._source.token()
        except (httpx.HTTPError, ProviderError) as exc:
            raise UnknownTokenError(f"client: Unknown token error: {exc}") from exc

        refreshed = token.access_token != self.token.access_token
        if refreshed:
            logger.debug(f"Access token for {self.account.type} account was refreshed")
            self.token = token
        return refreshed

    def refresh_and_persist(self, store: Store) -> None:
        """Copy refreshed tokens onto the account and commit them.

        Accounts without an id are updated in memory only; whoever creates the
        account persists the tokens along with it.

        Raises:
            UnknownTokenError: If the source cannot produce a token
            PersistenceError: If the account update fails
            NotFoundError: If the account no longer exists in the store
        """
        if not self.check_refresh():
            return

        self.account.provider_access_token = self.token.access_token
        self.account.provider_refresh_token = self.token.refresh_token
        self.account.provider_expires_at = self.token.expires_at

        if not self.account.id:
            return

        try:
            store.commit_fields(self.account.id, self.account, ACCOUNT_TOKEN_FIELDS)
        except StoreError as exc:
            raise parse_store_error(exc) from exc
        logger.debug(f"Persisted refreshed tokens for account {self.account.id}")

    @overload
    def get_json(self, url: str, target: None = None) -> Any: ...

    @overload
    def get_json(self, url: str, target: type[ModelT]) -> ModelT: ...

    def get_json(self, url: str, target: type[BaseModel] | None = None) -> Any:
        """GET ``url`` and decode the JSON body, validated into ``target`` if given.

        Raises:
            UnknownApiError: If the request fails
            UnknownParseError: If the body cannot be read, decoded or validated
        """
        request = self._client.build_request("GET", url)
        try:
            response = self._client.send(request, stream=True)
        except (httpx.HTTPError, ProviderError) as exc:
            raise UnknownApiError(f"client: Unknown api error: {exc}") from exc

        try:
            body = response.read()
        except httpx.HTTPError as exc:
            raise UnknownParseError(f"client: Unknown parse error: {exc}") from exc
        finally:
            response.close()

        try:
            data = json.loads(body)
        except ValueError as exc:
            raise UnknownParseError(f"client: Unknown parse error: {exc}") from exc

        if target is None:
            return data
        try:
            return target.model_validate(data)
        except ValidationError as exc:
            raise UnknownParseError(f"client: Unknown parse error: {exc}") from exc

    def do(self, request: httpx.Request, *, stream: bool = False) -> httpx.Response:
        """Send a caller-built request through the authenticated client."""
        return self._client.send(request, stream=stream)


__all__ = ["ProviderClient"]
