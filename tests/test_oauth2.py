import time
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from oauthlink.config import ProviderSettingsModel
from oauthlink.errors import NotFoundError, PersistenceError, UnknownApiError
from oauthlink.models import Account, PendingAuthorization
from oauthlink.oauth2 import STATE_LENGTH, ProviderConfig
from oauthlink.storage import SqliteStore, StoreError

from tests.provider_testkit import AUTH_URL, FakeProvider


def _request(provider: ProviderConfig, store: SqliteStore) -> str:
    url = provider.request_authorization(
        store, "remote-state", "remote-secret", "https://app.example.com/done", 2
    )
    return parse_qs(urlsplit(url).query)["state"][0]


def test_authorization_url_includes_required_params(
    provider: ProviderConfig, store: SqliteStore
) -> None:
    url = provider.request_authorization(
        store, "remote-state", "remote-secret", "https://app.example.com/done", 2
    )
    parts = urlsplit(url)
    query = parse_qs(parts.query)

    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == AUTH_URL
    assert query["client_id"] == ["cid"]
    assert query["redirect_uri"] == ["https://auth.example.com/callback"]
    assert query["response_type"] == ["code"]
    assert query["scope"] == ["profile email"]
    assert query["access_type"] == ["offline"]
    assert query["approval_prompt"] == ["force"]
    assert len(query["state"][0]) == STATE_LENGTH


def test_request_authorization_persists_pending_record(
    provider: ProviderConfig, store: SqliteStore
) -> None:
    before = time.time()
    state = _request(provider, store)

    pending = store.find_one_by_id(PendingAuthorization, state)
    assert pending.remote_state == "remote-state"
    assert pending.remote_secret == "remote-secret"
    assert pending.remote_callback == "https://app.example.com/done"
    assert pending.type == "custom"
    assert pending.version == 2
    assert pending.expires_at >= before + provider.state_ttl


def test_states_are_unique(provider: ProviderConfig, store: SqliteStore) -> None:
    states = {_request(provider, store) for _ in range(20)}
    assert len(states) == 20


def test_authorization_url_appends_to_existing_query(store: SqliteStore) -> None:
    provider = ProviderConfig(
        type="custom",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
        auth_url="https://provider.test/authorize?tenant=acme",
        token_url="https://provider.test/token",
        extra_auth_params={"hd": "example.com"},
    ).configure()

    url = provider.request_authorization(store, "s", "x", "https://app.example.com", 1)
    query = parse_qs(urlsplit(url).query)
    assert query["tenant"] == ["acme"]
    assert query["hd"] == ["example.com"]
    assert "scope" not in query


def test_request_authorization_store_failure(provider: ProviderConfig) -> None:
    class _FailingStore:
        def insert(self, record: PendingAuthorization) -> None:
            raise StoreError("disk full")

    with pytest.raises(PersistenceError):
        provider.request_authorization(
            _FailingStore(), "s", "x", "https://app", 1  # type: ignore[arg-type]
        )


def test_authorize_happy_path(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    state = _request(provider, store)

    account, pending = provider.authorize(store, state, "good-code")

    assert isinstance(account, Account)
    assert account.id is None
    assert account.type == "custom"
    assert account.provider_access_token == "at-1"
    assert account.provider_refresh_token == "rt-1"
    assert account.provider_expires_at is not None
    assert account.provider_expires_at > time.time()
    assert pending.id == state
    assert pending.remote_secret == "remote-secret"

    form = fake_provider.token_requests[0]
    assert form["grant_type"] == ["authorization_code"]
    assert form["redirect_uri"] == ["https://auth.example.com/callback"]
    assert form["client_id"] == ["cid"]
    assert form["client_secret"] == ["secret"]


def test_authorize_unknown_state_skips_exchange(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    with pytest.raises(NotFoundError):
        provider.authorize(store, "missing", "good-code")
    assert fake_provider.token_requests == []


def test_authorize_consumes_state(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    state = _request(provider, store)
    provider.authorize(store, state, "good-code")

    with pytest.raises(NotFoundError):
        provider.authorize(store, state, "good-code")
    assert len(fake_provider.token_requests) == 1


def test_authorize_expired_state(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    now = time.time()
    store.insert(
        PendingAuthorization(
            id="expired-state",
            remote_callback="https://app",
            remote_state="s",
            remote_secret="x",
            type="custom",
            version=1,
            created_at=now - 100,
            expires_at=now - 1,
        )
    )

    with pytest.raises(NotFoundError):
        provider.authorize(store, "expired-state", "good-code")
    assert fake_provider.token_requests == []


def test_authorize_rejects_state_of_other_provider(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    now = time.time()
    store.insert(
        PendingAuthorization(
            id="google-state",
            remote_callback="https://app",
            remote_state="s",
            remote_secret="x",
            type="google",
            version=1,
            created_at=now,
            expires_at=now + 60,
        )
    )

    with pytest.raises(NotFoundError):
        provider.authorize(store, "google-state", "good-code")
    assert fake_provider.token_requests == []
    # Left in place for the provider it was issued to
    assert store.find_one_by_id(PendingAuthorization, "google-state").type == "google"


def test_authorize_rejected_code(provider: ProviderConfig, store: SqliteStore) -> None:
    state = _request(provider, store)

    with pytest.raises(UnknownApiError) as exc_info:
        provider.authorize(store, state, "bad-code")
    assert "Bad code" in str(exc_info.value)


def test_authorize_provider_unreachable(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    state = _request(provider, store)
    fake_provider.fail_token_endpoint = True

    with pytest.raises(UnknownApiError) as exc_info:
        provider.authorize(store, state, "good-code")
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


def test_authorize_with_header_auth_style(store: SqliteStore, fake_provider: FakeProvider) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return fake_provider(request)

    provider = ProviderConfig(
        type="custom",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
        auth_url=AUTH_URL,
        token_url="https://provider.test/oauth/token",
        auth_style="header",
        transport=httpx.MockTransport(handler),
    ).configure()
    state = _request(provider, store)

    account, _ = provider.authorize(store, state, "good-code")

    assert account.provider_access_token == "at-1"
    assert seen[0].headers["Authorization"].startswith("Basic ")
    assert "client_secret" not in fake_provider.token_requests[0]
    provider.close()


def test_authorize_accepts_form_encoded_token_response(store: SqliteStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=b"access_token=gho_abc&scope=read%3Auser&token_type=bearer",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    provider = ProviderConfig(
        type="github",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        transport=httpx.MockTransport(handler),
    ).configure()
    state = _request(provider, store)

    account, _ = provider.authorize(store, state, "code")

    assert account.provider_access_token == "gho_abc"
    assert account.provider_refresh_token is None
    assert account.provider_expires_at is None
    provider.close()


def test_error_field_in_successful_response(store: SqliteStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"error": "bad_verification_code", "error_description": "Code expired"}
        )

    provider = ProviderConfig(
        type="github",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        transport=httpx.MockTransport(handler),
    ).configure()
    state = _request(provider, store)

    with pytest.raises(UnknownApiError) as exc_info:
        provider.authorize(store, state, "code")
    assert "Code expired" in str(exc_info.value)
    provider.close()


def test_operations_require_configure(store: SqliteStore) -> None:
    provider = ProviderConfig(
        type="custom",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
        auth_url=AUTH_URL,
        token_url="https://provider.test/token",
    )
    with pytest.raises(RuntimeError):
        provider.request_authorization(store, "s", "x", "https://app", 1)


def test_from_settings_uses_preset_defaults() -> None:
    settings = ProviderSettingsModel(
        type="google",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback/google",
    )
    provider = ProviderConfig.from_settings(settings)

    assert provider.auth_url == "https://accounts.google.com/o/oauth2/auth"
    assert provider.token_url == "https://oauth2.googleapis.com/token"
    assert "https://www.googleapis.com/auth/userinfo.email" in provider.scopes


def test_from_settings_overrides_preset() -> None:
    settings = ProviderSettingsModel(
        type="microsoft",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback/microsoft",
        token_url="https://login.microsoftonline.com/acme/oauth2/v2.0/token",
        scopes=["User.Read"],
        extra_auth_params={"domain_hint": "acme.com"},
    )
    provider = ProviderConfig.from_settings(settings)

    assert provider.token_url == "https://login.microsoftonline.com/acme/oauth2/v2.0/token"
    assert provider.scopes == ("User.Read",)
    assert provider.extra_auth_params == {"response_mode": "query", "domain_hint": "acme.com"}


def test_from_settings_custom_requires_endpoints() -> None:
    settings = ProviderSettingsModel(
        type="custom",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
    )
    with pytest.raises(ValueError):
        ProviderConfig.from_settings(settings)


def test_configure_is_idempotent(provider: ProviderConfig) -> None:
    conf = provider.conf
    assert provider.configure() is provider
    assert provider.conf is conf


def test_settings_are_read_only(provider: ProviderConfig) -> None:
    with pytest.raises(AttributeError):
        provider.token_url = "https://evil.test/token"  # type: ignore[misc]

    provider.extra_auth_params["hd"] = "example.com"
    assert "hd" not in provider.conf.extra_auth_params


def test_closed_provider_rejects_authorize(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    state = _request(provider, store)
    provider.close()

    with pytest.raises(RuntimeError):
        provider.authorize(store, state, "good-code")
    with pytest.raises(RuntimeError):
        provider.configure()
    assert fake_provider.token_requests == []
    # The state was not consumed
    assert store.find_one_by_id(PendingAuthorization, state).id == state


def test_linked_account_refreshes_are_persisted(
    provider: ProviderConfig, store: SqliteStore, fake_provider: FakeProvider
) -> None:
    # Tokens expiring inside the leeway are refreshed on first use
    fake_provider.expires_in = 1
    state = _request(provider, store)
    account, _ = provider.authorize(store, state, "good-code")

    account = account.model_copy(update={"id": "acct-42"})
    store.insert(account)

    with provider.new_client(account) as client:
        client.refresh_and_persist(store)

    stored = store.find_one_by_id(Account, "acct-42")
    assert stored.provider_access_token == "at-2"
    assert stored.provider_refresh_token == "rt-1"
