"""
Global pytest configuration and fixtures.
"""

from collections.abc import Iterator

import httpx
import pytest
from cryptography.fernet import Fernet

from oauthlink.oauth2 import ProviderConfig
from oauthlink.storage import SqliteStore
from tests.provider_testkit import AUTH_URL, TOKEN_URL, FakeProvider


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider(fake_provider: FakeProvider) -> Iterator[ProviderConfig]:
    config = ProviderConfig(
        type="custom",
        client_id="cid",
        client_secret="secret",
        callback_url="https://auth.example.com/callback",
        auth_url=AUTH_URL,
        token_url=TOKEN_URL,
        scopes=["profile", "email"],
        transport=httpx.MockTransport(fake_provider),
    ).configure()
    yield config
    config.close()


@pytest.fixture
def store(tmp_path) -> Iterator[SqliteStore]:
    store = SqliteStore(tmp_path / "oauthlink.db", encryption_key=Fernet.generate_key())
    store.initialize()
    try:
        yield store
    finally:
        store.close()
