"""oauthlink - OAuth2 credentials for accounts linked to identity providers.

## Key Components

- `ProviderConfig`: one provider's app registration; builds authorization URLs,
  records pending authorizations and exchanges authorization codes
- `ProviderClient`: authenticated HTTP access for one account with lazy token
  refresh and persistence of refreshed tokens
- `SqliteStore`: record store for pending authorizations and account tokens
- `load_config()`: YAML configuration with `${VAR}` environment references

## Quick Example

```python
from oauthlink import ProviderConfig, SqliteStore, load_config

config = load_config()
provider = ProviderConfig.from_settings(config.get_provider("google")).configure()
store = SqliteStore(config.storage.resolved_path, config.storage.encryption_key)
store.initialize()

url = provider.request_authorization(store, "remote-state", "remote-secret",
                                     "https://app.example.com/done", 1)
```
"""

from .client import ProviderClient
from .config import (
    OAuthLinkConfigModel,
    ProviderSettingsModel,
    StorageConfigModel,
    load_config,
)
from .errors import (
    NotFoundError,
    OAuthLinkError,
    PersistenceError,
    ProviderError,
    UnknownApiError,
    UnknownParseError,
    UnknownTokenError,
)
from .models import ACCOUNT_TOKEN_FIELDS, Account, OAuthToken, PendingAuthorization
from .oauth2 import ProviderConfig
from .providers import PROVIDER_PRESETS, ProviderPreset, ProviderType
from .storage import SqliteStore, Store

__all__ = [
    # Components
    "ProviderConfig",
    "ProviderClient",
    # Models
    "ACCOUNT_TOKEN_FIELDS",
    "Account",
    "OAuthToken",
    "PendingAuthorization",
    # Providers
    "PROVIDER_PRESETS",
    "ProviderPreset",
    "ProviderType",
    # Configuration
    "OAuthLinkConfigModel",
    "ProviderSettingsModel",
    "StorageConfigModel",
    "load_config",
    # Storage
    "SqliteStore",
    "Store",
    # Errors
    "NotFoundError",
    "OAuthLinkError",
    "PersistenceError",
    "ProviderError",
    "UnknownApiError",
    "UnknownParseError",
    "UnknownTokenError",
]
