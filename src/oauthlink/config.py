"""Configuration loading for oauthlink.

Configuration lives in a YAML file with two sections:

```yaml
storage:
  path: ~/.oauthlink/oauthlink.db
  encryption_key: ${OAUTHLINK_ENCRYPTION_KEY}
providers:
  google:
    client_id: ${GOOGLE_CLIENT_ID}
    client_secret: ${GOOGLE_CLIENT_SECRET}
    callback_url: https://auth.example.com/callback/google
```

Provider keys are provider types (see ``oauthlink.providers``). Any string of
the form ``${VAR}`` is replaced with the value of that environment variable.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError

from .models import LinkBaseModel
from .providers import AuthStyle, ProviderType

logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z0-9_]+)\}")

DEFAULT_STATE_TTL = 1800.0


class StorageConfigModel(LinkBaseModel):
    """Record store configuration."""

    path: str = "~/.oauthlink/oauthlink.db"
    encryption_key: str | None = None
    allow_plaintext_tokens: bool = False

    @property
    def resolved_path(self) -> Path:
        return Path(self.path).expanduser()


class ProviderSettingsModel(LinkBaseModel):
    """OAuth2 app registration for one provider.

    Unset endpoints, scopes and auth style fall back to the provider preset.
    """

    type: ProviderType
    client_id: str
    client_secret: str
    callback_url: str
    auth_url: str | None = None
    token_url: str | None = None
    scopes: list[str] | None = None
    auth_style: AuthStyle | None = None
    extra_auth_params: dict[str, str] | None = None
    state_ttl: float = Field(default=DEFAULT_STATE_TTL, gt=0)


class OAuthLinkConfigModel(LinkBaseModel):
    """Top-level oauthlink configuration."""

    storage: StorageConfigModel = Field(default_factory=StorageConfigModel)
    providers: dict[str, ProviderSettingsModel] = Field(default_factory=dict)

    def get_provider(self, provider_type: str) -> ProviderSettingsModel:
        """Return the settings for ``provider_type``.

        Raises:
            KeyError: If the provider is not configured
        """
        try:
            return self.providers[provider_type]
        except KeyError:
            raise KeyError(f"Provider '{provider_type}' is not configured") from None


def interpolate_env(value: Any) -> Any:
    """Replace ``${VAR}`` references in strings, recursing into lists and dicts.

    Raises:
        ValueError: If a referenced environment variable is not set
    """
    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            var_name = match.group(1)
            resolved = os.environ.get(var_name)
            if resolved is None:
                raise ValueError(f"Environment variable not found: {var_name}")
            return resolved

        return ENV_VAR_PATTERN.sub(_replace, value)
    if isinstance(value, dict):
        return {key: interpolate_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_env(item) for item in value]
    return value


def find_config_path() -> Path | None:
    """Locate the configuration file.

    Looks for, in order:
    1. OAUTHLINK_CONFIG environment variable
    2. ~/.oauthlink/config.yml
    3. ./oauthlink.yml
    """
    env_path = os.environ.get("OAUTHLINK_CONFIG")
    if env_path:
        return Path(env_path)

    candidates = [Path.home() / ".oauthlink" / "config.yml", Path.cwd() / "oauthlink.yml"]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def load_config(config_path: Path | None = None) -> OAuthLinkConfigModel:
    """Load oauthlink configuration from a YAML file.

    Args:
        config_path: Optional path to the config file. If not provided the file
                     is located with ``find_config_path``.

    Returns:
        Validated OAuthLinkConfigModel

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config is invalid
    """
    if config_path is None:
        config_path = find_config_path()
        if config_path is None:
            logger.info("No oauthlink config file found, using empty configuration")
            return OAuthLinkConfigModel()

    if not config_path.exists():
        raise FileNotFoundError(f"oauthlink config file not found at {config_path}")

    logger.debug(f"Loading oauthlink config from: {config_path}")

    try:
        with open(config_path) as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML config file {config_path}: {e}") from e

    if not raw_config:
        logger.info("Empty oauthlink config file, using empty configuration")
        return OAuthLinkConfigModel()

    if not isinstance(raw_config, dict):
        raise ValueError(f"Invalid oauthlink config in {config_path}: expected a mapping")

    return parse_config(raw_config)


def parse_config(raw_config: dict[str, Any]) -> OAuthLinkConfigModel:
    """Validate an already-parsed configuration mapping."""
    resolved = interpolate_env(raw_config)

    providers = resolved.get("providers") or {}
    if not isinstance(providers, dict):
        raise ValueError("Invalid oauthlink config: 'providers' must be a mapping")
    for name, settings in providers.items():
        # The mapping key doubles as the provider type
        if isinstance(settings, dict):
            settings.setdefault("type", name)
            if settings["type"] != name:
                raise ValueError(
                    f"Invalid oauthlink config: provider '{name}' "
                    f"declares type '{settings['type']}'"
                )

    try:
        return OAuthLinkConfigModel.model_validate(
            {"storage": resolved.get("storage") or {}, "providers": providers}
        )
    except ValidationError as e:
        raise ValueError(f"Invalid oauthlink config: {e}") from e


__all__ = [
    "DEFAULT_STATE_TTL",
    "OAuthLinkConfigModel",
    "ProviderSettingsModel",
    "StorageConfigModel",
    "find_config_path",
    "interpolate_env",
    "load_config",
    "parse_config",
]
