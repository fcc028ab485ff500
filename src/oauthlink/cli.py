"""Operator CLI for oauthlink."""

import json
import logging
import traceback
from pathlib import Path
from typing import Any

import click

from .config import OAuthLinkConfigModel, load_config
from .oauth2 import ProviderConfig
from .storage import SqliteStore
from .utils import get_env_flag


def configure_logging(debug: bool = False) -> None:
    """Configure logging for all modules.

    Args:
        debug: Whether to enable debug logging
    """
    # Check environment variable if debug flag is not set
    if not debug:
        debug = get_env_flag("OAUTHLINK_DEBUG")

    log_level = logging.DEBUG if debug else logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove any existing handlers to avoid duplicate messages
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))
    root_logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def output_result(result: Any, json_output: bool = False) -> None:
    """Output a result in either JSON or human-readable format."""
    if json_output:
        click.echo(json.dumps({"status": "ok", "result": result}, indent=2, default=str))
    elif isinstance(result, list):
        for row in result:
            click.echo(row)
    else:
        click.echo(result)


def output_error(error: Exception, json_output: bool = False, debug: bool = False) -> None:
    """Output an error in either JSON or human-readable format, then abort."""
    error_info: dict[str, str] = {"error": str(error)}
    if debug:
        error_info["traceback"] = traceback.format_exc()
        error_info["type"] = error.__class__.__name__

    if json_output:
        click.echo(json.dumps({"status": "error", **error_info}, indent=2))
    else:
        click.echo(f"Error: {error_info['error']}", err=True)
        if debug:
            click.echo("\nTraceback:", err=True)
            click.echo(error_info["traceback"], err=True)

    raise click.Abort()


def open_store(config: OAuthLinkConfigModel) -> SqliteStore:
    storage = config.storage
    store = SqliteStore(
        storage.resolved_path,
        storage.encryption_key,
        allow_plaintext_tokens=storage.allow_plaintext_tokens,
    )
    store.initialize()
    return store


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Path to the oauthlink config file",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """oauthlink: link accounts to OAuth2 identity providers."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> OAuthLinkConfigModel:
    return load_config(ctx.obj.get("config_path"))


@cli.command(name="providers")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
@click.pass_context
def list_providers(ctx: click.Context, json_output: bool, debug: bool) -> None:
    """List configured providers.

    \b
    Examples:
        oauthlink providers
        oauthlink providers --json
    """
    configure_logging(debug)
    try:
        config = _load(ctx)
        results = []
        for name, settings in sorted(config.providers.items()):
            provider = ProviderConfig.from_settings(settings)
            results.append(
                {
                    "type": name,
                    "auth_url": provider.auth_url,
                    "token_url": provider.token_url,
                    "callback_url": provider.callback_url,
                    "scopes": list(provider.scopes),
                }
            )

        if json_output:
            output_result(results, json_output)
        elif not results:
            click.echo("No providers configured.")
        else:
            for entry in results:
                click.echo(f"{entry['type']}: {entry['auth_url']}")
                click.echo(f"  token:    {entry['token_url']}")
                click.echo(f"  callback: {entry['callback_url']}")
                click.echo(f"  scopes:   {' '.join(entry['scopes']) or '-'}")
    except Exception as e:
        output_error(e, json_output, debug)


@cli.command(name="authorize-url")
@click.argument("provider_type")
@click.option("--remote-state", required=True, help="State to return to the remote caller")
@click.option("--remote-secret", required=True, help="Secret shared with the remote caller")
@click.option("--remote-callback", required=True, help="Where to send the remote caller afterwards")
@click.option("--version", "version", type=int, default=1, show_default=True)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
@click.pass_context
def authorize_url(
    ctx: click.Context,
    provider_type: str,
    remote_state: str,
    remote_secret: str,
    remote_callback: str,
    version: int,
    json_output: bool,
    debug: bool,
) -> None:
    """Record a pending authorization and print the provider URL.

    \b
    Examples:
        oauthlink authorize-url google --remote-state s --remote-secret x \\
            --remote-callback https://app.example.com/done
    """
    configure_logging(debug)
    try:
        config = _load(ctx)
        provider = ProviderConfig.from_settings(config.get_provider(provider_type)).configure()
        store = open_store(config)
        try:
            url = provider.request_authorization(
                store, remote_state, remote_secret, remote_callback, version
            )
        finally:
            store.close()
            provider.close()
        output_result({"url": url} if json_output else url, json_output)
    except Exception as e:
        output_error(e, json_output, debug)


@cli.command(name="purge-expired")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
@click.pass_context
def purge_expired(ctx: click.Context, json_output: bool, debug: bool) -> None:
    """Delete pending authorizations whose state has expired.

    Meant to run periodically, e.g. from cron:
        */15 * * * * oauthlink purge-expired
    """
    configure_logging(debug)
    try:
        store = open_store(_load(ctx))
        try:
            removed = store.cleanup_expired()
        finally:
            store.close()

        if json_output:
            output_result({"removed": removed}, json_output)
        else:
            click.echo(f"Removed {removed} expired pending authorizations.")
    except Exception as e:
        output_error(e, json_output, debug)
