"""CLI entry point for oidcflow."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from oidcflow import __version__
from oidcflow.cli import config as config_commands
from oidcflow.cli.output import error_result, json_option, output_result
from oidcflow.clients.browser import ConsoleBrowser
from oidcflow.clients.sync_client import SyncWebAuthClient
from oidcflow.core.config import AppConfig, ConfigError, load_config
from oidcflow.core.errors import OIDCError
from oidcflow.core.logging import configure_logging
from oidcflow.core.oidc.discovery import ProviderResolver
from oidcflow.core.oidc.models import TokenResponse
from oidcflow.core.oidc.validation import decode_unverified_claims
from oidcflow.core.transport import HttpxTransport
from oidcflow.storage.secure_store import (
    DEFAULT_KEY_PATH,
    EncryptedFileSecureStore,
    SecureStoreError,
    generate_encryption_key,
    save_encryption_key,
)


@click.group()
@click.version_option(version=__version__, prog_name="oidcflow")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.yaml (default: ~/.oidcflow/config.yaml).",
)
@click.option("--log-level", default=None, help="ERROR, WARNING, INFO, DEBUG or TRACE (overrides the config file).")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """oidcflow - OpenID Connect sign-in from the terminal."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    settings = _app_config(ctx).logging
    configure_logging(
        log_level or settings.level,
        trace_enabled=log_level.upper() == "TRACE" if log_level else settings.trace,
        log_file=str(settings.file) if settings.file else None,
    )


def _app_config(ctx: click.Context) -> AppConfig:
    app_config: AppConfig | None = ctx.obj.get("app_config")
    if app_config is None:
        app_config = load_config(ctx.obj.get("config_path"))
        ctx.obj["app_config"] = app_config
    return app_config


def _client(ctx: click.Context) -> SyncWebAuthClient:
    """Build a client from the loaded config.

    ``ctx.obj`` may carry ``transport`` and ``secure_store`` overrides.
    """
    app_config = _app_config(ctx)
    try:
        client_config = app_config.client.to_client_config()
    except ConfigError as e:
        raise click.ClickException(f"Invalid client configuration: {e}") from None

    secure_store = ctx.obj.get("secure_store")
    if secure_store is None:
        key_file = app_config.storage.key_file
        try:
            secure_store = EncryptedFileSecureStore(
                app_config.storage.path,
                key=key_file.read_text().strip() if key_file else None,
            )
        except (OSError, SecureStoreError) as e:
            raise click.ClickException(f"{e}\nRun 'oidcflow generate-key' first.") from None

    try:
        return SyncWebAuthClient(client_config, secure_store=secure_store, transport=ctx.obj.get("transport"))
    except OIDCError as e:
        raise click.ClickException(f"{e.code}: {e.description}") from None


def _release(ctx: click.Context, client: SyncWebAuthClient) -> None:
    # Transports passed in through ctx.obj belong to the caller.
    if ctx.obj.get("transport") is None:
        client.close()


def _token_summary(tokens: TokenResponse | None) -> dict[str, Any]:
    if tokens is None:
        return {"authenticated": False}
    summary: dict[str, Any] = {
        "authenticated": True,
        "token_type": tokens.token_type,
        "expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
        "expired": tokens.is_expired(now=datetime.now(UTC)),
        "scope": tokens.scope,
        "has_refresh_token": tokens.refresh_token is not None,
    }
    if tokens.id_token:
        claims = decode_unverified_claims(tokens.id_token)
        summary["subject"] = claims.get("sub")
        summary["issuer"] = claims.get("iss")
    return summary


@cli.command()
@click.argument("issuer")
@json_option
@click.pass_context
def discover(ctx: click.Context, issuer: str, output_json: bool) -> None:
    """Fetch and show a provider's discovery document.

    Examples:

        oidcflow discover https://accounts.example.com
    """
    transport = ctx.obj.get("transport")
    owned = HttpxTransport() if transport is None else None
    try:
        provider = ProviderResolver(transport or owned).resolve(issuer)
    except OIDCError as e:
        error_result(f"{e.code}: {e.description}", output_json)
    finally:
        if owned is not None:
            owned.close()
    output_result(provider.to_dict(), output_json)


@cli.command()
@click.option("--no-browser", is_flag=True, help="Print the URL instead of launching a browser.")
@click.option("--prompt", "prompt_value", default=None, help="Extra 'prompt' parameter (e.g. login, consent).")
@json_option
@click.pass_context
def login(ctx: click.Context, no_browser: bool, prompt_value: str | None, output_json: bool) -> None:
    """Sign in with the authorization code flow."""
    client = _client(ctx)
    browser = ctx.obj.get("browser") or ConsoleBrowser(launch=not no_browser)
    extra = {"prompt": prompt_value} if prompt_value else None
    try:
        tokens = client.sign_in(browser, extra_params=extra)
    except OIDCError as e:
        error_result(f"{e.code}: {e.description}", output_json)
    finally:
        _release(ctx, client)

    if not output_json:
        click.echo("Signed in.")
    output_result(_token_summary(tokens), output_json)


@cli.command()
@json_option
@click.pass_context
def status(ctx: click.Context, output_json: bool) -> None:
    """Show the stored sign-in state."""
    client = _client(ctx)
    state = client.engine.store.get()
    summary = _token_summary(state.tokens)
    summary["pending_flow"] = state.pending_request.flow_id if state.pending_request else None
    summary["provider"] = state.provider.issuer if state.provider else None
    _release(ctx, client)
    output_result(summary, output_json)


@cli.command()
@json_option
@click.pass_context
def refresh(ctx: click.Context, output_json: bool) -> None:
    """Refresh the stored tokens."""
    client = _client(ctx)
    try:
        tokens = client.refresh()
    except OIDCError as e:
        error_result(f"{e.code}: {e.description}", output_json)
    finally:
        _release(ctx, client)
    output_result(_token_summary(tokens), output_json)


@cli.command()
@json_option
@click.pass_context
def userinfo(ctx: click.Context, output_json: bool) -> None:
    """Show the signed-in user's claims."""
    client = _client(ctx)
    try:
        profile = client.get_user_profile()
    except OIDCError as e:
        error_result(f"{e.code}: {e.description}", output_json)
    finally:
        _release(ctx, client)
    output_result(profile.claims, output_json)


@cli.command()
@click.option("--no-revoke", is_flag=True, help="Only forget the tokens locally.")
@json_option
@click.pass_context
def logout(ctx: click.Context, no_revoke: bool, output_json: bool) -> None:
    """Revoke the stored tokens and forget them."""
    client = _client(ctx)
    end_session_url = client.engine.end_session_url()
    try:
        revoked = client.sign_out(revoke=not no_revoke)
    except OIDCError as e:
        error_result(f"{e.code}: {e.description}", output_json)
    finally:
        _release(ctx, client)

    if output_json:
        output_result({"signed_out": True, "revoked": revoked, "end_session_url": end_session_url}, True)
        return
    click.echo("Signed out." if revoked else "Signed out locally; token revocation did not complete.")
    if end_session_url:
        click.echo(f"To end the provider session, open: {end_session_url}")


@cli.command("generate-key")
@click.option(
    "--output",
    "key_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Key file to write (default: {DEFAULT_KEY_PATH}).",
)
@click.option("--force", is_flag=True, help="Overwrite an existing key file.")
def generate_key(key_path: Path | None, force: bool) -> None:
    """Generate the AES-256 key protecting stored tokens."""
    path = key_path or DEFAULT_KEY_PATH
    if path.exists() and not force:
        click.echo(f"Key file already exists: {path}")
        click.echo("Use --force to replace it (stored tokens become unreadable).")
        return
    click.echo("Generating AES-256 encryption key...")
    saved = save_encryption_key(generate_encryption_key(), path)
    click.echo(f"Encryption key saved to: {saved}")


cli.add_command(config_commands.config)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
