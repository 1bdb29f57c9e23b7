"""Configuration management CLI commands."""

from __future__ import annotations

from pathlib import Path

import click

from oidcflow.cli.output import json_option, output_result
from oidcflow.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml, load_config


@click.group()
def config() -> None:
    """Manage oidcflow configuration."""
    pass


@config.command("init")
@click.option(
    "--path",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Where to write the file (default: {DEFAULT_CONFIG_FILE}).",
)
@click.option("--force", is_flag=True, help="Overwrite an existing config file.")
@json_option
def config_init(config_path: Path | None, force: bool, output_json: bool) -> None:
    """Write a commented config.yaml template.

    Examples:

        # Write ~/.oidcflow/config.yaml
        oidcflow config init

        # Write somewhere else
        oidcflow config init --path ./oidcflow.yaml
    """
    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists() and not force:
        if output_json:
            output_result({"status": "exists", "config_file": str(path)}, as_json=True)
            return
        click.echo(f"Config file already exists: {path}")
        click.echo("Use --force to overwrite it.")
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_default_config_yaml())

    if output_json:
        output_result({"status": "created", "config_file": str(path)}, as_json=True)
        return
    click.echo(f"Config file written to: {path}")
    click.echo("")
    click.echo("Next steps:")
    click.echo("  1. Set client.client_id and client.issuer in the file")
    click.echo("  2. Run 'oidcflow generate-key' to create the storage key")
    click.echo("  3. Run 'oidcflow login'")


@config.command("show")
@json_option
@click.pass_context
def config_show(ctx: click.Context, output_json: bool) -> None:
    """Show the effective configuration (file plus environment)."""
    app_config = load_config(ctx.obj.get("config_path"))
    data = app_config.to_dict()
    if data["client"].get("client_secret"):
        data["client"]["client_secret"] = "********"
    data["config_file"] = str(app_config.config_path) if app_config.config_path else None

    if output_json:
        output_result(data, as_json=True)
        return
    for section in ("client", "storage", "logging"):
        click.echo(f"[{section}]")
        for key, value in data[section].items():
            click.echo(f"  {key}: {value}")
    if data["config_file"]:
        click.echo(f"Loaded from: {data['config_file']}")
