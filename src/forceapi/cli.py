from __future__ import annotations

import json
import logging
from typing import Optional

import click

from . import __version__
from .api import ForceAPI, ForceConfig
from .env_loader import load_env_files
from .exceptions import ForceError, MissingCredentialsError
from .logging_config import configure_logging

_logger = logging.getLogger(__name__)

# Load .env very early, so everything else sees env vars
load_env_files()

_CREDENTIALS_HELP = (
    "Set these environment variables (or create a .env file), e.g. for "
    "password auth:\n"
    "  SF_AUTH_FLOW=password\n"
    "  SF_CLIENT_ID=...             # Connected App Consumer Key\n"
    "  SF_CLIENT_SECRET=...         # Connected App Client Secret\n"
    "  SF_USERNAME=...\n"
    "  SF_PASSWORD=...\n"
    "  SF_SECURITY_TOKEN=...        # optional\n"
    "  SF_ENVIRONMENT=production    # or sandbox\n"
    "  SF_API_VERSION=v60.0         # optional; will auto-discover if omitted"
)


def _connected_api() -> ForceAPI:
    """Build a client from the environment and run discovery."""
    try:
        cfg = ForceConfig.from_env()
    except ForceError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    api = ForceAPI(cfg)
    try:
        api.connect()
    except MissingCredentialsError as e:
        needed = ", ".join(e.missing)
        raise click.ClickException(
            f"Missing Salesforce credentials: {needed}\n\n{_CREDENTIALS_HELP}"
        ) from e
    except ForceError as e:
        raise click.ClickException(f"Login failed: {e}") from e
    return api


def _echo_json(data: object, pretty: bool) -> None:
    click.echo(json.dumps(data, indent=2 if pretty else None, default=str))


@click.group(
    context_settings={"help_option_names": ["-h", "--help"]},
    invoke_without_command=True,
)
@click.version_option(__version__, "--version", prog_name="forceapi")
@click.option(
    "-v",
    "--verbose",
    "loglevel",
    flag_value=logging.INFO,
    default=None,
    help="Enable INFO logs.",
)
@click.option(
    "-vv",
    "--very-verbose",
    "loglevel",
    flag_value=logging.DEBUG,
    help="Enable DEBUG logs.",
)
@click.pass_context
def cli(ctx: click.Context, loglevel: Optional[int]) -> None:
    """forceapi CLI. Use subcommands like 'login', 'objects' or 'query'."""
    configure_logging(loglevel)
    _logger.debug("CLI start, version=%s", __version__)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("login")
def cmd_login() -> None:
    """Authenticate and show the instance and API version in use."""
    api = _connected_api()
    token = api.get_access_token() or ""
    click.echo("Authenticated with Salesforce.")
    click.echo(f"Instance: {api.instance_url}")
    click.echo(f"API version: {api.api_version}")
    click.echo(f"Token preview: {token[:10]}...{token[-6:]}")


@cli.command("limits")
@click.option("--pretty", is_flag=True, help="Pretty-print JSON.")
def cmd_limits(pretty: bool) -> None:
    """Show API usage limits."""
    api = _connected_api()
    try:
        _echo_json(api.get_limits(), pretty)
    except ForceError as e:
        raise click.ClickException(str(e)) from e


@cli.command("objects")
@click.option(
    "--all",
    "show_all",
    is_flag=True,
    help="Show all sObjects (default: only queryable).",
)
def cmd_objects(show_all: bool) -> None:
    """List sObjects (queryable by default)."""
    api = _connected_api()
    names = sorted(n for n, meta in api.get_sobjects().items() if show_all or meta.queryable)
    for n in names:
        click.echo(n)


@cli.command("describe")
@click.argument("name")
@click.option("--fields", "show_fields", is_flag=True, help="List field names and types.")
def cmd_describe(name: str, show_fields: bool) -> None:
    """Describe one sObject."""
    api = _connected_api()
    try:
        desc = api.metadata.describe_object(name)
    except ForceError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"{desc.name}: {len(desc.fields)} fields")
    if desc.external_id_fields:
        click.echo(f"External ids: {', '.join(desc.external_id_fields)}")
    if show_fields:
        for f in desc.fields:
            click.echo(f"  {f.name} ({f.type})")
    else:
        click.echo(desc.select_all_soql())


@cli.command("query")
@click.argument("soql")
@click.option("--all-rows", is_flag=True, help="Include deleted and archived rows.")
@click.option("--pretty", is_flag=True, help="Pretty-print JSON.")
def cmd_query(soql: str, all_rows: bool, pretty: bool) -> None:
    """Run a SOQL query and print every record as JSON."""
    api = _connected_api()
    try:
        records = list(api.query_all_iter(soql, include_deleted=all_rows))
    except ForceError as e:
        raise click.ClickException(str(e)) from e
    for rec in records:
        rec.pop("attributes", None)
    _echo_json({"totalSize": len(records), "records": records}, pretty)
