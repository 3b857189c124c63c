"""ACS call provisioner CLI (acsprov).

Usage:
    acsprov provision                 # Provision or reconcile the environment
    acsprov provision --suffix demo1  # Target a named environment
    acsprov outputs                   # Show the recorded outputs document
    acsprov verify-secret             # Check the connection string is resolvable
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from .azure_cloud import AzureCloud
from .config import DEFAULT_OUTPUTS_PATH, DEFAULT_SECRET_NAME, Config, ConfigurationError
from .connection import resolve_connection_string
from .main import EXIT_CREDENTIAL_ERROR, EXIT_ERROR, run_provisioning, setup_logging
from .outputs import OutputsLoadError, load_outputs
from .security import CredentialError, create_session

# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="acsprov")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Log output format.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(log_format: str, verbose: bool) -> None:
    """Provision the Azure resources behind the outbound calling demo.

    \b
    Quick Start:
        az login
        export AZURE_SUBSCRIPTION_ID=... AZURE_LOCATION=eastus
        acsprov provision
    """
    setup_logging(log_format, logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.option("--subscription", "subscription_id", help="Azure subscription ID.")
@click.option("--location", help="Azure region for all resources.")
@click.option("--resource-group", "resource_group_name", help="Resource group name.")
@click.option("--suffix", "name_suffix", help="Suffix for generated resource names.")
@click.option(
    "--topology",
    "topology_file",
    type=click.Path(path_type=Path, dir_okay=False),
    help="YAML file with resource overrides.",
)
@click.option(
    "--outputs",
    "outputs_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help=f"Outputs document path (default: {DEFAULT_OUTPUTS_PATH}).",
)
@click.option("--callback-uri", help="HTTPS callback URL for call events.")
def provision(**options: object) -> None:
    """Provision or reconcile all resources, then write the outputs document."""
    try:
        config = Config.from_env(**options)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    sys.exit(asyncio.run(run_provisioning(config)))


@cli.command()
@click.option(
    "--path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=DEFAULT_OUTPUTS_PATH,
    show_default=True,
    help="Outputs document to show.",
)
def outputs(path: Path) -> None:
    """Print the outputs document of the last run."""
    try:
        record = load_outputs(path)
    except OutputsLoadError as e:
        raise click.ClickException(str(e)) from e
    if record is None:
        raise click.ClickException(f"No outputs found at {path}. Run 'acsprov provision' first.")

    click.echo(f"Subscription:   {record.subscription_id}")
    click.echo(f"Resource group: {record.resource_group} ({record.location})")
    for kind, resource in record.resources.items():
        click.echo(f"  {kind.value:<22} {resource.name}")
    click.echo(f"Key Vault URI:  {record.key_vault_uri or '-'}")
    click.echo(f"Function app:   {record.function_app_url or '-'}")
    stored = click.style("yes", fg="green") if record.secret_stored else click.style("no", fg="yellow")
    click.echo(f"Secret stored:  {stored}")


@cli.command("verify-secret")
@click.option(
    "--path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=DEFAULT_OUTPUTS_PATH,
    show_default=True,
    help="Outputs document locating the vault.",
)
def verify_secret(path: Path) -> None:
    """Check that the connection string can be resolved. The value is not printed."""
    try:
        record = load_outputs(path)
    except OutputsLoadError as e:
        raise click.ClickException(str(e)) from e
    if record is None:
        raise click.ClickException(f"No outputs found at {path}. Run 'acsprov provision' first.")

    try:
        config = Config.from_env(subscription_id=record.subscription_id, location=record.location)
        platform = _build_platform(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    except CredentialError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_CREDENTIAL_ERROR)

    value, source = asyncio.run(
        resolve_connection_string(
            platform, record.key_vault_uri, record.secret_name or DEFAULT_SECRET_NAME
        )
    )
    if value is None:
        click.secho("Connection string could not be resolved", fg="red", err=True)
        sys.exit(EXIT_ERROR)
    click.secho(f"Connection string resolved from {source}", fg="green")


def _build_platform(config: Config) -> AzureCloud:
    return AzureCloud(create_session(config))


if __name__ == "__main__":
    cli()
