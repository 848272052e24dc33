# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Command line access to the Vault PKI setup used by the e2e tests."""

import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from e2e_framework.addon.vault.models import Details
from e2e_framework.addon.vault.setup import VaultInitializer
from e2e_framework.common import E2EException

LOG = logging.getLogger(__name__)
console = Console()


def _read_file(path: Optional[Path]) -> Optional[str]:
    return path.read_text() if path else None


@click.group()
@click.option("--pod-name", required=True, help="Name of the Vault server pod")
@click.option("--pod-namespace", default="vault", show_default=True)
@click.option(
    "--pod-service-account",
    default="vault",
    show_default=True,
    help="Service account of the Vault pod, used for token reviews",
)
@click.option("--kubectl", default="kubectl", show_default=True)
@click.option(
    "--vault-ca-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="CA certificate of the Vault listener; plain HTTP is used when omitted",
)
@click.option(
    "--root-token", envvar="VAULT_TOKEN", default="vault-root-token", show_default=True
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(
    ctx,
    pod_name: str,
    pod_namespace: str,
    pod_service_account: str,
    kubectl: str,
    vault_ca_file: Optional[Path],
    root_token: str,
    verbose: bool,
):
    """Manage Vault PKI mounts used by the e2e tests."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    ctx.obj = Details(
        kubectl=kubectl,
        pod_name=pod_name,
        pod_ns=pod_namespace,
        pod_sa=pod_service_account,
        host=f"https://vault.{pod_namespace}:8200",
        vault_ca=_read_file(vault_ca_file),
        root_token=root_token,
    )


def _initializer(details: Details, **kwargs) -> VaultInitializer:
    initializer = VaultInitializer(details=details, **kwargs)
    try:
        initializer.init()
    except E2EException as e:
        raise click.ClickException(f"Connecting to Vault failed: {e}")
    return initializer


@cli.command()
@click.option("--root-mount", required=True)
@click.option("--intermediate-mount", required=True)
@click.option("--role", required=True, help="PKI role created on the intermediate")
@click.option(
    "--configure-with-root", is_flag=True, help="Import the root in the CA chain"
)
@click.option("--app-role-auth-path", default="")
@click.option("--kubernetes-auth-path", default="")
@click.option("--api-server-url", default="", help="Enables Kubernetes auth when set")
@click.option(
    "--api-server-ca-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.pass_obj
def setup(
    details: Details,
    root_mount: str,
    intermediate_mount: str,
    role: str,
    configure_with_root: bool,
    app_role_auth_path: str,
    kubernetes_auth_path: str,
    api_server_url: str,
    api_server_ca_file: Optional[Path],
):
    """Mount a root and an intermediate CA and create a signing role."""
    initializer = _initializer(
        details,
        root_mount=root_mount,
        intermediate_mount=intermediate_mount,
        role=role,
        configure_with_root=configure_with_root,
        app_role_auth_path=app_role_auth_path,
        kubernetes_auth_path=kubernetes_auth_path,
        api_server_url=api_server_url,
        api_server_ca=_read_file(api_server_ca_file) or "",
    )
    try:
        initializer.setup()
    except E2EException as e:
        raise click.ClickException(f"Vault PKI setup failed: {e}")
    finally:
        initializer.proxy.clean()

    console.print(
        f"[green]Vault PKI ready: {root_mount} -> {intermediate_mount} "
        f"(role {role})[/green]"
    )


@cli.command()
@click.option("--root-mount", required=True)
@click.option("--intermediate-mount", required=True)
@click.pass_obj
def clean(details: Details, root_mount: str, intermediate_mount: str):
    """Unmount a root and an intermediate CA."""
    initializer = _initializer(
        details,
        root_mount=root_mount,
        intermediate_mount=intermediate_mount,
        role="",
    )
    try:
        initializer.clean()
    except E2EException as e:
        initializer.proxy.clean()
        raise click.ClickException(f"Vault PKI cleanup failed: {e}")

    console.print(f"[green]Unmounted {intermediate_mount} and {root_mount}[/green]")


@cli.command("create-approle")
@click.option("--intermediate-mount", required=True)
@click.option("--role", required=True)
@click.option("--app-role-auth-path", default="")
@click.pass_obj
def create_approle(
    details: Details, intermediate_mount: str, role: str, app_role_auth_path: str
):
    """Create an AppRole allowed to sign with a PKI role."""
    initializer = _initializer(
        details,
        root_mount="",
        intermediate_mount=intermediate_mount,
        role=role,
        app_role_auth_path=app_role_auth_path,
    )
    try:
        role_id, secret_id = initializer.create_app_role()
    except E2EException as e:
        raise click.ClickException(f"AppRole creation failed: {e}")
    finally:
        initializer.proxy.clean()

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("role_id", role_id)
    table.add_row("secret_id", secret_id)
    console.print(table)


@cli.command("clean-approle")
@click.option("--role", required=True)
@click.option("--app-role-auth-path", default="")
@click.pass_obj
def clean_approle(details: Details, role: str, app_role_auth_path: str):
    """Delete an AppRole and its policy."""
    initializer = _initializer(
        details,
        root_mount="",
        intermediate_mount="",
        role=role,
        app_role_auth_path=app_role_auth_path,
    )
    try:
        initializer.clean_app_role()
    except E2EException as e:
        raise click.ClickException(f"AppRole cleanup failed: {e}")
    finally:
        initializer.proxy.clean()

    console.print(f"[green]Deleted AppRole {role}[/green]")


def main():
    cli()
