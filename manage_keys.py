"""
Operator CLI: add, remove and inspect license keys directly in the key store.
"""
import sys
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.table import Table

from admin_registry import AdminRegistry
from config import configure_logging, load_durations, settings
from exceptions import ClientError, KeyAlreadyExists, KeyNotFound, TransientStorageError
from key_store import create_key_store

console = Console()


def _format_ms(value):
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option('--backend', type=click.Choice(['sql', 'json', 'memory']), default=None,
              help='Key store backend (defaults to KEY_STORE_BACKEND)')
@click.option('--log-level', default='WARNING', show_default=True)
@click.pass_context
def cli(ctx, backend, log_level):
    """Manage license keys."""
    configure_logging(log_level)
    ctx.obj = AdminRegistry(create_key_store(backend), load_durations(settings.LICENSE_DURATIONS))


@cli.command()
@click.argument('key')
@click.argument('license_type', metavar='TYPE')
@click.pass_obj
def add(registry, key, license_type):
    """Issue KEY with duration class TYPE."""
    try:
        registry.issue(key, license_type)
    except KeyAlreadyExists:
        console.print(f"[yellow]Key already exists:[/yellow] {key}")
        sys.exit(1)
    except ClientError as e:
        console.print(f"[red]{e}[/red] (known types: {', '.join(sorted(registry.durations))})")
        sys.exit(1)
    except TransientStorageError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]Added key:[/green] {key} (type={license_type})")


@cli.command()
@click.argument('key')
@click.pass_obj
def remove(registry, key):
    """Revoke KEY, bound or not."""
    try:
        registry.revoke(key)
    except KeyNotFound:
        console.print(f"[yellow]No such key, nothing to remove:[/yellow] {key}")
        return
    except TransientStorageError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]Removed key:[/green] {key}")


@cli.command(name='list')
@click.pass_obj
def list_keys(registry):
    """Show every current key (expired ones are purged first)."""
    try:
        records = registry.list()
    except TransientStorageError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)

    now = registry.clock()
    table = Table(title=f"License keys ({len(records)})")
    table.add_column("Key", style="cyan")
    table.add_column("Type")
    table.add_column("Device")
    table.add_column("Activated")
    table.add_column("Expires")
    table.add_column("Active")
    for record in records:
        table.add_row(
            record.key,
            record.license_type,
            record.device_id or "-",
            _format_ms(record.activated_at),
            _format_ms(record.expires_at),
            "yes" if record.is_active(now) else "no",
        )
    console.print(table)


@cli.command()
@click.pass_obj
def sweep(registry):
    """Delete every expired key now."""
    try:
        purged = registry.sweep()
    except TransientStorageError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)
    console.print(f"Purged {len(purged)} expired key(s)")


if __name__ == '__main__':
    cli()
