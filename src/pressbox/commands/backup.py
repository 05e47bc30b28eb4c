"""Config backup CLI commands for PressBox."""

import click

from pressbox.errors import PressBoxError
from pressbox.output import OutputFormatter
from pressbox.services.snapshot_service import ConfigSnapshotStore


def get_formatter(ctx: click.Context) -> OutputFormatter:
    """Get the output formatter from context."""
    return ctx.obj["formatter"]


@click.group()
def backup() -> None:
    """Config backups kept by swaps.

    A swap run with backups enabled keeps its pre-swap snapshot of the
    site's server, PHP and certificate files.

    \b
    Usage:
      pressbox backup list blog
      pressbox backup show blog nginx-20260101_120000-ab12cd
    """
    pass


@backup.command("list")
@click.argument("site_id")
@click.pass_context
def list_backups(ctx: click.Context, site_id: str) -> None:
    """List retained config backups for a site, newest first."""
    formatter = get_formatter(ctx)
    store = ConfigSnapshotStore(ctx.obj["config"])

    formatter.table(
        store.list_backups(site_id),
        columns=[
            ("id", "ID"),
            ("captured_at", "Captured"),
            ("files", "Files"),
            ("path", "Path"),
        ],
        title=f"Config backups for {site_id}",
        message="Backups retrieved",
    )


@backup.command("show")
@click.argument("site_id")
@click.argument("snapshot_id")
@click.pass_context
def show_backup(ctx: click.Context, site_id: str, snapshot_id: str) -> None:
    """Show the files captured in a config backup."""
    formatter = get_formatter(ctx)
    store = ConfigSnapshotStore(ctx.obj["config"])

    try:
        snapshot = store.load_backup(site_id, snapshot_id)
    except PressBoxError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    formatter.status_panel(
        f"Backup {snapshot.id}",
        {
            "backup": {
                "site": snapshot.site_id,
                "captured_at": snapshot.captured_at,
                "db_url": snapshot.db_url_backup or "-",
            },
            "web_server_config": sorted(p for p, b in snapshot.web_server_config.items() if b is not None),
            "php_fpm_config": sorted(p for p, b in snapshot.php_fpm_config.items() if b is not None),
            "certificates": snapshot.cert_paths,
        },
        message="Backup retrieved",
    )
