"""Site URL and history CLI commands for PressBox."""

import click

from pressbox.database import get_db
from pressbox.errors import PressBoxError
from pressbox.models import normalize_url
from pressbox.output import OutputFormatter
from pressbox.registry import SiteRegistry
from pressbox.services.swap_service import build_engine


def get_formatter(ctx: click.Context) -> OutputFormatter:
    """Get the output formatter from context."""
    return ctx.obj["formatter"]


@click.group()
def site() -> None:
    """Site URL and swap history.

    \b
    Usage:
      pressbox site url blog https://blog.test
      pressbox site history blog
    """
    pass


@site.command("url")
@click.argument("site_id")
@click.argument("new_url")
@click.option("--skip-database", is_flag=True, help="Leave URLs stored in the database alone")
@click.pass_context
def url(ctx: click.Context, site_id: str, new_url: str, skip_database: bool) -> None:
    """Move a site to a new URL.

    Rewrites the web server config, reissues the certificate for TLS sites
    and replaces the old URL in the WordPress database. Stored serialized
    values keep valid string lengths.

    \b
    Examples:
      pressbox site url blog blog.test
      pressbox site url blog https://blog.test --skip-database
    """
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    try:
        registry = SiteRegistry(config)
        current = registry.get(site_id)

        if not formatter.json_mode:
            click.echo(f"Updating site URL for {site_id}: {current.url} -> {new_url}...")

        engine = build_engine(config, get_db(config))
        result = engine.update_site_url(current, new_url, update_database=not skip_database)
    except PressBoxError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if not result.success:
        formatter.error(
            code="URL_UPDATE_FAILED",
            message="; ".join(result.errors),
            suggestion=(
                "Manual recovery needed, see the errors above"
                if result.fatal
                else f"Site is still served at {current.url}"
            ),
            data=result.to_dict(),
        )
        raise SystemExit(1)

    domain = normalize_url(new_url)[1].split(":", 1)[0]
    updated = registry.apply_result(current, result, domain=domain)
    formatter.success(
        {**result.to_dict(), "url": updated.url},
        message=f"Site URL updated successfully to {updated.url}",
    )


@site.command("history")
@click.argument("site_id")
@click.option("--limit", "-n", default=20, help="Maximum number of transactions to show (default: 20)")
@click.pass_context
def history(ctx: click.Context, site_id: str, limit: int) -> None:
    """Show a site's recent swap transactions, newest first."""
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    entries = get_db(config).list_transactions(site_id, limit)
    rows = [
        {
            "id": e["id"],
            "from_target": e["from_target"],
            "to_target": e["to_target"],
            "state": e["state"],
            "started_at": e["started_at"],
            "duration_ms": e["duration_ms"],
            "errors": "; ".join(e["errors"]),
        }
        for e in entries
    ]
    formatter.table(
        rows,
        columns=[
            ("id", "ID"),
            ("from_target", "From"),
            ("to_target", "To"),
            ("state", "State"),
            ("started_at", "Started"),
            ("duration_ms", "ms"),
            ("errors", "Errors"),
        ],
        title=f"Swap history for {site_id}",
        message="Swap history retrieved",
    )
