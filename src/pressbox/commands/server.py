"""Web server CLI commands for PressBox."""

import click

from pressbox.database import get_db
from pressbox.errors import PressBoxError
from pressbox.models import ServiceTarget, SwapServerOptions, WebServer, normalize_url
from pressbox.output import OutputFormatter
from pressbox.registry import SiteRegistry
from pressbox.services.process_service import ServiceController
from pressbox.services.swap_service import build_engine

SERVERS = [s.value for s in WebServer]


def get_formatter(ctx: click.Context) -> OutputFormatter:
    """Get the output formatter from context."""
    return ctx.obj["formatter"]


@click.group()
def server() -> None:
    """Web server management.

    Swap a site between nginx and apache without leaving it half-broken:
    the swap is rolled back automatically if the new server fails to start
    or to answer its health check.

    \b
    Usage:
      pressbox server swap blog apache
      pressbox server status blog
      pressbox server stats blog
    """
    pass


@server.command("swap")
@click.argument("site_id")
@click.argument("to_server", type=click.Choice(SERVERS))
@click.option("--no-preserve", is_flag=True, help="Drop custom directives outside the managed block")
@click.option("--no-certs", is_flag=True, help="Do not copy TLS certificates to the new server")
@click.option("--no-backup", is_flag=True, help="Do not keep the pre-swap config backup")
@click.option("--url", "new_url", default=None, help="Also move the site to this URL")
@click.pass_context
def swap(
    ctx: click.Context,
    site_id: str,
    to_server: str,
    no_preserve: bool,
    no_certs: bool,
    no_backup: bool,
    new_url: str | None,
) -> None:
    """Swap a site's web server.

    \b
    Examples:
      pressbox server swap blog apache
      pressbox server swap blog nginx --no-certs
      pressbox --json server swap blog apache --url https://blog.test
    """
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    try:
        registry = SiteRegistry(config)
        site = registry.get(site_id)
        options = SwapServerOptions(
            from_server=site.web_server,
            to_server=WebServer.parse(to_server),
            preserve_config=not no_preserve,
            migrate_ssl_certs=not no_certs,
            backup_configs=not no_backup,
            new_url=new_url,
        )

        if not formatter.json_mode:
            click.echo(f"Swapping {site_id}: {site.web_server.value} -> {to_server}...")

        engine = build_engine(config, get_db(config))
        result = engine.swap_web_server(site, options)
    except PressBoxError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if not result.success:
        formatter.error(
            code="SWAP_FAILED" if not result.fatal else "SWAP_FAILED_FATAL",
            message="; ".join(result.errors),
            suggestion=(
                "Manual recovery needed, see the errors above"
                if result.fatal
                else f"Site is still running {site.web_server.value}"
            ),
            data=result.to_dict(),
        )
        raise SystemExit(1)

    domain = normalize_url(new_url)[1].split(":", 1)[0] if new_url else None
    registry.apply_result(site, result, domain=domain)
    formatter.success(result.to_dict(), message=f"Site {site_id} now runs {result.web_server}")


@server.command("status")
@click.argument("site_id")
@click.pass_context
def status(ctx: click.Context, site_id: str) -> None:
    """Show which server processes are running for a site."""
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    try:
        site = SiteRegistry(config).get(site_id)
    except PressBoxError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    controller = ServiceController(config)
    web = ServiceTarget.web_server(site.web_server)
    php = ServiceTarget.php_runtime(site.php_version)
    formatter.status_panel(
        f"PressBox: {site.id}",
        {
            "site": {
                "domain": site.domain,
                "url": site.url,
                "web_server": site.web_server.value,
                "php_version": site.php_version,
            },
            "web_server": controller.describe(site, web),
            "php_fpm": controller.describe(site, php),
            "other_processes": [
                t.label for t in controller.running_targets(site) if t not in (web, php)
            ],
        },
    )


@server.command("stats")
@click.argument("site_id")
@click.pass_context
def stats(ctx: click.Context, site_id: str) -> None:
    """Show uptime, memory, CPU and request count for a site's processes."""
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    try:
        site = SiteRegistry(config).get(site_id)
    except PressBoxError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    controller = ServiceController(config)
    rows = []
    for target in (
        ServiceTarget.web_server(site.web_server),
        ServiceTarget.php_runtime(site.php_version),
    ):
        rows.append({"target": target.label, **controller.stats(site, target).to_dict()})

    formatter.table(
        rows,
        columns=[
            ("target", "Service"),
            ("uptime", "Uptime"),
            ("memory", "Memory"),
            ("cpu", "CPU"),
            ("requests", "Requests"),
        ],
        title=f"Processes for {site.id}",
        message="Service stats retrieved",
    )
