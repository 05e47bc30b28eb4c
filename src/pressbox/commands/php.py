"""PHP runtime CLI commands for PressBox."""

import click

from pressbox.database import get_db
from pressbox.errors import PressBoxError
from pressbox.models import PHPVersionChangeOptions
from pressbox.output import OutputFormatter
from pressbox.registry import SiteRegistry
from pressbox.services.swap_service import build_engine


def get_formatter(ctx: click.Context) -> OutputFormatter:
    """Get the output formatter from context."""
    return ctx.obj["formatter"]


@click.group()
def php() -> None:
    """PHP runtime management.

    \b
    Usage:
      pressbox php versions
      pressbox php change blog 8.2
      pressbox php change blog 8.3 --no-extensions
    """
    pass


@php.command("change")
@click.argument("site_id")
@click.argument("version")
@click.option("--no-extensions", is_flag=True, help="Do not carry enabled extensions over")
@click.option("--no-preserve", is_flag=True, help="Drop custom directives outside the managed block")
@click.option("--no-restart", is_flag=True, help="Do not restart the web server")
@click.pass_context
def change(
    ctx: click.Context,
    site_id: str,
    version: str,
    no_extensions: bool,
    no_preserve: bool,
    no_restart: bool,
) -> None:
    """Change the PHP version a site runs on.

    \b
    Examples:
      pressbox php change blog 8.2
      pressbox --json php change blog 7.4 --no-restart
    """
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    try:
        registry = SiteRegistry(config)
        site = registry.get(site_id)
        options = PHPVersionChangeOptions(
            new_version=version,
            migrate_extensions=not no_extensions,
            preserve_config=not no_preserve,
            restart_services=not no_restart,
        )

        if not formatter.json_mode:
            click.echo(f"Changing {site_id}: PHP {site.php_version} -> {version}...")

        engine = build_engine(config, get_db(config))
        result = engine.change_php_version(site, options)
    except PressBoxError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if not result.success:
        formatter.error(
            code="PHP_VERSION_CHANGE_FAILED" if not result.fatal else "PHP_VERSION_CHANGE_FATAL",
            message="; ".join(result.errors),
            suggestion=(
                "Manual recovery needed, see the errors above"
                if result.fatal
                else f"Site is still running PHP {site.php_version}"
            ),
            data=result.to_dict(),
        )
        raise SystemExit(1)

    registry.apply_result(site, result)
    formatter.success(result.to_dict(), message=f"Site {site_id} now runs PHP {result.php_version}")


@php.command("versions")
@click.pass_context
def versions(ctx: click.Context) -> None:
    """List the PHP versions sites can switch to."""
    formatter = get_formatter(ctx)
    config = ctx.obj["config"]

    rows = [
        {
            "version": version,
            "fpm": config.php_fpm_bin.format(version=version),
            "cli": config.php_cli_bin.format(version=version),
        }
        for version in config.supported_php_versions
    ]
    formatter.table(
        rows,
        columns=[("version", "Version"), ("fpm", "FPM binary"), ("cli", "CLI binary")],
        title="Supported PHP versions",
        message="PHP versions retrieved",
    )
