"""Main CLI entry point for PressBox."""

import logging
from pathlib import Path

import click

from pressbox import __version__
from pressbox.config import PressBoxConfig, get_config
from pressbox.output import OutputFormatter

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: PressBoxConfig, verbose: bool = False) -> None:
    """Send pressbox.* logs to stderr and to <log_dir>/pressbox.log."""
    logger = logging.getLogger("pressbox")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)

    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_dir / "pressbox.log")
    except OSError as e:
        logger.warning(f"File logging disabled: {e}")
    else:
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)


@click.group()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.yaml",
)
@click.version_option(version=__version__, prog_name="pressbox")
@click.pass_context
def cli(ctx: click.Context, output_json: bool, verbose: bool, config_path: Path | None) -> None:
    """PressBox - live web server and PHP swaps for local WordPress sites.

    Swap a site between nginx and apache, change its PHP version or move it
    to a new URL. Every change is transactional: a failed swap rolls the
    site back to the stack it was running before.
    Use --json flag for machine-readable output.
    """
    ctx.ensure_object(dict)
    config = PressBoxConfig.load(config_path) if config_path else get_config()
    setup_logging(config, verbose)
    ctx.obj["config"] = config
    ctx.obj["formatter"] = OutputFormatter(json_mode=output_json)
    ctx.obj["json_mode"] = output_json


# Import and register commands
from pressbox.commands import backup  # noqa: E402
from pressbox.commands import php  # noqa: E402
from pressbox.commands import server  # noqa: E402
from pressbox.commands import site  # noqa: E402

cli.add_command(server.server)
cli.add_command(php.php)
cli.add_command(site.site)
cli.add_command(backup.backup)
