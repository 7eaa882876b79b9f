# src/spaces_backup/cli.py
"""Command-line interface for running a backup locally."""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import click
from dotenv import load_dotenv
from rich.console import Console

from spaces_backup.config import DEFAULT_ARCHIVE_PREFIX, DEFAULT_REGION
from spaces_backup.handler import STATUS_CLIENT_ERROR, invoke, setup_logging
from spaces_backup.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)

console: Console = Console()


def mask_secret(value: Optional[str]) -> str:
    """
    Hide all but the last four characters of a credential.

    Args:
        value (str, optional): The credential.

    Returns:
        str: ``***abcd``, or ``NOT SET``.
    """
    if not value:
        return "NOT SET"
    return f"***{value[-4:]}"


def describe_config(env: Dict[str, str]) -> None:
    """Print the effective configuration without revealing secrets."""
    console.print("[bold]Configuration:[/bold]")
    console.print(f"  Source Bucket: {env.get('SOURCE_BUCKET') or 'NOT SET'}")
    console.print(f"  Source Region: {env.get('SOURCE_REGION') or DEFAULT_REGION}")
    console.print(f"  Dest Bucket: {env.get('DEST_BUCKET') or 'NOT SET'}")
    console.print(f"  Dest Region: {env.get('DEST_REGION') or DEFAULT_REGION}")
    console.print(f"  Archive Prefix: {env.get('ARCHIVE_PREFIX') or DEFAULT_ARCHIVE_PREFIX}")
    console.print(f"  Spaces Key: {mask_secret(env.get('SPACES_KEY'))}")
    console.print(f"  Spaces Secret: {mask_secret(env.get('SPACES_SECRET'))}")


async def main_async(env: Dict[str, str], include_stack: bool) -> Dict[str, Any]:
    """
    Asynchronously execute one backup with signal handling.

    Args:
        env (Dict[str, str]): The configuration variables.
        include_stack (bool): Attach tracebacks to failure bodies.

    Returns:
        Dict[str, Any]: The response record.
    """
    shutdown_manager: GracefulShutdown = GracefulShutdown()
    async with shutdown_manager as shutdown_event:
        return await invoke(env, shutdown_event=shutdown_event, include_stack=include_stack)


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="File with KEY=VALUE settings; real environment variables win. "
    "Defaults to .env in the working directory, if present.",
)
@click.option(
    "--compression-level",
    type=click.IntRange(0, 9),
    default=None,
    help="Deflate level (0-9). Overrides COMPRESSION_LEVEL.",
)
@click.option(
    "--progress/--no-progress",
    default=True,
    help="Show a progress bar while archiving.",
    show_default=True,
)
@click.option(
    "--stack",
    is_flag=True,
    default=False,
    help="Include tracebacks in failure output.",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def cli(**kwargs: Any) -> None:
    """
    Back up every object of a Spaces bucket into one zip archive.

    The archive is streamed straight to the destination bucket as
    ``{ARCHIVE_PREFIX}/backup-{SOURCE_BUCKET}-{timestamp}.zip``.

    Credentials and bucket information must be set via environment variables
    or the env file: SOURCE_BUCKET, DEST_BUCKET, SPACES_KEY, SPACES_SECRET.
    """
    env_file: Optional[str] = kwargs["env_file"]
    if env_file is None and os.path.exists(".env"):
        env_file = ".env"
    if env_file is not None:
        load_dotenv(env_file, override=False)

    setup_logging(kwargs["log_level"])

    env: Dict[str, str] = dict(os.environ)
    if kwargs["compression_level"] is not None:
        env["COMPRESSION_LEVEL"] = str(kwargs["compression_level"])
    env["SHOW_PROGRESS"] = "true" if kwargs["progress"] else "false"

    describe_config(env)

    try:
        response: Dict[str, Any] = asyncio.run(main_async(env, kwargs["stack"]))
    except KeyboardInterrupt:
        logger.warning("Interrupted. Exiting.")
        sys.exit(130)

    console.print("[bold]Result:[/bold]")
    console.print_json(json.dumps(response))

    if response["statusCode"] >= STATUS_CLIENT_ERROR:
        logger.critical("Backup failed.")
        sys.exit(1)
    logger.info("✅ Backup completed successfully.")


if __name__ == "__main__":
    cli()
