"""
Command-line entry point for Atlassian Cloud backups.
"""

import asyncio
import signal
import sys
from pathlib import Path

import click
from loguru import logger
from pydantic import ValidationError

from cloud_backup_client.atlassian import (
    AtlassianProduct,
    AtlassianSiteConfig,
    transport_for,
)
from cloud_backup_client.backup_client import BackupSessionClient
from cloud_backup_client.models import (
    BackupScope,
    BackupSessionConfig,
    ExitCode,
    JobRequest,
    ProgressState,
    SessionResult,
)


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def _log_progress(progress: ProgressState) -> None:
    logger.info(f"Backup progress: {progress.percentage}%")


async def run_backup(
    product: AtlassianProduct,
    site_config: AtlassianSiteConfig,
    session_config: BackupSessionConfig,
    request: JobRequest,
    destination: Path,
) -> SessionResult:
    """Runs one backup session, cancelling cleanly on SIGINT"""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        # add_signal_handler is unavailable on Windows event loops
        pass

    try:
        async with transport_for(product, site_config) as transport:
            client = BackupSessionClient(
                transport,
                session_config,
                on_progress=_log_progress,
                cancel_event=cancel_event,
            )
            return await client.run(request, destination)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _backup_command(product: AtlassianProduct):
    @click.option("--site", required=True, help="Site host name, e.g. acme.atlassian.net")
    @click.option("--email", required=True, envvar="ATLASSIAN_EMAIL", help="Account e-mail")
    @click.option(
        "--token",
        required=True,
        envvar="ATLASSIAN_API_TOKEN",
        help="API token (default: $ATLASSIAN_API_TOKEN)",
    )
    @click.option(
        "--destination",
        required=True,
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        help="Existing folder the backup archive is saved to",
    )
    @click.option(
        "--attachments/--no-attachments",
        default=True,
        help="Include attachments in the backup (default: include)",
    )
    @click.option(
        "--wait-minutes",
        default=0,
        type=click.IntRange(min=0),
        help="Minutes to keep retrying while backups are frequency limited (default: 0)",
    )
    @click.option(
        "--progress-interval",
        default=10.0,
        type=click.FloatRange(min=0),
        help="Seconds between progress checks (default: 10)",
    )
    @click.option(
        "--log-level",
        default="info",
        type=click.Choice(["debug", "info", "warning", "error"]),
        help="Log level (default: info)",
    )
    @click.pass_context
    def command(
        ctx: click.Context,
        site: str,
        email: str,
        token: str,
        destination: Path,
        attachments: bool,
        wait_minutes: int,
        progress_interval: float,
        log_level: str,
    ) -> None:
        configure_logging(log_level)

        try:
            site_config = AtlassianSiteConfig(site=site, email=email, api_token=token)
        except ValidationError as e:
            click.echo(f"Invalid site settings: {e}", err=True)
            ctx.exit(ExitCode.invalid_input)

        session_config = BackupSessionConfig(
            wait_minutes=wait_minutes, progress_interval=progress_interval
        )
        request = JobRequest(
            scope=BackupScope.full if attachments else BackupScope.reduced,
            payload={"include_attachments": attachments},
        )

        logger.info(
            f"Starting {product.value} backup of {site_config.site} "
            f"(attachments={attachments}, wait_minutes={wait_minutes})"
        )
        result = asyncio.run(
            run_backup(product, site_config, session_config, request, destination)
        )

        if result.failure is not None:
            click.echo(result.failure.message, err=True)
        else:
            click.echo(f"Backup saved to {result.artifact_location}")
            if result.degraded:
                click.echo("Backup was taken without attachments", err=True)
        ctx.exit(int(result.exit_code))

    command.__doc__ = f"Back up a {product.value.capitalize()} Cloud site."
    return command


@click.group()
def cli() -> None:
    """Cloud-to-cloud backups for Jira and Confluence."""
    pass


cli.command(name="jira")(_backup_command(AtlassianProduct.jira))
cli.command(name="confluence")(_backup_command(AtlassianProduct.confluence))


if __name__ == "__main__":
    cli()
