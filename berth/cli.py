"""
Berth Command-Line Interface

Runs lifecycle operations against the containers of one service.
"""

import sys
import asyncio
import logging
from pathlib import Path
from typing import Optional

import click

from berth import __version__
from berth.core.config_manager import ConfigManager
from berth.core.container import ContainerHandle
from berth.core.exceptions import BerthError
from berth.core.logging_config import setup_logging
from berth.core.project import Project
from berth.core.runtime_client import DockerRuntimeClient

logger = logging.getLogger("berth.cli")


def _project(ctx: click.Context) -> Project:
    """Build the project on first use so every command shares one instance."""
    obj = ctx.ensure_object(dict)
    if "project" not in obj:
        config = ConfigManager().load(
            config_file=str(obj["config_path"]) if obj.get("config_path") else None
        )
        setup_logging(
            level=obj.get("log_level") or config.logging.level,
            format_type=config.logging.format,
            log_file=config.logging.file,
            rotation_size=config.logging.rotation_size,
            rotation_count=config.logging.rotation_count,
            module_levels=config.logging.module_levels,
        )
        client = DockerRuntimeClient.from_env(config.docker.base_url, config.docker.timeout)
        obj["project"] = Project.from_config(config, client)
        logger.debug(f"Project '{config.project.name}' declares {len(config.services)} service(s)")
    return obj["project"]


def _handle(ctx: click.Context, service: str, number: int) -> ContainerHandle:
    project = _project(ctx)
    try:
        return project.create_service(service).container(number)
    except KeyError:
        raise click.BadParameter(f"unknown service '{service}'", param_hint="SERVICE")


def _run(coro) -> None:
    """Run a lifecycle coroutine, turning Berth errors into a non-zero exit."""
    try:
        asyncio.run(coro)
    except BerthError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo()


service_argument = click.argument("service")
number_option = click.option(
    "--number",
    "-n",
    default=1,
    type=click.IntRange(min=1),
    help="Container number within the service",
    show_default=True,
)


@click.group()
@click.version_option(version=__version__, prog_name="berth")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to project configuration file",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx, config_path: Optional[Path], log_level: Optional[str]):
    """
    Berth - container lifecycle for multi-service projects

    Creates, starts, stops and removes the containers of a service.
    """
    obj = ctx.ensure_object(dict)
    obj.setdefault("config_path", config_path)
    obj.setdefault("log_level", log_level.upper() if log_level else None)


@cli.command()
@service_argument
@number_option
@click.option("--detach", "-d", is_flag=True, help="Do not follow container output after start")
@click.pass_context
def up(ctx, service: str, number: int, detach: bool):
    """
    Create and start a service container.

    Examples:
        berth up web
        berth -c project.yaml up worker -n 2 -d
    """
    handle = _handle(ctx, service, number)

    async def _up():
        if detach:
            handle.service.context.log = False
        task = await handle.up()
        click.echo(f"[OK] {handle.name} is up")
        if task is not None:
            try:
                await task.wait()
            finally:
                # Closes the follow stream so the executor thread can exit on Ctrl-C
                task.cancel()

    _run(_up())


@cli.command()
@service_argument
@number_option
@click.pass_context
def create(ctx, service: str, number: int):
    """Create a service container without starting it."""
    handle = _handle(ctx, service, number)

    async def _create():
        container = await handle.create()
        click.echo(container.id)

    _run(_create())


@cli.command()
@service_argument
@number_option
@click.pass_context
def down(ctx, service: str, number: int):
    """Stop a service container."""
    handle = _handle(ctx, service, number)
    _run(handle.down())
    click.echo(f"[OK] {handle.name} stopped")


@cli.command()
@service_argument
@number_option
@click.pass_context
def rm(ctx, service: str, number: int):
    """Stop and remove a service container. Volumes are kept."""
    handle = _handle(ctx, service, number)
    _run(handle.delete())
    click.echo(f"[OK] {handle.name} removed")


@cli.command()
@service_argument
@number_option
@click.pass_context
def restart(ctx, service: str, number: int):
    """Restart a service container."""
    handle = _handle(ctx, service, number)
    _run(handle.restart())
    click.echo(f"[OK] {handle.name} restarted")


@cli.command()
@service_argument
@click.pass_context
def pull(ctx, service: str):
    """Pull the image of a service."""
    handle = _handle(ctx, service, 1)
    _run(handle.pull())
    click.echo(f"[OK] Pulled {handle.service.config.image}")


@cli.command()
@service_argument
@number_option
@click.pass_context
def logs(ctx, service: str, number: int):
    """
    Follow the output of a service container until it stops.

    Examples:
        berth logs web
    """
    handle = _handle(ctx, service, number)
    _run(handle.log())


@cli.command(name="id")
@service_argument
@number_option
@click.pass_context
def container_id(ctx, service: str, number: int):
    """Print the engine id of a service container."""
    handle = _handle(ctx, service, number)
    try:
        value = handle.id()
    except BerthError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)
    if value is None:
        click.echo(f"{handle.name} does not exist", err=True)
        sys.exit(1)
    click.echo(value)


@cli.command()
@service_argument
@click.pass_context
def ps(ctx, service: str):
    """List the existing containers of a service and their state."""
    project = _project(ctx)
    try:
        handles = project.create_service(service).containers()
        for handle in handles:
            click.echo(f"{handle.name:<40} {handle.state().value}")
    except KeyError:
        raise click.BadParameter(f"unknown service '{service}'", param_hint="SERVICE")
    except BerthError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)


def main():
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
