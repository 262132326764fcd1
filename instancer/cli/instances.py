"""
Instance subcommands.

Each command builds the same object graph the application uses (settings, registry
client, content cache, instance controller), runs one request on a fresh event loop and
prints progress from the EventBus until the install task finishes.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import click
from PySide6.QtCore import QCoreApplication

from instancer.controllers.instance_controller import InstanceController
from instancer.models.install_state import ContentUpdate, InstallOutcome
from instancer.models.settings import Settings
from instancer.utils.constants import ContentKind, LoaderFamily
from instancer.utils.content_cache import ContentLookupCache
from instancer.utils.event_bus import EventBus
from instancer.utils.exception import (
    InstanceNotFoundError,
    InvalidInstanceConfigError,
    RegistryFetchError,
)
from instancer.utils.registry.client import RegistryClient
from instancer.utils.registry.retry import RegistryRetryConfig

T = TypeVar("T")

LOADER_CHOICE = click.Choice([family.value for family in LoaderFamily], case_sensitive=False)


@asynccontextmanager
async def _controller() -> AsyncIterator[InstanceController]:
    settings = Settings()
    settings.load()
    cache = ContentLookupCache(settings.content_cache_path)
    retry_config = RegistryRetryConfig(max_retries=settings.max_retries)
    async with RegistryClient(settings.request_timeout, retry_config) as client:
        yield InstanceController(settings, client, cache)


def _run(coro_factory: Callable[[InstanceController], Awaitable[T]], quiet: bool = False) -> T:
    """Run one controller request on a new event loop, echoing install events."""
    # Signals need a Qt application object to exist, even without an event loop
    _app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])

    def on_progress(name: str, percent: int, status: str) -> None:
        if status:
            click.echo(f"[{name}] {percent:3d}% {status}")

    def on_status(name: str, status: str, error: str) -> None:
        message = f"[{name}] status: {status}"
        if error:
            click.secho(f"{message} ({error})", fg="red", err=True)
        else:
            click.echo(message)

    event_bus = EventBus()
    if not quiet:
        event_bus.install_progress.connect(on_progress)
    event_bus.instance_status.connect(on_status)

    async def main() -> T:
        async with _controller() as controller:
            try:
                return await coro_factory(controller)
            except asyncio.CancelledError:
                # Ctrl+C: installs still running are aborted and marked stopped
                for name in controller.abort_all():
                    click.echo(f"Aborted install of {name}", err=True)
                raise

    try:
        return asyncio.run(main())
    except (InstanceNotFoundError, InvalidInstanceConfigError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    except RegistryFetchError as e:
        click.secho(f"Registry request failed: {e}", fg="red", err=True)
        sys.exit(1)
    finally:
        if not quiet:
            event_bus.install_progress.disconnect(on_progress)
        event_bus.instance_status.disconnect(on_status)


def _exit_for(outcome: InstallOutcome) -> None:
    if outcome is InstallOutcome.ERROR:
        sys.exit(1)
    if outcome is InstallOutcome.STOPPED:
        sys.exit(2)


@click.command("create")
@click.argument("name")
@click.option("--version", "game_version", required=True, help="Base game version, e.g. 1.20.1.")
@click.option("--loader", type=LOADER_CHOICE, default="vanilla", show_default=True)
@click.option("--loader-version", default=None, help="Loader version (newest when omitted).")
@click.option("--icon", default=None, help="Icon reference stored in instance.json.")
@click.option("--quiet", is_flag=True, help="Suppress progress output (errors still shown).")
def create(
    name: str,
    game_version: str,
    loader: str,
    loader_version: Optional[str],
    icon: Optional[str],
    quiet: bool,
) -> None:
    """Create an instance and install it.

    \b
    Examples:
      instancer create "Survival" --version 1.20.1 --loader fabric
      instancer create "Modded" --version 1.20.1 --loader forge --loader-version 47.2.0
    """

    async def request(controller: InstanceController) -> InstallOutcome:
        final_name, task = controller.create_instance(
            name, game_version, loader, loader_version, icon
        )
        if final_name != name:
            click.echo(f"Name taken, using {final_name!r}")
        # Shielded so Ctrl+C reaches _run while the task still holds its slot
        return await asyncio.shield(task)

    _exit_for(_run(request, quiet))


@click.command("reinstall")
@click.argument("name")
@click.option("--hard", is_flag=True, help="Wipe every file except instance.json first.")
@click.option("--quiet", is_flag=True, help="Suppress progress output (errors still shown).")
def reinstall(name: str, hard: bool, quiet: bool) -> None:
    """Reinstall an instance with its current versions."""

    async def request(controller: InstanceController) -> InstallOutcome:
        return await asyncio.shield(controller.reinstall(name, hard=hard))

    _exit_for(_run(request, quiet))


@click.command("migrate")
@click.argument("name")
@click.option("--version", "game_version", default=None, help="New base game version.")
@click.option("--loader", type=LOADER_CHOICE, default=None)
@click.option("--loader-version", default=None)
@click.option("--quiet", is_flag=True, help="Suppress progress output (errors still shown).")
def migrate(
    name: str,
    game_version: Optional[str],
    loader: Optional[str],
    loader_version: Optional[str],
    quiet: bool,
) -> None:
    """Move an instance to another version or loader, updating its mods."""
    if game_version is None and loader is None and loader_version is None:
        raise click.UsageError("Nothing to migrate: pass --version, --loader or --loader-version")

    async def request(controller: InstanceController) -> InstallOutcome:
        return await asyncio.shield(
            controller.migrate(name, game_version, loader, loader_version)
        )

    _exit_for(_run(request, quiet))


@click.command("delete")
@click.argument("name")
@click.confirmation_option(prompt="Delete this instance and all of its files?")
def delete(name: str) -> None:
    """Delete an instance folder."""

    async def request(controller: InstanceController) -> bool:
        return await controller.delete_instance(name)

    if not _run(request, quiet=True):
        click.echo(f"No instance named {name!r}")


@click.command("list")
def list_instances() -> None:
    """List instances with their version and status."""

    async def request(controller: InstanceController) -> None:
        instances = controller.list_instances()
        if not instances:
            click.echo("No instances")
        for config in instances:
            loader = config.loader.value
            if config.loader_version:
                loader = f"{loader} {config.loader_version}"
            line = f"{config.name}  {config.version}  {loader}  [{config.status.value}]"
            if config.error:
                line += f"  {config.error}"
            click.echo(line)

    _run(request, quiet=True)


@click.command("content")
@click.argument("name")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in ContentKind]),
    default=ContentKind.MOD.value,
    show_default=True,
)
def content(name: str, kind: str) -> None:
    """List installed mods, resource packs or shader packs."""

    async def request(controller: InstanceController) -> None:
        for item in await controller.list_content(name, ContentKind(kind)):
            state = "" if item.enabled else " (disabled)"
            details = f" {item.version}" if item.version else ""
            click.echo(f"{item.title or item.filename}{details}{state}  {item.filename}")

    _run(request, quiet=True)


@click.command("check-updates")
@click.argument("name")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in ContentKind]),
    default=ContentKind.MOD.value,
    show_default=True,
)
def check_updates(name: str, kind: str) -> None:
    """List installed content that has a newer compatible version."""

    async def request(controller: InstanceController) -> list[ContentUpdate]:
        return await controller.check_updates(name, ContentKind(kind))

    updates = _run(request, quiet=True)
    if not updates:
        click.echo(f"Everything in {name} is up to date")
    for update in updates:
        current = update.current_version or "unknown"
        click.echo(
            f"{update.filename}: {current} -> {update.new_version}  ({update.candidate.new_filename})"
        )


@click.command("loader-versions")
@click.argument("loader", type=LOADER_CHOICE)
@click.argument("game_version")
@click.option("--limit", type=int, default=20, show_default=True)
def loader_versions(loader: str, game_version: str, limit: int) -> None:
    """List loader versions available for a base game version, newest first."""

    async def request(controller: InstanceController) -> list[str]:
        return await controller.loader_versions(loader, game_version)

    versions = _run(request, quiet=True)
    if not versions:
        click.echo(f"No {loader} versions for {game_version}")
    for version in versions[:limit] if limit > 0 else versions:
        click.echo(version)


@click.command("log")
@click.argument("name")
def log(name: str) -> None:
    """Print the install log of an instance."""

    async def request(controller: InstanceController) -> str:
        return controller.read_install_log(name)

    transcript = _run(request, quiet=True)
    if transcript:
        click.echo(transcript, nl=False)
    else:
        click.echo(f"No install log for {name!r}")
