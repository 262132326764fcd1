"""
Main CLI entry point for Instancer.

This module defines the Click command group and registers all subcommands.
"""

import click

from instancer.cli.instances import (
    check_updates,
    content,
    create,
    delete,
    list_instances,
    loader_versions,
    log,
    migrate,
    reinstall,
)
from instancer.utils.app_info import AppInfo


@click.group()
@click.version_option(version=AppInfo().app_version, prog_name="Instancer")
def cli() -> None:
    """Instancer - game instance manager CLI

    Create, reinstall and migrate instances headlessly. Installs run in the
    foreground and print their progress; Ctrl+C aborts the running install and
    marks the instance stopped.

    The data folder can be moved with the INSTANCER_DATA_DIR environment variable.
    """
    pass


# Register subcommands
cli.add_command(create)
cli.add_command(reinstall)
cli.add_command(migrate)
cli.add_command(delete)
cli.add_command(list_instances)
cli.add_command(content)
cli.add_command(check_updates)
cli.add_command(loader_versions)
cli.add_command(log)


if __name__ == "__main__":
    cli()
