"""authctx command line entry point."""

import logging

import click

from . import __version__
from .commands import collect, inventory

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@click.group()
@click.version_option(__version__, prog_name="authctx")
def main():
    """Inventory where authentication contexts are enforced across a tenant."""
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)


main.add_command(collect.collect_command)
main.add_command(inventory.inventory_command)


if __name__ == "__main__":
    main()
