"""EntityForge CLI entry point."""

import click


@click.group()
def cli():
    """EntityForge: metadata-driven backend engine CLI."""
    pass


# Register subcommand groups
from entityforge.cli.expr_cmd import expr  # noqa: E402
from entityforge.cli.metadata_cmd import metadata  # noqa: E402

cli.add_command(metadata)
cli.add_command(expr)
