"""Metadata CLI commands."""

from pathlib import Path

import click

from entityforge.metadata import MetadataError, load_registry
from entityforge.persistence import metadata_path_from_env


@click.group()
def metadata():
    """Metadata commands."""
    pass


@metadata.command()
@click.option(
    "--path",
    "target_path",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Metadata directory (default: ENTITYFORGE_METADATA_PATH or ./metadata).",
)
def validate(target_path: Path | None):
    """Load the metadata directory and check every cross-reference."""
    metadata_path = target_path or metadata_path_from_env()
    if not metadata_path.exists():
        click.echo(f"Error: Metadata directory not found at {metadata_path}", err=True)
        raise SystemExit(1)

    try:
        registry = load_registry(metadata_path)
    except MetadataError as e:
        click.echo(click.style(f"Metadata validation failed: {e}", fg="red"), err=True)
        raise SystemExit(1)

    click.echo(f"Loaded {len(registry.entities)} entities:")
    for name in sorted(registry.entities):
        entity = registry.entities[name]
        relation_count = len(registry.relations_of(name))
        click.echo(f"  ✓ {name} ({len(entity.fields)} fields, {relation_count} relations)")

    counts = registry.summary()
    click.echo(", ".join(f"{count} {kind}" for kind, count in counts.items()))
    click.echo(click.style("\nAll metadata is valid.", fg="green", bold=True))
