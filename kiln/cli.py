"""Command-line interface for kiln.

This module defines the CLI commands using the Click framework.

Commands:
- build: Build the site into the output directory.
- cache clear: Remove cached image transforms and the build manifest.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

import click
from rich.logging import RichHandler

from . import __version__
from .config import load_config
from .errors import BuildError, ConfigError

_project_option = click.option(
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Project root containing kiln.yaml",
)


@click.group()
@click.version_option(version=__version__, prog_name="kiln")
def cli():
    """kiln static site builder."""


@cli.command()
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option("--clean", is_flag=True, help="Empty the output directory before writing")
@click.option("--verbose", "-v", is_flag=True, help="Report progress and every pruned file")
@click.option("--debug", is_flag=True, help="Show debug logging")
@_project_option
def build(drafts: bool, clean: bool, verbose: bool, debug: bool, project: Path):
    """Build the site into the output directory."""
    from .build import SiteBuilder

    project_root = project.resolve()
    _setup_logging(logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING)
    config = _load(project_root)
    if drafts:
        config = config.with_overrides(include_drafts=True)

    try:
        report = SiteBuilder(config).run(clean=clean)
    except BuildError as exc:
        # Display user-friendly error message
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        click.echo(
            click.style(f"  Source: {_display(exc.source_path, project_root)}", fg="yellow"),
            err=True,
        )
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
        raise SystemExit(1) from None

    if verbose:
        for destination in report.pruned:
            click.echo(f"Pruned {destination}")
    for failure in report.failures:
        click.echo(
            click.style(
                f"Skipped {_display(failure.source_path, project_root)}: {failure.message}",
                fg="yellow",
            ),
            err=True,
        )
    click.echo(
        f"Built {report.pages} pages into {_display(config.output_dir, project_root)} "
        f"({len(report.written)} written, {len(report.unchanged)} unchanged, "
        f"{len(report.pruned)} pruned)"
    )


@cli.group()
def cache():
    """Manage the build cache."""


@cache.command("clear")
@click.option("--images/--no-images", default=True, help="Remove cached image transforms")
@click.option("--manifest/--no-manifest", default=True, help="Remove the build manifest")
@_project_option
def cache_clear(images: bool, manifest: bool, project: Path):
    """Remove cached image transforms and the build manifest."""
    project_root = project.resolve()
    config = _load(project_root)
    removed = []
    if images and config.image_cache_dir.exists():
        shutil.rmtree(config.image_cache_dir)
        removed.append(config.image_cache_dir)
    if manifest and config.manifest_path.exists():
        config.manifest_path.unlink()
        removed.append(config.manifest_path)
    if not removed:
        click.echo("Cache already empty")
    for path in removed:
        click.echo(f"Removed {_display(path, project_root)}")


def main():
    """Entry point for the CLI application."""
    cli()


def _load(project_root: Path):
    try:
        return load_config(project_root)
    except ConfigError as exc:
        click.echo(click.style(f"Invalid configuration: {exc}", fg="red"), err=True)
        raise SystemExit(1) from None


def _display(path: Path | str, project_root: Path) -> str:
    """Show paths relative to the project root when possible."""
    if isinstance(path, Path):
        try:
            return str(path.relative_to(project_root))
        except ValueError:
            return str(path)
    return str(path)


def _setup_logging(level: int) -> logging.Logger:
    logger = logging.getLogger("kiln")
    logger.setLevel(level)
    logger.handlers = []
    logger.propagate = False
    handler = RichHandler(rich_tracebacks=True, show_time=False, show_level=True)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    return logger
