"""CLI entry point for the feed-to-Bluesky pipeline."""
import logging
from pathlib import Path

import click

from bskyfeed.config import get_compressor, get_persister, get_publisher, load_config
from bskyfeed.database import StateStore
from bskyfeed.errors import ConfigError
from bskyfeed.feed import FeedFetcher
from bskyfeed.logging_config import setup_logging
from bskyfeed.media import MediaNormalizer
from bskyfeed.pipeline import run_pipeline


def _load_config(env_file: str | None) -> dict:
    try:
        return load_config(env_file=Path(env_file) if env_file else None)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@click.group()
def cli():
    """Post new RSS feed entries to Bluesky."""
    pass


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Show debug output on the console")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Read settings from this .env file")
def run(verbose: bool, env_file: str | None):
    """Publish new feed entries once, then exit."""
    config = _load_config(env_file)
    setup_logging(config["logging"]["dir"], config["logging"]["retention_days"], verbose)
    logger = logging.getLogger(__name__)
    logger.info("bskyfeed starting")

    try:
        persister = get_persister(config)
        publisher = get_publisher(config)
        compressor = get_compressor(config)
    except ConfigError as e:
        logger.error(f"Error: {e}")
        raise SystemExit(1)

    timeout = config["feed"]["request_timeout"]
    result = run_pipeline(
        config,
        persister=persister,
        fetcher=FeedFetcher(timeout=timeout),
        normalizer=MediaNormalizer(compressor, timeout=timeout),
        publisher=publisher,
    )

    click.echo(f"Published: {result.published}, New: {result.new}, Failed: {len(result.failures)}")
    if result.error:
        click.echo(f"Error: {result.error}", err=True)
    raise SystemExit(result.exit_code)


@cli.command()
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Read settings from this .env file")
def status(env_file: str | None):
    """Show how many entries the local state file has recorded."""
    config = _load_config(env_file)
    db_path = config["database"]["path"]
    if not db_path.exists():
        click.echo(f"No state file at {db_path}")
        return

    with StateStore(db_path) as store:
        click.echo(f"{db_path}: {store.count()} published entries")


if __name__ == "__main__":
    cli()
