"""podmedic command-line interface.

Flags override the PODMEDIC_* environment snapshot; everything not given on
the command line keeps its environment or default value.

    podmedic run --namespace kube-system --namespace default --dry-run
    podmedic config
"""

from __future__ import annotations

import asyncio
import dataclasses
import json

import click

from podmedic import __version__
from podmedic.config import load_config, validate_config
from podmedic.models.config import PodmedicConfig


def _load_or_exit() -> PodmedicConfig:
    try:
        return load_config()
    except ValueError as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc


def _apply_overrides(
    config: PodmedicConfig,
    namespaces: tuple[str, ...],
    dry_run: bool | None,
    log_level: str | None,
) -> PodmedicConfig:
    if namespaces:
        config = dataclasses.replace(
            config,
            watch=dataclasses.replace(config.watch, namespaces=tuple(dict.fromkeys(namespaces))),
        )
    if dry_run is not None:
        config = dataclasses.replace(
            config,
            remediation=dataclasses.replace(config.remediation, dry_run=dry_run),
        )
    if log_level is not None:
        config = dataclasses.replace(config, log=dataclasses.replace(config.log, level=log_level.lower()))
    try:
        return validate_config(config)
    except ValueError as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc


@click.group()
@click.version_option(__version__, prog_name="podmedic")
def cli() -> None:
    """Watch Kubernetes events and delete pods stuck on known failures."""


@cli.command()
@click.option(
    "--namespace",
    "-n",
    "namespaces",
    multiple=True,
    help="Namespace to watch (repeatable). Omit to watch all namespaces.",
)
@click.option(
    "--dry-run/--no-dry-run",
    default=None,
    help="Log the pods that would be deleted without deleting them.",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
)
def run(namespaces: tuple[str, ...], dry_run: bool | None, log_level: str | None) -> None:
    """Run the watch and remediation pipelines until interrupted."""
    from podmedic.app import main

    config = _apply_overrides(_load_or_exit(), namespaces, dry_run, log_level)
    asyncio.run(main(config))


@cli.command("config")
def show_config() -> None:
    """Print the effective configuration as JSON and exit."""
    config = _load_or_exit()
    click.echo(json.dumps(dataclasses.asdict(config), indent=2, default=str))
