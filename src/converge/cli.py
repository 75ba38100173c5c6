"""converge command line interface.

Usage:
    converge plan PATH            # Show what apply would do
    converge apply PATH           # Converge infrastructure to PATH
    converge destroy              # Destroy everything in recorded state
    converge state list           # List recorded resources
    converge force-unlock LOCK_ID # Remove a stale state lock

Engine settings come from CONVERGE_* environment variables. Reports are
printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from . import main
from .config import ConfigurationError, EngineConfig
from .state import StateError

# =============================================================================
# Helpers
# =============================================================================


def load_config() -> EngineConfig:
    try:
        return EngineConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def emit(report: dict[str, Any]) -> None:
    click.echo(json.dumps(report, indent=2, sort_keys=True, default=str))


def finish(code: int, report: dict[str, Any]) -> None:
    emit(report)
    sys.exit(code)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """converge - declarative infrastructure reconciliation."""
    main.setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def plan(path: Path) -> None:
    """Plan changes for the declarations in PATH without applying them."""
    finish(*main.reconcile(path, dry_run=True, config=load_config()))


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def apply(path: Path) -> None:
    """Apply the declarations in PATH."""
    finish(*main.reconcile(path, dry_run=False, config=load_config()))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Only show what would be destroyed")
@click.confirmation_option(prompt="Destroy every resource in recorded state?")
def destroy(dry_run: bool) -> None:
    """Destroy every resource in recorded state."""
    finish(*main.reconcile(None, dry_run=dry_run, config=load_config()))


@cli.command("force-unlock")
@click.argument("lock_id")
def force_unlock(lock_id: str) -> None:
    """Remove a stale lock left behind by a crashed run."""
    store = main.build_store(load_config())
    try:
        store.force_unlock(lock_id)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"Lock {lock_id} removed", fg="green", err=True)


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect recorded state."""
    pass


@state.command("list")
def state_list() -> None:
    """List recorded resources."""
    store = main.build_store(load_config())
    try:
        entries = store.snapshot_all()
        serial, lineage = store.serial, store.lineage
        holder = store.backend.lock_info()
    except StateError as e:
        raise click.ClickException(str(e)) from e

    emit(
        {
            "serial": serial,
            "lineage": lineage,
            "lock": holder.model_dump(mode="json") if holder is not None else None,
            "resources": [
                {
                    "identity": str(identity),
                    "external_id": entry.external_id,
                    "dependencies": entry.dependencies,
                    "updated_at": entry.updated_at.isoformat(),
                }
                for identity, entry in sorted(entries.items())
            ],
        }
    )


def run() -> None:
    """Entry point for the converge console script."""
    cli()


if __name__ == "__main__":
    run()
