"""IAM reconciler CLI.

Usage:
    iam-reconciler run                     # Reconcile every account in SPECS_DIR
    iam-reconciler run -a dev -a staging   # Reconcile selected accounts
    iam-reconciler validate                # Check desired-state documents offline
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .main import resolve_accounts, run_once, setup_logging
from .orchestrator import AccountStatus, RunReport
from .spec_loader import DirectoryStateSource, SpecLoadError

STATUS_COLORS = {
    AccountStatus.SUCCEEDED: "green",
    AccountStatus.FAILED: "red",
    AccountStatus.SKIPPED: "yellow",
}


def load_config(specs_dir: Path | None) -> Config:
    """Load configuration from the environment, optionally overriding SPECS_DIR.

    Raises:
        click.ClickException: If configuration is invalid.
    """
    try:
        return Config.from_env(specs_dir=specs_dir)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def print_report(report: RunReport) -> None:
    """Print a per-account summary of a run."""
    for result in report.results:
        color = STATUS_COLORS[result.status]
        line = f"{result.account}: {click.style(result.status.value, fg=color)}"
        if result.error is not None:
            stage = result.stage.value if result.stage else "unknown"
            line += f" [{stage}] {result.error}"
        click.echo(line)

        for stage, failures in result.entity_failures.items():
            for name, error in sorted(failures.items()):
                click.echo(f"  {stage}/{name}: {error}")

    sent = sum(1 for d in report.deliveries if d.success)
    click.echo(f"Notifications: {sent}/{len(report.deliveries)} delivered")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Reconcile IAM users, groups and policies across accounts."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.option(
    "-a",
    "--account",
    "accounts",
    multiple=True,
    help="Account to reconcile (repeatable). Defaults to ACCOUNTS or all account directories.",
)
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory with one sub-directory per account (overrides SPECS_DIR).",
)
def run(accounts: tuple[str, ...], specs_dir: Path | None) -> None:
    """Reconcile accounts against their desired state."""
    config = load_config(specs_dir)
    if accounts:
        config = dataclasses.replace(config, accounts=accounts)

    try:
        report = asyncio.run(run_once(config))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    print_report(report)
    if not report.success:
        raise SystemExit(1)


@cli.command()
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory with one sub-directory per account (overrides SPECS_DIR).",
)
def validate(specs_dir: Path | None) -> None:
    """Load every account's desired state without contacting AWS."""
    config = load_config(specs_dir)
    source = DirectoryStateSource(config.specs_dir)

    try:
        accounts = resolve_accounts(config, source)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    errors = 0
    for account in accounts:
        try:
            state = source.load(account)
        except SpecLoadError as e:
            errors += 1
            click.echo(f"{account}: {click.style('invalid', fg='red')}\n{e}")
            continue
        click.echo(
            f"{account}: {click.style('ok', fg='green')} "
            f"({len(state.users)} users, {len(state.groups)} groups, "
            f"{len(state.policies)} policies)"
        )

    if errors:
        raise click.ClickException(f"{errors} of {len(accounts)} accounts failed validation")
