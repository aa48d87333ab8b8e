"""Command-line interface for dmstack.

Usage:
    dmstack list                                   # Registered scenarios
    dmstack run device_failure --data-dev /dev/sdb --metadata-dev /dev/nvme0n1p1
    DMSTACK_DATA_DEV=/dev/sdb DMSTACK_METADATA_DEV=/dev/nvme0n1p1 dmstack run -v migration_replay
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import NoReturn

import click
from pydantic import ValidationError

from dmstack import __version__, constants
from dmstack._logging import configure_logging
from dmstack.exceptions import AssertionFailedError, DmStackError
from dmstack.scenarios import SCENARIOS, ScenarioContext, run_scenario
from dmstack.settings import Settings
from dmstack.system_probes import check_root, check_target_available

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_SCENARIO_FAILED = 1
# Usage errors exit 2 through click.UsageError


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


async def run_one(name: str, settings: Settings) -> int:
    """Run scenario `name` and map the outcome to an exit code."""
    if not check_root():
        click.echo(click.style("Warning: not running as root; device-mapper calls will fail", fg="yellow"), err=True)
    if SCENARIOS[name].needs_writeboost and not await check_target_available(
        constants.WRITEBOOST_TARGET, str(settings.dmsetup_bin)
    ):
        # Not fatal: dmsetup create loads the module on demand
        click.echo(click.style("Warning: writeboost target not loaded (modprobe dm-writeboost)", fg="yellow"), err=True)

    try:
        ctx = ScenarioContext.from_settings(settings)
        await run_scenario(name, ctx)
    except AssertionFailedError as e:
        click.echo(format_error(f"Scenario {name} failed", e.message), err=True)
        return EXIT_SCENARIO_FAILED
    except DmStackError as e:
        error_msg = format_error(
            f"Scenario {name} aborted",
            f"{type(e).__name__}: {e.message}",
            [
                "Check that the dm-writeboost module is loaded: dmsetup targets",
                "Run as root; device-mapper and mount need it",
                "Check for leftover devices: dmsetup ls",
            ],
        )
        click.echo(error_msg, err=True)
        return EXIT_SCENARIO_FAILED

    click.echo(click.style(f"✓ {name} passed", fg="green"), err=True)
    return EXIT_SUCCESS


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="dmstack")
def main() -> None:
    """Drive dm-writeboost device stacks through test scenarios."""


@main.command("list")
def list_scenarios() -> None:
    """List registered scenarios."""
    width = max(len(n) for n in SCENARIOS)
    for name in sorted(SCENARIOS):
        sc = SCENARIOS[name]
        marker = "" if sc.needs_writeboost else "  [any stack]"
        click.echo(f"{name:<{width}}  {sc.description}{marker}")


@main.command("run")
@click.argument("name")
@click.option("--data-dev", help="Slow device holding the backing store [env: DMSTACK_DATA_DEV]")
@click.option("--metadata-dev", help="Fast device holding the cache [env: DMSTACK_METADATA_DEV]")
@click.option(
    "--stack-type",
    type=click.Choice(["caching", "backing"], case_sensitive=False),
    help="Stack variant to build [env: DMSTACK_STACK_TYPE]",
)
@click.option("--pace", type=float, help="Seconds between state-changing device operations")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Errors only")
def run_command(
    name: str,
    data_dev: str | None,
    metadata_dev: str | None,
    stack_type: str | None,
    pace: float | None,
    verbose: bool,
    quiet: bool,
) -> NoReturn:
    """Run scenario NAME against the configured devices."""
    if name not in SCENARIOS:
        raise click.UsageError(f"Unknown scenario {name!r}. Try 'dmstack list'.")

    overrides = {
        "data_dev": data_dev,
        "metadata_dev": metadata_dev,
        "stack_type": stack_type.lower() if stack_type else None,
        "pace_seconds": pace,
    }
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    if not settings.data_dev or not settings.metadata_dev:
        raise click.UsageError("Both --data-dev and --metadata-dev are required (or DMSTACK_DATA_DEV/DMSTACK_METADATA_DEV).")

    sc = SCENARIOS[name]
    if sc.needs_writeboost and settings.stack_type != "caching":
        raise click.UsageError(f"Scenario {name!r} needs --stack-type caching.")

    configure_logging(level=logging.DEBUG if verbose else logging.INFO, quiet=quiet)

    exit_code = asyncio.run(run_one(name, settings))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
