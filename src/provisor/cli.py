"""Command-line interface for provisor."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from provisor import __version__
from provisor.config import ConfigError, load_config
from provisor.exceptions import BuildError
from provisor.executor import ExecutionResults, PlaybookExecutor, host_bindings
from provisor.host_filter import filter_hosts, format_filter_summary
from provisor.inventory import Inventory, load_inventory, load_localhost
from provisor.loader import Play, load_playbook
from provisor.logging import configure_logging, get_level_from_name, get_level_from_verbosity, get_logger
from provisor.plan import PlanBuilder
from provisor.progress import create_progress_reporter
from provisor.registry import default_registry

logger = get_logger("provisor.cli")

LOG_LEVELS = ["trace", "debug", "info", "warning", "error"]


class BuildFailed(click.ClickException):
    """A task document, inventory or configuration error found before any host was touched."""

    exit_code = 2


def parse_extra_vars(values: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``-e`` options.

    Each value is ``key=value`` (the value is read as YAML, so ``port=8080``
    gives an int) or ``@file.yml`` naming a YAML mapping.

    Raises:
        click.BadParameter: On a malformed value
    """
    extra: dict[str, Any] = {}
    for value in values:
        if value.startswith("@"):
            path = Path(value[1:])
            try:
                data = yaml.safe_load(path.read_text()) or {}
            except (OSError, yaml.YAMLError) as e:
                raise click.BadParameter(f"cannot load {path}: {e}", param_hint="-e") from e
            if not isinstance(data, dict):
                raise click.BadParameter(f"{path} must contain a mapping", param_hint="-e")
            extra.update(data)
            continue
        key, sep, raw = value.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"invalid variable '{value}', expected key=value", param_hint="-e")
        try:
            extra[key.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            extra[key.strip()] = raw
    return extra


def setup_logging(verbose: int, log_level: Optional[str], log_file: Optional[str], quiet: bool = False) -> None:
    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    # JSON output goes to stdout; keep the console free of log lines
    console_level = logging.CRITICAL if quiet else level
    configure_logging(level=console_level, log_file=log_file, file_level=level if log_file else None)


def load_plays(task_file: str) -> list[Play]:
    try:
        return load_playbook(task_file, default_registry())
    except BuildError as e:
        raise BuildFailed(str(e)) from e


def load_hosts(inventory: Optional[str]) -> Inventory:
    if not inventory:
        return load_localhost()
    try:
        return load_inventory(inventory)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise BuildFailed(f"Cannot load inventory {inventory}: {e}") from e


def format_results_text(results: ExecutionResults) -> str:
    lines = []
    for (play, host), report in results.reports.items():
        lines.append(f"{report.format_summary()}  [{play}]")
    if not results.reports:
        lines.append("No hosts matched")
    return "\n".join(lines)


def logging_options(func: Any) -> Any:
    """Attach the logging options shared by every command."""
    func = click.option("--log-file", type=click.Path(), default=None,
                        help="Write logs to file (in addition to console)")(func)
    func = click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None,
                        help="Set log level explicitly (overrides -v)")(func)
    func = click.option("-v", "--verbose", count=True,
                        help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")(func)
    return func


# Main CLI group
@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """provisor - declarative host provisioning over SSH."""
    if version:
        click.echo(f"provisor {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--inventory", "-i", default=None, help="Inventory file (YAML or JSON); localhost if omitted")
@click.option("--limit", "-l", type=str, default=None,
              help="Limit execution to matching hosts (patterns: web*,!db*,@group)")
@click.option("--check", is_flag=True, help="Probe only: report what would change without applying")
@click.option("--retries", type=int, default=None, help="Retries for transient step failures")
@click.option("--retry-delay", type=float, default=None, help="Initial delay between retries in seconds")
@click.option("--parallel", "-p", type=int, default=None, help="Number of hosts provisioned concurrently")
@click.option("--config", "config_file", type=click.Path(), default=None,
              help="Configuration file (default: ~/.provisor/config.yml)")
@click.option("--extra-vars", "-e", multiple=True, help="Extra variables: key=value or @file.yml")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format (default: text)")
@logging_options
def run_playbook(
    task_file: str,
    inventory: Optional[str],
    limit: Optional[str],
    check: bool,
    retries: Optional[int],
    retry_delay: Optional[float],
    parallel: Optional[int],
    config_file: Optional[str],
    extra_vars: tuple[str, ...],
    output_format: str,
    verbose: int,
    log_level: Optional[str],
    log_file: Optional[str],
) -> None:
    """Bring hosts to the state described by TASK_FILE.

    Exit status is 0 when every step succeeded, 1 when any step failed and
    2 when the task file, inventory or configuration is invalid (in which
    case no host was touched).

    Examples:
        provisor run site.yml -i hosts.yml

        provisor run site.yml -i hosts.yml --limit "web*,!web03"

        provisor run site.yml -i hosts.yml --check -e app_version=1.4.2

        provisor run site.yml -i hosts.yml --format json -vv --log-file /tmp/provisor.log
    """
    setup_logging(verbose, log_level, log_file, quiet=output_format == "json")

    try:
        config = load_config(config_file).merged(
            max_retries=retries,
            retry_delay=retry_delay,
            parallel=parallel,
            check_mode=check or None,
        )
    except ConfigError as e:
        raise BuildFailed(str(e)) from e

    variables = parse_extra_vars(extra_vars)
    plays = load_plays(task_file)
    inv = load_hosts(inventory)

    def limit_hosts(hosts: dict[str, Any]) -> dict[str, Any]:
        if not limit:
            return hosts
        filtered = filter_hosts(hosts, limit, inv)
        logger.info(format_filter_summary(len(hosts), len(filtered), limit))
        return filtered

    progress = create_progress_reporter(
        enabled=True,
        json_format=output_format == "json",
        output=sys.stderr if output_format == "json" else None,
    )
    executor = PlaybookExecutor(config, registry=default_registry(), progress=progress)

    async def run_async() -> ExecutionResults:
        if sys.platform != "win32":
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, executor.cancel)
        return await executor.run(plays, inv, limit=limit_hosts, extra_vars=variables)

    try:
        results = asyncio.run(run_async())
    except BuildError as e:
        raise BuildFailed(str(e)) from e

    if output_format == "json":
        click.echo(json.dumps(results.to_dict(), indent=2, default=str))
    elif verbose:
        click.echo(format_results_text(results))

    if not results.success:
        if output_format == "json":
            raise SystemExit(1)
        if results.cancelled:
            raise click.ClickException("Run cancelled")
        raise click.ClickException(f"{len(results.failed_hosts)} host(s) failed: {', '.join(results.failed_hosts)}")


@cli.command("plan")
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--inventory", "-i", default=None, help="Inventory file (YAML or JSON); localhost if omitted")
@click.option("--limit", "-l", type=str, default=None, help="Limit to matching hosts")
@click.option("--extra-vars", "-e", multiple=True, help="Extra variables: key=value or @file.yml")
@logging_options
def show_plan(
    task_file: str,
    inventory: Optional[str],
    limit: Optional[str],
    extra_vars: tuple[str, ...],
    verbose: int,
    log_level: Optional[str],
    log_file: Optional[str],
) -> None:
    """Show the expanded plan for each host without connecting to it.

    Loops are expanded, variables resolved and handlers validated exactly
    as ``run`` would, so any build-time error is reported here too.
    """
    setup_logging(verbose, log_level, log_file)
    variables = parse_extra_vars(extra_vars)
    plays = load_plays(task_file)
    inv = load_hosts(inventory)
    builder = PlanBuilder(default_registry())

    for play in plays:
        hosts = {name: inv.resolve_host(name) for name in inv.select(play.hosts)}
        if limit:
            hosts = filter_hosts(hosts, limit, inv)
        click.echo(f"PLAY [{play.name}]")
        if not hosts:
            click.echo("  (no hosts)")
        for name, host in hosts.items():
            bindings = host_bindings(play, host, inv, variables)
            try:
                plan = builder.build_plan(play.tasks, bindings, play.handlers)
            except BuildError as e:
                raise BuildFailed(f"{name}: {e}") from e
            click.echo(f"  HOST [{name}] {len(plan)} step(s)")
            for line in plan.describe():
                click.echo(f"  {line}")
        click.echo()


@cli.command("handlers")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format (default: text)")
def list_handlers(output_format: str) -> None:
    """List the registered task types and their aliases."""
    registry = default_registry()
    aliases: dict[str, list[str]] = {}
    for alias, task_type in registry.aliases().items():
        aliases.setdefault(task_type, []).append(alias)

    if output_format == "json":
        output = [
            {
                "type": name,
                "aliases": sorted(aliases.get(name, [])),
                "idempotent": registry.resolve(name).idempotent,
            }
            for name in registry.types()
        ]
        click.echo(json.dumps(output, indent=2))
        return

    for name in registry.types():
        handler = registry.resolve(name)
        line = name
        if aliases.get(name):
            line += f" (aliases: {', '.join(sorted(aliases[name]))})"
        if not handler.idempotent:
            line += " [not retried]"
        click.echo(line)


def main() -> None:
    """Package entry point for the provisor command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
