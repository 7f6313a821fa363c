"""Command-line entrypoint."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

import click
import structlog
from pydantic import ValidationError

from fleetdeploy.config import get_settings, Settings
from fleetdeploy.container import ServiceContainer
from fleetdeploy.domain.errors import ConfigurationError, FleetDeployError
from fleetdeploy.domain.models.fleet import Domain, FleetConfig, state_key
from fleetdeploy.domain.models.results import PortfolioResult, RollbackReport
from fleetdeploy.domain.models.retry import CancellationToken
from fleetdeploy.domain.services.capability_assessment import CapabilityAssessmentEngine
from fleetdeploy.infrastructure.observability.logging import setup_logging
from fleetdeploy.infrastructure.observability.tracing import setup_tracing


logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_BLOCKED = 3

ContainerFactory = Callable[..., ServiceContainer]


@contextmanager
def handle_cli_errors() -> Generator[None, None, None]:
    """Map errors to user feedback and exit codes.

    Exit codes:
        1: Run failed (remote error, state store problem, unexpected error)
        2: Configuration error
    """
    try:
        yield
    except ConfigurationError as e:
        logger.error("configuration_error", error=e.message)
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_CONFIG)
    except FleetDeployError as e:
        logger.error("command_failed", error=e.message, reason_code=e.reason_code.value)
        click.secho(f"Error: {e.message}", fg="red", err=True)
        if e.remediation:
            click.echo(f"  {e.remediation}", err=True)
        sys.exit(EXIT_FAILED)
    except Exception as e:
        logger.exception("unexpected_error", error=str(e))
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)


def load_fleet_config(path: str) -> FleetConfig:
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read fleet file {path}: {e}") from e
    if isinstance(raw, list):
        raw = {"domains": raw}
    try:
        return FleetConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid fleet file {path}: {e}") from e


def _container(ctx: click.Context, **kwargs: Any) -> ServiceContainer:
    factory: ContainerFactory = ctx.obj.get("container_factory", ServiceContainer)
    return factory(ctx.obj["settings"], **kwargs)


def _load_domains(
    container: ServiceContainer, fleet_file: str, only: tuple[str, ...], environment: str | None
) -> list[Domain]:
    config = load_fleet_config(fleet_file)
    if environment:
        config = config.model_copy(
            update={"defaults": config.defaults.model_copy(update={"environment": environment})}
        )
    domains = container.resolver.build_fleet(config, set(only) if only else None)
    if only:
        missing = set(only) - {domain.name for domain in domains}
        if missing:
            raise ConfigurationError(f"Not in fleet file: {', '.join(sorted(missing))}")
    if not domains:
        raise ConfigurationError(f"Fleet file {fleet_file} declares no domains")
    return domains


def _exit_code(result: PortfolioResult) -> int:
    summary = result.summary
    if summary.failed == 0:
        return EXIT_OK
    if summary.blocked_by_gate and summary.blocked_by_gate == summary.failed:
        return EXIT_BLOCKED
    return EXIT_FAILED


def _install_cancel_handler(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by operator")
        loop.add_signal_handler(signal.SIGTERM, token.cancel, "terminated")
    except (NotImplementedError, RuntimeError):
        # Signal handlers are unavailable off the main thread and on some platforms.
        pass


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines on stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_json: bool) -> None:
    """Capability-gated deployment of a fleet of serverless domains."""
    ctx.ensure_object(dict)
    settings: Settings = ctx.obj.get("settings") or get_settings()
    ctx.obj["settings"] = settings
    # Embedding callers (and the test suite) configure logging themselves.
    if not ctx.obj.get("logging_configured"):
        setup_logging(
            "DEBUG" if verbose else settings.observability.log_level, json_output=log_json
        )
        ctx.obj["logging_configured"] = True
    setup_tracing(settings.observability)


@cli.command()
@click.argument("fleet_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--domain", "-d", "only", multiple=True, help="Deploy only these domains")
@click.option("--environment", "-e", default=None, help="Override the fleet default environment")
@click.option("--dry-run", is_flag=True, help="Report what would happen without side effects")
@click.option("--force", is_flag=True, help="Deploy even when the assessment is blocked")
@click.option("--redeploy", is_flag=True, help="Deploy domains that are already deployed")
@click.option("--batch-size", type=click.IntRange(min=1), default=None)
@click.option("--parallelism", type=click.IntRange(min=1), default=None)
@click.option("--state-file", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def deploy(
    ctx: click.Context,
    fleet_file: str,
    only: tuple[str, ...],
    environment: str | None,
    dry_run: bool,
    force: bool,
    redeploy: bool,
    batch_size: int | None,
    parallelism: int | None,
    state_file: str | None,
    as_json: bool,
) -> None:
    """Deploy every domain in FLEET_FILE."""
    with handle_cli_errors():
        container = _container(ctx, state_file=state_file)
        domains = _load_domains(container, fleet_file, only, environment)

        async def run() -> PortfolioResult:
            recovered = await container.start()
            for key in recovered:
                click.secho(
                    f"Recovered interrupted run: {key} marked failed", fg="yellow", err=True
                )
            token = CancellationToken()
            _install_cancel_handler(token)
            return await container.orchestrator.deploy_portfolio(
                domains,
                parallelism=parallelism,
                batch_size=batch_size,
                dry_run=dry_run,
                force=force,
                redeploy=redeploy,
                cancellation=token,
            )

        result = asyncio.run(run())

    if as_json:
        click.echo(result.model_dump_json(indent=2))
    else:
        _print_portfolio(result)
    sys.exit(_exit_code(result))


def _print_portfolio(result: PortfolioResult) -> None:
    title = "Dry run" if result.dry_run else "Deployment"
    click.echo(f"{title} {result.orchestration_id}")
    for item in result.per_domain:
        if item.success and item.skipped:
            mark, color = "=", "cyan"
        elif item.success:
            mark, color = "+", "green"
        elif item.skipped:
            mark, color = "-", "yellow"
        else:
            mark, color = "x", "red"
        line = f"  {mark} {item.domain} [{item.environment}] {item.status.value}"
        if item.url:
            line += f" {item.url}"
        click.secho(line, fg=color)
        if item.error:
            click.echo(f"      {item.error.splitlines()[0]}")
        if item.remediation and not item.success:
            click.echo(f"      fix: {item.remediation}")
        for warning in item.warnings:
            click.echo(f"      warning: {warning}")
    summary = result.summary
    click.echo(
        f"{summary.succeeded}/{summary.total} succeeded, {summary.failed} failed, "
        f"{summary.skipped} skipped (success rate {summary.success_rate:.0%})"
    )


@cli.command()
@click.argument("fleet_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--domain", "-d", "only", multiple=True)
@click.option("--environment", "-e", default=None)
@click.option("--discovery-file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--refresh", is_flag=True, help="Bypass the assessment cache")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def assess(
    ctx: click.Context,
    fleet_file: str,
    only: tuple[str, ...],
    environment: str | None,
    discovery_file: str | None,
    refresh: bool,
    as_json: bool,
) -> None:
    """Assess capabilities of every domain in FLEET_FILE without deploying."""
    with handle_cli_errors():
        container = _container(ctx, discovery_file=discovery_file)
        domains = _load_domains(container, fleet_file, only, environment)
        credential = container.settings.platform.api_token or None
        assessments = asyncio.run(
            container.orchestrator.assess_portfolio(domains, credential, force_refresh=refresh)
        )

    if as_json:
        click.echo(json.dumps(
            {key: result.model_dump(mode="json") for key, result in assessments.items()},
            indent=2,
        ))
    else:
        for key, result in assessments.items():
            summary = CapabilityAssessmentEngine.quick_summary(result)
            color = "red" if result.blocked else "green"
            click.secho(f"{key}: confidence {result.confidence}", fg=color)
            for gap in result.gap_analysis.missing:
                click.echo(f"  [{gap.priority.value}] {gap.capability}: {gap.reason}")
            for step in result.next_steps:
                click.echo(f"  next: {step}")
            logger.debug("assessment_summary", domain=key, **summary)
    sys.exit(EXIT_BLOCKED if any(r.blocked for r in assessments.values()) else EXIT_OK)


@cli.command()
@click.option("--state-file", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def status(ctx: click.Context, state_file: str | None, as_json: bool) -> None:
    """Show the recorded state of every domain."""
    with handle_cli_errors():
        container = _container(ctx, state_file=state_file)
        asyncio.run(container.state_manager.load())
        states = container.state_manager.all_states()

    if as_json:
        click.echo(json.dumps([state.model_dump(mode="json") for state in states], indent=2))
        return
    if not states:
        click.echo(f"No deployments recorded in {container.repository.location}")
        return
    for state in sorted(states, key=lambda s: s.key):
        line = f"{state.key:<40} {state.status.value:<12} {state.deployment_id}"
        if state.reason_code:
            line += f"  {state.reason_code.value}"
        click.echo(line)


@cli.command()
@click.argument("domain")
@click.option("--environment", "-e", default="production")
@click.option("--state-file", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def rollback(ctx: click.Context, domain: str, environment: str, state_file: str | None) -> None:
    """Roll back the failed deployment of DOMAIN."""
    with handle_cli_errors():
        container = _container(ctx, state_file=state_file)

        async def run() -> RollbackReport:
            await container.start()
            return await container.coordinator.rollback(state_key(domain, environment))

        report = asyncio.run(run())

    click.echo(f"Rolled back {domain} [{environment}]: {len(report.executed)} action(s) undone")
    if report.failed:
        click.secho(f"  {len(report.failed)} action(s) could not be undone", fg="red")
        sys.exit(EXIT_FAILED)


@cli.group()
def db() -> None:
    """Data store operations for a single store."""


@db.command("migrate")
@click.argument("store")
@click.option("--environment", "-e", "environments", multiple=True, default=("production",))
@click.option("--binding", default="DB")
@click.option("--continue-on-error", is_flag=True)
@click.option("--dry-run", is_flag=True)
@click.pass_context
def db_migrate(
    ctx: click.Context,
    store: str,
    environments: tuple[str, ...],
    binding: str,
    continue_on_error: bool,
    dry_run: bool,
) -> None:
    """Apply pending migrations to STORE in each environment, in order."""
    with handle_cli_errors():
        container = _container(ctx)
        database = container.database.with_dry_run() if dry_run else container.database
        report = asyncio.run(database.apply_across_environments(
            store, list(environments), binding=binding, continue_on_error=continue_on_error
        ))

    for environment, result in report.results.items():
        color = "red" if result.status.value == "failed" else "green"
        click.secho(
            f"{environment}: {result.status.value} "
            f"({result.migrations_applied} applied, {result.attempts} attempt(s))",
            fg=color,
        )
        if result.error:
            click.echo(f"  {result.error}")
    sys.exit(EXIT_OK if report.succeeded else EXIT_FAILED)


@db.command("backup")
@click.argument("store")
@click.option("--environment", "-e", default="production")
@click.pass_context
def db_backup(ctx: click.Context, store: str, environment: str) -> None:
    """Export STORE to a timestamped SQL file."""
    with handle_cli_errors():
        container = _container(ctx)
        result = asyncio.run(container.database.create_backup(store, environment))

    if result.status.value == "failed":
        click.secho(f"Backup failed: {result.error}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"{result.backup_file} ({result.size_bytes} bytes)")


@db.command("health")
@click.argument("store")
@click.option("--environment", "-e", default="production")
@click.pass_context
def db_health(ctx: click.Context, store: str, environment: str) -> None:
    """Run a trivial query against STORE."""
    with handle_cli_errors():
        container = _container(ctx)
        result = asyncio.run(container.database.check_health(store, environment))

    if not result.healthy:
        click.secho(f"{store} [{environment}] unhealthy: {result.error}", fg="red")
        sys.exit(EXIT_FAILED)
    click.secho(f"{store} [{environment}] healthy ({result.latency_ms:.0f}ms)", fg="green")


@db.command("sync-schema")
@click.argument("store")
@click.option("--source", default="staging")
@click.option("--target", default="production")
@click.option("--apply", is_flag=True, help="Create missing tables instead of only listing them")
@click.pass_context
def db_sync_schema(
    ctx: click.Context, store: str, source: str, target: str, apply: bool
) -> None:
    """Compare STORE's schema between two environments."""
    with handle_cli_errors():
        container = _container(ctx)
        result = asyncio.run(
            container.database.sync_schema(store, source, target, dry_run=not apply)
        )

    if result.status.value == "failed":
        click.secho(f"Schema sync failed: {result.error}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
    if not result.intended_changes:
        click.echo(f"{target} matches {source}")
    for change in result.intended_changes:
        click.echo(change)


if __name__ == "__main__":
    cli()
