"""envstack command line.

Usage:
    envstack -e stage status
    envstack -e stage create --commit 3f2a9c1 --domain stage.example.com
    envstack -e stage update --refresh
    envstack -e production update --db-instance-class db.t3.small
    envstack -e stage delete
    envstack -e stage wait --expect UPDATE_COMPLETE
    envstack -e stage certificate issue --domain stage.example.com
    envstack -e stage repositories create --region eu-west-1

Exit code 0 on success, 1 on any handled failure.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from pydantic import ValidationError as PydanticValidationError

from .config import Config, Environment
from .errors import EnvStackError, StackOperationError, ValidationError
from .lifecycle import EnvironmentLifecycle, build_lifecycle
from .loader import load_project_config, record_region
from .main import setup_logging
from .models import (
    CACHE_NODE_TYPES,
    DB_INSTANCE_CLASSES,
    EnvironmentRequest,
    ProjectConfig,
    StackChanges,
)
from .stacks import StackStatus
from .waiter import WaitTick

F = TypeVar("F", bound=Callable[..., Any])

WAITABLE_STATUSES = ("CREATE_COMPLETE", "UPDATE_COMPLETE", "DELETED")


def handle_errors(func: F) -> F:
    """Report handled failures as a one-line error and exit code 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except EnvStackError as e:
            raise click.ClickException(str(e)) from e
        except PydanticValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise click.ClickException(f"Invalid input: {messages}") from e

    return wrapper  # type: ignore[return-value]


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


def report_tick(tick: WaitTick) -> None:
    """Print wait progress. Never influences timing."""
    status = tick.status or "pending"
    remaining = tick.remaining_seconds
    suffix = "" if remaining is None else f", up to {format_duration(remaining)} remaining"
    elapsed = format_duration(tick.elapsed_seconds)
    click.echo(f"  {status}, checking again soon ({elapsed} elapsed{suffix})")


class Timer:
    """Elapsed time for one command."""

    def __init__(self) -> None:
        self._started = time.monotonic()

    def report(self) -> None:
        click.echo(f"Time elapsed: {format_duration(time.monotonic() - self._started)}")


def _config(ctx: click.Context) -> Config:
    return Config.from_env(ctx.obj["environment"], ctx.obj["project_root"])


def _lifecycle(ctx: click.Context, project: ProjectConfig | None = None) -> EnvironmentLifecycle:
    config = _config(ctx)
    if project is None:
        project = load_project_config(config.project_file_path)
    return ctx.obj["lifecycle_factory"](project, config)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(package_name="envstack", prog_name="envstack")
@click.option(
    "--environment",
    "-e",
    type=click.Choice([env.value for env in Environment]),
    envvar="ENVSTACK_ENVIRONMENT",
    help="Target environment",
)
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="ENVSTACK_PROJECT_ROOT",
    help="Project directory (default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log diagnostics at INFO level")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def cli(
    ctx: click.Context,
    environment: str | None,
    project_root: Path | None,
    verbose: bool,
    log_json: bool,
) -> None:
    """Provision and manage application environments on AWS."""
    setup_logging(logging.INFO if verbose else logging.WARNING, json_output=log_json)
    ctx.ensure_object(dict)
    ctx.obj["environment"] = environment
    ctx.obj["project_root"] = project_root
    ctx.obj.setdefault("lifecycle_factory", build_lifecycle)


# =============================================================================
# Stack Commands
# =============================================================================


@cli.command()
@click.pass_context
@handle_errors
def status(ctx: click.Context) -> None:
    """Show the stack status."""
    lifecycle = _lifecycle(ctx)
    current = lifecycle.status()
    if current is None:
        click.secho(f"Stack for '{lifecycle.environment}' environment does not exist", fg="yellow")
        return
    click.echo(f"Status: {current.value}")


def sizing_options(func: F) -> F:
    for option in reversed(
        [
            click.option(
                "--db-instance-class",
                type=click.Choice(DB_INSTANCE_CLASSES),
                help="Database instance class",
            ),
            click.option("--db-storage", type=int, help="Database storage (GB)"),
            click.option(
                "--cache-node-type", type=click.Choice(CACHE_NODE_TYPES), help="Cache node type"
            ),
            click.option("--cpu", help="Task definition CPU units"),
            click.option("--memory", help="Task definition memory (MiB)"),
        ]
    ):
        func = option(func)
    return func


def _sizing(**values: Any) -> dict[str, Any]:
    names = {
        "db_instance_class": "db_instance_class",
        "db_storage": "db_storage_size",
        "cache_node_type": "cache_node_type",
        "cpu": "task_cpu",
        "memory": "task_memory",
    }
    return {names[key]: value for key, value in values.items() if value is not None}


@cli.command()
@click.option("--commit", required=True, help="Commit whose images to deploy")
@click.option("--domain", required=True, help="Fully qualified domain name")
@click.option("--certificate-arn", help="Existing ACM certificate (issued when omitted)")
@sizing_options
@click.option("--purge-variables", is_flag=True, help="Delete existing variables first")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def create(
    ctx: click.Context,
    commit: str,
    domain: str,
    certificate_arn: str | None,
    purge_variables: bool,
    yes: bool,
    **sizing: Any,
) -> None:
    """Create the environment and provision its database, variables and migrations."""
    request = EnvironmentRequest(
        domain=domain, certificate_arn=certificate_arn, **_sizing(**sizing)
    )
    lifecycle = _lifecycle(ctx)

    existing = lifecycle.existing_variables()
    if existing and not yes:
        click.echo(f"The following variables exist for the '{lifecycle.environment}' environment:")
        click.echo("\n".join(existing))
        click.confirm("Are you sure you'd like to delete these variables?", abort=True)
        purge_variables = True

    click.echo("Checking preconditions...")
    lifecycle.check_create(commit, domain, purge_variables=purge_variables)

    timer = Timer()
    click.echo(f"Creating stack for '{lifecycle.environment}' environment...")
    result = lifecycle.create(request, commit, purge_variables=purge_variables, on_tick=report_tick)
    click.secho(f"Stack creation completed with status {result.status}", fg="green")
    for step in result.provision.completed:
        click.echo(f"  done: {step.value}")
    timer.report()
    click.echo(f"Visit https://{domain} to see your application")


@cli.command()
@click.option("--refresh", is_flag=True, help="Re-submit with current variables and no changes")
@click.option("--domain", help="New fully qualified domain name")
@click.option("--certificate-arn", help="New ACM certificate ARN")
@sizing_options
@click.pass_context
@handle_errors
def update(
    ctx: click.Context,
    refresh: bool,
    domain: str | None,
    certificate_arn: str | None,
    **sizing: Any,
) -> None:
    """Update the environment's stack."""
    values = _sizing(**sizing)
    if refresh and (values or domain or certificate_arn):
        raise ValidationError("--refresh cannot be combined with changes")

    changes = StackChanges(
        certificate_arn=certificate_arn if not domain else None,
        **values,
    )
    if not refresh and not domain and changes.is_empty:
        raise ValidationError(
            "Nothing to change; pass --refresh to re-submit the current settings"
        )
    lifecycle = _lifecycle(ctx)

    timer = Timer()
    click.echo(f"Updating stack for '{lifecycle.environment}' environment...")
    result = lifecycle.update(
        changes,
        domain=domain,
        certificate_arn=certificate_arn if domain else None,
        refresh=refresh,
        on_tick=report_tick,
    )
    if result is None:
        click.echo("Stack is already up to date")
    else:
        click.secho(f"Stack update completed with status {result.status}", fg="green")
    timer.report()


@cli.command()
@click.option(
    "--disable-deletion-protection",
    is_flag=True,
    help="Turn off database deletion protection when enabled",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def delete(ctx: click.Context, disable_deletion_protection: bool, yes: bool) -> None:
    """Delete the environment's stack."""
    lifecycle = _lifecycle(ctx)
    if not yes:
        click.confirm(
            f"Are you sure you want to delete the stack for the "
            f"'{lifecycle.environment}' environment?",
            abort=True,
        )

    timer = Timer()
    click.echo("Deleting stack...")
    result = lifecycle.delete(disable_deletion_protection, on_tick=report_tick)
    click.secho(f"Stack deletion completed with status {result.status}", fg="green")
    timer.report()


@cli.command()
@click.option(
    "--expect",
    type=click.Choice(WAITABLE_STATUSES),
    default="UPDATE_COMPLETE",
    show_default=True,
    help="Status that counts as success",
)
@click.pass_context
@handle_errors
def wait(ctx: click.Context, expect: str) -> None:
    """Wait for an in-flight stack operation to finish."""
    lifecycle = _lifecycle(ctx)
    result = lifecycle.wait(StackStatus(expect), on_tick=report_tick)
    click.echo(f"Stack operation finished with status: {result.status}")
    if not result.success:
        raise StackOperationError("operation", result.status)


# =============================================================================
# Certificate Commands
# =============================================================================


@cli.group()
def certificate() -> None:
    """Certificate commands: issue, status."""
    pass


@certificate.command("issue")
@click.option("--domain", required=True, help="Fully qualified domain name")
@click.option("--arn", "existing_arn", help="Resume validation of an existing certificate")
@click.pass_context
@handle_errors
def certificate_issue(ctx: click.Context, domain: str, existing_arn: str | None) -> None:
    """Request a certificate and validate it through DNS."""
    lifecycle = _lifecycle(ctx)
    click.echo(f"Issuing certificate for '{domain}'...")
    issued = lifecycle.issue_certificate(domain, existing_arn, on_tick=report_tick)
    click.secho(f"Certificate {issued.status}: {issued.arn}", fg="green")


@certificate.command("status")
@click.option("--arn", required=True, help="Certificate ARN")
@click.pass_context
@handle_errors
def certificate_status(ctx: click.Context, arn: str) -> None:
    """Show a certificate's status."""
    click.echo(_lifecycle(ctx).certificate_status(arn))


# =============================================================================
# Image Repository Commands
# =============================================================================


@cli.group()
def repositories() -> None:
    """Image repository commands: create, delete, uris."""
    pass


@repositories.command("create")
@click.option("--region", help="AWS region (default: the region on record)")
@click.pass_context
@handle_errors
def repositories_create(ctx: click.Context, region: str | None) -> None:
    """Create the image repositories and record the region."""
    config = _config(ctx)
    project = load_project_config(config.project_file_path)
    environment = config.environment.value
    if region is None:
        region = project.region_for(environment)

    lifecycle = _lifecycle(ctx, project.with_region(environment, region))
    uris = lifecycle.create_repositories()
    record_region(config.project_file_path, environment, region)
    click.secho(f"Created image repositories in {region}:", fg="green")
    for kind, uri in uris.items():
        click.echo(f"  {kind}: {uri}")


@repositories.command("delete")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def repositories_delete(ctx: click.Context, yes: bool) -> None:
    """Delete the image repositories and every image in them."""
    lifecycle = _lifecycle(ctx)
    if not yes:
        click.confirm(
            f"Are you sure you want to delete the image repositories for the "
            f"'{lifecycle.environment}' environment?",
            abort=True,
        )

    for name in lifecycle.delete_repositories():
        click.echo(f"Deleted {name}")


@repositories.command("uris")
@click.pass_context
@handle_errors
def repositories_uris(ctx: click.Context) -> None:
    """Print the image repository URIs."""
    for kind, uri in _lifecycle(ctx).repository_uris().items():
        click.echo(f"{kind}: {uri}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
