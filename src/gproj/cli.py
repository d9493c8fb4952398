"""gproj command line.

Usage:
    gproj apply                    # Create/update the project described by the spec
    gproj sync                     # Same, treating the API catalog as authoritative
    gproj list-available --all     # List APIs that can be enabled
    gproj delete                   # Delete the project
    gproj undelete                 # Restore a deleted project (within 30 days)
    gproj gcloud compute ...       # Run gcloud with --project set from the spec

The spec (googlecloudproject.yaml) is found by walking up from the current
directory unless --spec is given.
"""

from __future__ import annotations

import functools
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from . import __version__
from .catalog import CatalogCache
from .config import SPEC_FILENAME, CallingConvention, Config, ConfigurationError
from .errors import GprojError, NotFoundOrForbiddenError
from .gcp import GoogleCloud
from .main import run_reconcile, setup_logging
from .models import ProjectSpec
from .passthrough import run_gcloud
from .spec_loader import SpecLoadError, SpecNotFoundError, load_spec

F = TypeVar("F", bound=Callable[..., Any])


def format_error(error: Exception) -> str:
    """Render an error with its class tag, e.g. ``unknown service: no such API: x``."""
    message = str(error)
    kind = getattr(error, "kind", "error")
    if kind != "error" and not message.startswith(kind):
        message = f"{kind}: {message}"
    if not message.lower().startswith("error"):
        message = f"error: {message}"
    return message


def handle_errors(func: F) -> F:
    """Print surfaced errors and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (GprojError, SpecLoadError, ConfigurationError) as e:
            click.echo(format_error(e), err=True)
            sys.exit(1)

    return wrapper  # type: ignore[return-value]


def _load_config(ctx: click.Context, convention: CallingConvention) -> Config:
    config = Config.from_env(
        spec_path=ctx.obj["spec"],
        convention=convention,
        verbose=ctx.obj["verbose"],
    )
    setup_logging(config)
    return config


def _load(ctx: click.Context, convention: CallingConvention) -> tuple[Config, ProjectSpec]:
    config = _load_config(ctx, convention)
    return config, load_spec(config.spec_path)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="gproj")
@click.option(
    "--spec",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"Path to the project spec (default: nearest {SPEC_FILENAME}).",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.pass_context
def cli(ctx: click.Context, spec: Path | None, verbose: bool) -> None:
    """Provision a Google Cloud project from googlecloudproject.yaml."""
    ctx.ensure_object(dict)
    ctx.obj["spec"] = spec
    ctx.obj["verbose"] = verbose


# =============================================================================
# Reconciliation Commands
# =============================================================================


@cli.command()
@click.pass_context
@handle_errors
def apply(ctx: click.Context) -> None:
    """Create or update the project, its billing account and its APIs.

    \b
    billing: enable   use the only open billing account
    billing: ""       leave billing as it is
    Requested APIs missing from the catalog are enabled anyway.
    """
    config, spec = _load(ctx, CallingConvention.APPLY)
    run_reconcile(config, spec, GoogleCloud.connect())


@cli.command()
@click.pass_context
@handle_errors
def sync(ctx: click.Context) -> None:
    """Like apply, but strict.

    \b
    billing: enable or ""   use the only open billing account
    Requested APIs missing from the catalog are an error.
    """
    config, spec = _load(ctx, CallingConvention.SYNC)
    run_reconcile(config, spec, GoogleCloud.connect())


@cli.command("list-available")
@click.option("--all", "show_all", is_flag=True, help="Include third-party services.")
@click.option("--description", is_flag=True, help="Print a one-line description of each API.")
@click.option("--refresh", is_flag=True, help="Discard the cached listing and fetch it again.")
@click.pass_context
@handle_errors
def list_available(ctx: click.Context, show_all: bool, description: bool, refresh: bool) -> None:
    """List the APIs that can be enabled for the project."""
    config, spec = _load(ctx, CallingConvention.APPLY)
    cloud = GoogleCloud.connect()

    try:
        project = cloud.resources.get_project(spec.id)
    except NotFoundOrForbiddenError as e:
        raise GprojError(
            f"cannot list the available APIs before project {spec.id} has been created"
        ) from e

    cache = CatalogCache(config.cache_dir, cloud.activation)
    if refresh:
        cache.invalidate(project.require_number())

    for api in cache.list_services(project.require_number()):
        if not show_all and not api.is_first_party:
            continue
        if description:
            click.echo(f"{api.name:<50} {api.summary}")
        else:
            click.echo(api.name)


# =============================================================================
# Lifecycle Commands
# =============================================================================


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
@handle_errors
def delete(ctx: click.Context, yes: bool) -> None:
    """Delete the project."""
    _, spec = _load(ctx, CallingConvention.APPLY)
    if not yes:
        click.confirm(f"Delete project {spec.id}?", abort=True)

    GoogleCloud.connect().resources.delete_project(spec.id)
    click.echo(
        f"Project {spec.id} has been deleted. "
        "To undelete in the next 30 days, run gproj undelete"
    )


@cli.command()
@click.pass_context
@handle_errors
def undelete(ctx: click.Context) -> None:
    """Restore a project deleted within the last 30 days."""
    _, spec = _load(ctx, CallingConvention.APPLY)
    GoogleCloud.connect().resources.undelete_project(spec.id)
    click.echo(f"Project {spec.id} has been restored")


# =============================================================================
# gcloud Pass-through
# =============================================================================


@cli.command(
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
@handle_errors
def gcloud(ctx: click.Context, args: tuple[str, ...]) -> None:
    """Run gcloud with --project set to the spec's project id."""
    config = _load_config(ctx, CallingConvention.APPLY)

    # Without a spec gcloud still runs, just without an injected project
    project_id: str | None = None
    try:
        project_id = load_spec(config.spec_path).id
    except SpecNotFoundError:
        if config.verbose:
            click.echo(f"no {SPEC_FILENAME} file found, ignoring")

    sys.exit(run_gcloud(args, project_id))


def main() -> None:
    """Entry point for the gproj console script."""
    cli(obj={})


if __name__ == "__main__":
    main()
