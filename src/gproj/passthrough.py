"""Run gcloud with the spec's project injected.

``gproj gcloud compute instances list`` runs
``gcloud --project=<id> compute instances list`` unless a ``--project``
argument was given explicitly.
"""

from __future__ import annotations

import logging
import shutil
import subprocess

from .errors import GprojError

logger = logging.getLogger(__name__)

GCLOUD_BINARY = "gcloud"


class GcloudNotFoundError(GprojError):
    """Raised when the gcloud binary is not on PATH."""

    kind = "gcloud"


def build_gcloud_args(args: list[str] | tuple[str, ...], project_id: str | None) -> list[str]:
    """Prepend ``--project=<id>`` unless a project argument is already present."""
    has_project_arg = any(arg.startswith("--project") for arg in args)
    if project_id and not has_project_arg:
        return [f"--project={project_id}", *args]
    return list(args)


def run_gcloud(args: list[str] | tuple[str, ...], project_id: str | None) -> int:
    """Run gcloud attached to this process's stdio and return its exit code.

    Raises:
        GcloudNotFoundError: If gcloud is not installed.
        GprojError: If gcloud could not be started.
    """
    gcloud_path = shutil.which(GCLOUD_BINARY)
    if gcloud_path is None:
        raise GcloudNotFoundError(
            "gcloud not found. Install from https://cloud.google.com/sdk/docs/install"
        )

    gcloud_args = build_gcloud_args(args, project_id)
    logger.debug("Running gcloud", extra={"gcloud_args": gcloud_args})

    try:
        completed = subprocess.run([gcloud_path, *gcloud_args], check=False)
    except OSError as e:
        raise GprojError(f"error executing 'gcloud {' '.join(gcloud_args)}': {e}") from e

    # A non-zero exit code is passed along, not treated as an error
    return completed.returncode
