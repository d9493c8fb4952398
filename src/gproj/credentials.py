"""Credential acquisition for Google Cloud API calls.

Resource Manager refuses to create a project when the application default
credentials name a quota project that does not itself have the Resource
Manager API enabled. Creating the very first project therefore needs
credentials with the quota project association removed, while all other
calls can use the application default credentials unchanged.
"""

from __future__ import annotations

import logging

import google.auth
from google.auth.credentials import Credentials, CredentialsWithQuotaProject
from google.auth.exceptions import DefaultCredentialsError

from .errors import GprojError

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class CredentialsError(GprojError):
    """Raised when application default credentials cannot be found."""

    kind = "credentials"


def default_credentials(scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,)) -> Credentials:
    """Return application default credentials.

    Raises:
        CredentialsError: If no credentials are configured.
    """
    try:
        credentials, project = google.auth.default(scopes=list(scopes))
    except DefaultCredentialsError as e:
        raise CredentialsError(
            f"{e}. Run 'gcloud auth application-default login' first."
        ) from e

    logger.debug("Using application default credentials", extra={"project_id": project})
    return credentials


def creation_credentials(scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,)) -> Credentials:
    """Return default credentials scoped for project creation.

    The returned credentials carry no quota project, so calls are billed to
    the project being addressed rather than to the one configured locally.
    """
    credentials = default_credentials(scopes)

    if isinstance(credentials, CredentialsWithQuotaProject) and credentials.quota_project_id:
        logger.debug(
            "Dropping quota project from credentials",
            extra={"quota_project": credentials.quota_project_id},
        )
        return credentials.with_quota_project(None)

    return credentials
