"""Google Cloud service facades.

One facade per remote domain (Resource Manager, Cloud Billing, Service
Usage). Each wraps a ``googleapiclient`` discovery client, converts API
responses into the snapshots in ``gproj.models`` and translates
``HttpError`` into the error taxonomy at this boundary, so the engine never
sees provider exception types.

All calls are blocking. The engine runs them in the default executor.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Protocol

from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .credentials import creation_credentials, default_credentials
from .errors import NotFoundOrForbiddenError, RemoteCallError
from .models import (
    BillingAccount,
    BillingLink,
    PendingOperation,
    ProjectState,
    format_project_number,
)

logger = logging.getLogger(__name__)

# Suppress googleapiclient discovery cache warnings
logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def _execute(request: Any, what: str) -> Any:
    """Execute a prepared API request, translating transport failures."""
    try:
        return request.execute()
    except HttpError as e:
        logger.debug("API call failed", extra={"call": what, "status": e.resp.status})
        raise RemoteCallError(f"error {what}: {e.reason}", status=e.resp.status) from e
    except (GoogleAuthError, OSError) as e:
        raise RemoteCallError(f"error {what}: {e}") from e


def _iterate_pages(collection: Any, request: Any, what: str) -> Iterator[dict[str, Any]]:
    """Follow ``nextPageToken`` pagination until exhausted."""
    while request is not None:
        response = _execute(request, what)
        yield response
        request = collection.list_next(previous_request=request, previous_response=response)


# =============================================================================
# Facade interfaces
# =============================================================================


class ResourceAPI(Protocol):
    def get_project(self, project_id: str) -> ProjectState: ...

    def create_project(
        self, project_id: str, name: str, labels: dict[str, str]
    ) -> PendingOperation: ...

    def update_project(
        self, project_id: str, name: str, labels: dict[str, str]
    ) -> ProjectState: ...

    def delete_project(self, project_id: str) -> None: ...

    def undelete_project(self, project_id: str) -> None: ...

    def get_operation(self, name: str) -> PendingOperation: ...


class BillingAPI(Protocol):
    def get_billing_link(self, project_number: int) -> BillingLink: ...

    def update_billing_link(self, project_number: int, account_name: str) -> BillingLink: ...

    def list_billing_accounts(self) -> list[BillingAccount]: ...


class ActivationAPI(Protocol):
    def list_service_pages(self, project_number: int) -> Iterator[list[dict[str, Any]]]: ...

    def batch_enable(self, project_number: int, service_ids: list[str]) -> PendingOperation: ...

    def get_operation(self, name: str) -> PendingOperation: ...


# =============================================================================
# Resource Manager
# =============================================================================


class ResourceService:
    """Cloud Resource Manager v1: projects and their operations."""

    def __init__(self, credentials: Credentials) -> None:
        self._client = build(
            "cloudresourcemanager", "v1", credentials=credentials, cache_discovery=False
        )

    def get_project(self, project_id: str) -> ProjectState:
        """Fetch a project by id.

        Raises:
            NotFoundOrForbiddenError: The project does not exist or is not
                visible to the caller (Google answers 403 for both).
            RemoteCallError: Any other failure.
        """
        request = self._client.projects().get(projectId=project_id)
        try:
            return ProjectState.from_api(request.execute())
        except HttpError as e:
            if e.resp.status in (403, 404):
                raise NotFoundOrForbiddenError(
                    f"project {project_id} not found or not accessible: {e.reason}"
                ) from e
            raise RemoteCallError(
                f"error getting project {project_id}: {e.reason}", status=e.resp.status
            ) from e
        except (GoogleAuthError, OSError) as e:
            raise RemoteCallError(f"error getting project {project_id}: {e}") from e

    def create_project(
        self, project_id: str, name: str, labels: dict[str, str]
    ) -> PendingOperation:
        body = {"projectId": project_id, "name": name, "labels": labels}
        request = self._client.projects().create(body=body)
        return PendingOperation.from_api(_execute(request, "creating project"))

    def update_project(self, project_id: str, name: str, labels: dict[str, str]) -> ProjectState:
        body = {"projectId": project_id, "name": name, "labels": labels}
        request = self._client.projects().update(projectId=project_id, body=body)
        return ProjectState.from_api(_execute(request, "updating project"))

    def delete_project(self, project_id: str) -> None:
        _execute(self._client.projects().delete(projectId=project_id), "deleting project")

    def undelete_project(self, project_id: str) -> None:
        request = self._client.projects().undelete(projectId=project_id, body={})
        _execute(request, "undeleting project")

    def get_operation(self, name: str) -> PendingOperation:
        request = self._client.operations().get(name=name)
        return PendingOperation.from_api(_execute(request, "getting operation info"))


# =============================================================================
# Cloud Billing
# =============================================================================


class BillingService:
    """Cloud Billing v1: project billing info and billing accounts."""

    def __init__(self, credentials: Credentials) -> None:
        self._client = build("cloudbilling", "v1", credentials=credentials, cache_discovery=False)

    def get_billing_link(self, project_number: int) -> BillingLink:
        request = self._client.projects().getBillingInfo(
            name=format_project_number(project_number)
        )
        info = _execute(request, "getting billing info")
        return BillingLink.from_api(project_number, info)

    def update_billing_link(self, project_number: int, account_name: str) -> BillingLink:
        request = self._client.projects().updateBillingInfo(
            name=format_project_number(project_number),
            body={"billingAccountName": account_name},
        )
        info = _execute(request, "updating billing info")
        return BillingLink.from_api(project_number, info)

    def list_billing_accounts(self) -> list[BillingAccount]:
        collection = self._client.billingAccounts()
        accounts: list[BillingAccount] = []
        for page in _iterate_pages(collection, collection.list(), "listing billing accounts"):
            accounts.extend(BillingAccount.from_api(a) for a in page.get("billingAccounts", []))
        return accounts


# =============================================================================
# Service Usage
# =============================================================================


class ActivationService:
    """Service Usage v1: service catalog and batch enablement."""

    def __init__(self, credentials: Credentials) -> None:
        self._client = build("serviceusage", "v1", credentials=credentials, cache_discovery=False)

    def list_service_pages(self, project_number: int) -> Iterator[list[dict[str, Any]]]:
        """Yield the raw ``services`` array of each page of the catalog."""
        collection = self._client.services()
        request = collection.list(parent=format_project_number(project_number), pageSize=200)
        for page in _iterate_pages(collection, request, "getting list of APIs"):
            yield page.get("services", [])

    def batch_enable(self, project_number: int, service_ids: list[str]) -> PendingOperation:
        request = self._client.services().batchEnable(
            parent=format_project_number(project_number),
            body={"serviceIds": service_ids},
        )
        return PendingOperation.from_api(_execute(request, "in API call to enable APIs"))

    def get_operation(self, name: str) -> PendingOperation:
        request = self._client.operations().get(name=name)
        return PendingOperation.from_api(_execute(request, "getting operation info"))


@dataclass
class GoogleCloud:
    """The three facades the reconciler talks to."""

    resources: ResourceAPI
    billing: BillingAPI
    activation: ActivationAPI

    @classmethod
    def connect(cls) -> GoogleCloud:
        """Build facades from application default credentials.

        Resource Manager and Cloud Billing get credentials without a quota
        project so a project can be created without a pre-existing one.
        """
        stripped = creation_credentials()
        return cls(
            resources=ResourceService(stripped),
            billing=BillingService(stripped),
            activation=ActivationService(default_credentials()),
        )
