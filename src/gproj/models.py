"""Desired and live state models.

The desired state (ProjectSpec) is a pydantic model so the YAML file is
validated at the boundary. Live state returned by Google Cloud is modelled
with frozen dataclasses: it is a snapshot that the engine reads but never
owns or mutates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .config import SERVICE_DOMAIN_SUFFIX
from .errors import ProjectNumberUnavailableError

# =============================================================================
# Desired State
# =============================================================================


class ProjectSpec(BaseModel):
    """Models the googlecloudproject.yaml file.

    Example:
        name: My Project
        id: my-project-4821
        labels:
          team: data
        billing: enable
        apis:
          - compute
          - bigquery.googleapis.com
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    # Human readable name of the project. Length is checked by the engine,
    # not here, so the failure is reported as a validation step.
    name: str = ""
    # Globally unique project id, chosen by hand and never regenerated
    id: str = Field(min_length=1)
    labels: dict[str, str] = Field(default_factory=dict)
    apis: list[str] = Field(default_factory=list)
    # Billing account reference, or a sentinel (see CallingConvention)
    billing: str = ""

    @model_validator(mode="before")
    @classmethod
    def lowercase_keys(cls, data: Any) -> Any:
        # Field names are matched case-insensitively (Name, ID, APIs, ...)
        if isinstance(data, dict):
            return {str(k).lower(): v for k, v in data.items()}
        return data

    @field_validator("labels", mode="before")
    @classmethod
    def stringify_labels(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @field_validator("apis", mode="before")
    @classmethod
    def default_apis(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("billing", mode="before")
    @classmethod
    def default_billing(cls, v: Any) -> Any:
        return "" if v is None else v


# =============================================================================
# Live State
# =============================================================================


@dataclass(frozen=True)
class ProjectState:
    """Snapshot of a project as reported by Resource Manager."""

    project_id: str
    project_number: int | None = None
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    lifecycle_state: str = ""

    @property
    def parent(self) -> str:
        """Resource name used to address billing and service usage endpoints."""
        return format_project_number(self.require_number())

    def require_number(self) -> int:
        if self.project_number is None:
            raise ProjectNumberUnavailableError(
                f"project {self.project_id} has no project number yet"
            )
        return self.project_number

    @classmethod
    def from_api(cls, resource: dict[str, Any]) -> ProjectState:
        number = resource.get("projectNumber")
        return cls(
            project_id=resource["projectId"],
            project_number=int(number) if number else None,
            name=resource.get("name", ""),
            labels=dict(resource.get("labels") or {}),
            lifecycle_state=resource.get("lifecycleState", ""),
        )


@dataclass(frozen=True)
class BillingLink:
    """Association between a project and a billing account."""

    project_number: int
    billing_account_name: str = ""
    billing_enabled: bool = False

    @classmethod
    def from_api(cls, project_number: int, info: dict[str, Any]) -> BillingLink:
        return cls(
            project_number=project_number,
            billing_account_name=info.get("billingAccountName", ""),
            billing_enabled=bool(info.get("billingEnabled", False)),
        )


@dataclass(frozen=True)
class BillingAccount:
    """A billing account visible to the caller."""

    name: str  # e.g. "billingAccounts/012345-6789AB-CDEF01"
    display_name: str = ""
    open: bool = False

    @classmethod
    def from_api(cls, account: dict[str, Any]) -> BillingAccount:
        return cls(
            name=account["name"],
            display_name=account.get("displayName", ""),
            open=bool(account.get("open", False)),
        )


class ServiceCatalogEntry(BaseModel):
    """One activatable service, as stored in the catalog cache."""

    model_config = ConfigDict(frozen=True)

    name: str  # machine readable, e.g. "billingbudgets.googleapis.com"
    title: str = ""  # human readable, e.g. "Cloud Billing Budget API"
    summary: str = ""  # first line of the service description
    enabled: bool = False

    @property
    def is_first_party(self) -> bool:
        return self.name.endswith(SERVICE_DOMAIN_SUFFIX)


# Encoder/decoder for the cache document (a JSON array of entries)
CATALOG_ADAPTER: TypeAdapter[list[ServiceCatalogEntry]] = TypeAdapter(list[ServiceCatalogEntry])


class OperationState(str, Enum):
    """Lifecycle of a long-running operation."""

    ACCEPTED = "accepted"
    IN_PROGRESS = "in-progress"
    DONE_SUCCESS = "done-success"
    DONE_ERROR = "done-error"


@dataclass(frozen=True)
class PendingOperation:
    """Handle to a long-running remote mutation.

    Produced by a mutating call and replaced by a fresh snapshot on every
    poll. Only the operation poller creates new snapshots.
    """

    name: str
    done: bool = False
    error_code: int | None = None
    error_message: str = ""
    polls: int = 0

    @property
    def failed(self) -> bool:
        return self.error_code is not None or bool(self.error_message)

    @property
    def state(self) -> OperationState:
        if self.failed:
            return OperationState.DONE_ERROR
        if self.done:
            return OperationState.DONE_SUCCESS
        if self.polls == 0:
            return OperationState.ACCEPTED
        return OperationState.IN_PROGRESS

    @classmethod
    def from_api(cls, operation: dict[str, Any], polls: int = 0) -> PendingOperation:
        error = operation.get("error")
        code: int | None = None
        message = ""
        if error:
            code = error.get("code")
            message = error.get("message", "") or "unknown error"
        return cls(
            name=operation.get("name", ""),
            done=bool(operation.get("done", False)),
            error_code=code,
            error_message=message,
            polls=polls,
        )


def format_project_number(project_number: int) -> str:
    return f"projects/{project_number}"
