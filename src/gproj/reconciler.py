"""Reconciliation engine for a single Google Cloud project.

Brings a project's identity, billing link and enabled services into
agreement with a ProjectSpec using the fewest mutating calls:

1. validate              - reject bad specs before any remote call
2. ensure-project        - get the project, or create it and wait
3. bootstrap-billing-api - after a creation, enable the Cloud Billing API
4. update-identity       - align display name and labels of an existing project
5. billing               - link the requested (or the only open) billing account
6. normalize-apis        - expand short API names to *.googleapis.com
7. diff-apis             - compare requested APIs with the cached catalog
8. enable-apis           - one batch enable for whatever is missing

Steps run strictly in order because each depends on the previous one: billing
and service calls address the project by number, which only exists once the
project does, and further APIs cannot be enabled until billing is in place.

Nothing is ever deleted or disabled. Failed calls are not retried: running
the reconciliation again detects existing state and continues from there.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import partial
from typing import Any, TypeVar

from .catalog import CatalogCache
from .config import (
    AUTO_SELECT_BILLING,
    BILLING_ACCOUNT_PREFIX,
    BOOTSTRAP_SERVICE,
    MANAGED_BY_LABEL_KEY,
    MANAGED_BY_LABEL_VALUE,
    MAX_BATCH_ENABLE_SERVICES,
    MIN_PROJECT_NAME_LENGTH,
    SERVICE_DOMAIN_SUFFIX,
    CallingConvention,
    Config,
)
from .errors import (
    AmbiguousBillingAccountError,
    BatchLimitExceededError,
    BillingNotEnabledError,
    GprojError,
    NotFoundOrForbiddenError,
    ReconcileTimeoutError,
    RemoteCallError,
    SpecValidationError,
    UnknownServiceError,
)
from .gcp import GoogleCloud
from .models import ProjectSpec, ProjectState, ServiceCatalogEntry
from .operations import wait_until_done

logger = logging.getLogger(__name__)

T = TypeVar("T")

STEP_VALIDATE = "validate"
STEP_ENSURE_PROJECT = "ensure-project"
STEP_BOOTSTRAP_BILLING_API = "bootstrap-billing-api"
STEP_UPDATE_IDENTITY = "update-identity"
STEP_BILLING = "billing"
STEP_NORMALIZE_APIS = "normalize-apis"
STEP_DIFF_APIS = "diff-apis"
STEP_ENABLE_APIS = "enable-apis"


@dataclass
class ReconcileResult:
    """What a reconciliation run observed and changed."""

    project_id: str
    convention: CallingConvention = CallingConvention.APPLY
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    state: ProjectState | None = None
    project_created: bool = False
    identity_updated: bool = False
    billing_updated: bool = False
    billing_account: str | None = None
    services_enabled: list[str] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        """True if any remote side effect happened."""
        return (
            self.project_created
            or self.identity_updated
            or self.billing_updated
            or bool(self.services_enabled)
        )


# =============================================================================
# Diff helpers
# =============================================================================


def desired_labels(spec: ProjectSpec) -> dict[str, str]:
    """Spec labels plus the management marker, as a fresh mapping."""
    labels = dict(spec.labels)
    labels[MANAGED_BY_LABEL_KEY] = MANAGED_BY_LABEL_VALUE
    return labels


def identity_drift(state: ProjectState, spec: ProjectSpec) -> dict[str, str] | None:
    """Return the labels to write if name or labels drifted, else None.

    Labels present on the project but absent from the spec are kept.
    """
    wanted = desired_labels(spec)
    labels_match = all(state.labels.get(k) == v for k, v in wanted.items())
    if state.name == spec.name and labels_match:
        return None
    return {**state.labels, **wanted}


def normalize_service_name(name: str) -> str:
    """Expand a short API name such as ``compute`` to ``compute.googleapis.com``."""
    name = name.strip()
    if "." in name:
        return name
    full = name + SERVICE_DOMAIN_SUFFIX
    logger.info("assuming that %r means %r", name, full)
    return full


def normalize_service_names(names: Iterable[str]) -> list[str]:
    """Normalize every requested API name, dropping duplicates in order."""
    normalized: list[str] = []
    for name in names:
        full = normalize_service_name(name)
        if full not in normalized:
            normalized.append(full)
    return normalized


def compute_enable_list(
    requested: list[str],
    catalog: list[ServiceCatalogEntry],
    convention: CallingConvention,
) -> list[str]:
    """Select the requested services that are not enabled yet.

    Raises:
        UnknownServiceError: Under the sync convention, a requested service is
            missing from the catalog.
    """
    by_name = {entry.name: entry for entry in catalog}
    to_enable: list[str] = []

    for name in requested:
        entry = by_name.get(name)
        if entry is None:
            if convention is CallingConvention.SYNC:
                raise UnknownServiceError(name)
            to_enable.append(name)
        elif not entry.enabled:
            to_enable.append(name)

    return to_enable


def normalize_billing_account(reference: str) -> str:
    if reference.startswith(BILLING_ACCOUNT_PREFIX):
        return reference
    return BILLING_ACCOUNT_PREFIX + reference


@contextmanager
def _step(name: str, tracker: list[str]) -> Iterator[None]:
    """Tag any error raised inside with the name of the failing step."""
    tracker.append(name)
    try:
        yield
    except GprojError as e:
        if e.step is None:
            e.step = name
        raise


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Drives one project towards its spec.

    The reconciler owns no remote state: it reads live state through the
    GoogleCloud facades, decides, and issues mutating calls in dependency
    order. Long-running operations are awaited through the operation poller.
    """

    def __init__(
        self,
        config: Config,
        cloud: GoogleCloud,
        cache: CatalogCache | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated configuration.
            cloud: Remote service facades.
            cache: Catalog cache. Defaults to one rooted at config.cache_dir.
        """
        self._config = config
        self._cloud = cloud
        self._cache = cache or CatalogCache(config.cache_dir, cloud.activation)

    async def reconcile(self, spec: ProjectSpec) -> ReconcileResult:
        """Run every step once against the live project.

        Returns:
            ReconcileResult describing the converged project and what changed.

        Raises:
            GprojError: The first failure, tagged with the failing step.
        """
        result = ReconcileResult(project_id=spec.id, convention=self._config.convention)
        steps: list[str] = []

        try:
            async with asyncio.timeout(self._config.run_timeout_seconds):
                await self._run_steps(spec, result, steps)
        except TimeoutError as e:
            timeout_error = ReconcileTimeoutError(
                f"reconciliation did not finish within {self._config.run_timeout_seconds}s",
                step=steps[-1] if steps else None,
            )
            result.error = timeout_error
            raise timeout_error from e
        except BaseException as e:
            # Includes cancellation and unexpected provider errors
            result.error = e
            raise
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)

        return result

    async def _run_steps(self, spec: ProjectSpec, result: ReconcileResult, steps: list[str]) -> None:
        with _step(STEP_VALIDATE, steps):
            self._validate(spec)

        with _step(STEP_ENSURE_PROJECT, steps):
            state, created = await self._ensure_project(spec)
        result.state = state
        result.project_created = created

        if created:
            with _step(STEP_BOOTSTRAP_BILLING_API, steps):
                await self._enable_bootstrap_service(state)
            logger.info("created %s", spec.id)
        else:
            with _step(STEP_UPDATE_IDENTITY, steps):
                state, result.identity_updated = await self._update_identity(state, spec)
            result.state = state

        with _step(STEP_BILLING, steps):
            result.billing_account, result.billing_updated = await self._ensure_billing(
                state, spec
            )

        with _step(STEP_NORMALIZE_APIS, steps):
            requested = normalize_service_names(spec.apis)

        if not requested:
            return

        with _step(STEP_DIFF_APIS, steps):
            to_enable = await self._diff_services(state, requested)

        if to_enable:
            with _step(STEP_ENABLE_APIS, steps):
                await self._enable_services(state, to_enable)
            result.services_enabled = to_enable

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _validate(self, spec: ProjectSpec) -> None:
        if len(spec.name) < MIN_PROJECT_NAME_LENGTH:
            raise SpecValidationError(
                f"project name {spec.name!r} invalid: must be at least "
                f"{MIN_PROJECT_NAME_LENGTH} characters long (required by Google Cloud)"
            )

    async def _ensure_project(self, spec: ProjectSpec) -> tuple[ProjectState, bool]:
        """Fetch the project, creating it when it does not exist.

        Returns:
            The project state (with its number) and whether it was created.
        """
        resources = self._cloud.resources

        try:
            state = await self._call(resources.get_project, spec.id)
            return state, False
        except NotFoundOrForbiddenError:
            # Google answers 403 rather than 404 so as not to reveal projects
            # in other accounts. If the id is taken, creation fails atomically.
            logger.info("project %s does not exist, attempting to create it...", spec.id)

        operation = await self._call(
            resources.create_project, spec.id, spec.name, desired_labels(spec)
        )
        await wait_until_done(
            operation,
            resources.get_operation,
            deadline=self._config.create_timeout_seconds,
            interval=self._config.poll_interval_seconds,
        )

        # The project number is filled in by the server after creation
        try:
            state = await self._call(resources.get_project, spec.id)
        except NotFoundOrForbiddenError as e:
            raise RemoteCallError(
                f"error getting project info right after creating it: {e}"
            ) from e
        state.require_number()
        return state, True

    async def _enable_bootstrap_service(self, state: ProjectState) -> None:
        """Enable the Cloud Billing API, required before any other API."""
        activation = self._cloud.activation
        operation = await self._call(
            activation.batch_enable, state.require_number(), [BOOTSTRAP_SERVICE]
        )
        await wait_until_done(
            operation,
            activation.get_operation,
            interval=self._config.poll_interval_seconds,
        )

    async def _update_identity(
        self, state: ProjectState, spec: ProjectSpec
    ) -> tuple[ProjectState, bool]:
        labels = identity_drift(state, spec)
        if labels is None:
            return state, False

        updated = await self._call(self._cloud.resources.update_project, spec.id, spec.name, labels)
        if updated.project_number is None:
            updated = replace(updated, project_number=state.project_number)

        logger.info("updated name and labels of %s", spec.id)
        return updated, True

    async def _ensure_billing(
        self, state: ProjectState, spec: ProjectSpec
    ) -> tuple[str | None, bool]:
        """Link the resolved billing account.

        Returns:
            The billing account in effect (None if billing is not managed) and
            whether it was changed.
        """
        if self._billing_unmanaged(spec):
            logger.debug("Billing not managed by spec", extra={"project_id": spec.id})
            return None, False

        billing = self._cloud.billing
        number = state.require_number()

        # Get the current link so that we know whether we need to change it
        link = await self._call(billing.get_billing_link, number)
        account = await self._resolve_billing_account(spec)

        if link.billing_account_name == account:
            return account, False

        logger.info("updating billing account to %s", account)
        updated = await self._call(billing.update_billing_link, number, account)

        # A successful update call is not proof that billing is active
        if not updated.billing_enabled:
            raise BillingNotEnabledError(
                "billing account was updated but API response shows billing still not "
                f"enabled: {updated!r}"
            )

        logger.info("updated billing info")
        return account, True

    def _billing_unmanaged(self, spec: ProjectSpec) -> bool:
        return (
            self._config.convention is CallingConvention.APPLY and not spec.billing.strip()
        )

    async def _resolve_billing_account(self, spec: ProjectSpec) -> str:
        reference = spec.billing.strip()
        if reference and reference != AUTO_SELECT_BILLING:
            return normalize_billing_account(reference)

        logger.info("no billing account in spec, looking up available billing accounts...")
        accounts = await self._call(self._cloud.billing.list_billing_accounts)
        open_accounts = [a for a in accounts if a.open]

        if len(open_accounts) != 1:
            raise AmbiguousBillingAccountError(len(open_accounts), len(accounts))

        chosen = open_accounts[0]
        logger.info("using the only open billing account %r (%s)", chosen.name, chosen.display_name)
        return chosen.name

    async def _diff_services(self, state: ProjectState, requested: list[str]) -> list[str]:
        catalog = await self._call(self._cache.list_services, state.require_number())
        to_enable = compute_enable_list(requested, catalog, self._config.convention)

        # Reject the whole batch rather than submitting part of it
        if len(to_enable) > MAX_BATCH_ENABLE_SERVICES:
            raise BatchLimitExceededError(len(to_enable), MAX_BATCH_ENABLE_SERVICES)

        return to_enable

    async def _enable_services(self, state: ProjectState, to_enable: list[str]) -> None:
        activation = self._cloud.activation
        number = state.require_number()

        logger.info("enabling %d APIs:", len(to_enable))
        for name in to_enable:
            logger.info("  %s", name)

        operation = await self._call(activation.batch_enable, number, to_enable)
        logger.info("this may take a minute or two...")
        await wait_until_done(
            operation,
            activation.get_operation,
            interval=self._config.poll_interval_seconds,
        )

        await self._call(self._cache.mark_enabled, number, to_enable)

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking facade call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "project_id": result.project_id,
            "project_number": result.state.project_number if result.state else None,
            "convention": result.convention.value,
            "duration_seconds": result.duration_seconds,
            "project_created": result.project_created,
            "identity_updated": result.identity_updated,
            "billing_updated": result.billing_updated,
            "services_enabled": len(result.services_enabled),
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.debug("Reconciliation failed", extra=extra)
        elif result.changed:
            logger.debug("Reconciliation applied changes", extra=extra)
        else:
            logger.info("%s is up to date", result.project_id, extra=extra)
