"""Tests for the reconciliation engine.

Drive the Reconciler end to end against the in-memory Google Cloud mock and
assert on which remote calls were made.
"""

import logging
from unittest.mock import MagicMock

import pytest
from gcp_mock import MockCloudState, create_mock_cloud

from gproj.config import BOOTSTRAP_SERVICE, CallingConvention, Config
from gproj.errors import (
    AmbiguousBillingAccountError,
    BatchLimitExceededError,
    BillingNotEnabledError,
    OperationTimeoutError,
    ProjectNumberUnavailableError,
    ReconcileTimeoutError,
    RemoteCallError,
    RemoteOperationError,
    SpecValidationError,
    UnknownServiceError,
)
from gproj.models import ProjectSpec, ProjectState, ServiceCatalogEntry
from gproj.reconciler import (
    STEP_BILLING,
    STEP_DIFF_APIS,
    STEP_ENSURE_PROJECT,
    STEP_VALIDATE,
    Reconciler,
    compute_enable_list,
    desired_labels,
    identity_drift,
    normalize_billing_account,
    normalize_service_name,
    normalize_service_names,
)

ACCOUNT = "billingAccounts/0000AA-1111BB-2222CC"


def mutating(state: MockCloudState) -> list[tuple[str, tuple]]:
    return [(c.method, c.args) for c in state.mutating_calls]


# =============================================================================
# Pure helpers
# =============================================================================


class TestNormalization:
    def test_short_name_expanded(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="gproj.reconciler"):
            assert normalize_service_name("compute") == "compute.googleapis.com"

        assert "assuming that 'compute' means 'compute.googleapis.com'" in caplog.text

    def test_full_name_untouched(self) -> None:
        assert normalize_service_name("partner-api.example.com") == "partner-api.example.com"

    def test_duplicates_dropped_in_order(self) -> None:
        names = normalize_service_names(["compute", "storage", "compute.googleapis.com"])

        assert names == ["compute.googleapis.com", "storage.googleapis.com"]

    def test_billing_account_prefix(self) -> None:
        assert normalize_billing_account("0000AA-1111BB-2222CC") == ACCOUNT
        assert normalize_billing_account(ACCOUNT) == ACCOUNT


class TestComputeEnableList:
    CATALOG = [
        ServiceCatalogEntry(name="compute.googleapis.com", enabled=True),
        ServiceCatalogEntry(name="storage.googleapis.com", enabled=False),
    ]

    def test_only_disabled_services_selected(self) -> None:
        requested = ["compute.googleapis.com", "storage.googleapis.com"]

        result = compute_enable_list(requested, self.CATALOG, CallingConvention.APPLY)

        assert result == ["storage.googleapis.com"]

    def test_apply_enables_unknown_service(self) -> None:
        result = compute_enable_list(["new.googleapis.com"], self.CATALOG, CallingConvention.APPLY)

        assert result == ["new.googleapis.com"]

    def test_sync_rejects_unknown_service(self) -> None:
        with pytest.raises(UnknownServiceError) as exc_info:
            compute_enable_list(["new.googleapis.com"], self.CATALOG, CallingConvention.SYNC)

        assert str(exc_info.value) == "no such API: new.googleapis.com"


class TestIdentity:
    def test_desired_labels_adds_marker_without_mutating_spec(self) -> None:
        spec = ProjectSpec(id="p", name="Project", labels={"team": "data"})

        labels = desired_labels(spec)

        assert labels == {"team": "data", "managed-by": "gproj"}
        assert spec.labels == {"team": "data"}

    def test_no_drift(self) -> None:
        spec = ProjectSpec(id="p", name="Project", labels={"team": "data"})
        state = ProjectState("p", 1, "Project", {"team": "data", "managed-by": "gproj", "x": "y"})

        assert identity_drift(state, spec) is None

    def test_drift_keeps_unmanaged_labels(self) -> None:
        spec = ProjectSpec(id="p", name="Project", labels={"team": "data"})
        state = ProjectState("p", 1, "Project", {"team": "web", "cost-center": "42"})

        assert identity_drift(state, spec) == {
            "team": "data",
            "cost-center": "42",
            "managed-by": "gproj",
        }


# =============================================================================
# End to end
# =============================================================================


class TestCreation:
    @pytest.mark.asyncio
    async def test_creates_project_in_dependency_order(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        """Test the full creation flow against an empty account."""
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")

        result = await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        number = cloud_state.project_number(spec.id)
        assert mutating(cloud_state) == [
            (
                "create_project",
                (spec.id, "Data Platform", {"team": "data", "managed-by": "gproj"}),
            ),
            ("batch_enable", (number, [BOOTSTRAP_SERVICE])),
            ("update_billing_link", (number, ACCOUNT)),
            ("batch_enable", (number, ["compute.googleapis.com", "storage.googleapis.com"])),
        ]
        assert result.success
        assert result.project_created
        assert result.billing_updated
        assert result.billing_account == ACCOUNT
        assert result.services_enabled == ["compute.googleapis.com", "storage.googleapis.com"]
        assert result.state is not None and result.state.project_number == number

    @pytest.mark.asyncio
    async def test_spec_labels_not_mutated(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")

        await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert spec.labels == {"team": "data"}

    @pytest.mark.asyncio
    async def test_narrates_side_effects(
        self,
        config: Config,
        cloud_state: MockCloudState,
        spec: ProjectSpec,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")

        with caplog.at_level(logging.INFO):
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert f"created {spec.id}" in caplog.messages
        assert f"updating billing account to {ACCOUNT}" in caplog.messages
        assert "enabling 2 APIs:" in caplog.messages

    @pytest.mark.asyncio
    async def test_creation_operation_error(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        cloud_state.fail_create = {"code": 6, "message": "project id already in use"}

        with pytest.raises(RemoteOperationError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.step == STEP_ENSURE_PROJECT
        assert "project id already in use" in str(exc_info.value)
        assert cloud_state.count("batch_enable") == 0

    @pytest.mark.asyncio
    async def test_created_project_without_number(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        cloud_state.create_project_number = False

        with pytest.raises(ProjectNumberUnavailableError):
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert cloud_state.count("batch_enable") == 0

    @pytest.mark.asyncio
    async def test_lookup_failure_is_fatal(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        """Test that only not-found/forbidden leads to a creation attempt."""
        cloud_state.fail_get_project = 500

        with pytest.raises(RemoteCallError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.status == 500
        assert exc_info.value.step == STEP_ENSURE_PROJECT
        assert cloud_state.count("create_project") == 0

    @pytest.mark.asyncio
    async def test_creation_deadline(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        cloud_state.polls_until_done = 10_000
        # Below the configurable minimum, to keep the test fast
        object.__setattr__(config, "create_timeout_seconds", 0.2)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.step == STEP_ENSURE_PROJECT
        assert exc_info.value.timeout_seconds == 0.2
        assert cloud_state.count("batch_enable") == 0


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_makes_no_mutating_calls(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        """Test that a converged project is left alone."""
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")
        cloud = create_mock_cloud(cloud_state)
        await Reconciler(config, cloud).reconcile(spec)
        cloud_state.calls.clear()

        result = await Reconciler(config, cloud).reconcile(spec)

        assert mutating(cloud_state) == []
        assert not result.changed
        assert cloud_state.count("list_service_pages") == 0

    @pytest.mark.asyncio
    async def test_existing_converged_project(
        self, config: Config, cloud_state: MockCloudState, caplog: pytest.LogCaptureFixture
    ) -> None:
        number = cloud_state.add_project(
            "my-project",
            "My Project",
            {"managed-by": "gproj"},
            enabled={"compute.googleapis.com"},
        )
        cloud_state.link_billing(number, ACCOUNT)
        spec = ProjectSpec(id="my-project", name="My Project", apis=["compute"], billing=ACCOUNT)

        with caplog.at_level(logging.INFO):
            result = await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert mutating(cloud_state) == []
        assert not result.changed
        assert "my-project is up to date" in caplog.messages


class TestValidation:
    @pytest.mark.asyncio
    async def test_short_name_makes_no_remote_calls(
        self, config: Config, cloud_state: MockCloudState
    ) -> None:
        spec = ProjectSpec(id="my-project", name="abc")

        with pytest.raises(SpecValidationError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.step == STEP_VALIDATE
        assert "at least 4 characters" in str(exc_info.value)
        assert cloud_state.calls == []


class TestIdentityUpdate:
    @pytest.mark.asyncio
    async def test_renamed_project_updated_keeping_labels(
        self, config: Config, cloud_state: MockCloudState
    ) -> None:
        number = cloud_state.add_project("my-project", "Old Name", {"cost-center": "42"})
        spec = ProjectSpec(id="my-project", name="New Name", labels={"team": "data"})

        result = await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert mutating(cloud_state) == [
            (
                "update_project",
                (
                    "my-project",
                    "New Name",
                    {"cost-center": "42", "team": "data", "managed-by": "gproj"},
                ),
            )
        ]
        assert result.identity_updated
        assert result.state is not None and result.state.project_number == number


class TestBilling:
    @pytest.fixture
    def existing(self, cloud_state: MockCloudState) -> int:
        return cloud_state.add_project("my-project", "My Project", {"managed-by": "gproj"})

    @pytest.mark.asyncio
    async def test_auto_select_single_open_account(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        cloud_state.add_billing_account("CLOSED-1", open=False)
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")
        spec = ProjectSpec(id="my-project", name="My Project", billing="enable")

        result = await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert mutating(cloud_state) == [("update_billing_link", (existing, ACCOUNT))]
        assert result.billing_account == ACCOUNT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("open_accounts", [0, 2])
    async def test_auto_select_ambiguous(
        self, config: Config, cloud_state: MockCloudState, existing: int, open_accounts: int
    ) -> None:
        cloud_state.add_billing_account("CLOSED-1", open=False)
        for i in range(open_accounts):
            cloud_state.add_billing_account(f"OPEN-{i}")
        spec = ProjectSpec(id="my-project", name="My Project", billing="enable")

        with pytest.raises(AmbiguousBillingAccountError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.step == STEP_BILLING
        assert exc_info.value.open_count == open_accounts
        assert exc_info.value.total_count == open_accounts + 1
        assert cloud_state.count("update_billing_link") == 0

    @pytest.mark.asyncio
    async def test_explicit_account_gets_prefix(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        spec = ProjectSpec(id="my-project", name="My Project", billing="0000AA-1111BB-2222CC")

        await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert cloud_state.count("list_billing_accounts") == 0
        assert mutating(cloud_state) == [("update_billing_link", (existing, ACCOUNT))]

    @pytest.mark.asyncio
    async def test_apply_leaves_unset_billing_alone(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")
        spec = ProjectSpec(id="my-project", name="My Project")

        result = await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert cloud_state.count("get_billing_link") == 0
        assert result.billing_account is None

    @pytest.mark.asyncio
    async def test_sync_auto_selects_unset_billing(
        self, sync_config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")
        spec = ProjectSpec(id="my-project", name="My Project")

        await Reconciler(sync_config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert mutating(cloud_state) == [("update_billing_link", (existing, ACCOUNT))]

    @pytest.mark.asyncio
    async def test_billing_still_disabled_after_update(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        cloud_state.billing_enabled_after_update = False
        spec = ProjectSpec(id="my-project", name="My Project", billing=ACCOUNT)

        with pytest.raises(BillingNotEnabledError):
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)


class TestServices:
    @pytest.fixture
    def existing(self, cloud_state: MockCloudState) -> int:
        return cloud_state.add_project("my-project", "My Project", {"managed-by": "gproj"})

    @pytest.mark.asyncio
    async def test_batch_limit_rejects_whole_batch(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        spec = ProjectSpec(
            id="my-project",
            name="My Project",
            apis=[f"svc{i}.googleapis.com" for i in range(21)],
        )

        with pytest.raises(BatchLimitExceededError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.count == 21
        assert exc_info.value.limit == 20
        assert exc_info.value.step == STEP_DIFF_APIS
        assert cloud_state.count("batch_enable") == 0

    @pytest.mark.asyncio
    async def test_apply_enables_service_missing_from_catalog(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        spec = ProjectSpec(id="my-project", name="My Project", apis=["brand-new"])

        result = await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert mutating(cloud_state) == [("batch_enable", (existing, ["brand-new.googleapis.com"]))]
        assert result.services_enabled == ["brand-new.googleapis.com"]

    @pytest.mark.asyncio
    async def test_sync_rejects_service_missing_from_catalog(
        self, sync_config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        cloud_state.add_billing_account("0000AA-1111BB-2222CC")
        cloud_state.link_billing(existing, ACCOUNT)
        spec = ProjectSpec(id="my-project", name="My Project", apis=["brand-new"])

        with pytest.raises(UnknownServiceError) as exc_info:
            await Reconciler(sync_config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.name == "brand-new.googleapis.com"
        assert cloud_state.count("batch_enable") == 0

    @pytest.mark.asyncio
    async def test_enable_operation_error(
        self, config: Config, cloud_state: MockCloudState, existing: int
    ) -> None:
        cloud_state.fail_enable = {"code": 9, "message": "billing must be enabled"}
        spec = ProjectSpec(id="my-project", name="My Project", apis=["compute"])

        with pytest.raises(RemoteOperationError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.code == 9


class TestRunTimeout:
    @pytest.mark.asyncio
    async def test_run_deadline_names_last_step(
        self, config: Config, cloud_state: MockCloudState, spec: ProjectSpec
    ) -> None:
        """Test that the overall deadline cancels an operation that never finishes."""
        cloud_state.polls_until_done = 10_000
        # Below the configurable minimum, to keep the test fast
        object.__setattr__(config, "run_timeout_seconds", 0.2)

        with pytest.raises(ReconcileTimeoutError) as exc_info:
            await Reconciler(config, create_mock_cloud(cloud_state)).reconcile(spec)

        assert exc_info.value.step == STEP_ENSURE_PROJECT


class TestResultSummary:
    @pytest.mark.asyncio
    async def test_unexpected_error_is_not_reported_as_up_to_date(
        self, config: Config, cloud_state: MockCloudState, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a failure outside the error taxonomy still lands in the summary."""
        cloud_state.add_project("my-project", "My Project", {"managed-by": "gproj"})
        cloud = create_mock_cloud(cloud_state)
        cloud.billing.get_billing_link = MagicMock(side_effect=KeyError("billingEnabled"))
        spec = ProjectSpec(id="my-project", name="My Project", billing=ACCOUNT)

        with caplog.at_level(logging.DEBUG, logger="gproj.reconciler"):
            with pytest.raises(KeyError):
                await Reconciler(config, cloud).reconcile(spec)

        assert "my-project is up to date" not in caplog.messages
        summary = next(r for r in caplog.records if r.getMessage() == "Reconciliation failed")
        assert summary.error_type == "KeyError"
