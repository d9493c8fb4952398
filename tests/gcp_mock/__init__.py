"""Google Cloud API mock for reconciliation tests.

Provides in-memory implementations of the Resource Manager, Cloud Billing
and Service Usage facades so the reconciler can be exercised end to end
without network access or credentials.

Usage:
    from gcp_mock import MockCloudState, create_mock_cloud

    state = MockCloudState()
    state.add_billing_account("0000-1111-2222")
    cloud = create_mock_cloud(state)

    result = await Reconciler(config, cloud).reconcile(spec)

    assert state.count("create_project") == 1
"""

from .services import (
    MockActivationService,
    MockBillingService,
    MockResourceService,
    create_mock_cloud,
)
from .state import DEFAULT_CATALOG, MockCall, MockCloudState, MockOperation, MockService

__all__ = [
    "DEFAULT_CATALOG",
    "MockActivationService",
    "MockBillingService",
    "MockCall",
    "MockCloudState",
    "MockOperation",
    "MockResourceService",
    "MockService",
    "create_mock_cloud",
]
