"""Azure platform mock for workflow testing.

This package provides an in-memory implementation of the CloudPlatform
interface and a virtual clock, so the full provisioning workflow can run
without Azure connectivity or real wall-clock delay.

Key Features:
- In-memory resources, role assignments, directory and secrets
- Eventual-consistency simulation (provider registration, principal and
  grant visibility delays)
- Data-plane RBAC enforcement for secret writes
- Error injection per method for failure scenarios
- Call recording for assertions

Usage:
    from azure_mock import MockClock, MockCloud

    cloud = MockCloud(caller=Principal(object_id="me"))
    clock = MockClock()
    result = await wait_for_principal(cloud, "p1", clock=clock)
    assert cloud.call_count("show_principal") == 1
"""

from .clock import MockClock
from .cloud import SUBSCRIPTION_ID, MockCloud, denied, role_guid, transient

__all__ = [
    "SUBSCRIPTION_ID",
    "MockClock",
    "MockCloud",
    "denied",
    "role_guid",
    "transient",
]
