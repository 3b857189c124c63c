"""Tests for waiting on directory propagation of a new identity."""

import pytest
from azure_mock import MockClock, MockCloud, transient

from provisioner.identity import wait_for_principal
from provisioner.models import PrincipalStatus


class TestWaitForPrincipal:
    @pytest.mark.asyncio
    async def test_present_immediately(self) -> None:
        cloud = MockCloud()
        cloud.add_principal("p1")
        clock = MockClock()

        status = await wait_for_principal(cloud, "p1", clock=clock)

        assert status == PrincipalStatus.PRESENT
        assert cloud.call_count("show_principal") == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_present_after_replication_lag(self) -> None:
        cloud = MockCloud()
        cloud.add_principal("p1", visible_after=2)
        clock = MockClock()

        status = await wait_for_principal(cloud, "p1", 12, 5, clock=clock)

        assert status == PrincipalStatus.PRESENT
        assert cloud.call_count("show_principal") == 3
        assert clock.sleeps == [5, 5]

    @pytest.mark.asyncio
    async def test_absent_after_budget(self) -> None:
        """Test that waiting is bounded and no sleep follows the last attempt."""
        cloud = MockCloud()
        clock = MockClock()

        status = await wait_for_principal(cloud, "ghost", 4, 5, clock=clock)

        assert status == PrincipalStatus.ABSENT
        assert cloud.call_count("show_principal") == 4
        assert clock.total_slept == 15

    @pytest.mark.asyncio
    async def test_lookup_errors_count_as_miss(self) -> None:
        cloud = MockCloud()
        cloud.add_principal("p1")
        cloud.fail_next("show_principal", transient())
        clock = MockClock()

        status = await wait_for_principal(cloud, "p1", 3, 5, clock=clock)

        assert status == PrincipalStatus.PRESENT
        assert cloud.call_count("show_principal") == 2
