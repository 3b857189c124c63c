"""Tests for access grant reconciliation."""

import pytest
from azure_mock import SUBSCRIPTION_ID, MockClock, MockCloud, denied, transient

from provisioner.cloud import CloudError, ErrorKind
from provisioner.grants import GrantReconciler, scope_covers
from provisioner.models import GrantOutcome, GrantRequest

VAULT_SCOPE = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-x"
    "/providers/Microsoft.KeyVault/vaults/kv-x"
)
ROLE = "Key Vault Secrets User"


def make_request(principal_id: str = "func-identity") -> GrantRequest:
    return GrantRequest(principal_id=principal_id, role_name=ROLE, scope=VAULT_SCOPE)


class TestEnsureGrant:
    """Tests for GrantReconciler.ensure_grant."""

    @pytest.mark.asyncio
    async def test_creates_and_confirms_visibility(self) -> None:
        cloud = MockCloud()
        clock = MockClock()

        result = await GrantReconciler(cloud, clock=clock).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.GRANTED
        assert result.attempts == 1
        assert result.visible is True
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_second_ensure_is_already_granted(self) -> None:
        """Test that a repeated grant leaves exactly one assignment."""
        cloud = MockCloud()
        reconciler = GrantReconciler(cloud, clock=MockClock())

        first = await reconciler.ensure_grant(make_request())
        second = await reconciler.ensure_grant(make_request())

        assert first.outcome == GrantOutcome.GRANTED
        assert second.outcome == GrantOutcome.ALREADY_GRANTED
        assert len(cloud.grants_for("func-identity", ROLE, VAULT_SCOPE)) == 1
        assert cloud.call_count("create_grant") == 1

    @pytest.mark.asyncio
    async def test_existing_reader_grant(self) -> None:
        cloud = MockCloud()
        cloud.add_grant("p1", "Reader", "/vault/v1")
        request = GrantRequest(principal_id="p1", role_name="Reader", scope="/vault/v1")

        result = await GrantReconciler(cloud, clock=MockClock()).ensure_grant(request)

        assert result.outcome == GrantOutcome.ALREADY_GRANTED
        assert len(cloud.grants_for("p1", "Reader", "/vault/v1")) == 1

    @pytest.mark.asyncio
    async def test_inherited_assignment_counts(self) -> None:
        cloud = MockCloud()
        cloud.add_grant("func-identity", ROLE, f"/subscriptions/{SUBSCRIPTION_ID}")

        result = await GrantReconciler(cloud, clock=MockClock()).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.ALREADY_GRANTED
        assert cloud.call_count("create_grant") == 0

    @pytest.mark.asyncio
    async def test_child_scope_assignment_does_not_count(self) -> None:
        """Test that an assignment on one secret is not access to the whole vault."""
        cloud = MockCloud()
        cloud.add_grant("func-identity", ROLE, f"{VAULT_SCOPE}/secrets/other")

        result = await GrantReconciler(cloud, clock=MockClock()).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.GRANTED
        assert cloud.call_count("create_grant") == 1
        assert len(cloud.grants_for("func-identity", ROLE, VAULT_SCOPE)) == 1

    @pytest.mark.asyncio
    async def test_other_role_does_not_count(self) -> None:
        cloud = MockCloud()
        cloud.add_grant("func-identity", "Reader", VAULT_SCOPE)

        result = await GrantReconciler(cloud, clock=MockClock()).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.GRANTED

    @pytest.mark.asyncio
    async def test_denied_stops_after_one_attempt(self) -> None:
        """Test that a denial is not retried and no backoff is spent."""
        cloud = MockCloud()
        cloud.fail_always("create_grant", denied())
        clock = MockClock()

        result = await GrantReconciler(cloud, clock=clock).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.DENIED
        assert result.attempts == 1
        assert cloud.call_count("create_grant") == 1
        assert clock.sleeps == []
        assert "manually" in (result.message or "")

    @pytest.mark.asyncio
    async def test_transient_error_retried_with_backoff(self) -> None:
        cloud = MockCloud()
        cloud.fail_next("create_grant", transient())
        clock = MockClock()

        result = await GrantReconciler(cloud, clock=clock).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.GRANTED
        assert result.attempts == 2
        assert clock.sleeps == [5]

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self) -> None:
        cloud = MockCloud()
        cloud.fail_always("create_grant", transient("PrincipalNotFound"))
        clock = MockClock()

        result = await GrantReconciler(cloud, max_attempts=3, clock=clock).ensure_grant(
            make_request()
        )

        assert result.outcome == GrantOutcome.FAILED
        assert result.attempts == 3
        assert cloud.call_count("create_grant") == 3
        # No sleep after the final attempt
        assert clock.sleeps == [5, 10]
        assert "PrincipalNotFound" in (result.message or "")

    @pytest.mark.asyncio
    async def test_already_exists_error_is_success(self) -> None:
        cloud = MockCloud()
        cloud.fail_next(
            "create_grant", CloudError(ErrorKind.ALREADY_EXISTS, "RoleAssignmentExists", 409)
        )

        result = await GrantReconciler(cloud, clock=MockClock()).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.ALREADY_GRANTED

    @pytest.mark.asyncio
    async def test_polls_until_visible(self) -> None:
        cloud = MockCloud()
        cloud.grant_visibility_delay = 2
        clock = MockClock()

        result = await GrantReconciler(cloud, visibility_interval=5, clock=clock).ensure_grant(
            make_request()
        )

        assert result.outcome == GrantOutcome.GRANTED
        assert result.visible is True
        assert clock.sleeps == [5, 5]

    @pytest.mark.asyncio
    async def test_not_visible_within_budget(self) -> None:
        """Test that an invisible grant is still reported as granted."""
        cloud = MockCloud()
        cloud.grant_visibility_delay = 100
        clock = MockClock()

        result = await GrantReconciler(
            cloud, visibility_attempts=3, visibility_interval=5, clock=clock
        ).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.GRANTED
        assert result.visible is False
        assert result.message == "assignment created but not yet visible"
        assert clock.sleeps == [5, 5]

    @pytest.mark.asyncio
    async def test_listing_error_still_attempts_creation(self) -> None:
        cloud = MockCloud()
        cloud.fail_next("list_grants", denied())

        result = await GrantReconciler(cloud, clock=MockClock()).ensure_grant(make_request())

        assert result.outcome == GrantOutcome.GRANTED
        assert cloud.call_count("create_grant") == 1


class TestRevokeGrant:
    @pytest.mark.asyncio
    async def test_revoke_removes_assignment(self) -> None:
        cloud = MockCloud()
        cloud.add_grant("func-identity", ROLE, VAULT_SCOPE)

        await GrantReconciler(cloud, clock=MockClock()).revoke_grant(make_request())

        assert cloud.grants_for("func-identity", ROLE, VAULT_SCOPE) == []

    @pytest.mark.asyncio
    async def test_revoke_failure_raises(self) -> None:
        cloud = MockCloud()
        cloud.fail_next("delete_grant", transient())

        with pytest.raises(CloudError):
            await GrantReconciler(cloud, clock=MockClock()).revoke_grant(make_request())


class TestScopeCovers:
    """Tests for assignment inheritance along the scope hierarchy."""

    def test_same_scope(self) -> None:
        assert scope_covers(VAULT_SCOPE, VAULT_SCOPE)

    def test_parent_scope_is_case_insensitive(self) -> None:
        assert scope_covers(f"/SUBSCRIPTIONS/{SUBSCRIPTION_ID}", VAULT_SCOPE)

    def test_child_scope_does_not_cover(self) -> None:
        assert not scope_covers(f"{VAULT_SCOPE}/secrets/other", VAULT_SCOPE)

    def test_sibling_with_common_prefix(self) -> None:
        assert not scope_covers(
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg", VAULT_SCOPE
        )

    def test_trailing_slash_ignored(self) -> None:
        assert scope_covers(f"{VAULT_SCOPE}/", VAULT_SCOPE)
