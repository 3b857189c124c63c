"""Tests for workflow models."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from provisioner.models import (
    Grant,
    GrantRequest,
    OutputsRecord,
    ProvisionedResource,
    PublishResult,
    ResourceKind,
    ResourceSpec,
    RunSummary,
    SecretOutcome,
    StepStatus,
)


class TestResourceSpec:
    def test_spec_is_immutable(self) -> None:
        spec = ResourceSpec(
            kind=ResourceKind.RESOURCE_GROUP,
            name="rg-x",
            scope="/subscriptions/s",
            location="eastus",
        )

        with pytest.raises(ValidationError):
            spec.name = "rg-y"  # type: ignore[misc]

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ResourceSpec(
                kind=ResourceKind.KEY_VAULT,
                name="",
                scope="/subscriptions/s",
                location="eastus",
            )


class TestGrant:
    def test_role_definition_guid(self) -> None:
        grant = Grant(
            id="/x/roleAssignments/1",
            principal_id="p1",
            role_definition_id=(
                "/subscriptions/s/providers/Microsoft.Authorization/roleDefinitions/"
                "4633458B-17DE-408A-B874-0445C86B69E6"
            ),
            scope="/subscriptions/s",
        )

        assert grant.role_definition_guid == "4633458b-17de-408a-b874-0445c86b69e6"

    def test_identical_requests_are_equal(self) -> None:
        a = GrantRequest(principal_id="p1", role_name="Reader", scope="/s")
        b = GrantRequest(principal_id="p1", role_name="Reader", scope="/s")

        assert a == b


class TestResults:
    def test_publish_result_stored(self) -> None:
        assert PublishResult(outcome=SecretOutcome.STORED).stored
        assert not PublishResult(outcome=SecretOutcome.SKIPPED).stored


class TestRunSummary:
    """Tests for the per-step run summary."""

    def test_warnings_include_skipped_steps(self) -> None:
        summary = RunSummary()
        summary.add("resourceGroup", StepStatus.SUCCEEDED)
        summary.add("secret", StepStatus.SKIPPED, "no vault")
        summary.add("vault access grant", StepStatus.WARNING, "denied")

        assert [s.step for s in summary.warnings] == ["secret", "vault access grant"]
        assert summary.has_failures is False

    def test_status_of(self) -> None:
        summary = RunSummary()
        summary.add("outputs", StepStatus.FAILED, "disk full")

        assert summary.status_of("outputs") == StepStatus.FAILED
        assert summary.status_of("secret") is None
        assert summary.has_failures is True

    def test_duration(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=UTC)
        summary = RunSummary(start_time=start)

        assert summary.duration_seconds == 0.0
        summary.end_time = start + timedelta(seconds=42)
        assert summary.duration_seconds == 42.0

    def test_render(self) -> None:
        summary = RunSummary(outputs_path="outputs.json")
        summary.add("keyVault", StepStatus.ALREADY_SATISFIED, "/subscriptions/s/kv")

        rendered = summary.render()

        lines = rendered.splitlines()
        assert lines[0].startswith("STEP")
        assert "already_satisfied" in lines[1]
        assert lines[-1] == "Outputs written to outputs.json"


class TestOutputsRecord:
    def test_serializes_with_camel_case_aliases(self) -> None:
        record = OutputsRecord(
            subscription_id="s",
            resource_group="rg-x",
            location="eastus",
            key_vault_uri="https://kv.vault.azure.net/",
            resources={
                ResourceKind.KEY_VAULT: ProvisionedResource(
                    kind=ResourceKind.KEY_VAULT, name="kv", id="/kv", endpoint="https://kv/"
                )
            },
        )

        data = record.model_dump(by_alias=True, mode="json")

        assert data["subscriptionId"] == "s"
        assert data["keyVaultUri"] == "https://kv.vault.azure.net/"
        assert data["secretStored"] is False
        assert "keyVault" in data["resources"]
