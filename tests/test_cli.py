"""Tests for the acsprov CLI and logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Generator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from azure_mock import MockCloud
from click.testing import CliRunner

from provisioner.cli import cli
from provisioner.main import JsonFormatter
from provisioner.models import OutputsRecord, ProvisionedResource, ResourceKind
from provisioner.outputs import record_outputs

SUBSCRIPTION = "12345678-1234-1234-1234-123456789012"
VAULT_URI = "https://kv-acs-abc123.vault.azure.net/"


@pytest.fixture(autouse=True)
def no_logging_setup() -> Generator[None, None, None]:
    # Keep the CLI from replacing pytest's log handlers
    with patch("provisioner.cli.setup_logging"):
        yield


@pytest.fixture
def outputs_file(tmp_path: Path) -> Path:
    path = tmp_path / "outputs.json"
    record_outputs(
        OutputsRecord(
            subscription_id=SUBSCRIPTION,
            resource_group="rg-acs-call-abc123",
            location="eastus",
            name_suffix="abc123",
            resources={
                ResourceKind.KEY_VAULT: ProvisionedResource(
                    kind=ResourceKind.KEY_VAULT,
                    name="kv-acs-abc123",
                    id="/subscriptions/s/resourceGroups/rg/providers/Microsoft.KeyVault/vaults/kv",
                    endpoint=VAULT_URI,
                )
            },
            secret_name="AcsConnectionString",
            secret_stored=True,
            key_vault_uri=VAULT_URI,
        ),
        path,
    )
    return path


class TestProvisionCommand:
    def test_invalid_configuration(self) -> None:
        runner = CliRunner()

        result = runner.invoke(
            cli, ["provision"], env={"AZURE_SUBSCRIPTION_ID": "", "AZURE_LOCATION": "eastus"}
        )

        assert result.exit_code == 1
        assert "AZURE_SUBSCRIPTION_ID is required" in result.output

    def test_provision_runs_workflow(self, tmp_path: Path) -> None:
        runner = CliRunner()

        with patch(
            "provisioner.cli.run_provisioning", new_callable=AsyncMock, return_value=0
        ) as mock_run:
            result = runner.invoke(
                cli,
                [
                    "provision",
                    "--subscription",
                    SUBSCRIPTION,
                    "--location",
                    "eastus",
                    "--suffix",
                    "demo1",
                    "--outputs",
                    str(tmp_path / "out.json"),
                ],
            )

        assert result.exit_code == 0
        config = mock_run.call_args.args[0]
        assert config.name_suffix == "demo1"
        assert config.outputs_path == tmp_path / "out.json"


class TestLogging:
    def test_json_logs_by_default(self, outputs_file: Path) -> None:
        with patch("provisioner.cli.setup_logging") as mock_setup:
            CliRunner().invoke(cli, ["outputs", "--path", str(outputs_file)])

        mock_setup.assert_called_once_with("json", logging.INFO)

    def test_text_logs_on_request(self, outputs_file: Path) -> None:
        with patch("provisioner.cli.setup_logging") as mock_setup:
            CliRunner().invoke(
                cli, ["--log-format", "text", "-v", "outputs", "--path", str(outputs_file)]
            )

        mock_setup.assert_called_once_with("text", logging.DEBUG)


class TestOutputsCommand:
    def test_shows_recorded_outputs(self, outputs_file: Path) -> None:
        result = CliRunner().invoke(cli, ["outputs", "--path", str(outputs_file)])

        assert result.exit_code == 0
        assert "rg-acs-call-abc123" in result.output
        assert VAULT_URI in result.output

    def test_missing_outputs(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["outputs", "--path", str(tmp_path / "none.json")])

        assert result.exit_code == 1
        assert "No outputs found" in result.output


class TestVerifySecretCommand:
    def test_resolved_from_vault(self, outputs_file: Path) -> None:
        cloud = MockCloud()
        cloud.secrets[(VAULT_URI, "AcsConnectionString")] = "endpoint=https://acs/;accesskey=x"

        with patch("provisioner.cli._build_platform", return_value=cloud):
            result = CliRunner().invoke(
                cli, ["verify-secret", "--path", str(outputs_file)], env={"AcsConnectionString": None}
            )

        assert result.exit_code == 0
        assert "resolved from keyvault" in result.output
        assert "accesskey" not in result.output

    def test_unresolvable(self, outputs_file: Path) -> None:
        with patch("provisioner.cli._build_platform", return_value=MockCloud()):
            result = CliRunner().invoke(
                cli, ["verify-secret", "--path", str(outputs_file)], env={"AcsConnectionString": None}
            )

        assert result.exit_code == 1


class TestJsonFormatter:
    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            name="provisioner.grants",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Role assignment failed, retrying",
            args=(),
            exc_info=None,
        )
        record.attempt = 2

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "provisioner.grants"
        assert data["message"] == "Role assignment failed, retrying"
        assert data["attempt"] == 2
        assert "msg" not in data

