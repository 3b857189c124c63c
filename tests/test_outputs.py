"""Tests for outputs document persistence."""

import json
from pathlib import Path

import pytest

from provisioner.models import OutputsRecord, ProvisionedResource, ResourceKind
from provisioner.outputs import (
    OutputsLoadError,
    OutputsWriteError,
    load_outputs,
    record_outputs,
)


def make_record() -> OutputsRecord:
    vault = ProvisionedResource(
        kind=ResourceKind.KEY_VAULT,
        name="kv-acs-abc123",
        id="/subscriptions/s/resourceGroups/rg/providers/Microsoft.KeyVault/vaults/kv-acs-abc123",
        endpoint="https://kv-acs-abc123.vault.azure.net/",
    )
    return OutputsRecord(
        subscription_id="00000000-0000-0000-0000-000000000000",
        resource_group="rg-acs-call-abc123",
        location="eastus",
        name_suffix="abc123",
        resources={ResourceKind.KEY_VAULT: vault},
        secret_name="AcsConnectionString",
        secret_stored=True,
        key_vault_uri=vault.endpoint,
    )


class TestRecordOutputs:
    def test_writes_camel_case_json(self, tmp_path: Path) -> None:
        path = tmp_path / "outputs.json"

        record_outputs(make_record(), path)

        data = json.loads(path.read_text())
        assert data["resourceGroup"] == "rg-acs-call-abc123"
        assert data["keyVaultUri"] == "https://kv-acs-abc123.vault.azure.net/"
        assert data["secretStored"] is True
        assert data["resources"]["keyVault"]["name"] == "kv-acs-abc123"

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        path = tmp_path / "out" / "nested" / "outputs.json"

        record_outputs(make_record(), path)

        assert path.exists()

    def test_unwritable_path_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(OutputsWriteError):
            record_outputs(make_record(), blocker / "outputs.json")

    def test_no_secret_values_in_document(self, tmp_path: Path) -> None:
        path = tmp_path / "outputs.json"

        record_outputs(make_record(), path)

        assert "accesskey" not in path.read_text().lower()


class TestLoadOutputs:
    def test_missing_file_returns_none(self, tmp_path: Path) -> None:
        assert load_outputs(tmp_path / "outputs.json") is None

    def test_load_recorded_document(self, tmp_path: Path) -> None:
        path = tmp_path / "outputs.json"
        record_outputs(make_record(), path)

        loaded = load_outputs(path)

        assert loaded is not None
        assert loaded.name_suffix == "abc123"
        assert loaded.resources[ResourceKind.KEY_VAULT].endpoint == (
            "https://kv-acs-abc123.vault.azure.net/"
        )

    def test_invalid_document(self, tmp_path: Path) -> None:
        path = tmp_path / "outputs.json"
        path.write_text('{"resourceGroup": 42')

        with pytest.raises(OutputsLoadError):
            load_outputs(path)
