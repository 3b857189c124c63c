"""Topology definition: resource names, SKUs and runtime settings.

The topology is derived from a name suffix and can be overridden by an
optional YAML file. Names are chosen here, once, and then handed to the
ensurer, which only reconciles existence.

SECURITY: The YAML file is size-limited and parsed with safe_load.
"""

from __future__ import annotations

import logging
import re
import secrets
from pathlib import Path
from typing import Annotated

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import DEFAULT_SECRET_NAME, Config

logger = logging.getLogger(__name__)

MAX_TOPOLOGY_FILE_SIZE_BYTES = 64 * 1024
NAME_SUFFIX_BYTES = 3  # 6 hex characters

# Azure naming rules for the resources with the tightest constraints
STORAGE_ACCOUNT_NAME_PATTERN = r"^[a-z0-9]{3,24}$"
KEY_VAULT_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{1,22}[a-zA-Z0-9]$"
FUNCTION_APP_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,58}[a-zA-Z0-9]$"


class TopologyLoadError(Exception):
    """Raised when the topology file cannot be loaded or fails validation."""

    pass


class CommunicationConfig(BaseModel):
    """Azure Communication Services resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    data_location: str = Field("United States", alias="dataLocation")


class StorageConfig(BaseModel):
    """Storage account backing the function app."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    sku: str = "Standard_LRS"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None and not re.match(STORAGE_ACCOUNT_NAME_PATTERN, v):
            raise ValueError("storage account name must be 3-24 lowercase letters or digits")
        return v

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid_skus = {"Standard_LRS", "Standard_GRS", "Standard_ZRS", "Standard_RAGRS"}
        if v not in valid_skus:
            raise ValueError(f"sku must be one of {valid_skus}")
        return v


class KeyVaultConfig(BaseModel):
    """Key Vault holding the connection string."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    sku: str = "standard"
    soft_delete_retention_days: Annotated[
        int, Field(ge=7, le=90, alias="softDeleteRetentionDays")
    ] = 7

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None and not re.match(KEY_VAULT_NAME_PATTERN, v):
            raise ValueError("key vault name must be 3-24 alphanumerics or hyphens")
        return v

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        if v not in {"standard", "premium"}:
            raise ValueError("sku must be 'standard' or 'premium'")
        return v


class FunctionAppConfig(BaseModel):
    """Function app that places the outbound call, and its hosting plan."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    plan_name: str | None = Field(None, alias="planName")
    runtime: str = "dotnet-isolated"
    runtime_version: str = Field("8.0", alias="runtimeVersion")
    functions_version: str = Field("~4", alias="functionsVersion")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None and not re.match(FUNCTION_APP_NAME_PATTERN, v):
            raise ValueError("function app name must be 2-60 alphanumerics or hyphens")
        return v


class TopologySpec(BaseModel):
    """Optional overrides loaded from the topology YAML file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_group: str | None = Field(None, alias="resourceGroup")
    communication: CommunicationConfig = Field(default_factory=CommunicationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    key_vault: KeyVaultConfig = Field(default_factory=KeyVaultConfig, alias="keyVault")
    function_app: FunctionAppConfig = Field(default_factory=FunctionAppConfig, alias="functionApp")
    secret_name: str = Field(DEFAULT_SECRET_NAME, alias="secretName", min_length=1, max_length=127)
    tags: dict[str, str] = Field(default_factory=dict)


class ResolvedTopology(BaseModel):
    """Fully named topology for one environment."""

    model_config = {"frozen": True}

    suffix: str
    location: str
    resource_group: str
    communication_name: str
    data_location: str
    storage_name: str
    storage_sku: str
    key_vault_name: str
    key_vault_sku: str
    soft_delete_retention_days: int
    plan_name: str
    function_app_name: str
    runtime: str
    runtime_version: str
    functions_version: str
    secret_name: str
    tags: dict[str, str]


def load_topology(path: Path | None) -> TopologySpec:
    """Load and validate topology overrides from YAML.

    Args:
        path: YAML file, or None for defaults.

    Raises:
        TopologyLoadError: If the file cannot be read or fails validation.
    """
    if path is None:
        return TopologySpec()

    if not path.exists():
        raise TopologyLoadError(f"Topology file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise TopologyLoadError(f"Cannot stat topology file {path}: {e}") from e
    if file_size > MAX_TOPOLOGY_FILE_SIZE_BYTES:
        raise TopologyLoadError(
            f"Topology file too large: {file_size} bytes (max {MAX_TOPOLOGY_FILE_SIZE_BYTES})"
        )

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise TopologyLoadError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return TopologySpec()
    if not isinstance(data, dict):
        raise TopologyLoadError(f"Topology file {path} must contain a mapping")

    try:
        spec = TopologySpec.model_validate(data)
    except ValidationError as e:
        raise TopologyLoadError(f"Topology validation failed for {path}:\n{e}") from e

    logger.info(f"Loaded topology overrides from {path}")
    return spec


def generate_name_suffix() -> str:
    return secrets.token_hex(NAME_SUFFIX_BYTES)


def resolve_topology(
    config: Config,
    spec: TopologySpec,
    previous_suffix: str | None = None,
) -> ResolvedTopology:
    """Derive every resource name for this environment.

    The suffix is taken from the configuration, else from a previous run's
    outputs document, else generated, so that re-runs target the same names.
    """
    suffix = config.name_suffix or previous_suffix or generate_name_suffix()
    if not config.name_suffix and not previous_suffix:
        logger.info(f"Generated new name suffix '{suffix}'")

    storage_name = spec.storage.name or f"stacscall{suffix}"
    key_vault_name = spec.key_vault.name or f"kv-acs-{suffix}"

    # Derived names are checked here too; explicit ones were validated on load
    if not re.match(STORAGE_ACCOUNT_NAME_PATTERN, storage_name):
        raise TopologyLoadError(f"Derived storage account name is invalid: {storage_name}")
    if not re.match(KEY_VAULT_NAME_PATTERN, key_vault_name):
        raise TopologyLoadError(f"Derived key vault name is invalid: {key_vault_name}")

    return ResolvedTopology(
        suffix=suffix,
        location=config.location,
        resource_group=(
            config.resource_group_name or spec.resource_group or f"rg-acs-call-{suffix}"
        ),
        communication_name=spec.communication.name or f"acs-call-{suffix}",
        data_location=spec.communication.data_location,
        storage_name=storage_name,
        storage_sku=spec.storage.sku,
        key_vault_name=key_vault_name,
        key_vault_sku=spec.key_vault.sku,
        soft_delete_retention_days=spec.key_vault.soft_delete_retention_days,
        plan_name=spec.function_app.plan_name or f"plan-acs-call-{suffix}",
        function_app_name=spec.function_app.name or f"func-acs-call-{suffix}",
        runtime=spec.function_app.runtime,
        runtime_version=spec.function_app.runtime_version,
        functions_version=spec.function_app.functions_version,
        secret_name=spec.secret_name,
        tags={**spec.tags, "managedBy": "acs-call-provisioner"},
    )
