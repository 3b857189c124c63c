"""Idempotent check-then-create for each resource kind.

The ensurer looks a resource up by name and scope and only creates it when it
is absent, so repeated runs converge on the same identifiers. It never picks
names; those come from the resolved topology.
"""

from __future__ import annotations

import logging
from typing import Any

from .cloud import CloudError, CloudPlatform, ErrorKind
from .models import EnsureResult, ProvisionedResource, ResourceKind, ResourceSpec
from .topology import ResolvedTopology

logger = logging.getLogger(__name__)

# Key Vault tenant id is filled in by the adapter from the credential's tenant
TENANT_ID_PLACEHOLDER = "{tenantId}"


class ResourceEnsurer:
    """Reconciles existence of one resource at a time."""

    def __init__(self, platform: CloudPlatform) -> None:
        self._platform = platform

    async def ensure(self, spec: ResourceSpec) -> EnsureResult:
        """Return the existing resource or create it.

        Args:
            spec: Desired resource.

        Returns:
            EnsureResult with created=False when the resource already existed.

        Raises:
            CloudError: If lookup or creation fails for any reason other than
                a concurrent creation of the same resource.
        """
        existing = await self._platform.show_resource(spec.kind, spec.name, spec.scope)
        if existing is not None:
            logger.info(
                f"{spec.kind.value} '{spec.name}' already exists, reusing",
                extra={"resource_id": existing.id},
            )
            return EnsureResult(resource=existing, created=False)

        logger.info(f"Creating {spec.kind.value} '{spec.name}' in {spec.location}")
        try:
            created = await self._platform.create_resource(spec)
        except CloudError as e:
            if e.kind != ErrorKind.ALREADY_EXISTS:
                raise
            raced = await self._platform.show_resource(spec.kind, spec.name, spec.scope)
            if raced is None:
                raise
            logger.info(f"{spec.kind.value} '{spec.name}' appeared concurrently, reusing")
            return EnsureResult(resource=raced, created=False)

        logger.info(
            f"Created {spec.kind.value} '{spec.name}'",
            extra={"resource_id": created.id, "principal_id": created.principal_id},
        )
        return EnsureResult(resource=created, created=True)


# =============================================================================
# Spec builders
# =============================================================================


def subscription_scope(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


def resource_group_scope(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def resource_group_spec(subscription_id: str, topology: ResolvedTopology) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.RESOURCE_GROUP,
        name=topology.resource_group,
        scope=subscription_scope(subscription_id),
        location=topology.location,
        tags=topology.tags,
    )


def communication_service_spec(scope: str, topology: ResolvedTopology) -> ResourceSpec:
    # Communication Services is a global resource; data residency is set separately
    return ResourceSpec(
        kind=ResourceKind.COMMUNICATION_SERVICE,
        name=topology.communication_name,
        scope=scope,
        location="global",
        tags=topology.tags,
        properties={"properties": {"dataLocation": topology.data_location}},
    )


def storage_account_spec(scope: str, topology: ResolvedTopology) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.STORAGE_ACCOUNT,
        name=topology.storage_name,
        scope=scope,
        location=topology.location,
        tags=topology.tags,
        properties={
            "sku": {"name": topology.storage_sku},
            "kind": "StorageV2",
            "properties": {
                "minimumTlsVersion": "TLS1_2",
                "allowBlobPublicAccess": False,
                "supportsHttpsTrafficOnly": True,
            },
        },
    )


def key_vault_spec(scope: str, topology: ResolvedTopology) -> ResourceSpec:
    """Key Vault with RBAC authorization; access policies are not used."""
    return ResourceSpec(
        kind=ResourceKind.KEY_VAULT,
        name=topology.key_vault_name,
        scope=scope,
        location=topology.location,
        tags=topology.tags,
        properties={
            "properties": {
                "tenantId": TENANT_ID_PLACEHOLDER,
                "sku": {"family": "A", "name": topology.key_vault_sku},
                "enableRbacAuthorization": True,
                "softDeleteRetentionInDays": topology.soft_delete_retention_days,
            }
        },
    )


def hosting_plan_spec(scope: str, topology: ResolvedTopology) -> ResourceSpec:
    """Consumption (Y1) plan for the function app."""
    return ResourceSpec(
        kind=ResourceKind.HOSTING_PLAN,
        name=topology.plan_name,
        scope=scope,
        location=topology.location,
        tags=topology.tags,
        properties={
            "sku": {"name": "Y1", "tier": "Dynamic"},
            "kind": "functionapp",
            "properties": {},
        },
    )


def function_app_spec(
    scope: str,
    topology: ResolvedTopology,
    plan: ProvisionedResource,
    storage_connection_string: str,
) -> ResourceSpec:
    """Function app with a system-assigned identity."""
    app_settings: list[dict[str, Any]] = [
        {"name": "AzureWebJobsStorage", "value": storage_connection_string},
        {"name": "FUNCTIONS_EXTENSION_VERSION", "value": topology.functions_version},
        {"name": "FUNCTIONS_WORKER_RUNTIME", "value": topology.runtime},
    ]
    return ResourceSpec(
        kind=ResourceKind.FUNCTION_APP,
        name=topology.function_app_name,
        scope=scope,
        location=topology.location,
        tags=topology.tags,
        properties={
            "kind": "functionapp",
            "identity": {"type": "SystemAssigned"},
            "properties": {
                "serverFarmId": plan.id,
                "httpsOnly": True,
                "siteConfig": {
                    "appSettings": app_settings,
                    "netFrameworkVersion": f"v{topology.runtime_version}",
                    "minTlsVersion": "1.2",
                    "ftpsState": "Disabled",
                },
            },
        },
    )
