"""Azure implementation of the CloudPlatform interface.

Resources are shown and created through the generic ARM resource API so that
one code path covers every kind. Role assignments go through the
authorization client, secrets through the Key Vault data plane, and directory
lookups through Microsoft Graph.

Every Azure SDK exception is classified into an ErrorKind here, from the
exception type, HTTP status and ARM error code. Nothing downstream inspects
error messages.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import uuid
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.keyvault.secrets import SecretClient
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.communication import CommunicationServiceManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Identity, ResourceGroup, Sku
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.web import WebSiteManagementClient
from azure.mgmt.web.models import StringDictionary
from msgraph import GraphServiceClient
from msgraph.generated.models.o_data_errors.o_data_error import ODataError

from .cloud import CloudError, ErrorKind, GrantCreation
from .ensurer import TENANT_ID_PLACEHOLDER
from .models import (
    Grant,
    GrantRequest,
    Principal,
    PrincipalType,
    ProvisionedResource,
    ResourceKind,
    ResourceSpec,
)
from .polling import run_blocking
from .security import ARM_SCOPE, GRAPH_SCOPE, Session

logger = logging.getLogger(__name__)

# (provider namespace, resource type, api version) per kind
RESOURCE_TYPES: dict[ResourceKind, tuple[str, str, str]] = {
    ResourceKind.COMMUNICATION_SERVICE: (
        "Microsoft.Communication",
        "communicationServices",
        "2023-04-01",
    ),
    ResourceKind.STORAGE_ACCOUNT: ("Microsoft.Storage", "storageAccounts", "2023-01-01"),
    ResourceKind.KEY_VAULT: ("Microsoft.KeyVault", "vaults", "2023-07-01"),
    ResourceKind.HOSTING_PLAN: ("Microsoft.Web", "serverfarms", "2023-01-01"),
    ResourceKind.FUNCTION_APP: ("Microsoft.Web", "sites", "2023-01-01"),
}

# Well-known Azure built-in role GUIDs (identical across tenants)
BUILTIN_ROLES: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "User Access Administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "Key Vault Administrator": "00482a5a-887f-4fb3-b363-3b7fe8e74483",
    "Key Vault Secrets Officer": "b86a8fe4-44ce-4948-aee5-eccb2c155cd7",
    "Key Vault Secrets User": "4633458b-17de-408a-b874-0445c86b69e6",
    "Storage Blob Data Owner": "b7e6dc6d-f1e8-4753-8033-0f276bb0955b",
}

DENIAL_ERROR_CODES = frozenset(
    {
        "AuthorizationFailed",
        "AuthorizationPermissionMismatch",
        "Forbidden",
        "LinkedAuthorizationFailed",
        "InvalidAuthenticationToken",
    }
)
EXISTS_ERROR_CODES = frozenset({"RoleAssignmentExists", "ResourceExists"})
NOT_REGISTERED_ERROR_CODES = frozenset(
    {"MissingSubscriptionRegistration", "NoRegisteredProviderFound"}
)

RESOURCE_GROUP_PATTERN = re.compile(r"/resourceGroups/([^/]+)", re.IGNORECASE)


def classify_azure_error(error: Exception) -> ErrorKind:
    """Map an Azure SDK exception onto an ErrorKind."""
    if isinstance(error, ClientAuthenticationError):
        return ErrorKind.DENIED
    if isinstance(error, ResourceExistsError):
        return ErrorKind.ALREADY_EXISTS
    if isinstance(error, ResourceNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(error, HttpResponseError):
        code = error.error.code if getattr(error, "error", None) else None
        status = error.status_code
        if code in DENIAL_ERROR_CODES or status in (401, 403):
            return ErrorKind.DENIED
        if code in NOT_REGISTERED_ERROR_CODES:
            return ErrorKind.NOT_REGISTERED
        if code in EXISTS_ERROR_CODES or (status == 409 and code is None):
            return ErrorKind.ALREADY_EXISTS
        if status == 404:
            return ErrorKind.NOT_FOUND
    return ErrorKind.TRANSIENT


def to_cloud_error(error: Exception) -> CloudError:
    status = getattr(error, "status_code", None)
    message = getattr(error, "message", None) or str(error)
    return CloudError(classify_azure_error(error), message, status_code=status)


def resource_id(kind: ResourceKind, name: str, scope: str) -> str:
    if kind == ResourceKind.RESOURCE_GROUP:
        return f"{scope}/resourceGroups/{name}"
    namespace, resource_type, _ = RESOURCE_TYPES[kind]
    return f"{scope}/providers/{namespace}/{resource_type}/{name}"


def resource_group_of(resource_id: str) -> str:
    match = RESOURCE_GROUP_PATTERN.search(resource_id)
    if match is None:
        raise ValueError(f"Resource ID has no resource group: {resource_id}")
    return match.group(1)


def decode_token_claims(token: str) -> dict[str, Any]:
    """Decode the payload of a JWT without verifying it.

    Only used to read our own identity from a token we just obtained.
    """
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, json.JSONDecodeError):
        return {}


class AzureCloud:
    """CloudPlatform backed by the Azure SDKs."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._credential = session.credential
        self._subscription_id = session.subscription_id

        self._resource_client = ResourceManagementClient(
            credential=self._credential, subscription_id=self._subscription_id
        )
        self._authorization_client = AuthorizationManagementClient(
            credential=self._credential, subscription_id=self._subscription_id
        )
        self._communication_client = CommunicationServiceManagementClient(
            credential=self._credential, subscription_id=self._subscription_id
        )
        self._storage_client = StorageManagementClient(
            credential=self._credential, subscription_id=self._subscription_id
        )
        self._web_client = WebSiteManagementClient(
            credential=self._credential, subscription_id=self._subscription_id
        )
        self._graph_client = GraphServiceClient(credentials=self._credential, scopes=[GRAPH_SCOPE])

        self._secret_clients: dict[str, SecretClient] = {}
        self._role_guids: dict[str, str] = dict(BUILTIN_ROLES)
        self._claims: dict[str, Any] | None = None

    async def _call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await run_blocking(func, *args, **kwargs)
        except AzureError as e:
            raise to_cloud_error(e) from e

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    async def show_resource(
        self, kind: ResourceKind, name: str, scope: str
    ) -> ProvisionedResource | None:
        try:
            if kind == ResourceKind.RESOURCE_GROUP:
                group = await self._call(self._resource_client.resource_groups.get, name)
                return ProvisionedResource(kind=kind, name=group.name, id=group.id)

            _, _, api_version = RESOURCE_TYPES[kind]
            resource = await self._call(
                self._resource_client.resources.get_by_id,
                resource_id(kind, name, scope),
                api_version,
            )
        except CloudError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return None
            raise
        return self._to_provisioned(kind, resource)

    async def create_resource(self, spec: ResourceSpec) -> ProvisionedResource:
        if spec.kind == ResourceKind.RESOURCE_GROUP:
            group = await self._call(
                self._resource_client.resource_groups.create_or_update,
                spec.name,
                ResourceGroup(location=spec.location, tags=spec.tags),
            )
            return ProvisionedResource(kind=spec.kind, name=group.name, id=group.id)

        _, _, api_version = RESOURCE_TYPES[spec.kind]
        body = await self._fill_placeholders(spec.properties)
        parameters = GenericResource(
            location=spec.location,
            tags=spec.tags,
            kind=body.get("kind"),
            sku=Sku(**body["sku"]) if "sku" in body else None,
            identity=Identity(**body["identity"]) if "identity" in body else None,
            properties=body.get("properties", {}),
        )
        poller = await self._call(
            self._resource_client.resources.begin_create_or_update_by_id,
            resource_id(spec.kind, spec.name, spec.scope),
            api_version,
            parameters,
        )
        resource = await self._call(poller.result)
        return self._to_provisioned(spec.kind, resource)

    def _to_provisioned(self, kind: ResourceKind, resource: Any) -> ProvisionedResource:
        properties = resource.properties or {}
        endpoint: str | None = None
        if kind == ResourceKind.KEY_VAULT:
            endpoint = properties.get("vaultUri")
        elif kind == ResourceKind.FUNCTION_APP:
            endpoint = properties.get("defaultHostName")
        elif kind == ResourceKind.COMMUNICATION_SERVICE:
            endpoint = properties.get("hostName")

        principal_id = None
        if resource.identity is not None:
            principal_id = resource.identity.principal_id

        return ProvisionedResource(
            kind=kind,
            name=resource.name,
            id=resource.id,
            principal_id=principal_id,
            endpoint=endpoint,
        )

    async def _fill_placeholders(self, body: dict[str, Any]) -> dict[str, Any]:
        text = json.dumps(body)
        if TENANT_ID_PLACEHOLDER in text:
            claims = await self._token_claims()
            tenant_id = claims.get("tid")
            if not tenant_id:
                raise CloudError(ErrorKind.DENIED, "Cannot determine tenant ID from credential")
            text = text.replace(TENANT_ID_PLACEHOLDER, tenant_id)
        return json.loads(text)

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    async def get_provider_state(self, namespace: str) -> str:
        provider = await self._call(self._resource_client.providers.get, namespace)
        return provider.registration_state or "Unknown"

    async def register_provider(self, namespace: str) -> None:
        await self._call(self._resource_client.providers.register, namespace)

    # -------------------------------------------------------------------------
    # Directory
    # -------------------------------------------------------------------------

    async def show_principal(self, principal_id: str) -> Principal | None:
        try:
            obj = await self._graph_client.directory_objects.by_directory_object_id(
                principal_id
            ).get()
        except ODataError as e:
            if e.response_status_code == 404:
                return None
            kind = ErrorKind.DENIED if e.response_status_code in (401, 403) else ErrorKind.TRANSIENT
            raise CloudError(kind, f"Graph lookup failed: {e}", e.response_status_code) from e
        if obj is None:
            return None

        odata_type = (obj.odata_type or "").lower()
        if odata_type.endswith("user"):
            principal_type = PrincipalType.USER
        elif odata_type.endswith("group"):
            principal_type = PrincipalType.GROUP
        else:
            principal_type = PrincipalType.SERVICE_PRINCIPAL
        return Principal(object_id=principal_id, principal_type=principal_type)

    async def _token_claims(self) -> dict[str, Any]:
        if self._claims is None:
            token = await self._call(self._credential.get_token, ARM_SCOPE)
            self._claims = decode_token_claims(token.token)
        return self._claims

    async def whoami(self) -> Principal | None:
        claims = await self._token_claims()
        object_id = claims.get("oid")
        if not object_id:
            return None
        principal_type = (
            PrincipalType.SERVICE_PRINCIPAL
            if claims.get("idtyp") == "app"
            else PrincipalType.USER
        )
        return Principal(object_id=object_id, principal_type=principal_type)

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    async def _role_guid(self, role_name: str, scope: str) -> str:
        if role_name in self._role_guids:
            return self._role_guids[role_name]

        definitions = await self._call(
            lambda: list(
                self._authorization_client.role_definitions.list(
                    scope, filter=f"roleName eq '{role_name}'"
                )
            )
        )
        if not definitions:
            raise CloudError(ErrorKind.NOT_FOUND, f"Role definition '{role_name}' not found")
        guid = definitions[0].name.lower()
        self._role_guids[role_name] = guid
        return guid

    def _role_definition_id(self, guid: str) -> str:
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/providers/Microsoft.Authorization/roleDefinitions/{guid}"
        )

    async def role_matches(self, grant: Grant, role_name: str) -> bool:
        guid = await self._role_guid(role_name, grant.scope)
        return grant.role_definition_guid == guid.lower()

    async def list_grants(self, principal_id: str, scope: str) -> list[Grant]:
        assignments = await self._call(
            lambda: list(
                self._authorization_client.role_assignments.list_for_scope(
                    scope, filter=f"principalId eq '{principal_id}'"
                )
            )
        )
        return [
            Grant(
                id=ra.id,
                principal_id=ra.principal_id,
                role_definition_id=ra.role_definition_id,
                scope=ra.scope,
            )
            for ra in assignments
        ]

    async def create_grant(self, request: GrantRequest) -> GrantCreation:
        guid = await self._role_guid(request.role_name, request.scope)

        # Deterministic assignment name: same principal, role and scope map to one ID
        assignment_name = str(
            uuid.uuid5(uuid.NAMESPACE_URL, f"{request.principal_id}:{guid}:{request.scope}")
        )
        try:
            await self._call(
                self._authorization_client.role_assignments.create,
                request.scope,
                assignment_name,
                RoleAssignmentCreateParameters(
                    role_definition_id=self._role_definition_id(guid),
                    principal_id=request.principal_id,
                    principal_type=request.principal_type.value,
                ),
            )
        except CloudError as e:
            if e.kind == ErrorKind.ALREADY_EXISTS:
                return GrantCreation.ALREADY_EXISTS
            raise
        return GrantCreation.CREATED

    async def delete_grant(self, request: GrantRequest) -> None:
        guid = await self._role_guid(request.role_name, request.scope)
        for grant in await self.list_grants(request.principal_id, request.scope):
            # Only delete direct assignments at this scope, never inherited ones
            if grant.scope.lower() != request.scope.lower():
                continue
            if grant.role_definition_guid != guid.lower():
                continue
            try:
                await self._call(self._authorization_client.role_assignments.delete_by_id, grant.id)
            except CloudError as e:
                if e.kind != ErrorKind.NOT_FOUND:
                    raise

    # -------------------------------------------------------------------------
    # Secrets
    # -------------------------------------------------------------------------

    def _secret_client(self, vault_uri: str) -> SecretClient:
        client = self._secret_clients.get(vault_uri)
        if client is None:
            client = SecretClient(vault_url=vault_uri, credential=self._credential)
            self._secret_clients[vault_uri] = client
        return client

    async def get_secret(self, vault_uri: str, name: str) -> str:
        secret = await self._call(self._secret_client(vault_uri).get_secret, name)
        if secret.value is None:
            raise CloudError(ErrorKind.NOT_FOUND, f"Secret '{name}' has no value")
        return secret.value

    async def set_secret(self, vault_uri: str, name: str, value: str) -> None:
        await self._call(self._secret_client(vault_uri).set_secret, name, value)

    # -------------------------------------------------------------------------
    # Keys and settings
    # -------------------------------------------------------------------------

    async def communication_connection_string(self, resource: ProvisionedResource) -> str:
        keys = await self._call(
            self._communication_client.communication_services.list_keys,
            resource_group_of(resource.id),
            resource.name,
        )
        if not keys.primary_connection_string:
            raise CloudError(ErrorKind.NOT_FOUND, f"No connection string for {resource.name}")
        return keys.primary_connection_string

    async def storage_connection_string(self, resource: ProvisionedResource) -> str:
        result = await self._call(
            self._storage_client.storage_accounts.list_keys,
            resource_group_of(resource.id),
            resource.name,
        )
        if not result.keys:
            raise CloudError(ErrorKind.NOT_FOUND, f"No keys for storage account {resource.name}")
        return (
            "DefaultEndpointsProtocol=https;"
            f"AccountName={resource.name};"
            f"AccountKey={result.keys[0].value};"
            "EndpointSuffix=core.windows.net"
        )

    async def update_app_settings(
        self, resource: ProvisionedResource, settings: dict[str, str]
    ) -> None:
        resource_group = resource_group_of(resource.id)
        current = await self._call(
            self._web_client.web_apps.list_application_settings, resource_group, resource.name
        )
        merged = {**(current.properties or {}), **settings}
        await self._call(
            self._web_client.web_apps.update_application_settings,
            resource_group,
            resource.name,
            StringDictionary(properties=merged),
        )
        logger.info(
            f"Updated app settings on {resource.name}",
            extra={"settings": sorted(settings)},
        )
