"""Abstract cloud platform interface consumed by the provisioning workflow.

The workflow never talks to an SDK directly. Everything it needs from the
control plane, the directory and the secret store is expressed here, and
errors cross this boundary already classified into an ErrorKind so that retry
decisions never depend on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from .models import (
    Grant,
    GrantRequest,
    Principal,
    ProvisionedResource,
    ResourceKind,
    ResourceSpec,
)

PROVIDER_STATE_REGISTERED = "Registered"


class ErrorKind(str, Enum):
    """Structured classification of platform failures."""

    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    DENIED = "Denied"
    NOT_REGISTERED = "NotRegistered"
    TRANSIENT = "Transient"


class CloudError(Exception):
    """Raised by a CloudPlatform when a call fails.

    Attributes:
        kind: Classified failure kind.
        status_code: HTTP status of the underlying response, if any.
    """

    def __init__(self, kind: ErrorKind, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def message(self) -> str:
        return str(self)


class GrantCreation(str, Enum):
    """Result variant of create_grant."""

    CREATED = "Created"
    ALREADY_EXISTS = "AlreadyExists"


class CloudPlatform(Protocol):
    """Capabilities the workflow consumes from the cloud platform.

    Lookups return None for "not found" instead of raising.
    """

    async def show_resource(
        self, kind: ResourceKind, name: str, scope: str
    ) -> ProvisionedResource | None: ...

    async def create_resource(self, spec: ResourceSpec) -> ProvisionedResource: ...

    async def get_provider_state(self, namespace: str) -> str: ...

    async def register_provider(self, namespace: str) -> None: ...

    async def show_principal(self, principal_id: str) -> Principal | None: ...

    async def list_grants(self, principal_id: str, scope: str) -> list[Grant]: ...

    async def create_grant(self, request: GrantRequest) -> GrantCreation: ...

    async def delete_grant(self, request: GrantRequest) -> None: ...

    async def get_secret(self, vault_uri: str, name: str) -> str: ...

    async def set_secret(self, vault_uri: str, name: str, value: str) -> None: ...

    async def whoami(self) -> Principal | None: ...

    async def role_matches(self, grant: Grant, role_name: str) -> bool: ...

    async def communication_connection_string(self, resource: ProvisionedResource) -> str: ...

    async def storage_connection_string(self, resource: ProvisionedResource) -> str: ...

    async def update_app_settings(
        self, resource: ProvisionedResource, settings: dict[str, str]
    ) -> None: ...
