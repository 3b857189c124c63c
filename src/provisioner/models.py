"""Pydantic models for the provisioning workflow.

These models provide:
1. Immutable resource and grant requests declared by the workflow
2. Explicit result variants for every step (no exceptions for expected outcomes)
3. The outputs document handed to deployment tooling
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Resources
# =============================================================================


class ResourceKind(str, Enum):
    """Resource kinds provisioned by the workflow, in dependency order."""

    RESOURCE_GROUP = "resourceGroup"
    COMMUNICATION_SERVICE = "communicationService"
    STORAGE_ACCOUNT = "storageAccount"
    KEY_VAULT = "keyVault"
    HOSTING_PLAN = "hostingPlan"
    FUNCTION_APP = "functionApp"


class ResourceSpec(BaseModel):
    """Desired state of one resource.

    `properties` carries the ARM body fields (sku, kind, identity, properties)
    and is only used when the resource has to be created.
    """

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str = Field(min_length=1)
    scope: str = Field(min_length=1)
    location: str
    tags: dict[str, str] = Field(default_factory=dict)
    properties: dict[str, Any] = Field(default_factory=dict)


class ProvisionedResource(BaseModel):
    """Observed resource, looked up by name for idempotent reuse."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: ResourceKind
    name: str
    id: str
    principal_id: str | None = Field(None, alias="principalId")
    endpoint: str | None = None


@dataclass(frozen=True)
class EnsureResult:
    """Result of ensuring a single resource."""

    resource: ProvisionedResource
    created: bool


# =============================================================================
# Principals and grants
# =============================================================================


class PrincipalType(str, Enum):
    """Directory object types that can hold role assignments."""

    USER = "User"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    GROUP = "Group"


class Principal(BaseModel):
    """An identity found in the directory."""

    model_config = ConfigDict(frozen=True)

    object_id: str
    principal_type: PrincipalType = PrincipalType.SERVICE_PRINCIPAL


class GrantRequest(BaseModel):
    """Request to hold a role at a scope. Identical requests are idempotent."""

    model_config = ConfigDict(frozen=True)

    principal_id: str = Field(min_length=1)
    principal_type: PrincipalType = PrincipalType.SERVICE_PRINCIPAL
    role_name: str = Field(min_length=1)
    scope: str = Field(min_length=1)


class Grant(BaseModel):
    """An existing role assignment as returned by the platform."""

    model_config = ConfigDict(frozen=True)

    id: str
    principal_id: str
    role_definition_id: str
    scope: str

    @property
    def role_definition_guid(self) -> str:
        return self.role_definition_id.rstrip("/").rsplit("/", 1)[-1].lower()


# =============================================================================
# Step outcomes
# =============================================================================


class RegistrationStatus(str, Enum):
    REGISTERED = "Registered"
    TIMED_OUT = "TimedOut"


class PrincipalStatus(str, Enum):
    PRESENT = "Present"
    ABSENT = "Absent"


class GrantOutcome(str, Enum):
    """Outcome of reconciling one role assignment.

    DENIED and FAILED are non-fatal: the workflow records a warning and
    continues, leaving the grant for a human to finish.
    """

    GRANTED = "Granted"
    ALREADY_GRANTED = "AlreadyGranted"
    DENIED = "Denied"
    FAILED = "Failed"


class SecretOutcome(str, Enum):
    STORED = "Stored"
    SKIPPED = "Skipped"


@dataclass
class GrantResult:
    """Result of Access Grant reconciliation."""

    outcome: GrantOutcome
    attempts: int = 0
    visible: bool | None = None
    message: str | None = None


@dataclass
class PublishResult:
    """Result of publishing a secret to the vault."""

    outcome: SecretOutcome
    temporary_grant_created: bool = False
    revoked: bool = False
    message: str | None = None

    @property
    def stored(self) -> bool:
        return self.outcome == SecretOutcome.STORED


class StepStatus(str, Enum):
    """Terminal state of a workflow step as shown in the run summary."""

    SUCCEEDED = "succeeded"
    ALREADY_SATISFIED = "already_satisfied"
    SKIPPED = "skipped"
    WARNING = "warning"
    FAILED = "failed"


@dataclass
class StepReport:
    step: str
    status: StepStatus
    detail: str = ""


@dataclass
class RunSummary:
    """Per-step summary printed at the end of every run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    steps: list[StepReport] = field(default_factory=list)
    outputs_path: str | None = None

    def add(self, step: str, status: StepStatus, detail: str = "") -> StepReport:
        report = StepReport(step=step, status=status, detail=detail)
        self.steps.append(report)
        return report

    def status_of(self, step: str) -> StepStatus | None:
        for report in self.steps:
            if report.step == step:
                return report.status
        return None

    @property
    def warnings(self) -> list[StepReport]:
        return [
            s for s in self.steps if s.status in (StepStatus.WARNING, StepStatus.SKIPPED)
        ]

    @property
    def has_failures(self) -> bool:
        return any(s.status == StepStatus.FAILED for s in self.steps)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def render(self) -> str:
        """Render the summary as a fixed-width table."""
        width = max((len(s.step) for s in self.steps), default=4)
        lines = [f"{'STEP'.ljust(width)}  {'STATUS'.ljust(17)}  DETAIL"]
        for report in self.steps:
            lines.append(
                f"{report.step.ljust(width)}  {report.status.value.ljust(17)}  {report.detail}"
            )
        if self.outputs_path:
            lines.append(f"Outputs written to {self.outputs_path}")
        return "\n".join(lines)


# =============================================================================
# Outputs document
# =============================================================================


class OutputsRecord(BaseModel):
    """Final topology handed to deployment tooling and the calling function."""

    model_config = ConfigDict(populate_by_name=True)

    subscription_id: str = Field(alias="subscriptionId")
    resource_group: str = Field(alias="resourceGroup")
    location: str
    name_suffix: str | None = Field(None, alias="nameSuffix")
    resources: dict[ResourceKind, ProvisionedResource] = Field(default_factory=dict)
    secret_name: str | None = Field(None, alias="secretName")
    secret_stored: bool = Field(False, alias="secretStored")
    key_vault_uri: str | None = Field(None, alias="keyVaultUri")
    function_app_url: str | None = Field(None, alias="functionAppUrl")
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="generatedAt"
    )
