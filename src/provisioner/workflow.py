"""One-shot provisioning workflow.

Runs every step strictly in dependency order:
    providers -> resource group -> communication service -> storage -> vault
    -> hosting plan -> function app -> identity wait -> vault grant
    -> secret -> app settings -> outputs

Each step degrades to a recorded warning when its retry or timeout budget is
exhausted, and dependent steps are skipped rather than attempted. Nothing
created is ever rolled back: a later run (or a human) completes what this one
left partial. Only failing to write the outputs document is fatal.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from .cloud import CloudError, CloudPlatform
from .config import Config
from .ensurer import (
    ResourceEnsurer,
    communication_service_spec,
    function_app_spec,
    hosting_plan_spec,
    key_vault_spec,
    resource_group_scope,
    resource_group_spec,
    storage_account_spec,
)
from .grants import GrantReconciler
from .identity import wait_for_principal
from .models import (
    GrantOutcome,
    GrantRequest,
    OutputsRecord,
    PrincipalStatus,
    PrincipalType,
    ProvisionedResource,
    RegistrationStatus,
    ResourceKind,
    ResourceSpec,
    RunSummary,
    StepStatus,
)
from .outputs import OutputsWriteError, record_outputs
from .polling import SYSTEM_CLOCK, Clock
from .providers import REQUIRED_PROVIDER_NAMESPACES, ensure_providers
from .secret_publisher import SecretPublisher
from .topology import ResolvedTopology

logger = logging.getLogger(__name__)

FUNCTION_APP_VAULT_ROLE = "Key Vault Secrets User"

# App settings read by the calling function
SETTING_KEY_VAULT_URI = "KEY_VAULT_URI"
SETTING_SECRET_NAME = "ACS_SECRET_NAME"
SETTING_CALLBACK_URI = "CALLBACK_URI"
SETTING_CONNECTION_STRING = "AcsConnectionString"


class ProvisioningWorkflow:
    """Sequences the provisioning steps for one environment."""

    def __init__(
        self,
        config: Config,
        platform: CloudPlatform,
        topology: ResolvedTopology,
        *,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._config = config
        self._platform = platform
        self._topology = topology
        self._clock = clock
        timing = config.timing

        self._ensurer = ResourceEnsurer(platform)
        self._grants = GrantReconciler(
            platform,
            max_attempts=timing.grant_max_attempts,
            visibility_attempts=timing.grant_visibility_attempts,
            visibility_interval=timing.poll_interval_seconds,
            clock=clock,
        )
        self._publisher = SecretPublisher(
            platform,
            propagation_delay_seconds=timing.secret_propagation_delay_seconds,
            clock=clock,
        )

        self.summary = RunSummary()
        self.resources: dict[ResourceKind, ProvisionedResource] = {}
        self.secret_stored = False

    async def run(self) -> RunSummary:
        """Execute the workflow.

        Returns:
            The run summary with one entry per step.

        Raises:
            OutputsWriteError: If the outputs document cannot be written. The
                summary is still available on `self.summary`.
        """
        topology = self._topology
        logger.info(
            "Starting provisioning run",
            extra={
                "subscription_id": self._config.subscription_id,
                "resource_group": topology.resource_group,
                "location": topology.location,
                "suffix": topology.suffix,
            },
        )

        await self._register_providers()
        await self._ensure_resources()

        function_app = self.resources.get(ResourceKind.FUNCTION_APP)
        vault = self.resources.get(ResourceKind.KEY_VAULT)

        await self._grant_function_app_vault_access(function_app, vault)
        connection_string = await self._publish_connection_string(vault)
        await self._write_app_settings(function_app, vault, connection_string)

        try:
            await self._record_outputs()
        finally:
            self.summary.end_time = datetime.now(UTC)
            logger.info(
                "Provisioning run finished",
                extra={
                    "duration_seconds": self.summary.duration_seconds,
                    "warnings": len(self.summary.warnings),
                    "failed": self.summary.has_failures,
                },
            )
        return self.summary

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _register_providers(self) -> None:
        timing = self._config.timing
        statuses = await ensure_providers(
            self._platform,
            REQUIRED_PROVIDER_NAMESPACES,
            timing.provider_registration_timeout_seconds,
            interval=timing.poll_interval_seconds,
            clock=self._clock,
        )
        for namespace, status in statuses.items():
            if status == RegistrationStatus.REGISTERED:
                self.summary.add(f"provider {namespace}", StepStatus.SUCCEEDED, "registered")
            else:
                self.summary.add(
                    f"provider {namespace}",
                    StepStatus.WARNING,
                    "registration not confirmed, continuing",
                )

    async def _ensure_resources(self) -> None:
        topology = self._topology
        subscription_id = self._config.subscription_id

        group = await self._ensure_step(resource_group_spec(subscription_id, topology))
        if group is None:
            for kind in list(ResourceKind)[1:]:
                self._skip(kind.value, "resource group unavailable")
            return

        scope = resource_group_scope(subscription_id, topology.resource_group)
        await self._ensure_step(communication_service_spec(scope, topology))
        storage = await self._ensure_step(storage_account_spec(scope, topology))
        await self._ensure_step(key_vault_spec(scope, topology))
        plan = await self._ensure_step(hosting_plan_spec(scope, topology))

        if storage is None or plan is None:
            self._skip(ResourceKind.FUNCTION_APP.value, "storage account or hosting plan unavailable")
            return

        existing = await self._lookup_function_app(scope)
        if existing is not None:
            self.resources[ResourceKind.FUNCTION_APP] = existing
            self.summary.add(ResourceKind.FUNCTION_APP.value, StepStatus.ALREADY_SATISFIED, existing.id)
            return

        try:
            storage_connection = await self._platform.storage_connection_string(storage)
        except CloudError as e:
            self.summary.add(
                ResourceKind.FUNCTION_APP.value,
                StepStatus.FAILED,
                f"cannot read storage keys: {e}",
            )
            return
        await self._ensure_step(function_app_spec(scope, topology, plan, storage_connection))

    async def _lookup_function_app(self, scope: str) -> ProvisionedResource | None:
        # Looked up before reading storage keys so that re-runs need no key access
        try:
            return await self._platform.show_resource(
                ResourceKind.FUNCTION_APP, self._topology.function_app_name, scope
            )
        except CloudError as e:
            logger.warning(f"Function app lookup failed: {e}")
            return None

    async def _ensure_step(self, spec: ResourceSpec) -> ProvisionedResource | None:
        try:
            result = await self._ensurer.ensure(spec)
        except CloudError as e:
            logger.error(
                f"Failed to ensure {spec.kind.value} '{spec.name}': {e}",
                extra={"error_kind": e.kind.value, "status_code": e.status_code},
            )
            self.summary.add(spec.kind.value, StepStatus.FAILED, f"{spec.name}: {e}")
            return None

        self.resources[spec.kind] = result.resource
        if result.created:
            self.summary.add(spec.kind.value, StepStatus.SUCCEEDED, f"created {result.resource.id}")
        else:
            self.summary.add(spec.kind.value, StepStatus.ALREADY_SATISFIED, result.resource.id)
        return result.resource

    async def _grant_function_app_vault_access(
        self,
        function_app: ProvisionedResource | None,
        vault: ProvisionedResource | None,
    ) -> None:
        if function_app is None or not function_app.principal_id:
            self._skip("identity propagation", "function app identity unavailable")
            self._skip("vault access grant", "function app identity unavailable")
            return

        timing = self._config.timing
        status = await wait_for_principal(
            self._platform,
            function_app.principal_id,
            timing.principal_wait_attempts,
            timing.poll_interval_seconds,
            clock=self._clock,
        )
        if status == PrincipalStatus.PRESENT:
            self.summary.add("identity propagation", StepStatus.SUCCEEDED, function_app.principal_id)
        else:
            self.summary.add(
                "identity propagation",
                StepStatus.WARNING,
                f"{function_app.principal_id} not visible yet, attempting grant anyway",
            )

        if vault is None:
            self._skip("vault access grant", "key vault unavailable")
            return

        result = await self._grants.ensure_grant(
            GrantRequest(
                principal_id=function_app.principal_id,
                principal_type=PrincipalType.SERVICE_PRINCIPAL,
                role_name=FUNCTION_APP_VAULT_ROLE,
                scope=vault.id,
            )
        )
        if result.outcome == GrantOutcome.ALREADY_GRANTED:
            self.summary.add("vault access grant", StepStatus.ALREADY_SATISFIED, FUNCTION_APP_VAULT_ROLE)
        elif result.outcome == GrantOutcome.GRANTED and result.visible:
            self.summary.add("vault access grant", StepStatus.SUCCEEDED, FUNCTION_APP_VAULT_ROLE)
        elif result.outcome == GrantOutcome.GRANTED:
            self.summary.add("vault access grant", StepStatus.WARNING, result.message or "")
        else:
            self.summary.add(
                "vault access grant",
                StepStatus.WARNING,
                f"{result.outcome.value}: {result.message or ''}",
            )

    async def _publish_connection_string(self, vault: ProvisionedResource | None) -> str | None:
        acs = self.resources.get(ResourceKind.COMMUNICATION_SERVICE)
        if acs is None:
            self._skip("secret", "communication service unavailable")
            return None

        try:
            connection_string = await self._platform.communication_connection_string(acs)
        except CloudError as e:
            self.summary.add("secret", StepStatus.WARNING, f"cannot read communication keys: {e}")
            return None

        if vault is None:
            self._skip("secret", "key vault unavailable")
            return connection_string

        result = await self._publisher.publish(vault, self._topology.secret_name, connection_string)
        self.secret_stored = result.stored
        if result.stored and not result.message:
            detail = self._topology.secret_name
            if result.temporary_grant_created:
                detail += " (temporary elevation revoked)"
            self.summary.add("secret", StepStatus.SUCCEEDED, detail)
        else:
            self.summary.add(
                "secret",
                StepStatus.WARNING if result.stored else StepStatus.SKIPPED,
                result.message or "",
            )
        return connection_string

    async def _write_app_settings(
        self,
        function_app: ProvisionedResource | None,
        vault: ProvisionedResource | None,
        connection_string: str | None,
    ) -> None:
        if function_app is None:
            self._skip("app settings", "function app unavailable")
            return

        settings: dict[str, str] = {SETTING_SECRET_NAME: self._topology.secret_name}
        if vault is not None and vault.endpoint:
            settings[SETTING_KEY_VAULT_URI] = vault.endpoint
        if self._config.callback_uri:
            settings[SETTING_CALLBACK_URI] = self._config.callback_uri

        plaintext = False
        if not self.secret_stored and connection_string and self._config.allow_plaintext_fallback:
            logger.warning(
                "Secret not in Key Vault; writing connection string to app settings",
                extra={"function_app": function_app.name},
            )
            settings[SETTING_CONNECTION_STRING] = connection_string
            plaintext = True

        try:
            await self._platform.update_app_settings(function_app, settings)
        except CloudError as e:
            self.summary.add("app settings", StepStatus.WARNING, f"not updated: {e}")
            return

        names = ", ".join(sorted(settings))
        if plaintext:
            self.summary.add("app settings", StepStatus.WARNING, f"{names} (plaintext fallback)")
        else:
            self.summary.add("app settings", StepStatus.SUCCEEDED, names)

    async def _record_outputs(self) -> None:
        vault = self.resources.get(ResourceKind.KEY_VAULT)
        function_app = self.resources.get(ResourceKind.FUNCTION_APP)
        record = OutputsRecord(
            subscription_id=self._config.subscription_id,
            resource_group=self._topology.resource_group,
            location=self._topology.location,
            name_suffix=self._topology.suffix,
            resources=dict(self.resources),
            secret_name=self._topology.secret_name,
            secret_stored=self.secret_stored,
            key_vault_uri=vault.endpoint if vault else None,
            function_app_url=(
                f"https://{function_app.endpoint}" if function_app and function_app.endpoint else None
            ),
        )
        try:
            path = record_outputs(record, self._config.outputs_path)
        except OutputsWriteError as e:
            self.summary.add("outputs", StepStatus.FAILED, str(e))
            raise
        self.summary.outputs_path = str(path)
        self.summary.add("outputs", StepStatus.SUCCEEDED, str(path))

    def _skip(self, step: str, reason: str) -> None:
        logger.warning(f"Skipping {step}: {reason}")
        self.summary.add(step, StepStatus.SKIPPED, reason)
