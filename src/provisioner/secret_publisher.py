"""Store the connection string in Key Vault with scoped self-elevation.

Whoever runs the provisioner usually owns the subscription but, with RBAC
authorization enabled on the vault, still has no data-plane right to write
secrets. In that case the publisher grants itself the write role for the
duration of one write and revokes it afterwards, on every exit path.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from .cloud import CloudError, CloudPlatform, ErrorKind, GrantCreation
from .grants import GrantReconciler, holds_role
from .models import (
    GrantRequest,
    Principal,
    ProvisionedResource,
    PublishResult,
    SecretOutcome,
)
from .polling import SYSTEM_CLOCK, Clock
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

SECRETS_WRITER_ROLE = "Key Vault Secrets Officer"
SECRET_WRITE_ROLES: tuple[str, ...] = (SECRETS_WRITER_ROLE, "Key Vault Administrator")

# Data-plane RBAC takes time to reach the vault after assignment
ELEVATION_PROPAGATION_DELAY_SECONDS = 20


@dataclass
class TemporaryGrant:
    """A grant that must be revoked before the enclosing operation ends."""

    request: GrantRequest
    created: bool = False
    revoked: bool = False
    revoke_error: CloudError | None = None


@asynccontextmanager
async def temporary_grant(
    platform: CloudPlatform, request: GrantRequest
) -> AsyncIterator[TemporaryGrant]:
    """Create a grant on entry and revoke it on exit.

    Only a grant this context actually created is revoked, exactly once. A
    revocation failure is recorded on the handle and logged, since it leaves
    standing privilege that a human has to remove.

    Raises:
        CloudError: If the grant cannot be created (nothing to revoke then).
    """
    handle = TemporaryGrant(request=request)
    try:
        creation = await platform.create_grant(request)
    except CloudError as e:
        if e.kind != ErrorKind.ALREADY_EXISTS:
            raise
        creation = GrantCreation.ALREADY_EXISTS
    handle.created = creation == GrantCreation.CREATED

    if handle.created:
        log_security_audit_event(
            "elevation",
            principal_id=request.principal_id,
            target_resource=request.scope,
            action=f"grant {request.role_name}",
            result="success",
        )

    try:
        yield handle
    finally:
        if handle.created:
            try:
                await GrantReconciler(platform).revoke_grant(request)
                handle.revoked = True
                log_security_audit_event(
                    "revocation",
                    principal_id=request.principal_id,
                    target_resource=request.scope,
                    action=f"revoke {request.role_name}",
                    result="success",
                )
            except CloudError as e:
                handle.revoke_error = e
                log_security_audit_event(
                    "revocation",
                    principal_id=request.principal_id,
                    target_resource=request.scope,
                    action=f"revoke {request.role_name}",
                    result="failure",
                )
                logger.error(
                    f"Failed to revoke temporary '{request.role_name}' grant; remove it manually",
                    extra={"principal_id": request.principal_id, "scope": request.scope},
                )


class SecretPublisher:
    """Publishes one secret per call."""

    def __init__(
        self,
        platform: CloudPlatform,
        *,
        propagation_delay_seconds: float = ELEVATION_PROPAGATION_DELAY_SECONDS,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._platform = platform
        self._propagation_delay_seconds = propagation_delay_seconds
        self._clock = clock

    async def publish(
        self, vault: ProvisionedResource, secret_name: str, secret_value: str
    ) -> PublishResult:
        """Write the secret, elevating temporarily if required.

        Args:
            vault: The Key Vault resource (id is the grant scope, endpoint the URI).
            secret_name: Name of the secret.
            secret_value: Value; never logged.

        Returns:
            PublishResult. STORED only if the write call succeeded.
        """
        if not vault.endpoint:
            return PublishResult(
                outcome=SecretOutcome.SKIPPED,
                message=f"Key Vault '{vault.name}' has no URI; cannot store '{secret_name}'",
            )

        caller = await self._whoami()
        if caller is None:
            logger.info("Calling identity unknown, attempting direct secret write")
            error = await self._write(vault, secret_name, secret_value)
            if error is None:
                return PublishResult(outcome=SecretOutcome.STORED)
            return PublishResult(
                outcome=SecretOutcome.SKIPPED,
                message=(
                    f"Could not store secret '{secret_name}' ({error}). Grant yourself "
                    f"'{SECRETS_WRITER_ROLE}' on {vault.id} and set it manually."
                ),
            )

        if await self._holds_write_role(caller, vault.id):
            logger.info("Caller already holds a secret write role on the vault")
            error = await self._write(vault, secret_name, secret_value)
            return self._result(secret_name, error)

        request = GrantRequest(
            principal_id=caller.object_id,
            principal_type=caller.principal_type,
            role_name=SECRETS_WRITER_ROLE,
            scope=vault.id,
        )
        try:
            async with temporary_grant(self._platform, request) as grant:
                if grant.created:
                    logger.info(
                        f"Temporary '{SECRETS_WRITER_ROLE}' granted, waiting "
                        f"{self._propagation_delay_seconds}s for propagation"
                    )
                    await self._clock.sleep(self._propagation_delay_seconds)
                error = await self._write(vault, secret_name, secret_value)
        except CloudError as e:
            logger.warning(
                f"Could not grant temporary '{SECRETS_WRITER_ROLE}': {e}",
                extra={"error_kind": e.kind.value},
            )
            error = await self._write(vault, secret_name, secret_value)
            return self._result(secret_name, error)

        result = self._result(secret_name, error)
        result.temporary_grant_created = grant.created
        result.revoked = grant.revoked
        if grant.revoke_error is not None:
            revoke_note = (
                f"temporary '{SECRETS_WRITER_ROLE}' on {vault.id} was not revoked "
                f"({grant.revoke_error}); remove it manually"
            )
            result.message = f"{result.message}; {revoke_note}" if result.message else revoke_note
        return result

    async def _whoami(self) -> Principal | None:
        try:
            return await self._platform.whoami()
        except CloudError as e:
            logger.warning(f"Could not determine calling identity: {e}")
            return None

    async def _holds_write_role(self, caller: Principal, scope: str) -> bool:
        try:
            grant = await holds_role(
                self._platform, caller.object_id, scope, SECRET_WRITE_ROLES
            )
        except CloudError as e:
            logger.warning(f"Could not list caller role assignments: {e}")
            return False
        return grant is not None

    async def _write(
        self, vault: ProvisionedResource, secret_name: str, secret_value: str
    ) -> CloudError | None:
        assert vault.endpoint is not None
        try:
            await self._platform.set_secret(vault.endpoint, secret_name, secret_value)
        except CloudError as e:
            logger.warning(
                f"Writing secret '{secret_name}' failed: {e}",
                extra={"error_kind": e.kind.value, "vault": vault.name},
            )
            return e
        logger.info(f"Stored secret '{secret_name}' in {vault.name}")
        return None

    def _result(self, secret_name: str, error: CloudError | None) -> PublishResult:
        if error is None:
            return PublishResult(outcome=SecretOutcome.STORED)
        return PublishResult(
            outcome=SecretOutcome.SKIPPED,
            message=f"Secret '{secret_name}' not stored: {error}",
        )
