"""Access grant reconciliation.

Role assignments are created idempotently:
1. An existing assignment for the same principal, role and scope is reused
2. Creation is retried with linear backoff on transient errors
3. A denial stops immediately - the caller lacks rights and retrying cannot help
4. After creation, the listing is polled until the assignment is visible

Denied and Failed are returned, never raised. Partial provisioning without
the grant is a valid end state that a human can finish manually.
"""

from __future__ import annotations

import logging

from .cloud import CloudError, CloudPlatform, ErrorKind, GrantCreation
from .models import Grant, GrantOutcome, GrantRequest, GrantResult
from .polling import DEFAULT_POLL_INTERVAL_SECONDS, SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

MAX_GRANT_ATTEMPTS = 3
GRANT_BACKOFF_BASE_SECONDS = 5
GRANT_VISIBILITY_ATTEMPTS = 24


def scope_covers(granted_scope: str, scope: str) -> bool:
    """Check whether an assignment at granted_scope applies at scope.

    An assignment is inherited by child scopes only, so it covers the same
    scope or a descendant on a path segment boundary. Scopes compare
    case-insensitively.
    """
    granted = granted_scope.rstrip("/").lower()
    target = scope.rstrip("/").lower()
    return target == granted or target.startswith(granted + "/")


async def holds_role(
    platform: CloudPlatform, principal_id: str, scope: str, role_names: tuple[str, ...]
) -> Grant | None:
    """Return an assignment giving the principal one of the roles at scope.

    The platform listing also returns assignments below the scope, which
    grant nothing at the scope itself and are ignored.

    Raises:
        CloudError: If the assignments cannot be listed.
    """
    for grant in await platform.list_grants(principal_id, scope):
        if grant.principal_id != principal_id or not scope_covers(grant.scope, scope):
            continue
        for role_name in role_names:
            if await platform.role_matches(grant, role_name):
                return grant
    return None


class GrantReconciler:
    """Ensures role assignments exist."""

    def __init__(
        self,
        platform: CloudPlatform,
        *,
        max_attempts: int = MAX_GRANT_ATTEMPTS,
        backoff_base_seconds: float = GRANT_BACKOFF_BASE_SECONDS,
        visibility_attempts: int = GRANT_VISIBILITY_ATTEMPTS,
        visibility_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._platform = platform
        self._max_attempts = max_attempts
        self._backoff_base_seconds = backoff_base_seconds
        self._visibility_attempts = visibility_attempts
        self._visibility_interval = visibility_interval
        self._clock = clock

    async def is_granted(self, request: GrantRequest) -> bool:
        """Check whether the principal already holds the role at the scope."""
        grant = await holds_role(
            self._platform, request.principal_id, request.scope, (request.role_name,)
        )
        return grant is not None

    async def ensure_grant(self, request: GrantRequest) -> GrantResult:
        """Ensure the role assignment described by the request exists.

        Returns:
            GrantResult; never raises for denied or failed creations.
        """
        log_extra = {
            "principal_id": request.principal_id,
            "role": request.role_name,
            "scope": request.scope,
        }

        try:
            if await self.is_granted(request):
                logger.info(f"Role '{request.role_name}' already granted", extra=log_extra)
                return GrantResult(outcome=GrantOutcome.ALREADY_GRANTED)
        except CloudError as e:
            # Listing may be denied while creation is still allowed; try anyway
            logger.warning(f"Could not list existing grants: {e}", extra=log_extra)

        last_error: CloudError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                creation = await self._platform.create_grant(request)
            except CloudError as e:
                last_error = e
                if e.kind == ErrorKind.DENIED:
                    logger.warning(
                        f"Not authorized to assign '{request.role_name}', skipping: {e}",
                        extra={**log_extra, "attempt": attempt},
                    )
                    return GrantResult(
                        outcome=GrantOutcome.DENIED,
                        attempts=attempt,
                        message=(
                            f"Caller lacks rights to assign '{request.role_name}' at "
                            f"{request.scope}; assign it manually to {request.principal_id}"
                        ),
                    )
                if e.kind == ErrorKind.ALREADY_EXISTS:
                    creation = GrantCreation.ALREADY_EXISTS
                else:
                    if attempt < self._max_attempts:
                        wait_time = self._backoff_base_seconds * attempt
                        logger.warning(
                            "Role assignment failed, retrying",
                            extra={
                                **log_extra,
                                "attempt": attempt,
                                "max_attempts": self._max_attempts,
                                "wait_seconds": wait_time,
                                "error": str(e),
                            },
                        )
                        await self._clock.sleep(wait_time)
                    continue

            if creation == GrantCreation.ALREADY_EXISTS:
                logger.info(
                    f"Role '{request.role_name}' assignment already exists", extra=log_extra
                )
                return GrantResult(outcome=GrantOutcome.ALREADY_GRANTED, attempts=attempt)

            logger.info(f"Assigned role '{request.role_name}'", extra=log_extra)
            visible = await self._wait_until_visible(request)
            return GrantResult(
                outcome=GrantOutcome.GRANTED,
                attempts=attempt,
                visible=visible,
                message=None if visible else "assignment created but not yet visible",
            )

        logger.error(
            f"Role assignment '{request.role_name}' failed after {self._max_attempts} attempts",
            extra={**log_extra, "error": str(last_error)},
        )
        return GrantResult(
            outcome=GrantOutcome.FAILED,
            attempts=self._max_attempts,
            message=str(last_error) if last_error else None,
        )

    async def _wait_until_visible(self, request: GrantRequest) -> bool:
        for attempt in range(1, self._visibility_attempts + 1):
            try:
                if await self.is_granted(request):
                    return True
            except CloudError as e:
                logger.debug(f"Grant visibility check failed: {e}")
            if attempt < self._visibility_attempts:
                await self._clock.sleep(self._visibility_interval)

        logger.warning(
            f"Role '{request.role_name}' not visible after {self._visibility_attempts} checks; "
            "the assignment may still be valid",
            extra={"principal_id": request.principal_id, "scope": request.scope},
        )
        return False

    async def revoke_grant(self, request: GrantRequest) -> None:
        """Delete the assignment described by the request.

        Raises:
            CloudError: If deletion fails.
        """
        await self._platform.delete_grant(request)
        logger.info(
            f"Revoked role '{request.role_name}'",
            extra={"principal_id": request.principal_id, "scope": request.scope},
        )
