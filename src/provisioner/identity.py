"""Wait for a newly created identity to become visible in the directory.

A managed identity is created together with its resource, but directory
replication lags behind. Granting a role to a principal the directory cannot
see yet fails, so the workflow polls for it first.
"""

from __future__ import annotations

import logging

from .cloud import CloudError, CloudPlatform
from .models import PrincipalStatus
from .polling import DEFAULT_POLL_INTERVAL_SECONDS, SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

DEFAULT_PRINCIPAL_WAIT_ATTEMPTS = 12


async def wait_for_principal(
    platform: CloudPlatform,
    principal_id: str,
    max_attempts: int = DEFAULT_PRINCIPAL_WAIT_ATTEMPTS,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    *,
    clock: Clock = SYSTEM_CLOCK,
) -> PrincipalStatus:
    """Poll the directory until the principal is found.

    No sleep follows the final attempt, so the call takes at most
    (max_attempts - 1) * interval of waiting.

    Returns:
        PRESENT as soon as the principal is found, ABSENT when the budget is
        exhausted. ABSENT is not an error; the caller still attempts grants.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            principal = await platform.show_principal(principal_id)
        except CloudError as e:
            # Transient directory errors count as a miss
            logger.warning(
                f"Directory lookup for principal {principal_id} failed: {e}",
                extra={"attempt": attempt, "error_kind": e.kind.value},
            )
            principal = None

        if principal is not None:
            logger.info(
                f"Principal {principal_id} visible in directory",
                extra={"attempt": attempt},
            )
            return PrincipalStatus.PRESENT

        if attempt < max_attempts:
            logger.debug(
                f"Principal {principal_id} not yet visible "
                f"(attempt {attempt}/{max_attempts}), waiting {interval}s"
            )
            await clock.sleep(interval)

    logger.warning(
        f"Principal {principal_id} not visible after {max_attempts} attempts, continuing",
        extra={"principal_id": principal_id, "max_attempts": max_attempts},
    )
    return PrincipalStatus.ABSENT
