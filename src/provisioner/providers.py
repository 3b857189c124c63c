"""Resource provider registration gate.

Dependent resources cannot be created until their provider namespace is
registered in the subscription. Registration is asynchronous on the platform
side, so the gate polls at a fixed interval with a hard timeout. A timeout is a
warning, not an error: registration usually finishes on its own by the time
the dependent resource is created.
"""

from __future__ import annotations

import logging

from .cloud import PROVIDER_STATE_REGISTERED, CloudError, CloudPlatform
from .models import RegistrationStatus
from .polling import DEFAULT_POLL_INTERVAL_SECONDS, SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

DEFAULT_REGISTRATION_TIMEOUT_SECONDS = 300

REQUIRED_PROVIDER_NAMESPACES: tuple[str, ...] = (
    "Microsoft.Communication",
    "Microsoft.Storage",
    "Microsoft.KeyVault",
    "Microsoft.Web",
)


async def _read_state(platform: CloudPlatform, namespace: str) -> str | None:
    try:
        return await platform.get_provider_state(namespace)
    except CloudError as e:
        logger.warning(
            f"Could not read registration state of {namespace}: {e}",
            extra={"namespace": namespace, "error_kind": e.kind.value},
        )
        return None


async def ensure_registered(
    platform: CloudPlatform,
    namespace: str,
    timeout: float = DEFAULT_REGISTRATION_TIMEOUT_SECONDS,
    *,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    clock: Clock = SYSTEM_CLOCK,
) -> RegistrationStatus:
    """Ensure a provider namespace is registered, polling until timeout.

    Args:
        platform: Cloud platform adapter.
        namespace: Provider namespace (e.g. "Microsoft.Communication").
        timeout: Maximum seconds to wait for registration.
        interval: Seconds between polls.
        clock: Time source.

    Returns:
        REGISTERED once the platform reports it, TIMED_OUT otherwise.
    """
    start = clock.monotonic()

    state = await _read_state(platform, namespace)
    if state == PROVIDER_STATE_REGISTERED:
        logger.info(f"Provider {namespace} already registered")
        return RegistrationStatus.REGISTERED

    try:
        await platform.register_provider(namespace)
        logger.info(f"Registration requested for provider {namespace}")
    except CloudError as e:
        logger.warning(
            f"Register request for {namespace} failed: {e}",
            extra={"namespace": namespace, "error_kind": e.kind.value},
        )

    while (elapsed := clock.monotonic() - start) < timeout:
        await clock.sleep(min(interval, timeout - elapsed))
        state = await _read_state(platform, namespace)
        if state == PROVIDER_STATE_REGISTERED:
            logger.info(
                f"Provider {namespace} registered",
                extra={"waited_seconds": clock.monotonic() - start},
            )
            return RegistrationStatus.REGISTERED
        logger.debug(f"Provider {namespace} state={state}, waiting...")

    logger.warning(
        f"Provider {namespace} not registered after {timeout}s, continuing",
        extra={"namespace": namespace, "last_state": state},
    )
    return RegistrationStatus.TIMED_OUT


async def ensure_providers(
    platform: CloudPlatform,
    namespaces: tuple[str, ...] = REQUIRED_PROVIDER_NAMESPACES,
    timeout: float = DEFAULT_REGISTRATION_TIMEOUT_SECONDS,
    *,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    clock: Clock = SYSTEM_CLOCK,
) -> dict[str, RegistrationStatus]:
    """Run the gate for each namespace in order."""
    results: dict[str, RegistrationStatus] = {}
    for namespace in namespaces:
        results[namespace] = await ensure_registered(
            platform, namespace, timeout, interval=interval, clock=clock
        )
    return results
