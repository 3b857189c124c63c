"""Resolve the Communication Services connection string with a fallback chain.

Order: explicit environment value, then the Key Vault secret. A denied or
failed vault read is logged and yields no value rather than an error,
mirroring how the calling function locates the connection string at runtime.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from .cloud import CloudError, CloudPlatform
from .config import DEFAULT_SECRET_NAME

logger = logging.getLogger(__name__)

CONNECTION_STRING_ENV_VAR = "AcsConnectionString"


async def resolve_connection_string(
    platform: CloudPlatform | None,
    vault_uri: str | None,
    secret_name: str = DEFAULT_SECRET_NAME,
    environ: Mapping[str, str] | None = None,
) -> tuple[str | None, str]:
    """Find the connection string.

    Args:
        platform: Adapter used for the vault read; None skips the vault.
        vault_uri: Key Vault URI, or None when unknown.
        secret_name: Name of the secret in the vault.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        (value or None, source) where source is "environment", "keyvault" or "none".
    """
    env = os.environ if environ is None else environ

    value = env.get(CONNECTION_STRING_ENV_VAR)
    if value:
        return value, "environment"

    if platform is None or not vault_uri:
        return None, "none"

    try:
        secret = await platform.get_secret(vault_uri, secret_name)
    except CloudError as e:
        logger.warning(
            f"Reading secret '{secret_name}' from Key Vault failed",
            extra={"error_kind": e.kind.value, "status_code": e.status_code},
        )
        return None, "none"

    if secret:
        return secret, "keyvault"
    return None, "none"
