"""Credential selection, session context and security audit events.

The provisioner authenticates as whoever runs it: a developer signed in with
the Azure CLI, a pipeline with workload identity, or a managed identity when
MANAGED_IDENTITY_CLIENT_ID is set. The selected credential and subscription
are carried in an explicit Session object; nothing reads ambient login state
after startup.

SECURITY INVARIANTS:
1. Interactive browser login is never attempted from the provisioner
2. Secret values are never logged, only secret names
3. Every temporary privilege elevation and its revocation is audit-logged
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

from .config import Config

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class CredentialError(Exception):
    """Raised when no usable credential can be obtained."""

    pass


@dataclass(frozen=True)
class Session:
    """Explicit authentication context passed to the platform adapter."""

    credential: TokenCredential
    subscription_id: str


def get_credential(client_id: str | None = None) -> TokenCredential:
    """Select the credential for this run.

    Args:
        client_id: Client ID of a user-assigned managed identity. When None,
            the default chain (environment, workload identity, managed
            identity, Azure CLI, ...) is used.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)


def create_session(config: Config) -> Session:
    """Build the session for a provisioning run.

    Raises:
        CredentialError: If the credential cannot produce an ARM token.
    """
    credential = get_credential(config.managed_identity_client_id)
    try:
        credential.get_token(ARM_SCOPE)
    except ClientAuthenticationError as e:
        raise CredentialError(
            "No Azure credential available. Sign in with 'az login' or configure "
            f"MANAGED_IDENTITY_CLIENT_ID: {e.message}"
        ) from e
    return Session(credential=credential, subscription_id=config.subscription_id)


def log_security_audit_event(
    event_type: str,
    principal_id: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (elevation, revocation, grant, ...)
        principal_id: Object ID of the principal acted upon.
        target_resource: Azure resource ID of the scope.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "principal_id": principal_id,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
