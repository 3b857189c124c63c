"""Configuration management with validation.

All inputs are validated when the configuration is built so that a bad
environment fails before any resource is touched.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_OUTPUTS_PATH = "outputs.json"

DEFAULT_PROVIDER_REGISTRATION_TIMEOUT_SECONDS = 300
MAX_PROVIDER_REGISTRATION_TIMEOUT_SECONDS = 1800

DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

DEFAULT_PRINCIPAL_WAIT_ATTEMPTS = 12
DEFAULT_GRANT_MAX_ATTEMPTS = 3
DEFAULT_GRANT_VISIBILITY_ATTEMPTS = 24
MAX_POLL_ATTEMPTS = 120

DEFAULT_SECRET_PROPAGATION_DELAY_SECONDS = 20
MAX_SECRET_PROPAGATION_DELAY_SECONDS = 300

DEFAULT_SECRET_NAME = "AcsConnectionString"

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_NAME_SUFFIX_PATTERN = r"^[a-z0-9]{3,8}$"
MAX_RESOURCE_GROUP_NAME_LENGTH = 90


@dataclass(frozen=True)
class TimingConfig:
    """Retry and polling ceilings. Every loop in the workflow is bounded by these."""

    provider_registration_timeout_seconds: int = DEFAULT_PROVIDER_REGISTRATION_TIMEOUT_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    principal_wait_attempts: int = DEFAULT_PRINCIPAL_WAIT_ATTEMPTS
    grant_max_attempts: int = DEFAULT_GRANT_MAX_ATTEMPTS
    grant_visibility_attempts: int = DEFAULT_GRANT_VISIBILITY_ATTEMPTS
    secret_propagation_delay_seconds: int = DEFAULT_SECRET_PROPAGATION_DELAY_SECONDS

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not (
            0 <= self.provider_registration_timeout_seconds
            <= MAX_PROVIDER_REGISTRATION_TIMEOUT_SECONDS
        ):
            errors.append(
                "PROVIDER_REGISTRATION_TIMEOUT must be between 0 and "
                f"{MAX_PROVIDER_REGISTRATION_TIMEOUT_SECONDS} seconds"
            )
        if not (MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        for key, value in (
            ("PRINCIPAL_WAIT_ATTEMPTS", self.principal_wait_attempts),
            ("GRANT_MAX_ATTEMPTS", self.grant_max_attempts),
            ("GRANT_VISIBILITY_ATTEMPTS", self.grant_visibility_attempts),
        ):
            if not (1 <= value <= MAX_POLL_ATTEMPTS):
                errors.append(f"{key} must be between 1 and {MAX_POLL_ATTEMPTS}")
        if not (
            0 <= self.secret_propagation_delay_seconds <= MAX_SECRET_PROPAGATION_DELAY_SECONDS
        ):
            errors.append(
                "SECRET_PROPAGATION_DELAY must be between 0 and "
                f"{MAX_SECRET_PROPAGATION_DELAY_SECONDS} seconds"
            )
        return errors


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    subscription_id: str
    location: str

    # Naming
    resource_group_name: str | None = None
    name_suffix: str | None = None
    topology_file: Path | None = None

    # Outputs
    outputs_path: Path = field(default_factory=lambda: Path(DEFAULT_OUTPUTS_PATH))

    # Function app settings
    callback_uri: str | None = None
    allow_plaintext_fallback: bool = False

    # Credentials
    managed_identity_client_id: str | None = None

    timing: TimingConfig = field(default_factory=TimingConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if self.resource_group_name and len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if self.name_suffix and not re.match(VALID_NAME_SUFFIX_PATTERN, self.name_suffix):
            errors.append(
                f"NAME_SUFFIX must match pattern {VALID_NAME_SUFFIX_PATTERN}: {self.name_suffix}"
            )

        if self.topology_file is not None and not self.topology_file.exists():
            errors.append(f"Topology file does not exist: {self.topology_file}")

        if self.callback_uri:
            parsed = urlparse(self.callback_uri)
            if parsed.scheme != "https" or not parsed.netloc:
                errors.append(f"CALLBACK_URI must be an absolute https URL: {self.callback_uri}")

        errors.extend(self.timing.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (from CLI options) win over the environment when
        they are not None.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Region for all resources
            RESOURCE_GROUP_NAME: Resource group to use (default: derived from suffix)
            NAME_SUFFIX: Suffix for generated resource names (default: reused or random)
            TOPOLOGY_FILE: Optional YAML file with resource overrides
            OUTPUTS_PATH: Where the outputs document is written (default: outputs.json)
            CALLBACK_URI: HTTPS callback URL configured on the function app
            ALLOW_PLAINTEXT_FALLBACK: Put the connection string in app settings
                when it cannot be stored in Key Vault (default: false)
            MANAGED_IDENTITY_CLIENT_ID: Use this user-assigned identity

        Timing Variables:
            PROVIDER_REGISTRATION_TIMEOUT: Seconds per provider namespace (default: 300)
            POLL_INTERVAL: Seconds between polls (default: 5)
            PRINCIPAL_WAIT_ATTEMPTS: Directory lookups for a new identity (default: 12)
            GRANT_MAX_ATTEMPTS: Role assignment creation attempts (default: 3)
            GRANT_VISIBILITY_ATTEMPTS: Listing polls after creation (default: 24)
            SECRET_PROPAGATION_DELAY: Seconds after temporary elevation (default: 20)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        values: dict[str, object] = {
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            "location": os.environ.get("AZURE_LOCATION", ""),
            "resource_group_name": os.environ.get("RESOURCE_GROUP_NAME") or None,
            "name_suffix": os.environ.get("NAME_SUFFIX") or None,
            "topology_file": get_path("TOPOLOGY_FILE"),
            "outputs_path": Path(os.environ.get("OUTPUTS_PATH", DEFAULT_OUTPUTS_PATH)),
            "callback_uri": os.environ.get("CALLBACK_URI") or None,
            "allow_plaintext_fallback": get_bool("ALLOW_PLAINTEXT_FALLBACK", False),
            "managed_identity_client_id": os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            "timing": TimingConfig(
                provider_registration_timeout_seconds=get_int(
                    "PROVIDER_REGISTRATION_TIMEOUT", DEFAULT_PROVIDER_REGISTRATION_TIMEOUT_SECONDS
                ),
                poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
                principal_wait_attempts=get_int(
                    "PRINCIPAL_WAIT_ATTEMPTS", DEFAULT_PRINCIPAL_WAIT_ATTEMPTS
                ),
                grant_max_attempts=get_int("GRANT_MAX_ATTEMPTS", DEFAULT_GRANT_MAX_ATTEMPTS),
                grant_visibility_attempts=get_int(
                    "GRANT_VISIBILITY_ATTEMPTS", DEFAULT_GRANT_VISIBILITY_ATTEMPTS
                ),
                secret_propagation_delay_seconds=get_int(
                    "SECRET_PROPAGATION_DELAY", DEFAULT_SECRET_PROPAGATION_DELAY_SECONDS
                ),
            ),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]
