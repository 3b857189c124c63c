"""Main entry point for a provisioning run.

Exit codes:
    0: run completed (possibly with warnings, see the summary)
    1: configuration, topology or outputs error
    2: no usable Azure credential
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

import click

from .azure_cloud import AzureCloud
from .cloud import CloudPlatform
from .config import Config
from .outputs import OutputsLoadError, OutputsWriteError, load_outputs
from .polling import SYSTEM_CLOCK, Clock
from .security import CredentialError, create_session
from .topology import TopologyLoadError, load_topology, resolve_topology
from .workflow import ProvisioningWorkflow

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CREDENTIAL_ERROR = 2

# LogRecord attributes that are not user-supplied extras
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", level: int = logging.INFO) -> None:
    """Configure logging on stderr; stdout is kept for the run summary.

    Args:
        log_format: "json" for structured logs, "text" for interactive use.
        level: Root log level.
    """
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK and HTTP clients
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def run_provisioning(
    config: Config,
    platform: CloudPlatform | None = None,
    *,
    clock: Clock = SYSTEM_CLOCK,
) -> int:
    """Run the workflow once and print its summary.

    Args:
        config: Validated configuration.
        platform: Platform adapter; an AzureCloud is built from the
            configured credential when None.
        clock: Time source for all polling.

    Returns:
        Process exit code.
    """
    logger = logging.getLogger(__name__)

    try:
        spec = load_topology(config.topology_file)
        previous = load_outputs(config.outputs_path)
        topology = resolve_topology(
            config, spec, previous_suffix=previous.name_suffix if previous else None
        )
    except (TopologyLoadError, OutputsLoadError) as e:
        logger.error("Topology resolution failed", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        return EXIT_ERROR

    if platform is None:
        try:
            platform = AzureCloud(create_session(config))
        except CredentialError as e:
            logger.critical("No usable Azure credential", extra={"error": str(e)})
            click.echo(f"Error: {e}", err=True)
            return EXIT_CREDENTIAL_ERROR

    workflow = ProvisioningWorkflow(config, platform, topology, clock=clock)
    try:
        summary = await workflow.run()
    except OutputsWriteError as e:
        logger.error("Outputs could not be written", extra={"error": str(e)})
        click.echo(workflow.summary.render())
        click.echo(f"Error: {e}", err=True)
        return EXIT_ERROR

    click.echo(summary.render())
    if summary.warnings or summary.has_failures:
        click.echo(
            f"Completed with {len(summary.warnings)} warning(s); re-run or finish the "
            "listed steps manually.",
            err=True,
        )
    return EXIT_OK
