"""Outputs document persistence.

The outputs document is the sole artifact of a run: deployment tooling and the
calling function read it to locate the vault and the function app. Failing to
write it is the only fatal error of the workflow.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .models import OutputsRecord

logger = logging.getLogger(__name__)

MAX_OUTPUTS_FILE_SIZE_BYTES = 1024 * 1024


class OutputsWriteError(Exception):
    """Raised when the outputs document cannot be persisted."""

    pass


class OutputsLoadError(Exception):
    """Raised when an existing outputs document cannot be read."""

    pass


def record_outputs(record: OutputsRecord, path: Path) -> Path:
    """Serialize the outputs record to JSON.

    Args:
        record: Final topology of the run.
        path: Destination file; parent directories are created.

    Returns:
        The path written.

    Raises:
        OutputsWriteError: If the document cannot be written.
    """
    document = record.model_dump_json(by_alias=True, indent=2)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(document + "\n", encoding="utf-8")
    except OSError as e:
        raise OutputsWriteError(f"Cannot write outputs to {path}: {e}") from e

    logger.info(
        f"Outputs written to {path}",
        extra={"resources": len(record.resources), "secret_stored": record.secret_stored},
    )
    return path


def load_outputs(path: Path) -> OutputsRecord | None:
    """Read a previously recorded outputs document.

    Returns:
        The record, or None if the file does not exist.

    Raises:
        OutputsLoadError: If the file exists but is unreadable or invalid.
    """
    if not path.exists():
        return None

    try:
        if path.stat().st_size > MAX_OUTPUTS_FILE_SIZE_BYTES:
            raise OutputsLoadError(f"Outputs file too large: {path}")
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise OutputsLoadError(f"Cannot read outputs from {path}: {e}") from e

    try:
        return OutputsRecord.model_validate_json(content)
    except ValidationError as e:
        raise OutputsLoadError(f"Invalid outputs document {path}:\n{e}") from e
