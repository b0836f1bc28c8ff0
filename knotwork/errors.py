"""
Error types and error logging for knotwork.

Validation failures are fatal to the calling operation. Provider and index
failures are degradations: callers substitute a fallback or skip the
affected project. Full tracebacks go to a log file while the CLI shows a
clean message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class KnotworkError(Exception):
    """Base class for all knotwork errors."""


class ValidationError(KnotworkError, ValueError):
    """Bad input shape: self-link, unknown action type, malformed vector."""


class ProviderError(KnotworkError):
    """Embedding or generation provider failure."""


class ProviderTimeoutError(ProviderError, TimeoutError):
    """Provider call exceeded its timeout."""


class ProviderUnavailableError(ProviderError):
    """Provider missing entirely or failing."""


class IndexCorruptionError(KnotworkError):
    """A project's spatial index cannot be read consistently."""

    def __init__(self, project_id: str, reason: str):
        self.project_id = project_id
        self.reason = reason
        super().__init__(f"Spatial index for project {project_id!r} is unusable: {reason}")


class CycleDetectedError(KnotworkError):
    """
    Adding a link would close a cycle.

    Returned as a warning alongside a link result rather than raised; the
    caller may retry with force=True.
    """

    def __init__(self, source_node_id: str, target_node_id: str):
        self.source_node_id = source_node_id
        self.target_node_id = target_node_id
        super().__init__(
            f"Link {source_node_id} -> {target_node_id} would create a cycle "
            f"({source_node_id} is reachable from {target_node_id})"
        )


class SearchFailedError(KnotworkError):
    """Cross-project search could not obtain a query embedding."""


class SearchCancelledError(KnotworkError):
    """Search was cancelled by the caller; partial results are discarded."""


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting KNOTWORK_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / "knotwork-errors.log"
    store = os.environ.get("KNOTWORK_STORE_PATH")
    if store:
        return Path(store) / "knotwork-errors.log"
    return Path.home() / ".knotwork" / "knotwork-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory (defaults to KNOTWORK_STORE_PATH or ~/.knotwork)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
