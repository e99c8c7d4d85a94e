"""
Error Handling - Centralized error policies and custom exceptions.

Per-file failures (scan entries, hash reads) are isolated: they are logged
according to ERROR_POLICIES and the file is left out of the results.
Whole-run failures raise a BackupError subclass that names the phase in
which the run stopped.
"""

import logging
from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional
from pathlib import Path


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()           # Skip this item, continue processing
    ABORT = auto()          # Stop the entire run


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


# Error type to policy mapping (first isinstance match wins)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    MemoryError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Out of memory while processing: {file}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {file}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {file}"
    ),
    IsADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Expected file, got directory: {file}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error reading file: {file} - {error}"
    ),
}


class BackupError(Exception):
    """
    Base exception for backup errors.

    `phase` is filled in by the orchestrator when the error ends a run.
    """
    phase: Optional[str] = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.phase:
            return f"[{self.phase}] {message}"
        return message


class ManifestCorruptionError(BackupError):
    """Persisted manifest could not be parsed."""
    pass


class LimitExceededError(BackupError):
    """Requested backup is larger than the configured total ceiling."""
    def __init__(self, total: int, limit: int):
        self.total = total
        self.limit = limit
        super().__init__(
            f"Backup size {total} bytes exceeds the limit of {limit} bytes"
        )


class HashError(BackupError):
    """A single file could not be read while hashing."""
    def __init__(self, path: Path | str, cause: Exception):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Failed to hash {self.path}: {cause}")


class PackagingError(BackupError):
    """The archiver failed to produce an episode."""
    def __init__(self, episode_id: str, message: str, output: str = ""):
        self.episode_id = episode_id
        self.output = output
        detail = f"Episode {episode_id}: {message}"
        if output:
            detail = f"{detail}\n{output.strip()}"
        super().__init__(detail)


class EpisodeStateError(BackupError):
    """Illegal episode status transition."""
    pass


class BackupCancelledError(BackupError):
    """The shared cancellation event was set."""
    pass


class BackupPhaseError(BackupError):
    """Wraps a non-backup exception that ended a run."""
    def __init__(self, phase: str, cause: Exception):
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.phase = phase


def handle_error(
    error: Exception,
    file_path: Optional[Path | str] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        file_path: Path to the file being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP or ABORT)
    """
    # HashError wraps the underlying I/O failure
    lookup = error.cause if isinstance(error, HashError) else error

    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(lookup, error_type):
            policy = p
            break

    # Default policy for unknown errors
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {file} - {error}"
        )

    file_str = str(file_path) if file_path else "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(lookup))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
