"""
Backup Configuration - Centralized settings for the backup engine.

Uses environment variables with sensible defaults. Resource-dependent values
(worker count, staging threshold) are probed once when left unset, so tests
can inject explicit numbers instead.
"""

import os
from dataclasses import dataclass
from typing import Optional

from .resources import calculate_small_file_threshold, optimal_worker_count


GIB = 1024 * 1024 * 1024

SUPPORTED_HASH_ALGORITHMS = {"sha256", "xxh64", "xxh3_128"}


@dataclass
class BackupConfig:
    """
    Configuration for the backup engine.

    Size limits are in bytes. A max_total_bytes of 0 disables the
    per-run ceiling.
    """

    # --- Workspace state ---
    control_dir_name: str = ".episodic"
    manifest_filename: str = "manifest.json"

    # --- Concurrency ---
    concurrency: Optional[int] = None               # None = 2x CPUs, clamped to [2, 16]
    small_file_threshold_bytes: Optional[int] = None  # None = derived from memory

    # --- Episode limits ---
    max_episode_bytes: int = 2 * GIB
    max_total_bytes: int = 0

    # --- Hashing ---
    hash_algorithm: str = "sha256"
    hash_chunk_size: int = 64 * 1024         # 64KB reads for small files
    large_file_chunk_size: int = 1024 * 1024 # 1MB reads above the threshold

    # --- Progress ---
    progress_interval: int = 100   # Report scan progress every N files

    # --- Archiver ---
    archiver_binary: Optional[str] = None  # None = search PATH for 7z/7zz/7za/7zr

    def __post_init__(self):
        """Fill resource-derived defaults and validate the rest."""
        if self.concurrency is None:
            self.concurrency = optimal_worker_count()
        if self.small_file_threshold_bytes is None:
            self.small_file_threshold_bytes = calculate_small_file_threshold()

        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be positive, got {self.concurrency}")
        if self.hash_algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ValueError(
                f"Unsupported hash algorithm {self.hash_algorithm!r}; "
                f"expected one of {sorted(SUPPORTED_HASH_ALGORITHMS)}"
            )
        if self.hash_chunk_size <= 0 or self.large_file_chunk_size <= 0:
            raise ValueError("chunk sizes must be positive")
        if self.progress_interval <= 0:
            raise ValueError("progress_interval must be positive")

    @classmethod
    def from_env(cls) -> "BackupConfig":
        """
        Create config from environment variables.

        Supported env vars:
            BACKUP_CONCURRENCY: Parallel hash workers
            BACKUP_SMALL_FILE_THRESHOLD: Staging threshold in bytes
            BACKUP_MAX_EPISODE_BYTES: Upper bound for one archive
            BACKUP_MAX_TOTAL_BYTES: Ceiling for one run (0 = unlimited)
            BACKUP_HASH_ALGORITHM: sha256, xxh64 or xxh3_128
            BACKUP_ARCHIVER: Path to the 7-Zip executable
        """
        kwargs = {}

        if concurrency := os.environ.get("BACKUP_CONCURRENCY"):
            kwargs["concurrency"] = int(concurrency)

        if threshold := os.environ.get("BACKUP_SMALL_FILE_THRESHOLD"):
            kwargs["small_file_threshold_bytes"] = int(threshold)

        if max_episode := os.environ.get("BACKUP_MAX_EPISODE_BYTES"):
            kwargs["max_episode_bytes"] = int(max_episode)

        if max_total := os.environ.get("BACKUP_MAX_TOTAL_BYTES"):
            kwargs["max_total_bytes"] = int(max_total)

        if algorithm := os.environ.get("BACKUP_HASH_ALGORITHM"):
            kwargs["hash_algorithm"] = algorithm.strip().lower()

        if archiver := os.environ.get("BACKUP_ARCHIVER"):
            kwargs["archiver_binary"] = archiver

        return cls(**kwargs)


# Singleton default config
_default_config: BackupConfig | None = None


def get_config() -> BackupConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = BackupConfig.from_env()
    return _default_config


def set_config(config: BackupConfig | None) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
