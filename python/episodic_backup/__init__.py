"""
Episodic Backup Package - Incremental, deduplicating episode backups.

Modules:
    - config: Centralized configuration
    - resources: psutil probing for worker count and staging threshold
    - scanner: File system traversal (no symlinks, control dir pruned)
    - indexer: Scan + metadata diff against the previous manifest
    - manifest: Manifest persistence and next-generation assembly
    - hasher: Concurrent SHA-256 / xxHash hashing and dedup
    - archiver: 7-Zip command line driver
    - packager: Episode planning and sequential packaging
    - orchestrator: Main entry point (prepare / execute)

Pipeline:
    Load manifest → Scan → Diff → Hash + dedup → Plan → Package → Save manifest

Usage:
    from episodic_backup import Orchestrator

    orchestrator = Orchestrator()
    preview = await orchestrator.prepare("~/Projects/thesis")
    result = await orchestrator.execute("~/Projects/thesis", "/mnt/usb", password="...")
"""

from .config import BackupConfig, get_config, set_config
from .errors import BackupError, LimitExceededError, PackagingError
from .models import Episode, FileRecord, FileStatus, Manifest
from .orchestrator import Orchestrator

__all__ = [
    "BackupConfig",
    "BackupError",
    "Episode",
    "FileRecord",
    "FileStatus",
    "LimitExceededError",
    "Manifest",
    "Orchestrator",
    "PackagingError",
    "get_config",
    "set_config",
]
