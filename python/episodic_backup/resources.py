"""
Resources - System resource probing for default thresholds.

Uses psutil to size the hash worker pool and the small/large file staging
threshold. Only defaults come from here; every value can be overridden
through BackupConfig.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import psutil


logger = logging.getLogger(__name__)


MIN_WORKERS = 2
MAX_WORKERS = 16

MIB = 1024 * 1024
THRESHOLD_FLOOR = 64 * MIB         # Never stage less than 64MB
THRESHOLD_CEILING = 4 * 1024 * MIB # Hard upper bound of 4GB


@dataclass
class ResourceInfo:
    """Memory snapshot and the threshold derived from it."""
    total_memory: int
    available_memory: int
    memory_usage: float   # Percent in use
    threshold: int


def bytes_to_mb(bytes_val: int) -> float:
    """Convert bytes to megabytes, rounded to 1 decimal."""
    return round(bytes_val / MIB, 1)


def optimal_worker_count(cpu_count: Optional[int] = None) -> int:
    """
    Default number of hash workers: twice the logical CPUs, clamped to [2, 16].

    Hashing is I/O bound, so oversubscribing the cores keeps the disk busy.
    """
    if cpu_count is None:
        cpu_count = psutil.cpu_count(logical=True) or 1
    return max(MIN_WORKERS, min(cpu_count * 2, MAX_WORKERS))


def threshold_from_memory(total: int, available: int) -> int:
    """max(64MB, min(50% available, 15% total, 4GB))"""
    candidate = min(int(available * 0.5), int(total * 0.15), THRESHOLD_CEILING)
    return max(candidate, THRESHOLD_FLOOR)


def get_resource_info() -> Optional[ResourceInfo]:
    """Probe memory and compute the staging threshold."""
    try:
        mem = psutil.virtual_memory()
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to read memory info: {e}")
        return None

    usage = (mem.total - mem.available) / mem.total * 100 if mem.total else 0.0
    return ResourceInfo(
        total_memory=mem.total,
        available_memory=mem.available,
        memory_usage=usage,
        threshold=threshold_from_memory(mem.total, mem.available),
    )


def calculate_small_file_threshold() -> int:
    """Staging threshold in bytes, falling back to 64MB if probing fails."""
    info = get_resource_info()
    if info is None:
        return THRESHOLD_FLOOR

    logger.debug(
        f"Memory: {bytes_to_mb(info.available_memory)}MB available of "
        f"{bytes_to_mb(info.total_memory)}MB ({info.memory_usage:.0f}% used), "
        f"threshold {bytes_to_mb(info.threshold)}MB"
    )
    return info.threshold
