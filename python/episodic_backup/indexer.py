"""
Indexer - Incremental change detection.

Compares a fresh workspace scan against the previous manifest and keeps
only the "suspects": files that are new, whose metadata changed, or that
disappeared. Unchanged files never reach the hash worker pool.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from .config import get_config, BackupConfig
from .models import ChangeSummary, FileRecord, FileStatus, Manifest, ScanResult
from .progress import ProgressCallback
from .scanner import Scanner


logger = logging.getLogger(__name__)


class WorkspaceIndexer:
    """
    Scan + diff front end of the backup pipeline.

    Change detection uses metadata only: size, modification time (exact
    equality) and name. Content is never read here.
    """

    def __init__(self, config: BackupConfig | None = None):
        self.config = config or get_config()
        self._scanner = Scanner(self.config)

    async def scan(
        self,
        root: Path | str,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ScanResult:
        """Scan the workspace. Raises OSError if the root is unreadable."""
        return await self._scanner.scan(root, progress=progress, cancel=cancel)

    def diff(
        self,
        current: Dict[str, FileRecord],
        previous: Optional[Manifest],
    ) -> Dict[str, FileRecord]:
        """
        Classify current files against the previous manifest.

        Current records are updated in place with their status; the
        returned map holds only suspects (new, modified and synthesized
        deleted records). Calling this twice on the same inputs gives the
        same result.
        """
        suspects: Dict[str, FileRecord] = {}

        # First backup: everything is new
        if previous is None or previous.is_empty():
            for path, record in current.items():
                record.status = FileStatus.NEW
                suspects[path] = record
            logger.info(f"No previous manifest; {len(suspects)} new files")
            return suspects

        for path, record in current.items():
            known = previous.files.get(path)
            if known is None:
                record.status = FileStatus.NEW
                suspects[path] = record
            elif has_metadata_changed(record, known):
                record.status = FileStatus.MODIFIED
                suspects[path] = record
            else:
                record.status = FileStatus.UNCHANGED

        for path, known in previous.files.items():
            if path not in current:
                suspects[path] = known.copy(status=FileStatus.DELETED)

        logger.info(f"Diff found {len(suspects)} suspects: {summarize(suspects)}")
        return suspects

    def summarize(self, suspects: Dict[str, FileRecord]) -> ChangeSummary:
        return summarize(suspects)


def has_metadata_changed(current: FileRecord, previous: FileRecord) -> bool:
    """Size, mtime or name differ."""
    if current.size != previous.size:
        return True
    if current.mod_time != previous.mod_time:
        return True
    return current.name != previous.name


def summarize(suspects: Dict[str, FileRecord]) -> ChangeSummary:
    """Count suspects by status; total_size covers files that will be read."""
    summary = ChangeSummary()
    for record in suspects.values():
        if record.status is FileStatus.NEW:
            summary.new_count += 1
            summary.total_size += record.size
        elif record.status is FileStatus.MODIFIED:
            summary.modified_count += 1
            summary.total_size += record.size
        elif record.status is FileStatus.DELETED:
            summary.deleted_count += 1
    return summary
