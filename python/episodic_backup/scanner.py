"""
Scanner - Workspace file system traversal.

Walks a workspace with os.scandir, never following symlinks, and builds a
FileRecord for every regular file plus recursive aggregates for every
directory. Symlinks and the reserved control directory are pruned.
"""

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import get_config, BackupConfig
from .errors import BackupCancelledError, handle_error
from .models import DirInfo, FileRecord, ScanResult
from .progress import ProgressCallback, ProgressReporter


logger = logging.getLogger(__name__)


@dataclass
class _ScanState:
    """Mutable accumulator for one scan."""
    files: Dict[str, FileRecord] = field(default_factory=dict)
    directories: Dict[str, DirInfo] = field(default_factory=dict)
    skipped: int = 0
    errors: int = 0
    total: int = 0
    reporter: Optional[ProgressReporter] = None
    cancel: Optional[threading.Event] = None


class Scanner:
    """
    Workspace scanner.

    Every regular file yields a FileRecord with status UNCHANGED; the
    indexer decides the real status by diffing against the manifest.
    """

    def __init__(self, config: BackupConfig | None = None):
        self.config = config or get_config()

    async def scan(
        self,
        root: Path | str,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ScanResult:
        """
        Scan a workspace and return all regular files.

        Args:
            root: Workspace directory
            progress: Optional listener for "scanning" progress events
            cancel: Optional event; when set the scan stops

        Returns:
            ScanResult keyed by absolute path

        Raises:
            OSError: if the root itself cannot be listed
            BackupCancelledError: if cancel was set during the walk
        """
        root_path = os.path.abspath(os.fspath(root))
        start_time = time.monotonic()

        # Fail fast on an unreadable root; errors below it are per-entry.
        root_entries = self._list_dir(root_path)
        root_stat = os.stat(root_path)

        state = _ScanState(cancel=cancel)
        if progress is not None:
            state.reporter = ProgressReporter("scanning", progress)
            state.total = await asyncio.get_event_loop().run_in_executor(
                None, self._count_files, root_path
            )

        count, size = await self._scan_directory(root_entries, state)
        state.directories[root_path] = DirInfo(
            path=root_path,
            name=os.path.basename(root_path) or root_path,
            mod_time=datetime.fromtimestamp(root_stat.st_mtime, tz=timezone.utc),
            file_count=count,
            total_size=size,
        )

        if state.reporter:
            state.reporter.update(len(state.files), state.total)

        duration = time.monotonic() - start_time
        logger.info(
            f"Scanned {len(state.files)} files in {len(state.directories)} "
            f"directories in {duration:.1f}s ({state.skipped} skipped, {state.errors} errors)"
        )

        return ScanResult(
            files=state.files,
            directories=state.directories,
            skipped_count=state.skipped,
            error_count=state.errors,
            duration_seconds=duration,
        )

    async def _scan_directory(
        self,
        entries: List[os.DirEntry],
        state: _ScanState,
    ) -> Tuple[int, int]:
        """
        Record the files in one directory listing and recurse into subdirectories.

        Returns:
            (file_count, total_size) aggregated over the whole subtree
        """
        if state.cancel is not None and state.cancel.is_set():
            raise BackupCancelledError("Scan cancelled")

        file_count = 0
        total_size = 0
        subdirs: List[os.DirEntry] = []

        for entry in entries:
            try:
                if entry.is_symlink():
                    state.skipped += 1
                    continue

                if entry.is_dir(follow_symlinks=False):
                    if self._should_skip_dir(entry.name):
                        logger.debug(f"Skipping directory: {entry.path}")
                        continue
                    subdirs.append(entry)

                elif entry.is_file(follow_symlinks=False):
                    record = FileRecord.from_stat(entry.path, entry.stat(follow_symlinks=False))
                    state.files[record.path] = record
                    file_count += 1
                    total_size += record.size
                    await self._report(state)

                else:
                    # Sockets, FIFOs, device nodes
                    state.skipped += 1

            except OSError as e:
                state.errors += 1
                handle_error(e, entry.path, "scan_entry")

        for subdir in subdirs:
            try:
                sub_entries = self._list_dir(subdir.path)
                sub_stat = subdir.stat(follow_symlinks=False)
            except OSError as e:
                state.errors += 1
                handle_error(e, subdir.path, "scan_directory")
                continue

            sub_count, sub_size = await self._scan_directory(sub_entries, state)
            state.directories[subdir.path] = DirInfo(
                path=subdir.path,
                name=subdir.name,
                mod_time=datetime.fromtimestamp(sub_stat.st_mtime, tz=timezone.utc),
                file_count=sub_count,
                total_size=sub_size,
            )
            file_count += sub_count
            total_size += sub_size

        return file_count, total_size

    async def _report(self, state: _ScanState) -> None:
        """Emit batched progress and give the event loop a turn."""
        processed = len(state.files)
        if processed % self.config.progress_interval != 0:
            return
        if state.reporter:
            state.reporter.update(processed, state.total)
        await asyncio.sleep(0)

    def _count_files(self, root: str) -> int:
        """Cheap first pass so progress can be reported as a percentage."""
        total = 0
        stack = [root]
        while stack:
            directory = stack.pop()
            try:
                with os.scandir(directory) as it:
                    for entry in it:
                        if entry.is_symlink():
                            continue
                        if entry.is_dir(follow_symlinks=False):
                            if not self._should_skip_dir(entry.name):
                                stack.append(entry.path)
                        elif entry.is_file(follow_symlinks=False):
                            total += 1
            except OSError:
                # Reported by the real pass
                continue
        return total

    @staticmethod
    def _list_dir(directory: str) -> List[os.DirEntry]:
        with os.scandir(directory) as it:
            return list(it)

    def _should_skip_dir(self, name: str) -> bool:
        """The control directory holds our own state and is never backed up."""
        return name == self.config.control_dir_name


async def scan_workspace(
    root: Path | str,
    config: BackupConfig | None = None,
) -> ScanResult:
    """
    Convenience function to scan a workspace.

    Usage:
        result = await scan_workspace(Path.home() / "Projects")
        for path, record in result.files.items():
            print(path, record.size)
    """
    scanner = Scanner(config)
    return await scanner.scan(root)
