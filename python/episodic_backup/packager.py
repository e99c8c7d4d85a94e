"""
Packager - Episode planning and execution.

Planning is a single left-to-right greedy pass that groups files into
size-bounded episodes. Execution hands one episode at a time to the
archiver; packaging is strictly sequential and stops at the first
failure.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from .archiver import Archiver, SevenZipArchiver
from .config import get_config, BackupConfig, GIB
from .errors import BackupCancelledError, LimitExceededError, PackagingError
from .models import Episode, FileRecord
from .progress import ProgressCallback, ProgressReporter


logger = logging.getLogger(__name__)


DEFAULT_MAX_EPISODE_BYTES = 2 * GIB
ARCHIVE_SUFFIX = ".7z"


class EpisodePlanner:
    """Greedy bin packing of files into episodes."""

    def plan(
        self,
        files: Sequence[FileRecord],
        max_episode_bytes: int,
        max_total_bytes: int = 0,
        series_id: str = "",
        first_index: int = 1,
    ) -> List[Episode]:
        """
        Group files into ordered episodes.

        Files are taken in the given order. A file that does not fit in the
        current episode seals it and opens the next one. A file larger than
        max_episode_bytes gets an episode of its own.

        Args:
            files: Files to package, in packing order
            max_episode_bytes: Size bound for one episode (<= 0 means 2GB)
            max_total_bytes: Ceiling for all files together (<= 0 disables)
            series_id: Series the episodes belong to
            first_index: Ordinal of the first episode

        Raises:
            LimitExceededError: if the files add up to more than max_total_bytes
        """
        total = sum(record.size for record in files)
        if max_total_bytes > 0 and total > max_total_bytes:
            raise LimitExceededError(total, max_total_bytes)

        if max_episode_bytes <= 0:
            max_episode_bytes = DEFAULT_MAX_EPISODE_BYTES

        episodes: List[Episode] = []
        current: Optional[Episode] = None

        def _open() -> Episode:
            return Episode(index=first_index + len(episodes), series_id=series_id)

        for record in files:
            if record.size > max_episode_bytes:
                if current is not None:
                    episodes.append(current)
                    current = None
                oversize = _open()
                oversize.oversize = True
                oversize.add(record)
                episodes.append(oversize)
                continue

            if current is None:
                current = _open()
            elif current.estimated_size + record.size > max_episode_bytes:
                episodes.append(current)
                current = _open()
            current.add(record)

        if current is not None:
            episodes.append(current)

        logger.info(
            f"Planned {len(episodes)} episodes for {len(files)} files "
            f"({total} bytes, bound {max_episode_bytes} bytes)"
        )
        return episodes


def archive_path(delivery_path: Path | str, series_id: str, episode: Episode) -> Path:
    """Target archive for an episode: <delivery>/<series>-<episode>.7z"""
    return Path(delivery_path) / f"{series_id}-{episode.id}{ARCHIVE_SUFFIX}"


class EpisodePackager:
    """
    Drives the archiver for planned episodes.

    One archive invocation completes or fails before the next starts.
    """

    def __init__(
        self,
        archiver: Optional[Archiver] = None,
        config: BackupConfig | None = None,
    ):
        self.config = config or get_config()
        self.archiver = archiver or SevenZipArchiver(self.config.archiver_binary)

    async def execute(
        self,
        episode: Episode,
        target: Path | str,
        workspace_root: Path | str,
        password: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Episode:
        """
        Package one episode.

        On success the episode is completed and its size is corrected to
        the archive's size on disk.

        Raises:
            PackagingError: if the archiver fails; the episode is marked failed
        """
        target = Path(target)
        episode.start_packaging(target)
        logger.info(f"Packaging {episode.name}: {episode.file_count} files -> {target}")

        if target.exists():
            message = f"Target archive already exists: {target}"
            episode.fail(message)
            raise PackagingError(episode.id, message)

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            episode.fail(str(e))
            raise PackagingError(episode.id, f"Cannot create output directory: {e}") from e

        loop = asyncio.get_event_loop()
        reporter = ProgressReporter("packaging", progress)

        def _on_progress(fraction: float) -> None:
            # Called from the archiver thread
            loop.call_soon_threadsafe(reporter.update_fraction, fraction)

        files = [Path(record.path) for record in episode.files]
        try:
            result = await loop.run_in_executor(
                None,
                self.archiver.pack,
                files,
                target,
                Path(workspace_root),
                password,
                _on_progress,
            )
        except Exception as e:
            episode.fail(str(e))
            raise PackagingError(episode.id, f"Archiver error: {e}") from e

        if not result.ok:
            episode.fail(result.output)
            raise PackagingError(episode.id, "Archiver failed", result.output)

        try:
            actual_size = target.stat().st_size
        except OSError as e:
            episode.fail(str(e))
            raise PackagingError(episode.id, f"Archive missing after packing: {e}") from e

        episode.complete(actual_size)
        reporter.update(1, 1)
        logger.info(
            f"Completed {episode.name}: {actual_size} bytes "
            f"(estimated {episode.estimated_size})"
        )
        return episode

    async def execute_all(
        self,
        episodes: Sequence[Episode],
        delivery_path: Path | str,
        workspace_root: Path | str,
        password: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[Episode]:
        """
        Package episodes in order, stopping at the first failure.

        Episodes after a failed one are never started and stay planned.
        Archives completed earlier in the run are removed, so a retry can
        reuse the same targets.

        Raises:
            PackagingError: from the first failing episode
            BackupCancelledError: if cancel is set between episodes
        """
        completed: List[Episode] = []
        try:
            for episode in episodes:
                if cancel is not None and cancel.is_set():
                    raise BackupCancelledError(
                        f"Packaging cancelled after {len(completed)} of {len(episodes)} episodes"
                    )
                target = archive_path(delivery_path, episode.series_id, episode)
                await self.execute(episode, target, workspace_root, password, progress)
                completed.append(episode)
        except BaseException:
            discard_archives(completed)
            raise
        return completed


def discard_archives(episodes: Sequence[Episode]) -> None:
    """Remove the archives of episodes from a run that did not finish."""
    for episode in episodes:
        if episode.package_path is None:
            continue
        try:
            Path(episode.package_path).unlink(missing_ok=True)
            logger.info(f"Removed {episode.package_path} from unfinished run")
        except OSError as e:
            logger.warning(f"Could not remove {episode.package_path}: {e}")
