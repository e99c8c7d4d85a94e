"""
Orchestrator - Main entry point for the backup engine.

Sequences the pipeline for two operations:
- prepare: Load manifest -> Scan -> Diff -> size estimate (read-only)
- execute: Load manifest -> Scan -> Diff -> Hash + dedup -> Plan
           -> Package episodes -> Save manifest

The manifest is saved only after every episode has been packaged; a
failed or cancelled run leaves the persisted state untouched.
"""

import asyncio
import logging
import secrets
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from .archiver import Archiver
from .config import get_config, BackupConfig, GIB
from .errors import BackupError, BackupPhaseError, LimitExceededError
from .hasher import HashWorkerPool
from .indexer import WorkspaceIndexer
from .manifest import ManifestStore, build_next_manifest, record_episodes
from .models import (
    ExecutionResult, FileRecord, FileStatus, PreparationResult, utcnow,
)
from .packager import EpisodePackager, EpisodePlanner, discard_archives
from .progress import ProgressCallback


logger = logging.getLogger(__name__)


@contextmanager
def phase(name: str) -> Iterator[None]:
    """Tag any error raised inside with the phase it ended."""
    try:
        yield
    except BackupError as e:
        if e.phase is None:
            e.phase = name
        raise
    except Exception as e:
        raise BackupPhaseError(name, e) from e


def new_series_id() -> str:
    """S<UTC timestamp>-<random suffix>"""
    return f"S{utcnow():%Y%m%d%H%M%S}-{secrets.token_hex(3)}"


class Orchestrator:
    """
    Main orchestrator for the backup engine.

    Manifest Store -> Indexer -> Hash Worker Pool -> Packager -> Manifest Store

    Each stage narrows the set of files: only suspects are hashed, and only
    content not stored before is packaged.
    """

    def __init__(
        self,
        config: Optional[BackupConfig] = None,
        archiver: Optional[Archiver] = None,
    ):
        self.config = config or get_config()

        # Initialize components
        self._store = ManifestStore(self.config)
        self._indexer = WorkspaceIndexer(self.config)
        self._pool = HashWorkerPool(self.config)
        self._planner = EpisodePlanner()
        self._packager = EpisodePackager(archiver, self.config)

    async def prepare(
        self,
        workspace: Path | str,
        max_episode_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PreparationResult:
        """
        Preview a backup without hashing or packaging.

        The estimate packs every new or modified file by size alone, so it
        cannot account for deduplication or archive compression. Nothing is
        written to disk.
        """
        max_episode = max_episode_bytes if max_episode_bytes is not None else self.config.max_episode_bytes
        max_total = max_total_bytes if max_total_bytes is not None else self.config.max_total_bytes

        logger.info(f"Preparing backup of {workspace}")

        with phase("load"):
            previous = self._store.load(workspace)

        with phase("scan"):
            scan = await self._indexer.scan(workspace, progress=progress)

        with phase("diff"):
            suspects = self._indexer.diff(scan.files, previous)
            summary = self._indexer.summarize(suspects)

        candidates = _packable(suspects)
        exceeds_limit = max_total > 0 and summary.total_size > max_total

        with phase("plan"):
            # Limit is reported, not enforced, for a preview
            episodes = self._planner.plan(
                candidates,
                max_episode,
                0,
                series_id=previous.series_id,
                first_index=previous.episode_count + 1,
            )

        logger.info(
            f"Preparation complete: {summary}; {len(episodes)} episodes estimated"
            + (" (exceeds total limit)" if exceeds_limit else "")
        )
        return PreparationResult(
            suspects=suspects,
            summary=summary,
            episodes=episodes,
            exceeds_limit=exceeds_limit,
        )

    async def execute(
        self,
        workspace: Path | str,
        delivery_path: Path | str,
        password: Optional[str] = None,
        max_episode_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
        concurrency: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ExecutionResult:
        """
        Run a full backup.

        Phases:
        1. LOAD: previous manifest (never fails)
        2. SCAN + DIFF: find suspects
        3. LIMIT: refuse oversized runs before any file is read
        4. HASH: content hash + dedup against the manifest
        5. PLAN: group files to package into episodes
        6. PACKAGE: archive episodes one by one, fail-fast
        7. SAVE: persist the new manifest

        Raises:
            BackupError: with `phase` naming where the run stopped
        """
        start_time = time.monotonic()
        workspace = Path(workspace)
        max_episode = max_episode_bytes if max_episode_bytes is not None else self.config.max_episode_bytes
        max_total = max_total_bytes if max_total_bytes is not None else self.config.max_total_bytes

        logger.info(f"Starting backup of {workspace} to {delivery_path}")

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 1-2: LOAD, SCAN, DIFF
        # ═══════════════════════════════════════════════════════════════════
        with phase("load"):
            previous = self._store.load(workspace)
        series_id = previous.series_id or new_series_id()

        with phase("scan"):
            scan = await self._indexer.scan(workspace, progress=progress, cancel=cancel)

        with phase("diff"):
            suspects = self._indexer.diff(scan.files, previous)
            summary = self._indexer.summarize(suspects)

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 3: LIMIT (before any hashing)
        # ═══════════════════════════════════════════════════════════════════
        with phase("limit"):
            if max_total > 0 and summary.total_size > max_total:
                raise LimitExceededError(summary.total_size, max_total)

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 4: HASH + DEDUP
        # ═══════════════════════════════════════════════════════════════════
        with phase("hash"):
            worker_result = await self._pool.run(
                suspects,
                concurrency=concurrency,
                previous=previous,
                cancel=cancel,
                progress=progress,
            )

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 5: PLAN + assemble next manifest
        # ═══════════════════════════════════════════════════════════════════
        with phase("plan"):
            episodes = self._planner.plan(
                worker_result.files_to_pack,
                max_episode,
                max_total,
                series_id=series_id,
                first_index=previous.episode_count + 1,
            )
            manifest = build_next_manifest(
                previous,
                scan,
                suspects,
                worker_result,
                series_id,
                self.config.hash_algorithm,
            )

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 6: PACKAGE (sequential, fail-fast)
        # ═══════════════════════════════════════════════════════════════════
        with phase("package"):
            completed = await self._packager.execute_all(
                episodes,
                delivery_path,
                workspace,
                password,
                cancel=cancel,
                progress=progress,
            )
            record_episodes(manifest, previous, completed)

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 7: SAVE
        # ═══════════════════════════════════════════════════════════════════
        with phase("save"):
            try:
                manifest_path = self._store.save(workspace, delivery_path, manifest)
            except BaseException:
                # Unrecorded archives would block a retry
                discard_archives(completed)
                raise

        result = ExecutionResult(
            episodes=completed,
            manifest=manifest,
            worker_result=worker_result,
            summary=summary,
            manifest_path=manifest_path,
            duration_seconds=time.monotonic() - start_time,
        )
        logger.info(f"Backup complete: {result}")
        return result


def _packable(suspects: dict[str, FileRecord]) -> List[FileRecord]:
    """New and modified suspects in path order."""
    return sorted(
        (r for r in suspects.values() if r.status is not FileStatus.DELETED),
        key=lambda r: r.path,
    )


async def run_prepare(
    workspace: Path | str,
    config: Optional[BackupConfig] = None,
) -> PreparationResult:
    """
    Convenience function to preview a backup.

    Usage:
        preview = await run_prepare("~/Projects/thesis")
        print(preview.summary)
    """
    orchestrator = Orchestrator(config)
    return await orchestrator.prepare(workspace)


async def run_execute(
    workspace: Path | str,
    delivery_path: Path | str,
    password: Optional[str] = None,
    config: Optional[BackupConfig] = None,
    archiver: Optional[Archiver] = None,
) -> ExecutionResult:
    """
    Convenience function to run a backup.

    Usage:
        result = await run_execute("~/Projects/thesis", "/mnt/usb", password="...")
        print(result)
    """
    orchestrator = Orchestrator(config, archiver)
    return await orchestrator.execute(workspace, delivery_path, password)


def _gib_to_bytes(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(value * GIB)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Incremental episode backup")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    prep = sub.add_parser("prepare", help="Preview changes and estimated episodes")
    prep.add_argument("workspace", help="Workspace directory")
    prep.add_argument("--max-episode-gb", type=float, help="Size bound for one episode")
    prep.add_argument("--max-total-gb", type=float, help="Ceiling for one run")

    run = sub.add_parser("execute", help="Hash, package and record changes")
    run.add_argument("workspace", help="Workspace directory")
    run.add_argument("delivery", help="Directory that receives the archives")
    run.add_argument("--password", help="Encrypt archives (contents and headers)")
    run.add_argument("--max-episode-gb", type=float, help="Size bound for one episode")
    run.add_argument("--max-total-gb", type=float, help="Ceiling for one run")
    run.add_argument("--concurrency", type=int, help="Hash worker count")

    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    workspace = Path(args.workspace).expanduser().resolve()
    orchestrator = Orchestrator()

    async def _main():
        if args.command == "prepare":
            preview = await orchestrator.prepare(
                workspace,
                max_episode_bytes=_gib_to_bytes(args.max_episode_gb),
                max_total_bytes=_gib_to_bytes(args.max_total_gb),
            )
            print(f"\n{preview.summary}")
            for episode in preview.episodes:
                print(f"  {episode.name}: {episode.file_count} files, ~{episode.estimated_size} bytes")
            if preview.exceeds_limit:
                print("Warning: changes exceed the total size limit")
            return

        cancel = threading.Event()
        try:
            result = await orchestrator.execute(
                workspace,
                Path(args.delivery).expanduser().resolve(),
                password=args.password,
                max_episode_bytes=_gib_to_bytes(args.max_episode_gb),
                max_total_bytes=_gib_to_bytes(args.max_total_gb),
                concurrency=args.concurrency,
                cancel=cancel,
            )
        except asyncio.CancelledError:
            cancel.set()
            raise
        print(f"\n{result}")
        for episode in result.episodes:
            print(f"  {episode.name}: {episode.package_path} ({episode.total_size} bytes)")

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\nStopped.")
        return 130
    except BackupError as e:
        logger.error(f"Backup failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
