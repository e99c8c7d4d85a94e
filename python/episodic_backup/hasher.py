"""
Hasher - Concurrent content hashing and deduplication.

Streams every suspect file through a content hash on a fixed-size thread
pool, then splits the hashed files into "must package" and
"metadata-only" (identical content is already stored elsewhere).

SHA-256 (hashlib) is the default; xxHash is available for speed when a
cryptographic digest is not required.
"""

import asyncio
import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

import xxhash

from .config import get_config, BackupConfig
from .errors import BackupCancelledError, ErrorAction, HashError, handle_error
from .models import FileRecord, FileStatus, Manifest, WorkerResult
from .progress import ProgressCallback, ProgressReporter


logger = logging.getLogger(__name__)


_HASH_FACTORIES = {
    "sha256": hashlib.sha256,
    "xxh64": xxhash.xxh64,
    "xxh3_128": xxhash.xxh3_128,
}


def compute_hash(path: str, algorithm: str = "sha256", chunk_size: int = 65536) -> str:
    """
    Hash a file's bytes with bounded reads.

    The file is never loaded whole; memory use is one chunk.
    """
    hasher = _HASH_FACTORIES[algorithm]()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
    return hasher.hexdigest()


class HashWorkerPool:
    """
    Fixed-size pool of hash workers.

    Each suspect record is handed to exactly one task, which writes the
    record's content_hash in place; no two tasks share a record, so no
    locking is needed.
    """

    def __init__(self, config: BackupConfig | None = None):
        self.config = config or get_config()

    async def run(
        self,
        suspects: Dict[str, FileRecord],
        concurrency: Optional[int] = None,
        previous: Optional[Manifest] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> WorkerResult:
        """
        Hash all non-deleted suspects and classify them.

        Args:
            suspects: Output of the indexer diff
            concurrency: Worker count for this run (default: config)
            previous: Manifest whose hash index marks already-stored content
            cancel: Optional event; once set, workers stop taking files
            progress: Optional listener for "hashing" progress events

        Returns:
            WorkerResult with files_to_pack and metadata_update

        Raises:
            ValueError: if concurrency is not positive
            BackupCancelledError: if cancel was set before the pool drained
        """
        workers = concurrency if concurrency is not None else self.config.concurrency
        if workers <= 0:
            raise ValueError(f"concurrency must be positive, got {workers}")

        start_time = time.monotonic()
        files = [r for r in suspects.values() if r.status is not FileStatus.DELETED]
        result = WorkerResult()

        if not files:
            return result

        logger.info(f"Hashing {len(files)} files with {workers} workers ({self.config.hash_algorithm})")

        reporter = ProgressReporter("hashing", progress)
        done = 0

        def _on_done(_future) -> None:
            nonlocal done
            done += 1
            if done % self.config.progress_interval == 0 or done == len(files):
                reporter.update(done, len(files))

        loop = asyncio.get_event_loop()
        # Sized once per run; no resizing while tasks are in flight
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hasher") as executor:
            tasks = []
            for record in files:
                future = loop.run_in_executor(executor, self._hash_file_sync, record, cancel)
                future.add_done_callback(_on_done)
                tasks.append(future)

            outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        if cancel is not None and cancel.is_set():
            for record in files:
                record.content_hash = ""
            raise BackupCancelledError("Hashing cancelled; computed hashes discarded")

        hashed: List[FileRecord] = []
        for record, outcome in zip(files, outcomes):
            if isinstance(outcome, HashError):
                result.errors[record.path] = str(outcome.cause)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                hashed.append(record)

        known_hashes = previous.hash_to_file if previous is not None else {}
        result.files_to_pack, result.metadata_update = classify(hashed, known_hashes)
        result.total_processed = len(hashed)
        result.total_size = sum(r.size for r in hashed)
        result.duration_seconds = time.monotonic() - start_time

        logger.info(str(result))
        return result

    def _hash_file_sync(
        self,
        record: FileRecord,
        cancel: Optional[threading.Event],
    ) -> Optional[str]:
        """
        Synchronous file hashing (runs in thread pool).

        Raises HashError for I/O failures so the caller can record them.
        """
        if cancel is not None and cancel.is_set():
            return None

        chunk_size = self.config.hash_chunk_size
        if record.size > self.config.small_file_threshold_bytes:
            chunk_size = self.config.large_file_chunk_size

        try:
            record.content_hash = compute_hash(
                record.path, self.config.hash_algorithm, chunk_size
            )
        except Exception as e:
            if handle_error(e, record.path, "hash_file") is ErrorAction.ABORT:
                raise
            raise HashError(record.path, e) from e

        return record.content_hash


def classify(
    hashed: List[FileRecord],
    known_hashes: Dict[str, str],
) -> tuple[List[FileRecord], List[FileRecord]]:
    """
    Split hashed records into (files_to_pack, metadata_update).

    Content already in `known_hashes` is metadata-only. Among records of
    this run sharing a new hash, the lexicographically smallest path is
    packaged and the rest are metadata-only, so membership does not depend
    on the order in which workers finished.
    """
    to_pack: List[FileRecord] = []
    metadata_only: List[FileRecord] = []
    groups: Dict[str, List[FileRecord]] = {}

    for record in hashed:
        if record.content_hash in known_hashes:
            metadata_only.append(record)
        else:
            groups.setdefault(record.content_hash, []).append(record)

    for records in groups.values():
        records.sort(key=lambda r: r.path)
        to_pack.append(records[0])
        metadata_only.extend(records[1:])

    to_pack.sort(key=lambda r: r.path)
    metadata_only.sort(key=lambda r: r.path)
    return to_pack, metadata_only


async def hash_suspects(
    suspects: Dict[str, FileRecord],
    previous: Optional[Manifest] = None,
    config: BackupConfig | None = None,
) -> WorkerResult:
    """
    Convenience function to hash suspects.

    Usage:
        result = await hash_suspects(suspects, previous_manifest)
        print(f"{len(result.files_to_pack)} files to package")
    """
    pool = HashWorkerPool(config)
    return await pool.run(suspects, previous=previous)
