"""
Manifest - Persistent record of every known file and content hash.

The store owns all manifest file I/O. Loading never fails: a missing or
damaged manifest degrades to an empty one so a corrupt state file can
never block a backup. Saving writes the authoritative copy inside the
workspace control directory and a best-effort copy next to the archives.

build_next_manifest() assembles the next generation copy-on-write: the
previous manifest is only read, never mutated.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List

from .config import get_config, BackupConfig
from .errors import ManifestCorruptionError
from .models import (
    Episode, EpisodeStatus, FileRecord, FileStatus, Manifest, ScanResult,
    WorkerResult, utcnow,
)


logger = logging.getLogger(__name__)


class ManifestStore:
    """Loads and saves workspace manifests as pretty-printed UTF-8 JSON."""

    def __init__(self, config: BackupConfig | None = None):
        self.config = config or get_config()

    def manifest_path(self, workspace: Path | str) -> Path:
        """Authoritative manifest location for a workspace."""
        return Path(workspace) / self.config.control_dir_name / self.config.manifest_filename

    def delivery_manifest_path(self, delivery_path: Path | str, series_id: str) -> Path:
        return Path(delivery_path) / f"{series_id or 'series'}-manifest.json"

    def load(self, workspace: Path | str) -> Manifest:
        """
        Load the latest manifest for a workspace.

        Returns an empty manifest if the file is missing, unreadable or
        malformed.
        """
        path = self.manifest_path(workspace)
        if not path.exists():
            logger.info(f"No manifest at {path}; treating as first backup")
            return Manifest.empty()

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            manifest = Manifest.from_dict(data)
        except OSError as e:
            logger.warning(f"Could not read manifest {path}: {e}; treating as first backup")
            return Manifest.empty()
        except (ValueError, TypeError, ManifestCorruptionError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors
            logger.warning(f"Manifest {path} is corrupted ({e}); treating as first backup")
            return Manifest.empty()

        logger.info(
            f"Loaded manifest {path}: {len(manifest.files)} files, "
            f"{len(manifest.hash_to_file)} hashes, series {manifest.series_id or '<none>'}"
        )
        return manifest

    def save(
        self,
        workspace: Path | str,
        delivery_path: Path | str | None,
        manifest: Manifest,
    ) -> Path:
        """
        Persist a manifest.

        Returns:
            Path of the authoritative workspace copy

        Raises:
            OSError: if the workspace copy cannot be written
        """
        manifest.created_at = utcnow()
        payload = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)

        path = self.manifest_path(workspace)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._atomic_write(path, payload)
        logger.info(f"Saved manifest to {path}")

        if delivery_path:
            copy_path = self.delivery_manifest_path(delivery_path, manifest.series_id)
            try:
                copy_path.write_text(payload, encoding="utf-8")
                logger.info(f"Copied manifest to {copy_path}")
            except OSError as e:
                logger.warning(f"Failed to copy manifest to delivery path {copy_path}: {e}")

        return path

    @staticmethod
    def _atomic_write(path: Path, payload: str) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.write("\n")
            os.replace(tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink()


def build_next_manifest(
    previous: Manifest,
    scan: ScanResult,
    suspects: Dict[str, FileRecord],
    worker_result: WorkerResult,
    series_id: str,
    hash_algorithm: str = "sha256",
) -> Manifest:
    """
    Assemble the next-generation manifest in memory.

    - unchanged files carry their previous record (and hash) forward
    - hashed suspects take their fresh record
    - suspects whose hashing failed keep the previous record, or are left
      out when new, so the next run detects them again
    - deleted files are dropped
    - the hash index is seeded from a copy of the previous index, then
      re-pointed or pruned so every entry names a live path with that hash
    """
    hashed = {
        record.path: record
        for record in (*worker_result.files_to_pack, *worker_result.metadata_update)
    }

    files: Dict[str, FileRecord] = {}
    for path, current in scan.files.items():
        if path in hashed:
            files[path] = hashed[path].copy()
        elif path in suspects:
            known = previous.files.get(path)
            if known is not None:
                files[path] = known.copy()
        else:
            known = previous.files.get(path, current)
            files[path] = known.copy(status=FileStatus.UNCHANGED)

    hash_to_file = reconcile_hash_index(dict(previous.hash_to_file), files)

    metadata = dict(previous.metadata)
    metadata["hashAlgorithm"] = hash_algorithm
    metadata["lastRun"] = utcnow().isoformat()

    next_manifest = Manifest(
        series_id=series_id,
        episode_id=previous.episode_id,
        files=files,
        directories={path: info for path, info in scan.directories.items()},
        metadata=metadata,
        hash_to_file=hash_to_file,
    )

    logger.info(
        f"Assembled manifest: {len(files)} files, {len(hash_to_file)} hashes "
        f"({len(previous.hash_to_file)} carried forward)"
    )
    return next_manifest


def reconcile_hash_index(
    index: Dict[str, str],
    files: Dict[str, FileRecord],
) -> Dict[str, str]:
    """
    Make `index` consistent with `files`, in place, and return it.

    Entries whose owner is gone or now holds different content move to the
    lexicographically smallest live path with that hash, or are removed.
    Every hashed file without an entry gets one.
    """
    owners: Dict[str, List[str]] = {}
    for path, record in files.items():
        if record.content_hash:
            owners.setdefault(record.content_hash, []).append(path)

    for content_hash, owner in list(index.items()):
        record = files.get(owner)
        if record is not None and record.content_hash == content_hash:
            continue
        candidates = owners.get(content_hash)
        if candidates:
            index[content_hash] = min(candidates)
        else:
            del index[content_hash]

    for content_hash, paths in owners.items():
        index.setdefault(content_hash, min(paths))

    return index


def record_episodes(manifest: Manifest, previous: Manifest, episodes: Iterable[Episode]) -> None:
    """Stamp completed episodes of this run into the manifest metadata."""
    completed = [e for e in episodes if e.status is EpisodeStatus.COMPLETED]

    manifest.metadata["episodeCount"] = previous.episode_count + len(completed)
    manifest.metadata["episodes"] = [e.to_dict() for e in completed]
    manifest.metadata["packedBytes"] = sum(e.total_size for e in completed)
    if completed:
        manifest.episode_id = completed[-1].id
