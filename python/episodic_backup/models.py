"""
Data Models - Type definitions for the backup pipeline.

These dataclasses represent the data flowing through the pipeline stages
(scan -> diff -> hash -> plan -> package -> manifest), and the JSON shape
of the persisted manifest.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import EpisodeStateError, ManifestCorruptionError


MANIFEST_VERSION = "1.0"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: datetime) -> str:
    return value.isoformat()


def _parse_time(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ManifestCorruptionError(f"Expected ISO timestamp, got {value!r}")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ManifestCorruptionError(f"Invalid timestamp {value!r}: {e}") from e
    # Timestamps without an offset are treated as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FileStatus(Enum):
    """Change status of a file relative to the previous manifest."""
    UNCHANGED = "unchanged"
    NEW = "new"
    MODIFIED = "modified"
    MOVED = "moved"
    DELETED = "deleted"


class EpisodeStatus(Enum):
    """Lifecycle of one output archive."""
    PLANNED = "planned"
    PACKAGING = "packaging"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class FileRecord:
    """
    Identity of one regular file in the workspace.

    Created by the scanner from stat() data; the content hash is filled in
    by the hash worker pool. `path` is absolute and is the manifest key.
    """
    path: str
    name: str
    size: int
    mod_time: datetime
    content_hash: str = ""
    status: FileStatus = FileStatus.UNCHANGED

    @classmethod
    def from_stat(cls, path: str, stat_result) -> "FileRecord":
        """Create a FileRecord from a path and its lstat() result."""
        return cls(
            path=path,
            name=Path(path).name,
            size=stat_result.st_size,
            mod_time=datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc),
        )

    def copy(self, **changes) -> "FileRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "size": self.size,
            "modTime": _format_time(self.mod_time),
            "contentHash": self.content_hash,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "FileRecord":
        if not isinstance(data, dict):
            raise ManifestCorruptionError(f"File entry must be an object, got {type(data).__name__}")
        try:
            size = data["size"]
            if not isinstance(size, int) or isinstance(size, bool):
                raise ManifestCorruptionError(f"Invalid size for {data.get('path')!r}: {size!r}")
            return cls(
                path=str(data["path"]),
                name=str(data["name"]),
                size=size,
                mod_time=_parse_time(data["modTime"]),
                content_hash=str(data.get("contentHash") or ""),
                status=FileStatus(data.get("status") or FileStatus.UNCHANGED.value),
            )
        except KeyError as e:
            raise ManifestCorruptionError(f"File entry missing field {e}") from e
        except ValueError as e:
            raise ManifestCorruptionError(f"Invalid file entry: {e}") from e


@dataclass
class DirInfo:
    """Recursive aggregate of the regular files below a directory."""
    path: str
    name: str
    mod_time: datetime
    file_count: int = 0
    total_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "modTime": _format_time(self.mod_time),
            "fileCount": self.file_count,
            "totalSize": self.total_size,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "DirInfo":
        if not isinstance(data, dict):
            raise ManifestCorruptionError(f"Directory entry must be an object, got {type(data).__name__}")
        try:
            return cls(
                path=str(data["path"]),
                name=str(data["name"]),
                mod_time=_parse_time(data["modTime"]),
                file_count=int(data.get("fileCount", 0)),
                total_size=int(data.get("totalSize", 0)),
            )
        except KeyError as e:
            raise ManifestCorruptionError(f"Directory entry missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise ManifestCorruptionError(f"Invalid directory entry: {e}") from e


def _as_mapping(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Fetch an object-valued manifest field; null or absent means empty."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestCorruptionError(f"Manifest field {key!r} must be an object")
    return value


@dataclass
class Manifest:
    """
    Persisted ground truth of all known files and content hashes.

    `hash_to_file` maps each content hash to one canonical path that holds
    it; duplicates share a single entry.
    """
    version: str = MANIFEST_VERSION
    created_at: datetime = field(default_factory=utcnow)
    series_id: str = ""
    episode_id: str = ""
    files: Dict[str, FileRecord] = field(default_factory=dict)
    directories: Dict[str, DirInfo] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    hash_to_file: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "Manifest":
        """A freshly initialized manifest for a first backup."""
        return cls()

    def is_empty(self) -> bool:
        return not self.files

    @property
    def episode_count(self) -> int:
        """Number of episodes written to this series so far."""
        try:
            return int(self.metadata.get("episodeCount", 0))
        except (TypeError, ValueError):
            return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "createdAt": _format_time(self.created_at),
            "seriesId": self.series_id,
            "episodeId": self.episode_id,
            "files": {path: record.to_dict() for path, record in self.files.items()},
            "directories": {path: info.to_dict() for path, info in self.directories.items()},
            "metadata": dict(self.metadata),
            "hashToFile": dict(self.hash_to_file),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        """
        Build a Manifest from its JSON form.

        Raises:
            ManifestCorruptionError: if the structure is not a manifest
        """
        if not isinstance(data, dict):
            raise ManifestCorruptionError("Manifest root must be an object")

        hash_to_file = _as_mapping(data, "hashToFile")
        if not all(isinstance(v, str) for v in hash_to_file.values()):
            raise ManifestCorruptionError("hashToFile values must be paths")

        return cls(
            version=str(data.get("version") or MANIFEST_VERSION),
            created_at=_parse_time(data["createdAt"]) if data.get("createdAt") else utcnow(),
            series_id=str(data.get("seriesId") or ""),
            episode_id=str(data.get("episodeId") or ""),
            files={
                path: FileRecord.from_dict(entry)
                for path, entry in _as_mapping(data, "files").items()
            },
            directories={
                path: DirInfo.from_dict(entry)
                for path, entry in _as_mapping(data, "directories").items()
            },
            metadata=dict(_as_mapping(data, "metadata")),
            hash_to_file=dict(hash_to_file),
        )


@dataclass
class Episode:
    """
    One bounded-size output archive covering a subset of changed files.

    Status moves planned -> packaging -> completed | failed. Failed is
    terminal; a completed episode only accepts the final size correction
    applied by complete().
    """
    index: int
    series_id: str = ""
    files: List[FileRecord] = field(default_factory=list)
    estimated_size: int = 0
    total_size: int = 0
    package_path: Optional[Path] = None
    status: EpisodeStatus = EpisodeStatus.PLANNED
    created_at: Optional[datetime] = None
    error: Optional[str] = None
    oversize: bool = False

    @property
    def id(self) -> str:
        return f"E{self.index:03d}"

    @property
    def name(self) -> str:
        return f"Episode-{self.index:03d}"

    @property
    def file_count(self) -> int:
        return len(self.files)

    def add(self, record: FileRecord) -> None:
        if self.status is not EpisodeStatus.PLANNED:
            raise EpisodeStateError(f"{self.id} is {self.status.value}; cannot add files")
        self.files.append(record)
        self.estimated_size += record.size

    def start_packaging(self, package_path: Path) -> None:
        if self.status is not EpisodeStatus.PLANNED:
            raise EpisodeStateError(f"{self.id} is {self.status.value}; cannot start packaging")
        self.package_path = package_path
        self.status = EpisodeStatus.PACKAGING

    def complete(self, actual_size: int) -> None:
        if self.status is not EpisodeStatus.PACKAGING:
            raise EpisodeStateError(f"{self.id} is {self.status.value}; cannot complete")
        self.total_size = actual_size
        self.created_at = utcnow()
        self.status = EpisodeStatus.COMPLETED

    def fail(self, error: str) -> None:
        if self.status in (EpisodeStatus.COMPLETED, EpisodeStatus.FAILED):
            raise EpisodeStateError(f"{self.id} is {self.status.value}; cannot fail")
        self.error = error
        self.status = EpisodeStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Summary used in manifest metadata and CLI output."""
        return {
            "id": self.id,
            "name": self.name,
            "seriesId": self.series_id,
            "status": self.status.value,
            "packagePath": str(self.package_path) if self.package_path else "",
            "fileCount": self.file_count,
            "estimatedSize": self.estimated_size,
            "totalSize": self.total_size,
            "createdAt": _format_time(self.created_at) if self.created_at else "",
        }


@dataclass
class WorkerResult:
    """Aggregate output of one hash worker pool run (not persisted)."""
    files_to_pack: List[FileRecord] = field(default_factory=list)
    metadata_update: List[FileRecord] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    total_processed: int = 0
    total_size: int = 0
    duration_seconds: float = 0.0

    @property
    def pack_size(self) -> int:
        return sum(record.size for record in self.files_to_pack)

    def __str__(self) -> str:
        return (
            f"Hashed {self.total_processed} files "
            f"({len(self.files_to_pack)} to package, "
            f"{len(self.metadata_update)} metadata-only, "
            f"{len(self.errors)} errors) "
            f"in {self.duration_seconds:.1f}s"
        )


@dataclass
class ScanResult:
    """Result of scanning a workspace."""
    files: Dict[str, FileRecord]
    directories: Dict[str, DirInfo] = field(default_factory=dict)
    skipped_count: int = 0
    error_count: int = 0
    duration_seconds: float = 0.0


@dataclass
class ChangeSummary:
    """Counts of suspects by status."""
    new_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    total_size: int = 0   # Bytes of non-deleted suspects

    @property
    def changed_count(self) -> int:
        return self.new_count + self.modified_count

    def __str__(self) -> str:
        return (
            f"{self.new_count} new, {self.modified_count} modified, "
            f"{self.deleted_count} deleted ({self.total_size} bytes)"
        )


@dataclass
class PreparationResult:
    """Cheap preview of a backup: no hashing, no packaging."""
    suspects: Dict[str, FileRecord]
    summary: ChangeSummary
    episodes: List[Episode]
    exceeds_limit: bool = False


@dataclass
class ExecutionResult:
    """Outcome of a successful execution."""
    episodes: List[Episode]
    manifest: Manifest
    worker_result: WorkerResult
    summary: ChangeSummary
    manifest_path: Optional[Path] = None
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        packed = sum(e.total_size for e in self.episodes)
        return (
            f"Wrote {len(self.episodes)} episodes ({packed} bytes) for "
            f"{self.summary}; {len(self.worker_result.metadata_update)} "
            f"metadata-only updates in {self.duration_seconds:.1f}s"
        )
