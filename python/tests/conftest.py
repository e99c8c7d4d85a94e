"""
Test Configuration - Shared fixtures for backup engine tests.

Uses pytest fixtures to create isolated workspaces and a fake archiver,
so no test needs a 7-Zip installation.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator, List, Optional

import pytest

from episodic_backup.archiver import ArchiveResult
from episodic_backup.config import BackupConfig, set_config
from episodic_backup.models import FileRecord, FileStatus


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="backup_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config() -> Generator[BackupConfig, None, None]:
    """Create an isolated test configuration."""
    config = BackupConfig(
        concurrency=3,
        small_file_threshold_bytes=1024,
        max_episode_bytes=1024 * 1024,
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def workspace(temp_dir: Path) -> Path:
    root = temp_dir / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def delivery(temp_dir: Path) -> Path:
    out = temp_dir / "delivery"
    out.mkdir()
    return out


@pytest.fixture
def sample_files(workspace: Path) -> dict[str, Path]:
    """Create sample files for testing."""
    files = {}

    txt = workspace / "notes.txt"
    txt.write_text("Meeting notes.\nShip the thing on Friday.\n")
    files["txt"] = txt

    csv = workspace / "data.csv"
    csv.write_text("id,value\n1,10\n2,20\n3,30\n")
    files["csv"] = csv

    nested_dir = workspace / "chapters" / "draft"
    nested_dir.mkdir(parents=True)
    nested = nested_dir / "intro.md"
    nested.write_text("# Introduction\n\nA deeply nested file.\n")
    files["nested"] = nested

    empty = workspace / "empty.log"
    empty.write_bytes(b"")
    files["empty"] = empty

    return files


@pytest.fixture
def duplicate_files(workspace: Path) -> tuple[Path, Path]:
    """Create two files with identical content."""
    content = "This content is duplicated in two files.\n"

    file1 = workspace / "original.txt"
    file1.write_text(content)

    file2 = workspace / "copy.txt"
    file2.write_text(content)

    return file1, file2


def make_record(path: Path, status: FileStatus = FileStatus.NEW) -> FileRecord:
    """FileRecord for an existing file, as the scanner would build it."""
    record = FileRecord.from_stat(str(path), path.stat())
    record.status = status
    return record


class FakeArchiver:
    """
    Archiver double that concatenates file contents into the target.

    Fails the `fail_at`-th call (1-based) when set, and records every call.
    """

    def __init__(self, fail_at: Optional[int] = None):
        self.fail_at = fail_at
        self.calls: List[dict] = []

    def pack(self, files, target, root, password=None, on_progress=None) -> ArchiveResult:
        self.calls.append({
            "files": [os.path.relpath(f, root) for f in files],
            "target": Path(target),
            "password": password,
        })
        if self.fail_at is not None and len(self.calls) == self.fail_at:
            return ArchiveResult(ok=False, output="simulated archiver failure")

        Path(target).write_bytes(b"7z" + b"".join(Path(f).read_bytes() for f in files))
        if on_progress:
            on_progress(1.0)
        return ArchiveResult(ok=True, output="Everything is Ok")


@pytest.fixture
def fake_archiver() -> FakeArchiver:
    return FakeArchiver()
