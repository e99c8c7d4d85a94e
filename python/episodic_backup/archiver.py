"""
Archiver - Contract for the external compression tool.

The packager only needs one capability: given files, a target path, the
workspace root and an optional password, produce one self-contained
encrypted archive or report failure with the tool's output. The real
implementation drives the 7-Zip command line; tests use a fake.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence


logger = logging.getLogger(__name__)


# Tried in order when no explicit binary is configured
SEVEN_ZIP_CANDIDATES = ("7z", "7zz", "7za", "7zr")

_PERCENT_RE = re.compile(r"(\d{1,3})%")


@dataclass
class ArchiveResult:
    """Outcome of one archive invocation."""
    ok: bool
    output: str = ""


class Archiver(Protocol):
    """Capability interface used by the episode packager."""

    def pack(
        self,
        files: Sequence[Path],
        target: Path,
        root: Path,
        password: Optional[str] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> ArchiveResult:
        ...


def find_seven_zip(binary: Optional[str] = None) -> Optional[str]:
    """Resolve the 7-Zip executable from an explicit path or PATH."""
    if binary:
        return shutil.which(binary) or (binary if os.path.isfile(binary) else None)
    for candidate in SEVEN_ZIP_CANDIDATES:
        found = shutil.which(candidate)
        if found:
            return found
    return None


def parse_progress(line: str) -> Optional[float]:
    """Extract a completion fraction from a 7-Zip progress line ("45% 3 + file")."""
    match = _PERCENT_RE.search(line)
    if not match:
        return None
    percent = int(match.group(1))
    if percent > 100:
        return None
    return percent / 100.0


class SevenZipArchiver:
    """
    Creates .7z archives with the 7-Zip command line tool.

    Paths are stored relative to the workspace root. Supplying a password
    enables AES encryption of both contents and headers (-mhe=on).
    """

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary

    def pack(
        self,
        files: Sequence[Path],
        target: Path,
        root: Path,
        password: Optional[str] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> ArchiveResult:
        if not files:
            return ArchiveResult(ok=False, output=f"No files to pack into {Path(target).name}")

        executable = find_seven_zip(self.binary)
        if executable is None:
            return ArchiveResult(
                ok=False,
                output="7-Zip executable not found (tried: " + ", ".join(SEVEN_ZIP_CANDIDATES) + ")",
            )

        root = Path(root)
        list_fd, list_path = tempfile.mkstemp(prefix="episode_filelist_", suffix=".txt")
        try:
            with os.fdopen(list_fd, "w", encoding="utf-8") as handle:
                for path in files:
                    handle.write(os.path.relpath(path, root) + "\n")

            args = [
                executable,
                "a",            # Add to archive
                "-t7z",
                "-y",
                "-bsp1",        # Progress to stdout
                "-scsUTF-8",    # List file charset
                str(target),
                f"@{list_path}",
            ]
            if password:
                args.extend([f"-p{password}", "-mhe=on"])

            return self._run(args, root, Path(target), on_progress)
        finally:
            try:
                os.unlink(list_path)
            except OSError as e:
                logger.debug(f"Could not remove file list {list_path}: {e}")

    def _run(
        self,
        args: list[str],
        cwd: Path,
        target: Path,
        on_progress: Optional[Callable[[float], None]],
    ) -> ArchiveResult:
        output_lines = []
        try:
            process = subprocess.Popen(
                args,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except OSError as e:
            return ArchiveResult(ok=False, output=f"Failed to start 7-Zip: {e}")

        # 7-Zip redraws progress with backspaces; split on those too
        for raw in process.stdout:
            for line in raw.replace("\b", "\n").splitlines():
                line = line.strip()
                if not line:
                    continue
                fraction = parse_progress(line)
                if fraction is not None:
                    if on_progress:
                        on_progress(fraction)
                else:
                    output_lines.append(line)

        returncode = process.wait()
        output = "\n".join(output_lines)

        if returncode != 0:
            logger.error(f"7-Zip exited with {returncode} for {target.name}")
            if target.exists():
                try:
                    target.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove partial archive {target}: {e}")
            return ArchiveResult(ok=False, output=f"exit code {returncode}\n{output}")

        return ArchiveResult(ok=True, output=output)
