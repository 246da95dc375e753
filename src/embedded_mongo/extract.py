"""
Archive extraction.

Unpacks a server archive into a destination directory, locates the mongod
entry point, marks it executable and records the result in a completion
marker. The marker is written last: a directory holding it is complete, and
extracting into it again returns the recorded file set without reading the
archive.
"""
from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import IO, Iterator, List, Optional, Tuple

import zstandard as zstd
from pydantic import BaseModel, ValidationError

from .distribution import OS
from .errors import ExtractionFailure
from .path_safety import MARKER_NAME, safe_member_path

__all__ = ["ExtractedFileSet", "ExtractionMarker", "Extractor", "executable_name_for", "archive_type_of"]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MiB

_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


@dataclass(frozen=True)
class ExtractedFileSet:
    """
    Unpacked archive contents plus the located entry point.

    Invariant: executable, when set, is an existing execute-permitted file
    at the time the set is handed out. The artifact store owns the files
    until the caller releases them.
    """
    root: Path
    executable: Optional[Path]
    auxiliary: Tuple[Path, ...] = ()


class ExtractionMarker(BaseModel):
    """Contents of the completion marker file."""
    executable: str
    auxiliary: List[str] = []
    archive_name: str
    archive_sha256: Optional[str] = None
    extracted_at: datetime

    def to_file_set(self, root: Path) -> ExtractedFileSet:
        return ExtractedFileSet(
            root=root,
            executable=root / self.executable,
            auxiliary=tuple(root / p for p in self.auxiliary),
        )


def executable_name_for(operating_system: OS) -> str:
    return "mongod.exe" if operating_system is OS.WINDOWS else "mongod"


def archive_type_of(archive_path: Path) -> str:
    """Archive type from the file name: "tgz", "tar", "zip" or "tar.zst"."""
    name = archive_path.name.lower()
    if name.endswith((".tgz", ".tar.gz")):
        return "tgz"
    if name.endswith(".tar.zst"):
        return "tar.zst"
    if name.endswith(".tar"):
        return "tar"
    if name.endswith(".zip"):
        return "zip"
    raise ExtractionFailure(f"Unknown archive type: {archive_path.name}")


def read_marker(destination_root: Path) -> Optional[ExtractionMarker]:
    """Load the completion marker, or None if the directory is not a complete extraction."""
    marker_path = destination_root / MARKER_NAME
    try:
        return ExtractionMarker.model_validate_json(marker_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable extraction marker {marker_path}: {e}")
        return None


class Extractor:
    """Unpacks tgz, tar, zip and tar.zst archives."""

    def extract(
        self,
        archive_path: Path,
        destination_root: Path,
        *,
        operating_system: OS,
        archive_sha256: Optional[str] = None,
    ) -> ExtractedFileSet:
        """
        Unpack an archive and locate its entry point.

        Args:
            archive_path: Archive to unpack
            destination_root: Directory to unpack into (created if missing)
            operating_system: Selects the entry point naming convention
            archive_sha256: Digest recorded in the completion marker

        Returns:
            ExtractedFileSet rooted at destination_root

        Raises:
            ExtractionFailure: If the archive is corrupt, unsafe, cannot be
                written, or holds no entry point
        """
        archive_path = Path(archive_path)
        destination_root = Path(destination_root)

        existing = read_marker(destination_root)
        if existing is not None:
            logger.debug(f"{destination_root} already extracted, reusing")
            return existing.to_file_set(destination_root)

        kind = archive_type_of(archive_path)
        logger.info(f"Extracting {archive_path.name} into {destination_root}")
        try:
            destination_root.mkdir(parents=True, exist_ok=True)
            if kind == "zip":
                written = self._extract_zip(archive_path, destination_root)
            else:
                written = self._extract_tar(archive_path, destination_root, kind)
        except ExtractionFailure:
            raise
        except (tarfile.TarError, zipfile.BadZipFile, zstd.ZstdError, EOFError) as e:
            raise ExtractionFailure(f"Corrupt archive {archive_path.name}: {e}") from e
        except ValueError as e:
            raise ExtractionFailure(f"Refusing to extract {archive_path.name}: {e}") from e
        except OSError as e:
            raise ExtractionFailure(f"Cannot extract {archive_path.name} into {destination_root}: {e}") from e

        executable = self._find_executable(written, executable_name_for(operating_system))
        if executable is None:
            raise ExtractionFailure(
                f"No {executable_name_for(operating_system)} found under a bin/ directory in {archive_path.name}"
            )

        try:
            exe_path = destination_root / executable
            exe_path.chmod(exe_path.stat().st_mode | _EXEC_BITS)
            marker = ExtractionMarker(
                executable=executable,
                auxiliary=sorted(p for p in written if p != executable),
                archive_name=archive_path.name,
                archive_sha256=archive_sha256,
                extracted_at=datetime.now(timezone.utc),
            )
            _write_text_atomically(destination_root / MARKER_NAME, marker.model_dump_json(indent=2))
        except OSError as e:
            raise ExtractionFailure(f"Cannot finalize extraction in {destination_root}: {e}") from e

        logger.info(f"Extracted {len(written)} files, entry point {executable}")
        return marker.to_file_set(destination_root)

    @staticmethod
    def _find_executable(written: List[str], name: str) -> Optional[str]:
        for rel in sorted(written, key=lambda p: (len(PurePosixPath(p).parts), p)):
            parts = PurePosixPath(rel).parts
            if len(parts) >= 2 and parts[-1] == name and parts[-2] == "bin":
                return rel
        return None

    def _extract_tar(self, archive_path: Path, dest: Path, kind: str) -> List[str]:
        with open(archive_path, "rb") as raw:
            if kind == "tar.zst":
                reader = zstd.ZstdDecompressor().stream_reader(raw)
                with reader, tarfile.open(fileobj=reader, mode="r|") as tar:
                    return list(self._write_tar_members(tar, dest))
            mode = "r|gz" if kind == "tgz" else "r|"
            with tarfile.open(fileobj=raw, mode=mode) as tar:
                return list(self._write_tar_members(tar, dest))

    def _write_tar_members(self, tar: tarfile.TarFile, dest: Path) -> Iterator[str]:
        for member in tar:
            rel = safe_member_path(member.name)
            target = dest / rel
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                source = tar.extractfile(member)
                _write_member(target, source, member.mode)
                yield rel
            else:
                logger.debug(f"Skipping non-regular archive member {member.name}")

    def _extract_zip(self, archive_path: Path, dest: Path) -> List[str]:
        written = []
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                rel = safe_member_path(info.filename)
                target = dest / rel
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                mode = (info.external_attr >> 16) & 0o7777 or 0o644
                if stat.S_ISLNK(info.external_attr >> 16):
                    logger.debug(f"Skipping symlink archive member {info.filename}")
                    continue
                with archive.open(info) as source:
                    _write_member(target, source, mode)
                written.append(rel)
        return written


def _write_member(target: Path, source: IO[bytes], mode: int) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "wb") as out:
        shutil.copyfileobj(source, out, CHUNK_SIZE)
    # keep execute bits from the archive, never setuid/setgid/sticky
    target.chmod((mode & 0o777) | stat.S_IRUSR | stat.S_IWUSR)


def _write_text_atomically(target: Path, content: str) -> None:
    tmp = target.with_name(target.name + f".tmp.{os.getpid()}")
    try:
        with open(tmp, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except Exception:
        if tmp.exists():
            tmp.unlink()
        raise
