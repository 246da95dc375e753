"""
Artifact store: cached download and extraction of server archives.

Cache layout under settings.cache_dir:

    archives/<key>/<archive name>   downloaded archives
    extracted/<key>/                published file sets (with completion marker)
    tmp/                            staging for downloads and extractions

Everything visible under archives/ and extracted/ got there by a single
rename, so readers (other threads, other runtimes, other processes) never
observe a partial archive or a half-extracted directory.
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Optional

from .distribution import Distribution
from .download import DownloadClient, archive_path_for
from .errors import DownloadFailure, ExtractionFailure
from .extract import ExtractedFileSet, Extractor, read_marker
from .features import DEFAULT_MATRIX, FeatureMatrix
from .resolver import check_supported
from .settings import StoreSettings

__all__ = ["Artifact", "ArtifactStore"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """Where the archive of a distribution lives in the cache."""
    distribution: Distribution
    archive_path: Path
    cache_key: str


class ArtifactStore:
    """
    Materializes extracted file sets for distributions, once per cache key.

    Same-key requests are serialized on a per-key lock: one caller downloads
    and extracts, the others wait and then pick up the published entry.
    Requests for different keys never wait on each other.
    """

    def __init__(
        self,
        settings: StoreSettings,
        download_client: DownloadClient,
        *,
        extractor: Optional[Extractor] = None,
        matrix: FeatureMatrix = DEFAULT_MATRIX,
    ):
        self.settings = settings
        self.download_client = download_client
        self.extractor = extractor or Extractor()
        self.matrix = matrix
        self.root = Path(settings.cache_dir)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def cache_key(distribution: Distribution) -> str:
        """Deterministic, filesystem-safe key for a distribution."""
        platform = distribution.platform
        return f"{platform.operating_system.value.lower()}-{platform.architecture.value}-{distribution.version}"

    def artifact_for(self, distribution: Distribution) -> Artifact:
        key = self.cache_key(distribution)
        archive_name = PurePosixPath(archive_path_for(distribution, self.matrix)).name
        return Artifact(
            distribution=distribution,
            archive_path=self.root / "archives" / key / archive_name,
            cache_key=key,
        )

    def extract_file_set(self, distribution: Distribution, *, timeout: Optional[float] = None) -> ExtractedFileSet:
        """
        Return the extracted file set of a distribution, materializing it if needed.

        Args:
            distribution: The distribution to materialize
            timeout: Longest wait for another caller's download of the same
                key; lock_timeout_s applies when it is larger or None

        Raises:
            UnsupportedDistribution: If the rule table rejects the distribution
            DownloadFailure: If the archive cannot be retrieved, or the wait
                for another download timed out
            ExtractionFailure: If the archive cannot be unpacked
        """
        check_supported(distribution, matrix=self.matrix)
        artifact = self.artifact_for(distribution)
        entry_dir = self._entry_dir(artifact.cache_key)

        file_set = self._published(entry_dir)
        if file_set is not None:
            logger.debug(f"Cache hit for {distribution} at {entry_dir}")
            return file_set

        wait = self.settings.lock_timeout_s
        if timeout is not None:
            wait = max(0.0, min(timeout, wait))
        lock = self._lock_for(artifact.cache_key)
        if not lock.acquire(timeout=wait):
            raise DownloadFailure(f"Timed out after {wait}s waiting for another download of {distribution}")
        try:
            # the lock holder before us may have published it
            file_set = self._published(entry_dir)
            if file_set is not None:
                logger.debug(f"Cache hit for {distribution} after waiting")
                return file_set
            file_set = self._set_aside_stale(entry_dir)
            if file_set is not None:
                return file_set
            return self._materialize(artifact, entry_dir)
        finally:
            lock.release()

    def release(self, file_set: ExtractedFileSet) -> None:
        """Delete an extracted file set; the archive stays cached."""
        root = Path(file_set.root)
        if root.parent != self.root / "extracted":
            raise ValueError(f"{root} is not an entry of this store")
        self._discard(root)

    def purge(self, distribution: Distribution) -> None:
        """Delete both the extracted entry and the cached archive of a distribution."""
        artifact = self.artifact_for(distribution)
        with self._lock_for(artifact.cache_key):
            self._discard(self._entry_dir(artifact.cache_key))
            self._discard(artifact.archive_path.parent)

    def _entry_dir(self, key: str) -> Path:
        return self.root / "extracted" / key

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _published(self, entry_dir: Path) -> Optional[ExtractedFileSet]:
        marker = read_marker(entry_dir)
        if marker is None:
            return None
        file_set = marker.to_file_set(entry_dir)
        if file_set.executable is None or not file_set.executable.is_file():
            logger.info(f"Executable missing from {entry_dir}, entry will be rebuilt")
            return None
        if not os.access(file_set.executable, os.X_OK):
            logger.info(f"Executable in {entry_dir} lost its execute permission, entry will be rebuilt")
            return None
        return file_set

    def _materialize(self, artifact: Artifact, entry_dir: Path) -> ExtractedFileSet:
        distribution = artifact.distribution
        tmp_root = self.root / "tmp"
        tmp_root.mkdir(parents=True, exist_ok=True)

        staging = Path(tempfile.mkdtemp(prefix=f"{artifact.cache_key}.", dir=tmp_root))
        downloaded: Optional[Path] = None
        try:
            if artifact.archive_path.is_file():
                logger.debug(f"Using cached archive {artifact.archive_path}")
                source = artifact.archive_path
                sha = _sha256_file(source)
            else:
                data = self.download_client.fetch(distribution)
                downloaded, sha = _write_temp_archive(tmp_root, artifact.archive_path.name, data)
                source = downloaded

            try:
                self.extractor.extract(
                    source,
                    staging,
                    operating_system=distribution.platform.operating_system,
                    archive_sha256=sha,
                )
            except ExtractionFailure:
                if downloaded is None:
                    logger.warning(f"Cached archive {source} is unusable, removing it")
                    source.unlink(missing_ok=True)
                raise

            if downloaded is not None:
                artifact.archive_path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(downloaded, artifact.archive_path)
                downloaded = None

            return self._publish(staging, entry_dir)
        except Exception:
            if downloaded is not None:
                downloaded.unlink(missing_ok=True)
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise

    def _publish(self, staging: Path, entry_dir: Path) -> ExtractedFileSet:
        entry_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(staging, entry_dir)
        except OSError as e:
            # another process won the race for this key
            existing = self._published(entry_dir)
            if existing is None:
                raise ExtractionFailure(f"Cannot publish extraction to {entry_dir}: {e}") from e
            logger.info(f"{entry_dir} was published concurrently, discarding our copy")
            shutil.rmtree(staging, ignore_errors=True)
            return existing

        logger.info(f"Published {entry_dir}")
        return read_marker(entry_dir).to_file_set(entry_dir)

    def _set_aside_stale(self, entry_dir: Path) -> Optional[ExtractedFileSet]:
        """
        Move a stale entry out of the published namespace before a rebuild.

        Another process may republish entry_dir between the staleness check
        and the rename, so the moved copy is checked again. A valid copy is
        put back, or dropped in favour of an entry published meanwhile, and
        its file set returned. Returns None once the stale copy is deleted.
        """
        if not entry_dir.exists():
            return None
        trash = self.root / "tmp" / f"discard-{uuid.uuid4().hex}"
        trash.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(entry_dir, trash)
        except FileNotFoundError:
            return None

        if self._published(trash) is not None:
            try:
                os.rename(trash, entry_dir)
            except OSError:
                current = self._published(entry_dir)
                if current is not None:
                    logger.info(f"{entry_dir} was republished concurrently, keeping it")
                    shutil.rmtree(trash, ignore_errors=True)
                    return current
            else:
                logger.info(f"{entry_dir} was republished concurrently, restored it")
                return read_marker(entry_dir).to_file_set(entry_dir)

        try:
            shutil.rmtree(trash)
        except OSError as e:
            logger.warning(f"Could not delete {trash}: {e}")
        return None

    def _discard(self, path: Path) -> None:
        """Move a directory out of the published namespace, then delete it."""
        if not path.exists():
            return
        trash = self.root / "tmp" / f"discard-{uuid.uuid4().hex}"
        trash.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(path, trash)
        except FileNotFoundError:
            return
        try:
            shutil.rmtree(trash)
        except OSError as e:
            logger.warning(f"Could not delete {trash}: {e}")


def _write_temp_archive(tmp_root: Path, archive_name: str, data: bytes):
    """Write downloaded bytes to a temp file named like the archive; returns (path, sha256)."""
    fd, temp_path = tempfile.mkstemp(prefix=".dl.", suffix=f"-{archive_name}", dir=tmp_root)
    temp_path = Path(temp_path)
    try:
        with os.fdopen(fd, "wb") as out:
            out.write(data)
            out.flush()
            os.fsync(out.fileno())
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    return temp_path, hashlib.sha256(data).hexdigest()


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()
