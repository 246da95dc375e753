"""
Download clients for server archives.

The artifact store treats downloading as an opaque, fallible call:
fetch(distribution) -> bytes, raising DownloadFailure. Two implementations
are provided, one over HTTP and one over a local mirror directory; tests
inject their own.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import urljoin

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .distribution import OS, Architecture, Distribution
from .errors import DownloadFailure
from .features import DEFAULT_MATRIX, Feature, FeatureMatrix
from .settings import StoreSettings

__all__ = ["DownloadClient", "HttpDownloadClient", "LocalMirrorDownloadClient", "archive_path_for"]

logger = logging.getLogger(__name__)

_ARCH_NAMES = {
    OS.LINUX: {Architecture.X86_32: "i686", Architecture.X86_64: "x86_64", Architecture.ARM_64: "aarch64"},
    OS.OS_X: {Architecture.X86_64: "x86_64"},
    OS.WINDOWS: {Architecture.X86_32: "i386", Architecture.X86_64: "x86_64"},
    OS.SOLARIS: {Architecture.X86_64: "x86_64"},
}


@runtime_checkable
class DownloadClient(Protocol):
    """Protocol for retrieving the raw archive of a distribution."""

    def fetch(self, distribution: Distribution) -> bytes:
        """
        Retrieve the archive bytes for a distribution.

        Args:
            distribution: Resolved distribution to download

        Returns:
            Raw archive content

        Raises:
            DownloadFailure: If the archive cannot be retrieved
        """
        ...


def archive_path_for(distribution: Distribution, matrix: FeatureMatrix = DEFAULT_MATRIX) -> str:
    """
    Relative archive path of a distribution on the download server.

    The OS X ssl flavour and the Windows 2008plus build are looked up in
    matrix.

    Examples:
        linux/mongodb-linux-x86_64-4.2.0.tgz
        osx/mongodb-osx-ssl-x86_64-3.6.5.tgz
        win32/mongodb-win32-x86_64-2008plus-3.6.5.zip
    """
    version = distribution.version
    operating_system = distribution.platform.operating_system
    try:
        arch = _ARCH_NAMES[operating_system][distribution.platform.architecture]
    except KeyError:
        raise DownloadFailure(f"No download location known for {distribution}") from None

    if operating_system is OS.LINUX:
        return f"linux/mongodb-linux-{arch}-{version}.tgz"
    if operating_system is OS.OS_X:
        flavour = "osx-ssl" if matrix.enabled(version, Feature.ONLY_WITH_SSL) else "osx"
        return f"osx/mongodb-{flavour}-{arch}-{version}.tgz"
    if operating_system is OS.WINDOWS:
        if arch == "x86_64" and matrix.enabled(version, Feature.ONLY_WINDOWS_2008_SERVER):
            arch = "x86_64-2008plus"
        return f"win32/mongodb-win32-{arch}-{version}.zip"
    return f"sunos5/mongodb-sunos5-{arch}-{version}.tgz"


class HttpDownloadClient:
    """
    HTTP download client for the public archive server (or any mirror of it).

    Retries timeouts and connection errors with exponential backoff; maps
    every other failure onto DownloadFailure.
    """

    def __init__(
        self,
        settings: StoreSettings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        matrix: FeatureMatrix = DEFAULT_MATRIX,
    ):
        """
        Initialize the download client.

        Args:
            settings: Store settings (base URL, timeout, retry count)
            transport: Optional httpx transport (used by tests)
            matrix: Feature rules deciding archive names
        """
        self.settings = settings
        self.matrix = matrix
        self.base_url = settings.download_url if settings.download_url.endswith("/") else settings.download_url + "/"
        self.client = httpx.Client(
            timeout=httpx.Timeout(settings.http_timeout_s, connect=min(10.0, settings.http_timeout_s)),
            follow_redirects=True,
            headers={"User-Agent": "embedded-mongo/0.1.0"},
            transport=transport,
        )
        self._get = retry(
            stop=stop_after_attempt(settings.http_retry + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        )(self._get_once)

    def fetch(self, distribution: Distribution) -> bytes:
        url = urljoin(self.base_url, archive_path_for(distribution, self.matrix))
        logger.info(f"Downloading {distribution} from {url}")
        try:
            response = self._get(url)
        except httpx.HTTPStatusError as e:
            logger.error(f"Download of {url} failed with status {e.response.status_code}")
            if e.response.status_code == 404:
                raise DownloadFailure(f"Archive not found: {url}") from e
            raise DownloadFailure(f"Server error {e.response.status_code} downloading {url}") from e
        except httpx.RequestError as e:
            logger.error(f"Download of {url} failed after {self.settings.http_retry + 1} attempts: {e}")
            raise DownloadFailure(f"Network error downloading {url}: {e}") from e

        content = response.content
        if not content:
            raise DownloadFailure(f"Empty archive downloaded from {url}")
        logger.info(f"Downloaded {len(content)} bytes for {distribution}")
        return content

    def _get_once(self, url: str) -> httpx.Response:
        response = self.client.get(url)
        response.raise_for_status()
        return response

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class LocalMirrorDownloadClient:
    """Reads archives from a local directory laid out like the download server."""

    def __init__(self, root: Path | str, *, matrix: FeatureMatrix = DEFAULT_MATRIX):
        self.root = Path(root)
        self.matrix = matrix

    def fetch(self, distribution: Distribution) -> bytes:
        path = self.root / archive_path_for(distribution, self.matrix)
        logger.info(f"Reading {distribution} from local mirror {path}")
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise DownloadFailure(f"Archive not found in mirror: {path}") from e
        except OSError as e:
            raise DownloadFailure(f"Cannot read {path}: {e}") from e
