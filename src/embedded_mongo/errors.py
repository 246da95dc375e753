"""
Error classes for embedded-mongo.

Provides one taxonomy for everything that can go wrong between asking for a
server version and stopping the process. Errors raised by httpx, tarfile,
zipfile, zstandard and the OS are translated into these classes at the
component boundary so callers only ever handle this hierarchy.
"""
from __future__ import annotations

from typing import Optional


class EmbeddedMongoError(Exception):
    """Base class for all embedded-mongo errors."""
    pass


class UnsupportedDistribution(EmbeddedMongoError):
    """
    The requested version/platform combination has no distribution.

    Raised when:
    - a feature rule rejects the platform (e.g. ONLY_64BIT with a 32-bit arch)
    - the version identifier cannot be parsed
    """

    def __init__(self, message: str, *, rule: Optional[str] = None):
        super().__init__(message)
        self.rule = rule


class DownloadFailure(EmbeddedMongoError):
    """
    The archive for a distribution could not be retrieved.

    Raised when:
    - the server answers with an HTTP error status
    - the network fails after all retries
    - the local mirror does not hold the archive
    - waiting for another caller's download exceeded the lock timeout
    """
    pass


class ExtractionFailure(EmbeddedMongoError):
    """
    The archive could not be turned into a usable file set.

    Raised when:
    - the archive is corrupt or of an unknown type
    - a member has an unsafe path
    - writing the files fails (permissions, disk full)
    - no entry point is found after a full unpack
    """
    pass


class StartupFailure(EmbeddedMongoError):
    """Base class for errors raised while starting a process."""
    pass


class StartupTimeout(StartupFailure):
    """The process did not accept connections before the timeout."""

    def __init__(self, message: str, *, timeout: float, output: str = ""):
        super().__init__(message)
        self.timeout = timeout
        self.output = output


class ProcessCrashed(StartupFailure):
    """The process exited before it became ready."""

    def __init__(self, message: str, *, returncode: Optional[int], output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class PortUnavailable(EmbeddedMongoError):
    """The requested (or an ephemeral) port could not be reserved."""

    def __init__(self, message: str, *, port: Optional[int] = None):
        super().__init__(message)
        self.port = port


__all__ = [
    "EmbeddedMongoError",
    "UnsupportedDistribution",
    "DownloadFailure",
    "ExtractionFailure",
    "StartupFailure",
    "StartupTimeout",
    "ProcessCrashed",
    "PortUnavailable",
]
