"""
embedded-mongo - disposable mongod instances for tests and local development.

This package resolves a version for a platform, downloads and caches the
matching archive once, and supervises mongod as a child process through the
EmbeddedRuntime facade.
"""
from .distribution import OS, Architecture, Distribution, Platform, Version
from .errors import (
    DownloadFailure,
    EmbeddedMongoError,
    ExtractionFailure,
    PortUnavailable,
    ProcessCrashed,
    StartupFailure,
    StartupTimeout,
    UnsupportedDistribution,
)
from .features import Feature, enabled
from .resolver import resolve
from .runtime import EmbeddedRuntime, RuntimeCache
from .settings import RuntimeConfig, create_config_from_env, create_runtime_config
from .supervisor import Executable, ProcessHandle, ProcessState

__all__ = [
    "OS",
    "Architecture",
    "Distribution",
    "Platform",
    "Version",
    "Feature",
    "enabled",
    "resolve",
    "EmbeddedRuntime",
    "RuntimeCache",
    "RuntimeConfig",
    "create_config_from_env",
    "create_runtime_config",
    "Executable",
    "ProcessHandle",
    "ProcessState",
    "EmbeddedMongoError",
    "UnsupportedDistribution",
    "DownloadFailure",
    "ExtractionFailure",
    "StartupFailure",
    "StartupTimeout",
    "ProcessCrashed",
    "PortUnavailable",
]
