"""
Runtime orchestrator - the prepare / start / stop facade.

Composes resolver, artifact store and process supervisor behind one object
per configuration. There is no process-wide singleton: callers own their
EmbeddedRuntime, and callers that need to share one across call sites use an
explicit RuntimeCache.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .distribution import OS, Architecture, Distribution, Version
from .download import DownloadClient, HttpDownloadClient
from .extract import ExtractedFileSet
from .network import DEFAULT_PORT_REGISTRY, PortRegistry
from .resolver import resolve
from .settings import RuntimeConfig
from .store import ArtifactStore
from .supervisor import Executable, ProcessHandle, ProcessState, ProcessSupervisor

__all__ = ["EmbeddedRuntime", "RuntimeCache"]

logger = logging.getLogger(__name__)


class EmbeddedRuntime:
    """
    Application facade for obtaining and running mongod.

    Usage:
    ```
    runtime = EmbeddedRuntime(create_config_from_env())
    executable = runtime.prepare("4.2.0")
    handle = runtime.start(executable)
    try:
        client = MongoClient("localhost", handle.port)
        ...
    finally:
        runtime.stop(handle)
    ```

    A failed prepare() or start() leaves the runtime usable; the next
    attempt starts from scratch and reuses whatever the cache already holds.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        download_client: Optional[DownloadClient] = None,
        store: Optional[ArtifactStore] = None,
        ports: PortRegistry = DEFAULT_PORT_REGISTRY,
    ):
        """
        Initialize the runtime.

        Args:
            config: Configuration shared by every prepare() call
            download_client: Archive source (defaults to HTTP with config.store settings)
            store: Artifact store (defaults to one over config.store.cache_dir)
            ports: Port registry (defaults to the one shared in this process)
        """
        self.config = config
        self._owned_client: Optional[HttpDownloadClient] = None
        if store is None:
            if download_client is None:
                download_client = self._owned_client = HttpDownloadClient(config.store)
            store = ArtifactStore(config.store, download_client)
        self.store = store
        self.supervisor = ProcessSupervisor(store, ports=ports)

    def prepare(
        self,
        version: Version | str,
        *,
        operating_system: Optional[OS] = None,
        architecture: Optional[Architecture] = None,
    ) -> Executable:
        """
        Resolve a version for a platform (default: this host) into a startable executable.

        Nothing is downloaded or started here.

        Raises:
            UnsupportedDistribution: If the combination is rejected
        """
        distribution = resolve(version, operating_system, architecture)
        logger.debug(f"Resolved {version} to {distribution}")
        return self.supervisor.prepare(distribution, self.config)

    def start(self, executable: Executable, *, timeout: Optional[float] = None) -> ProcessHandle:
        """Start a prepared executable; see ProcessSupervisor.start for errors."""
        return self.supervisor.start(executable, timeout=timeout)

    def stop(self, handle: ProcessHandle) -> None:
        """Stop a running process. Safe to call any number of times."""
        self.supervisor.stop(handle)

    def refresh(self, handle: ProcessHandle) -> ProcessState:
        """Current state of a handle; FAILED once its process has exited on its own."""
        return self.supervisor.refresh(handle)

    def extract_file_set(self, distribution: Distribution, *, timeout: Optional[float] = None) -> ExtractedFileSet:
        return self.store.extract_file_set(distribution, timeout=timeout)

    @contextmanager
    def running(
        self,
        version: Version | str,
        *,
        operating_system: Optional[OS] = None,
        architecture: Optional[Architecture] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[ProcessHandle]:
        """
        Prepare and start a server for the duration of a with-block.

        Usage:
        ```
        with runtime.running("4.2.0") as handle:
            ...  # server listens on handle.port
        # server stopped, port released
        ```
        """
        executable = self.prepare(version, operating_system=operating_system, architecture=architecture)
        handle = self.start(executable, timeout=timeout)
        try:
            yield handle
        finally:
            self.stop(handle)

    def close(self) -> None:
        """Stop every process this runtime still runs and close the download client it created."""
        self.supervisor.stop_all()
        if self._owned_client is not None:
            self._owned_client.close()
            self._owned_client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class RuntimeCache:
    """
    Explicit cache of runtimes keyed by configuration.

    RuntimeConfig is frozen and hashable, so equal configurations share one
    runtime. Owned by whoever creates it; nothing here is global.
    """

    def __init__(self, **runtime_kwargs):
        self._runtime_kwargs = runtime_kwargs
        self._runtimes: Dict[RuntimeConfig, EmbeddedRuntime] = {}
        self._lock = threading.Lock()

    def get(self, config: RuntimeConfig) -> EmbeddedRuntime:
        with self._lock:
            runtime = self._runtimes.get(config)
            if runtime is None:
                runtime = self._runtimes[config] = EmbeddedRuntime(config, **self._runtime_kwargs)
            return runtime

    def close(self) -> None:
        with self._lock:
            runtimes = list(self._runtimes.values())
            self._runtimes.clear()
        for runtime in runtimes:
            runtime.close()

    def __len__(self) -> int:
        return len(self._runtimes)
