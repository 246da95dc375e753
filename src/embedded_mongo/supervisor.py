"""
Process supervision for mongod.

Lifecycle of one supervised process:

    PREPARED -> STARTING -> READY -> STOPPING -> STOPPED
                   |          |
                   +-> FAILED <+

prepare() only validates; start() materializes the file set, reserves a
port, spawns the process and blocks until it accepts TCP connections;
stop() is idempotent. Every exit path out of start() that does not return a
READY handle kills the process, releases the port and removes the working
directory before the error propagates.
"""
from __future__ import annotations

import logging
import shutil
import socket
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, List, Optional, Set

from .distribution import Distribution
from .errors import DownloadFailure, ProcessCrashed, StartupTimeout, UnsupportedDistribution
from .extract import ExtractedFileSet
from .features import DEFAULT_MATRIX, Feature, FeatureMatrix
from .network import DEFAULT_PORT_REGISTRY, PortRegistry
from .resolver import check_supported
from .settings import RuntimeConfig
from .store import ArtifactStore

__all__ = ["ProcessState", "Executable", "ProcessHandle", "ProcessSupervisor"]

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.1
CONNECT_TIMEOUT_S = 0.5
KILL_WAIT_S = 10.0


class ProcessState(str, Enum):
    PREPARED = "prepared"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class Executable:
    """A validated, not yet started server for one distribution and configuration."""
    distribution: Distribution
    config: RuntimeConfig

    @property
    def state(self) -> ProcessState:
        return ProcessState.PREPARED


class ProcessHandle:
    """
    A started (or failed) server process.

    Mutated only by the ProcessSupervisor that created it.
    """

    def __init__(self, executable: Executable, port: int, host: str):
        self.executable = executable
        self.port = port
        self.host = host
        self.state = ProcessState.STARTING
        self.process: Optional[subprocess.Popen] = None
        self.workdir: Optional[Path] = None
        self.log_path: Optional[Path] = None
        self.file_set: Optional[ExtractedFileSet] = None
        self._log_file: Optional[IO[bytes]] = None
        self._captured = ""
        self._lock = threading.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll() if self.process is not None else None

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def output(self) -> str:
        """Captured stdout/stderr of the process so far."""
        if self.log_path is None or not self.log_path.exists():
            return self._captured
        return self.log_path.read_text(encoding="utf-8", errors="replace")

    def __repr__(self) -> str:
        return f"ProcessHandle({self.executable.distribution}, port={self.port}, state={self.state.value})"


def _accepts_connections(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=CONNECT_TIMEOUT_S):
            return True
    except OSError:
        return False


class ProcessSupervisor:
    """Owns the spawn / ready-wait / terminate lifecycle of mongod processes."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        ports: PortRegistry = DEFAULT_PORT_REGISTRY,
        matrix: FeatureMatrix = DEFAULT_MATRIX,
    ):
        self.store = store
        self.ports = ports
        self.matrix = matrix
        self._live: Set[ProcessHandle] = set()
        self._live_lock = threading.Lock()

    def prepare(self, distribution: Distribution, config: RuntimeConfig) -> Executable:
        """
        Validate a distribution/configuration pair without downloading or starting anything.

        Raises:
            UnsupportedDistribution: If the distribution or a configured option
                is not supported by the version
        """
        check_supported(distribution, matrix=self.matrix)
        if config.process.storage_engine and not self.matrix.enabled(distribution.version, Feature.STORAGE_ENGINE):
            raise UnsupportedDistribution(
                f"{distribution.version} does not support selecting a storage engine",
                rule=Feature.STORAGE_ENGINE.name,
            )
        return Executable(distribution=distribution, config=config)

    def start(self, executable: Executable, *, timeout: Optional[float] = None) -> ProcessHandle:
        """
        Start a prepared executable and wait until it accepts connections.

        Args:
            executable: Result of prepare()
            timeout: Seconds allowed for the whole start, materializing the
                file set included (defaults to the configured one)

        Returns:
            ProcessHandle in state READY

        Raises:
            UnsupportedDistribution, DownloadFailure, ExtractionFailure: From
                materializing the file set (nothing has been started yet)
            PortUnavailable: If the port cannot be reserved
            StartupTimeout: If the process is not ready in time (it is killed),
                or the file set took the whole timeout to materialize
            ProcessCrashed: If the process exits before it is ready
        """
        config = executable.config
        distribution = executable.distribution
        timeout = config.process.startup_timeout_s if timeout is None else timeout
        deadline = time.monotonic() + timeout
        try:
            file_set = self.store.extract_file_set(distribution, timeout=timeout)
        except DownloadFailure as e:
            if time.monotonic() >= deadline:
                raise StartupTimeout(f"{distribution} not available within {timeout}s: {e}", timeout=timeout) from e
            raise
        if time.monotonic() >= deadline:
            # the download itself cannot be interrupted, but its cached result survives
            raise StartupTimeout(f"Materializing {distribution} took longer than {timeout}s", timeout=timeout)

        port = self.ports.reserve(config.net.port, config.net.bind_ip)
        handle = ProcessHandle(executable, port=port, host=config.net.bind_ip)
        handle.file_set = file_set
        try:
            handle.workdir = Path(tempfile.mkdtemp(prefix="embedmongo-"))
            dbpath = handle.workdir / "db"
            dbpath.mkdir()
            handle.log_path = handle.workdir / "mongod.log"
            command = self.build_command(executable, file_set, port, dbpath)

            logger.info(f"Starting {distribution} on {handle.host}:{port}")
            handle._log_file = open(handle.log_path, "wb")
            try:
                handle.process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=handle._log_file,
                    stderr=subprocess.STDOUT,
                    cwd=handle.workdir,
                )
            except OSError as e:
                raise ProcessCrashed(f"Cannot launch {command[0]}: {e}", returncode=None) from e

            self._wait_until_ready(handle, deadline, timeout)
        except BaseException:
            self._shutdown(handle, grace=0.0)
            handle.state = ProcessState.FAILED
            raise

        handle.state = ProcessState.READY
        with self._live_lock:
            self._live.add(handle)
        logger.info(f"{distribution} ready on port {port} (pid {handle.pid})")
        return handle

    def stop(self, handle: ProcessHandle) -> None:
        """
        Stop a process: terminate, wait the grace period, then kill.

        Idempotent; never raises for a handle that is already stopped or failed.
        A READY process found to have exited on its own ends up FAILED.
        """
        with handle._lock:
            if self._reap_if_exited(handle):
                stopped = False
            elif handle.state in (ProcessState.STOPPED, ProcessState.FAILED):
                logger.debug(f"{handle} already {handle.state.value}, nothing to stop")
                return
            else:
                handle.state = ProcessState.STOPPING
                self._shutdown(handle, grace=handle.executable.config.process.stop_grace_s)
                handle.state = ProcessState.STOPPED
                stopped = True
        with self._live_lock:
            self._live.discard(handle)
        if stopped:
            logger.info(f"Stopped {handle.executable.distribution} on port {handle.port}")

    def refresh(self, handle: ProcessHandle) -> ProcessState:
        """
        Re-check a READY handle against its process and return the current state.

        A process that exited on its own moves the handle to FAILED and its
        port and working directory are reclaimed.
        """
        with handle._lock:
            failed = self._reap_if_exited(handle)
            state = handle.state
        if failed:
            with self._live_lock:
                self._live.discard(handle)
        return state

    def stop_all(self) -> None:
        """Stop every handle this supervisor started and that is still live."""
        with self._live_lock:
            handles = list(self._live)
        for handle in handles:
            self.stop(handle)

    def build_command(self, executable: Executable, file_set: ExtractedFileSet, port: int, dbpath: Path) -> List[str]:
        """Command line for mongod; options depend on what the version supports."""
        version = executable.distribution.version
        net = executable.config.net
        options = executable.config.process

        command = [
            str(file_set.executable),
            "--port", str(port),
            "--dbpath", str(dbpath),
            "--bind_ip", net.bind_ip,
        ]
        if net.ipv6:
            command.append("--ipv6")
        if not self.matrix.enabled(version, Feature.NO_HTTP_INTERFACE_ARG):
            command.append("--nohttpinterface")
        if self.matrix.enabled(version, Feature.SYNC_DELAY):
            command.extend(["--syncdelay", "0"])
        if options.storage_engine:
            command.extend(["--storageEngine", options.storage_engine])
        command.extend(options.extra_args)
        return command

    def _wait_until_ready(self, handle: ProcessHandle, deadline: float, timeout: float) -> None:
        while True:
            returncode = handle.process.poll()
            if returncode is not None:
                raise ProcessCrashed(
                    f"{handle.executable.distribution} exited with code {returncode} before accepting connections",
                    returncode=returncode,
                    output=handle.output(),
                )
            if _accepts_connections(handle.host, handle.port):
                return
            if time.monotonic() >= deadline:
                raise StartupTimeout(
                    f"{handle.executable.distribution} not ready on port {handle.port} after {timeout}s",
                    timeout=timeout,
                    output=handle.output(),
                )
            time.sleep(POLL_INTERVAL_S)

    def _reap_if_exited(self, handle: ProcessHandle) -> bool:
        """Mark a READY handle FAILED if its process has exited; caller holds handle._lock."""
        if handle.state is not ProcessState.READY or handle.process is None:
            return False
        returncode = handle.process.poll()
        if returncode is None:
            return False
        logger.warning(
            f"{handle.executable.distribution} on port {handle.port} exited unexpectedly with code {returncode}"
        )
        self._shutdown(handle, grace=0.0)
        handle.state = ProcessState.FAILED
        return True

    def _shutdown(self, handle: ProcessHandle, *, grace: float) -> None:
        """Terminate the process (escalating to kill) and reclaim port, log file and workdir."""
        process = handle.process
        if process is not None and process.poll() is None:
            if grace > 0:
                try:
                    process.terminate()
                    process.wait(timeout=grace)
                except subprocess.TimeoutExpired:
                    logger.warning(f"pid {process.pid} did not exit within {grace}s, killing it")
                except OSError as e:
                    logger.warning(f"Could not terminate pid {process.pid}: {e}")
            if process.poll() is None:
                try:
                    process.kill()
                    process.wait(timeout=KILL_WAIT_S)
                except (OSError, subprocess.TimeoutExpired) as e:
                    logger.warning(f"Could not kill pid {process.pid}: {e}")

        if handle._log_file is not None:
            handle._log_file.close()
            handle._log_file = None
        self.ports.release(handle.port)
        if handle.workdir is not None and handle.workdir.exists():
            handle._captured = handle.output()
            try:
                shutil.rmtree(handle.workdir)
            except OSError as e:
                logger.warning(f"Could not remove working directory {handle.workdir}: {e}")
