"""
Tests for the runtime orchestrator.

End-to-end scenarios through EmbeddedRuntime with the fake download client,
plus the explicit RuntimeCache.
"""
from __future__ import annotations

import socket
import sys

import pytest

from embedded_mongo import EmbeddedRuntime, RuntimeCache
from embedded_mongo.distribution import OS, Architecture, Version
from embedded_mongo.download import HttpDownloadClient
from embedded_mongo.errors import DownloadFailure, UnsupportedDistribution
from embedded_mongo.settings import create_runtime_config
from embedded_mongo.supervisor import ProcessState

from tests.fakes.fake_download import CountingDownloadClient

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake server launcher is a POSIX shell script")


# =============================================================================
# Scenarios
# =============================================================================

@posix_only
@pytest.mark.slow
def test_start_4_2_on_linux(runtime, download_client, ports):
    """Test prepare + start + stop of 4.2.0 on Linux x86_64."""
    executable = runtime.prepare("4.2.0", operating_system=OS.LINUX, architecture=Architecture.X86_64)
    assert executable.distribution.version == Version(identifier="4.2.0")
    assert download_client.count == 0

    handle = runtime.start(executable)
    try:
        assert handle.state is ProcessState.READY
        with socket.create_connection((handle.host, handle.port), timeout=2):
            pass
    finally:
        runtime.stop(handle)

    assert handle.state is ProcessState.STOPPED
    assert not ports.is_reserved(handle.port)
    assert download_client.count == 1


@posix_only
@pytest.mark.slow
def test_refresh_sees_crashed_process(runtime, ports):
    executable = runtime.prepare("4.2.0", operating_system=OS.LINUX, architecture=Architecture.X86_64)
    handle = runtime.start(executable)
    assert runtime.refresh(handle) is ProcessState.READY

    handle.process.kill()
    handle.process.wait(timeout=5)

    assert runtime.refresh(handle) is ProcessState.FAILED
    runtime.stop(handle)
    assert handle.state is ProcessState.FAILED
    assert not ports.is_reserved(handle.port)


def test_solaris_4_2_rejected_without_download(runtime, download_client):
    """Test that an unsupported request fails in prepare() and never downloads."""
    with pytest.raises(UnsupportedDistribution) as excinfo:
        runtime.prepare("4.2.0", operating_system=OS.SOLARIS, architecture=Architecture.X86_64)
    assert excinfo.value.rule == "NO_SOLARIS_SUPPORT"
    assert download_client.count == 0


@posix_only
@pytest.mark.slow
def test_running_context_manager(runtime, ports):
    with runtime.running("4.2", operating_system=OS.LINUX, architecture=Architecture.X86_64) as handle:
        assert handle.is_alive()
        port = handle.port
        assert ports.is_reserved(port)
    assert handle.state is ProcessState.STOPPED
    assert not ports.is_reserved(port)


@posix_only
@pytest.mark.slow
def test_running_stops_on_error(runtime):
    with pytest.raises(RuntimeError, match="boom"):
        with runtime.running("4.2.0", operating_system=OS.LINUX, architecture=Architecture.X86_64) as handle:
            raise RuntimeError("boom")
    assert handle.state is ProcessState.STOPPED
    assert not handle.is_alive()


def test_extract_file_set(runtime, download_client, linux_4_2):
    file_set = runtime.extract_file_set(linux_4_2)
    assert file_set.executable.is_file()
    assert runtime.extract_file_set(linux_4_2) == file_set
    assert download_client.count == 1


@posix_only
@pytest.mark.slow
def test_runtime_usable_after_failure(config, ports):
    client = CountingDownloadClient(failures=1)
    with EmbeddedRuntime(config, download_client=client, ports=ports) as runtime:
        executable = runtime.prepare("4.2.0", operating_system=OS.LINUX, architecture=Architecture.X86_64)
        with pytest.raises(DownloadFailure):
            runtime.start(executable)

        handle = runtime.start(executable)
        assert handle.state is ProcessState.READY
        runtime.stop(handle)
    assert client.count == 2


@posix_only
@pytest.mark.slow
def test_close_stops_live_processes(config, ports):
    runtime = EmbeddedRuntime(config, download_client=CountingDownloadClient(), ports=ports)
    executable = runtime.prepare("4.2.0", operating_system=OS.LINUX, architecture=Architecture.X86_64)
    handles = [runtime.start(executable) for _ in range(2)]

    runtime.close()

    assert all(h.state is ProcessState.STOPPED for h in handles)
    assert ports.reserved() == frozenset()


@posix_only
@pytest.mark.slow
def test_runtimes_share_cache_dir(config, ports):
    """Test that two runtimes over one cache directory download once."""
    first_client, second_client = CountingDownloadClient(), CountingDownloadClient()
    with EmbeddedRuntime(config, download_client=first_client, ports=ports) as first, \
            EmbeddedRuntime(config, download_client=second_client, ports=ports) as second:
        for runtime in (first, second):
            with runtime.running("4.2.0", operating_system=OS.LINUX, architecture=Architecture.X86_64):
                pass
    assert first_client.count == 1
    assert second_client.count == 0


def test_default_download_client_is_http(config):
    runtime = EmbeddedRuntime(config)
    try:
        assert isinstance(runtime.store.download_client, HttpDownloadClient)
        assert runtime.store.download_client.base_url == "https://fastdl.mongodb.org/"
    finally:
        runtime.close()
    assert runtime._owned_client is None


def test_injected_client_is_not_closed(config):
    client = CountingDownloadClient()
    runtime = EmbeddedRuntime(config, download_client=client)
    runtime.close()
    assert runtime.store.download_client is client


# =============================================================================
# RuntimeCache
# =============================================================================

class TestRuntimeCache:
    """Test the explicit runtime cache."""

    def test_equal_configs_share_runtime(self, tmp_path):
        cache = RuntimeCache(download_client=CountingDownloadClient())
        a = cache.get(create_runtime_config(cache_dir=tmp_path / "cache"))
        b = cache.get(create_runtime_config(cache_dir=tmp_path / "cache"))
        assert a is b
        assert len(cache) == 1
        cache.close()

    def test_different_configs_get_different_runtimes(self, tmp_path):
        cache = RuntimeCache(download_client=CountingDownloadClient())
        a = cache.get(create_runtime_config(cache_dir=tmp_path / "cache"))
        b = cache.get(create_runtime_config(cache_dir=tmp_path / "cache", port=27123))
        assert a is not b
        assert len(cache) == 2
        cache.close()
        assert len(cache) == 0

    def test_caches_are_independent(self, tmp_path):
        config = create_runtime_config(cache_dir=tmp_path / "cache")
        first = RuntimeCache(download_client=CountingDownloadClient())
        second = RuntimeCache(download_client=CountingDownloadClient())
        assert first.get(config) is not second.get(config)
        first.close()
        second.close()
