"""Root pytest configuration for embedded-mongo tests."""
import pytest

from embedded_mongo.distribution import OS, Architecture
from embedded_mongo.network import PortRegistry
from embedded_mongo.resolver import resolve
from embedded_mongo.runtime import EmbeddedRuntime
from embedded_mongo.settings import create_runtime_config
from embedded_mongo.store import ArtifactStore

from tests.fakes.fake_download import CountingDownloadClient, CountingExtractor


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (starts real child processes)"
    )


# Set up test environment variables
@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Keep every test away from the user's real cache directory."""
    monkeypatch.setenv("EMBEDDED_MONGO_CACHE_DIR", str(tmp_path / "env-cache"))
    for name in ("DOWNLOAD_URL", "HTTP_TIMEOUT", "HTTP_RETRY", "LOCK_TIMEOUT", "PORT",
                 "BIND_IP", "IPV6", "STARTUP_TIMEOUT", "STOP_GRACE"):
        monkeypatch.delenv(f"EMBEDDED_MONGO_{name}", raising=False)


# Standardized test fixtures
@pytest.fixture
def config(tmp_path):
    """Standard test configuration with a per-test cache."""
    return create_runtime_config(
        cache_dir=tmp_path / "cache",
        startup_timeout_s=15.0,
        stop_grace_s=5.0,
    )


@pytest.fixture
def download_client():
    """Fake download client serving a listening fake server."""
    return CountingDownloadClient()


@pytest.fixture
def extractor():
    return CountingExtractor()


@pytest.fixture
def store(config, download_client, extractor):
    """Artifact store over the per-test cache."""
    return ArtifactStore(config.store, download_client, extractor=extractor)


@pytest.fixture
def ports():
    """Port registry private to the test."""
    return PortRegistry()


@pytest.fixture
def runtime(config, store, ports):
    """Runtime wired to the fake download client; stops leftovers on teardown."""
    runtime = EmbeddedRuntime(config, store=store, ports=ports)
    yield runtime
    runtime.close()


@pytest.fixture
def linux_4_2():
    """The 4.2.0 Linux x86_64 distribution."""
    return resolve("4.2.0", OS.LINUX, Architecture.X86_64)
