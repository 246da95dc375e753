"""
Settings and configuration for embedded-mongo.

Centralizes configuration values and provides validation with fail-fast behavior.
A RuntimeConfig is an immutable value: build it once (directly, through
create_runtime_config() or from environment variables) and reuse it for any
number of prepare() calls.
"""
from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

__all__ = [
    "StoreSettings",
    "NetSettings",
    "ProcessSettings",
    "RuntimeConfig",
    "create_runtime_config",
    "create_config_from_env",
    "DEFAULT_CACHE_DIR",
    "DEFAULT_DOWNLOAD_URL",
]

DEFAULT_CACHE_DIR = Path.home() / ".embedmongo"
DEFAULT_DOWNLOAD_URL = "https://fastdl.mongodb.org/"
_MANAGED_ARGS = ("--port", "--dbpath", "--bind_ip")


@dataclass(frozen=True)
class StoreSettings:
    """
    Artifact store settings.

        cache_dir: Root of the shared on-disk cache (absolute path)
        download_url: Base URL archives are fetched from
        http_timeout_s: HTTP request timeout in seconds
        http_retry: Number of retries for failed requests (0=no retry)
        lock_timeout_s: How long a caller waits for another caller's download
    """
    cache_dir: Path = DEFAULT_CACHE_DIR
    download_url: str = DEFAULT_DOWNLOAD_URL
    http_timeout_s: float = 60.0
    http_retry: int = 2
    lock_timeout_s: float = 600.0

    def __post_init__(self):
        """Validate settings on construction."""
        if self.cache_dir is None or str(self.cache_dir) == "":
            raise ValueError("cache_dir is required")
        object.__setattr__(self, "cache_dir", Path(self.cache_dir).expanduser())
        if not self.cache_dir.is_absolute():
            raise ValueError(f"cache_dir must be absolute, got {self.cache_dir}")

        if not self.download_url:
            raise ValueError("download_url is required")
        if not self.download_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid download_url format: {self.download_url}")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")
        if self.lock_timeout_s <= 0:
            raise ValueError(f"lock_timeout_s must be positive, got {self.lock_timeout_s}")
        if self.http_retry < 0:
            raise ValueError(f"http_retry must be non-negative, got {self.http_retry}")


@dataclass(frozen=True)
class NetSettings:
    """
    Network settings for the supervised process.

        port: Port to bind (0 = pick a free ephemeral port)
        bind_ip: Address the server listens on and readiness is checked at
        ipv6: Start the server with IPv6 enabled
    """
    port: int = 0
    bind_ip: Optional[str] = None
    ipv6: bool = False

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be between 0 and 65535, got {self.port}")

        if self.bind_ip is None:
            object.__setattr__(self, "bind_ip", "::1" if self.ipv6 else "127.0.0.1")

        try:
            address = ipaddress.ip_address(self.bind_ip)
        except ValueError:
            # host names are allowed; only literals can be checked against ipv6
            return
        if self.ipv6 and address.version == 4:
            raise ValueError(f"ipv6 requested but bind_ip {self.bind_ip} is an IPv4 address")
        if not self.ipv6 and address.version == 6:
            raise ValueError(f"bind_ip {self.bind_ip} is an IPv6 address but ipv6 is disabled")


@dataclass(frozen=True)
class ProcessSettings:
    """
    Startup options for the supervised process.

        startup_timeout_s: Maximum wait for the port to accept connections
        stop_grace_s: Wait after terminate() before escalating to kill()
        storage_engine: Value for --storageEngine (versions that support it)
        extra_args: Additional command-line arguments, passed verbatim
    """
    startup_timeout_s: float = 30.0
    stop_grace_s: float = 10.0
    storage_engine: Optional[str] = None
    extra_args: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.startup_timeout_s <= 0:
            raise ValueError(f"startup_timeout_s must be positive, got {self.startup_timeout_s}")
        if self.stop_grace_s < 0:
            raise ValueError(f"stop_grace_s must be non-negative, got {self.stop_grace_s}")
        object.__setattr__(self, "extra_args", tuple(self.extra_args))
        for arg in self.extra_args:
            # "--port 1" and "--port=1" both count
            option = arg.split("=", 1)[0]
            if option in _MANAGED_ARGS:
                raise ValueError(f"{option} is managed by the supervisor and cannot be passed in extra_args")


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Immutable configuration bundle shared by every prepare() call of a runtime.

    Frozen and hashable, so it can key an explicit cache of runtimes.
    """
    store: StoreSettings = field(default_factory=StoreSettings)
    net: NetSettings = field(default_factory=NetSettings)
    process: ProcessSettings = field(default_factory=ProcessSettings)


def create_runtime_config(
    *,
    cache_dir: Optional[Path | str] = None,
    download_url: str = DEFAULT_DOWNLOAD_URL,
    http_timeout_s: float = 60.0,
    http_retry: int = 2,
    lock_timeout_s: float = 600.0,
    port: int = 0,
    bind_ip: Optional[str] = None,
    ipv6: bool = False,
    startup_timeout_s: float = 30.0,
    stop_grace_s: float = 10.0,
    storage_engine: Optional[str] = None,
    extra_args: Tuple[str, ...] = (),
) -> RuntimeConfig:
    """
    Build a validated RuntimeConfig from flat keyword arguments.

    Raises:
        ValueError: If any value is invalid or options contradict each other
    """
    return RuntimeConfig(
        store=StoreSettings(
            cache_dir=Path(cache_dir) if cache_dir is not None else DEFAULT_CACHE_DIR,
            download_url=download_url,
            http_timeout_s=http_timeout_s,
            http_retry=http_retry,
            lock_timeout_s=lock_timeout_s,
        ),
        net=NetSettings(port=port, bind_ip=bind_ip, ipv6=ipv6),
        process=ProcessSettings(
            startup_timeout_s=startup_timeout_s,
            stop_grace_s=stop_grace_s,
            storage_engine=storage_engine,
            extra_args=tuple(extra_args),
        ),
    )


def create_config_from_env() -> RuntimeConfig:
    """
    Load configuration from environment variables.

    Environment Variables:
        - EMBEDDED_MONGO_CACHE_DIR (default: ~/.embedmongo)
        - EMBEDDED_MONGO_DOWNLOAD_URL (default: https://fastdl.mongodb.org/)
        - EMBEDDED_MONGO_HTTP_TIMEOUT (default: 60.0)
        - EMBEDDED_MONGO_HTTP_RETRY (default: 2)
        - EMBEDDED_MONGO_LOCK_TIMEOUT (default: 600.0)
        - EMBEDDED_MONGO_PORT (default: 0)
        - EMBEDDED_MONGO_BIND_IP (optional)
        - EMBEDDED_MONGO_IPV6 (default: false)
        - EMBEDDED_MONGO_STARTUP_TIMEOUT (default: 30.0)
        - EMBEDDED_MONGO_STOP_GRACE (default: 10.0)

    Returns:
        RuntimeConfig with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh RuntimeConfig every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    return create_runtime_config(
        cache_dir=os.getenv("EMBEDDED_MONGO_CACHE_DIR") or None,
        download_url=os.getenv("EMBEDDED_MONGO_DOWNLOAD_URL") or DEFAULT_DOWNLOAD_URL,
        http_timeout_s=get_float("EMBEDDED_MONGO_HTTP_TIMEOUT", 60.0),
        http_retry=get_int("EMBEDDED_MONGO_HTTP_RETRY", 2),
        lock_timeout_s=get_float("EMBEDDED_MONGO_LOCK_TIMEOUT", 600.0),
        port=get_int("EMBEDDED_MONGO_PORT", 0),
        bind_ip=os.getenv("EMBEDDED_MONGO_BIND_IP") or None,
        ipv6=str_to_bool(os.getenv("EMBEDDED_MONGO_IPV6", "false")),
        startup_timeout_s=get_float("EMBEDDED_MONGO_STARTUP_TIMEOUT", 30.0),
        stop_grace_s=get_float("EMBEDDED_MONGO_STOP_GRACE", 10.0),
    )
