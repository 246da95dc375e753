"""
Port reservation and small network helpers.

A PortRegistry hands out ports to supervisors. Ports it has handed out stay
reserved until released, so two concurrent ephemeral requests never receive
the same number even though the OS may offer a just-closed port again.
"""
from __future__ import annotations

import logging
import socket
import threading
from typing import FrozenSet, Optional, Set

from .errors import PortUnavailable

__all__ = ["PortRegistry", "DEFAULT_PORT_REGISTRY", "is_port_free", "localhost_is_ipv6"]

logger = logging.getLogger(__name__)

_EPHEMERAL_ATTEMPTS = 20


def _family_for(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Verify a port is available by attempting to bind it."""
    sock = socket.socket(_family_for(host), socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def localhost_is_ipv6() -> bool:
    """True if "localhost" resolves to an IPv6 address first."""
    try:
        infos = socket.getaddrinfo("localhost", None, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return False
    return bool(infos) and infos[0][0] == socket.AF_INET6


class PortRegistry:
    """Thread-safe bookkeeping of ports handed out to supervised processes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reserved: Set[int] = set()

    def reserve(self, port: int = 0, host: str = "127.0.0.1") -> int:
        """
        Reserve a specific port, or a free ephemeral one when port is 0.

        Raises:
            PortUnavailable: If the port is reserved, busy, or no ephemeral
                port could be found
        """
        with self._lock:
            if port:
                if port in self._reserved:
                    raise PortUnavailable(f"Port {port} is already reserved", port=port)
                if not is_port_free(port, host):
                    raise PortUnavailable(f"Port {port} on {host} is in use", port=port)
                self._reserved.add(port)
                logger.debug(f"Reserved port {port}")
                return port

            for _ in range(_EPHEMERAL_ATTEMPTS):
                candidate = self._ephemeral_port(host)
                if candidate not in self._reserved:
                    self._reserved.add(candidate)
                    logger.debug(f"Reserved ephemeral port {candidate}")
                    return candidate
            raise PortUnavailable(f"No free ephemeral port on {host} after {_EPHEMERAL_ATTEMPTS} attempts")

    def release(self, port: Optional[int]) -> None:
        """Release a reservation; releasing an unknown port is a no-op."""
        if port is None:
            return
        with self._lock:
            self._reserved.discard(port)

    def is_reserved(self, port: int) -> bool:
        with self._lock:
            return port in self._reserved

    def reserved(self) -> FrozenSet[int]:
        """Snapshot of the ports currently handed out."""
        with self._lock:
            return frozenset(self._reserved)

    @staticmethod
    def _ephemeral_port(host: str) -> int:
        sock = socket.socket(_family_for(host), socket.SOCK_STREAM)
        try:
            sock.bind((host, 0))
            return sock.getsockname()[1]
        except OSError as e:
            raise PortUnavailable(f"Cannot bind an ephemeral port on {host}: {e}") from e
        finally:
            sock.close()


# Shared by all runtimes of this process unless one is injected.
DEFAULT_PORT_REGISTRY = PortRegistry()
