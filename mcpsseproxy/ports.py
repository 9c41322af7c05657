"""Allocation and tracking of local TCP ports for gateway instances."""

from __future__ import annotations

import socket
import threading
import time
from collections import deque
from typing import Callable


class PortManager:
    """Hands out free loopback ports within a range and remembers released ones."""

    def __init__(
        self,
        min_port: int,
        max_port: int,
        *,
        max_retries: int = 5,
        max_released: int = 100,
        cleanup_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_port = min_port
        self.max_port = max_port
        self.max_retries = max_retries
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._used: set[int] = set()
        self._released: deque[int] = deque(maxlen=max_released)
        self._last_cleanup = clock()
        self._lock = threading.Lock()

    def _cleanup_stale(self) -> None:
        now = self._clock()
        if now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        for port in list(self._used):
            if self.is_port_available(port):
                self._used.discard(port)

    def is_port_available(self, port: int) -> bool:
        """Return True if a listener can be bound to 127.0.0.1:``port``."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind(("127.0.0.1", port))
                sock.listen(1)
        except OSError:
            return False
        return True

    @staticmethod
    def _system_port() -> int | None:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind(("127.0.0.1", 0))
                sock.listen(1)
                return sock.getsockname()[1]
        except OSError:
            return None

    def get_port(self) -> int:
        """Reserve and return a free port; raise RuntimeError if none is found."""
        with self._lock:
            self._cleanup_stale()

            for port in self._released:
                if port and port not in self._used and self.is_port_available(port):
                    self._used.add(port)
                    return port

            for _ in range(self.max_retries):
                port = self._system_port()
                if port is None:
                    continue
                if not self.min_port <= port <= self.max_port:
                    continue
                if not self.is_port_available(port):
                    continue
                if port in self._used:
                    continue
                self._used.add(port)
                return port

            raise RuntimeError(
                f"failed to acquire free port after {self.max_retries} attempts"
            )

    def release_port(self, port: int) -> None:
        """Mark ``port`` as free and remember it for reuse."""
        with self._lock:
            if port in self._used:
                self._used.discard(port)
                self._released.append(port)

    def in_use(self, port: int) -> bool:
        """Return True if ``port`` is currently reserved."""
        with self._lock:
            return port in self._used