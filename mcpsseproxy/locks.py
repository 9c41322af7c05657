"""Lock acquisition with a timeout."""

from __future__ import annotations

import threading


def try_lock(lock: threading.Lock | threading.RLock, timeout: float) -> bool:
    """Try to acquire ``lock`` within ``timeout`` seconds; return whether it was taken."""
    return lock.acquire(timeout=max(0.0, timeout))