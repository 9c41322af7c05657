"""Gateway instances and the sessions bound to them."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlsplit


@dataclass(eq=False)
class GatewayInstance:
    """A running gateway subprocess reachable at an internal URL."""

    process: Any
    internal_url: str
    cancel: Callable[[], None] | None = None
    start_time: float = field(default_factory=time.monotonic)
    sessions: int = 0

    def port(self) -> int | None:
        """Return the port of the internal URL, or None if it has none."""
        try:
            return urlsplit(self.internal_url).port
        except ValueError:
            return None


@dataclass(eq=False)
class SessionInfo:
    """Metadata about a client session routed to a gateway instance."""

    instance: GatewayInstance | None
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(init=False)

    def __post_init__(self) -> None:
        self.last_used = self.created_at

    def touch(self) -> None:
        """Mark the session as used now."""
        self.last_used = time.monotonic()