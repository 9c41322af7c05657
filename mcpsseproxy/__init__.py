"""Authenticated, rate-limited SSE proxy that starts a gateway process per connection."""

__version__ = "0.1.0"