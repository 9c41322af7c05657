"""Command-line entry point that runs the proxy server."""

from __future__ import annotations

import argparse
import os
from typing import Mapping, Sequence

from aiohttp import web

from .config import default_process_config
from .logger import get_log_level, get_logger, parse_level, set_log_level
from .manager import Manager
from .middleware import auth_middleware, rate_limit_middleware, security_headers
from .proxy import Proxy
from .ratelimit import RateLimiter

DEFAULT_PORT = 8000
SHUTDOWN_TIMEOUT = 30.0
RATE_PER_SECOND = 100.0 / 60.0
RATE_BURST = 10


def configure_logger(env: Mapping[str, str] | None = None) -> int:
    """Apply LOG_LEVEL from ``env`` (the process environment by default); return the level."""
    env = os.environ if env is None else env
    name = env.get("LOG_LEVEL", "")
    if name:
        level = parse_level(name)
        if level is not None:
            set_log_level(level)
    return get_log_level()


def create_app(manager: Manager, limiter: RateLimiter) -> web.Application:
    """Build the application: rate limit, security headers, auth, then routing."""
    app = web.Application(
        middlewares=[rate_limit_middleware(limiter), security_headers, auth_middleware]
    )
    app.router.add_route("*", "/{tail:.*}", Proxy(manager).handle)
    return app


def main(argv: Sequence[str] | None = None) -> int:
    """Run the proxy until interrupted, then stop all gateway instances."""
    parser = argparse.ArgumentParser(
        prog="mcpsseproxy", description="Proxy SSE connections to per-client gateways."
    )
    parser.add_argument("--host", default=None, help="address to listen on (all by default)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="port to listen on")
    args = parser.parse_args(argv)

    configure_logger()
    log = get_logger()

    manager = Manager(default_process_config()).start()
    limiter = RateLimiter(RATE_PER_SECOND, RATE_BURST)
    app = create_app(manager, limiter)

    log.info(
        "Starting proxy", extra={"fields": {"address": f"{args.host or ''}:{args.port}"}}
    )
    try:
        web.run_app(
            app,
            host=args.host,
            port=args.port,
            shutdown_timeout=SHUTDOWN_TIMEOUT,
            print=None,
        )
    except OSError as exc:
        log.error("HTTP server error", extra={"fields": {"err": exc}})
    else:
        log.info("Shutdown signal received")

    manager.shutdown()
    log.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())