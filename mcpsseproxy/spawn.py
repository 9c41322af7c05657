"""Starting gateway processes and relaying their SSE streams."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from typing import Any, Mapping
from urllib.parse import quote

import aiohttp
from aiohttp import web

from .config import is_blacklisted_env
from .logger import get_logger
from .middleware import SECURITY_HEADERS_KEY
from .models import GatewayInstance
from .output import ProcessOutputHandler, health_check, set_priority

ENV_PREFIX = "ENV_"
EXTERNAL_BASE = "http://localhost:8000"
GATEWAY_PROGRAM = "supergateway"
HEALTH_TIMEOUT = 180.0
HEARTBEAT_INTERVAL = 15.0
MAX_RETRIES = 3
_KILL_GRACE = 5.0
_SKIPPED_UPSTREAM_HEADERS = {"content-length", "transfer-encoding"}
_CONNECTION_MESSAGES = (
    "broken pipe",
    "connection reset by peer",
    "use of closed network connection",
    "i/o timeout",
)

log = get_logger()


class SpawnError(Exception):
    """A gateway instance could not be started."""


def _fields(**fields: Any) -> dict[str, Any]:
    return {"fields": fields}


def build_environment(headers: Mapping[str, str], base_env: Mapping[str, str]) -> dict[str, str]:
    """Return ``base_env`` extended with ``ENV_*`` request headers, minus protected names."""
    env = dict(base_env)
    seen: set[str] = set()
    for name, value in headers.items():
        upper = name.upper()
        if not upper.startswith(ENV_PREFIX):
            continue
        key = upper[len(ENV_PREFIX):]
        if not key or key in seen or is_blacklisted_env(key):
            continue
        seen.add(key)
        env[key] = value
    return env


def build_gateway_args(cmd_key: str, cmd_str: str, port: int) -> list[str]:
    """Return the gateway command-line arguments for one instance."""
    external = f"{EXTERNAL_BASE}/{quote(cmd_key, safe='$&+=:@')}"
    return [
        "--stdio", cmd_str,
        "--port", str(port),
        "--baseUrl", external,
        "--ssePath", "/sse",
        "--messagePath", "/message",
    ]


def _kill_group(pgid: int, sig: int) -> bool:
    try:
        os.killpg(pgid, sig)
    except OSError:
        return False
    return True


async def spawn_instance(
    manager: Any, cmd_key: str, cmd_str: str, headers: Mapping[str, str]
) -> GatewayInstance:
    """Start a gateway for ``cmd_str``, wait until it answers and register it."""
    env = build_environment(headers, os.environ)

    try:
        port = manager.get_port()
    except RuntimeError as exc:
        raise SpawnError(f"failed to acquire port: {exc}") from exc

    internal_url = f"http://127.0.0.1:{port}"
    args = build_gateway_args(cmd_key, cmd_str, port)
    log.info(
        "Spawning instance",
        extra=_fields(cmd=cmd_key, port=port, url=args[args.index("--baseUrl") + 1]),
    )

    try:
        tmp_dir = tempfile.mkdtemp(prefix="supergateway-")
    except OSError as exc:
        manager.release_port(port)
        raise SpawnError(f"failed to create temp directory: {exc}") from exc

    try:
        process = subprocess.Popen(
            [GATEWAY_PROGRAM, *args],
            env=env,
            cwd=tmp_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        manager.release_port(port)
        raise SpawnError(f"failed to start command: {exc}") from exc

    output = ProcessOutputHandler(process.stdout, process.stderr).start()
    pgid = process.pid

    try:
        set_priority(pgid)
    except OSError as exc:
        log.warning("Failed to set process priority", extra=_fields(pid=pgid, err=exc))

    try:
        await health_check(internal_url, HEALTH_TIMEOUT)
    except (TimeoutError, asyncio.CancelledError) as exc:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        _kill_group(pgid, signal.SIGKILL)
        manager.release_port(port)
        output.stop()
        if isinstance(exc, asyncio.CancelledError):
            raise
        raise SpawnError(f"process health check failed: {exc}") from exc

    cancelled = threading.Event()

    def cancel() -> None:
        cancelled.set()
        try:
            process.kill()
        except OSError:
            pass

    instance = GatewayInstance(process, internal_url, cancel)
    manager.add_instance(cmd_key, instance)

    def watch() -> None:
        try:
            output.wait()
            returncode = process.wait()
            if returncode == 0:
                log.info("Process exited successfully", extra=_fields(cmd=cmd_key, pid=pgid))
            elif cancelled.is_set():
                log.info("Process cancelled", extra=_fields(cmd=cmd_key))
            else:
                log.error(
                    "Process exited with error",
                    extra=_fields(cmd=cmd_key, err=f"exit status {returncode}", pid=pgid),
                )
        finally:
            output.stop()
            shutil.rmtree(tmp_dir, ignore_errors=True)
            manager.release_port(port)
            manager.remove_instance(cmd_key)
            if _kill_group(pgid, signal.SIGTERM):
                time.sleep(_KILL_GRACE)
                _kill_group(pgid, signal.SIGKILL)

    threading.Thread(target=watch, daemon=True).start()
    return instance


def is_connection_error(exc: BaseException | None) -> bool:
    """Return True if ``exc`` is an ordinary connection closure or timeout."""
    if exc is None:
        return False
    if isinstance(exc, (BrokenPipeError, ConnectionResetError, EOFError)):
        return True
    text = str(exc).lower()
    return any(message in text for message in _CONNECTION_MESSAGES)


async def _connect(
    session: aiohttp.ClientSession, url: str, headers: Mapping[str, str]
) -> aiohttp.ClientResponse:
    last_error: BaseException | None = None
    for attempt in range(MAX_RETRIES):
        try:
            return await session.get(url, headers=headers)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            last_error = exc
            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep((attempt + 1) * 0.5)
                log.warning(
                    "Retrying SSE connection",
                    extra=_fields(attempt=attempt + 1, max_attempts=MAX_RETRIES, err=exc),
                )
    assert last_error is not None
    raise last_error


async def proxy_sse(
    request: web.Request, instance: GatewayInstance, rest: str
) -> web.StreamResponse:
    """Relay the instance's SSE stream at ``rest`` to the client, with heartbeats."""
    url = f"{instance.internal_url}{rest}?{request.query_string}"
    forward = {k: v for k, v in request.headers.items() if k.lower() != "host"}
    timeout = aiohttp.ClientTimeout(total=None, sock_connect=30)

    async with aiohttp.ClientSession(timeout=timeout, auto_decompress=False) as session:
        try:
            upstream = await _connect(session, url, forward)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            log.error(
                "SSE connection failed", extra=_fields(max_attempts=MAX_RETRIES, err=exc)
            )
            return web.Response(status=502, text="SSE connection failed\n")

        async with upstream:
            response = web.StreamResponse(status=upstream.status)
            response.headers["Content-Type"] = "text/event-stream"
            response.headers["Cache-Control"] = "no-cache"
            response.headers["Connection"] = "keep-alive"
            response.headers["Keep-Alive"] = "timeout=86400"
            for name, value in request.get(SECURITY_HEADERS_KEY, {}).items():
                response.headers.setdefault(name, value)
            for name, value in upstream.headers.items():
                if name.lower() not in _SKIPPED_UPSTREAM_HEADERS:
                    response.headers.add(name, value)
            await response.prepare(request)

            write_lock = asyncio.Lock()

            async def pump() -> None:
                async for line in upstream.content:
                    async with write_lock:
                        await response.write(line)

            pump_task = asyncio.create_task(pump())
            try:
                while True:
                    done, _ = await asyncio.wait({pump_task}, timeout=HEARTBEAT_INTERVAL)
                    if done and not pump_task.cancelled():
                        error = pump_task.exception()
                        if error is not None:
                            if not is_connection_error(error):
                                log.error("SSE connection error", extra=_fields(err=error))
                            break
                    try:
                        async with write_lock:
                            await response.write(b": heartbeat\n\n")
                    except (OSError, aiohttp.ClientError, RuntimeError) as exc:
                        if not is_connection_error(exc):
                            log.error("Failed to write heartbeat", extra=_fields(err=exc))
                        break
                    if done:
                        await asyncio.sleep(HEARTBEAT_INTERVAL)
            except asyncio.CancelledError:
                log.log(logging.INFO, "SSE connection cancelled")
                raise
            finally:
                pump_task.cancel()
                try:
                    await pump_task
                except BaseException:
                    pass
    return response