"""Routing of client requests to gateway instances."""

from __future__ import annotations

import asyncio
import re
from typing import Any, Mapping
from urllib.parse import unquote

import aiohttp
from aiohttp import web

from .config import ALLOWED_COMMANDS
from .logger import get_logger
from .manager import Manager, SessionError
from .middleware import SECURITY_HEADERS_KEY
from .models import GatewayInstance
from .spawn import MAX_RETRIES, SpawnError, proxy_sse, spawn_instance

POST_TIMEOUT = 30.0
RETRY_DELAY = 0.5

_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
_SKIPPED_REQUEST_HEADERS = _HOP_BY_HOP | {"host", "content-length"}
_SKIPPED_RESPONSE_HEADERS = _HOP_BY_HOP | {"content-length"}
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_CLIENT_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)

log = get_logger()


def _fields(**fields: Any) -> dict[str, Any]:
    return {"fields": fields}


def _error(message: str, status: int) -> web.Response:
    return web.Response(
        status=status,
        text=message + "\n",
        content_type="text/plain",
        headers={"X-Content-Type-Options": "nosniff"},
    )


def _path_unescape(text: str) -> str:
    match = _BAD_ESCAPE.search(text)
    if match:
        raise ValueError(f"invalid URL escape {text[match.start():match.start() + 3]!r}")
    return unquote(text)


def split_path(raw: str) -> tuple[str, str]:
    """Split a raw request path into its encoded command prefix and the rest.

    The query string is dropped; the rest always begins with a slash.
    """
    path = raw.split("?", 1)[0].removeprefix("/")
    prefix, sep, tail = path.partition("/")
    return prefix, "/" + tail if sep else "/"


def _forward_headers(headers: Mapping[str, str]) -> list[tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.items()
        if name.lower() not in _SKIPPED_REQUEST_HEADERS
    ]


def _target(instance: GatewayInstance, rest: str, query: str) -> str:
    target = f"{instance.internal_url}{rest}"
    if query:
        target += "?" + query
    return target


class Proxy:
    """Routes SSE connections, message posts and other requests to gateways."""

    def __init__(self, manager: Manager) -> None:
        self.manager = manager

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Dispatch one client request by its command prefix, method and path."""
        prefix, rest = split_path(request.raw_path)
        try:
            cmd_key = _path_unescape(prefix)
        except ValueError as exc:
            log.error("Failed to decode prefix", extra=_fields(prefix=prefix, err=exc))
            return _error("Bad prefix encoding", 400)

        cmd_str = ALLOWED_COMMANDS.get(cmd_key)
        if cmd_str is None:
            log.warning("Command not allowed", extra=_fields(cmd=cmd_key))
            return _error("Command not allowed", 403)

        if request.method == "GET" and rest == "/sse":
            return await self._handle_sse(request, cmd_key, cmd_str, rest)

        if request.method == "POST" and rest == "/message":
            return await self._handle_message(request, cmd_key, rest)

        instance = self.manager.get_instance(cmd_key)
        if instance is None:
            log.error(
                "No gateway instance for request",
                extra=_fields(cmd=cmd_key, method=request.method, path=request.path),
            )
            return _error("No gateway instance", 502)
        return await self.proxy_general(request, instance, rest)

    async def _handle_sse(
        self, request: web.Request, cmd_key: str, cmd_str: str, rest: str
    ) -> web.StreamResponse:
        log.info(
            "New SSE connection",
            extra=_fields(
                cmd=cmd_key,
                remote_addr=request.remote,
                user_agent=request.headers.get("User-Agent", ""),
            ),
        )
        try:
            instance = await spawn_instance(self.manager, cmd_key, cmd_str, request.headers)
        except SpawnError as exc:
            log.error(
                "Failed to spawn instance",
                extra=_fields(cmd=cmd_key, err=exc, remote_addr=request.remote),
            )
            return _error(str(exc), 502)
        try:
            return await proxy_sse(request, instance, rest)
        finally:
            await asyncio.to_thread(self.manager.terminate_instance, cmd_key, instance)

    async def _handle_message(
        self, request: web.Request, cmd_key: str, rest: str
    ) -> web.StreamResponse:
        sid = request.query.get("sessionId", "")
        if not sid:
            log.error(
                "Missing sessionId in POST request",
                extra=_fields(remote_addr=request.remote, path=request.path),
            )
            return _error("Missing sessionId", 400)

        session = self.manager.get_session(sid)
        if session is None:
            instance = self.manager.get_instance(cmd_key)
            if instance is None:
                log.error(
                    "No gateway instance found", extra=_fields(cmd=cmd_key, session_id=sid)
                )
                return _error("No gateway instance", 502)
            try:
                session = self.manager.create_session(sid, instance)
            except SessionError as exc:
                log.error("Failed to create session", extra=_fields(session_id=sid, err=exc))
                return _error(str(exc), 503)

        self.manager.touch_session(sid)
        return await self.handle_post(request, session.instance, rest)

    async def handle_post(
        self, request: web.Request, instance: GatewayInstance, rest: str
    ) -> web.StreamResponse:
        """Forward a message POST to ``instance`` and relay its answer."""
        body = await request.read()
        query = request.query_string
        log.debug(
            "POST request details",
            extra=_fields(
                path=request.path,
                target=f"{instance.internal_url}{rest}?{query}",
                body=body.decode("utf-8", errors="replace"),
            ),
        )
        target = _target(instance, rest, query)
        headers = _forward_headers(request.headers)
        timeout = aiohttp.ClientTimeout(total=POST_TIMEOUT)

        async with aiohttp.ClientSession(timeout=timeout, auto_decompress=False) as session:
            try:
                status, upstream_headers, upstream_body = await self._post(
                    session, target, headers, body
                )
            except _CLIENT_ERRORS as exc:
                log.error(
                    "Post proxy failed", extra=_fields(max_attempts=MAX_RETRIES, err=exc)
                )
                return _error("Post proxy failed", 502)

        log.debug(
            "Response details",
            extra=_fields(status=status, body=upstream_body.decode("utf-8", errors="replace")),
        )
        response = web.Response(status=status, body=upstream_body)
        response.headers.pop("Content-Type", None)
        for name, value in upstream_headers:
            if name.lower() not in _SKIPPED_RESPONSE_HEADERS:
                response.headers.add(name, value)
        return response

    @staticmethod
    async def _post(
        session: aiohttp.ClientSession,
        target: str,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> tuple[int, list[tuple[str, str]], bytes]:
        last_error: BaseException | None = None
        for attempt in range(MAX_RETRIES):
            try:
                async with session.post(target, data=body, headers=headers) as resp:
                    return resp.status, list(resp.headers.items()), await resp.read()
            except _CLIENT_ERRORS as exc:
                last_error = exc
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep((attempt + 1) * RETRY_DELAY)
                    log.warning(
                        "Retrying POST request",
                        extra=_fields(attempt=attempt + 1, max_attempts=MAX_RETRIES, err=exc),
                    )
        assert last_error is not None
        raise last_error

    async def proxy_general(
        self, request: web.Request, instance: GatewayInstance, rest: str
    ) -> web.StreamResponse:
        """Reverse-proxy any other request to ``instance``, streaming the answer."""
        target = _target(instance, rest, request.query_string)
        headers = _forward_headers(request.headers)
        if request.remote:
            prior = request.headers.get("X-Forwarded-For", "")
            headers = [(k, v) for k, v in headers if k.lower() != "x-forwarded-for"]
            forwarded = f"{prior}, {request.remote}" if prior else request.remote
            headers.append(("X-Forwarded-For", forwarded))
        body = await request.read() if request.can_read_body else None

        timeout = aiohttp.ClientTimeout(total=None)
        async with aiohttp.ClientSession(timeout=timeout, auto_decompress=False) as session:
            try:
                upstream = await session.request(
                    request.method, target, headers=headers, data=body, allow_redirects=False
                )
            except _CLIENT_ERRORS as exc:
                log.error("Proxy error", extra=_fields(url=target, err=exc))
                return web.Response(status=502)

            async with upstream:
                response = web.StreamResponse(status=upstream.status)
                for name, value in upstream.headers.items():
                    if name.lower() not in _SKIPPED_RESPONSE_HEADERS:
                        response.headers.add(name, value)
                for name, value in request.get(SECURITY_HEADERS_KEY, {}).items():
                    response.headers.setdefault(name, value)
                await response.prepare(request)
                async for chunk in upstream.content.iter_any():
                    await response.write(chunk)
                await response.write_eof()
        return response