"""Reading and logging the output of gateway processes, plus process helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import threading
import time
from typing import IO, Any

import aiohttp

from .logger import get_logger

DEFAULT_MAX_BUFFER = 1000
WRITE_TIMEOUT = 0.1
DRAIN_TIMEOUT = 5.0
_POLL_INTERVAL = 0.05
_HEALTH_INTERVAL = 0.1


class ProcessOutputHandler:
    """Reads a process's stdout and stderr line by line and logs what it finds.

    Lines that open a JSON object are gathered until their braces balance,
    then logged as one structured message.
    """

    def __init__(
        self,
        stdout: IO[Any] | None,
        stderr: IO[Any] | None,
        *,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        logger: logging.Logger | None = None,
    ) -> None:
        self._streams = [
            (stream, name)
            for stream, name in ((stdout, "stdout"), (stderr, "stderr"))
            if stream is not None
        ]
        self._queue: queue.Queue[str] = queue.Queue(maxsize=max_buffer)
        self._stopping = threading.Event()
        self._done = threading.Event()
        self._readers: list[threading.Thread] = []
        self._consumer: threading.Thread | None = None
        self._log = logger or get_logger()

        self._json_parts: list[str] = []
        self._in_json_object = False
        self._bracket_count = 0

    def start(self) -> ProcessOutputHandler:
        """Start reading both streams in the background."""
        if self._consumer is not None:
            return self
        for stream, name in self._streams:
            reader = threading.Thread(
                target=self._read_output, args=(stream, name), daemon=True
            )
            self._readers.append(reader)
            reader.start()
        self._consumer = threading.Thread(target=self._consume, daemon=True)
        self._consumer.start()
        return self

    def _emit(self, level: int, message: str, **fields: Any) -> None:
        self._log.log(level, message, extra={"fields": fields})

    def process_line(self, line: str) -> None:
        """Handle one line of process output."""
        trimmed = line.strip()
        if trimmed.startswith("{"):
            self._in_json_object = True
            self._json_parts = []
            self._bracket_count = 0

        if not self._in_json_object:
            if "SSE ↔ Child" in trimmed:
                self._emit(logging.DEBUG, "SSE connection event", event=trimmed)
            elif "POST to SSE transport" in trimmed:
                self._emit(logging.DEBUG, "SSE transport event", event=trimmed)
            elif trimmed:
                self._emit(logging.DEBUG, "Process output", message=trimmed)
            return

        self._json_parts.append(trimmed)
        self._bracket_count += trimmed.count("{") - trimmed.count("}")
        if self._bracket_count != 0:
            return

        self._in_json_object = False
        text = "".join(self._json_parts)
        self._json_parts = []
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            self._emit(logging.DEBUG, "Process output", raw=text)
            return

        method = data.get("method")
        error = data.get("error")
        if isinstance(method, str):
            self._emit(logging.DEBUG, "Process JSON message", method=method, data=data)
        elif isinstance(error, dict):
            self._emit(
                logging.ERROR,
                "Process error",
                code=error.get("code"),
                message=error.get("message"),
            )
        else:
            self._emit(logging.DEBUG, "Process output", json=data)

    def _read_output(self, stream: IO[Any], name: str) -> None:
        while not self._stopping.is_set():
            try:
                line = stream.readline()
            except (OSError, ValueError) as exc:
                self._emit(logging.ERROR, "Error reading from stream", stream=name, err=exc)
                return
            if not line:
                return
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")
            try:
                self._queue.put(line, timeout=WRITE_TIMEOUT)
            except queue.Full:
                self._emit(logging.WARNING, "Buffer full, dropping line", stream=name)

    def _readers_alive(self) -> bool:
        return any(reader.is_alive() for reader in self._readers)

    def _consume(self) -> None:
        try:
            while True:
                if self._stopping.is_set():
                    self._drain()
                    return
                try:
                    line = self._queue.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    if not self._readers_alive() and self._queue.empty():
                        return
                    continue
                self.process_line(line)
        finally:
            self._done.set()

    def _drain(self) -> None:
        deadline = time.monotonic() + DRAIN_TIMEOUT
        while time.monotonic() < deadline:
            try:
                line = self._queue.get_nowait()
            except queue.Empty:
                return
            self.process_line(line)

    def wait(self) -> None:
        """Block until both streams are exhausted or the handler is stopped."""
        if self._consumer is None:
            return
        self._done.wait()

    def stop(self) -> None:
        """Stop processing, handle what is already buffered, and wait for the end."""
        self._stopping.set()
        if self._consumer is None:
            self._done.set()
            return
        self._done.wait()


def set_priority(pid: int) -> None:
    """Set the nice value of process ``pid`` to 10."""
    os.setpriority(os.PRIO_PROCESS, pid, 10)


async def health_check(url: str, timeout: float) -> int:
    """Poll ``url`` until any HTTP response arrives and return its status.

    Raises TimeoutError if nothing answers within ``timeout`` seconds.
    """
    try:
        async with asyncio.timeout(timeout):
            async with aiohttp.ClientSession() as session:
                while True:
                    await asyncio.sleep(_HEALTH_INTERVAL)
                    try:
                        async with session.get(url) as response:
                            return response.status
                    except (aiohttp.ClientError, OSError):
                        continue
    except TimeoutError as exc:
        raise TimeoutError("health check failed: deadline exceeded") from exc