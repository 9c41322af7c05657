"""Lifecycle of gateway instances and the sessions routed to them."""

from __future__ import annotations

import signal
import subprocess
import threading
import time
from typing import Callable

from .config import ProcessConfig, default_process_config
from .locks import try_lock
from .logger import get_logger
from .models import GatewayInstance, SessionInfo
from .ports import PortManager

_LOCK_TIMEOUT = 5.0
_CLEAN_EXITS = (0, -signal.SIGTERM, -signal.SIGKILL)


class SessionError(Exception):
    """A session could not be created."""


class Manager:
    """Tracks gateway instances and sessions, expiring and stopping them."""

    def __init__(
        self,
        config: ProcessConfig | None = None,
        *,
        port_manager: PortManager | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or default_process_config()
        self.max_lifetime = config.max_lifetime.total_seconds()
        self.max_sessions = config.max_sessions
        self.max_total_sessions = config.max_total_sessions
        self.session_timeout = config.session_timeout.total_seconds()
        self.cleanup_interval = config.cleanup_interval.total_seconds()
        self.graceful_timeout = config.graceful_timeout.total_seconds()
        self.port_manager = port_manager or PortManager(10000, 65535)
        self._clock = clock
        self._instances: dict[str, GatewayInstance] = {}
        self._sessions: dict[str, SessionInfo] = {}
        self._instances_lock = threading.RLock()
        self._sessions_lock = threading.RLock()
        self._stop = threading.Event()
        self._cleanup_thread: threading.Thread | None = None
        self._log = get_logger()

    def start(self) -> Manager:
        """Start the periodic cleanup of expired processes and sessions."""
        if self._cleanup_thread is None:
            self._stop.clear()
            self._cleanup_thread = threading.Thread(target=self._cleanup_loop, daemon=True)
            self._cleanup_thread.start()
        return self

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            self.cleanup_expired_processes()
            self.cleanup_expired_sessions()

    def cleanup_expired_sessions(self) -> None:
        """Drop idle sessions whose instance has no active sessions."""
        with self._sessions_lock:
            now = self._clock()
            for sid, session in list(self._sessions.items()):
                if (
                    now - session.last_used > self.session_timeout
                    and session.instance is not None
                    and session.instance.sessions <= 0
                ):
                    self._log.info(
                        "Cleaning up expired session", extra={"fields": {"session_id": sid}}
                    )
                    del self._sessions[sid]

    def cleanup_expired_processes(self) -> None:
        """Terminate instances that have outlived the maximum lifetime."""
        with self._instances_lock:
            now = self._clock()
            for key, instance in list(self._instances.items()):
                if now - instance.start_time > self.max_lifetime:
                    self._log.info(
                        "Terminating expired process", extra={"fields": {"cmd": key}}
                    )
                    self.terminate_instance(key, instance)

    def terminate_instance(self, key: str, instance: GatewayInstance) -> None:
        """Stop an instance, release its port and forget it and its sessions."""
        if instance.cancel is not None:
            instance.cancel()

        process = instance.process
        if process is not None:
            self._stop_process(process)

        port = instance.port()
        if port is not None:
            self.port_manager.release_port(port)

        self._forget(key, instance)

    def _stop_process(self, process: subprocess.Popen) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        except OSError as exc:
            self._log.error(
                "Failed to send SIGTERM to process", extra={"fields": {"err": exc}}
            )

        try:
            returncode = process.wait(timeout=self.graceful_timeout)
        except subprocess.TimeoutExpired:
            self._log.warning("Process did not exit gracefully, forcing kill")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            except OSError as exc:
                self._log.error("Failed to kill process", extra={"fields": {"err": exc}})
            return

        if returncode in _CLEAN_EXITS:
            self._log.info("Process terminated gracefully")
        else:
            self._log.error(
                "Process exited with error",
                extra={"fields": {"err": f"exit status {returncode}"}},
            )

    def _forget(self, key: str, instance: GatewayInstance) -> None:
        if not try_lock(self._instances_lock, _LOCK_TIMEOUT):
            self._log.error("Failed to acquire instance lock for cleanup")
            return
        try:
            if self._instances.get(key) is instance:
                del self._instances[key]
        finally:
            self._instances_lock.release()

        if not try_lock(self._sessions_lock, _LOCK_TIMEOUT):
            self._log.error("Failed to acquire session lock for cleanup")
            return
        try:
            for sid, session in list(self._sessions.items()):
                if session.instance is instance:
                    if instance.sessions > 0:
                        instance.sessions -= 1
                    del self._sessions[sid]
        finally:
            self._sessions_lock.release()

    def shutdown(self) -> None:
        """Stop the cleanup loop and terminate every managed instance."""
        self._stop.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join()
            self._cleanup_thread = None
        with self._instances_lock:
            for key, instance in list(self._instances.items()):
                self._log.info("Shutting down instance", extra={"fields": {"cmd": key}})
                self.terminate_instance(key, instance)

    def create_session(self, session_id: str, instance: GatewayInstance) -> SessionInfo:
        """Register a new session on ``instance``; raise SessionError if not allowed."""
        with self._sessions_lock:
            if session_id in self._sessions:
                raise SessionError("session already exists")
            if len(self._sessions) >= self.max_total_sessions:
                raise SessionError("maximum total sessions reached")
            if instance.sessions >= self.max_sessions:
                raise SessionError("maximum sessions per instance reached")
            session = SessionInfo(instance)
            self._sessions[session_id] = session
            instance.sessions += 1
            return session

    def touch_session(self, session_id: str) -> bool:
        """Mark a session as used now; return False if it is unknown."""
        if not try_lock(self._sessions_lock, _LOCK_TIMEOUT):
            self._log.error("Failed to acquire session lock for touch")
            return False
        try:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.touch()
            return True
        finally:
            self._sessions_lock.release()

    def get_instance(self, key: str) -> GatewayInstance | None:
        """Return the instance registered under ``key``, if any."""
        with self._instances_lock:
            return self._instances.get(key)

    def get_session(self, session_id: str) -> SessionInfo | None:
        """Return the session with ``session_id``, if any."""
        with self._sessions_lock:
            return self._sessions.get(session_id)

    def add_instance(self, key: str, instance: GatewayInstance) -> None:
        """Register ``instance`` under ``key``, replacing any previous one."""
        with self._instances_lock:
            self._instances[key] = instance

    def get_port(self) -> int:
        """Reserve a free port for a new instance."""
        return self.port_manager.get_port()

    def release_port(self, port: int) -> None:
        """Return ``port`` to the pool."""
        self.port_manager.release_port(port)

    def remove_instance(self, key: str) -> None:
        """Forget the instance registered under ``key``."""
        with self._instances_lock:
            self._instances.pop(key, None)