"""Timeouts, process limits, allowed commands and protected environment names."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class TimeoutConfig:
    """Timeouts for the various proxy operations."""

    sse_timeout: timedelta
    request_timeout: timedelta
    shutdown_timeout: timedelta
    health_check_period: timedelta


@dataclass(frozen=True)
class ProcessConfig:
    """Limits and intervals used by the process manager."""

    max_lifetime: timedelta
    max_sessions: int
    max_total_sessions: int
    session_timeout: timedelta
    cleanup_interval: timedelta
    graceful_timeout: timedelta


def default_timeout_config() -> TimeoutConfig:
    """Return the default timeout configuration."""
    return TimeoutConfig(
        sse_timeout=timedelta(hours=1),
        request_timeout=timedelta(minutes=3),
        shutdown_timeout=timedelta(seconds=60),
        health_check_period=timedelta(seconds=30),
    )


def default_process_config() -> ProcessConfig:
    """Return the default process manager configuration."""
    return ProcessConfig(
        max_lifetime=timedelta(hours=1),
        max_sessions=100,
        max_total_sessions=1000,
        session_timeout=timedelta(minutes=30),
        cleanup_interval=timedelta(minutes=1),
        graceful_timeout=timedelta(seconds=10),
    )


ALLOWED_COMMANDS: dict[str, str] = {
    "npx -y @upstash/context7-mcp@latest": "npx -y @upstash/context7-mcp@latest",
    "npx -y @maximai/mcp-server@latest": "npx -y @maximai/mcp-server@latest",
    "docker run -i --rm -e GITHUB_PERSONAL_ACCESS_TOKEN ghcr.io/github/github-mcp-server": (
        "docker run -i --rm -e GITHUB_PERSONAL_ACCESS_TOKEN ghcr.io/github/github-mcp-server"
    ),
}

BLACKLISTED_ENV_VARS: frozenset[str] = frozenset(
    {
        "PATH",
        "HOME",
        "USER",
        "SHELL",
        "PWD",
        "TMPDIR",
        "TEMP",
        "TMP",
        "HOSTNAME",
        "LANG",
        "LC_ALL",
        "SUDO_USER",
        "SUDO_COMMAND",
        "SSH_AUTH_SOCK",
        "SSH_AGENT_PID",
        "AWS_ACCESS_KEY",
        "AWS_SECRET_KEY",
        "AWS_SESSION_TOKEN",
        "API_KEY",
        "SECRET_KEY",
        "PRIVATE_KEY",
        "PASSWORD",
        "TOKEN",
    }
)


def is_allowed_command(key: str) -> bool:
    """Return True if the decoded command key may be started."""
    return key in ALLOWED_COMMANDS


def is_blacklisted_env(name: str) -> bool:
    """Return True if the environment variable must never be overwritten."""
    return name in BLACKLISTED_ENV_VARS