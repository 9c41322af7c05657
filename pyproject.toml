[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcpsseproxy"
version = "0.1.0"
description = "Authenticated, rate-limited HTTP proxy that starts a gateway process for each SSE connection to an MCP stdio server"
requires-python = ">=3.11"
keywords = ["mcp", "sse", "proxy", "server-sent-events", "gateway", "aiohttp"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
mcpsseproxy = "mcpsseproxy.main:main"

[tool.hatch.build.targets.wheel]
packages = ["mcpsseproxy"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
ignore_missing_imports = true
