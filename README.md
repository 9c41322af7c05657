# mcpsseproxy

An HTTP proxy that puts MCP stdio servers behind Server-Sent Events. Each new
SSE connection starts its own `supergateway` process on a free local port and
waits until it answers. The proxy then relays the event stream and the message
POSTs for that connection to the process. It stops the process when the stream
ends.

## Features

- An allow-list of server commands (`mcpsseproxy.config.ALLOWED_COMMANDS`). The
  first path segment, URL-encoded, picks the command, for example
  `/npx%20-y%20%40upstash%2Fcontext7-mcp%40latest/sse`. Unknown commands get
  403, and a badly encoded segment gets 400.
- Bearer-token authentication against the `MAXIM_SECRET` environment variable.
  `/health` and `OPTIONS` requests skip this check. If `MAXIM_SECRET` is unset,
  every other request gets 500.
- A token-bucket rate limit for each client IP: 100 requests per minute with a
  burst of 10. The client IP is taken from `X-Forwarded-For` when present and
  from the peer address otherwise. Clients over the limit get 429.
- Security and CORS headers on every response. `OPTIONS` preflights are
  answered directly, and `/health` returns 200.
- Request headers named `ENV_<NAME>` become environment variables for the
  gateway process. Protected names such as `PATH`, `HOME` and `TOKEN` are
  ignored (`mcpsseproxy.config.BLACKLISTED_ENV_VARS`).
- Session limits from `default_process_config()`: at most 100 sessions per
  instance and 1000 in total. Sessions idle for 30 minutes expire, and
  instances are stopped after one hour. Cleanup runs every minute. A process is
  sent SIGTERM and is killed if it has not exited after 10 seconds.
- Heartbeat comments (`: heartbeat`) every 15 seconds keep SSE streams open.
- Upstream connections are retried up to 3 times.
- Gateway output on stdout and stderr is parsed and logged. Multi-line JSON
  messages are gathered into single log entries.

## Installation

```
pip install mcpsseproxy
```

The `supergateway` executable must be on `PATH`. The package uses process
groups and process priorities, so it runs on POSIX systems only.

## Running

```
MAXIM_SECRET=secret LOG_LEVEL=debug mcpsseproxy
```

Options:

- `--host` sets the address to listen on. By default it listens on all
  addresses.
- `--port` sets the port to listen on. The default is 8000.

`LOG_LEVEL` takes `DEBUG`, `INFO`, `WARN` or `ERROR`, in any case. The default
level is `INFO`. Logs go to stderr as `key=value` lines, in colour when stderr
is a terminal. On SIGINT or SIGTERM the server stops and then terminates every
gateway process still running.

A client opens a stream like this:

```
GET /<encoded command>/sse
Authorization: Bearer secret
```

It then posts messages to `/<encoded command>/message?sessionId=<id>`. The
session is created on the running instance the first time its id is seen.
Any other method or path under the command prefix is reverse-proxied to the
running instance for that command.

## Embedding

```python
from aiohttp import web

from mcpsseproxy.config import default_process_config
from mcpsseproxy.main import create_app
from mcpsseproxy.manager import Manager
from mcpsseproxy.ratelimit import RateLimiter

manager = Manager(default_process_config()).start()
limiter = RateLimiter(100 / 60, 10)
app = create_app(manager, limiter)
try:
    web.run_app(app, port=8000)
finally:
    manager.shutdown()
```

`Manager.start()` starts the periodic cleanup thread. `Manager.shutdown()`
stops that thread and terminates all instances.

## Limitations

- Only one instance per command is registered at a time. A new SSE connection
  for the same command replaces the earlier one for message routing.
- The `--baseUrl` given to each gateway is always `http://localhost:8000/<command>`,
  whatever `--host` and `--port` are set to.
- The proxy does not terminate TLS itself. It adds `Strict-Transport-Security`
  only when the request arrived over TLS.
- The allowed commands and protected environment names are fixed in
  `mcpsseproxy.config`. There is no configuration file.

## Development

```
pip install -e ".[test]"
pytest
```