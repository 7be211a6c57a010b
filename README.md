# ratewarden

Per-user rate limiting for WSGI applications and gRPC servers.

Each request goes through three checks, in this order:

1. a **global** limit per user, with the same settings for HTTP and gRPC;
2. a **transport** limit per user (HTTP-only or gRPC-only);
3. a **per-method** limit per user, for each HTTP `METHOD:path` or gRPC full
   method name.

By default the limits are in-memory token buckets. When Memcache servers are
configured, the global, HTTP, gRPC and HTTP per-endpoint limits become
per-user counters in Memcache. These counters expire after two seconds, so
several processes can share them. The gRPC per-method limit always stays in
memory.

## Installation

```
pip install ratewarden
```

## Configuration

`ratewarden.config.load(environ=None)` reads the file named by
`RATE_LIMIT_CONFIG_PATH` when that variable is set. The file may be `.json`,
`.yaml` or `.yml`. When the variable is not set, `load` calls
`load_from_env(environ)`. Both functions read `os.environ` unless you pass a
mapping. `default_config()` returns the built-in defaults as a `Config`
dataclass.

Environment variables:

| Variable | Default |
| --- | --- |
| `RATE_LIMIT_USER_HEADER` | `X-User-ID` |
| `RATE_LIMIT_GRPC_METADATA_KEY` | `user-id` |
| `RATE_LIMIT_PER_ENDPOINT` | `10` |
| `RATE_LIMIT_GLOBAL` | `100` |
| `RATE_LIMIT_GLOBAL_BURST_SIZE` | `10` |
| `RATE_LIMIT_BURST_SIZE` | unset; when set, sets both the global and the per-endpoint burst |
| `RATE_LIMIT_PER_ENDPOINT_BURST_SIZE` | `10` |
| `RATE_LIMIT_HTTP_RATE` / `RATE_LIMIT_HTTP_BURST_SIZE` | `50` / `5` |
| `RATE_LIMIT_GRPC_RATE` / `RATE_LIMIT_GRPC_BURST_SIZE` | `50` / `5` |
| `MEMCACHE_SERVERS` | empty (comma-separated list); empty turns distributed limiting off |
| `MEMCACHE_TIMEOUT` | `100ms` (a duration such as `250ms`, `1s` or `1m30s`) |
| `MEMCACHE_MAX_IDLE_CONNECTIONS` | `100` |
| `MEMCACHE_FAILURE_MODE` | `allow` (or `deny`) |
| `MEMCACHE_KEY_PREFIX` | `rate_limit` |

Rates, burst sizes and the idle-connection count must be positive integers.
The per-endpoint rate may not exceed the global rate. Any value that breaks
these rules raises `ratewarden.config.ConfigError`, and so does any value that
cannot be parsed. `ConfigError` is a subclass of `ValueError`.

An example configuration file in YAML:

```yaml
rate_limits:
  global: {rate: 100, burst: 10}
  http:
    rate: 50
    burst: 5
    default_method_rate: 10
    methods:
      "GET:/api/users": 20
  grpc:
    rate: 30
    burst: 3
    default_method_rate: 5
    methods:
      /UserService/GetUser: 15
user_identification:
  http_header: X-User-ID
  grpc_metadata_key: user-id
memcache:
  servers: ["127.0.0.1:11211"]
  timeout: 100ms
  max_idle_connections: 100
  failure_mode: allow
  key_prefix: rate_limit
```

Rules for configuration files:

- Every `rate`, `burst` and `default_method_rate` in `rate_limits` must be
  positive. The same checks that apply to environment variables apply here.
- The two `user_identification` values are used exactly as written. If you
  leave them out, they become empty strings.
- The per-endpoint rate and burst come from `http.default_method_rate` and
  `http.burst`.
- The `memcache` section is read only when `servers` is non-empty.

Other `Config` helpers:

- `refill_interval(rate)` gives the seconds between tokens.
- `is_distributed_enabled()` tells whether distributed limiting is on.
- `memcache_key(scope, user_id, identifier="")` builds keys of the form
  `prefix:scope:user[:identifier]`.

## WSGI

```python
from ratewarden.config import load
from ratewarden.middleware import RateLimitMiddleware

limiter = RateLimitMiddleware(load())
application = limiter.wrap(application)
```

The middleware takes the user from the configured header. A request without
that header, or with an empty one, counts as user `anonymous`. The endpoint is
`REQUEST_METHOD:SCRIPT_NAME+PATH_INFO`.

A request over a limit gets `429 Too Many Requests` and a JSON body such as
`{"error": "rate limit exceeded", "type": "global"}`. The `type` is `global`,
`http` or `per-method`. The response carries these headers:

- `X-RateLimit-Limit`: the rate configured for that limit type.
  `rate_limit_for` returns this value. For `per-method` it is the default
  method rate.
- `Retry-After`: from `retry_after_seconds()`, the whole seconds of the slower
  refill interval of the per-endpoint and global rates. This value is `0` when
  both rates are above one per second.

`reset()` clears the in-memory limiters.

## gRPC

```python
import grpc
from concurrent import futures
from ratewarden.config import load
from ratewarden.interceptor import RateLimitInterceptor

server = grpc.server(
    futures.ThreadPoolExecutor(max_workers=8),
    interceptors=[RateLimitInterceptor(load())],
)
```

The interceptor checks only unary-unary calls. Streaming calls pass through
unchecked. A call over a limit is aborted with `RESOURCE_EXHAUSTED` and one of
these messages:

- `rate limit exceeded: global`
- `rate limit exceeded: grpc`
- `rate limit exceeded: per-method`

The user comes from the configured metadata key, matched without regard to
case. Whitespace around the value is removed. A missing or blank value counts
as user `anonymous`. You can call `check(user_id, method)` directly. It
returns the rejection message, or `None` when the call is allowed.

## Building blocks

- `ratewarden.token_bucket.TokenBucket(capacity, refill_rate)` is a
  thread-safe token bucket. Its methods are `allow()`, `remaining()` and
  `reset()`.
- `ratewarden.limiters` holds the in-memory limiters:
  - `GlobalLimiter`, `HTTPLimiter` and `GRPCLimiter` keep one bucket per user.
  - `PerEndpointLimiter` keeps one bucket per user and endpoint.
- `ratewarden.interceptor.InMemoryGRPCMethodLimiter` keeps one bucket per user
  and gRPC method.
- `ratewarden.distributed` holds the counter limiters:
  - `DistributedGlobalLimiter`, `DistributedHTTPLimiter`,
    `DistributedGRPCLimiter` and `DistributedPerEndpointLimiter`.
  - They count requests in a counter store. When the store fails, they allow
    or deny the request according to the failure mode.
  - Their `reset()` does nothing.
- `ratewarden.memcache_client` holds the counter stores:
  - `CounterStore` is the store interface.
  - `MemcacheClient` speaks the memcached text protocol. It keeps a small pool
    of idle connections and picks a server by a CRC32 hash of the key. It
    raises `MemcacheError` on failure.
- `ratewarden.memcache_mock.MockMemcacheClient` is an in-process
  `CounterStore` for tests.
- `ratewarden.factory.LimiterFactory` picks in-memory or distributed limiters
  from the configuration.

## What it does not do

`ratewarden` is a library only. It has no command-line program and runs no
server of its own. You wrap your own WSGI application or gRPC server with it.
It does not run or manage Memcache either: for distributed limits, you point
it at servers that are already running.