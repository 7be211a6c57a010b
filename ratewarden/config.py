"""Rate limiter configuration: defaults, environment variables and config files."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    """Raised when configuration values are missing, malformed or inconsistent."""


class FailureMode(str, Enum):
    """Behaviour of distributed limiters when the counter store is unavailable."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass
class Config:
    """Rate limiter settings. Durations are expressed in seconds."""

    user_header: str = "X-User-ID"
    grpc_metadata_key: str = "user-id"
    per_endpoint_rate: int = 10
    global_rate: int = 100
    global_burst_size: int = 10
    per_endpoint_burst_size: int = 10
    http_rate: int = 50
    http_burst_size: int = 5
    grpc_rate: int = 50
    grpc_burst_size: int = 5
    http_methods: dict[str, int] = field(default_factory=dict)
    http_default_method_rate: int = 10
    grpc_methods: dict[str, int] = field(default_factory=dict)
    grpc_default_method_rate: int = 10
    memcache_servers: list[str] = field(default_factory=list)
    memcache_timeout: float = 0.1
    memcache_max_idle_conns: int = 100
    memcache_failure_mode: FailureMode = FailureMode.ALLOW
    memcache_key_prefix: str = "rate_limit"

    def refill_interval(self, rate: int) -> float:
        """Seconds between two token refills at ``rate`` tokens per second."""
        second_ns = 1_000_000_000
        if rate > 0:
            interval_ns = second_ns // rate
        else:
            interval_ns = -(second_ns // -rate)
        return interval_ns / 1e9

    def is_distributed_enabled(self) -> bool:
        """True when memcache servers are configured."""
        return bool(self.memcache_servers)

    def memcache_key(self, scope: str, user_id: str, identifier: str = "") -> str:
        """Build a key of the form ``prefix:scope:user[:identifier]``."""
        key = f"{self.memcache_key_prefix}:{scope}:{user_id}"
        if identifier:
            key = f"{key}:{identifier}"
        return key


def default_config() -> Config:
    """Return the built-in default configuration."""
    return Config()


_INT_RE = re.compile(r"[+-]?[0-9]+")

_DURATION_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_TERM = re.compile(r"([0-9]*(?:\.[0-9]*)?)([^0-9.]*)")
_MAX_DURATION_NS = 2**63 - 1


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``"100ms"`` or ``"1h30m"`` into seconds."""
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ConfigError(f"invalid duration {text!r}")

    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_TERM.match(rest, pos)
        number, unit = match.group(1), match.group(2)
        if not any(ch.isdigit() for ch in number):
            raise ConfigError(f"invalid duration {text!r}")
        if not unit:
            raise ConfigError(f"missing unit in duration {text!r}")
        if unit not in _DURATION_UNITS_NS:
            raise ConfigError(f"unknown unit {unit!r} in duration {text!r}")
        total += Decimal(number) * _DURATION_UNITS_NS[unit]
        pos = match.end()

    nanoseconds = int(total)
    if nanoseconds > _MAX_DURATION_NS:
        raise ConfigError(f"invalid duration {text!r}")
    if negative:
        nanoseconds = -nanoseconds
    return nanoseconds / 1e9


def _split_servers(servers: str) -> list[str]:
    return [part.strip() for part in servers.split(",") if part.strip()]


def _env_string(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(name, "") or default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return default
    if not _INT_RE.fullmatch(raw):
        raise ConfigError(f"invalid {name} value {raw!r}")
    value = int(raw)
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _parse_failure_mode(raw: str, error_template: str) -> FailureMode:
    try:
        return FailureMode(raw)
    except ValueError:
        raise ConfigError(error_template.format(raw=raw)) from None


def load_from_env(environ: Mapping[str, str] | None = None) -> Config:
    """Build a configuration from environment variables over the defaults."""
    env = os.environ if environ is None else environ
    config = default_config()

    config.user_header = _env_string(env, "RATE_LIMIT_USER_HEADER", config.user_header)
    config.per_endpoint_rate = _env_int(env, "RATE_LIMIT_PER_ENDPOINT", config.per_endpoint_rate)
    config.global_rate = _env_int(env, "RATE_LIMIT_GLOBAL", config.global_rate)
    config.global_burst_size = _env_int(
        env, "RATE_LIMIT_GLOBAL_BURST_SIZE", config.global_burst_size
    )
    burst_size = _env_int(env, "RATE_LIMIT_BURST_SIZE", 0)
    if burst_size > 0:
        config.global_burst_size = burst_size
        config.per_endpoint_burst_size = burst_size
    config.per_endpoint_burst_size = _env_int(
        env, "RATE_LIMIT_PER_ENDPOINT_BURST_SIZE", config.per_endpoint_burst_size
    )

    config.http_rate = _env_int(env, "RATE_LIMIT_HTTP_RATE", config.http_rate)
    config.http_burst_size = _env_int(env, "RATE_LIMIT_HTTP_BURST_SIZE", config.http_burst_size)
    config.grpc_rate = _env_int(env, "RATE_LIMIT_GRPC_RATE", config.grpc_rate)
    config.grpc_burst_size = _env_int(env, "RATE_LIMIT_GRPC_BURST_SIZE", config.grpc_burst_size)
    config.grpc_metadata_key = _env_string(
        env, "RATE_LIMIT_GRPC_METADATA_KEY", config.grpc_metadata_key
    )

    servers = env.get("MEMCACHE_SERVERS", "")
    if servers:
        config.memcache_servers = _split_servers(servers)

    timeout = env.get("MEMCACHE_TIMEOUT", "")
    if timeout:
        try:
            config.memcache_timeout = _parse_duration(timeout)
        except ConfigError as exc:
            raise ConfigError(f"invalid MEMCACHE_TIMEOUT value {timeout!r}: {exc}") from exc

    max_idle = env.get("MEMCACHE_MAX_IDLE_CONNECTIONS", "")
    if max_idle:
        if not _INT_RE.fullmatch(max_idle):
            raise ConfigError(f"invalid MEMCACHE_MAX_IDLE_CONNECTIONS value {max_idle!r}")
        value = int(max_idle)
        if value <= 0:
            raise ConfigError(f"MEMCACHE_MAX_IDLE_CONNECTIONS must be positive, got {value}")
        config.memcache_max_idle_conns = value

    failure_mode = env.get("MEMCACHE_FAILURE_MODE", "")
    if failure_mode:
        config.memcache_failure_mode = _parse_failure_mode(
            failure_mode,
            "invalid MEMCACHE_FAILURE_MODE value {raw!r}, must be 'allow' or 'deny'",
        )

    config.memcache_key_prefix = _env_string(env, "MEMCACHE_KEY_PREFIX", config.memcache_key_prefix)

    if config.per_endpoint_rate > config.global_rate:
        raise ConfigError(
            f"per-endpoint rate ({config.per_endpoint_rate}) cannot exceed "
            f"global rate ({config.global_rate})"
        )
    return config


@dataclass(frozen=True)
class _TierSettings:
    rate: int = 0
    burst: int = 0
    default_method_rate: int = 0
    methods: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class _MemcacheSettings:
    servers: list[str] = field(default_factory=list)
    timeout: str = ""
    max_idle_connections: int = 0
    failure_mode: str = ""
    key_prefix: str = ""


@dataclass(frozen=True)
class _FileSettings:
    global_tier: _TierSettings
    http: _TierSettings
    grpc: _TierSettings
    http_header: str
    grpc_metadata_key: str
    memcache: _MemcacheSettings


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(value).__name__}")
    return value


def _int_field(section: dict[str, Any], key: str, where: str) -> int:
    value = section.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}.{key}: expected an integer, got {value!r}")
    return value


def _str_field(section: dict[str, Any], key: str, where: str) -> str:
    value = section.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{where}.{key}: expected a string, got {value!r}")
    return value


def _methods_field(section: dict[str, Any], where: str) -> dict[str, int]:
    methods = _mapping(section.get("methods"), f"{where}.methods")
    result: dict[str, int] = {}
    for name, rate in methods.items():
        if not isinstance(name, str):
            raise ConfigError(f"{where}.methods: expected string keys, got {name!r}")
        if isinstance(rate, bool) or not isinstance(rate, int):
            raise ConfigError(f"{where}.methods[{name!r}]: expected an integer, got {rate!r}")
        result[name] = rate
    return result


def _servers_field(section: dict[str, Any], where: str) -> list[str]:
    servers = section.get("servers")
    if servers is None:
        return []
    if not isinstance(servers, list) or not all(isinstance(s, str) for s in servers):
        raise ConfigError(f"{where}.servers: expected a list of strings")
    return list(servers)


def _decode_tier(section: dict[str, Any], where: str, with_methods: bool) -> _TierSettings:
    if not with_methods:
        return _TierSettings(
            rate=_int_field(section, "rate", where),
            burst=_int_field(section, "burst", where),
        )
    return _TierSettings(
        rate=_int_field(section, "rate", where),
        burst=_int_field(section, "burst", where),
        default_method_rate=_int_field(section, "default_method_rate", where),
        methods=_methods_field(section, where),
    )


def _decode_file_settings(raw: Any) -> _FileSettings:
    root = _mapping(raw, "config")
    limits = _mapping(root.get("rate_limits"), "rate_limits")
    identification = _mapping(root.get("user_identification"), "user_identification")
    memcache = _mapping(root.get("memcache"), "memcache")
    return _FileSettings(
        global_tier=_decode_tier(
            _mapping(limits.get("global"), "rate_limits.global"), "rate_limits.global", False
        ),
        http=_decode_tier(_mapping(limits.get("http"), "rate_limits.http"), "rate_limits.http", True),
        grpc=_decode_tier(_mapping(limits.get("grpc"), "rate_limits.grpc"), "rate_limits.grpc", True),
        http_header=_str_field(identification, "http_header", "user_identification"),
        grpc_metadata_key=_str_field(identification, "grpc_metadata_key", "user_identification"),
        memcache=_MemcacheSettings(
            servers=_servers_field(memcache, "memcache"),
            timeout=_str_field(memcache, "timeout", "memcache"),
            max_idle_connections=_int_field(memcache, "max_idle_connections", "memcache"),
            failure_mode=_str_field(memcache, "failure_mode", "memcache"),
            key_prefix=_str_field(memcache, "key_prefix", "memcache"),
        ),
    )


def _require_positive(value: int, label: str) -> None:
    if value <= 0:
        raise ConfigError(f"{label} must be positive, got {value}")


def _apply_file_settings(config: Config, settings: _FileSettings) -> None:
    config.user_header = settings.http_header
    config.grpc_metadata_key = settings.grpc_metadata_key

    _require_positive(settings.global_tier.rate, "global rate")
    _require_positive(settings.global_tier.burst, "global burst")
    config.global_rate = settings.global_tier.rate
    config.global_burst_size = settings.global_tier.burst

    http = settings.http
    _require_positive(http.rate, "HTTP rate")
    _require_positive(http.burst, "HTTP burst")
    _require_positive(http.default_method_rate, "HTTP default method rate")
    config.http_rate = http.rate
    config.http_burst_size = http.burst
    config.http_default_method_rate = http.default_method_rate
    config.http_methods = dict(http.methods)

    grpc = settings.grpc
    _require_positive(grpc.rate, "gRPC rate")
    _require_positive(grpc.burst, "gRPC burst")
    _require_positive(grpc.default_method_rate, "gRPC default method rate")
    config.grpc_rate = grpc.rate
    config.grpc_burst_size = grpc.burst
    config.grpc_default_method_rate = grpc.default_method_rate
    config.grpc_methods = dict(grpc.methods)

    config.per_endpoint_rate = config.http_default_method_rate
    config.per_endpoint_burst_size = config.http_burst_size

    memcache = settings.memcache
    if not memcache.servers:
        return
    config.memcache_servers = list(memcache.servers)
    if memcache.timeout:
        try:
            config.memcache_timeout = _parse_duration(memcache.timeout)
        except ConfigError as exc:
            raise ConfigError(f"invalid memcache timeout {memcache.timeout!r}: {exc}") from exc
    if memcache.max_idle_connections > 0:
        config.memcache_max_idle_conns = memcache.max_idle_connections
    if memcache.failure_mode:
        config.memcache_failure_mode = _parse_failure_mode(
            memcache.failure_mode,
            "invalid memcache failure mode {raw!r}, must be 'allow' or 'deny'",
        )
    if memcache.key_prefix:
        config.memcache_key_prefix = memcache.key_prefix


def _extension(path: str) -> str:
    name = os.path.basename(path)
    index = name.rfind(".")
    return name[index:] if index >= 0 else ""


def load_from_file(path: str | os.PathLike[str]) -> Config:
    """Load configuration from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = os.fspath(path)
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ConfigError(f"failed to read config file {path!r}: {exc}") from exc

    ext = _extension(path)
    if ext == ".json":
        kind = "JSON"
        try:
            raw = json.loads(data)
        except ValueError as exc:
            raise ConfigError(f"failed to parse JSON config file {path!r}: {exc}") from exc
    elif ext in (".yaml", ".yml"):
        kind = "YAML"
        try:
            raw = yaml.safe_load(data)
        except yaml.YAMLError as exc:
            raise ConfigError(f"failed to parse YAML config file {path!r}: {exc}") from exc
    else:
        raise ConfigError(
            f"unsupported config file extension {ext!r}, supported: .json, .yaml, .yml"
        )

    try:
        settings = _decode_file_settings(raw)
    except ConfigError as exc:
        raise ConfigError(f"failed to parse {kind} config file {path!r}: {exc}") from exc

    config = default_config()
    try:
        _apply_file_settings(config, settings)
    except ConfigError as exc:
        raise ConfigError(f"invalid config file {path!r}: {exc}") from exc
    return config


def load(environ: Mapping[str, str] | None = None) -> Config:
    """Load from ``RATE_LIMIT_CONFIG_PATH`` if set, otherwise from the environment."""
    env = os.environ if environ is None else environ
    config_path = env.get("RATE_LIMIT_CONFIG_PATH", "")
    if config_path:
        return load_from_file(config_path)
    return load_from_env(env)