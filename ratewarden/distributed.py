"""Rate limiters that keep their counters in a shared memcache store."""

from __future__ import annotations

import logging

from ratewarden.config import Config, FailureMode
from ratewarden.memcache_client import CounterStore, MemcacheError

logger = logging.getLogger(__name__)

SCOPE_GLOBAL = "global"
SCOPE_HTTP = "http"
SCOPE_GRPC = "grpc"
SCOPE_ENDPOINT = "endpoint"

# Counters live slightly longer than the one-second window to cover boundaries.
KEY_EXPIRATION = 2.0
WINDOW_DURATION = 1.0


def _failure_result(mode: FailureMode | str) -> bool:
    """Decision taken when the store fails: deny only in fail-closed mode."""
    return mode != FailureMode.DENY


class _StoreLimiter:
    """State shared by every counter-based limiter."""

    expiration: float = KEY_EXPIRATION
    window_duration: float = WINDOW_DURATION

    def __init__(self, client: CounterStore, config: Config, scope: str, rate: int) -> None:
        self.client = client
        self.config = config
        self.scope = scope
        self.rate = rate


class CounterLimiter(_StoreLimiter):
    """Per-user fixed-window limiter counting requests in the store."""

    def check_rate_limit(self, count: int) -> bool:
        """True when ``count`` is within the configured rate."""
        return count <= self.rate

    def handle_failure(self) -> bool:
        """Allow or deny according to the configured failure mode."""
        return _failure_result(self.config.memcache_failure_mode)

    def _log_error(self, user_id: str, error: Exception) -> None:
        logger.error(
            "memcache error incrementing %s counter for user %s: %s",
            self.scope,
            user_id,
            error,
        )

    def allow(self, user_id: str) -> bool:
        """Count one request for ``user_id`` and report whether it is allowed."""
        key = self.config.memcache_key(self.scope, user_id)
        try:
            count = self.client.increment_with_expiration(key, 1, self.expiration)
        except MemcacheError as exc:
            self._log_error(user_id, exc)
            return self.handle_failure()
        return self.check_rate_limit(count)

    def remaining_tokens(self, user_id: str) -> int:
        """Requests left for ``user_id`` in the current window."""
        key = self.config.memcache_key(self.scope, user_id)
        try:
            count = self.client.get(key)
        except MemcacheError as exc:
            self._log_error(user_id, exc)
            return self.rate
        return max(self.rate - count, 0)

    def reset(self) -> None:
        """Does nothing: the state lives in the store."""


class DistributedGlobalLimiter(CounterLimiter):
    """Global per-user limit across all endpoints."""

    def __init__(self, client: CounterStore, config: Config) -> None:
        super().__init__(client, config, SCOPE_GLOBAL, config.global_rate)


class DistributedHTTPLimiter(CounterLimiter):
    """Per-user limit on HTTP requests."""

    def __init__(self, client: CounterStore, config: Config) -> None:
        super().__init__(client, config, SCOPE_HTTP, config.http_rate)


class DistributedGRPCLimiter(CounterLimiter):
    """Per-user limit on gRPC requests."""

    def __init__(self, client: CounterStore, config: Config) -> None:
        super().__init__(client, config, SCOPE_GRPC, config.grpc_rate)


class DistributedPerEndpointLimiter(_StoreLimiter):
    """Per-user limit on each ``method:path`` endpoint."""

    def __init__(self, client: CounterStore, config: Config) -> None:
        super().__init__(client, config, SCOPE_ENDPOINT, config.http_default_method_rate)

    def _rate_for(self, endpoint_key: str) -> int:
        return self.config.http_methods.get(endpoint_key, self.config.http_default_method_rate)

    def handle_failure(self) -> bool:
        """Allow or deny according to the configured failure mode."""
        return _failure_result(self.config.memcache_failure_mode)

    def allow(self, user_id: str, method: str, path: str) -> bool:
        """Count one request to the endpoint and report whether it is allowed."""
        endpoint_key = f"{method}:{path}"
        key = self.config.memcache_key(self.scope, user_id, endpoint_key)
        rate = self._rate_for(endpoint_key)
        try:
            count = self.client.increment_with_expiration(key, 1, self.expiration)
        except MemcacheError as exc:
            logger.error(
                "memcache error incrementing per-endpoint counter for user %s, endpoint %s: %s",
                user_id,
                endpoint_key,
                exc,
            )
            return self.handle_failure()
        return count <= rate

    def remaining_tokens(self, user_id: str, method: str, path: str) -> int:
        """Requests left for the user on the endpoint in the current window."""
        endpoint_key = f"{method}:{path}"
        key = self.config.memcache_key(self.scope, user_id, endpoint_key)
        rate = self._rate_for(endpoint_key)
        try:
            count = self.client.get(key)
        except MemcacheError as exc:
            logger.error(
                "memcache error getting per-endpoint counter for user %s, endpoint %s: %s",
                user_id,
                endpoint_key,
                exc,
            )
            return rate
        return max(rate - count, 0)

    def reset(self) -> None:
        """Does nothing: the state lives in the store."""