"""In-memory token-bucket limiters keyed by user and endpoint."""

from __future__ import annotations

import threading

from ratewarden.config import Config
from ratewarden.token_bucket import TokenBucket


class UserLimiter:
    """Per-user limiter with one token bucket for each user."""

    def __init__(self, config: Config, capacity: int, rate: int) -> None:
        self.config = config
        self.capacity = capacity
        self.rate = rate
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _bucket(self, user_id: str) -> TokenBucket:
        bucket = self._buckets.get(user_id)
        if bucket is not None:
            return bucket
        with self._lock:
            return self._buckets.setdefault(user_id, TokenBucket(self.capacity, self.rate))

    def allow(self, user_id: str) -> bool:
        """Take a token for ``user_id``; False when the user is rate limited."""
        return self._bucket(user_id).allow()

    def remaining_tokens(self, user_id: str) -> int:
        """Tokens left for ``user_id``; a user never seen has the full burst."""
        bucket = self._buckets.get(user_id)
        if bucket is None:
            return self.capacity
        return bucket.remaining()

    def reset(self) -> None:
        """Forget every user's bucket."""
        with self._lock:
            self._buckets = {}


class GlobalLimiter(UserLimiter):
    """Limit per user across all endpoints and protocols."""

    def __init__(self, config: Config) -> None:
        super().__init__(config, config.global_burst_size, config.global_rate)


class HTTPLimiter(UserLimiter):
    """Limit per user on HTTP requests only."""

    def __init__(self, config: Config) -> None:
        super().__init__(config, config.http_burst_size, config.http_rate)


class GRPCLimiter(UserLimiter):
    """Limit per user on gRPC requests only."""

    def __init__(self, config: Config) -> None:
        super().__init__(config, config.grpc_burst_size, config.grpc_rate)


class PerEndpointLimiter:
    """Limit per user on each ``method:path`` endpoint."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _rate_for(self, endpoint_key: str) -> int:
        return self.config.http_methods.get(endpoint_key, self.config.http_default_method_rate)

    @staticmethod
    def _keys(user_id: str, method: str, path: str) -> tuple[str, str]:
        endpoint_key = f"{method}:{path}"
        return f"{user_id}:{endpoint_key}", endpoint_key

    def _bucket(self, bucket_key: str, endpoint_key: str) -> TokenBucket:
        bucket = self._buckets.get(bucket_key)
        if bucket is not None:
            return bucket
        with self._lock:
            bucket = self._buckets.get(bucket_key)
            if bucket is None:
                bucket = TokenBucket(
                    self.config.per_endpoint_burst_size, self._rate_for(endpoint_key)
                )
                self._buckets[bucket_key] = bucket
            return bucket

    def allow(self, user_id: str, method: str, path: str) -> bool:
        """Take a token for the user on the endpoint; False when rate limited."""
        bucket_key, endpoint_key = self._keys(user_id, method, path)
        return self._bucket(bucket_key, endpoint_key).allow()

    def remaining_tokens(self, user_id: str, method: str, path: str) -> int:
        """Tokens left for the user on the endpoint."""
        bucket_key, _ = self._keys(user_id, method, path)
        bucket = self._buckets.get(bucket_key)
        if bucket is None:
            return self.config.per_endpoint_burst_size
        return bucket.remaining()

    def reset(self) -> None:
        """Forget every bucket."""
        with self._lock:
            self._buckets = {}