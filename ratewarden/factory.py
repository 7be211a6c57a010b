"""Choose in-memory or distributed limiters from the configuration."""

from __future__ import annotations

from ratewarden.config import Config
from ratewarden.distributed import (
    CounterLimiter,
    DistributedGlobalLimiter,
    DistributedGRPCLimiter,
    DistributedHTTPLimiter,
    DistributedPerEndpointLimiter,
)
from ratewarden.limiters import (
    GlobalLimiter,
    GRPCLimiter,
    HTTPLimiter,
    PerEndpointLimiter,
    UserLimiter,
)
from ratewarden.memcache_client import MemcacheClient


class LimiterFactory:
    """Builds distributed limiters when memcache is configured, in-memory ones otherwise."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def _client(self) -> MemcacheClient:
        return MemcacheClient(
            self.config.memcache_servers,
            self.config.memcache_timeout,
            self.config.memcache_max_idle_conns,
        )

    def create_global_limiter(self) -> UserLimiter | CounterLimiter:
        """Limiter for the per-user global rate."""
        if self.config.is_distributed_enabled():
            return DistributedGlobalLimiter(self._client(), self.config)
        return GlobalLimiter(self.config)

    def create_per_endpoint_limiter(
        self,
    ) -> PerEndpointLimiter | DistributedPerEndpointLimiter:
        """Limiter for the per-user, per-endpoint rate."""
        if self.config.is_distributed_enabled():
            return DistributedPerEndpointLimiter(self._client(), self.config)
        return PerEndpointLimiter(self.config)

    def create_http_limiter(self) -> UserLimiter | CounterLimiter:
        """Limiter for the per-user HTTP rate."""
        if self.config.is_distributed_enabled():
            return DistributedHTTPLimiter(self._client(), self.config)
        return HTTPLimiter(self.config)

    def create_grpc_limiter(self) -> UserLimiter | CounterLimiter:
        """Limiter for the per-user gRPC rate."""
        if self.config.is_distributed_enabled():
            return DistributedGRPCLimiter(self._client(), self.config)
        return GRPCLimiter(self.config)