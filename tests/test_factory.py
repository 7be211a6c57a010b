import pytest

from ratewarden.config import Config, FailureMode
from ratewarden.distributed import (
    DistributedGlobalLimiter,
    DistributedGRPCLimiter,
    DistributedHTTPLimiter,
    DistributedPerEndpointLimiter,
)
from ratewarden.factory import LimiterFactory
from ratewarden.limiters import GlobalLimiter, GRPCLimiter, HTTPLimiter, PerEndpointLimiter
from ratewarden.memcache_client import MemcacheClient


def distributed_config(mode: FailureMode) -> Config:
    # An address without a port is rejected before any connection is attempted.
    return Config(memcache_servers=["invalid-address"], memcache_failure_mode=mode)


def test_in_memory_limiters_by_default():
    factory = LimiterFactory(Config())
    global_limiter = factory.create_global_limiter()
    http_limiter = factory.create_http_limiter()
    grpc_limiter = factory.create_grpc_limiter()
    endpoint_limiter = factory.create_per_endpoint_limiter()
    assert isinstance(global_limiter, GlobalLimiter)
    assert isinstance(http_limiter, HTTPLimiter)
    assert isinstance(grpc_limiter, GRPCLimiter)
    assert isinstance(endpoint_limiter, PerEndpointLimiter)
    assert global_limiter.remaining_tokens("u") == 10
    assert http_limiter.remaining_tokens("u") == 5
    assert grpc_limiter.remaining_tokens("u") == 5
    assert endpoint_limiter.remaining_tokens("u", "GET", "/") == 10


def test_in_memory_limiters_follow_config():
    cfg = Config(global_burst_size=7, http_burst_size=4, grpc_burst_size=6,
                 per_endpoint_burst_size=3)
    factory = LimiterFactory(cfg)
    assert factory.create_global_limiter().remaining_tokens("u") == 7
    assert factory.create_http_limiter().remaining_tokens("u") == 4
    assert factory.create_grpc_limiter().remaining_tokens("u") == 6
    assert factory.create_per_endpoint_limiter().remaining_tokens("u", "GET", "/") == 3


def test_each_call_creates_independent_limiter():
    cfg = Config(global_rate=1, global_burst_size=1)
    factory = LimiterFactory(cfg)
    first = factory.create_global_limiter()
    second = factory.create_global_limiter()
    assert first.allow("u") is True
    assert first.allow("u") is False
    assert second.allow("u") is True


def test_distributed_limiters_when_memcache_configured():
    cfg = Config(memcache_servers=["127.0.0.1:11211"], memcache_timeout=0.25,
                 memcache_max_idle_conns=7)
    factory = LimiterFactory(cfg)
    limiters = [
        (factory.create_global_limiter(), DistributedGlobalLimiter),
        (factory.create_http_limiter(), DistributedHTTPLimiter),
        (factory.create_grpc_limiter(), DistributedGRPCLimiter),
        (factory.create_per_endpoint_limiter(), DistributedPerEndpointLimiter),
    ]
    for limiter, expected_cls in limiters:
        assert isinstance(limiter, expected_cls)
        assert isinstance(limiter.client, MemcacheClient)
        assert limiter.client.servers == ["127.0.0.1:11211"]
        assert limiter.client.timeout == 0.25
        assert limiter.client.max_idle_conns == 7


@pytest.mark.parametrize("mode, expected", [(FailureMode.ALLOW, True), (FailureMode.DENY, False)])
def test_distributed_limiters_apply_failure_mode(mode, expected):
    factory = LimiterFactory(distributed_config(mode))
    assert factory.create_global_limiter().allow("u") is expected
    assert factory.create_http_limiter().allow("u") is expected
    assert factory.create_grpc_limiter().allow("u") is expected
    assert factory.create_per_endpoint_limiter().allow("u", "GET", "/x") is expected


def test_distributed_remaining_tokens_on_failure_reports_rate():
    cfg = distributed_config(FailureMode.DENY)
    cfg.global_rate = 42
    factory = LimiterFactory(cfg)
    assert factory.create_global_limiter().remaining_tokens("u") == 42