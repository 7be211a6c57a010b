import pytest

from ratewarden.config import FailureMode, default_config
from ratewarden.distributed import (
    CounterLimiter,
    DistributedGlobalLimiter,
    DistributedGRPCLimiter,
    DistributedHTTPLimiter,
    DistributedPerEndpointLimiter,
)
from ratewarden.memcache_mock import MockMemcacheClient


@pytest.fixture
def mock():
    return MockMemcacheClient()


def test_new_global_limiter(mock):
    cfg = default_config()
    cfg.global_rate = 100
    limiter = DistributedGlobalLimiter(mock, cfg)
    assert limiter.client is mock
    assert limiter.config.global_rate == 100
    assert limiter.scope == "global"
    assert limiter.rate == 100


def test_global_limiter_allow(mock):
    cfg = default_config()
    cfg.global_rate = 2
    cfg.memcache_failure_mode = FailureMode.ALLOW
    limiter = DistributedGlobalLimiter(mock, cfg)
    assert limiter.allow("user123") is True
    assert limiter.allow("user123") is True
    assert limiter.allow("user123") is False


def test_global_limiter_remaining_tokens(mock):
    cfg = default_config()
    cfg.global_rate = 10
    limiter = DistributedGlobalLimiter(mock, cfg)
    assert limiter.remaining_tokens("user123") == 10
    for _ in range(3):
        limiter.allow("user123")
    assert limiter.remaining_tokens("user123") == 7


def test_global_limiter_failure_mode_allow(mock):
    cfg = default_config()
    cfg.global_rate = 10
    cfg.memcache_failure_mode = FailureMode.ALLOW
    limiter = DistributedGlobalLimiter(mock, cfg)
    mock.close()
    assert limiter.allow("user123") is True


def test_global_limiter_failure_mode_deny(mock):
    cfg = default_config()
    cfg.global_rate = 10
    cfg.memcache_failure_mode = FailureMode.DENY
    limiter = DistributedGlobalLimiter(mock, cfg)
    mock.close()
    assert limiter.allow("user123") is False


def test_global_limiter_separate_users(mock):
    cfg = default_config()
    cfg.global_rate = 5
    limiter = DistributedGlobalLimiter(mock, cfg)
    assert all(limiter.allow("user1") for _ in range(5))
    assert all(limiter.allow("user2") for _ in range(5))
    assert limiter.allow("user1") is False
    assert limiter.allow("user2") is False


def test_global_limiter_reset(mock):
    cfg = default_config()
    cfg.global_rate = 10
    limiter = DistributedGlobalLimiter(mock, cfg)
    for _ in range(3):
        limiter.allow("user123")
    limiter.reset()
    assert limiter.remaining_tokens("user123") == 7
    mock.clear()
    assert limiter.remaining_tokens("user123") == 10


def test_remaining_tokens_on_failure_returns_rate(mock):
    cfg = default_config()
    cfg.global_rate = 10
    limiter = DistributedGlobalLimiter(mock, cfg)
    limiter.allow("user123")
    mock.close()
    assert limiter.remaining_tokens("user123") == 10


def test_remaining_tokens_never_negative(mock):
    cfg = default_config()
    cfg.global_rate = 2
    limiter = DistributedGlobalLimiter(mock, cfg)
    for _ in range(5):
        limiter.allow("user123")
    assert limiter.remaining_tokens("user123") == 0


def test_counter_key_format(mock):
    cfg = default_config()
    limiter = DistributedGlobalLimiter(mock, cfg)
    limiter.allow("user123")
    limiter.allow("user123")
    assert mock.get("rate_limit:global:user123") == 2


def test_check_rate_limit_boundary(mock):
    limiter = CounterLimiter(mock, default_config(), "custom", 3)
    assert limiter.check_rate_limit(3) is True
    assert limiter.check_rate_limit(4) is False


def test_handle_failure_follows_mode(mock):
    cfg = default_config()
    cfg.memcache_failure_mode = FailureMode.DENY
    assert CounterLimiter(mock, cfg, "x", 1).handle_failure() is False
    cfg.memcache_failure_mode = FailureMode.ALLOW
    assert CounterLimiter(mock, cfg, "x", 1).handle_failure() is True


def test_http_limiter_uses_http_rate_and_scope(mock):
    cfg = default_config()
    cfg.http_rate = 2
    limiter = DistributedHTTPLimiter(mock, cfg)
    assert limiter.scope == "http"
    assert [limiter.allow("u") for _ in range(3)] == [True, True, False]
    assert mock.get("rate_limit:http:u") == 3


def test_grpc_limiter_uses_grpc_rate_and_scope(mock):
    cfg = default_config()
    cfg.grpc_rate = 1
    limiter = DistributedGRPCLimiter(mock, cfg)
    assert limiter.scope == "grpc"
    assert [limiter.allow("u") for _ in range(2)] == [True, False]
    assert limiter.remaining_tokens("u") == 0


def test_limiters_with_different_scopes_do_not_share_counters(mock):
    cfg = default_config()
    cfg.http_rate = 1
    cfg.grpc_rate = 1
    http = DistributedHTTPLimiter(mock, cfg)
    grpc = DistributedGRPCLimiter(mock, cfg)
    assert http.allow("u") is True
    assert grpc.allow("u") is True
    assert http.allow("u") is False


def test_per_endpoint_default_rate(mock):
    cfg = default_config()
    cfg.http_default_method_rate = 2
    limiter = DistributedPerEndpointLimiter(mock, cfg)
    assert limiter.scope == "endpoint"
    results = [limiter.allow("u", "GET", "/api/users") for _ in range(3)]
    assert results == [True, True, False]
    assert limiter.allow("u", "POST", "/api/users") is True
    assert mock.get("rate_limit:endpoint:u:GET:/api/users") == 3


def test_per_endpoint_configured_rate(mock):
    cfg = default_config()
    cfg.http_default_method_rate = 1
    cfg.http_methods = {"GET:/api/data": 3}
    limiter = DistributedPerEndpointLimiter(mock, cfg)
    assert limiter.remaining_tokens("u", "GET", "/api/data") == 3
    assert [limiter.allow("u", "GET", "/api/data") for _ in range(4)] == [
        True,
        True,
        True,
        False,
    ]
    assert limiter.remaining_tokens("u", "GET", "/api/data") == 0
    assert limiter.remaining_tokens("u", "GET", "/other") == 1


def test_per_endpoint_failure_modes(mock):
    cfg = default_config()
    cfg.http_default_method_rate = 4
    cfg.memcache_failure_mode = FailureMode.DENY
    limiter = DistributedPerEndpointLimiter(mock, cfg)
    mock.close()
    assert limiter.allow("u", "GET", "/x") is False
    assert limiter.handle_failure() is False
    assert limiter.remaining_tokens("u", "GET", "/x") == 4

    cfg.memcache_failure_mode = FailureMode.ALLOW
    assert DistributedPerEndpointLimiter(mock, cfg).allow("u", "GET", "/x") is True


def test_per_endpoint_reset_keeps_store_state(mock):
    cfg = default_config()
    cfg.http_default_method_rate = 5
    limiter = DistributedPerEndpointLimiter(mock, cfg)
    limiter.allow("u", "GET", "/x")
    limiter.reset()
    assert limiter.remaining_tokens("u", "GET", "/x") == 4


def test_expiration_and_window(mock):
    limiter = DistributedGlobalLimiter(mock, default_config())
    assert limiter.expiration == 2.0
    assert limiter.window_duration == 1.0