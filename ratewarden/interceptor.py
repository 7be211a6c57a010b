"""gRPC server interceptor enforcing global, gRPC and per-method rate limits."""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable

import grpc

from ratewarden.config import Config
from ratewarden.factory import LimiterFactory
from ratewarden.token_bucket import TokenBucket

ANONYMOUS_USER = "anonymous"


class InMemoryGRPCMethodLimiter:
    """Per-user limit on each gRPC method, held in memory."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _rate_for(self, method: str) -> int:
        return self.config.grpc_methods.get(method, self.config.grpc_default_method_rate)

    def allow(self, user_id: str, method: str) -> bool:
        """Take a token for the user on ``method``; False when rate limited."""
        key = f"{user_id}:{method}"
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(self.config.grpc_burst_size, self._rate_for(method))
                self._buckets[key] = bucket
        return bucket.allow()

    def reset(self) -> None:
        """Forget every bucket."""
        with self._lock:
            self._buckets = {}


class RateLimitInterceptor(grpc.ServerInterceptor):
    """Rejects unary calls with RESOURCE_EXHAUSTED when a user exceeds a limit."""

    def __init__(self, config: Config) -> None:
        self.config = config
        factory = LimiterFactory(config)
        self.global_limiter = factory.create_global_limiter()
        self.grpc_limiter = factory.create_grpc_limiter()
        self.per_method_limiter = InMemoryGRPCMethodLimiter(config)

    def check(self, user_id: str, method: str) -> str | None:
        """Return the rejection message for the call, or None when it is allowed."""
        if not self.global_limiter.allow(user_id):
            return "rate limit exceeded: global"
        if not self.grpc_limiter.allow(user_id):
            return "rate limit exceeded: grpc"
        if not self.per_method_limiter.allow(user_id, method):
            return "rate limit exceeded: per-method"
        return None

    def extract_user_id(self, metadata: Iterable[tuple[str, Any]] | None) -> str:
        """User identifier from the configured metadata key, or ``anonymous``."""
        if metadata is None:
            return ANONYMOUS_USER
        wanted = self.config.grpc_metadata_key.lower()
        for key, value in metadata:
            if key.lower() != wanted:
                continue
            if isinstance(value, bytes):
                value = value.decode("utf-8", errors="replace")
            value = value.strip()
            return value or ANONYMOUS_USER
        return ANONYMOUS_USER

    def intercept_service(
        self,
        continuation: Callable[[Any], grpc.RpcMethodHandler | None],
        handler_call_details: Any,
    ) -> grpc.RpcMethodHandler | None:
        """Wrap unary-unary handlers with the rate limit check."""
        handler = continuation(handler_call_details)
        if handler is None or handler.request_streaming or handler.response_streaming:
            return handler
        if handler.unary_unary is None:
            return handler

        user_id = self.extract_user_id(handler_call_details.invocation_metadata)
        method = handler_call_details.method
        inner = handler.unary_unary

        def behavior(request: Any, context: grpc.ServicerContext) -> Any:
            message = self.check(user_id, method)
            if message is not None:
                context.abort(grpc.StatusCode.RESOURCE_EXHAUSTED, message)
            return inner(request, context)

        return grpc.unary_unary_rpc_method_handler(
            behavior,
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )

    def reset(self) -> None:
        """Clear the state of every limiter."""
        self.global_limiter.reset()
        self.grpc_limiter.reset()
        self.per_method_limiter.reset()