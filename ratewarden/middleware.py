"""WSGI middleware enforcing global, HTTP and per-endpoint rate limits."""

from __future__ import annotations

from typing import Any, Callable, Iterable

from ratewarden.config import Config
from ratewarden.factory import LimiterFactory

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]

ANONYMOUS_USER = "anonymous"
_TOO_MANY_REQUESTS = "429 Too Many Requests"


def _environ_key(header: str) -> str:
    return "HTTP_" + header.upper().replace("-", "_")


class RateLimitMiddleware:
    """Wraps WSGI applications, answering 429 when a user exceeds a limit."""

    def __init__(self, config: Config) -> None:
        self.config = config
        factory = LimiterFactory(config)
        self.per_endpoint_limiter = factory.create_per_endpoint_limiter()
        self.global_limiter = factory.create_global_limiter()
        self.http_limiter = factory.create_http_limiter()

    def wrap(self, app: WSGIApp) -> WSGIApp:
        """Return a WSGI application that rate limits requests before ``app``."""

        def rate_limited_app(
            environ: dict, start_response: Callable[..., Any]
        ) -> Iterable[bytes]:
            limit_type = self._exceeded_limit(environ)
            if limit_type is not None:
                return self._rate_limit_response(start_response, limit_type)
            return app(environ, start_response)

        return rate_limited_app

    def _exceeded_limit(self, environ: dict) -> str | None:
        user_id = self.extract_user_id(environ)
        if not self.global_limiter.allow(user_id):
            return "global"
        if not self.http_limiter.allow(user_id):
            return "http"
        method = environ.get("REQUEST_METHOD", "GET")
        path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
        if not self.per_endpoint_limiter.allow(user_id, method, path):
            return "per-method"
        return None

    def extract_user_id(self, environ: dict) -> str:
        """User identifier from the configured header, or ``anonymous``."""
        return environ.get(_environ_key(self.config.user_header), "") or ANONYMOUS_USER

    def _rate_limit_response(
        self, start_response: Callable[..., Any], limit_type: str
    ) -> list[bytes]:
        body = f'{{"error": "rate limit exceeded", "type": "{limit_type}"}}'.encode()
        headers = [
            ("Content-Type", "application/json"),
            ("X-RateLimit-Limit", str(self.rate_limit_for(limit_type))),
            ("Retry-After", str(self.retry_after_seconds())),
            ("Content-Length", str(len(body))),
        ]
        start_response(_TOO_MANY_REQUESTS, headers)
        return [body]

    def rate_limit_for(self, limit_type: str) -> int:
        """Configured rate for ``global``, ``http`` or ``per-method``; 0 otherwise."""
        rates = {
            "global": self.config.global_rate,
            "http": self.config.http_rate,
            "per-method": self.config.http_default_method_rate,
        }
        return rates.get(limit_type, 0)

    def retry_after_seconds(self) -> int:
        """Whole seconds until a token is back under the slower refill rate."""
        interval = max(
            self.config.refill_interval(self.config.per_endpoint_rate),
            self.config.refill_interval(self.config.global_rate),
        )
        return int(interval)

    def reset(self) -> None:
        """Clear the state of every limiter."""
        self.per_endpoint_limiter.reset()
        self.global_limiter.reset()
        self.http_limiter.reset()