"""Per-user rate limiting for WSGI applications and gRPC servers, in memory or via Memcache."""

__version__ = "0.1.0"