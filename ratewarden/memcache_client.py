"""Counter storage backed by memcached, spoken over the text protocol."""

from __future__ import annotations

import socket
import threading
import zlib
from abc import ABC, abstractmethod
from typing import Callable, Iterable, TypeVar

_T = TypeVar("_T")

_MAX_KEY_LENGTH = 250
_UINT64_LIMIT = 2**64
_HEALTH_CHECK_KEY = "health_check"


class MemcacheError(Exception):
    """Raised when a memcache operation fails."""


class CounterStore(ABC):
    """Storage of unsigned integer counters with expiration."""

    @abstractmethod
    def get(self, key: str) -> int:
        """Return the counter stored under ``key``, or 0 when it is absent."""

    @abstractmethod
    def set(self, key: str, value: int, expiration: float) -> None:
        """Store ``value`` under ``key``, expiring after ``expiration`` seconds."""

    @abstractmethod
    def increment_with_expiration(self, key: str, delta: int, expiration: float) -> int:
        """Add ``delta`` to a counter, creating it with ``expiration`` if absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``."""

    @abstractmethod
    def health_check(self) -> None:
        """Raise :class:`MemcacheError` if the store is not usable."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the store."""


class _Connection:
    """One socket to a memcached server with a buffered reader."""

    def __init__(self, address: str, sock: socket.socket) -> None:
        self.address = address
        self._sock = sock
        self._reader = sock.makefile("rb")

    def write(self, data: bytes) -> None:
        self._sock.sendall(data)

    def read_line(self) -> bytes:
        line = self._reader.readline()
        if not line.endswith(b"\r\n"):
            raise OSError("connection closed by server")
        return line[:-2]

    def read_exact(self, size: int) -> bytes:
        data = self._reader.read(size)
        if len(data) != size:
            raise OSError("connection closed by server")
        return data

    def close(self) -> None:
        try:
            self._reader.close()
        finally:
            self._sock.close()


def _check_response_error(line: bytes) -> None:
    for prefix in (b"SERVER_ERROR", b"CLIENT_ERROR", b"ERROR"):
        if line.startswith(prefix):
            raise MemcacheError(f"server error: {line.decode(errors='replace')}")


def _parse_get(conn: _Connection) -> bytes | None:
    value: bytes | None = None
    while True:
        line = conn.read_line()
        if line == b"END":
            return value
        _check_response_error(line)
        parts = line.split()
        if len(parts) < 4 or parts[0] != b"VALUE" or not parts[3].isdigit():
            raise MemcacheError(f"unexpected response line {line!r}")
        data = conn.read_exact(int(parts[3]) + 2)
        if not data.endswith(b"\r\n"):
            raise MemcacheError("corrupt get result read")
        value = data[:-2]


def _parse_store(conn: _Connection) -> None:
    line = conn.read_line()
    if line == b"STORED":
        return
    if line == b"NOT_STORED":
        raise MemcacheError("item not stored")
    _check_response_error(line)
    raise MemcacheError(f"unexpected response line {line!r}")


def _parse_incr(conn: _Connection) -> int | None:
    line = conn.read_line()
    if line == b"NOT_FOUND":
        return None
    _check_response_error(line)
    stripped = line.strip()
    if not stripped.isdigit():
        raise MemcacheError(f"unexpected response line {line!r}")
    return int(stripped)


def _parse_delete(conn: _Connection) -> bool:
    line = conn.read_line()
    if line == b"DELETED":
        return True
    if line == b"NOT_FOUND":
        return False
    _check_response_error(line)
    raise MemcacheError(f"unexpected response line {line!r}")


def _encode_key(key: str) -> bytes:
    raw = key.encode("utf-8")
    if len(raw) > _MAX_KEY_LENGTH or any(b <= 0x20 or b == 0x7F for b in raw):
        raise MemcacheError(f"malformed key {key!r}")
    return raw


class MemcacheClient(CounterStore):
    """Memcached client with a small pool of idle connections per server."""

    def __init__(
        self, servers: Iterable[str], timeout: float = 0.5, max_idle_conns: int = 2
    ) -> None:
        self.servers = list(servers)
        self.timeout = timeout
        self.max_idle_conns = max_idle_conns
        self._idle: dict[str, list[_Connection]] = {}
        self._lock = threading.Lock()

    def _pick_server(self, raw_key: bytes) -> str:
        if not self.servers:
            raise MemcacheError("no servers configured or available")
        if len(self.servers) == 1:
            return self.servers[0]
        return self.servers[zlib.crc32(raw_key) % len(self.servers)]

    def _dial(self, address: str) -> _Connection:
        if "/" in address and hasattr(socket, "AF_UNIX"):
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.settimeout(self.timeout)
                sock.connect(address)
            except OSError:
                sock.close()
                raise
            return _Connection(address, sock)
        host, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            raise MemcacheError(f"invalid server address {address!r}")
        host = host.strip("[]")
        sock = socket.create_connection((host, int(port)), timeout=self.timeout)
        sock.settimeout(self.timeout)
        return _Connection(address, sock)

    def _acquire(self, address: str) -> _Connection:
        with self._lock:
            idle = self._idle.get(address)
            if idle:
                return idle.pop()
        return self._dial(address)

    def _release(self, conn: _Connection) -> None:
        with self._lock:
            idle = self._idle.setdefault(conn.address, [])
            if len(idle) < self.max_idle_conns:
                idle.append(conn)
                return
        conn.close()

    def _run(
        self,
        key: str,
        request: Callable[[bytes], bytes],
        parse: Callable[[_Connection], _T],
    ) -> _T:
        raw_key = _encode_key(key)
        address = self._pick_server(raw_key)
        try:
            conn = self._acquire(address)
        except OSError as exc:
            raise MemcacheError(f"cannot connect to {address}: {exc}") from exc
        try:
            conn.write(request(raw_key))
            result = parse(conn)
        except BaseException as exc:
            conn.close()
            if isinstance(exc, OSError):
                raise MemcacheError(f"i/o error talking to {address}: {exc}") from exc
            raise
        self._release(conn)
        return result

    def get(self, key: str) -> int:
        try:
            data = self._run(key, lambda raw: b"get " + raw + b"\r\n", _parse_get)
        except MemcacheError as exc:
            raise MemcacheError(f"failed to get key {key!r}: {exc}") from exc
        if data is None:
            return 0
        if not data.isdigit() or int(data) >= _UINT64_LIMIT:
            raise MemcacheError(f"failed to parse value for key {key!r}: {data!r}")
        return int(data)

    def set(self, key: str, value: int, expiration: float) -> None:
        payload = str(value).encode("ascii")
        exptime = int(expiration)

        def request(raw: bytes) -> bytes:
            header = b"set %s 0 %d %d\r\n" % (raw, exptime, len(payload))
            return header + payload + b"\r\n"

        self._run(key, request, _parse_store)

    def increment_with_expiration(self, key: str, delta: int, expiration: float) -> int:
        try:
            value = self._run(
                key, lambda raw: b"incr %s %d\r\n" % (raw, delta), _parse_incr
            )
        except MemcacheError as exc:
            raise MemcacheError(f"failed to increment key {key!r}: {exc}") from exc
        if value is not None:
            return value
        try:
            self.set(key, delta, expiration)
        except MemcacheError as exc:
            raise MemcacheError(f"failed to initialize key {key!r}: {exc}") from exc
        return delta

    def delete(self, key: str) -> None:
        found = self._run(key, lambda raw: b"delete " + raw + b"\r\n", _parse_delete)
        if not found:
            raise MemcacheError(f"cache miss for key {key!r}")

    def health_check(self) -> None:
        try:
            self.set(_HEALTH_CHECK_KEY, 1, 1.0)
            self.get(_HEALTH_CHECK_KEY)
        except MemcacheError as exc:
            raise MemcacheError(f"memcache health check failed: {exc}") from exc
        try:
            self.delete(_HEALTH_CHECK_KEY)
        except MemcacheError:
            pass

    def close(self) -> None:
        with self._lock:
            pools = list(self._idle.values())
            self._idle.clear()
        for pool in pools:
            for conn in pool:
                conn.close()