"""
Bandwidth limiting for backends.

A :class:`StaticLimiter` enforces fixed upload and download rates. It can
throttle at two points: an httpx transport wrapper for HTTP backends, and a
handle wrapper for backends with their own protocol. Both feed the same
byte counters, and each operation is counted exactly once at whichever
point it is wrapped.

Throughput buckets are pyrate-limiter ``Limiter`` objects weighted in KiB.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from pyrate_limiter import Duration, Limiter, Rate
from pyrate_limiter.buckets import InMemoryBucket

from backend_location.backends.base import Backend

if TYPE_CHECKING:
    from collections.abc import Iterator

    from backend_location.backends.base import FileInfo, FileType, Handle

__all__ = ["Limits", "StaticLimiter", "LimitedTransport", "LimitedBackend"]

logger = logging.getLogger(__name__)

KIB = 1024

_BLOCKING_MAX_DELAY_MS = int(Duration.DAY) * 365


@dataclass(frozen=True)
class Limits:
    """
    Bandwidth limits in KiB/s.

    Attributes:
        upload_kbps: Upload limit, 0 for unlimited.
        download_kbps: Download limit, 0 for unlimited.
    """

    upload_kbps: int = 0
    download_kbps: int = 0

    def __post_init__(self) -> None:
        if self.upload_kbps < 0 or self.download_kbps < 0:
            raise ValueError("bandwidth limits must not be negative")


class _ByteRate:
    """Blocking throughput limit of ``kbps`` KiB per second."""

    def __init__(self, name: str, kbps: int) -> None:
        self.name = name
        self.capacity = kbps
        self._limiter = Limiter(
            InMemoryBucket([Rate(kbps, Duration.SECOND)]),
            raise_when_fail=False,
            max_delay=_BLOCKING_MAX_DELAY_MS,
            retry_until_max_delay=True,
        )

    def consume(self, nbytes: int) -> None:
        remaining = -(-nbytes // KIB)
        while remaining > 0:
            # a single acquisition cannot exceed the bucket capacity
            weight = min(remaining, self.capacity)
            if not self._limiter.try_acquire(self.name, weight=weight):
                logger.warning(f"{self.name} limiter gave up waiting for {weight} KiB")
            remaining -= weight


class StaticLimiter:
    """
    Limiter with fixed upload and download rates.

    Attributes:
        limits: The configured rates.
        uploaded: Total bytes accounted upstream.
        downloaded: Total bytes accounted downstream.

    Example:
        >>> limiter = StaticLimiter(Limits(upload_kbps=512))
        >>> client = httpx.Client(transport=limiter.transport(httpx.HTTPTransport()))
    """

    def __init__(self, limits: Limits | None = None) -> None:
        self.limits = limits or Limits()
        self.uploaded = 0
        self.downloaded = 0
        self._lock = threading.Lock()
        self._upload = _ByteRate("upload", self.limits.upload_kbps) if self.limits.upload_kbps else None
        self._download = (
            _ByteRate("download", self.limits.download_kbps) if self.limits.download_kbps else None
        )

    def upstream(self, nbytes: int) -> None:
        """Account for, and wait out, ``nbytes`` of upload."""
        with self._lock:
            self.uploaded += nbytes
        if self._upload is not None:
            self._upload.consume(nbytes)

    def downstream(self, nbytes: int) -> None:
        """Account for, and wait out, ``nbytes`` of download."""
        with self._lock:
            self.downloaded += nbytes
        if self._download is not None:
            self._download.consume(nbytes)

    def transport(self, rt: httpx.BaseTransport) -> LimitedTransport:
        """Wrap an HTTP transport so request and response bodies are limited."""
        return LimitedTransport(rt, self)

    def limit_backend(self, be: Backend) -> LimitedBackend:
        """Wrap a backend handle so saved and loaded data is limited."""
        return LimitedBackend(be, self)


class LimitedTransport(httpx.BaseTransport):
    """
    HTTPX transport that throttles request and response bodies.

    Bodies are read completely, so each request is accounted once with its
    full size in each direction.
    """

    def __init__(self, inner: httpx.BaseTransport, limiter: StaticLimiter) -> None:
        self._inner = inner
        self._limiter = limiter

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        body = request.read()
        if body:
            self._limiter.upstream(len(body))

        response = self._inner.handle_request(request)

        content = response.read()
        if content:
            self._limiter.downstream(len(content))
        return response

    def close(self) -> None:
        self._inner.close()


class LimitedBackend(Backend):
    """Backend handle that throttles the data passing through save and load."""

    def __init__(self, backend: Backend, limiter: StaticLimiter) -> None:
        self.backend = backend
        self._limiter = limiter

    @property
    def scheme(self) -> str:  # type: ignore[override]
        return self.backend.scheme

    @property
    def location(self) -> str:
        return self.backend.location

    @property
    def connections(self) -> int:
        return self.backend.connections

    def save(self, h: Handle, data: bytes) -> None:
        self._limiter.upstream(len(data))
        self.backend.save(h, data)

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        data = self.backend.load(h, length, offset)
        self._limiter.downstream(len(data))
        return data

    def stat(self, h: Handle) -> FileInfo:
        return self.backend.stat(h)

    def list(self, t: FileType) -> Iterator[FileInfo]:
        return self.backend.list(t)

    def remove(self, h: Handle) -> None:
        self.backend.remove(h)

    def close(self) -> None:
        self.backend.close()
