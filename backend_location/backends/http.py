"""
Shared plumbing for backends that talk HTTP.

HTTP backends never build their own transport: the factory hands them an
``httpx.BaseTransport`` (already wrapped by the rate limiter for opened
repositories) and they only add authentication and URL handling on top.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from backend_location.backends.base import Backend
from backend_location.exceptions import ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from typing import Any

    from backend_location.backends.base import Handle

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=300.0, write=300.0, pool=60.0)


def range_header(length: int, offset: int) -> str | None:
    """Return an HTTP ``Range`` value for a partial read, or None for a full read."""
    if length <= 0 and offset <= 0:
        return None
    if length <= 0:
        return f"bytes={offset}-"
    return f"bytes={offset}-{offset + length - 1}"


class HTTPBackend(Backend):
    """
    Base class for backends using an httpx client.

    Subclasses set ``scheme`` and call :meth:`_send`, which maps transport
    failures to :class:`StorageError` and 404 responses on file requests to
    :class:`ObjectNotFoundError`.
    """

    def __init__(
        self,
        transport: httpx.BaseTransport | None,
        connections: int,
        *,
        auth: httpx.Auth | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._connections = connections
        self._client = httpx.Client(
            transport=transport,
            auth=auth,
            headers=headers,
            timeout=DEFAULT_TIMEOUT,
            limits=httpx.Limits(max_connections=connections),
        )

    @property
    def connections(self) -> int:
        return self._connections

    def _send(
        self,
        method: str,
        url: str,
        h: Handle | None = None,
        *,
        missing_ok: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and check its status.

        Args:
            method: HTTP method.
            url: Absolute URL.
            h: File the request is about; enables not-found detection.
            missing_ok: Return 404 responses instead of raising.
            **kwargs: Passed to :meth:`httpx.Client.request`.

        Raises:
            ObjectNotFoundError: If ``h`` is given and the server answers 404.
            StorageError: On transport errors and other error statuses.
        """
        what = str(h) if h is not None else f"{method} request"

        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{what} failed: {e}")
            raise StorageError(
                f"{what} failed: {e}", backend=self.scheme, location=self.location
            ) from e

        if response.status_code == 404 and missing_ok:
            return response
        if response.status_code == 404 and h is not None:
            raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location)

        if response.is_error:
            logger.error(f"{what} failed: HTTP {response.status_code}")
            raise StorageError(
                f"{what}: unexpected HTTP response ({response.status_code})",
                backend=self.scheme,
                location=self.location,
            )

        return response

    def close(self) -> None:
        self._client.close()
        logger.debug(f"Closed {self.scheme} backend at {self.location}")
