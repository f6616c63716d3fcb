"""
Opening and creating backends from location strings.

This is the entry point of the package: it parses a location, resolves its
credentials and options, and constructs the backend with bandwidth limits
applied. HTTP backends are limited at the transport, all others at the
handle, so every byte is counted exactly once.

Example:
    >>> be = open_backend(
    ...     's3:s3.amazonaws.com/bucket/repo',
    ...     Options.parse(['s3.region=eu-west-1']),
    ...     limits=Limits(upload_kbps=1024),
    ... )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from backend_location.context import Context
from backend_location.credentials import resolve_config
from backend_location.exceptions import (
    AmbiguousLocationError,
    BackendConstructionError,
    LocationError,
    UnknownSchemeError,
)
from backend_location.limiter import StaticLimiter
from backend_location.location import parse_location, strip_password
from backend_location.registry import lookup
from backend_location.transport import build_transport

if TYPE_CHECKING:
    from collections.abc import Mapping

    from backend_location.backends.base import Backend, BackendConfig
    from backend_location.limiter import Limits
    from backend_location.options import Options
    from backend_location.registry import BackendEntry
    from backend_location.transport import TransportOptions

__all__ = ["open_backend", "create_backend"]

logger = logging.getLogger(__name__)


def _resolve(
    location: str,
    options: Options | None,
    environ: Mapping[str, str] | None,
) -> tuple[BackendEntry, BackendConfig]:
    try:
        loc = parse_location(location)

        entry = lookup(loc.scheme)
        if entry is None:
            raise UnknownSchemeError(loc.scheme)

        return entry, resolve_config(loc, options, environ)
    except AmbiguousLocationError:
        raise
    except LocationError as e:
        e.add_location(strip_password(location))
        raise


def open_backend(
    location: str,
    options: Options | None = None,
    transport_options: TransportOptions | None = None,
    limits: Limits | None = None,
    *,
    ctx: Context | None = None,
    environ: Mapping[str, str] | None = None,
    limiter: StaticLimiter | None = None,
) -> Backend:
    """
    Open the repository at a location.

    Args:
        location: Location string as given by the user.
        options: Extended ``-o`` options.
        transport_options: TLS and proxy settings for HTTP backends.
        limits: Bandwidth limits; ignored when ``limiter`` is given.
        ctx: Cancellation context.
        environ: Environment for credentials, ``os.environ`` if omitted.
        limiter: Limiter to use instead of a new one built from ``limits``.

    Returns:
        The opened, bandwidth-limited backend.

    Raises:
        LocationError: If the location cannot be parsed or resolved.
        BackendConstructionError: If the backend fails to open.
        CancellationError: If ``ctx`` is cancelled before the backend is open.
    """
    ctx = ctx or Context()
    ctx.check()

    entry, config = _resolve(location, options, environ)
    redacted = strip_password(location)
    logger.debug(f"Opening {entry.scheme} backend at {redacted}")

    limiter = limiter or StaticLimiter(limits)

    try:
        if entry.uses_http:
            rt = limiter.transport(build_transport(transport_options))
            be = ctx.run(entry.open, config, rt)
        else:
            be = limiter.limit_backend(ctx.run(entry.open, config, None))
    except LocationError:
        raise
    except Exception as e:
        logger.debug(f"Opening {redacted} failed: {e}")
        raise BackendConstructionError("open", redacted, e) from e

    logger.info(f"Opened {entry.scheme} repository at {redacted}")
    return be


def create_backend(
    location: str,
    options: Options | None = None,
    transport_options: TransportOptions | None = None,
    *,
    ctx: Context | None = None,
    environ: Mapping[str, str] | None = None,
) -> Backend:
    """
    Create a new repository at a location.

    Creation is not bandwidth limited: HTTP backends get a plain transport
    and the handle is returned unwrapped.

    Raises:
        LocationError: If the location cannot be parsed or resolved.
        BackendConstructionError: If the backend fails to create.
        CancellationError: If ``ctx`` is cancelled before the backend is created.
    """
    ctx = ctx or Context()
    ctx.check()

    entry, config = _resolve(location, options, environ)
    redacted = strip_password(location)
    logger.debug(f"Creating {entry.scheme} backend at {redacted}")

    try:
        rt = build_transport(transport_options) if entry.uses_http else None
        be = ctx.run(entry.create, config, rt)
    except LocationError:
        raise
    except Exception as e:
        logger.debug(f"Creating {redacted} failed: {e}")
        raise BackendConstructionError("create", redacted, e) from e

    logger.info(f"Created {entry.scheme} repository at {redacted}")
    return be
