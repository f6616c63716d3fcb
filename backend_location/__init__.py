"""
Backend Location - turn repository location strings into storage backends.

This package resolves a user-supplied repository location such as
``/srv/repo``, ``s3:s3.amazonaws.com/bucket/repo`` or
``rest:https://user:pw@host:8000/`` into a ready-to-use storage backend:

- The scheme selects one of the registered backends (local, sftp, s3, gs,
  azure, swift, b2, rest, rclone); plain paths fall back to local
- Credentials come from the location itself or from the backend's
  environment variables; ``-o scheme.key=value`` options override settings
- Upload and download bandwidth limits apply to every backend, at the HTTP
  transport or at the backend handle

Example:
    >>> from backend_location import FileType, Limits, Options, open_backend
    >>> be = open_backend(
    ...     'sftp:user@host:/srv/repo',
    ...     Options.parse(['sftp.connections=2']),
    ...     limits=Limits(download_kbps=2048),
    ... )
    >>> for info in be.list(FileType.SNAPSHOT):
    ...     print(info.name)

Passwords embedded in locations are never logged; use :func:`strip_password`
before showing a location to anyone.
"""

from backend_location.backends import Backend, BackendConfig, FileInfo, FileType, Handle
from backend_location.context import Context
from backend_location.credentials import resolve_config
from backend_location.exceptions import (
    AmbiguousLocationError,
    BackendConstructionError,
    CancellationError,
    LocationError,
    MalformedConfigError,
    MissingCredentialError,
    ObjectNotFoundError,
    OptionApplicationError,
    StorageError,
    UnknownSchemeError,
)
from backend_location.factory import create_backend, open_backend
from backend_location.limiter import Limits, StaticLimiter
from backend_location.location import Location, is_path, parse_location, strip_password
from backend_location.options import Options, list_options
from backend_location.registry import BACKENDS, BackendEntry
from backend_location.transport import TransportOptions, build_transport

__version__ = "0.1.0"
__all__ = [
    # Pipeline
    "open_backend",
    "create_backend",
    "parse_location",
    "resolve_config",
    "strip_password",
    "is_path",
    "Location",
    # Registry
    "BACKENDS",
    "BackendEntry",
    # Options and settings
    "Options",
    "list_options",
    "TransportOptions",
    "build_transport",
    "Limits",
    "StaticLimiter",
    "Context",
    # Backends
    "Backend",
    "BackendConfig",
    "FileInfo",
    "FileType",
    "Handle",
    # Exceptions
    "LocationError",
    "AmbiguousLocationError",
    "UnknownSchemeError",
    "MalformedConfigError",
    "MissingCredentialError",
    "OptionApplicationError",
    "BackendConstructionError",
    "CancellationError",
    "StorageError",
    "ObjectNotFoundError",
]
