"""
Registry of storage backends.

Maps each scheme name to the functions that parse, redact, open and create a
location of that scheme. The registry is built once at import time and is
read-only; ``local`` comes first because it is the fallback for plain paths.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

from backend_location.backends import azure, b2, gs, local, rclone, rest, s3, sftp, swift

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from backend_location.backends.base import Backend, BackendConfig

__all__ = ["BackendEntry", "BACKENDS", "build_registry", "lookup"]

Constructor = Callable[["BackendConfig", "httpx.BaseTransport | None"], "Backend"]


@dataclass(frozen=True)
class BackendEntry:
    """
    Everything needed to handle one location scheme.

    Attributes:
        scheme: Scheme name, the part of a location before the first colon.
        config_type: Pydantic model of the backend's configuration.
        parse_config: Builds a config from a full location string.
        strip_password: Redacts secrets embedded in a location string.
        open: Opens an existing repository.
        create: Creates a new repository.
        uses_http: Whether the backend talks HTTP through an injected transport.
    """

    scheme: str
    config_type: type[BackendConfig]
    parse_config: Callable[[str], BackendConfig]
    strip_password: Callable[[str], str]
    open: Constructor
    create: Constructor
    uses_http: bool


def _entry(module, config_type: type[BackendConfig], uses_http: bool) -> BackendEntry:
    return BackendEntry(
        scheme=module.__name__.rsplit(".", 1)[-1],
        config_type=config_type,
        parse_config=module.parse_config,
        strip_password=module.strip_password,
        open=module.open,
        create=module.create,
        uses_http=uses_http,
    )


def build_registry(entries: Iterable[BackendEntry]) -> Mapping[str, BackendEntry]:
    """
    Build an ordered, read-only scheme registry.

    Raises:
        ValueError: If two entries share a scheme name.
    """
    registry: dict[str, BackendEntry] = {}
    for entry in entries:
        if entry.scheme in registry:
            raise ValueError(f"duplicate backend scheme {entry.scheme!r}")
        registry[entry.scheme] = entry
    return MappingProxyType(registry)


BACKENDS = build_registry(
    [
        _entry(local, local.LocalConfig, uses_http=False),
        _entry(sftp, sftp.SFTPConfig, uses_http=False),
        _entry(s3, s3.S3Config, uses_http=True),
        _entry(gs, gs.GSConfig, uses_http=True),
        _entry(azure, azure.AzureConfig, uses_http=True),
        _entry(swift, swift.SwiftConfig, uses_http=True),
        _entry(b2, b2.B2Config, uses_http=True),
        _entry(rest, rest.RestConfig, uses_http=True),
        _entry(rclone, rclone.RcloneConfig, uses_http=True),
    ]
)


def lookup(scheme: str) -> BackendEntry | None:
    """Return the registry entry for a scheme, or None."""
    return BACKENDS.get(scheme)
