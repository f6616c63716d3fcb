"""
Parsing of repository location strings.

A location is ``[<scheme>:]<backend-specific part>``. Strings without a known
scheme are local paths, as long as they cannot be mistaken for a scheme
(``foo:bar`` is rejected and needs an explicit ``local:`` prefix).

Example:
    >>> parse_location('s3:s3.amazonaws.com/bucket/repo').scheme
    's3'
    >>> parse_location('/srv/repo').config.path
    '/srv/repo'
"""

from __future__ import annotations

import logging
from typing import Annotated, Union

from pydantic import BaseModel, ConfigDict, Field

from backend_location.backends.azure import AzureConfig
from backend_location.backends.b2 import B2Config
from backend_location.backends.gs import GSConfig
from backend_location.backends.local import LocalConfig
from backend_location.backends.rclone import RcloneConfig
from backend_location.backends.rest import RestConfig
from backend_location.backends.s3 import S3Config
from backend_location.backends.sftp import SFTPConfig
from backend_location.backends.swift import SwiftConfig
from backend_location.exceptions import AmbiguousLocationError
from backend_location.registry import BACKENDS

__all__ = [
    "BackendConfigUnion",
    "Location",
    "extract_scheme",
    "is_path",
    "parse_location",
    "strip_password",
]

logger = logging.getLogger(__name__)

BackendConfigUnion = Annotated[
    Union[
        LocalConfig,
        SFTPConfig,
        S3Config,
        GSConfig,
        AzureConfig,
        SwiftConfig,
        B2Config,
        RestConfig,
        RcloneConfig,
    ],
    Field(discriminator="scheme"),
]


class Location(BaseModel):
    """A parsed location: the backend scheme and its typed configuration."""

    model_config = ConfigDict(frozen=True)

    scheme: str
    config: BackendConfigUnion


def is_path(s: str) -> bool:
    """
    Return True if the string is unambiguously a filesystem path.

    Relative paths starting with ``../`` or ``..\\``, absolute paths and
    Windows drive paths such as ``C:\\`` or ``c:/`` qualify. A bare ``C:`` does
    not.
    """
    if s.startswith(("../", "..\\")):
        return True

    if s.startswith(("/", "\\")):
        return True

    if len(s) < 3:
        return False

    # drive letters
    return s[0].isascii() and s[0].isalpha() and s[1] == ":" and s[2] in "/\\"


def extract_scheme(s: str) -> str:
    """Return everything before the first colon, or the whole string."""
    return s.split(":", 1)[0]


def parse_location(s: str) -> Location:
    """
    Parse a location string.

    Args:
        s: Location as given by the user.

    Returns:
        The scheme and the backend's configuration.

    Raises:
        AmbiguousLocationError: If the string has a colon but neither a known
            scheme nor the shape of a path.
        MalformedConfigError: If the backend rejects the string.
    """
    scheme = extract_scheme(s)
    entry = BACKENDS.get(scheme) if ":" in s else None
    if entry is not None:
        logger.debug(f"Parsing location {strip_password(s)} as {scheme}")
        return Location(scheme=scheme, config=entry.parse_config(s))

    if not is_path(s) and ":" in s:
        raise AmbiguousLocationError()

    logger.debug(f"Parsing location {s} as local path")
    return Location(scheme="local", config=BACKENDS["local"].parse_config("local:" + s))


def strip_password(s: str) -> str:
    """
    Return the location with any embedded password redacted.

    Never raises; strings of unknown schemes are returned unchanged.
    """
    scheme = extract_scheme(s)
    entry = BACKENDS.get(scheme) if ":" in s else None
    if entry is None:
        return s

    try:
        return entry.strip_password(s)
    except Exception:
        # a redactor that cannot parse its input must not leak it either
        return f"{scheme}:<redacted>"
