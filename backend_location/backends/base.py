"""
Abstract base class for storage backends.

This module defines the interface that all storage backends must implement,
the file handles they operate on, and the base model for backend-specific
configuration parsed from a location string.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from pydantic import BaseModel, ConfigDict, SecretStr

from backend_location.exceptions import ObjectNotFoundError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import Any

logger = logging.getLogger(__name__)


class FileType(Enum):
    """Type of file stored in a repository."""

    DATA = "data"
    KEY = "keys"
    LOCK = "locks"
    SNAPSHOT = "snapshots"
    INDEX = "index"
    CONFIG = "config"


@dataclass(frozen=True)
class Handle:
    """
    Identifies a single file in a backend.

    Attributes:
        type: The kind of file.
        name: File name; ignored for the config file.
    """

    type: FileType
    name: str = ""

    def __post_init__(self) -> None:
        if self.type is not FileType.CONFIG and not self.name:
            raise ValueError(f"invalid handle: name is empty for type {self.type.value}")

    def __str__(self) -> str:
        if self.type is FileType.CONFIG:
            return "<config>"
        return f"<{self.type.value}/{self.name}>"


@dataclass(frozen=True)
class FileInfo:
    """Name and size of a stored file."""

    name: str
    size: int


class BackendConfig(BaseModel):
    """
    Base model for backend-specific configuration.

    Subclasses pin ``scheme`` to a literal, which makes the union of all
    configs a tagged union. Fields settable through ``-o scheme.key=value``
    carry ``json_schema_extra={"option": "<key>"}``.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    scheme: str


def option_fields(config_type: type[BackendConfig]) -> dict[str, str]:
    """Map option names of a config model to its field names."""
    options: dict[str, str] = {}
    for name, field in config_type.model_fields.items():
        extra = field.json_schema_extra
        if isinstance(extra, dict) and "option" in extra:
            options[str(extra["option"])] = name
    return options


def is_empty(value: Any) -> bool:
    """Return True for unset config values, including empty secrets."""
    if value is None:
        return True
    if isinstance(value, SecretStr):
        return value.get_secret_value() == ""
    return value == ""


def secret_value(value: SecretStr | None) -> str:
    """Return the plain text of an optional secret."""
    return value.get_secret_value() if value is not None else ""


class Backend(ABC):
    """
    Abstract base class for storage backends.

    All storage backends must implement these methods to support
    saving, loading, listing, stat'ing and removing repository files.
    Handles are owned by the caller and released with :meth:`close`.
    """

    scheme: ClassVar[str]

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a displayable location, without any password."""
        ...

    @property
    @abstractmethod
    def connections(self) -> int:
        """Return the number of concurrent connections the backend allows."""
        ...

    @abstractmethod
    def save(self, h: Handle, data: bytes) -> None:
        """
        Store a file.

        Args:
            h: Handle of the file to write.
            data: Full file contents.

        Raises:
            StorageError: If the write fails.
        """
        ...

    @abstractmethod
    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        """
        Read (part of) a file.

        Args:
            h: Handle of the file to read.
            length: Number of bytes to read, 0 reads until the end.
            offset: Position of the first byte.

        Raises:
            ObjectNotFoundError: If the file does not exist.
            StorageError: If the read fails.
        """
        ...

    @abstractmethod
    def stat(self, h: Handle) -> FileInfo:
        """
        Return information about a file.

        Raises:
            ObjectNotFoundError: If the file does not exist.
        """
        ...

    @abstractmethod
    def list(self, t: FileType) -> Iterator[FileInfo]:
        """Yield all files of the given type."""
        ...

    @abstractmethod
    def remove(self, h: Handle) -> None:
        """
        Remove a file.

        Raises:
            ObjectNotFoundError: If the file does not exist.
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release all resources held by the backend."""
        ...

    def test(self, h: Handle) -> bool:
        """Check if a file exists."""
        try:
            self.stat(h)
        except ObjectNotFoundError:
            return False
        return True

    def delete(self) -> None:
        """Remove all repository files, the config file last."""
        for t in FileType:
            if t is FileType.CONFIG:
                continue
            for info in list(self.list(t)):
                self.remove(Handle(t, info.name))

        try:
            self.remove(Handle(FileType.CONFIG))
        except ObjectNotFoundError:
            logger.debug(f"No config file to remove at {self.location}")

    def __enter__(self) -> Backend:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
