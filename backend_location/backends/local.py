"""
Local filesystem storage backend.

This module provides a storage backend for repositories in a local directory,
with restrictive permissions and atomic writes through temporary files.
"""

from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import Field

from backend_location.backends.base import Backend, BackendConfig, FileInfo, FileType, Handle
from backend_location.backends.layout import select_layout
from backend_location.exceptions import MalformedConfigError, ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator

    import httpx

__all__ = ["LocalConfig", "LocalBackend", "parse_config", "strip_password", "open", "create"]

logger = logging.getLogger(__name__)

_TEMP_PREFIX = ".tmp-"


class LocalConfig(BackendConfig):
    """Configuration for a repository in a local directory."""

    scheme: Literal["local"] = "local"
    path: str
    layout: Literal["default", "s3legacy"] = Field(
        "default",
        description="use this backend directory layout",
        json_schema_extra={"option": "layout"},
    )
    connections: int = Field(
        2,
        ge=1,
        description="set a limit for the number of concurrent operations",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> LocalConfig:
    """Parse a ``local:<path>`` location string."""
    if not s.startswith("local:"):
        raise MalformedConfigError("invalid format, prefix 'local' not found", "local")

    path = s[len("local:"):]
    if not path:
        raise MalformedConfigError("invalid format, path is empty", "local")
    return LocalConfig(path=path)


def strip_password(s: str) -> str:
    """Local locations never contain a password."""
    return s


class LocalBackend(Backend):
    """
    Storage backend for a local directory.

    Files are written to a temporary file first and renamed into place, then
    made read-only (0o400). Directories are created with 0o700.

    Example:
        >>> be = create(LocalConfig(path='/srv/repo'))
        >>> be.save(Handle(FileType.KEY, 'abc'), b'...')
    """

    scheme = "local"

    def __init__(self, config: LocalConfig) -> None:
        self.config = config
        self.directory = Path(config.path)
        self.layout = select_layout(config.layout, str(self.directory), os.path.join)

    @property
    def location(self) -> str:
        return str(self.directory)

    @property
    def connections(self) -> int:
        return self.config.connections

    def _error(self, message: str, e: Exception) -> StorageError:
        logger.error(f"{message}: {e}")
        return StorageError(f"{message}: {e}", backend=self.scheme, location=self.location)

    def _ensure_parent_directory(self, path: Path) -> None:
        """Ensure parent directories exist with secure permissions."""
        parent = path.parent
        if not parent.exists():
            parent.mkdir(parents=True, exist_ok=True)
            try:
                os.chmod(parent, 0o700)
            except OSError as e:
                logger.warning(f"Could not set permissions on {parent}: {e}")

    def save(self, h: Handle, data: bytes) -> None:
        target = Path(self.layout.filename(h))
        tmp = target.parent / f"{_TEMP_PREFIX}{secrets.token_hex(8)}"

        try:
            self._ensure_parent_directory(target)
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise self._error(f"Failed to save {h}", e) from e

        try:
            os.chmod(target, 0o400)
        except OSError as e:
            logger.warning(f"Could not set permissions on {target}: {e}")

        logger.debug(f"Saved {h} ({len(data)} bytes) to {target}")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        path = Path(self.layout.filename(h))

        try:
            with path.open("rb") as f:
                if offset:
                    f.seek(offset)
                return f.read(length) if length > 0 else f.read()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location) from e
        except OSError as e:
            raise self._error(f"Failed to load {h}", e) from e

    def stat(self, h: Handle) -> FileInfo:
        path = Path(self.layout.filename(h))

        try:
            size = path.stat().st_size
        except FileNotFoundError as e:
            raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location) from e
        except OSError as e:
            raise self._error(f"Failed to stat {h}", e) from e

        return FileInfo(name=h.name, size=size)

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            path = Path(self.layout.filename(Handle(t)))
            if path.exists():
                yield FileInfo(name="config", size=path.stat().st_size)
            return

        basedir = Path(self.layout.basedir(t))
        if not basedir.exists():
            return

        dirs = [basedir]
        if t is FileType.DATA and self.config.layout == "default":
            dirs = sorted(d for d in basedir.iterdir() if d.is_dir())

        for directory in dirs:
            for entry in sorted(directory.iterdir()):
                if entry.name.startswith(_TEMP_PREFIX):
                    logger.warning(f"Ignoring leftover temporary file {entry}")
                    continue
                if entry.is_file():
                    yield FileInfo(name=entry.name, size=entry.stat().st_size)

    def remove(self, h: Handle) -> None:
        path = Path(self.layout.filename(h))

        try:
            # read-only files cannot be removed on every platform
            os.chmod(path, 0o600)
            path.unlink()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location) from e
        except OSError as e:
            raise self._error(f"Failed to remove {h}", e) from e

        logger.debug(f"Removed {h} from {path}")

    def close(self) -> None:
        logger.debug(f"Closed local backend at {self.location}")


def open(config: LocalConfig, transport: httpx.BaseTransport | None = None) -> LocalBackend:
    """
    Open an existing repository directory.

    Raises:
        StorageError: If the directory does not exist.
    """
    directory = Path(config.path)
    if not directory.is_dir():
        raise StorageError(
            "repository directory does not exist", backend="local", location=str(directory)
        )

    logger.info(f"Opened local backend at {directory}")
    return LocalBackend(config)


def create(config: LocalConfig, transport: httpx.BaseTransport | None = None) -> LocalBackend:
    """
    Create the directory structure for a new repository.

    Raises:
        StorageError: If a repository already exists or a directory cannot be created.
    """
    be = LocalBackend(config)

    if be.test(Handle(FileType.CONFIG)):
        raise StorageError("config file already exists", backend="local", location=be.location)

    try:
        for d in [be.location, *be.layout.paths()]:
            Path(d).mkdir(parents=True, exist_ok=True)
            os.chmod(d, 0o700)
    except PermissionError as e:
        raise StorageError(
            "Permission denied creating directory", backend="local", location=be.location
        ) from e
    except OSError as e:
        raise StorageError(
            f"Failed to create directory: {e}", backend="local", location=be.location
        ) from e

    logger.info(f"Created local backend at {be.location}")
    return be
