"""
SFTP storage backend.

Uses the fsspec ``sftp`` filesystem (paramiko underneath). When
``sftp.command`` is set, the SSH connection runs through that command as a
paramiko ``ProxyCommand``; ``sftp.args`` adds arguments to an ``ssh -W``
tunnel instead.
"""

from __future__ import annotations

import logging
import posixpath
import secrets
import shlex
from typing import TYPE_CHECKING, Literal
from urllib.parse import unquote, urlsplit

import fsspec
from pydantic import Field

from backend_location.backends.base import Backend, BackendConfig, FileInfo, FileType, Handle
from backend_location.backends.layout import select_layout
from backend_location.exceptions import MalformedConfigError, ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator

    import httpx

__all__ = ["SFTPConfig", "SFTPBackend", "parse_config", "strip_password", "open", "create"]

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22

_TEMP_PREFIX = ".tmp-"


class SFTPConfig(BackendConfig):
    """Configuration for a repository on an SFTP server."""

    scheme: Literal["sftp"] = "sftp"
    user: str = ""
    host: str
    port: int = 0
    path: str
    command: str = Field(
        "",
        description="specify command to create sftp connection",
        json_schema_extra={"option": "command"},
    )
    args: str = Field(
        "",
        description="specify arguments for ssh",
        json_schema_extra={"option": "args"},
    )
    layout: Literal["default", "s3legacy"] = Field(
        "default",
        description="use this backend directory layout",
        json_schema_extra={"option": "layout"},
    )
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> SFTPConfig:
    """
    Parse an SFTP location string.

    Accepted forms are ``sftp:[user@]host:path`` and
    ``sftp://[user@]host[:port]/path``. In the URL form the path is relative
    to the login directory unless it starts with a second slash.
    """
    if s.startswith("sftp://"):
        try:
            parts = urlsplit(s)
            port = parts.port or 0
        except ValueError as e:
            raise MalformedConfigError(f"invalid URL: {e}", "sftp") from e
        user = unquote(parts.username or "")
        host = parts.hostname or ""
        path = unquote(parts.path[1:])
    elif s.startswith("sftp:"):
        userhost, sep, path = s[len("sftp:"):].partition(":")
        if not sep:
            raise MalformedConfigError("invalid format, hostname or path not found", "sftp")
        user, _, host = userhost.rpartition("@")
        port = 0
    else:
        raise MalformedConfigError("invalid format, prefix 'sftp' not found", "sftp")

    if not host:
        raise MalformedConfigError("invalid format, hostname not found", "sftp")
    if not path:
        raise MalformedConfigError("invalid format, path not found", "sftp")
    if path.startswith("~"):
        raise MalformedConfigError(
            "sftp path starts with the tilde (~) character, that fails for most sftp "
            "servers.\nUse a relative directory, most servers interpret this as "
            "relative to the user's home directory",
            "sftp",
        )

    return SFTPConfig(user=user, host=host, port=port, path=posixpath.normpath(path))


def strip_password(s: str) -> str:
    """SFTP locations never contain a password."""
    return s


def proxy_command(config: SFTPConfig) -> str:
    """Return the command the SSH connection is tunnelled through, if any."""
    if config.command:
        return config.command
    if not config.args:
        return ""

    cmd = ["ssh", config.args, "-W", f"{config.host}:{config.port or DEFAULT_PORT}"]
    if config.user:
        cmd += ["-l", shlex.quote(config.user)]
    cmd.append(shlex.quote(config.host))
    return " ".join(cmd)


def _connect(config: SFTPConfig) -> fsspec.AbstractFileSystem:
    """Open an SFTP session for the config."""
    try:
        import paramiko
    except ImportError as e:
        raise StorageError(
            "paramiko is required for SFTP storage backend. "
            "Install with: pip install backend-location[sftp]",
            backend="sftp",
        ) from e

    kwargs = {"port": config.port or DEFAULT_PORT, "skip_instance_cache": True}
    if config.user:
        kwargs["username"] = config.user

    command = proxy_command(config)
    if command:
        logger.debug(f"Connecting to {config.host} through {command!r}")
        kwargs["sock"] = paramiko.ProxyCommand(command)

    try:
        return fsspec.filesystem("sftp", host=config.host, **kwargs)
    except Exception as e:
        logger.error(f"Failed to connect to {config.host}: {e}")
        raise StorageError(
            f"unable to connect to {config.host}: {e}", backend="sftp", location=config.path
        ) from e


class SFTPBackend(Backend):
    """Storage backend for a directory on an SFTP server."""

    scheme = "sftp"

    def __init__(self, config: SFTPConfig, fs: fsspec.AbstractFileSystem) -> None:
        self.config = config
        self.fs = fs
        self.layout = select_layout(config.layout, config.path, posixpath.join)

    @property
    def location(self) -> str:
        return self.config.path

    @property
    def connections(self) -> int:
        return self.config.connections

    def _error(self, message: str, e: Exception) -> StorageError:
        logger.error(f"{message}: {e}")
        return StorageError(f"{message}: {e}", backend=self.scheme, location=self.location)

    def _not_found(self, h: Handle) -> ObjectNotFoundError:
        return ObjectNotFoundError(str(h), backend=self.scheme, location=self.location)

    def save(self, h: Handle, data: bytes) -> None:
        target = self.layout.filename(h)
        tmp = posixpath.join(posixpath.dirname(target), f"{_TEMP_PREFIX}{secrets.token_hex(8)}")

        try:
            self.fs.makedirs(posixpath.dirname(target), exist_ok=True)
            with self.fs.open(tmp, "wb") as f:
                f.write(data)
            self.fs.mv(tmp, target)
        except Exception as e:
            raise self._error(f"Failed to save {h}", e) from e

        try:
            self.fs.ftp.chmod(target, 0o400)
        except OSError as e:
            logger.warning(f"Could not set permissions on {target}: {e}")

        logger.debug(f"Saved {h} ({len(data)} bytes) to {self.config.host}:{target}")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        start = offset or None
        end = offset + length if length > 0 else None

        try:
            return self.fs.cat_file(self.layout.filename(h), start=start, end=end)
        except FileNotFoundError as e:
            raise self._not_found(h) from e
        except Exception as e:
            raise self._error(f"Failed to load {h}", e) from e

    def stat(self, h: Handle) -> FileInfo:
        try:
            info = self.fs.info(self.layout.filename(h))
        except FileNotFoundError as e:
            raise self._not_found(h) from e
        except Exception as e:
            raise self._error(f"Failed to stat {h}", e) from e

        return FileInfo(name=h.name, size=int(info["size"]))

    def _entries(self, directory: str) -> list[dict]:
        try:
            return self.fs.ls(directory, detail=True)
        except FileNotFoundError:
            return []

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            try:
                info = self.stat(Handle(t))
            except ObjectNotFoundError:
                return
            yield FileInfo(name="config", size=info.size)
            return

        basedir = self.layout.basedir(t)
        dirs = [basedir]
        if t is FileType.DATA and self.config.layout == "default":
            dirs = sorted(e["name"] for e in self._entries(basedir) if e["type"] == "directory")

        try:
            for directory in dirs:
                for entry in sorted(self._entries(directory), key=lambda e: e["name"]):
                    name = posixpath.basename(entry["name"])
                    if name.startswith(_TEMP_PREFIX):
                        logger.warning(f"Ignoring leftover temporary file {entry['name']}")
                        continue
                    if entry["type"] == "file":
                        yield FileInfo(name=name, size=int(entry["size"]))
        except OSError as e:
            raise self._error(f"Failed to list {t.value}", e) from e

    def remove(self, h: Handle) -> None:
        path = self.layout.filename(h)

        try:
            self.fs.rm_file(path)
        except FileNotFoundError as e:
            raise self._not_found(h) from e
        except Exception as e:
            raise self._error(f"Failed to remove {h}", e) from e

        logger.debug(f"Removed {h} from {self.config.host}:{path}")

    def close(self) -> None:
        self.fs.ftp.close()
        self.fs.client.close()
        logger.debug(f"Closed sftp backend at {self.config.host}:{self.location}")


def open(config: SFTPConfig, transport: httpx.BaseTransport | None = None) -> SFTPBackend:
    """
    Connect to the server and open an existing repository.

    Raises:
        StorageError: If the connection fails or the directory does not exist.
    """
    be = SFTPBackend(config, _connect(config))

    if not be.fs.isdir(config.path):
        be.close()
        raise StorageError(
            "repository directory does not exist", backend="sftp", location=config.path
        )

    logger.info(f"Opened sftp backend at {config.host}:{config.path}")
    return be


def create(config: SFTPConfig, transport: httpx.BaseTransport | None = None) -> SFTPBackend:
    """
    Connect to the server and create the directory structure for a new repository.

    Raises:
        StorageError: If a repository already exists or a directory cannot be created.
    """
    be = SFTPBackend(config, _connect(config))

    try:
        if be.test(Handle(FileType.CONFIG)):
            raise StorageError("config file already exists", backend="sftp", location=be.location)

        for d in [be.location, *be.layout.paths()]:
            be.fs.makedirs(d, exist_ok=True)
    except StorageError:
        be.close()
        raise
    except Exception as e:
        be.close()
        raise StorageError(
            f"Failed to create directory: {e}", backend="sftp", location=be.location
        ) from e

    logger.info(f"Created sftp backend at {config.host}:{config.path}")
    return be
