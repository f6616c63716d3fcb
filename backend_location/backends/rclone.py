"""
rclone storage backend.

Starts ``rclone serve restic`` on a free local port and talks to it with the
REST backend. The rclone process lives as long as the backend handle and is
terminated by :meth:`RcloneBackend.close`.
"""

from __future__ import annotations

import logging
import shlex
import socket
import subprocess
import time
from typing import TYPE_CHECKING, Literal

import httpx
from pydantic import Field

from backend_location.backends.base import BackendConfig
from backend_location.backends.rest import RestBackend, RestConfig, initialize
from backend_location.exceptions import MalformedConfigError, StorageError

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = ["RcloneConfig", "RcloneBackend", "parse_config", "strip_password", "open", "create"]

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class RcloneConfig(BackendConfig):
    """Configuration for a repository served by rclone."""

    scheme: Literal["rclone"] = "rclone"
    remote: str
    program: str = Field(
        "rclone",
        description="path to rclone (default: rclone)",
        json_schema_extra={"option": "program"},
    )
    args: str = Field(
        "serve restic --b2-hard-delete",
        description="arguments for running rclone (default: serve restic --b2-hard-delete)",
        json_schema_extra={"option": "args"},
    )
    timeout: float = Field(
        60.0,
        gt=0,
        description="set a timeout limit to wait for rclone to establish a connection (seconds)",
        json_schema_extra={"option": "timeout"},
    )
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> RcloneConfig:
    """Parse an ``rclone:<remote>:<path>`` location string."""
    if not s.startswith("rclone:"):
        raise MalformedConfigError("invalid format, prefix 'rclone' not found", "rclone")

    remote = s[len("rclone:"):]
    if not remote:
        raise MalformedConfigError("invalid format, remote is empty", "rclone")
    return RcloneConfig(remote=remote)


def strip_password(s: str) -> str:
    """rclone locations name a configured remote and never contain a password."""
    return s


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def command(config: RcloneConfig, port: int) -> Sequence[str]:
    """Return the command line that serves the remote on ``port``."""
    return [
        config.program,
        *shlex.split(config.args),
        "--addr",
        f"127.0.0.1:{port}",
        config.remote,
    ]


class RcloneBackend(RestBackend):
    """REST backend bound to a running ``rclone serve restic`` process."""

    scheme = "rclone"

    def __init__(
        self,
        config: RcloneConfig,
        transport: httpx.BaseTransport | None,
        process: subprocess.Popen,
        port: int,
    ) -> None:
        rest = RestConfig(url=f"http://127.0.0.1:{port}/", connections=config.connections)
        super().__init__(rest, transport)
        self.rclone = config
        self.process = process

    @property
    def location(self) -> str:
        return self.rclone.remote

    def wait_ready(self) -> None:
        """
        Wait until rclone accepts connections.

        Raises:
            StorageError: If rclone exits or does not answer within the timeout.
        """
        deadline = time.monotonic() + self.rclone.timeout

        while True:
            status = self.process.poll()
            if status is not None:
                raise StorageError(
                    f"rclone exited with status {status}", backend=self.scheme, location=self.location
                )

            try:
                self._client.get(self.config.url)
                return
            except httpx.TransportError as e:
                if time.monotonic() >= deadline:
                    raise StorageError(
                        f"rclone did not start within {self.rclone.timeout}s: {e}",
                        backend=self.scheme,
                        location=self.location,
                    ) from e

            time.sleep(_POLL_INTERVAL)

    def close(self) -> None:
        super().close()

        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                logger.warning(f"rclone (pid {self.process.pid}) did not terminate, killing it")
                self.process.kill()
                self.process.wait()


def _start(config: RcloneConfig, transport: httpx.BaseTransport | None) -> RcloneBackend:
    port = _free_port()
    cmd = command(config, port)
    logger.debug(f"Running {' '.join(cmd)}")

    try:
        process = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL)
    except OSError as e:
        raise StorageError(
            f"unable to start {config.program}: {e}", backend="rclone", location=config.remote
        ) from e

    be = RcloneBackend(config, transport, process, port)
    try:
        be.wait_ready()
    except StorageError:
        be.close()
        raise
    return be


def open(config: RcloneConfig, transport: httpx.BaseTransport | None = None) -> RcloneBackend:
    """Start rclone and open the repository it serves."""
    be = _start(config, transport)
    logger.info(f"Opened rclone backend at {be.location}")
    return be


def create(config: RcloneConfig, transport: httpx.BaseTransport | None = None) -> RcloneBackend:
    """Start rclone and create a new repository on the remote."""
    be = _start(config, transport)

    try:
        initialize(be)
    except StorageError:
        be.close()
        raise

    logger.info(f"Created rclone backend at {be.location}")
    return be
