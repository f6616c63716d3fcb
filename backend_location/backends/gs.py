"""
Google Cloud Storage backend.

Talks to the Cloud Storage JSON API over httpx. Requests carry a bearer
token, taken from ``GOOGLE_ACCESS_TOKEN`` when set and otherwise obtained
from the gcloud CLI (``gcloud auth print-access-token``).
"""

from __future__ import annotations

import logging
import posixpath
import subprocess
from typing import TYPE_CHECKING, Literal
from urllib.parse import quote

import httpx
from pydantic import Field, SecretStr

from backend_location.backends.base import (
    BackendConfig,
    FileInfo,
    FileType,
    Handle,
    secret_value,
)
from backend_location.backends.http import HTTPBackend, range_header
from backend_location.backends.layout import DefaultLayout, clean_prefix
from backend_location.exceptions import MalformedConfigError, ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator

__all__ = ["GSConfig", "GSBackend", "parse_config", "strip_password", "open", "create"]

logger = logging.getLogger(__name__)

STORAGE_URL = "https://storage.googleapis.com"


class GSConfig(BackendConfig):
    """Configuration for a repository in a Cloud Storage bucket."""

    scheme: Literal["gs"] = "gs"
    bucket: str
    prefix: str = ""
    project_id: str = ""
    access_token: SecretStr | None = None
    region: str = Field(
        "us",
        description="region to create bucket in",
        json_schema_extra={"option": "region"},
    )
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> GSConfig:
    """Parse a ``gs:<bucket>:/<prefix>`` location string."""
    if not s.startswith("gs:"):
        raise MalformedConfigError("invalid format, prefix 'gs' not found", "gs")

    bucket, sep, prefix = s[len("gs:"):].partition(":")
    if not sep or not bucket:
        raise MalformedConfigError("invalid format: bucket name or path not found", "gs")

    return GSConfig(bucket=bucket, prefix=clean_prefix(prefix))


def strip_password(s: str) -> str:
    """GS locations never contain a password."""
    return s


def gcloud_access_token() -> str | None:
    """Get an access token from the gcloud CLI."""
    try:
        result = subprocess.run(
            ["gcloud", "auth", "print-access-token"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.debug(f"gcloud CLI not usable: {e}")
        return None

    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()
    return None


class GSBackend(HTTPBackend):
    """Storage backend for Google Cloud Storage."""

    scheme = "gs"

    def __init__(self, config: GSConfig, transport: httpx.BaseTransport | None, token: str) -> None:
        super().__init__(
            transport,
            config.connections,
            headers={"Authorization": f"Bearer {token}"},
        )
        self.config = config
        self.layout = DefaultLayout(config.prefix, posixpath.join)
        self._objects = f"{STORAGE_URL}/storage/v1/b/{quote(config.bucket, safe='')}/o"

    @property
    def location(self) -> str:
        return f"{self.config.bucket}/{self.config.prefix}".rstrip("/")

    def _object_url(self, h: Handle) -> str:
        return f"{self._objects}/{quote(self.layout.filename(h), safe='')}"

    def save(self, h: Handle, data: bytes) -> None:
        self._send(
            "POST",
            f"{STORAGE_URL}/upload/storage/v1/b/{quote(self.config.bucket, safe='')}/o",
            params={"uploadType": "media", "name": self.layout.filename(h)},
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        logger.debug(f"Saved {h} ({len(data)} bytes)")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        headers = {}
        byte_range = range_header(length, offset)
        if byte_range:
            headers["Range"] = byte_range

        response = self._send("GET", self._object_url(h), h, params={"alt": "media"}, headers=headers)
        return response.content

    def stat(self, h: Handle) -> FileInfo:
        response = self._send("GET", self._object_url(h), h)
        return FileInfo(name=h.name, size=int(response.json()["size"]))

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            try:
                info = self.stat(Handle(t))
            except ObjectNotFoundError:
                return
            yield FileInfo(name="config", size=info.size)
            return

        params = {"prefix": self.layout.basedir(t) + "/", "fields": "items(name,size),nextPageToken"}
        while True:
            page = self._send("GET", self._objects, params=params).json()
            for item in page.get("items", []):
                yield FileInfo(name=posixpath.basename(item["name"]), size=int(item["size"]))

            token = page.get("nextPageToken")
            if not token:
                return
            params["pageToken"] = token

    def remove(self, h: Handle) -> None:
        self._send("DELETE", self._object_url(h), h)
        logger.debug(f"Removed {h}")

    def ensure_bucket_exists(self) -> None:
        """Create the bucket in the configured region if it does not exist."""
        bucket_url = f"{STORAGE_URL}/storage/v1/b/{quote(self.config.bucket, safe='')}"
        if self._send("GET", bucket_url, missing_ok=True).status_code != 404:
            return

        if not self.config.project_id:
            raise StorageError(
                "bucket does not exist and no project ID is set ($GOOGLE_PROJECT_ID)",
                backend=self.scheme,
                location=self.location,
            )

        self._send(
            "POST",
            f"{STORAGE_URL}/storage/v1/b",
            params={"project": self.config.project_id},
            json={"name": self.config.bucket, "location": self.config.region},
        )
        logger.info(f"Created bucket {self.config.bucket} in {self.config.region}")


def _access_token(config: GSConfig) -> str:
    token = secret_value(config.access_token)
    if token:
        return token

    token = gcloud_access_token()
    if token:
        logger.debug("Authenticating to GCS using gcloud CLI access token")
        return token

    raise StorageError(
        "no credentials found, set $GOOGLE_ACCESS_TOKEN or log in with gcloud",
        backend="gs",
        location=config.bucket,
    )


def open(config: GSConfig, transport: httpx.BaseTransport | None = None) -> GSBackend:
    """Open a repository in a Cloud Storage bucket."""
    be = GSBackend(config, transport, _access_token(config))
    logger.info(f"Opened gs backend at {be.location}")
    return be


def create(config: GSConfig, transport: httpx.BaseTransport | None = None) -> GSBackend:
    """
    Create a new repository, creating the bucket if it does not exist.

    Raises:
        StorageError: If the repository already exists or the bucket cannot be created.
    """
    be = GSBackend(config, transport, _access_token(config))

    try:
        be.ensure_bucket_exists()
        if be.test(Handle(FileType.CONFIG)):
            raise StorageError("config file already exists", backend="gs", location=be.location)
    except StorageError:
        be.close()
        raise

    logger.info(f"Created gs backend at {be.location}")
    return be
