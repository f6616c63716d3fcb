"""
Azure Blob Storage backend.

Implements the Blob service REST API over httpx. Requests are authorized
either with the storage account key (SharedKey signing) or with a shared
access signature appended to every URL.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import posixpath
import xml.etree.ElementTree as ET
from email.utils import formatdate
from typing import TYPE_CHECKING, Literal
from urllib.parse import parse_qsl, quote, unquote

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
    from collections.abc import Generator, Iterator

__all__ = [
    "AzureConfig",
    "AzureBackend",
    "SharedKeyAuth",
    "parse_config",
    "strip_password",
    "open",
    "create",
]

logger = logging.getLogger(__name__)

API_VERSION = "2021-08-06"
DEFAULT_ENDPOINT_SUFFIX = "core.windows.net"

# headers that take part in the SharedKey signature, in signing order
_SIGNED_HEADERS = (
    "Content-Encoding",
    "Content-Language",
    "Content-Length",
    "Content-MD5",
    "Content-Type",
    "Date",
    "If-Modified-Since",
    "If-Match",
    "If-None-Match",
    "If-Unmodified-Since",
    "Range",
)


class AzureConfig(BackendConfig):
    """Configuration for a repository in an Azure blob container."""

    scheme: Literal["azure"] = "azure"
    container: str
    prefix: str = ""
    account_name: str = ""
    account_key: SecretStr | None = None
    account_sas: SecretStr | None = None
    endpoint_suffix: str = Field(
        "",
        description=f"endpoint suffix (default: {DEFAULT_ENDPOINT_SUFFIX})",
        json_schema_extra={"option": "endpoint-suffix"},
    )
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> AzureConfig:
    """Parse an ``azure:<container>:/<prefix>`` location string."""
    if not s.startswith("azure:"):
        raise MalformedConfigError("invalid format, prefix 'azure' not found", "azure")

    container, sep, prefix = s[len("azure:"):].partition(":")
    if not sep or not container:
        raise MalformedConfigError("invalid format: bucket name or path not found", "azure")

    return AzureConfig(container=container, prefix=clean_prefix(prefix))


def strip_password(s: str) -> str:
    """Azure locations never contain a password."""
    return s


class SharedKeyAuth(httpx.Auth):
    """Signs requests with a storage account key."""

    def __init__(self, account_name: str, account_key: str) -> None:
        self.account_name = account_name
        self._key = base64.b64decode(account_key)

    def string_to_sign(self, request: httpx.Request) -> str:
        lines = [request.method]
        for name in _SIGNED_HEADERS:
            value = request.headers.get(name, "")
            if name == "Content-Length" and value == "0":
                value = ""
            lines.append(value)

        ms_headers = sorted(
            (k.lower(), v.strip()) for k, v in request.headers.items() if k.lower().startswith("x-ms-")
        )
        lines.extend(f"{k}:{v}" for k, v in ms_headers)

        resource = f"/{self.account_name}{request.url.raw_path.decode('ascii').split('?')[0]}"
        params: dict[str, list[str]] = {}
        for k, v in request.url.params.multi_items():
            params.setdefault(k.lower(), []).append(v)
        for k in sorted(params):
            resource += f"\n{k}:{','.join(sorted(params[k]))}"
        lines.append(resource)

        return "\n".join(lines)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["x-ms-date"] = formatdate(usegmt=True)
        request.headers.setdefault("x-ms-version", API_VERSION)

        digest = hmac.new(self._key, self.string_to_sign(request).encode("utf-8"), hashlib.sha256)
        signature = base64.b64encode(digest.digest()).decode("ascii")
        request.headers["Authorization"] = f"SharedKey {self.account_name}:{signature}"
        yield request


class SASAuth(httpx.Auth):
    """Appends a shared access signature to every request URL."""

    def __init__(self, sas: str) -> None:
        self._params = parse_qsl(sas.lstrip("?"), keep_blank_values=True)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.url = request.url.copy_merge_params(self._params)
        request.headers.setdefault("x-ms-version", API_VERSION)
        yield request


class AzureBackend(HTTPBackend):
    """Storage backend for Azure Blob Storage."""

    scheme = "azure"

    def __init__(self, config: AzureConfig, transport: httpx.BaseTransport | None) -> None:
        account_key = secret_value(config.account_key)
        if account_key:
            auth: httpx.Auth = SharedKeyAuth(config.account_name, account_key)
        else:
            auth = SASAuth(secret_value(config.account_sas))

        super().__init__(transport, config.connections, auth=auth)
        self.config = config
        self.layout = DefaultLayout(config.prefix, posixpath.join)

        suffix = config.endpoint_suffix or DEFAULT_ENDPOINT_SUFFIX
        self.container_url = (
            f"https://{config.account_name}.blob.{suffix}/{quote(config.container, safe='')}"
        )

    @property
    def location(self) -> str:
        return f"{self.config.container}/{self.config.prefix}".rstrip("/")

    def _blob_url(self, h: Handle) -> str:
        return f"{self.container_url}/{quote(self.layout.filename(h))}"

    def save(self, h: Handle, data: bytes) -> None:
        self._send(
            "PUT",
            self._blob_url(h),
            h,
            content=data,
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": "application/octet-stream"},
        )
        logger.debug(f"Saved {h} ({len(data)} bytes)")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        headers = {}
        byte_range = range_header(length, offset)
        if byte_range:
            headers["x-ms-range"] = byte_range

        return self._send("GET", self._blob_url(h), h, headers=headers).content

    def stat(self, h: Handle) -> FileInfo:
        response = self._send("HEAD", self._blob_url(h), h)
        return FileInfo(name=h.name, size=int(response.headers["Content-Length"]))

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            try:
                info = self.stat(Handle(t))
            except ObjectNotFoundError:
                return
            yield FileInfo(name="config", size=info.size)
            return

        params = {"restype": "container", "comp": "list", "prefix": self.layout.basedir(t) + "/"}
        while True:
            response = self._send("GET", self.container_url, params=params)
            try:
                root = ET.fromstring(response.content)
            except ET.ParseError as e:
                raise StorageError(
                    f"list {t.value}: invalid response: {e}",
                    backend=self.scheme,
                    location=self.location,
                ) from e

            for blob in root.iter("Blob"):
                name = unquote(blob.findtext("Name", ""))
                size = int(blob.findtext("Properties/Content-Length", "0"))
                yield FileInfo(name=posixpath.basename(name), size=size)

            marker = root.findtext("NextMarker")
            if not marker:
                return
            params["marker"] = marker

    def remove(self, h: Handle) -> None:
        self._send("DELETE", self._blob_url(h), h)
        logger.debug(f"Removed {h}")

    def ensure_container_exists(self) -> None:
        """Create the container if it does not exist."""
        response = self._send(
            "HEAD", self.container_url, params={"restype": "container"}, missing_ok=True
        )
        if response.status_code != 404:
            return

        self._send("PUT", self.container_url, params={"restype": "container"})
        logger.info(f"Created container {self.config.container}")


def open(config: AzureConfig, transport: httpx.BaseTransport | None = None) -> AzureBackend:
    """Open a repository in an Azure blob container."""
    be = AzureBackend(config, transport)
    logger.info(f"Opened azure backend at {be.location}")
    return be


def create(config: AzureConfig, transport: httpx.BaseTransport | None = None) -> AzureBackend:
    """
    Create a new repository, creating the container if it does not exist.

    Raises:
        StorageError: If the repository already exists or the container cannot be created.
    """
    be = AzureBackend(config, transport)

    try:
        be.ensure_container_exists()
        if be.test(Handle(FileType.CONFIG)):
            raise StorageError("config file already exists", backend="azure", location=be.location)
    except StorageError:
        be.close()
        raise

    logger.info(f"Created azure backend at {be.location}")
    return be
