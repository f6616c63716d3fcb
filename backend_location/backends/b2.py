"""
Backblaze B2 storage backend.

Uses the B2 native API (v2) over httpx. Opening the backend authorizes the
account and looks up the bucket ID; uploads fetch an upload URL which is
reused until it fails. Removing a file deletes all of its versions.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
import re
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
    from typing import Any

__all__ = ["B2Config", "B2Backend", "parse_config", "strip_password", "open", "create"]

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"

_BUCKET_NAME = re.compile(r"^[a-zA-Z0-9-]+$")
_LIST_PAGE_SIZE = 1000


class B2Config(BackendConfig):
    """Configuration for a repository in a B2 bucket."""

    scheme: Literal["b2"] = "b2"
    account_id: str = ""
    key: SecretStr | None = None
    bucket: str
    prefix: str = ""
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> B2Config:
    """Parse a ``b2:<bucket>[:<prefix>]`` location string."""
    if not s.startswith("b2:"):
        raise MalformedConfigError("invalid format, want: b2:bucket-name[:path]", "b2")

    bucket, _, prefix = s[len("b2:"):].partition(":")
    if not _BUCKET_NAME.match(bucket):
        raise MalformedConfigError(
            "bucket name contains invalid characters, allowed are: a-z, 0-9, dash (-)", "b2"
        )

    return B2Config(bucket=bucket, prefix=clean_prefix(prefix))


def strip_password(s: str) -> str:
    """B2 locations never contain a password."""
    return s


class B2Backend(HTTPBackend):
    """Storage backend for Backblaze B2."""

    scheme = "b2"

    def __init__(self, config: B2Config, transport: httpx.BaseTransport | None) -> None:
        super().__init__(transport, config.connections)
        self.config = config
        self.layout = DefaultLayout(config.prefix, posixpath.join)
        self.account: dict[str, Any] = {}
        self.bucket_id = ""
        self._upload: dict[str, str] | None = None

    @property
    def location(self) -> str:
        return f"{self.config.bucket}/{self.config.prefix}".rstrip("/")

    def authorize(self) -> None:
        """Authorize the account and remember the API and download URLs."""
        response = self._send(
            "GET",
            AUTHORIZE_URL,
            auth=httpx.BasicAuth(self.config.account_id, secret_value(self.config.key)),
        )
        self.account = response.json()
        self._client.headers["Authorization"] = self.account["authorizationToken"]
        logger.debug(f"Authorized B2 account {self.account['accountId']}")

    def _api(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.account['apiUrl']}/b2api/v2/{operation}"
        return self._send("POST", url, json=payload).json()

    def find_bucket(self) -> bool:
        """Look up the bucket ID; return False if the bucket does not exist."""
        result = self._api(
            "b2_list_buckets",
            {"accountId": self.account["accountId"], "bucketName": self.config.bucket},
        )
        buckets = result.get("buckets", [])
        if not buckets:
            return False
        self.bucket_id = buckets[0]["bucketId"]
        return True

    def create_bucket(self) -> None:
        result = self._api(
            "b2_create_bucket",
            {
                "accountId": self.account["accountId"],
                "bucketName": self.config.bucket,
                "bucketType": "allPrivate",
            },
        )
        self.bucket_id = result["bucketId"]
        logger.info(f"Created bucket {self.config.bucket}")

    def _upload_target(self) -> dict[str, str]:
        if self._upload is None:
            self._upload = self._api("b2_get_upload_url", {"bucketId": self.bucket_id})
        return self._upload

    def save(self, h: Handle, data: bytes) -> None:
        target = self._upload_target()
        headers = {
            "Authorization": target["authorizationToken"],
            "X-Bz-File-Name": quote(self.layout.filename(h)),
            "Content-Type": "application/octet-stream",
            "X-Bz-Content-Sha1": hashlib.sha1(data).hexdigest(),
        }

        try:
            self._send("POST", target["uploadUrl"], h, content=data, headers=headers)
        except StorageError:
            # upload URLs expire or get busy; fetch a new one next time
            self._upload = None
            raise

        logger.debug(f"Saved {h} ({len(data)} bytes)")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        headers = {}
        byte_range = range_header(length, offset)
        if byte_range:
            headers["Range"] = byte_range

        url = (
            f"{self.account['downloadUrl']}/file/{quote(self.config.bucket)}/"
            f"{quote(self.layout.filename(h))}"
        )
        return self._send("GET", url, h, headers=headers).content

    def _find_file(self, name: str) -> dict[str, Any] | None:
        result = self._api(
            "b2_list_file_names",
            {"bucketId": self.bucket_id, "startFileName": name, "maxFileCount": 1},
        )
        for f in result.get("files", []):
            if f["fileName"] == name:
                return f
        return None

    def stat(self, h: Handle) -> FileInfo:
        f = self._find_file(self.layout.filename(h))
        if f is None:
            raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location)
        return FileInfo(name=h.name, size=int(f["contentLength"]))

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            try:
                info = self.stat(Handle(t))
            except ObjectNotFoundError:
                return
            yield FileInfo(name="config", size=info.size)
            return

        payload: dict[str, Any] = {
            "bucketId": self.bucket_id,
            "prefix": self.layout.basedir(t) + "/",
            "maxFileCount": _LIST_PAGE_SIZE,
        }
        while True:
            result = self._api("b2_list_file_names", payload)
            for f in result.get("files", []):
                if f.get("action", "upload") != "upload":
                    continue
                yield FileInfo(name=posixpath.basename(f["fileName"]), size=int(f["contentLength"]))

            next_name = result.get("nextFileName")
            if not next_name:
                return
            payload["startFileName"] = next_name

    def remove(self, h: Handle) -> None:
        name = self.layout.filename(h)
        result = self._api(
            "b2_list_file_versions",
            {"bucketId": self.bucket_id, "startFileName": name, "prefix": name},
        )
        versions = [f for f in result.get("files", []) if f["fileName"] == name]
        if not versions:
            raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location)

        for f in versions:
            self._api("b2_delete_file_version", {"fileName": name, "fileId": f["fileId"]})

        logger.debug(f"Removed {h} ({len(versions)} versions)")


def open(config: B2Config, transport: httpx.BaseTransport | None = None) -> B2Backend:
    """
    Authorize and open a repository in an existing bucket.

    Raises:
        StorageError: If authorization fails or the bucket does not exist.
    """
    be = B2Backend(config, transport)

    try:
        be.authorize()
        if not be.find_bucket():
            raise StorageError("bucket does not exist", backend="b2", location=be.location)
    except StorageError:
        be.close()
        raise

    logger.info(f"Opened b2 backend at {be.location}")
    return be


def create(config: B2Config, transport: httpx.BaseTransport | None = None) -> B2Backend:
    """
    Authorize and create a new repository, creating the bucket if needed.

    Raises:
        StorageError: If the repository already exists or the bucket cannot be created.
    """
    be = B2Backend(config, transport)

    try:
        be.authorize()
        if not be.find_bucket():
            be.create_bucket()
        if be.test(Handle(FileType.CONFIG)):
            raise StorageError("config file already exists", backend="b2", location=be.location)
    except StorageError:
        be.close()
        raise

    logger.info(f"Created b2 backend at {be.location}")
    return be
