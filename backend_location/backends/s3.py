"""
AWS S3 (and S3-compatible) storage backend.

This module provides a storage backend for repositories in S3 buckets. The
boto3 client signs requests as usual, but sends them through the httpx
transport handed in by the factory, so throttling and TLS settings apply to
S3 exactly as they do to the other HTTP backends.
"""

from __future__ import annotations

import io
import logging
import posixpath
from typing import TYPE_CHECKING, Literal
from urllib.parse import urlsplit

import httpx
from pydantic import Field, SecretStr

from backend_location.backends.base import (
    Backend,
    BackendConfig,
    FileInfo,
    FileType,
    Handle,
    secret_value,
)
from backend_location.backends.http import DEFAULT_TIMEOUT, range_header
from backend_location.backends.layout import clean_prefix, select_layout
from backend_location.exceptions import MalformedConfigError, ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import Any

    from botocore.awsrequest import AWSPreparedRequest, AWSResponse
    from mypy_boto3_s3 import S3Client

__all__ = ["S3Config", "S3Backend", "parse_config", "strip_password", "open", "create"]

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "s3.amazonaws.com"

_ADDRESSING_STYLES = {"auto": "auto", "dns": "virtual", "path": "path"}


class S3Config(BackendConfig):
    """Configuration for a repository in an S3 bucket."""

    scheme: Literal["s3"] = "s3"
    endpoint: str = DEFAULT_ENDPOINT
    use_http: bool = False
    bucket: str
    prefix: str = ""
    key_id: str = ""
    secret: SecretStr | None = None
    session_token: SecretStr | None = None
    region: str = Field(
        "",
        description="set region",
        json_schema_extra={"option": "region"},
    )
    storage_class: str = Field(
        "",
        description="set S3 storage class (STANDARD, STANDARD_IA, ONEZONE_IA, ...)",
        json_schema_extra={"option": "storage-class"},
    )
    bucket_lookup: Literal["auto", "dns", "path"] = Field(
        "auto",
        description="bucket lookup style: 'auto', 'dns', or 'path'",
        json_schema_extra={"option": "bucket-lookup"},
    )
    list_objects_v1: bool = Field(
        False,
        description="use deprecated V1 api for ListObjects calls",
        json_schema_extra={"option": "list-objects-v1"},
    )
    layout: Literal["default", "s3legacy"] = Field(
        "default",
        description="use this backend layout",
        json_schema_extra={"option": "layout"},
    )
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def _is_host(segment: str) -> bool:
    """Return True if the first path segment names an endpoint, not a bucket."""
    return "." in segment or ":" in segment or segment == "localhost"


def _create_config(endpoint: str, bucket: str, prefix: str, use_http: bool) -> S3Config:
    if not endpoint:
        raise MalformedConfigError("invalid format, host/region or bucket name not found", "s3")
    if not bucket:
        raise MalformedConfigError("bucket name not found", "s3")

    return S3Config(
        endpoint=endpoint, bucket=bucket, prefix=clean_prefix(prefix), use_http=use_http
    )


def parse_config(s: str) -> S3Config:
    """
    Parse an S3 location string.

    Accepted forms::

        s3:<endpoint>/<bucket>[/<prefix>]
        s3://<endpoint>/<bucket>[/<prefix>]
        s3:http[s]://<endpoint>/<bucket>[/<prefix>]
        s3:<bucket>[/<prefix>]

    The first segment is taken as the endpoint when it looks like a host name
    (contains a dot or a port, or is ``localhost``); otherwise it is the bucket
    on the default AWS endpoint.
    """
    if s.startswith("s3:http"):
        try:
            parts = urlsplit(s[len("s3:"):])
        except ValueError as e:
            raise MalformedConfigError(f"invalid URL: {e}", "s3") from e
        if parts.path in ("", "/"):
            raise MalformedConfigError("bucket name not found", "s3")
        bucket, _, prefix = parts.path[1:].partition("/")
        return _create_config(parts.netloc, bucket, prefix, parts.scheme == "http")

    if s.startswith("s3://"):
        rest = s[len("s3://"):]
    elif s.startswith("s3:"):
        rest = s[len("s3:"):]
    else:
        raise MalformedConfigError("invalid format", "s3")

    first, _, remainder = rest.partition("/")
    if _is_host(first):
        bucket, _, prefix = remainder.partition("/")
        return _create_config(first, bucket, prefix, False)

    return _create_config(DEFAULT_ENDPOINT, first, remainder, False)


def strip_password(s: str) -> str:
    """S3 locations never contain a password."""
    return s


class _RawResponse:
    """Buffered body with the file-like interface botocore reads from."""

    def __init__(self, content: bytes) -> None:
        self._buffer = io.BytesIO(content)

    def stream(self, **kwargs: Any) -> Iterator[bytes]:
        yield self._buffer.read()

    def read(self, amt: int | None = None) -> bytes:
        return self._buffer.read(amt) if amt else self._buffer.read()

    def close(self) -> None:
        self._buffer.close()


class _HTTPXSender:
    """botocore ``before-send`` handler that sends requests with httpx."""

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def __call__(self, request: AWSPreparedRequest, **kwargs: Any) -> AWSResponse:
        from botocore.awsrequest import AWSResponse

        body = request.body
        if hasattr(body, "read"):
            body = body.read()

        # httpx does not implement 100-continue; Expect is never signed
        headers = {k: v for k, v in request.headers.items() if k.lower() != "expect"}
        response = self._client.request(request.method, request.url, headers=headers, content=body)

        return AWSResponse(
            request.url,
            response.status_code,
            dict(response.headers),
            _RawResponse(response.content),
        )


def _error_code(e: Exception) -> str:
    response = getattr(e, "response", None)
    if not isinstance(response, dict):
        return ""
    return response.get("Error", {}).get("Code", "")


class S3Backend(Backend):
    """
    Storage backend for AWS S3 and S3-compatible services.

    Example:
        >>> be = open(parse_config('s3:s3.amazonaws.com/my-bucket/repo'), transport)
        >>> be.save(Handle(FileType.KEY, 'abc'), b'...')
    """

    scheme = "s3"

    def __init__(self, config: S3Config, transport: httpx.BaseTransport | None) -> None:
        self.config = config
        self.layout = select_layout(config.layout, config.prefix, posixpath.join)
        self._http = httpx.Client(
            transport=transport,
            timeout=DEFAULT_TIMEOUT,
            limits=httpx.Limits(max_connections=config.connections),
        )
        self._client: S3Client = self._create_client()

    @property
    def location(self) -> str:
        return "/".join(p for p in (self.config.endpoint, self.config.bucket, self.config.prefix) if p)

    @property
    def connections(self) -> int:
        return self.config.connections

    @property
    def client(self) -> S3Client:
        """Return the boto3 S3 client."""
        return self._client

    def _create_client(self) -> S3Client:
        """Create and configure the S3 client."""
        try:
            import boto3
            from botocore.config import Config
        except ImportError as e:
            raise StorageError(
                "boto3 is required for S3 storage backend. "
                "Install with: pip install boto3",
                backend="s3",
            ) from e

        cfg = self.config
        config = Config(
            region_name=cfg.region or None,
            retries={"max_attempts": 3, "mode": "adaptive"},
            max_pool_connections=cfg.connections,
            s3={"addressing_style": _ADDRESSING_STYLES[cfg.bucket_lookup]},
        )

        endpoint_url = None
        if cfg.endpoint != DEFAULT_ENDPOINT or cfg.use_http:
            endpoint_url = f"{'http' if cfg.use_http else 'https'}://{cfg.endpoint}"

        session = boto3.Session()
        client = session.client(
            "s3",
            aws_access_key_id=cfg.key_id or None,
            aws_secret_access_key=secret_value(cfg.secret) or None,
            aws_session_token=secret_value(cfg.session_token) or None,
            endpoint_url=endpoint_url,
            config=config,
        )
        client.meta.events.register("before-send.s3", _HTTPXSender(self._http))
        return client

    def _key(self, h: Handle) -> str:
        return self.layout.filename(h)

    def _error(self, message: str, e: Exception) -> StorageError:
        logger.error(f"{message}: {e}")
        return StorageError(f"{message}: {e}", backend=self.scheme, location=self.location)

    def save(self, h: Handle, data: bytes) -> None:
        kwargs: dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Key": self._key(h),
            "Body": data,
            "ContentType": "application/octet-stream",
        }
        if self.config.storage_class:
            kwargs["StorageClass"] = self.config.storage_class

        try:
            self.client.put_object(**kwargs)
        except Exception as e:
            raise self._error(f"Failed to save {h}", e) from e

        logger.debug(f"Saved {h} ({len(data)} bytes) to s3://{self.config.bucket}/{self._key(h)}")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        kwargs: dict[str, Any] = {"Bucket": self.config.bucket, "Key": self._key(h)}
        byte_range = range_header(length, offset)
        if byte_range:
            kwargs["Range"] = byte_range

        try:
            response = self.client.get_object(**kwargs)
            return response["Body"].read()
        except Exception as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location) from e
            raise self._error(f"Failed to load {h}", e) from e

    def stat(self, h: Handle) -> FileInfo:
        try:
            response = self.client.head_object(Bucket=self.config.bucket, Key=self._key(h))
        except Exception as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(str(h), backend=self.scheme, location=self.location) from e
            raise self._error(f"Failed to stat {h}", e) from e

        return FileInfo(name=h.name, size=int(response["ContentLength"]))

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            try:
                info = self.stat(Handle(t))
            except ObjectNotFoundError:
                return
            yield FileInfo(name="config", size=info.size)
            return

        prefix = self.layout.basedir(t) + "/"
        operation = "list_objects" if self.config.list_objects_v1 else "list_objects_v2"

        try:
            paginator = self.client.get_paginator(operation)
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    name = obj["Key"].rsplit("/", 1)[-1]
                    if name:
                        yield FileInfo(name=name, size=int(obj["Size"]))
        except Exception as e:
            raise self._error(f"Failed to list {t.value}", e) from e

    def remove(self, h: Handle) -> None:
        # S3 reports success for missing keys
        self.stat(h)

        try:
            self.client.delete_object(Bucket=self.config.bucket, Key=self._key(h))
        except Exception as e:
            raise self._error(f"Failed to remove {h}", e) from e

        logger.debug(f"Removed {h} from s3://{self.config.bucket}/{self._key(h)}")

    def close(self) -> None:
        self._http.close()
        logger.debug(f"Closed s3 backend at {self.location}")

    def ensure_bucket_exists(self) -> None:
        """
        Ensure the S3 bucket exists, creating it if necessary.

        Raises:
            StorageError: If bucket creation fails.
        """
        try:
            self.client.head_bucket(Bucket=self.config.bucket)
            logger.debug(f"Bucket {self.config.bucket} exists")
            return
        except Exception as e:
            if _error_code(e) not in ("404", "NoSuchBucket", "NotFound"):
                raise self._error("Failed to check bucket", e) from e

        create_kwargs: dict[str, Any] = {"Bucket": self.config.bucket}

        # LocationConstraint is required for regions other than us-east-1
        if self.config.region and self.config.region != "us-east-1":
            create_kwargs["CreateBucketConfiguration"] = {
                "LocationConstraint": self.config.region
            }

        try:
            self.client.create_bucket(**create_kwargs)
        except Exception as e:
            raise self._error("Failed to create S3 bucket", e) from e

        logger.info(f"Created bucket {self.config.bucket}")


def open(config: S3Config, transport: httpx.BaseTransport | None = None) -> S3Backend:
    """Open a repository in an S3 bucket."""
    be = S3Backend(config, transport)
    logger.info(f"Opened s3 backend at {be.location}")
    return be


def create(config: S3Config, transport: httpx.BaseTransport | None = None) -> S3Backend:
    """
    Create a new repository, creating the bucket if it does not exist.

    Raises:
        StorageError: If the repository already exists or the bucket cannot be created.
    """
    be = S3Backend(config, transport)

    try:
        be.ensure_bucket_exists()
        if be.test(Handle(FileType.CONFIG)):
            raise StorageError("config file already exists", backend="s3", location=be.location)
    except StorageError:
        be.close()
        raise

    logger.info(f"Created s3 backend at {be.location}")
    return be
