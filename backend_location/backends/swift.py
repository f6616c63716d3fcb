"""
OpenStack Swift storage backend.

Authentication happens once when the backend is opened. Supported are a
pre-authenticated storage URL plus token, v1 auth (``ST_AUTH``/``ST_USER``/
``ST_KEY``), Keystone v2 and Keystone v3 with a password or an application
credential. Afterwards every request carries ``X-Auth-Token``.
"""

from __future__ import annotations

import logging
import posixpath
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
from backend_location.backends.http import DEFAULT_TIMEOUT, HTTPBackend, range_header
from backend_location.backends.layout import DefaultLayout, clean_prefix
from backend_location.exceptions import MalformedConfigError, ObjectNotFoundError, StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import Any

__all__ = [
    "SwiftConfig",
    "SwiftBackend",
    "authenticate",
    "parse_config",
    "strip_password",
    "open",
    "create",
]

logger = logging.getLogger(__name__)

_LIST_LIMIT = 1000


class SwiftConfig(BackendConfig):
    """Configuration for a repository in a Swift container."""

    scheme: Literal["swift"] = "swift"
    container: str
    prefix: str = ""

    user_name: str = ""
    user_id: str = ""
    domain: str = ""
    domain_id: str = ""
    api_key: SecretStr | None = None
    region: str = ""
    auth_url: str = ""
    tenant: str = ""
    tenant_id: str = ""
    tenant_domain: str = ""
    tenant_domain_id: str = ""
    trust_id: str = ""
    application_credential_id: str = ""
    application_credential_name: str = ""
    application_credential_secret: SecretStr | None = None
    storage_url: str = ""
    auth_token: SecretStr | None = None

    default_container_policy: str = Field(
        "",
        description="storage policy for new containers",
        json_schema_extra={"option": "default-container-policy"},
    )
    connections: int = Field(
        5,
        ge=1,
        description="set a limit for the number of concurrent connections",
        json_schema_extra={"option": "connections"},
    )


def parse_config(s: str) -> SwiftConfig:
    """Parse a ``swift:<container>:/<prefix>`` location string."""
    if not s.startswith("swift:"):
        raise MalformedConfigError("invalid URL, expected: swift:container-name:/[prefix]", "swift")

    container, sep, prefix = s[len("swift:"):].partition(":")
    if not sep or not container:
        raise MalformedConfigError("invalid URL, expected: swift:container-name:/[prefix]", "swift")
    if not prefix:
        raise MalformedConfigError("prefix is empty", "swift")
    if not prefix.startswith("/"):
        raise MalformedConfigError("prefix does not start with slash (/)", "swift")

    return SwiftConfig(container=container, prefix=clean_prefix(prefix))


def strip_password(s: str) -> str:
    """Swift locations never contain a password."""
    return s


def _auth_version(auth_url: str) -> int:
    url = auth_url.rstrip("/")
    if url.endswith("/v3"):
        return 3
    if url.endswith("/v2.0"):
        return 2
    return 1


def _v1(client: httpx.Client, config: SwiftConfig) -> tuple[str, str]:
    response = client.get(
        config.auth_url,
        headers={"X-Auth-User": config.user_name, "X-Auth-Key": secret_value(config.api_key)},
    )
    response.raise_for_status()
    return response.headers["X-Storage-Url"], response.headers["X-Auth-Token"]


def _find_endpoint(catalog: list[dict[str, Any]], region: str, url_key: str) -> str:
    for service in catalog:
        if service.get("type") != "object-store":
            continue
        for endpoint in service.get("endpoints", []):
            if region and endpoint.get("region", endpoint.get("region_id")) != region:
                continue
            if url_key == "url" and endpoint.get("interface") != "public":
                continue
            return endpoint[url_key]
    raise StorageError(f"no object-store endpoint found for region {region!r}", backend="swift")


def _v2(client: httpx.Client, config: SwiftConfig) -> tuple[str, str]:
    auth: dict[str, Any] = {
        "passwordCredentials": {
            "username": config.user_name,
            "password": secret_value(config.api_key),
        }
    }
    if config.tenant_id:
        auth["tenantId"] = config.tenant_id
    elif config.tenant:
        auth["tenantName"] = config.tenant

    response = client.post(config.auth_url.rstrip("/") + "/tokens", json={"auth": auth})
    response.raise_for_status()
    access = response.json()["access"]
    storage_url = _find_endpoint(access["serviceCatalog"], config.region, "publicURL")
    return storage_url, access["token"]["id"]


def _v3_identity(config: SwiftConfig) -> dict[str, Any]:
    if config.application_credential_id or config.application_credential_name:
        credential: dict[str, Any] = {"secret": secret_value(config.application_credential_secret)}
        if config.application_credential_id:
            credential["id"] = config.application_credential_id
        else:
            credential["name"] = config.application_credential_name
            credential["user"] = _v3_user(config)
        return {"methods": ["application_credential"], "application_credential": credential}

    user = _v3_user(config)
    user["password"] = secret_value(config.api_key)
    return {"methods": ["password"], "password": {"user": user}}


def _v3_user(config: SwiftConfig) -> dict[str, Any]:
    if config.user_id:
        return {"id": config.user_id}

    user: dict[str, Any] = {"name": config.user_name}
    if config.domain_id:
        user["domain"] = {"id": config.domain_id}
    elif config.domain:
        user["domain"] = {"name": config.domain}
    return user


def _v3_scope(config: SwiftConfig) -> dict[str, Any] | None:
    if config.trust_id:
        return {"OS-TRUST:trust": {"id": config.trust_id}}
    if config.tenant_id:
        return {"project": {"id": config.tenant_id}}
    if not config.tenant:
        return None

    project: dict[str, Any] = {"name": config.tenant}
    if config.tenant_domain_id:
        project["domain"] = {"id": config.tenant_domain_id}
    elif config.tenant_domain:
        project["domain"] = {"name": config.tenant_domain}
    return {"project": project}


def _v3(client: httpx.Client, config: SwiftConfig) -> tuple[str, str]:
    auth: dict[str, Any] = {"identity": _v3_identity(config)}
    scope = _v3_scope(config)
    if scope is not None and "application_credential" not in auth["identity"]:
        auth["scope"] = scope

    response = client.post(config.auth_url.rstrip("/") + "/auth/tokens", json={"auth": auth})
    response.raise_for_status()
    catalog = response.json()["token"].get("catalog", [])
    return _find_endpoint(catalog, config.region, "url"), response.headers["X-Subject-Token"]


def authenticate(config: SwiftConfig, transport: httpx.BaseTransport | None) -> tuple[str, str]:
    """
    Obtain the storage URL and an auth token.

    Args:
        config: Resolved Swift configuration.
        transport: Transport used for the auth requests.

    Returns:
        ``(storage_url, token)``.

    Raises:
        StorageError: If authentication fails.
    """
    token = secret_value(config.auth_token)
    if config.storage_url and token:
        logger.debug("Using pre-authenticated Swift storage URL and token")
        return config.storage_url, token

    if not config.auth_url:
        raise StorageError("no auth URL set ($OS_AUTH_URL or $ST_AUTH)", backend="swift")

    version = _auth_version(config.auth_url)
    auth = {1: _v1, 2: _v2, 3: _v3}[version]
    logger.debug(f"Authenticating to Swift with v{version} auth at {config.auth_url}")

    try:
        with httpx.Client(transport=transport, timeout=DEFAULT_TIMEOUT) as client:
            storage_url, token = auth(client, config)
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.error(f"Swift authentication failed: {e}")
        raise StorageError(f"authentication failed: {e}", backend="swift") from e

    if config.storage_url:
        storage_url = config.storage_url
    return storage_url, token


class SwiftBackend(HTTPBackend):
    """Storage backend for OpenStack Swift."""

    scheme = "swift"

    def __init__(
        self,
        config: SwiftConfig,
        transport: httpx.BaseTransport | None,
        storage_url: str,
        token: str,
    ) -> None:
        super().__init__(transport, config.connections, headers={"X-Auth-Token": token})
        self.config = config
        self.layout = DefaultLayout(config.prefix, posixpath.join)
        self.container_url = f"{storage_url.rstrip('/')}/{quote(config.container, safe='')}"

    @property
    def location(self) -> str:
        return f"{self.config.container}/{self.config.prefix}".rstrip("/")

    def _object_url(self, h: Handle) -> str:
        return f"{self.container_url}/{quote(self.layout.filename(h))}"

    def save(self, h: Handle, data: bytes) -> None:
        self._send(
            "PUT",
            self._object_url(h),
            h,
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        logger.debug(f"Saved {h} ({len(data)} bytes)")

    def load(self, h: Handle, length: int = 0, offset: int = 0) -> bytes:
        headers = {}
        byte_range = range_header(length, offset)
        if byte_range:
            headers["Range"] = byte_range

        return self._send("GET", self._object_url(h), h, headers=headers).content

    def stat(self, h: Handle) -> FileInfo:
        response = self._send("HEAD", self._object_url(h), h)
        return FileInfo(name=h.name, size=int(response.headers["Content-Length"]))

    def list(self, t: FileType) -> Iterator[FileInfo]:
        if t is FileType.CONFIG:
            try:
                info = self.stat(Handle(t))
            except ObjectNotFoundError:
                return
            yield FileInfo(name="config", size=info.size)
            return

        params = {"format": "json", "prefix": self.layout.basedir(t) + "/", "limit": str(_LIST_LIMIT)}
        while True:
            response = self._send("GET", self.container_url, params=params)
            objects = response.json() if response.status_code != 204 else []
            for obj in objects:
                yield FileInfo(name=posixpath.basename(obj["name"]), size=int(obj["bytes"]))

            if len(objects) < _LIST_LIMIT:
                return
            params["marker"] = objects[-1]["name"]

    def remove(self, h: Handle) -> None:
        self._send("DELETE", self._object_url(h), h)
        logger.debug(f"Removed {h}")

    def ensure_container_exists(self) -> None:
        """Create the container, with the default storage policy, if it does not exist."""
        if self._send("HEAD", self.container_url, missing_ok=True).status_code != 404:
            return

        headers = {}
        if self.config.default_container_policy:
            headers["X-Storage-Policy"] = self.config.default_container_policy

        self._send("PUT", self.container_url, headers=headers)
        logger.info(f"Created container {self.config.container}")


def open(config: SwiftConfig, transport: httpx.BaseTransport | None = None) -> SwiftBackend:
    """Authenticate and open a repository in a Swift container."""
    storage_url, token = authenticate(config, transport)
    be = SwiftBackend(config, transport, storage_url, token)

    try:
        be.ensure_container_exists()
    except StorageError:
        be.close()
        raise

    logger.info(f"Opened swift backend at {be.location}")
    return be


def create(config: SwiftConfig, transport: httpx.BaseTransport | None = None) -> SwiftBackend:
    """
    Authenticate and create a new repository.

    Raises:
        StorageError: If authentication fails or the repository already exists.
    """
    be = open(config, transport)

    if be.test(Handle(FileType.CONFIG)):
        be.close()
        raise StorageError("config file already exists", backend="swift", location=be.location)

    logger.info(f"Created swift backend at {be.location}")
    return be
