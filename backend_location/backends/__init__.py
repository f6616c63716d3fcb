"""
Storage backends.

Each backend module exposes a config model, ``parse_config`` and
``strip_password`` for location strings, and ``open``/``create`` functions
that return a :class:`Backend` handle.

Example:
    >>> from backend_location.backends import FileType, local
    >>> be = local.create(local.parse_config('local:/srv/repo'))
    >>> list(be.list(FileType.SNAPSHOT))
"""

from backend_location.backends.azure import AzureBackend, AzureConfig
from backend_location.backends.b2 import B2Backend, B2Config
from backend_location.backends.base import Backend, BackendConfig, FileInfo, FileType, Handle
from backend_location.backends.gs import GSBackend, GSConfig
from backend_location.backends.local import LocalBackend, LocalConfig
from backend_location.backends.rclone import RcloneBackend, RcloneConfig
from backend_location.backends.rest import RestBackend, RestConfig
from backend_location.backends.s3 import S3Backend, S3Config
from backend_location.backends.sftp import SFTPBackend, SFTPConfig
from backend_location.backends.swift import SwiftBackend, SwiftConfig

__all__ = [
    "Backend",
    "BackendConfig",
    "FileInfo",
    "FileType",
    "Handle",
    "AzureBackend",
    "AzureConfig",
    "B2Backend",
    "B2Config",
    "GSBackend",
    "GSConfig",
    "LocalBackend",
    "LocalConfig",
    "RcloneBackend",
    "RcloneConfig",
    "RestBackend",
    "RestConfig",
    "S3Backend",
    "S3Config",
    "SFTPBackend",
    "SFTPConfig",
    "SwiftBackend",
    "SwiftConfig",
]
