"""
Repository file layouts.

A layout maps file handles to paths. The default layout spreads data files
over 256 subdirectories named after the first two characters of the file
name; the ``s3legacy`` layout (also used by the REST protocol) keeps them flat.
"""

from __future__ import annotations

import posixpath
from typing import TYPE_CHECKING

from backend_location.backends.base import FileType, Handle

if TYPE_CHECKING:
    from collections.abc import Callable

LAYOUTS = ("default", "s3legacy")


class DefaultLayout:
    """Layout with data files in ``data/<xx>/<name>``."""

    def __init__(self, path: str = "", join: Callable[..., str] = posixpath.join) -> None:
        self.path = path
        self.join = join

    def dirname(self, h: Handle) -> str:
        """Return the directory holding the file."""
        if h.type is FileType.CONFIG:
            return self.path
        if h.type is FileType.DATA:
            return self.join(self.path, FileType.DATA.value, h.name[:2])
        return self.join(self.path, h.type.value)

    def filename(self, h: Handle) -> str:
        """Return the full path of the file."""
        if h.type is FileType.CONFIG:
            return self.join(self.path, FileType.CONFIG.value)
        return self.join(self.dirname(h), h.name)

    def basedir(self, t: FileType) -> str:
        """Return the directory below which all files of a type are stored."""
        if t is FileType.CONFIG:
            return self.path
        return self.join(self.path, t.value)

    def paths(self) -> list[str]:
        """Return every directory a new repository needs."""
        dirs = [self.basedir(t) for t in FileType if t is not FileType.CONFIG]
        data = self.basedir(FileType.DATA)
        dirs.extend(self.join(data, f"{i:02x}") for i in range(256))
        return dirs


class S3LegacyLayout(DefaultLayout):
    """Layout with all data files directly in ``data/``."""

    def dirname(self, h: Handle) -> str:
        if h.type is FileType.DATA:
            return self.join(self.path, FileType.DATA.value)
        return super().dirname(h)

    def paths(self) -> list[str]:
        return [self.basedir(t) for t in FileType if t is not FileType.CONFIG]


def select_layout(
    name: str, path: str = "", join: Callable[..., str] = posixpath.join
) -> DefaultLayout:
    """Return the layout called ``name``."""
    if name in ("", "default"):
        return DefaultLayout(path, join)
    if name == "s3legacy":
        return S3LegacyLayout(path, join)
    raise ValueError(f"unknown backend layout {name!r}, valid layouts are {LAYOUTS}")


def clean_prefix(prefix: str) -> str:
    """Normalize an object name prefix; the bucket root is the empty string."""
    if not prefix:
        return ""
    prefix = posixpath.normpath(prefix).strip("/")
    return "" if prefix == "." else prefix
