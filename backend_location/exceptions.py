"""
Custom exceptions for backend location resolution.

This module defines specific exception types for resolving a repository
location into an opened storage backend. Every message is safe to print:
location strings are always passed in their password-stripped form.
"""

from __future__ import annotations


class LocationError(Exception):
    """
    Base exception for all location resolution errors.

    Attributes:
        location: Password-stripped location the error refers to, if known.
    """

    fatal: bool = True
    location: str | None = None

    def add_location(self, location: str) -> None:
        """Prefix the message with an already redacted location, once."""
        if self.location is not None:
            return
        self.location = location
        message = self.args[0] if self.args else ""
        self.args = (f"{location}: {message}", *self.args[1:])


class AmbiguousLocationError(LocationError):
    """Raised when a string is neither a known scheme nor a filesystem path."""

    def __init__(self) -> None:
        # without a scheme there is no redactor, so the string is left out
        super().__init__(
            "invalid backend\n"
            "If the repo is in a local directory, you need to add a `local:` prefix"
        )


class UnknownSchemeError(LocationError):
    """Raised when no backend constructor exists for a scheme."""

    def __init__(self, scheme: str) -> None:
        super().__init__(f"invalid backend: {scheme!r}")
        self.scheme = scheme


class MalformedConfigError(LocationError):
    """Raised when a backend cannot parse its location string."""

    def __init__(self, message: str, scheme: str | None = None) -> None:
        super().__init__(f"{scheme}: {message}" if scheme else message)
        self.scheme = scheme


class MissingCredentialError(LocationError):
    """Raised when only one half of a required credential set is present."""

    def __init__(self, backend: str, field: str, variable: str) -> None:
        super().__init__(f"unable to open {backend} backend: {field} (${variable}) is empty")
        self.backend = backend
        self.field = field
        self.variable = variable


class OptionApplicationError(LocationError):
    """Raised when an extended option is unknown or has an invalid value."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"option {key}: {message}")
        self.key = key


class BackendConstructionError(LocationError):
    """Raised when a backend fails to open or create."""

    def __init__(self, action: str, location: str, cause: Exception | str) -> None:
        super().__init__(f"unable to {action} repo at {location}: {cause}")
        self.action = action
        self.location = location


class CancellationError(LocationError):
    """Raised when the operation's context was cancelled."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class StorageError(Exception):
    """Raised when a storage backend operation fails."""

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        location: str | None = None,
    ) -> None:
        parts = [message]
        if backend:
            parts.append(f"backend={backend}")
        if location:
            parts.append(f"location={location}")
        super().__init__(" ".join(parts))
        self.backend = backend
        self.location = location


class ObjectNotFoundError(StorageError):
    """Raised when a file does not exist in the backend."""

    def __init__(self, name: str, backend: str | None = None, location: str | None = None) -> None:
        super().__init__(f"{name} does not exist", backend=backend, location=location)
        self.name = name
