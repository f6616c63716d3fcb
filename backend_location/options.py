"""
Extended options (``-o <scheme>.<key>=<value>``).

Options are namespaced by backend scheme. Each backend declares the options
it accepts on its config model: a field with
``json_schema_extra={"option": "<key>"}`` can be set as ``<scheme>.<key>``,
and pydantic coerces the string value to the field's type.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Literal, get_args, get_origin

from pydantic import ValidationError

from backend_location.backends.base import option_fields
from backend_location.exceptions import OptionApplicationError
from backend_location.registry import BACKENDS

if TYPE_CHECKING:
    from backend_location.backends.base import BackendConfig

__all__ = ["Options", "list_options"]

logger = logging.getLogger(__name__)


class Options(Mapping[str, str]):
    """
    Immutable mapping of option keys to raw string values.

    Example:
        >>> opts = Options.parse(['s3.region=eu-west-1', 'sftp.command=ssh -p 2222 host'])
        >>> opts.extract('s3')
        Options({'region': 'eu-west-1'})
    """

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    @classmethod
    def parse(cls, items: Iterable[str]) -> Options:
        """
        Build options from ``key=value`` strings.

        Raises:
            OptionApplicationError: If an item has no ``=``, an empty key, or
                repeats a key.
        """
        values: dict[str, str] = {}
        for item in items:
            key, sep, value = item.partition("=")
            key = key.strip()
            if not sep or not key:
                raise OptionApplicationError(item, "invalid option, expected key=value")
            if key in values:
                raise OptionApplicationError(key, "specified more than once")
            values[key] = value
        return cls(values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Options({self._values!r})"

    def extract(self, scheme: str) -> Options:
        """Return the options of one backend, with the ``<scheme>.`` namespace removed."""
        prefix = scheme + "."
        return Options({k[len(prefix):]: v for k, v in self._values.items() if k.startswith(prefix)})

    def apply(self, scheme: str, config: BackendConfig) -> None:
        """
        Set extracted options on a backend config, in place.

        Args:
            scheme: Backend scheme, used for error messages.
            config: Config model to modify.

        Raises:
            OptionApplicationError: If a key is unknown or a value cannot be
                converted to the field's type.
        """
        fields = option_fields(type(config))

        for key, value in self._values.items():
            name = f"{scheme}.{key}"
            field = fields.get(key)
            if field is None:
                raise OptionApplicationError(name, "unknown option")

            try:
                setattr(config, field, value)
            except ValidationError as e:
                message = "; ".join(err["msg"] for err in e.errors())
                raise OptionApplicationError(name, f"invalid value {value!r}: {message}") from e

            logger.debug(f"Applied option {name}={value}")


def _type_name(annotation: object) -> str:
    if get_origin(annotation) is Literal:
        return "|".join(str(arg) for arg in get_args(annotation))
    return getattr(annotation, "__name__", str(annotation))


def list_options() -> list[tuple[str, str, str]]:
    """Return ``(name, type, help)`` for every option of every backend."""
    result = []
    for scheme, entry in BACKENDS.items():
        for option, field_name in sorted(option_fields(entry.config_type).items()):
            field = entry.config_type.model_fields[field_name]
            result.append((f"{scheme}.{option}", _type_name(field.annotation), field.description or ""))
    return result
