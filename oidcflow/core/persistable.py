"""Key -> string persistence contract.

Each persisted entity type declares the SecureStore key it lives under,
serialises itself with ``persist()`` and registers a ``restore`` decoder
that maps a stored string (or ``None`` when absent) back to an instance.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, ClassVar, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class Persistable(Protocol):
    """An entity that can be written to a SecureStore."""

    STORAGE_KEY: ClassVar[str]

    def persist(self) -> str: ...


_RESTORERS: dict[str, Callable[[str | None], Any]] = {}


def persistable(cls: type[T]) -> type[T]:
    """Class decorator registering ``cls.restore`` under ``cls.STORAGE_KEY``."""
    key = cls.STORAGE_KEY  # type: ignore[attr-defined]
    if key in _RESTORERS:
        raise ValueError(f"Storage key already registered: {key}")
    _RESTORERS[key] = cls.restore  # type: ignore[attr-defined]
    return cls


def registered_keys() -> list[str]:
    """Return all registered storage keys."""
    return sorted(_RESTORERS)


def restore(key: str, data: str | None) -> Any:
    """Decode ``data`` with the restorer registered for ``key``.

    Raises:
        KeyError: If no entity type is registered under ``key``.
    """
    return _RESTORERS[key](data)
