"""
Instance Container
===================
A generic, ordered value container conforming to one TypeSpec.

Values are stored under their wire keys, so a choice field lives under its
type-suffixed key (``medicationReference``). Repeating fields hold lists,
nested composites hold Instances. Keys the schema does not declare are kept
verbatim in ``extras`` so they survive a round trip.
"""

from __future__ import annotations

from typing import Any, Iterator


class Instance:
    """
    Ordered mapping of wire key -> value for one TypeSpec.

    Absent and empty are distinct: ``set(key, None)`` removes the key, while
    ``set(key, [])`` keeps it as a present-but-empty collection.
    """

    __slots__ = ("type_name", "_values", "extras")

    def __init__(
        self,
        type_name: str,
        values: dict[str, Any] | None = None,
        extras: dict[str, Any] | None = None,
    ) -> None:
        self.type_name = type_name
        self._values: dict[str, Any] = {}
        self.extras: dict[str, Any] = dict(extras or {})
        for key, value in (values or {}).items():
            self.set(key, value)

    # ------------------------------------------------------------------
    # Mapping API
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> "Instance":
        if value is None:
            self._values.pop(key, None)
        elif isinstance(value, tuple):
            self._values[key] = list(value)
        else:
            self._values[key] = value
        return self

    def append(self, key: str, value: Any) -> "Instance":
        """Append to a repeating field, creating the list if needed."""
        current = self._values.get(key)
        if current is None:
            self._values[key] = [value]
        elif isinstance(current, list):
            current.append(value)
        else:
            self._values[key] = [current, value]
        return self

    def remove(self, key: str) -> Any:
        return self._values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._values)

    def items(self) -> list[tuple[str, Any]]:
        return list(self._values.items())

    def count(self, key: str) -> int:
        """Number of values present under ``key`` (absent = 0, list = len)."""
        if key not in self._values:
            return 0
        value = self._values[key]
        return len(value) if isinstance(value, list) else 1

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __delitem__(self, key: str) -> None:
        del self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    # ------------------------------------------------------------------
    # Structural semantics
    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Instance):
            return NotImplemented
        from .structural import equals

        return equals(self, other)

    __hash__ = None  # type: ignore[assignment]

    def copy(self) -> "Instance":
        """Deep copy of nested Instances and lists; primitives are shared."""
        return Instance(
            self.type_name,
            {k: _copy_value(v) for k, v in self._values.items()},
            {k: _copy_value(v) for k, v in self.extras.items()},
        )

    def __repr__(self) -> str:
        keys = ", ".join(self._values)
        extra = f", extras={len(self.extras)}" if self.extras else ""
        return f"Instance({self.type_name!r}, [{keys}]{extra})"


def _copy_value(value: Any) -> Any:
    if isinstance(value, Instance):
        return value.copy()
    if isinstance(value, list):
        return [_copy_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _copy_value(v) for k, v in value.items()}
    return value
