"""Structural equality and hashing over Instances."""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from typing import Any

from .instance import Instance


def canonical_form(value: Any) -> Any:
    """
    Reduce a value to plain JSON-compatible data with a stable shape.

    Instances become ``{"@type", "fields", "extras"}`` objects and plain dicts
    become ``{"@map": ...}``, so a raw dict never reads as a tagged value.
    Lists keep their order, absent keys stay absent and numbers are
    normalized so that ``1`` and ``1.0`` compare equal.
    """
    if isinstance(value, Instance):
        return {
            "@type": value.type_name,
            "fields": {k: canonical_form(v) for k, v in value.items()},
            "extras": {k: canonical_form(v) for k, v in value.extras.items()},
        }
    if isinstance(value, (list, tuple)):
        return [canonical_form(v) for v in value]
    if isinstance(value, dict):
        return {"@map": {str(k): canonical_form(v) for k, v in value.items()}}
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float, Decimal)):
        return {"@num": _normalize_number(value)}
    return {"@repr": repr(value)}


def _normalize_number(value: int | float | Decimal) -> str:
    return format(Decimal(str(value)).normalize(), "f")


def equals(a: Any, b: Any) -> bool:
    """Structural equality: same type, same fields, same values, same list order."""
    return canonical_form(a) == canonical_form(b)


def structural_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical form; equal values hash equally."""
    payload = json.dumps(canonical_form(value), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
