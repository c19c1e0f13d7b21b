"""
Schema Registry
================
Process-wide, load-once table of TypeSpecs and PrimitiveSpecs.

The registry is populated from declarative schema data in the same shape as
the generated METADATA tables (one entry per wire key, with ``type``,
``path``, ``min``, ``max`` and optional ``binding``, ``valid_codes`` and
``type_profiles``), then frozen. A frozen registry is read-only and may be
shared by any number of threads without locking.

Example::

    from fhir_engine.registry.schema_registry import default_registry, load_schema

    registry = default_registry()
    registry.lookup("Composition").field("status").binding.strength
    # <BindingStrength.REQUIRED: 'required'>

    custom = load_schema("my-profiles.json")
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import ValidationError

from ..errors import SchemaError, UnknownTypeError
from ..models.schema import (
    Binding,
    FieldKind,
    FieldSpec,
    PrimitiveSpec,
    TypeKind,
    TypeSpec,
)

logger = logging.getLogger(__name__)

BUNDLED_SCHEMA = "fhir_r4_core.json"
UNBOUNDED = "*"
CHOICE_SUFFIX = "[x]"


class SchemaRegistry:
    """
    Maps type names to TypeSpecs.

    Lifecycle: ``register`` during start-up, ``freeze`` once, then only
    ``lookup``. Registration after ``freeze`` raises SchemaError.
    """

    def __init__(self) -> None:
        self._types: dict[str, TypeSpec] = {}
        self._primitives: dict[str, PrimitiveSpec] = {}
        self._frozen = False

    # ------------------------------------------------------------------
    # Construction phase
    # ------------------------------------------------------------------

    def register(self, type_spec: TypeSpec) -> "SchemaRegistry":
        self._check_mutable()
        if type_spec.name in self._types or type_spec.name in self._primitives:
            raise SchemaError(f"Type {type_spec.name!r} is already registered")
        self._types[type_spec.name] = type_spec
        return self

    def register_primitive(self, spec: PrimitiveSpec) -> "SchemaRegistry":
        self._check_mutable()
        if spec.name in self._primitives or spec.name in self._types:
            raise SchemaError(f"Primitive {spec.name!r} is already registered")
        self._primitives[spec.name] = spec
        return self

    def freeze(self) -> "SchemaRegistry":
        """Check that every type reference resolves, then make the registry read-only."""
        if self._frozen:
            return self
        for type_spec in self._types.values():
            for spec in type_spec.fields:
                for type_name in spec.types:
                    if type_name not in self._types and type_name not in self._primitives:
                        raise SchemaError(
                            f"Field refers to unregistered type {type_name!r}", spec.path
                        )
                    if spec.kind == FieldKind.PRIMITIVE and type_name not in self._primitives:
                        raise SchemaError(
                            f"Primitive field refers to composite type {type_name!r}", spec.path
                        )
        self._types = MappingProxyType(self._types)  # type: ignore[assignment]
        self._primitives = MappingProxyType(self._primitives)  # type: ignore[assignment]
        self._frozen = True
        logger.debug(
            "Schema registry frozen: %d types, %d primitives",
            len(self._types),
            len(self._primitives),
        )
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise SchemaError("Schema registry is frozen; no registration after start-up")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, type_name: str) -> TypeSpec:
        try:
            return self._types[type_name]
        except KeyError:
            raise UnknownTypeError(type_name) from None

    def primitive(self, name: str) -> PrimitiveSpec | None:
        return self._primitives.get(name)

    def is_primitive(self, name: str) -> bool:
        return name in self._primitives

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._types

    def type_names(self) -> list[str]:
        return list(self._types)

    def resource_names(self) -> list[str]:
        return [name for name, spec in self._types.items() if spec.is_resource]

    @property
    def types(self) -> Mapping[str, TypeSpec]:
        return MappingProxyType(dict(self._types))

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return (
            f"SchemaRegistry(types={len(self._types)}, "
            f"primitives={len(self._primitives)}, {state})"
        )


# ---------------------------------------------------------------------------
# Loading schema documents
# ---------------------------------------------------------------------------


def load_schema(
    doc: Mapping[str, Any] | str | Path,
    *,
    registry: SchemaRegistry | None = None,
    freeze: bool = True,
) -> SchemaRegistry:
    """
    Build (or extend) a registry from a schema document.

    ``doc`` may be an already-parsed mapping, a JSON string or a path to a
    JSON file. Pass an unfrozen ``registry`` to merge several documents and
    ``freeze=False`` to keep it open for further registration.
    """
    data = _read_document(doc)
    registry = registry if registry is not None else SchemaRegistry()

    for name, entry in (data.get("primitives") or {}).items():
        try:
            registry.register_primitive(
                PrimitiveSpec(name=name, json_type=entry.get("type", "string"), regex=entry.get("regex"))
            )
        except ValidationError as e:
            raise SchemaError(f"Invalid primitive definition: {e}", name) from e

    types = data.get("types") or {}
    for name, entry in types.items():
        registry.register(_parse_type(name, entry))

    logger.info(
        "Loaded schema document: %d primitives, %d types",
        len(data.get("primitives") or {}),
        len(types),
    )
    if freeze:
        registry.freeze()
    return registry


@lru_cache(maxsize=1)
def bundled_document() -> Mapping[str, Any]:
    """The parsed bundled schema document (FHIR R4 core subset)."""
    source = resources.files("fhir_engine") / "data" / BUNDLED_SCHEMA
    return MappingProxyType(json.loads(source.read_text(encoding="utf-8")))


@lru_cache(maxsize=1)
def default_registry() -> SchemaRegistry:
    """The bundled schema, loaded and frozen once per process."""
    return load_schema(bundled_document())


def _read_document(doc: Mapping[str, Any] | str | Path) -> Mapping[str, Any]:
    if isinstance(doc, str) and doc.lstrip().startswith("{"):
        text = doc
    elif isinstance(doc, (str, Path)):
        try:
            text = Path(doc).read_text(encoding="utf-8")
        except OSError as e:
            raise SchemaError(f"Cannot read schema document: {e}", str(doc)) from e
    else:
        return doc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SchemaError(f"Schema document is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SchemaError("Schema document must be a JSON object")
    return data


def _parse_type(name: str, entry: Mapping[str, Any]) -> TypeSpec:
    """Turn one METADATA table into a TypeSpec, folding ``[x]`` variants into choices."""
    metadata: Mapping[str, Any] = entry.get("metadata") or {}
    fields: list[FieldSpec] = []
    choices: dict[str, dict[str, Any]] = {}

    for key, meta in metadata.items():
        if "type" not in meta:
            raise SchemaError("Field definition has no type", f"{name}.{key}")
        path = meta.get("path") or f"{name.rsplit('::', 1)[-1]}.{key}"
        if path.endswith(CHOICE_SUFFIX):
            logical = path[: -len(CHOICE_SUFFIX)].rsplit(".", 1)[-1]
            if logical not in choices:
                choices[logical] = {
                    "meta": meta, "path": path, "types": [], "profiles": [], "index": len(fields),
                }
                fields.append(None)  # type: ignore[arg-type]
            choices[logical]["types"].append(meta["type"])
            choices[logical]["profiles"].extend(meta.get("type_profiles") or ())
            continue
        fields.append(_field_spec(key, path, [meta["type"]], meta))

    for logical, choice in choices.items():
        fields[choice["index"]] = _field_spec(
            logical,
            choice["path"],
            choice["types"],
            {**choice["meta"], "type_profiles": choice["profiles"]},
            choice=True,
        )

    try:
        return TypeSpec(
            name=name,
            kind=TypeKind(entry.get("kind", TypeKind.COMPLEX.value)),
            fields=tuple(fields),
            extensible=entry.get("extensible", True),
        )
    except ValidationError as e:
        raise SchemaError(f"Invalid type definition: {e}", name) from e
    except ValueError as e:
        raise SchemaError(str(e), name) from e


def _field_spec(
    name: str,
    path: str,
    types: list[str],
    meta: Mapping[str, Any],
    *,
    choice: bool = False,
) -> FieldSpec:
    raw_max = meta.get("max", 1)
    binding = meta.get("binding")
    try:
        return FieldSpec(
            name=name,
            path=path,
            # Composite vs primitive is settled here by naming convention and
            # re-checked against the registry in freeze().
            kind=FieldKind.CHOICE if choice else _kind_for(types[0]),
            types=tuple(types),
            min=meta.get("min", 0),
            max=None if raw_max in (UNBOUNDED, None) else int(raw_max),
            binding=Binding(**binding) if binding else None,
            valid_codes={system: tuple(codes) for system, codes in (meta.get("valid_codes") or {}).items()},
            target_profiles=tuple(meta.get("type_profiles") or ()),
        )
    except ValidationError as e:
        raise SchemaError(f"Invalid field definition: {e}", path) from e


def _kind_for(type_name: str) -> FieldKind:
    # FHIR primitive type names start lower-case, composite type names upper-case.
    return FieldKind.PRIMITIVE if type_name[:1].islower() else FieldKind.COMPOSITE
