"""
Schema Model
=============
Formal Python representation of the declarative FHIR metadata tables.

A TypeSpec is the data-only equivalent of one generated model class
(``Composition``, ``Composition::Section``, ``Coding`` ...): an ordered list of
FieldSpecs carrying path, cardinality, bound vocabulary and target profiles.
The engine never generates classes from these; it interprets them.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class BindingStrength(str, Enum):
    """Conformance strength of a value-set binding. Only REQUIRED is enforced."""
    REQUIRED = "required"
    EXTENSIBLE = "extensible"
    PREFERRED = "preferred"
    EXAMPLE = "example"


class FieldKind(str, Enum):
    """How the values of a field are shaped."""
    PRIMITIVE = "primitive"
    COMPOSITE = "composite"
    CHOICE = "choice"


class TypeKind(str, Enum):
    """Where a TypeSpec sits in the FHIR type system."""
    RESOURCE = "resource"
    COMPLEX = "complex-type"
    BACKBONE = "backbone"


class JsonType(str, Enum):
    """JSON representation of a primitive (drives XML coercion and type checks)."""
    STRING = "string"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DECIMAL = "decimal"


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------

class Binding(BaseModel):
    """Vocabulary constraint on a coded field."""
    model_config = ConfigDict(frozen=True)

    strength: BindingStrength
    uri: str | None = Field(None, description="Canonical URL of the bound value set")

    @property
    def enforced(self) -> bool:
        return self.strength == BindingStrength.REQUIRED


class PrimitiveSpec(BaseModel):
    """One row of the primitive table (``code``, ``dateTime``, ``positiveInt`` ...)."""
    model_config = ConfigDict(frozen=True)

    name: str
    json_type: JsonType = JsonType.STRING
    regex: str | None = None

    def accepts(self, value: Any) -> bool:
        """True if the Python value has the right JSON type for this primitive."""
        if self.json_type == JsonType.BOOLEAN:
            return isinstance(value, bool)
        if self.json_type == JsonType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        if self.json_type == JsonType.DECIMAL:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        return isinstance(value, str)

    def matches(self, value: Any) -> bool:
        """Full-match the lexical form of the value against the primitive regex."""
        if not self.regex:
            return True
        if isinstance(value, bool):
            lexical = "true" if value else "false"
        else:
            lexical = str(value)
        return re.fullmatch(self.regex, lexical) is not None


# ---------------------------------------------------------------------------
# Field and type definitions
# ---------------------------------------------------------------------------

class FieldSpec(BaseModel):
    """
    One field of a composite type.

    For a choice field ``name`` is the logical name (``medication``) and
    ``types`` lists every variant (``CodeableConcept``, ``Reference``); values
    live under the type-suffixed keys returned by ``variant_keys()``.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    kind: FieldKind
    types: tuple[str, ...] = Field(..., min_length=1)
    min: int = Field(0, ge=0)
    max: int | None = Field(1, ge=0, description="None means unbounded")
    binding: Binding | None = None
    valid_codes: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    target_profiles: tuple[str, ...] = ()

    @model_validator(mode="after")
    def validate_cardinality(self) -> "FieldSpec":
        if self.max is not None and self.min > self.max:
            raise ValueError(f"{self.path}: min ({self.min}) exceeds max ({self.max})")
        return self

    @model_validator(mode="after")
    def validate_choice_types(self) -> "FieldSpec":
        if self.kind != FieldKind.CHOICE and len(self.types) != 1:
            raise ValueError(f"{self.path}: only choice fields may declare several types")
        return self

    @property
    def type(self) -> str:
        """The single declared type (the first variant for a choice)."""
        return self.types[0]

    @property
    def repeating(self) -> bool:
        return self.max is None or self.max > 1

    @property
    def required(self) -> bool:
        return self.min > 0

    def cardinality(self) -> str:
        return f"{self.min}..{'*' if self.max is None else self.max}"

    def variant_keys(self) -> dict[str, str]:
        """Map wire key -> variant type. A non-choice field maps its own name."""
        if self.kind != FieldKind.CHOICE:
            return {self.name: self.type}
        return {variant_key(self.name, t): t for t in self.types}

    def permitted_codes(self, system: str | None = None) -> set[str]:
        """Codes allowed by ``valid_codes``, for one system or across all of them."""
        if system is not None:
            return set(self.valid_codes.get(system, ()))
        codes: set[str] = set()
        for system_codes in self.valid_codes.values():
            codes.update(system_codes)
        return codes

    def target_types(self) -> set[str]:
        """Resource type names taken from the trailing segment of each target profile."""
        return {profile.rstrip("/").rsplit("/", 1)[-1] for profile in self.target_profiles}


class TypeSpec(BaseModel):
    """
    A named, ordered sequence of FieldSpecs: a resource, a data type or a
    backbone element scoped to its parent (``Composition::Section``).
    """
    model_config = ConfigDict(frozen=True)

    name: str
    kind: TypeKind = TypeKind.COMPLEX
    fields: tuple[FieldSpec, ...] = ()
    extensible: bool = Field(True, description="Preserve unknown keys as opaque extras")

    _by_name: dict[str, FieldSpec] = PrivateAttr(default_factory=dict)
    _by_key: dict[str, tuple[FieldSpec, str]] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def validate_unique_fields(self) -> "TypeSpec":
        seen: set[str] = set()
        for spec in self.fields:
            for key in spec.variant_keys():
                if key in seen:
                    raise ValueError(f"{self.name}: duplicate field key {key!r}")
                seen.add(key)
        return self

    def model_post_init(self, __context: Any) -> None:
        for spec in self.fields:
            self._by_name[spec.name] = spec
            for key, variant in spec.variant_keys().items():
                self._by_key[key] = (spec, variant)

    @property
    def is_resource(self) -> bool:
        return self.kind == TypeKind.RESOURCE

    @property
    def local_name(self) -> str:
        """``Composition::Section`` -> ``Section`` (used for XML root elements)."""
        return self.name.rsplit("::", 1)[-1]

    def field(self, name: str) -> FieldSpec:
        """Look up a field by its logical name."""
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"{self.name} has no field {name!r}") from None

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    def resolve_key(self, key: str) -> tuple[FieldSpec, str] | None:
        """Resolve a wire key to (field, variant type), or None if undeclared."""
        return self._by_key.get(key)

    def is_element_data_key(self, key: str) -> bool:
        """``_status`` holds the id and extensions of the declared primitive ``status``."""
        return key.startswith("_") and key[1:] in self._by_key

    def keys(self) -> list[str]:
        """All declared wire keys in declaration order."""
        return list(self._by_key)

    def __repr__(self) -> str:
        return f"TypeSpec(name={self.name!r}, kind={self.kind.value!r}, fields={len(self.fields)})"


def variant_key(logical_name: str, variant: str) -> str:
    """``medication`` + ``CodeableConcept`` -> ``medicationCodeableConcept``."""
    return logical_name + variant[:1].upper() + variant[1:]
