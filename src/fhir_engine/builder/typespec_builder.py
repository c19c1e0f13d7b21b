"""
TypeSpec Builder
=================
Fluent builder API for declaring TypeSpecs in code instead of schema data.

Example::

    from fhir_engine.builder.typespec_builder import TypeSpecBuilder

    observation = (
        TypeSpecBuilder.resource("Observation")
        .primitive("status", "code", min=1, valid_codes={
            "http://hl7.org/fhir/observation-status": ["registered", "final"],
        })
        .composite("subject", "Reference", targets=["Patient"])
        .choice("value", "Quantity", "string")
        .closed()
        .build()
    )
    registry.register(observation)
"""

from __future__ import annotations

from typing import Iterable, Mapping

from ..models.schema import Binding, BindingStrength, FieldKind, FieldSpec, TypeKind, TypeSpec

PROFILE_BASE = "http://hl7.org/fhir/StructureDefinition/"


class TypeSpecBuilder:
    """Fluent builder for TypeSpec objects. Paths default to ``<LocalName>.<field>``."""

    def __init__(self, name: str, kind: TypeKind = TypeKind.COMPLEX) -> None:
        self._name = name
        self._kind = kind
        self._fields: list[FieldSpec] = []
        self._extensible = True

    @classmethod
    def resource(cls, name: str) -> "TypeSpecBuilder":
        return cls(name, TypeKind.RESOURCE)

    @classmethod
    def datatype(cls, name: str) -> "TypeSpecBuilder":
        return cls(name, TypeKind.COMPLEX)

    @classmethod
    def backbone(cls, parent: str, name: str) -> "TypeSpecBuilder":
        """``backbone("Composition", "Section")`` declares ``Composition::Section``."""
        return cls(f"{parent}::{name}", TypeKind.BACKBONE)

    @property
    def local_name(self) -> str:
        return self._name.rsplit("::", 1)[-1]

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def primitive(
        self,
        name: str,
        type_name: str,
        min: int = 0,
        max: int | None = 1,
        *,
        binding: Binding | None = None,
        valid_codes: Mapping[str, Iterable[str]] | None = None,
    ) -> "TypeSpecBuilder":
        """
        Add a primitive field. ``valid_codes`` without a ``binding`` implies a
        required binding over the given ``{system: codes}`` table.
        """
        if valid_codes is not None and binding is None:
            binding = Binding(strength=BindingStrength.REQUIRED)
        return self._add(FieldSpec(
            name=name,
            path=f"{self.local_name}.{name}",
            kind=FieldKind.PRIMITIVE,
            types=(type_name,),
            min=min,
            max=max,
            binding=binding,
            valid_codes={s: tuple(c) for s, c in (valid_codes or {}).items()},
        ))

    def composite(
        self,
        name: str,
        type_name: str,
        min: int = 0,
        max: int | None = 1,
        *,
        binding: Binding | None = None,
        valid_codes: Mapping[str, Iterable[str]] | None = None,
        targets: Iterable[str] = (),
    ) -> "TypeSpecBuilder":
        """
        Add a composite field. ``targets`` are resource names or full
        profile URLs for Reference fields; ``valid_codes`` binds Coding and
        CodeableConcept fields as in ``primitive()``.
        """
        if valid_codes is not None and binding is None:
            binding = Binding(strength=BindingStrength.REQUIRED)
        return self._add(FieldSpec(
            name=name,
            path=f"{self.local_name}.{name}",
            kind=FieldKind.COMPOSITE,
            types=(type_name,),
            min=min,
            max=max,
            binding=binding,
            valid_codes={s: tuple(c) for s, c in (valid_codes or {}).items()},
            target_profiles=tuple(_profile(t) for t in targets),
        ))

    def choice(
        self,
        name: str,
        *variants: str,
        min: int = 0,
        targets: Iterable[str] = (),
    ) -> "TypeSpecBuilder":
        """Add a ``name[x]`` field with the given variant types."""
        return self._add(FieldSpec(
            name=name,
            path=f"{self.local_name}.{name}[x]",
            kind=FieldKind.CHOICE,
            types=variants,
            min=min,
            max=1,
            target_profiles=tuple(_profile(t) for t in targets),
        ))

    def closed(self) -> "TypeSpecBuilder":
        """Reject unknown keys instead of preserving them as extras."""
        self._extensible = False
        return self

    def build(self) -> TypeSpec:
        return TypeSpec(
            name=self._name,
            kind=self._kind,
            fields=tuple(self._fields),
            extensible=self._extensible,
        )

    def _add(self, spec: FieldSpec) -> "TypeSpecBuilder":
        self._fields.append(spec)
        return self


def _profile(target: str) -> str:
    return target if "/" in target else PROFILE_BASE + target
