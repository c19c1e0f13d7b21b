"""
Instance Builder
=================
Fluent builder API for constructing Instances against a registry.

Field names are checked against the TypeSpec as they are set, so a typo
fails at build time rather than surfacing later as an unknown element.
Choice fields are set through ``choice()``, which keeps them exclusive.

Example::

    from fhir_engine.builder.instance_builder import InstanceBuilder

    request = (
        InstanceBuilder.medication_request()
        .set("status", "active")
        .set("intent", "order")
        .choice("medication", "CodeableConcept", InstanceBuilder.codeable_concept(
            InstanceBuilder.coding("http://www.nlm.nih.gov/research/umls/rxnorm", "1049502"),
        ))
        .set("subject", InstanceBuilder.reference("Patient/example"))
        .build()
    )
"""

from __future__ import annotations

from typing import Any

from ..models.choice import set_choice
from ..models.instance import Instance
from ..models.schema import FieldKind, TypeSpec
from ..registry.schema_registry import SchemaRegistry, default_registry


class InstanceBuilder:
    """
    Fluent builder for Instances.

    Typically instantiated via the factory class methods
    (e.g. ``InstanceBuilder.composition()``) or ``InstanceBuilder.for_type()``.
    """

    def __init__(self, type_spec: TypeSpec) -> None:
        self._type_spec = type_spec
        self._instance = Instance(type_spec.name)

    # ------------------------------------------------------------------
    # Factory methods
    # ------------------------------------------------------------------

    @classmethod
    def for_type(cls, type_name: str, registry: SchemaRegistry | None = None) -> "InstanceBuilder":
        """Builder for any registered type (``Composition::Section``, ``Coding`` ...)."""
        return cls((registry or default_registry()).lookup(type_name))

    @classmethod
    def composition(cls, registry: SchemaRegistry | None = None) -> "InstanceBuilder":
        return cls.for_type("Composition", registry)

    @classmethod
    def section(cls, registry: SchemaRegistry | None = None) -> "InstanceBuilder":
        """A ``Composition::Section``; sections nest through ``add("section", ...)``."""
        return cls.for_type("Composition::Section", registry)

    @classmethod
    def document_reference(cls, registry: SchemaRegistry | None = None) -> "InstanceBuilder":
        return cls.for_type("DocumentReference", registry)

    @classmethod
    def medication_request(cls, registry: SchemaRegistry | None = None) -> "InstanceBuilder":
        return cls.for_type("MedicationRequest", registry)

    # ------------------------------------------------------------------
    # Datatype helpers
    # ------------------------------------------------------------------

    @staticmethod
    def coding(
        system: str | None,
        code: str,
        display: str | None = None,
    ) -> Instance:
        return Instance("Coding", {"system": system, "code": code, "display": display})

    @staticmethod
    def codeable_concept(*codings: Instance, text: str | None = None) -> Instance:
        return Instance("CodeableConcept", {"coding": list(codings) or None, "text": text})

    @staticmethod
    def reference(reference: str, display: str | None = None) -> Instance:
        """Literal reference, e.g. ``Patient/example``."""
        return Instance("Reference", {"reference": reference, "display": display})

    @staticmethod
    def period(start: str | None = None, end: str | None = None) -> Instance:
        return Instance("Period", {"start": start, "end": end})

    # ------------------------------------------------------------------
    # Builder chain methods
    # ------------------------------------------------------------------

    def set(self, name: str, value: Any) -> "InstanceBuilder":
        """Set a field by wire key. ``None`` removes it; ``[]`` keeps it present but empty."""
        self._check_key(name)
        self._instance.set(name, _resolve(value))
        return self

    def add(self, name: str, *values: Any) -> "InstanceBuilder":
        """Append one or more values to a repeating field."""
        self._check_key(name)
        for value in values:
            self._instance.append(name, _resolve(value))
        return self

    def choice(self, name: str, variant: str, value: Any) -> "InstanceBuilder":
        """Populate one variant of the ``name[x]`` field, clearing the others."""
        set_choice(self._instance, self._type_spec, name, variant, _resolve(value))
        return self

    def extra(self, key: str, value: Any) -> "InstanceBuilder":
        """Attach opaque data preserved verbatim (extensions and the like)."""
        self._instance.extras[key] = value
        return self

    def build(self) -> Instance:
        """Return a copy, so the builder can keep producing variations."""
        return self._instance.copy()

    def _check_key(self, name: str) -> None:
        resolved = self._type_spec.resolve_key(name)
        if resolved is not None:
            return
        if self._type_spec.has_field(name) and self._type_spec.field(name).kind == FieldKind.CHOICE:
            raise KeyError(f"{self._type_spec.name}.{name} is a choice field; use choice()")
        raise KeyError(f"{self._type_spec.name} has no field {name!r}")


def _resolve(value: Any) -> Any:
    if isinstance(value, InstanceBuilder):
        return value.build()
    if isinstance(value, (list, tuple)):
        return [_resolve(v) for v in value]
    return value
