"""
Choice-Field Resolver
======================
Translates between the physical representation of a polymorphic ``[x]`` field
(one wire key per variant: ``medicationCodeableConcept``,
``medicationReference``) and a single tagged value.

Example::

    from fhir_engine.models.choice import get_choice, set_choice

    set_choice(request, spec, "medication", "Reference", ref)
    get_choice(request, spec, "medication")
    # ChoiceValue(variant='Reference', value=Instance('Reference', [reference]))
"""

from __future__ import annotations

from typing import Any, NamedTuple

from ..errors import ChoiceConflictError
from .instance import Instance
from .schema import FieldKind, FieldSpec, TypeSpec, variant_key


class ChoiceValue(NamedTuple):
    variant: str
    value: Any


def _choice_field(type_spec: TypeSpec, logical_name: str) -> FieldSpec:
    spec = type_spec.field(logical_name)
    if spec.kind != FieldKind.CHOICE:
        raise KeyError(f"{spec.path} is not a choice field")
    return spec


def populated_variants(instance: Instance, spec: FieldSpec) -> list[str]:
    """Variant types whose wire key is present on the instance, in declared order."""
    return [variant for key, variant in spec.variant_keys().items() if key in instance]


def get_choice(instance: Instance, type_spec: TypeSpec, logical_name: str) -> ChoiceValue | None:
    """Return the populated variant of a choice field, or None when absent."""
    spec = _choice_field(type_spec, logical_name)
    variants = populated_variants(instance, spec)
    if not variants:
        return None
    if len(variants) > 1:
        raise ChoiceConflictError(
            f"{len(variants)} variants populated ({', '.join(variants)})", spec.path
        )
    variant = variants[0]
    return ChoiceValue(variant, instance[variant_key(spec.name, variant)])


def set_choice(
    instance: Instance,
    type_spec: TypeSpec,
    logical_name: str,
    variant: str,
    value: Any,
) -> Instance:
    """Populate one variant and clear every other variant of the same field."""
    spec = _choice_field(type_spec, logical_name)
    if variant not in spec.types:
        raise ValueError(
            f"{spec.path}: {variant!r} is not a declared variant ({', '.join(spec.types)})"
        )
    clear_choice(instance, type_spec, logical_name)
    instance.set(variant_key(spec.name, variant), value)
    return instance


def clear_choice(instance: Instance, type_spec: TypeSpec, logical_name: str) -> Instance:
    spec = _choice_field(type_spec, logical_name)
    for key in spec.variant_keys():
        instance.remove(key)
    return instance
