"""
Instance Validator
===================
Validates an Instance against its TypeSpec: cardinality, choice exclusivity,
required vocabulary bindings, primitive types and patterns, reference targets
and undeclared elements. Composite values are validated recursively.

Validation never raises for data problems and never stops at the first one:
every issue found in the instance tree is returned in a single pass.

Example::

    from fhir_engine.validator.instance_validator import InstanceValidator

    result = InstanceValidator(registry).validate(request, "MedicationRequest")
    if not result.passed:
        for issue in result.issues:
            print(f"[{issue.kind.value}] {issue.path}: {issue.message}")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..models.choice import populated_variants
from ..models.instance import Instance
from ..models.schema import FieldKind, FieldSpec, PrimitiveSpec, TypeSpec, variant_key
from ..registry.schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)

# Relative (Patient/123) or absolute (https://x/fhir/Patient/123) literal references,
# optionally version-specific.
_REFERENCE_RE = re.compile(
    r"(?:^|/)([A-Z][A-Za-z]+)/[A-Za-z0-9\-.]{1,64}(?:/_history/[A-Za-z0-9\-.]{1,64})?$"
)
_ANY_RESOURCE = "Resource"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class IssueKind(str, Enum):
    CARDINALITY = "cardinality"
    CHOICE_CONFLICT = "choice-conflict"
    UNBOUND_CODE = "unbound-code"
    TYPE = "type"
    REFERENCE_TARGET = "reference-target"
    UNKNOWN_ELEMENT = "unknown-element"


@dataclass
class ValidationIssue:
    """
    One problem found in an instance.

    ``path`` reproduces the declared schema path (``Section.section.code``);
    ``location`` is the same position with list indices
    (``Section.section[1].code``).
    """
    kind: IssueKind
    path: str
    message: str
    severity: Severity = Severity.ERROR
    expected: str | None = None
    actual: Any = None
    location: str | None = None


@dataclass
class ValidationResult:
    """Result of validating one instance."""
    type_name: str
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        return "Valid" if self.passed else "Invalid"

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def by_kind(self) -> dict[IssueKind, list[ValidationIssue]]:
        grouped: dict[IssueKind, list[ValidationIssue]] = {}
        for issue in self.issues:
            grouped.setdefault(issue.kind, []).append(issue)
        return grouped

    def __str__(self) -> str:
        return (
            f"[{self.status}] {self.type_name} "
            f"– {len(self.errors)} error(s), {len(self.warnings)} warning(s)"
        )


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class InstanceValidator:
    """
    Validates Instances against a frozen SchemaRegistry.

    Checks, per field in declaration order:
    - cardinality      value count within ``min..max``
    - choice-conflict  at most one ``[x]`` variant populated
    - type             primitive JSON type and pattern, nested instance type
    - unbound-code     membership of codes, Codings and CodeableConcepts
                       under a ``required`` binding
    - reference-target ``Type/id`` references against the target profiles
    - unknown-element  keys no field declares
    """

    def __init__(self, registry: SchemaRegistry, *, check_patterns: bool = True) -> None:
        self.registry = registry
        self.check_patterns = check_patterns

    def validate(
        self,
        instance: Instance,
        type_name: str | TypeSpec | None = None,
    ) -> ValidationResult:
        """Validate ``instance`` as ``type_name`` (defaults to the instance's own type)."""
        if isinstance(type_name, TypeSpec):
            type_spec = type_name
        else:
            type_spec = self.registry.lookup(type_name or instance.type_name)

        issues: list[ValidationIssue] = []
        if instance.type_name != type_spec.name:
            issues.append(ValidationIssue(
                IssueKind.TYPE,
                type_spec.local_name,
                f"Expected a {type_spec.name} instance, got {instance.type_name}",
                expected=type_spec.name,
                actual=instance.type_name,
                location=type_spec.local_name,
            ))
        self._check_instance(instance, type_spec, None, type_spec.local_name, issues)

        logger.debug("Validated %s: %d issue(s)", type_spec.name, len(issues))
        return ValidationResult(type_name=type_spec.name, issues=issues)

    def validate_batch(
        self,
        instances: list[Instance],
        type_name: str | TypeSpec | None = None,
    ) -> list[ValidationResult]:
        """Validate a list of instances and return all results."""
        return [self.validate(instance, type_name) for instance in instances]

    # ------------------------------------------------------------------
    # Instance walk
    # ------------------------------------------------------------------

    def _check_instance(
        self,
        instance: Instance,
        type_spec: TypeSpec,
        prefix: str | None,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        for spec in type_spec.fields:
            path = _field_path(prefix, spec)
            if spec.kind == FieldKind.CHOICE:
                self._check_choice(instance, spec, path, location, issues)
            else:
                loc = f"{location}.{spec.name}"
                self._check_cardinality(instance.count(spec.name), spec, path, loc, issues)
                self._check_values(instance.get(spec.name), spec, spec.type, path, loc, issues)

        for key in instance.keys():
            if type_spec.resolve_key(key) is None:
                issues.append(self._unknown(key, prefix or type_spec.local_name, location))
        if not type_spec.extensible:
            for key in instance.extras:
                if type_spec.is_element_data_key(key):
                    continue
                issues.append(self._unknown(key, prefix or type_spec.local_name, location))

    def _check_choice(
        self,
        instance: Instance,
        spec: FieldSpec,
        path: str,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        variants = populated_variants(instance, spec)
        if not variants:
            self._check_cardinality(0, spec, path, f"{location}.{spec.name}[x]", issues)
            return
        if len(variants) > 1:
            issues.append(ValidationIssue(
                IssueKind.CHOICE_CONFLICT,
                path,
                f"Only one of {', '.join(variant_key(spec.name, v) for v in variants)} may be present",
                expected="exactly one variant",
                actual=[variant_key(spec.name, v) for v in variants],
                location=f"{location}.{spec.name}[x]",
            ))
        else:
            key = variant_key(spec.name, variants[0])
            self._check_cardinality(instance.count(key), spec, path, f"{location}.{key}", issues)
        for variant in variants:
            key = variant_key(spec.name, variant)
            self._check_values(instance.get(key), spec, variant, path, f"{location}.{key}", issues)

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _check_cardinality(
        self,
        count: int,
        spec: FieldSpec,
        path: str,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        if count < spec.min:
            message = f"Requires at least {spec.min} value(s), found {count}"
        elif spec.max is not None and count > spec.max:
            message = f"Allows at most {spec.max} value(s), found {count}"
        else:
            return
        issues.append(ValidationIssue(
            IssueKind.CARDINALITY,
            path,
            message,
            expected=spec.cardinality(),
            actual=count,
            location=location,
        ))

    def _check_values(
        self,
        raw: Any,
        spec: FieldSpec,
        type_name: str,
        path: str,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        if raw is None:
            return
        if isinstance(raw, list):
            # None holds the place of a repeat that carries only element data (_key).
            indexed = [(value, f"{location}[{i}]") for i, value in enumerate(raw) if value is not None]
        else:
            indexed = [(raw, location)]

        primitive = self.registry.primitive(type_name)
        for value, loc in indexed:
            if primitive is not None:
                self._check_primitive(value, primitive, spec, path, loc, issues)
            else:
                self._check_composite(value, spec, type_name, path, loc, issues)

    def _check_primitive(
        self,
        value: Any,
        primitive: PrimitiveSpec,
        spec: FieldSpec,
        path: str,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        if isinstance(value, (Instance, list, dict)) or not primitive.accepts(value):
            issues.append(ValidationIssue(
                IssueKind.TYPE,
                path,
                f"Expected {primitive.name} ({primitive.json_type.value}), got {type(value).__name__}",
                expected=primitive.name,
                actual=value,
                location=location,
            ))
            return
        if self.check_patterns and not primitive.matches(value):
            issues.append(ValidationIssue(
                IssueKind.TYPE,
                path,
                f"Value {value!r} does not match the {primitive.name} pattern",
                expected=primitive.regex,
                actual=value,
                location=location,
            ))
            return
        if _enforced(spec) and isinstance(value, str) and value not in spec.permitted_codes():
            issues.append(self._unbound(spec, path, location, value))

    def _check_composite(
        self,
        value: Any,
        spec: FieldSpec,
        type_name: str,
        path: str,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        if not isinstance(value, Instance) or value.type_name != type_name:
            actual = value.type_name if isinstance(value, Instance) else type(value).__name__
            issues.append(ValidationIssue(
                IssueKind.TYPE,
                path,
                f"Expected a {type_name} instance, got {actual}",
                expected=type_name,
                actual=actual,
                location=location,
            ))
            return

        self._check_instance(value, self.registry.lookup(type_name), path, location, issues)

        if _enforced(spec):
            if type_name == "Coding" and not _coding_bound(value, spec):
                issues.append(self._unbound(spec, path, location, _coding_label(value)))
            elif type_name == "CodeableConcept":
                codings = [c for c in value.get("coding") or [] if isinstance(c, Instance)]
                if codings and not any(_coding_bound(c, spec) for c in codings):
                    label = ", ".join(_coding_label(c) for c in codings)
                    issues.append(self._unbound(spec, path, location, label))

        if type_name == "Reference" and spec.target_profiles:
            self._check_reference(value, spec, path, location, issues)

    def _check_reference(
        self,
        value: Instance,
        spec: FieldSpec,
        path: str,
        location: str,
        issues: list[ValidationIssue],
    ) -> None:
        reference = value.get("reference")
        if not isinstance(reference, str):
            return
        match = _REFERENCE_RE.search(reference)
        if match is None:
            return
        targets = spec.target_types()
        if _ANY_RESOURCE in targets or match.group(1) in targets:
            return
        issues.append(ValidationIssue(
            IssueKind.REFERENCE_TARGET,
            path,
            f"Reference to {match.group(1)} is not permitted (allowed: {', '.join(sorted(targets))})",
            expected="|".join(sorted(targets)),
            actual=match.group(1),
            location=location,
        ))

    @staticmethod
    def _unbound(spec: FieldSpec, path: str, location: str, actual: Any) -> ValidationIssue:
        uri = spec.binding.uri if spec.binding else None
        return ValidationIssue(
            IssueKind.UNBOUND_CODE,
            path,
            f"Code {actual!r} is not in the required value set {uri or ''}".rstrip(),
            expected=uri,
            actual=actual,
            location=location,
        )

    @staticmethod
    def _unknown(key: str, prefix: str, location: str) -> ValidationIssue:
        return ValidationIssue(
            IssueKind.UNKNOWN_ELEMENT,
            f"{prefix}.{key}",
            f"Element {key!r} is not declared by the type",
            actual=key,
            location=f"{location}.{key}",
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _field_path(prefix: str | None, spec: FieldSpec) -> str:
    """Declared path at the root; parent path plus the path tail when nested."""
    if prefix is None:
        return spec.path
    tail = spec.path.split(".", 1)[1] if "." in spec.path else spec.name
    return f"{prefix}.{tail}"


def _enforced(spec: FieldSpec) -> bool:
    # A required binding without any listed codes cannot be checked locally.
    return spec.binding is not None and spec.binding.enforced and bool(spec.valid_codes)


def _coding_bound(coding: Instance, spec: FieldSpec) -> bool:
    code = coding.get("code")
    if code is None:
        return True
    system = coding.get("system")
    if system is None:
        return code in spec.permitted_codes()
    return code in spec.permitted_codes(system)


def _coding_label(coding: Instance) -> str:
    system = coding.get("system")
    code = coding.get("code")
    return f"{system}|{code}" if system else str(code)
