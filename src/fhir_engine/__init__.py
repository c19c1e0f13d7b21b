"""
fhir-engine – Schema-driven FHIR R4 model engine
==================================================
Validation, choice-field resolution, vocabulary binding checks, FHIR JSON /
XML round-tripping and structural equality for FHIR resources whose
definitions are data, not generated classes.

Bundled types: Composition, DocumentReference and MedicationRequest with
their backbone elements, plus the core data types they use.

Quick Start::

    from fhir_engine import InstanceBuilder, ModelEngine, WireFormat

    engine = ModelEngine()

    composition = (
        InstanceBuilder.composition()
        .set("status", "final")
        .set("type", InstanceBuilder.codeable_concept(
            InstanceBuilder.coding("http://loinc.org", "11488-4", "Consult note"),
        ))
        .set("date", "2024-01-01")
        .add("author", InstanceBuilder.reference("Practitioner/example"))
        .set("title", "Visit Note")
        .build()
    )

    result = engine.validate(composition)
    print(result)                      # [Valid] Composition – 0 error(s), 0 warning(s)

    xml = engine.serialize(composition, fmt=WireFormat.XML)
    assert engine.deserialize(xml, fmt=WireFormat.XML) == composition
"""

__version__ = "0.1.0"
__fhir_version__ = "4.0.1"

# Errors
from .errors import (
    EngineError,
    SchemaError,
    UnknownTypeError,
    DeserializationError,
    MalformedDocumentError,
    UnknownFieldError,
    ChoiceConflictError,
)

# Core models
from .models.schema import (
    Binding,
    BindingStrength,
    FieldKind,
    FieldSpec,
    JsonType,
    PrimitiveSpec,
    TypeKind,
    TypeSpec,
    variant_key,
)
from .models.instance import Instance
from .models.choice import ChoiceValue, get_choice, set_choice, clear_choice
from .models.structural import equals, structural_hash

# Registry
from .registry.schema_registry import SchemaRegistry, load_schema, default_registry

# Validator
from .validator.instance_validator import (
    InstanceValidator,
    IssueKind,
    ValidationIssue,
    ValidationResult,
    Severity,
)

# Wire formats
from .wire.writer import InstanceWriter, WireFormat
from .wire.reader import InstanceReader

# Builders
from .builder.instance_builder import InstanceBuilder
from .builder.typespec_builder import TypeSpecBuilder

# Facade
from .settings import EngineSettings
from .engine import ModelEngine

__all__ = [
    # Errors
    "EngineError",
    "SchemaError",
    "UnknownTypeError",
    "DeserializationError",
    "MalformedDocumentError",
    "UnknownFieldError",
    "ChoiceConflictError",
    # Models
    "Binding",
    "BindingStrength",
    "FieldKind",
    "FieldSpec",
    "JsonType",
    "PrimitiveSpec",
    "TypeKind",
    "TypeSpec",
    "variant_key",
    "Instance",
    "ChoiceValue",
    "get_choice",
    "set_choice",
    "clear_choice",
    "equals",
    "structural_hash",
    # Registry
    "SchemaRegistry",
    "load_schema",
    "default_registry",
    # Validation
    "InstanceValidator",
    "IssueKind",
    "ValidationIssue",
    "ValidationResult",
    "Severity",
    # Wire formats
    "InstanceWriter",
    "InstanceReader",
    "WireFormat",
    # Builders
    "InstanceBuilder",
    "TypeSpecBuilder",
    # Facade
    "EngineSettings",
    "ModelEngine",
]
