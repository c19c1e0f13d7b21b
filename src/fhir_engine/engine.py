"""
Model Engine
=============
Consumer facade tying the registry, validator, reader and writer together.

Example::

    from fhir_engine import ModelEngine, WireFormat

    engine = ModelEngine()
    composition = engine.deserialize(text, "Composition")
    result = engine.validate(composition)
    xml = engine.serialize(composition, fmt=WireFormat.XML)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from .models import structural
from .models.choice import ChoiceValue, get_choice, set_choice
from .models.instance import Instance
from .registry.schema_registry import (
    SchemaRegistry,
    bundled_document,
    default_registry,
    load_schema,
)
from .settings import EngineSettings
from .validator.instance_validator import InstanceValidator, ValidationResult
from .wire.reader import InstanceReader
from .wire.writer import InstanceWriter, WireFormat

logger = logging.getLogger(__name__)


class ModelEngine:
    """
    Validates, (de)serializes and compares Instances for one frozen registry.

    Without arguments the engine uses the bundled FHIR R4 core subset, merged
    with ``settings.schema_path`` when one is configured.
    """

    def __init__(
        self,
        registry: SchemaRegistry | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        if registry is None:
            registry = (
                _merged_registry(self.settings.schema_path)
                if self.settings.schema_path
                else default_registry()
            )
        if not registry.frozen:
            registry.freeze()
        self.registry = registry
        self.validator = InstanceValidator(registry, check_patterns=self.settings.check_patterns)
        self.reader = InstanceReader(registry, unknown_fields=self.settings.unknown_fields)
        self.writer = InstanceWriter(registry)

    @classmethod
    def from_schema(
        cls,
        *documents: Mapping[str, Any] | str | Path,
        include_core: bool = True,
        settings: EngineSettings | None = None,
    ) -> "ModelEngine":
        """Engine over schema documents, optionally layered on the bundled core types."""
        registry = load_schema(bundled_document(), freeze=False) if include_core else SchemaRegistry()
        for doc in documents:
            load_schema(doc, registry=registry, freeze=False)
        return cls(registry.freeze(), settings)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, instance: Instance, type_name: str | None = None) -> ValidationResult:
        return self.validator.validate(instance, type_name)

    # ------------------------------------------------------------------
    # Wire formats
    # ------------------------------------------------------------------

    def serialize(
        self,
        instance: Instance,
        type_name: str | None = None,
        fmt: WireFormat | str | None = None,
        pretty: bool = False,
    ) -> str:
        return self.writer.write(instance, fmt or self.settings.default_format, type_name, pretty)

    def to_dict(self, instance: Instance, type_name: str | None = None) -> dict[str, Any]:
        return self.writer.to_dict(instance, type_name)

    def deserialize(
        self,
        document: str | bytes | Mapping[str, Any],
        type_name: str | None = None,
        fmt: WireFormat | str | None = None,
    ) -> Instance:
        return self.reader.read(document, type_name, fmt or self.settings.default_format)

    # ------------------------------------------------------------------
    # Structural semantics
    # ------------------------------------------------------------------

    @staticmethod
    def equals(a: Instance, b: Instance) -> bool:
        return structural.equals(a, b)

    @staticmethod
    def hash(instance: Instance) -> str:
        return structural.structural_hash(instance)

    # ------------------------------------------------------------------
    # Choice fields
    # ------------------------------------------------------------------

    def get_choice(
        self,
        instance: Instance,
        logical_name: str,
        type_name: str | None = None,
    ) -> ChoiceValue | None:
        return get_choice(instance, self.registry.lookup(type_name or instance.type_name), logical_name)

    def set_choice(
        self,
        instance: Instance,
        logical_name: str,
        variant: str,
        value: Any,
        type_name: str | None = None,
    ) -> Instance:
        type_spec = self.registry.lookup(type_name or instance.type_name)
        return set_choice(instance, type_spec, logical_name, variant, value)

    def __repr__(self) -> str:
        return f"ModelEngine({self.registry!r}, unknown_fields={self.settings.unknown_fields!r})"


def _merged_registry(schema_path: Path) -> SchemaRegistry:
    logger.info("Merging schema document %s over the bundled core types", schema_path)
    registry = load_schema(bundled_document(), freeze=False)
    return load_schema(schema_path, registry=registry)
