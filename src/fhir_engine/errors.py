"""
Engine Errors
==============
Exception taxonomy shared by the registry, the reader and the choice resolver.

Validation problems are never raised: they are returned as ValidationIssue
entries (see ``fhir_engine.validator.instance_validator``).
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by fhir-engine."""

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class SchemaError(EngineError):
    """The schema data is inconsistent, or the registry is misused."""


class UnknownTypeError(SchemaError):
    """A type name was looked up that the registry does not know."""

    def __init__(self, type_name: str) -> None:
        self.type_name = type_name
        super().__init__(f"Unknown type: {type_name!r}")


class DeserializationError(EngineError):
    """Wire data could not be turned into an Instance."""


class MalformedDocumentError(DeserializationError):
    """The document cannot be parsed into any shape (bad JSON/XML, wrong nesting)."""


class UnknownFieldError(DeserializationError):
    """A key is not declared by a non-extensible type (strict mode only)."""

    def __init__(self, key: str, path: str) -> None:
        self.key = key
        super().__init__(f"Unknown field {key!r}", path)


class ChoiceConflictError(EngineError):
    """More than one variant of a choice field is populated."""
