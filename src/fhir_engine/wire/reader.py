"""
Instance Reader
================
Parses FHIR JSON and FHIR XML documents into Instances.

Parsing is total with respect to shape but not validity: a document that
violates cardinality still parses (a list under a single-valued key is kept
as a list so the validator can report it). Only documents that cannot be
mapped onto the TypeSpec at all raise MalformedDocumentError.

Unknown keys are preserved in ``Instance.extras`` when the type is
extensible. Otherwise ``unknown_fields="strict"`` raises UnknownFieldError
and ``"lenient"`` drops them.

Example::

    from fhir_engine.wire.reader import InstanceReader

    reader = InstanceReader(registry, unknown_fields="strict")
    composition = reader.from_json(text)
    section = reader.from_dict({"title": "Plan"}, "Composition::Section")
"""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any, Literal, Mapping

import defusedxml.ElementTree as SafeET
from defusedxml import DefusedXmlException

from ..errors import MalformedDocumentError, UnknownFieldError
from ..models.instance import Instance
from ..models.schema import FieldSpec, JsonType, PrimitiveSpec, TypeSpec
from ..registry.schema_registry import SchemaRegistry
from .writer import (
    FHIR_NS,
    RESOURCE_TYPE_KEY,
    XHTML_NS,
    XML_ATTRIBUTE_KEYS,
    WireFormat,
    xhtml_string,
)

logger = logging.getLogger(__name__)

UnknownFieldMode = Literal["lenient", "strict"]


class InstanceReader:
    """Builds Instances from wire documents using the TypeSpecs of a registry."""

    def __init__(
        self,
        registry: SchemaRegistry,
        unknown_fields: UnknownFieldMode = "lenient",
    ) -> None:
        if unknown_fields not in ("lenient", "strict"):
            raise ValueError(f"unknown_fields must be 'lenient' or 'strict', got {unknown_fields!r}")
        self.registry = registry
        self.unknown_fields = unknown_fields

    @property
    def strict(self) -> bool:
        return self.unknown_fields == "strict"

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    def from_dict(self, data: Mapping[str, Any], type_name: str | None = None) -> Instance:
        """Build an Instance from an already-decoded FHIR JSON object."""
        if not isinstance(data, Mapping):
            raise MalformedDocumentError(
                f"Document root must be a JSON object, got {type(data).__name__}"
            )
        declared = data.get(RESOURCE_TYPE_KEY)
        if type_name is None:
            if not isinstance(declared, str):
                raise MalformedDocumentError(
                    "Document has no resourceType and no type name was given"
                )
            type_name = declared
        type_spec = self.registry.lookup(type_name)
        return self._read_object(data, type_spec, type_spec.local_name)

    def from_json(self, text: str | bytes, type_name: str | None = None) -> Instance:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedDocumentError(f"Document is not valid JSON: {e}") from e
        return self.from_dict(data, type_name)

    def _read_object(self, data: Mapping[str, Any], type_spec: TypeSpec, path: str) -> Instance:
        declared = data.get(RESOURCE_TYPE_KEY)
        if declared is not None and type_spec.is_resource and declared != type_spec.name:
            raise MalformedDocumentError(
                f"resourceType is {declared!r}, expected {type_spec.name!r}", path
            )

        instance = Instance(type_spec.name)
        for key, raw in data.items():
            if key == RESOURCE_TYPE_KEY and type_spec.is_resource:
                continue
            resolved = type_spec.resolve_key(key)
            if resolved is None:
                if type_spec.is_element_data_key(key):
                    instance.extras[key] = raw
                else:
                    self._unknown(instance, type_spec, key, raw, path)
                continue
            spec, variant = resolved
            instance.set(key, self._read_field(raw, spec, variant, f"{path}.{key}"))
        return instance

    def _read_field(self, raw: Any, spec: FieldSpec, variant: str, path: str) -> Any:
        if raw is None:
            return None
        if isinstance(raw, list):
            return [self._read_json_value(item, variant, f"{path}[{i}]") for i, item in enumerate(raw)]
        value = self._read_json_value(raw, variant, path)
        return [value] if spec.repeating else value

    def _read_json_value(self, raw: Any, type_name: str, path: str) -> Any:
        if self.registry.is_primitive(type_name):
            if isinstance(raw, (dict, list)):
                raise MalformedDocumentError(
                    f"Expected a {type_name} value, got {type(raw).__name__}", path
                )
            return raw
        if not isinstance(raw, Mapping):
            raise MalformedDocumentError(
                f"Expected a {type_name} object, got {type(raw).__name__}", path
            )
        return self._read_object(raw, self.registry.lookup(type_name), path)

    # ------------------------------------------------------------------
    # XML
    # ------------------------------------------------------------------

    def from_xml(self, text: str | bytes, type_name: str | None = None) -> Instance:
        try:
            root = SafeET.fromstring(text)
        except (ET.ParseError, DefusedXmlException) as e:
            raise MalformedDocumentError(f"Document is not valid XML: {e}") from e

        namespace, tag = _split_tag(root.tag)
        if namespace not in (None, FHIR_NS):
            raise MalformedDocumentError(f"Unexpected XML namespace {namespace!r}")
        type_spec = self.registry.lookup(type_name or tag)
        if tag != type_spec.local_name:
            raise MalformedDocumentError(
                f"Root element is <{tag}>, expected <{type_spec.local_name}>"
            )
        return self._read_element(root, type_spec, type_spec.local_name)

    def _read_element(self, element: ET.Element, type_spec: TypeSpec, path: str) -> Instance:
        if element.get("value") is not None:
            raise MalformedDocumentError(f"{type_spec.name} element cannot carry a value", path)

        instance = Instance(type_spec.name)
        # Attributes of a data type or backbone element (its id) are kept like unknown keys.
        for name, raw in element.attrib.items():
            self._unknown(instance, type_spec, name, raw, f"{path}.{name}")

        element_data: dict[str, list[Any]] = {}
        for child in element:
            _, key = _split_tag(child.tag)
            child_path = f"{path}.{key}"
            resolved = type_spec.resolve_key(key)
            if resolved is None:
                self._unknown_element(instance, type_spec, key, child, child_path)
                continue
            spec, variant = resolved
            primitive = self.registry.primitive(variant)
            if primitive is None:
                value, data = self._read_element(child, self.registry.lookup(variant), child_path), None
            else:
                value, data = self._read_primitive(child, primitive, child_path)
            element_data.setdefault(key, []).append(data)

            if spec.repeating or key in instance:
                # A repeated single-valued element becomes a list for the validator to report.
                instance.append(key, value)
            elif value is not None:
                instance.set(key, value)

        # Ids and extensions of primitive elements live under "_<key>", as in FHIR JSON.
        for key, data in element_data.items():
            if any(d is not None for d in data):
                instance.extras["_" + key] = data if isinstance(instance.get(key), list) else data[0]
        return instance

    def _read_primitive(
        self,
        element: ET.Element,
        primitive: PrimitiveSpec,
        path: str,
    ) -> tuple[Any, dict[str, Any] | None]:
        raw = element.get("value")
        data = None
        if len(element) or any(name != "value" for name in element.attrib):
            data = self._opaque(element, primitive.name)[0]
        if raw is None and data is None:
            raise MalformedDocumentError(f"{primitive.name} element has no value attribute", path)
        return (coerce(raw, primitive) if raw is not None else None), data

    def _unknown_element(
        self,
        instance: Instance,
        type_spec: TypeSpec,
        key: str,
        element: ET.Element,
        path: str,
    ) -> None:
        value = self._opaque(element, key)
        if type_spec.extensible and key in instance.extras:
            existing = instance.extras[key]
            instance.extras[key] = (existing if isinstance(existing, list) else [existing]) + (
                value if isinstance(value, list) else [value]
            )
            return
        self._unknown(instance, type_spec, key, value, path)

    def _opaque(self, element: ET.Element, key: str) -> Any:
        """
        Generic element -> JSON-like data; complex elements read back as lists.

        XHTML (narrative ``div``) is kept whole as its serialized markup.
        """
        namespace, _ = _split_tag(element.tag)
        if namespace == XHTML_NS:
            return xhtml_string(element)

        children = list(element)
        attributes = {k: v for k, v in element.attrib.items() if k != "value"}
        if not children and not attributes:
            raw = element.get("value")
            return self._opaque_scalar(raw, key) if raw is not None else {}

        data: dict[str, Any] = {}
        for name in XML_ATTRIBUTE_KEYS:
            if name in attributes:
                data[name] = attributes.pop(name)
        data.update(attributes)
        for child in children:
            _, child_key = _split_tag(child.tag)
            value = self._opaque(child, child_key)
            if child_key in data:
                existing = data[child_key]
                data[child_key] = (existing if isinstance(existing, list) else [existing]) + (
                    value if isinstance(value, list) else [value]
                )
            else:
                data[child_key] = value
        return [data]

    def _opaque_scalar(self, raw: str, key: str) -> Any:
        # valueBoolean, valueInteger ... name their primitive type after "value".
        if key.startswith("value") and len(key) > 5:
            type_name = key[5].lower() + key[6:]
            primitive = self.registry.primitive(type_name)
            if primitive is not None:
                return coerce(raw, primitive)
        return raw

    # ------------------------------------------------------------------
    # Unknown keys
    # ------------------------------------------------------------------

    def _unknown(
        self,
        instance: Instance,
        type_spec: TypeSpec,
        key: str,
        raw: Any,
        path: str,
    ) -> None:
        if type_spec.extensible:
            instance.extras[key] = raw
        elif self.strict:
            raise UnknownFieldError(key, path)
        else:
            logger.debug("Dropping unknown element %r at %s", key, path)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def read(
        self,
        document: str | bytes | Mapping[str, Any],
        type_name: str | None = None,
        fmt: WireFormat | str = WireFormat.JSON,
    ) -> Instance:
        fmt = WireFormat(fmt)
        if isinstance(document, Mapping):
            if fmt != WireFormat.JSON:
                raise MalformedDocumentError("Only JSON documents may be given as mappings")
            return self.from_dict(document, type_name)
        if fmt == WireFormat.XML:
            return self.from_xml(document, type_name)
        return self.from_json(document, type_name)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _split_tag(tag: str) -> tuple[str | None, str]:
    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace, local
    return None, tag


def coerce(raw: str, primitive: PrimitiveSpec) -> Any:
    """
    Convert XML attribute text to the primitive's JSON type.

    Text that does not parse is returned unchanged so that validation, not
    parsing, reports it.
    """
    if primitive.json_type == JsonType.BOOLEAN:
        return {"true": True, "false": False}.get(raw, raw)
    if primitive.json_type == JsonType.INTEGER:
        try:
            return int(raw)
        except ValueError:
            return raw
    if primitive.json_type == JsonType.DECIMAL:
        try:
            return float(raw)
        except ValueError:
            return raw
    return raw
