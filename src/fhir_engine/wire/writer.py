"""
Instance Writer
================
Serializes Instances to FHIR JSON and FHIR XML.

Output is deterministic: fields are written in TypeSpec declaration order,
resources lead with ``resourceType`` (JSON) or a root element named after the
type (XML), and opaque extras follow the declared fields in insertion order.

Example::

    from fhir_engine.wire.writer import InstanceWriter, WireFormat

    writer = InstanceWriter(registry)
    print(writer.to_json(composition, indent=2))
    print(writer.write(composition, WireFormat.XML))
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from enum import Enum
from typing import Any

import defusedxml.ElementTree as SafeET
from defusedxml import DefusedXmlException

from ..errors import EngineError
from ..models.instance import Instance
from ..models.schema import TypeSpec
from ..registry.schema_registry import SchemaRegistry

FHIR_NS = "http://hl7.org/fhir"
RESOURCE_TYPE_KEY = "resourceType"

# Opaque extras carry these scalars as XML attributes (extension url, element id).
XML_ATTRIBUTE_KEYS = ("url", "id")

# Narrative XHTML travels as a serialized string in JSON and as markup in XML.
XHTML_NS = "http://www.w3.org/1999/xhtml"
NARRATIVE_KEY = "div"


class WireFormat(str, Enum):
    JSON = "json"
    XML = "xml"


class InstanceWriter:
    """Turns Instances into wire documents using the TypeSpecs of a registry."""

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    def to_dict(self, instance: Instance, type_name: str | None = None) -> dict[str, Any]:
        """Return the FHIR JSON object for ``instance`` as plain Python data."""
        return self._object(instance, self._spec_for(instance, type_name))

    def to_json(
        self,
        instance: Instance,
        type_name: str | None = None,
        indent: int | None = None,
    ) -> str:
        return json.dumps(self.to_dict(instance, type_name), indent=indent, ensure_ascii=False)

    def _object(self, instance: Instance, type_spec: TypeSpec) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if type_spec.is_resource:
            out[RESOURCE_TYPE_KEY] = type_spec.name

        for spec in type_spec.fields:
            for key in spec.variant_keys():
                if key in instance:
                    value = instance[key]
                    if isinstance(value, list):
                        # Present-but-empty survives only where the schema permits zero values.
                        if value or spec.min == 0:
                            out[key] = [self._json_value(v) for v in value]
                    else:
                        out[key] = self._json_value(value)
                # Element data follows the value it belongs to.
                if "_" + key in instance.extras:
                    out["_" + key] = self._json_value(instance.extras["_" + key])

        for key, value in instance.items():
            if type_spec.resolve_key(key) is None:
                out[key] = self._json_value(value)
        for key, value in instance.extras.items():
            if key not in out:
                out[key] = self._json_value(value)
        return out

    def _json_value(self, value: Any) -> Any:
        if isinstance(value, Instance):
            return self._object(value, self.registry.lookup(value.type_name))
        if isinstance(value, list):
            return [self._json_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self._json_value(v) for k, v in value.items()}
        return value

    # ------------------------------------------------------------------
    # XML
    # ------------------------------------------------------------------

    def to_xml(
        self,
        instance: Instance,
        type_name: str | None = None,
        pretty: bool = False,
    ) -> str:
        """
        Render ``instance`` as FHIR XML.

        XML has no way to express a present-but-empty repeat, so a field
        holding ``[]`` is omitted and reads back as absent. Element data kept
        under ``_<key>`` (id, extensions) is folded back into the primitive
        element ``<key>``.
        """
        type_spec = self._spec_for(instance, type_name)
        root = ET.Element(type_spec.local_name, {"xmlns": FHIR_NS})
        self._fill_element(root, instance, type_spec)
        if pretty:
            saved = _narrative_whitespace(root)
            ET.indent(root)
            for element, text, tail in saved:
                element.text = text
                if tail is not _ROOT:
                    element.tail = tail
        return ET.tostring(root, encoding="unicode")

    def _fill_element(self, parent: ET.Element, instance: Instance, type_spec: TypeSpec) -> None:
        written: set[str] = set()
        if not type_spec.is_resource:
            # Element ids (and extension urls) of data types and backbones are attributes.
            for key in XML_ATTRIBUTE_KEYS:
                value = instance.extras.get(key)
                if value is not None and not isinstance(value, (dict, list)):
                    parent.set(key, lexical(value))
                    written.add(key)

        for spec in type_spec.fields:
            for key in spec.variant_keys():
                data_key = "_" + key
                if key in instance or data_key in instance.extras:
                    self._xml_values(parent, key, instance.get(key), instance.extras.get(data_key))
                    written.add(data_key)
        for key, value in instance.items():
            if type_spec.resolve_key(key) is None:
                self._xml_values(parent, key, value)
        for key, value in instance.extras.items():
            if key not in written:
                self._xml_values(parent, key, value)

    def _xml_values(self, parent: ET.Element, key: str, value: Any, element_data: Any = None) -> None:
        values = value if isinstance(value, list) else [value]
        data = element_data if isinstance(element_data, list) else [element_data]
        for i in range(max(len(values), len(data))):
            item = values[i] if i < len(values) else None
            extra = data[i] if i < len(data) else None
            if isinstance(item, Instance):
                child = ET.SubElement(parent, key)
                self._fill_element(child, item, self.registry.lookup(item.type_name))
            elif isinstance(item, dict):
                self._xml_opaque(ET.SubElement(parent, key), item)
            elif item is not None or isinstance(extra, dict):
                child = ET.SubElement(parent, key)
                if item is not None:
                    child.set("value", lexical(item))
                if isinstance(extra, dict):
                    self._xml_opaque(child, extra)

    def _xml_opaque(self, element: ET.Element, data: dict[str, Any]) -> None:
        for key, value in data.items():
            if key in XML_ATTRIBUTE_KEYS and not isinstance(value, (dict, list)):
                element.set(key, lexical(value))
            elif key == NARRATIVE_KEY and isinstance(value, str):
                element.append(_xhtml_element(value))
            else:
                self._xml_values(element, key, value)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def write(
        self,
        instance: Instance,
        fmt: WireFormat | str = WireFormat.JSON,
        type_name: str | None = None,
        pretty: bool = False,
    ) -> str:
        fmt = WireFormat(fmt)
        if fmt == WireFormat.XML:
            return self.to_xml(instance, type_name, pretty=pretty)
        return self.to_json(instance, type_name, indent=2 if pretty else None)

    def _spec_for(self, instance: Instance, type_name: str | None) -> TypeSpec:
        return self.registry.lookup(type_name or instance.type_name)


def lexical(value: Any) -> str:
    """XML ``value`` attribute text: JSON literals for booleans, str() otherwise."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def local_copy(element: ET.Element) -> ET.Element:
    """Copy of an element tree with namespace-qualified tags reduced to local names."""
    tag = element.tag.rpartition("}")[2]
    copy = ET.Element(tag, dict(element.attrib))
    copy.text = element.text
    copy.tail = element.tail
    for child in element:
        copy.append(local_copy(child))
    return copy


def xhtml_string(element: ET.Element) -> str:
    """Serialize an XHTML ``div`` the way FHIR JSON carries ``Narrative.div``."""
    root = local_copy(element)
    root.tail = None
    root.set("xmlns", XHTML_NS)
    return ET.tostring(root, encoding="unicode")


def _xhtml_element(markup: str) -> ET.Element:
    try:
        parsed = SafeET.fromstring(markup)
    except (ET.ParseError, DefusedXmlException) as e:
        raise EngineError(f"Narrative is not well-formed XHTML: {e}", NARRATIVE_KEY) from e
    root = local_copy(parsed)
    root.set("xmlns", XHTML_NS)
    return root


_ROOT = object()


def _narrative_whitespace(root: ET.Element) -> list[tuple[ET.Element, str | None, Any]]:
    """Text and tails inside narrative markup, which indentation must not touch."""
    saved: list[tuple[ET.Element, str | None, Any]] = []
    for div in root.iter():
        if div.get("xmlns") != XHTML_NS:
            continue
        saved.append((div, div.text, _ROOT))
        for element in list(div.iter())[1:]:
            saved.append((element, element.text, element.tail))
    return saved
