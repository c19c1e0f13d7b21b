"""
Test Suite for fhir-engine
===========================
Tests for the schema registry, instance model, choice resolver, validator,
JSON/XML wire formats, structural equality, builders, settings and CLI.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fhir_engine import (
    Binding,
    BindingStrength,
    ChoiceConflictError,
    ChoiceValue,
    EngineSettings,
    FieldKind,
    Instance,
    InstanceBuilder,
    InstanceValidator,
    IssueKind,
    MalformedDocumentError,
    ModelEngine,
    SchemaError,
    SchemaRegistry,
    TypeKind,
    TypeSpecBuilder,
    UnknownFieldError,
    UnknownTypeError,
    WireFormat,
    default_registry,
    equals,
    get_choice,
    load_schema,
    set_choice,
    structural_hash,
    variant_key,
)
from fhir_engine.cli import main as cli_main
from fhir_engine.registry.schema_registry import bundled_document


RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"
WIDGET_KIND = "http://example.org/widget-kind"

# Closed (non-extensible) resource layered over the bundled core types.
WIDGET_SCHEMA = {
    "types": {
        "Widget": {
            "kind": "resource",
            "extensible": False,
            "metadata": {
                "status": {
                    "type": "code", "path": "Widget.status", "min": 1, "max": 1,
                    "binding": {"strength": "required", "uri": "http://example.org/ValueSet/widget-status"},
                    "valid_codes": {"http://example.org/widget-status": ["on", "off"]},
                },
                "label": {"type": "string", "path": "Widget.label", "min": 0, "max": 1},
                "valueString": {"type": "string", "path": "Widget.value[x]", "min": 0, "max": 1},
                "valueBoolean": {"type": "boolean", "path": "Widget.value[x]", "min": 0, "max": 1},
                "kind": {
                    "type": "Coding", "path": "Widget.kind", "min": 0, "max": 1,
                    "binding": {"strength": "required"},
                    "valid_codes": {WIDGET_KIND: ["gear", "lever"]},
                },
                "category": {
                    "type": "CodeableConcept", "path": "Widget.category", "min": 0, "max": "*",
                    "binding": {"strength": "required"},
                    "valid_codes": {WIDGET_KIND: ["gear", "lever"]},
                },
                "part": {"type": "Widget::Part", "path": "Widget.part", "min": 0, "max": "*"},
            },
        },
        "Widget::Part": {
            "kind": "backbone",
            "extensible": False,
            "metadata": {
                "label": {"type": "string", "path": "Part.label", "min": 1, "max": 1},
            },
        },
    }
}


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture
def engine() -> ModelEngine:
    return ModelEngine(settings=EngineSettings())


@pytest.fixture
def widget_engine() -> ModelEngine:
    return ModelEngine.from_schema(WIDGET_SCHEMA, settings=EngineSettings())


@pytest.fixture
def strict_widget_engine() -> ModelEngine:
    return ModelEngine.from_schema(WIDGET_SCHEMA, settings=EngineSettings(unknown_fields="strict"))


@pytest.fixture
def minimal_composition() -> Instance:
    """Smallest Composition that satisfies every required field."""
    return (
        InstanceBuilder.composition()
        .set("title", "Visit Note")
        .set("status", "final")
        .set("type", InstanceBuilder.codeable_concept(
            InstanceBuilder.coding("http://loinc.org", "11488-4", "Consult note"),
        ))
        .set("date", "2024-01-01")
        .add("author", InstanceBuilder.reference("Practitioner/example"))
        .build()
    )


@pytest.fixture
def medication_request() -> Instance:
    return (
        InstanceBuilder.medication_request()
        .set("status", "active")
        .set("intent", "order")
        .choice("medication", "CodeableConcept", InstanceBuilder.codeable_concept(
            InstanceBuilder.coding(RXNORM, "1049502", "Acetaminophen 325 MG"),
        ))
        .set("subject", InstanceBuilder.reference("Patient/example"))
        .set("authoredOn", "2024-01-05T10:30:00Z")
        .build()
    )


@pytest.fixture
def full_medication_request(medication_request: Instance) -> Instance:
    """A request exercising booleans, integers, decimals, backbones and repeats."""
    request = medication_request.copy()
    request.set("priority", "routine")
    request.set("reportedBoolean", True)
    request.set("dispenseRequest", Instance("MedicationRequest::DispenseRequest", {
        "numberOfRepeatsAllowed": 3,
        "quantity": Instance("Quantity", {"value": 30, "unit": "tablet"}),
    }))
    request.set("note", [Instance("Annotation", {"text": "Take with food"})])
    return request


def _section(title: str, **fields) -> InstanceBuilder:
    builder = InstanceBuilder.section().set("title", title)
    for key, value in fields.items():
        builder.set(key, value)
    return builder


# ===========================================================================
# Schema Registry Tests
# ===========================================================================


class TestSchemaRegistry:
    """Tests for loading, freezing and looking up TypeSpecs."""

    def test_bundled_types_registered(self) -> None:
        registry = default_registry()
        assert registry.frozen
        for name in ("Composition", "Composition::Section", "DocumentReference", "MedicationRequest"):
            assert name in registry
        assert set(registry.resource_names()) == {"Composition", "DocumentReference", "MedicationRequest"}

    def test_default_registry_is_loaded_once(self) -> None:
        assert default_registry() is default_registry()

    def test_lookup_unknown_type(self) -> None:
        with pytest.raises(UnknownTypeError) as exc:
            default_registry().lookup("Patient")
        assert isinstance(exc.value, SchemaError)
        assert exc.value.type_name == "Patient"

    def test_register_after_freeze_fails(self) -> None:
        with pytest.raises(SchemaError):
            default_registry().register(TypeSpecBuilder.datatype("Gadget").build())

    def test_duplicate_registration_fails(self) -> None:
        registry = SchemaRegistry()
        registry.register(TypeSpecBuilder.datatype("Gadget").build())
        with pytest.raises(SchemaError):
            registry.register(TypeSpecBuilder.datatype("Gadget").build())

    def test_freeze_rejects_unresolved_reference(self) -> None:
        registry = SchemaRegistry()
        registry.register(TypeSpecBuilder.datatype("Gadget").composite("part", "Missing").build())
        with pytest.raises(SchemaError) as exc:
            registry.freeze()
        assert exc.value.path == "Gadget.part"
        assert not registry.frozen

    def test_choice_variants_folded(self) -> None:
        spec = default_registry().lookup("MedicationRequest")
        medication = spec.field("medication")
        assert medication.kind == FieldKind.CHOICE
        assert medication.types == ("CodeableConcept", "Reference")
        assert medication.path == "MedicationRequest.medication[x]"
        assert medication.required
        assert medication.target_types() == {"Medication"}
        assert spec.resolve_key("medicationReference") == (medication, "Reference")

    def test_choice_keeps_declaration_position(self) -> None:
        keys = default_registry().lookup("MedicationRequest").keys()
        assert keys.index("reportedBoolean") < keys.index("medicationCodeableConcept")
        assert keys.index("medicationReference") < keys.index("subject")

    def test_unbounded_cardinality(self) -> None:
        author = default_registry().lookup("Composition").field("author")
        assert author.max is None
        assert author.repeating
        assert author.cardinality() == "1..*"

    def test_backbone_paths_use_local_name(self) -> None:
        section = default_registry().lookup("Composition::Section")
        assert section.kind == TypeKind.BACKBONE
        assert section.local_name == "Section"
        assert section.field("section").path == "Section.section"
        assert section.field("section").type == "Composition::Section"

    def test_load_standalone_document(self) -> None:
        doc = json.dumps({
            "primitives": {"string": {"type": "string", "regex": "[ \\r\\n\\t\\S]+"}},
            "types": {"Label": {"metadata": {"text": {"type": "string", "path": "Label.text", "min": 1, "max": 1}}}},
        })
        registry = load_schema(doc)
        assert registry.frozen
        assert registry.lookup("Label").field("text").required
        assert registry.is_primitive("string")

    def test_load_rejects_invalid_cardinality(self) -> None:
        doc = {"types": {"Bad": {"metadata": {"x": {"type": "string", "min": 2, "max": 1}}}}}
        with pytest.raises(SchemaError):
            load_schema(doc)

    def test_load_rejects_bad_json(self) -> None:
        with pytest.raises(SchemaError):
            load_schema("{not json")

    def test_merge_into_open_registry(self) -> None:
        registry = load_schema(bundled_document(), freeze=False)
        load_schema(WIDGET_SCHEMA, registry=registry)
        assert registry.frozen
        assert "Widget" in registry
        assert "Composition" in registry
        assert not registry.lookup("Widget").extensible


# ===========================================================================
# Instance & Choice Resolver Tests
# ===========================================================================


class TestInstance:
    """Tests for the generic Instance container."""

    def test_none_removes_field(self) -> None:
        inst = Instance("Coding", {"code": "a"})
        inst.set("code", None)
        assert "code" not in inst
        assert inst.count("code") == 0

    def test_empty_list_is_present(self) -> None:
        inst = Instance("CodeableConcept", {"coding": []})
        assert "coding" in inst
        assert inst.count("coding") == 0

    def test_append_and_count(self) -> None:
        inst = Instance("CodeableConcept")
        inst.append("coding", Instance("Coding", {"code": "a"}))
        inst.append("coding", Instance("Coding", {"code": "b"}))
        assert inst.count("coding") == 2

    def test_copy_is_deep(self, minimal_composition: Instance) -> None:
        clone = minimal_composition.copy()
        clone["author"].append(InstanceBuilder.reference("Practitioner/other"))
        assert minimal_composition.count("author") == 1
        assert clone.count("author") == 2

    def test_unhashable(self, minimal_composition: Instance) -> None:
        with pytest.raises(TypeError):
            hash(minimal_composition)


class TestChoiceResolver:
    """Tests for get_choice / set_choice on [x] fields."""

    def setup_method(self) -> None:
        self.spec = default_registry().lookup("MedicationRequest")

    def test_variant_key(self) -> None:
        assert variant_key("reported", "boolean") == "reportedBoolean"
        assert variant_key("medication", "CodeableConcept") == "medicationCodeableConcept"

    def test_get_absent(self) -> None:
        assert get_choice(Instance("MedicationRequest"), self.spec, "medication") is None

    def test_set_clears_other_variant(self) -> None:
        inst = Instance("MedicationRequest")
        set_choice(inst, self.spec, "medication", "CodeableConcept", Instance("CodeableConcept", {"text": "x"}))
        ref = InstanceBuilder.reference("Medication/123")
        set_choice(inst, self.spec, "medication", "Reference", ref)

        assert "medicationCodeableConcept" not in inst
        assert get_choice(inst, self.spec, "medication") == ChoiceValue("Reference", ref)

    def test_conflict_raises(self) -> None:
        inst = Instance("MedicationRequest", {
            "reportedBoolean": True,
            "reportedReference": InstanceBuilder.reference("Patient/1"),
        })
        with pytest.raises(ChoiceConflictError) as exc:
            get_choice(inst, self.spec, "reported")
        assert exc.value.path == "MedicationRequest.reported[x]"

    def test_unknown_variant(self) -> None:
        with pytest.raises(ValueError):
            set_choice(Instance("MedicationRequest"), self.spec, "medication", "string", "aspirin")

    def test_non_choice_field(self) -> None:
        with pytest.raises(KeyError):
            get_choice(Instance("MedicationRequest"), self.spec, "status")


# ===========================================================================
# Validator Tests
# ===========================================================================


class TestInstanceValidator:
    """Tests for cardinality, choice, binding, type and reference checks."""

    def setup_method(self) -> None:
        self.v = InstanceValidator(default_registry())

    def test_minimal_composition_valid(self, minimal_composition: Instance) -> None:
        result = self.v.validate(minimal_composition)
        assert result.issues == []
        assert result.passed
        assert result.status == "Valid"

    def test_valid_medication_request(self, full_medication_request: Instance) -> None:
        assert self.v.validate(full_medication_request).issues == []

    @pytest.mark.parametrize("extra", [
        {},
        {"priority": "stat"},
        {"priority": "bogus", "authoredOn": "not-a-date"},
        {"medicationReference": InstanceBuilder.reference("Medication/1")},
        {"note": [Instance("Annotation")]},
    ])
    def test_missing_status_always_reported(self, medication_request: Instance, extra: dict) -> None:
        inst = medication_request.copy()
        inst.set("status", None)
        for key, value in extra.items():
            inst.set(key, value)
        result = self.v.validate(inst, "MedicationRequest")
        status = [i for i in result.issues if i.path == "MedicationRequest.status"]
        assert len(status) == 1
        assert status[0].kind == IssueKind.CARDINALITY
        assert status[0].expected == "1..1"
        assert status[0].actual == 0

    def test_too_many_values(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("status", ["active", "draft"])
        issues = self.v.validate(inst).by_kind()[IssueKind.CARDINALITY]
        assert [(i.path, i.actual) for i in issues] == [("MedicationRequest.status", 2)]

    def test_cardinality_and_type_both_reported(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("status", [1, "draft"])
        issues = [i for i in self.v.validate(inst).issues if i.path == "MedicationRequest.status"]
        assert {i.kind for i in issues} == {IssueKind.CARDINALITY, IssueKind.TYPE}
        assert [i.location for i in issues if i.kind == IssueKind.TYPE] == ["MedicationRequest.status[0]"]

    def test_choice_conflict_reported_once(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("medicationReference", InstanceBuilder.reference("Medication/123"))
        result = self.v.validate(inst)

        conflicts = [i for i in result.issues if i.kind == IssueKind.CHOICE_CONFLICT]
        assert len(conflicts) == 1
        assert conflicts[0].path == "MedicationRequest.medication[x]"
        assert not [i for i in result.issues if i.kind == IssueKind.CARDINALITY]

    def test_missing_required_choice(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("medicationCodeableConcept", None)
        issues = self.v.validate(inst).issues
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.CARDINALITY
        assert issues[0].path == "MedicationRequest.medication[x]"

    def test_three_level_section_paths(self) -> None:
        level3 = _section("Allergies", code="bogus")
        level2 = _section("History").add("section", level3)
        level1 = _section("Summary").add("section", level2).build()

        issues = self.v.validate(level1, "Composition::Section").issues
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.TYPE
        assert issues[0].path == "Section.section.section.code"
        assert issues[0].location == "Section.section[0].section[0].code"

    def test_each_section_level_validated(self) -> None:
        level3 = _section("Allergies", mode="bogus")
        level2 = _section("History").add("section", level3)
        level1 = _section("Summary", mode="bogus").add("section", level2).build()

        issues = self.v.validate(level1, "Composition::Section").issues
        assert {i.kind for i in issues} == {IssueKind.UNBOUND_CODE}
        assert [i.path for i in issues] == ["Section.mode", "Section.section.section.mode"]

    def test_nested_paths_from_resource_root(self, minimal_composition: Instance) -> None:
        level3 = _section("Allergies", code="bogus")
        level1 = _section("Summary").add("section", _section("History").add("section", level3))
        inst = minimal_composition.copy()
        inst.set("section", [level1.build()])

        issues = self.v.validate(inst).issues
        assert [i.path for i in issues] == ["Composition.section.section.section.code"]

    def test_required_binding_unbound_code(self, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.set("status", "bogus")
        issues = self.v.validate(inst).issues
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.UNBOUND_CODE
        assert issues[0].path == "Composition.status"
        assert issues[0].expected == "http://hl7.org/fhir/ValueSet/composition-status"

    def test_preferred_binding_not_enforced(self, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.set("language", "tlh")
        assert self.v.validate(inst).passed

    @pytest.mark.parametrize("strength,expected", [
        ("required", 1),
        ("extensible", 0),
        ("preferred", 0),
        ("example", 0),
    ])
    def test_binding_strength(self, strength: str, expected: int) -> None:
        doc = {"types": {"Note": {"kind": "resource", "metadata": {"status": {
            "type": "code", "path": "Note.status", "min": 1, "max": 1,
            "binding": {"strength": strength, "uri": "http://hl7.org/fhir/ValueSet/composition-status"},
            "valid_codes": {"http://hl7.org/fhir/composition-status": ["preliminary", "final"]},
        }}}}}
        engine = ModelEngine.from_schema(doc)
        result = engine.validate(Instance("Note", {"status": "bogus"}))
        assert len(result.by_kind().get(IssueKind.UNBOUND_CODE, [])) == expected

    def test_document_reference_without_content(self) -> None:
        for content in (None, []):
            inst = InstanceBuilder.document_reference().set("status", "current").set("content", content).build()
            issues = self.v.validate(inst).issues
            assert len(issues) == 1
            assert issues[0].kind == IssueKind.CARDINALITY
            assert issues[0].path == "DocumentReference.content"

    def test_reference_target(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("subject", InstanceBuilder.reference("Practitioner/1"))
        issues = self.v.validate(inst).issues
        assert [(i.kind, i.path, i.actual) for i in issues] == [
            (IssueKind.REFERENCE_TARGET, "MedicationRequest.subject", "Practitioner"),
        ]

    @pytest.mark.parametrize("reference", [
        "Patient/1",
        "Group/g-7",
        "https://fhir.example.org/r4/Patient/1/_history/2",
        "#contained",
    ])
    def test_reference_target_accepted(self, medication_request: Instance, reference: str) -> None:
        inst = medication_request.copy()
        inst.set("subject", InstanceBuilder.reference(reference))
        assert self.v.validate(inst).passed

    def test_primitive_type_and_pattern(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("intent", True)
        inst.set("authoredOn", "yesterday")
        issues = self.v.validate(inst).issues
        assert {i.path for i in issues} == {"MedicationRequest.intent", "MedicationRequest.authoredOn"}
        assert {i.kind for i in issues} == {IssueKind.TYPE}

    def test_patterns_can_be_disabled(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("authoredOn", "yesterday")
        assert InstanceValidator(default_registry(), check_patterns=False).validate(inst).passed

    def test_wrong_nested_type(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("subject", Instance("Coding", {"code": "x"}))
        issues = self.v.validate(inst).issues
        assert issues[0].kind == IssueKind.TYPE
        assert issues[0].expected == "Reference"

    def test_undeclared_key(self, medication_request: Instance) -> None:
        inst = medication_request.copy()
        inst.set("colour", "blue")
        issues = self.v.validate(inst).issues
        assert [(i.kind, i.path) for i in issues] == [(IssueKind.UNKNOWN_ELEMENT, "MedicationRequest.colour")]

    def test_extras_allowed_on_extensible_types(self, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.extras["extension"] = [{"url": "http://example.org/x", "valueString": "y"}]
        assert self.v.validate(inst).passed

    def test_extras_rejected_on_closed_types(self, widget_engine: ModelEngine) -> None:
        inst = Instance("Widget", {"status": "on"}, extras={"colour": "blue"})
        issues = widget_engine.validate(inst).issues
        assert [(i.kind, i.path) for i in issues] == [(IssueKind.UNKNOWN_ELEMENT, "Widget.colour")]

    @pytest.mark.parametrize("system,code,bound", [
        (WIDGET_KIND, "gear", True),
        (WIDGET_KIND, "bolt", False),
        (None, "lever", True),
        ("http://example.org/other", "gear", False),
    ])
    def test_coding_binding(self, widget_engine: ModelEngine, system, code, bound) -> None:
        inst = Instance("Widget", {"status": "on", "kind": InstanceBuilder.coding(system, code)})
        issues = widget_engine.validate(inst).issues
        assert (issues == []) is bound
        if not bound:
            assert issues[0].kind == IssueKind.UNBOUND_CODE
            assert issues[0].path == "Widget.kind"

    def test_codeable_concept_binding(self, widget_engine: ModelEngine) -> None:
        bolt = InstanceBuilder.coding(WIDGET_KIND, "bolt")
        gear = InstanceBuilder.coding(WIDGET_KIND, "gear")
        unbound = Instance("Widget", {"status": "on", "category": [InstanceBuilder.codeable_concept(bolt)]})
        bound = Instance("Widget", {"status": "on", "category": [
            InstanceBuilder.codeable_concept(bolt, gear),
            InstanceBuilder.codeable_concept(text="free text only"),
        ]})

        issues = widget_engine.validate(unbound).issues
        assert [(i.kind, i.location) for i in issues] == [(IssueKind.UNBOUND_CODE, "Widget.category[0]")]
        assert widget_engine.validate(bound).passed

    def test_all_issues_accumulated(self) -> None:
        inst = Instance("MedicationRequest", {"priority": "bogus"})
        result = self.v.validate(inst)
        assert {i.path for i in result.issues} == {
            "MedicationRequest.status",
            "MedicationRequest.intent",
            "MedicationRequest.priority",
            "MedicationRequest.medication[x]",
            "MedicationRequest.subject",
        }
        assert result.status == "Invalid"
        assert "[Invalid] MedicationRequest" in str(result)

    def test_unknown_type_propagates(self) -> None:
        with pytest.raises(UnknownTypeError):
            self.v.validate(Instance("Patient"))

    def test_batch_validation(self, minimal_composition: Instance, medication_request: Instance) -> None:
        results = self.v.validate_batch([minimal_composition, medication_request])
        assert [r.type_name for r in results] == ["Composition", "MedicationRequest"]
        assert all(r.passed for r in results)


# ===========================================================================
# Wire Format Tests
# ===========================================================================


class TestJsonWire:
    """Tests for FHIR JSON serialization and parsing."""

    def test_round_trip(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        text = engine.serialize(minimal_composition)
        assert engine.deserialize(text) == minimal_composition

    def test_round_trip_full_request(self, engine: ModelEngine, full_medication_request: Instance) -> None:
        text = engine.serialize(full_medication_request, fmt=WireFormat.JSON)
        assert engine.deserialize(text, "MedicationRequest") == full_medication_request

    def test_declaration_order(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        assert list(engine.to_dict(minimal_composition)) == [
            "resourceType", "status", "type", "date", "author", "title",
        ]

    def test_choice_uses_variant_key(self, engine: ModelEngine, medication_request: Instance) -> None:
        data = engine.to_dict(medication_request)
        assert "medicationCodeableConcept" in data
        assert "medicationReference" not in data
        assert "medication" not in data

    def test_empty_list_only_when_optional(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.set("category", [])
        inst.set("author", [])
        data = engine.to_dict(inst)
        assert data["category"] == []
        assert "author" not in data

    def test_absent_and_empty_survive_round_trip(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.set("category", [])
        back = engine.deserialize(engine.serialize(inst))
        assert back.count("category") == 0
        assert "category" in back
        assert "event" not in back

    def test_extras_preserved(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        data = engine.to_dict(minimal_composition)
        data["extension"] = [{"url": "http://example.org/x", "valueString": "y"}]
        inst = engine.deserialize(data)
        assert inst.extras == {"extension": [{"url": "http://example.org/x", "valueString": "y"}]}
        assert list(engine.to_dict(inst))[-1] == "extension"

    def test_list_under_single_key_kept(self, engine: ModelEngine) -> None:
        inst = engine.deserialize({"resourceType": "MedicationRequest", "status": ["active", "draft"]})
        assert inst["status"] == ["active", "draft"]

    def test_scalar_under_repeating_key_wrapped(self, engine: ModelEngine) -> None:
        inst = engine.deserialize({"resourceType": "Composition", "author": {"reference": "Practitioner/1"}})
        assert inst.count("author") == 1
        assert inst["author"][0]["reference"] == "Practitioner/1"

    def test_backbone_without_resource_type(self, engine: ModelEngine) -> None:
        inst = engine.deserialize({"title": "Plan", "section": [{"title": "Meds"}]}, "Composition::Section")
        assert inst["section"][0].type_name == "Composition::Section"

    @pytest.mark.parametrize("document,type_name", [
        ("{not json", None),
        ("[1, 2]", None),
        ('{"status": "final"}', None),
        ('{"resourceType": "Composition"}', "MedicationRequest"),
        ('{"resourceType": "Composition", "status": {"code": "final"}}', None),
        ('{"resourceType": "Composition", "type": "note"}', None),
    ])
    def test_malformed(self, engine: ModelEngine, document: str, type_name: str | None) -> None:
        with pytest.raises(MalformedDocumentError):
            engine.deserialize(document, type_name)

    def test_unknown_field_kept_on_extensible_type(self, strict_widget_engine: ModelEngine) -> None:
        inst = strict_widget_engine.deserialize({"resourceType": "Composition", "colour": "blue"})
        assert inst.extras == {"colour": "blue"}

    def test_unknown_field_strict(self, strict_widget_engine: ModelEngine) -> None:
        with pytest.raises(UnknownFieldError) as exc:
            strict_widget_engine.deserialize({"resourceType": "Widget", "status": "on", "colour": "blue"})
        assert exc.value.key == "colour"
        assert exc.value.path == "Widget.colour"

    def test_unknown_nested_field_strict(self, strict_widget_engine: ModelEngine) -> None:
        with pytest.raises(UnknownFieldError) as exc:
            strict_widget_engine.deserialize(
                {"resourceType": "Widget", "status": "on", "part": [{"label": "a", "x": 1}]}
            )
        assert exc.value.path == "Widget.part[0].x"

    def test_element_data_allowed_on_closed_types(self, strict_widget_engine: ModelEngine) -> None:
        inst = strict_widget_engine.deserialize(
            {"resourceType": "Widget", "status": "on", "_status": {"id": "w1"}}
        )
        assert inst.extras == {"_status": {"id": "w1"}}
        assert strict_widget_engine.validate(inst).passed

    def test_unknown_field_lenient(self, widget_engine: ModelEngine) -> None:
        inst = widget_engine.deserialize({"resourceType": "Widget", "status": "on", "colour": "blue"})
        assert inst.keys() == ["status"]
        assert inst.extras == {}


class TestXmlWire:
    """Tests for FHIR XML serialization and parsing."""

    def test_round_trip(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        xml = engine.serialize(minimal_composition, fmt=WireFormat.XML)
        assert engine.deserialize(xml, fmt=WireFormat.XML) == minimal_composition

    def test_round_trip_coerces_primitives(self, engine: ModelEngine, full_medication_request: Instance) -> None:
        xml = engine.serialize(full_medication_request, fmt="xml", pretty=True)
        back = engine.deserialize(xml, "MedicationRequest", "xml")
        assert back == full_medication_request
        assert back["reportedBoolean"] is True
        assert back["dispenseRequest"]["numberOfRepeatsAllowed"] == 3

    def test_fhir_conventions(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        xml = engine.serialize(minimal_composition, fmt=WireFormat.XML)
        assert xml.startswith("<Composition")
        assert 'xmlns="http://hl7.org/fhir"' in xml
        assert 'value="final"' in xml
        assert "resourceType" not in xml
        assert xml.index("<status") < xml.index("<title")

    def test_extras_round_trip(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.extras["extension"] = [{"url": "http://example.org/flag", "valueBoolean": True}]
        xml = engine.serialize(inst, fmt=WireFormat.XML)
        assert 'url="http://example.org/flag"' in xml
        assert engine.deserialize(xml, fmt=WireFormat.XML) == inst

    def test_primitive_extension_preserved(self, engine: ModelEngine) -> None:
        xml = (
            '<Composition xmlns="http://hl7.org/fhir">'
            '<status value="final"><extension url="http://example.org/signature">'
            '<valueString value="signed"/></extension></status>'
            "</Composition>"
        )
        inst = engine.deserialize(xml, fmt=WireFormat.XML)
        assert inst["status"] == "final"
        assert inst.extras["_status"] == {
            "extension": [{"url": "http://example.org/signature", "valueString": "signed"}],
        }

        out = engine.serialize(inst, fmt=WireFormat.XML)
        assert "_status" not in out
        assert (
            '<status value="final"><extension url="http://example.org/signature">'
            '<valueString value="signed" /></extension></status>'
        ) in out
        assert engine.deserialize(out, fmt=WireFormat.XML) == inst

    def test_json_element_data_folds_into_xml(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        data = engine.to_dict(minimal_composition)
        data["_status"] = {"id": "s1", "extension": [{"url": "http://example.org/x", "valueBoolean": True}]}
        inst = engine.deserialize(data)

        keys = list(engine.to_dict(inst))
        assert keys.index("_status") == keys.index("status") + 1
        xml = engine.serialize(inst, fmt=WireFormat.XML)
        assert '<status value="final" id="s1">' in xml
        assert "<_status" not in xml
        assert engine.deserialize(xml, fmt=WireFormat.XML) == inst

    def test_narrative_round_trip(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        div = '<div xmlns="http://www.w3.org/1999/xhtml"><p>Patient is <b>stable</b></p></div>'
        xml = engine.serialize(minimal_composition, fmt=WireFormat.XML)
        xml = xml.replace("<status", f'<text><status value="generated"/>{div}</text><status', 1)

        inst = engine.deserialize(xml, fmt=WireFormat.XML)
        assert inst.extras["text"] == [{"status": "generated", "div": div}]

        again = engine.serialize(inst, fmt=WireFormat.XML)
        assert "<p>Patient is <b>stable</b></p>" in again
        assert engine.deserialize(again, fmt=WireFormat.XML) == inst
        pretty = engine.serialize(inst, fmt=WireFormat.XML, pretty=True)
        assert engine.deserialize(pretty, fmt=WireFormat.XML) == inst

    def test_element_id_attribute_preserved(self, engine: ModelEngine) -> None:
        xml = (
            '<Composition xmlns="http://hl7.org/fhir">'
            '<section id="s1"><title value="Plan"/></section>'
            "</Composition>"
        )
        inst = engine.deserialize(xml, fmt=WireFormat.XML)
        assert inst["section"][0].extras == {"id": "s1"}
        assert '<section id="s1">' in engine.serialize(inst, fmt=WireFormat.XML)
        assert engine.to_dict(inst)["section"][0]["id"] == "s1"

    def test_empty_list_reads_back_absent(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        inst = minimal_composition.copy()
        inst.set("category", [])
        back = engine.deserialize(engine.serialize(inst, fmt=WireFormat.XML), fmt=WireFormat.XML)
        assert "category" in inst
        assert "category" not in back

    def test_repeated_single_element_kept_as_list(self, engine: ModelEngine) -> None:
        xml = (
            '<MedicationRequest xmlns="http://hl7.org/fhir">'
            '<status value="active"/><status value="draft"/>'
            "</MedicationRequest>"
        )
        inst = engine.deserialize(xml, fmt=WireFormat.XML)
        assert inst["status"] == ["active", "draft"]

    @pytest.mark.parametrize("document,type_name", [
        ("<Composition", None),
        ('<MedicationRequest xmlns="http://hl7.org/fhir"/>', "Composition"),
        ('<Composition xmlns="urn:other"/>', None),
        ('<Composition xmlns="http://hl7.org/fhir"><status/></Composition>', None),
        ('<Composition xmlns="http://hl7.org/fhir"><type value="x"/></Composition>', None),
        ('<!DOCTYPE c [<!ENTITY e "x">]><Composition xmlns="http://hl7.org/fhir"/>', None),
    ])
    def test_malformed(self, engine: ModelEngine, document: str, type_name: str | None) -> None:
        with pytest.raises(MalformedDocumentError):
            engine.deserialize(document, type_name, WireFormat.XML)

    def test_unknown_element_strict(self, strict_widget_engine: ModelEngine) -> None:
        xml = '<Widget xmlns="http://hl7.org/fhir"><status value="on"/><colour value="blue"/></Widget>'
        with pytest.raises(UnknownFieldError):
            strict_widget_engine.deserialize(xml, fmt=WireFormat.XML)

    def test_mapping_input_rejected(self, engine: ModelEngine) -> None:
        with pytest.raises(MalformedDocumentError):
            engine.deserialize({"resourceType": "Composition"}, fmt=WireFormat.XML)


# ===========================================================================
# Structural Equality Tests
# ===========================================================================


class TestStructuralEquality:
    """Tests for equals() and structural_hash()."""

    def test_equal_instances(self, minimal_composition: Instance) -> None:
        clone = minimal_composition.copy()
        assert equals(minimal_composition, clone)
        assert structural_hash(minimal_composition) == structural_hash(clone)

    def test_absent_differs_from_empty(self) -> None:
        assert Instance("CodeableConcept") != Instance("CodeableConcept", {"coding": []})

    def test_list_order_significant(self) -> None:
        a = InstanceBuilder.coding(None, "a")
        b = InstanceBuilder.coding(None, "b")
        assert InstanceBuilder.codeable_concept(a, b) != InstanceBuilder.codeable_concept(b, a)

    def test_extras_included(self) -> None:
        plain = Instance("Coding", {"code": "a"})
        extended = Instance("Coding", {"code": "a"}, extras={"id": "c1"})
        assert plain != extended
        assert structural_hash(plain) != structural_hash(extended)

    def test_type_name_included(self) -> None:
        assert Instance("Period", {"start": "2024"}) != Instance("Meta", {"start": "2024"})

    def test_numbers_compare_by_value(self) -> None:
        a = Instance("Quantity", {"value": 30})
        b = Instance("Quantity", {"value": 30.0})
        assert a == b
        assert structural_hash(a) == structural_hash(b)
        assert Instance("Quantity", {"value": True}) != Instance("Quantity", {"value": 1})

    def test_opaque_dict_distinct_from_number(self) -> None:
        tagged = Instance("Coding", extras={"x": {"@num": "1"}})
        number = Instance("Coding", extras={"x": 1})
        assert tagged != number
        assert structural_hash(tagged) != structural_hash(number)

    def test_hash_is_sha256_hex(self, engine: ModelEngine, minimal_composition: Instance) -> None:
        digest = engine.hash(minimal_composition)
        assert len(digest) == 64
        int(digest, 16)


# ===========================================================================
# Builder Tests
# ===========================================================================


class TestInstanceBuilder:
    """Tests for the fluent InstanceBuilder."""

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(KeyError):
            InstanceBuilder.composition().set("colour", "blue")

    def test_choice_requires_choice_method(self) -> None:
        with pytest.raises(KeyError, match="choice"):
            InstanceBuilder.medication_request().set("medication", "aspirin")

    def test_choice_exclusive(self) -> None:
        inst = (
            InstanceBuilder.medication_request()
            .choice("reported", "boolean", True)
            .choice("reported", "Reference", InstanceBuilder.reference("Patient/1"))
            .build()
        )
        assert "reportedBoolean" not in inst
        assert inst["reportedReference"]["reference"] == "Patient/1"

    def test_build_returns_copy(self) -> None:
        builder = InstanceBuilder.composition().set("title", "A")
        first = builder.build()
        first.set("title", "B")
        assert builder.build()["title"] == "A"

    def test_nested_builders_resolved(self) -> None:
        inst = InstanceBuilder.section().add("section", InstanceBuilder.section().set("title", "x")).build()
        assert isinstance(inst["section"][0], Instance)

    def test_extra(self) -> None:
        inst = InstanceBuilder.composition().extra("text", {"status": "generated"}).build()
        assert inst.extras == {"text": {"status": "generated"}}

    def test_custom_registry(self, widget_engine: ModelEngine) -> None:
        inst = InstanceBuilder.for_type("Widget", widget_engine.registry).set("status", "on").build()
        assert widget_engine.validate(inst).passed


class TestTypeSpecBuilder:
    """Tests for declaring TypeSpecs in code."""

    @pytest.fixture
    def observation_engine(self) -> ModelEngine:
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
        registry = load_schema(bundled_document(), freeze=False)
        registry.register(observation)
        return ModelEngine(registry)

    def test_paths_and_kinds(self, observation_engine: ModelEngine) -> None:
        spec = observation_engine.registry.lookup("Observation")
        assert spec.is_resource
        assert not spec.extensible
        assert spec.field("status").binding.strength == BindingStrength.REQUIRED
        assert spec.field("value").path == "Observation.value[x]"
        assert spec.field("subject").target_profiles == ("http://hl7.org/fhir/StructureDefinition/Patient",)

    def test_validates_like_loaded_schema(self, observation_engine: ModelEngine) -> None:
        inst = Instance("Observation", {
            "status": "bogus",
            "subject": InstanceBuilder.reference("Group/1"),
            "valueString": "positive",
        })
        kinds = [i.kind for i in observation_engine.validate(inst).issues]
        assert kinds == [IssueKind.UNBOUND_CODE, IssueKind.REFERENCE_TARGET]

    def test_backbone_name(self) -> None:
        spec = TypeSpecBuilder.backbone("Observation", "Component").primitive("code", "code").build()
        assert spec.name == "Observation::Component"
        assert spec.field("code").path == "Component.code"

    def test_explicit_binding(self) -> None:
        spec = (
            TypeSpecBuilder.datatype("Tag")
            .primitive("code", "code", binding=Binding(strength=BindingStrength.EXAMPLE), valid_codes={"s": ["a"]})
            .build()
        )
        assert not spec.field("code").binding.enforced


# ===========================================================================
# Engine & Settings Tests
# ===========================================================================


class TestModelEngine:
    """Tests for the ModelEngine facade and EngineSettings."""

    def test_settings_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FHIR_ENGINE_UNKNOWN_FIELDS", "strict")
        monkeypatch.setenv("FHIR_ENGINE_DEFAULT_FORMAT", "xml")
        settings = EngineSettings()
        assert settings.unknown_fields == "strict"
        assert settings.default_format == "xml"
        assert ModelEngine(settings=settings).reader.strict

    def test_default_format_setting(self, minimal_composition: Instance) -> None:
        engine = ModelEngine(settings=EngineSettings(default_format="xml"))
        xml = engine.serialize(minimal_composition)
        assert xml.startswith("<Composition")
        assert engine.deserialize(xml) == minimal_composition

    def test_schema_path_setting(self, tmp_path: Path) -> None:
        schema = tmp_path / "widget.json"
        schema.write_text(json.dumps(WIDGET_SCHEMA), encoding="utf-8")
        engine = ModelEngine(settings=EngineSettings(schema_path=schema))
        assert "Widget" in engine.registry
        assert "Composition" in engine.registry

    def test_choice_passthrough(self, engine: ModelEngine, medication_request: Instance) -> None:
        inst = medication_request.copy()
        engine.set_choice(inst, "medication", "Reference", InstanceBuilder.reference("Medication/1"))
        choice = engine.get_choice(inst, "medication")
        assert choice.variant == "Reference"
        assert "medicationCodeableConcept" not in inst

    def test_from_schema_without_core(self) -> None:
        doc = {
            "primitives": {"string": {"type": "string"}},
            "types": {"Label": {"metadata": {"text": {"type": "string", "min": 1}}}},
        }
        engine = ModelEngine.from_schema(doc, include_core=False)
        assert engine.registry.type_names() == ["Label"]
        assert engine.registry.lookup("Label").field("text").path == "Label.text"


# ===========================================================================
# CLI Tests
# ===========================================================================


class TestCli:
    """Tests for the fhir-engine command-line interface."""

    @pytest.fixture(autouse=True)
    def wide_console(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cli_main.console, "width", 200)

    @pytest.fixture
    def runner(self) -> CliRunner:
        return CliRunner()

    @pytest.fixture
    def composition_file(self, tmp_path: Path, engine: ModelEngine, minimal_composition: Instance) -> Path:
        path = tmp_path / "composition.json"
        path.write_text(engine.serialize(minimal_composition), encoding="utf-8")
        return path

    def test_validate_valid(self, runner: CliRunner, composition_file: Path) -> None:
        result = runner.invoke(cli_main.cli, ["validate", str(composition_file)])
        assert result.exit_code == 0
        assert "VALID" in result.output

    def test_validate_invalid_json_output(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "request.json"
        path.write_text(json.dumps({"resourceType": "MedicationRequest", "intent": "order"}), encoding="utf-8")
        result = runner.invoke(cli_main.cli, ["validate", str(path), "--json-output"])
        assert result.exit_code == 1
        output = json.loads(result.output)
        assert output["status"] == "Invalid"
        assert "MedicationRequest.status" in [i["path"] for i in output["issues"]]

    def test_validate_malformed(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        result = runner.invoke(cli_main.cli, ["validate", str(path)])
        assert result.exit_code == 2

    def test_validate_strict_with_schema(self, runner: CliRunner, tmp_path: Path) -> None:
        schema = tmp_path / "widget-schema.json"
        schema.write_text(json.dumps(WIDGET_SCHEMA), encoding="utf-8")
        doc = tmp_path / "widget.json"
        doc.write_text(json.dumps({"resourceType": "Widget", "status": "on", "colour": "blue"}), encoding="utf-8")

        lenient = runner.invoke(cli_main.cli, ["validate", str(doc), "--schema", str(schema)])
        strict = runner.invoke(cli_main.cli, ["validate", str(doc), "--schema", str(schema), "--strict"])
        assert lenient.exit_code == 0
        assert strict.exit_code == 2

    def test_convert_to_xml(self, runner: CliRunner, composition_file: Path) -> None:
        result = runner.invoke(cli_main.cli, ["convert", str(composition_file), "--to", "xml"])
        assert result.exit_code == 0
        assert "<Composition" in result.output

    def test_convert_to_file(
        self,
        runner: CliRunner,
        composition_file: Path,
        tmp_path: Path,
        engine: ModelEngine,
        minimal_composition: Instance,
    ) -> None:
        out = tmp_path / "composition.xml"
        result = runner.invoke(cli_main.cli, ["convert", str(composition_file), "--to", "xml", "-o", str(out)])
        assert result.exit_code == 0
        assert engine.deserialize(out.read_text(encoding="utf-8"), fmt="xml") == minimal_composition

    def test_types(self, runner: CliRunner) -> None:
        result = runner.invoke(cli_main.cli, ["types"])
        assert result.exit_code == 0
        assert "Composition::Section" in result.output
        assert "Coding" in result.output

    def test_types_resources_only(self, runner: CliRunner) -> None:
        result = runner.invoke(cli_main.cli, ["types", "--resources"])
        assert "MedicationRequest" in result.output
        assert "Coding" not in result.output

    def test_inspect(self, runner: CliRunner) -> None:
        result = runner.invoke(cli_main.cli, ["inspect", "MedicationRequest"])
        assert result.exit_code == 0
        assert "medication[x]" in result.output
        assert "CodeableConcept | Reference" in result.output

    def test_inspect_unknown_type(self, runner: CliRunner) -> None:
        result = runner.invoke(cli_main.cli, ["inspect", "Patient"])
        assert result.exit_code == 2

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli_main.cli, ["version"])
        assert result.exit_code == 0
        assert "fhir-engine" in result.output
