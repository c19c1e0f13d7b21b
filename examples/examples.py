"""
Examples for fhir-engine
========================
Three complete examples of schema-driven FHIR handling in clinical scenarios.

Run:
    python examples/examples.py
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fhir_engine import (
    ChoiceConflictError,
    Instance,
    InstanceBuilder,
    ModelEngine,
    TypeSpecBuilder,
    WireFormat,
    load_schema,
)
from fhir_engine.registry.schema_registry import bundled_document


# ---------------------------------------------------------------------------
# Example 1: Discharge summary Composition
# ---------------------------------------------------------------------------


def example_discharge_summary() -> None:
    """
    Example 1: Building, validating and round-tripping a Composition.

    A discharge summary with nested sections is built fluently, validated,
    then written to FHIR XML and read back without loss.
    """
    print("\n" + "="*60)
    print("EXAMPLE 1: Discharge Summary Composition")
    print("="*60)

    engine = ModelEngine()

    medications = (
        InstanceBuilder.section()
        .set("title", "Medications on discharge")
        .set("mode", "snapshot")
    )
    summary = (
        InstanceBuilder.composition()
        .set("status", "final")
        .set("type", InstanceBuilder.codeable_concept(
            InstanceBuilder.coding("http://loinc.org", "18842-5", "Discharge summary"),
        ))
        .set("subject", InstanceBuilder.reference("Patient/example", "Jane Doe"))
        .set("date", "2024-03-02T16:00:00Z")
        .add("author", InstanceBuilder.reference("Practitioner/dr-ng"))
        .set("title", "Discharge Summary")
        .set("confidentiality", "N")
        .add("section", InstanceBuilder.section().set("title", "Hospital course").add("section", medications))
        .extra("extension", [{"url": "http://example.org/fhir/ward", "valueString": "4B"}])
        .build()
    )

    result = engine.validate(summary)
    print(f"  Composition: {summary}")
    print(f"  Validation:  {result}")

    xml = engine.serialize(summary, fmt=WireFormat.XML, pretty=True)
    back = engine.deserialize(xml, fmt=WireFormat.XML)
    print(f"  XML size:    {len(xml)} chars")
    print(f"  Round trip equal: {engine.equals(summary, back)}")
    print(f"  Structural hash:  {engine.hash(back)[:16]}...")

    broken = summary.copy()
    broken["section"][0]["section"][0].set("mode", "draft")
    for issue in engine.validate(broken).issues:
        print(f"  [{issue.kind.value}] {issue.path} @ {issue.location}")
    print("  ✓ Example 1 complete")


# ---------------------------------------------------------------------------
# Example 2: MedicationRequest choice fields
# ---------------------------------------------------------------------------


def example_medication_choice() -> None:
    """
    Example 2: Working with ``medication[x]``.

    The same request may name the drug by code or by reference, never both.
    Setting one variant clears the other; data that arrives with both is
    reported by the validator and refused by ``get_choice``.
    """
    print("\n" + "="*60)
    print("EXAMPLE 2: MedicationRequest medication[x]")
    print("="*60)

    engine = ModelEngine()
    request = engine.deserialize({
        "resourceType": "MedicationRequest",
        "status": "active",
        "intent": "order",
        "medicationCodeableConcept": {
            "coding": [{
                "system": "http://www.nlm.nih.gov/research/umls/rxnorm",
                "code": "1049502",
                "display": "Acetaminophen 325 MG Oral Tablet",
            }],
        },
        "subject": {"reference": "Patient/example"},
        "dispenseRequest": {"numberOfRepeatsAllowed": 2},
    })

    choice = engine.get_choice(request, "medication")
    print(f"  Variant: {choice.variant}")
    print(f"  Validation: {engine.validate(request)}")

    engine.set_choice(request, "medication", "Reference", InstanceBuilder.reference("Medication/apap-325"))
    print(f"  After set_choice: {sorted(k for k in request.keys() if k.startswith('medication'))}")

    request.set("medicationCodeableConcept", InstanceBuilder.codeable_concept(text="paracetamol"))
    try:
        engine.get_choice(request, "medication")
    except ChoiceConflictError as e:
        print(f"  Conflict: {e}")
    for issue in engine.validate(request).issues:
        print(f"  [{issue.kind.value}] {issue.path}: {issue.message}")
    print("  ✓ Example 2 complete")


# ---------------------------------------------------------------------------
# Example 3: Site-specific profile
# ---------------------------------------------------------------------------


def example_custom_profile() -> None:
    """
    Example 3: Registering a type declared in code.

    A closed ``WardRound`` resource is layered over the bundled core types.
    Unknown keys are rejected in strict mode because the type is not
    extensible.
    """
    print("\n" + "="*60)
    print("EXAMPLE 3: Site Profile (WardRound)")
    print("="*60)

    ward_round = (
        TypeSpecBuilder.resource("WardRound")
        .primitive("status", "code", min=1, valid_codes={
            "http://example.org/fhir/ward-round-status": ["planned", "done"],
        })
        .composite("subject", "Reference", min=1, targets=["Patient"])
        .composite("participant", "Reference", max=None, targets=["Practitioner"])
        .choice("occurrence", "dateTime", "Period")
        .closed()
        .build()
    )
    registry = load_schema(bundled_document(), freeze=False)
    registry.register(ward_round)
    engine = ModelEngine(registry)

    round_ = Instance("WardRound", {
        "status": "done",
        "subject": InstanceBuilder.reference("Patient/example"),
        "participant": [InstanceBuilder.reference("Patient/visitor")],
        "occurrenceDateTime": "2024-03-01T08:30:00Z",
    }, extras={"notes": "quiet night"})

    result = engine.validate(round_)
    print(f"  Registry:   {registry}")
    print(f"  Validation: {result}")
    for kind, issues in result.by_kind().items():
        print(f"    {kind.value}: {[i.path for i in issues]}")
    print(f"  JSON: {engine.serialize(round_)}")
    print("  ✓ Example 3 complete")


# ---------------------------------------------------------------------------
# Run all examples
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    example_discharge_summary()
    example_medication_choice()
    example_custom_profile()

    print("\n" + "="*60)
    print("All examples completed successfully.")
    print("="*60 + "\n")
