"""
fhir-engine CLI
================
Command-line interface for the fhir-engine library.

Commands:
    validate    Validate a FHIR JSON or XML document against its TypeSpec
    convert     Convert a document between FHIR JSON and FHIR XML
    types       List the types known to the registry
    inspect     Show the field table of one type
    version     Show version information

Usage::

    fhir-engine validate composition.json
    fhir-engine validate request.xml --type MedicationRequest --strict
    fhir-engine convert composition.json --to xml -o composition.xml
    fhir-engine inspect Composition::Section
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box
from rich.markup import escape

from .. import __version__
from ..engine import ModelEngine
from ..errors import EngineError
from ..models.schema import FieldKind
from ..settings import EngineSettings
from ..validator.instance_validator import ValidationResult

console = Console()

FORMATS = ["json", "xml"]


@click.group()
@click.version_option(version=__version__, prog_name="fhir-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override FHIR_ENGINE_LOG_LEVEL",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """
    fhir-engine – schema-driven FHIR R4 validation and (de)serialization.

    Resource definitions are data: the bundled FHIR R4 core subset can be
    extended with --schema documents.
    """
    settings = EngineSettings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


def _engine(settings: EngineSettings, schemas: tuple[Path, ...], strict: bool = False) -> ModelEngine:
    if strict:
        settings = settings.model_copy(update={"unknown_fields": "strict"})
    if schemas:
        return ModelEngine.from_schema(*schemas, settings=settings)
    return ModelEngine(settings=settings)


def _detect_format(path: Path, explicit: str | None, settings: EngineSettings) -> str:
    if explicit:
        return explicit
    suffix = path.suffix.lower().lstrip(".")
    return suffix if suffix in FORMATS else settings.default_format


def _fail(message: str) -> None:
    console.print(f"[red]✗ {escape(message)}[/red]")
    sys.exit(2)


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--type", "type_name", default=None, help="Type name (default: resourceType / root element)")
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None, help="Wire format (default: file suffix)")
@click.option("--schema", "schemas", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Extra schema document merged over the bundled types")
@click.option("--strict", is_flag=True, help="Reject unknown elements on non-extensible types")
@click.option("--json-output", is_flag=True, help="Output results as JSON")
@click.pass_obj
def validate(
    settings: EngineSettings,
    path: Path,
    type_name: str | None,
    fmt: str | None,
    schemas: tuple[Path, ...],
    strict: bool,
    json_output: bool,
) -> None:
    """Validate a FHIR document. Exits with code 1 if any issue is found."""
    try:
        engine = _engine(settings, schemas, strict)
        instance = engine.deserialize(
            path.read_bytes(), type_name, _detect_format(path, fmt, settings)
        )
        result = engine.validate(instance, type_name)
    except EngineError as e:
        _fail(str(e))
        return

    if json_output:
        output = {
            "file": str(path),
            "type": result.type_name,
            "status": result.status,
            "issues": [
                {
                    "kind": i.kind.value,
                    "path": i.path,
                    "location": i.location,
                    "message": i.message,
                    "expected": i.expected,
                    "actual": i.actual,
                }
                for i in result.issues
            ],
        }
        click.echo(json.dumps(output, indent=2, default=str))
    else:
        _print_result(path, result)

    sys.exit(0 if result.passed else 1)


def _print_result(path: Path, result: ValidationResult) -> None:
    console.print()
    status_str = (
        "[bold green]VALID[/bold green]" if result.passed else "[bold red]INVALID[/bold red]"
    )
    console.print(Panel(
        f"[bold]{path.name}[/bold]\n"
        f"Type: {result.type_name}  |  Status: {status_str}  |  Issues: {len(result.issues)}",
        title="fhir-engine Validation",
        border_style="blue",
    ))

    if result.issues:
        t = Table(box=box.SIMPLE, title="Issues")
        t.add_column("Kind")
        t.add_column("Location")
        t.add_column("Message")
        for issue in result.issues:
            t.add_row(
                f"[red]{issue.kind.value}[/red]",
                escape(issue.location or issue.path),
                escape(issue.message),
            )
        console.print(t)
    console.print()


# ---------------------------------------------------------------------------
# convert
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--to", "target", type=click.Choice(FORMATS), required=True, help="Output wire format")
@click.option("--type", "type_name", default=None, help="Type name (default: resourceType / root element)")
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None, help="Input wire format")
@click.option("--schema", "schemas", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Output path (default: stdout)")
@click.pass_obj
def convert(
    settings: EngineSettings,
    path: Path,
    target: str,
    type_name: str | None,
    fmt: str | None,
    schemas: tuple[Path, ...],
    output: Path | None,
) -> None:
    """Convert a document between FHIR JSON and FHIR XML."""
    try:
        engine = _engine(settings, schemas)
        instance = engine.deserialize(
            path.read_bytes(), type_name, _detect_format(path, fmt, settings)
        )
        text = engine.serialize(instance, type_name, target, pretty=True)
    except EngineError as e:
        _fail(str(e))
        return

    if output is None:
        click.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    console.print(f"[green]✓[/green] {instance.type_name} written to [bold]{output}[/bold] ({target})")


# ---------------------------------------------------------------------------
# types / inspect
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--resources", "resources_only", is_flag=True, help="Only list resource types")
@click.option("--schema", "schemas", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def types(settings: EngineSettings, resources_only: bool, schemas: tuple[Path, ...]) -> None:
    """List the types known to the registry."""
    try:
        engine = _engine(settings, schemas)
    except EngineError as e:
        _fail(str(e))
        return

    t = Table(title="Registered Types", box=box.ROUNDED)
    t.add_column("Type")
    t.add_column("Kind")
    t.add_column("Fields", justify="right")
    t.add_column("Extensible")
    for spec in engine.registry.types.values():
        if resources_only and not spec.is_resource:
            continue
        t.add_row(
            f"[cyan]{spec.name}[/cyan]",
            spec.kind.value,
            str(len(spec.fields)),
            "✓" if spec.extensible else "—",
        )
    console.print(t)


@cli.command()
@click.argument("type_name")
@click.option("--schema", "schemas", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def inspect(settings: EngineSettings, type_name: str, schemas: tuple[Path, ...]) -> None:
    """Show the field table of one type."""
    try:
        type_spec = _engine(settings, schemas).registry.lookup(type_name)
    except EngineError as e:
        _fail(str(e))
        return

    t = Table(title=f"{type_spec.name} ({type_spec.kind.value})", box=box.ROUNDED)
    t.add_column("Key")
    t.add_column("Card.")
    t.add_column("Type")
    t.add_column("Binding")
    t.add_column("Targets")
    for spec in type_spec.fields:
        key = f"{spec.name}[x]" if spec.kind == FieldKind.CHOICE else spec.name
        binding = (
            f"{spec.binding.strength.value} {spec.binding.uri or ''}".strip()
            if spec.binding else "—"
        )
        t.add_row(
            escape(key),
            spec.cardinality(),
            " | ".join(spec.types),
            binding,
            ", ".join(sorted(spec.target_types())) or "—",
        )
    console.print(t)


# ---------------------------------------------------------------------------
# version info
# ---------------------------------------------------------------------------


@cli.command("version")
def show_version() -> None:
    """Show detailed version information."""
    console.print(Panel(
        f"[bold cyan]fhir-engine[/bold cyan] v{__version__}\n\n"
        "Schema-driven FHIR R4 validation and (de)serialization\n"
        "FHIR version: 4.0.1 (core subset)\n"
        "Formats: FHIR JSON, FHIR XML",
        title="fhir-engine",
        border_style="cyan",
    ))
