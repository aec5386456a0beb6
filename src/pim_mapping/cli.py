"""CLI for the PIM mapping engine."""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer

from .logging_config import configure_logging
from .orchestrator import (
    run_export_pipeline,
    run_import_pipeline,
    run_suggestion_pipeline,
    run_validation_pipeline,
)
from .validation import build_error_envelope, is_envelope

__version__ = "0.1.0"

app = typer.Typer(help="PIM category and attribute mapping CLI.")


@app.callback()
def _setup() -> None:
    configure_logging()


@app.command()
def version() -> None:
    """Show version output."""
    typer.echo(f"pim-mapping {__version__}")


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _dump_json(path: Path, payload: Any) -> None:
    path.write_text(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True),
        encoding="utf-8",
    )


def _write_artifact(path: Path, payload: Any) -> None:
    if path.suffix == ".txt":
        path.write_text(payload, encoding="utf-8")
    elif path.suffix == ".csv":
        with path.open("w", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerows(payload)
    else:
        _dump_json(path, payload)


def _fail(envelope: dict[str, Any]) -> NoReturn:
    typer.echo(json.dumps(envelope, sort_keys=True, separators=(",", ":"), ensure_ascii=True))
    raise typer.Exit(code=2)


def _load_inputs(**paths: Optional[Path]) -> dict[str, Any]:
    try:
        return {name: _load_json(path) if path is not None else None for name, path in paths.items()}
    except (OSError, ValueError) as exc:
        _fail(build_error_envelope("Validation", f"input-parse-error: {exc}", {}))


def _emit(result: dict[str, Any], output_dir: Path) -> None:
    if is_envelope(result):
        _fail(result)
    output_dir.mkdir(parents=True, exist_ok=True)
    artifacts = result["artifacts"]
    for filename, payload in artifacts.items():
        _write_artifact(output_dir / filename, payload)
    typer.echo(f"Wrote {len(artifacts)} artifacts to {output_dir}")


@app.command("import-attributes")
def import_attributes(
    attributes: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Attribute payload JSON (master, target, mappings)"),
    document: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Mapping document JSON to import"),
    attribute_type: str = typer.Option(..., "--type", help="variants | filtering_parameters | flags"),
    master_shop_id: int = typer.Option(..., help="Master shop id"),
    target_shop_id: int = typer.Option(..., help="Target shop id"),
    output_dir: Path = typer.Option(..., file_okay=False, dir_okay=True, help="Output directory for artifacts"),
) -> None:
    """Import a mapping document row by row and write the resulting mappings."""
    inputs = _load_inputs(attributes=attributes, document=document)
    result = run_import_pipeline(
        inputs["attributes"], inputs["document"], attribute_type, master_shop_id, target_shop_id
    )
    _emit(result, output_dir)
    typer.echo(result["artifacts"]["import-result.json"]["message"])


@app.command("apply-suggestions")
def apply_suggestions(
    suggestions: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="AI response JSON"),
    master_shop_id: int = typer.Option(..., help="Master shop id"),
    target_shop_id: int = typer.Option(..., help="Target shop id"),
    output_dir: Path = typer.Option(..., file_okay=False, dir_okay=True, help="Output directory for artifacts"),
    tree: Optional[Path] = typer.Option(None, exists=True, file_okay=True, dir_okay=False, help="Category tree payload JSON"),
    attributes: Optional[Path] = typer.Option(None, exists=True, file_okay=True, dir_okay=False, help="Attribute payload JSON"),
    attribute_type: Optional[str] = typer.Option(None, "--type", help="Attribute type, with --attributes"),
    threshold: Optional[float] = typer.Option(None, min=0.0, max=1.0, help="Minimum similarity (default from settings)"),
) -> None:
    """Apply every AI suggestion at or above the threshold, sequentially."""
    inputs = _load_inputs(suggestions=suggestions, tree=tree, attributes=attributes)
    result = run_suggestion_pipeline(
        inputs["suggestions"],
        tree_payload=inputs["tree"],
        attribute_payload=inputs["attributes"],
        attribute_type=attribute_type,
        threshold=threshold,
        master_shop_id=master_shop_id,
        target_shop_id=target_shop_id,
    )
    _emit(result, output_dir)


@app.command("validate-defaults")
def validate_defaults(
    tree: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Category tree payload JSON"),
    products: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Product snapshot JSON array"),
    output_dir: Path = typer.Option(..., file_okay=False, dir_okay=True, help="Output directory for artifacts"),
    page: int = typer.Option(1, min=1),
    per_page: Optional[int] = typer.Option(None, min=1),
    search: Optional[str] = typer.Option(None, help="Filter by SKU or variant code"),
    all_pages: bool = typer.Option(False, "--all-pages", help="Return every issue instead of one page"),
) -> None:
    """Report products whose target default category drifted from the mapping."""
    inputs = _load_inputs(tree=tree, products=products)
    result = run_validation_pipeline(
        inputs["tree"], inputs["products"], page=page, per_page=per_page, search=search, all_pages=all_pages
    )
    _emit(result, output_dir)


@app.command("export-prompt")
def export_prompt(
    output_dir: Path = typer.Option(..., file_okay=False, dir_okay=True, help="Output directory for artifacts"),
    tree: Optional[Path] = typer.Option(None, exists=True, file_okay=True, dir_okay=False, help="Category tree payload JSON"),
    attributes: Optional[Path] = typer.Option(None, exists=True, file_okay=True, dir_okay=False, help="Attribute payload JSON"),
    attribute_type: Optional[str] = typer.Option(None, "--type", help="Attribute type, with --attributes"),
    master_shop: str = typer.Option("master", help="Master shop display name"),
    target_shop: str = typer.Option("target", help="Target shop display name"),
    instructions: str = typer.Option("", help="Extra instructions appended to the category prompt"),
) -> None:
    """Write an AI prompt and its JSON sources for round-tripping."""
    inputs = _load_inputs(tree=tree, attributes=attributes)
    result = run_export_pipeline(
        tree_payload=inputs["tree"],
        attribute_payload=inputs["attributes"],
        attribute_type=attribute_type,
        master_shop=master_shop,
        target_shop=target_shop,
        instructions=instructions,
    )
    _emit(result, output_dir)


def main() -> None:
    """Entrypoint for console scripts."""
    app()


if __name__ == "__main__":
    main()
