from __future__ import annotations

import csv
import json
import sys
from pathlib import Path

from typer.testing import CliRunner

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pim_mapping.cli import app  # noqa: E402


runner = CliRunner()


def _attributes() -> dict:
    return {
        "master": [{"key": "color", "label": "Color"}, {"key": "size", "label": "Size"}],
        "target": [{"key": "t1", "label": "Culoare"}, {"key": "t2", "label": "Marime"}],
        "mappings": [{"master_key": "color", "target_key": "t2"}],
    }


def _tree() -> dict:
    return {
        "canonical": [
            {"id": "c1", "guid": "g1", "name": "Garden", "mapping": {"status": "confirmed", "shop_category_node_id": "s1"}},
            {"id": "c2", "guid": "g2", "name": "Home"},
        ],
        "shop": [
            {"id": "s1", "remote_guid": "r1", "name": "Gradina"},
            {"id": "s2", "remote_guid": "r2", "name": "Casa"},
        ],
    }


def _write(tmp_path: Path, name: str, payload) -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_version_command() -> None:
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "pim-mapping 0.1.0" in result.stdout


def test_cli_import_attributes_writes_artifacts(tmp_path: Path) -> None:
    attributes = _write(tmp_path, "attributes.json", _attributes())
    document = _write(
        tmp_path,
        "document.json",
        {"type": "flags", "mappings": [{"master_key": "size", "target_key": "t2"}, {"master_key": "color", "target_key": "t9"}]},
    )
    out_dir = tmp_path / "out"

    result = runner.invoke(
        app,
        [
            "import-attributes",
            "--attributes",
            str(attributes),
            "--document",
            str(document),
            "--type",
            "flags",
            "--master-shop-id",
            "1",
            "--target-shop-id",
            "2",
            "--output-dir",
            str(out_dir),
        ],
    )

    assert result.exit_code == 0, result.stdout
    assert "Imported 1 mappings, skipped 1." in result.stdout
    report = json.loads((out_dir / "import-result.json").read_text(encoding="utf-8"))
    assert report["appliedCount"] == 1
    saved = json.loads((out_dir / "attribute-mappings.json").read_text(encoding="utf-8"))
    assert saved["mappings"] == [
        {"master_key": "color", "target_key": None, "values": []},
        {"master_key": "size", "target_key": "t2", "values": []},
    ]


def test_cli_returns_envelope_and_exit_code_2(tmp_path: Path) -> None:
    attributes = _write(tmp_path, "attributes.json", _attributes())
    document = _write(tmp_path, "document.json", {"rows": []})

    result = runner.invoke(
        app,
        [
            "import-attributes",
            "--attributes",
            str(attributes),
            "--document",
            str(document),
            "--type",
            "flags",
            "--master-shop-id",
            "1",
            "--target-shop-id",
            "2",
            "--output-dir",
            str(tmp_path / "out"),
        ],
    )

    assert result.exit_code == 2
    envelope = json.loads(result.stdout.strip().splitlines()[-1])
    assert envelope["error"] == "Validation"
    assert not (tmp_path / "out").exists()


def test_cli_reports_unparseable_input(tmp_path: Path) -> None:
    tree = tmp_path / "tree.json"
    tree.write_text("{not json", encoding="utf-8")
    products = _write(tmp_path, "products.json", [])

    result = runner.invoke(
        app,
        ["validate-defaults", "--tree", str(tree), "--products", str(products), "--output-dir", str(tmp_path / "out")],
    )

    assert result.exit_code == 2
    assert "input-parse-error" in result.stdout


def test_cli_apply_suggestions_for_categories(tmp_path: Path) -> None:
    tree = _write(tmp_path, "tree.json", _tree())
    suggestions = _write(tmp_path, "ai.json", {"mappings": [{"canonical_id": "c2", "target_id": "s2", "confidence": 0.8}]})
    out_dir = tmp_path / "out"

    result = runner.invoke(
        app,
        [
            "apply-suggestions",
            "--suggestions",
            str(suggestions),
            "--tree",
            str(tree),
            "--threshold",
            "0.75",
            "--master-shop-id",
            "1",
            "--target-shop-id",
            "2",
            "--output-dir",
            str(out_dir),
        ],
    )

    assert result.exit_code == 0, result.stdout
    report = json.loads((out_dir / "bulk-apply.json").read_text(encoding="utf-8"))
    assert report["applied"] == 1
    saved = json.loads((out_dir / "category-mappings.json").read_text(encoding="utf-8"))
    assert {row["canonical_id"] for row in saved["mappings"]} == {"c1", "c2"}


def test_cli_validate_defaults_writes_csv(tmp_path: Path) -> None:
    tree = _write(tmp_path, "tree.json", _tree())
    products = _write(
        tmp_path,
        "products.json",
        [{"product_id": "p1", "sku": "SKU-1", "master_default": {"guid": "g1"}, "target": {"default_category": {"guid": "r2"}}}],
    )
    out_dir = tmp_path / "out"

    result = runner.invoke(
        app,
        ["validate-defaults", "--tree", str(tree), "--products", str(products), "--output-dir", str(out_dir)],
    )

    assert result.exit_code == 0, result.stdout
    with (out_dir / "default-category-issues.csv").open(encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert rows[0][0] == "SKU"
    assert rows[1][0] == "SKU-1"
    assert rows[1][-1] == "Category does not match mapping"


def test_cli_export_prompt_writes_text(tmp_path: Path) -> None:
    tree = _write(tmp_path, "tree.json", _tree())
    out_dir = tmp_path / "out"

    result = runner.invoke(
        app,
        ["export-prompt", "--tree", str(tree), "--master-shop", "CZ", "--target-shop", "RO", "--output-dir", str(out_dir)],
    )

    assert result.exit_code == 0, result.stdout
    prompt = (out_dir / "ai-category-mapping.txt").read_text(encoding="utf-8")
    assert 'master shop "CZ"' in prompt
    sources = json.loads((out_dir / "ai-category-mapping.sources.json").read_text(encoding="utf-8"))
    assert [row["id"] for row in sources["canonical"]] == ["c1", "c2"]
