"""Tests for the foundry-local command line."""

import json

import pytest
import yaml
from click.testing import CliRunner

from cli.main import main
from foundry_local.cache import MARKER_FILE


@pytest.fixture
def config_file(tmp_path, file_server):
    catalog = tmp_path / "catalog.json"
    catalog.write_text(json.dumps(file_server.manifest))
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "catalog_url": str(catalog),
        "cache_dir": str(tmp_path / "models"),
        "state_dir": str(tmp_path / "state"),
        "service_command": [],
    }))
    return str(path)


def _invoke(config_file, *args, hardware="cpu"):
    return CliRunner().invoke(main, ["--config", config_file, "--hardware", hardware, *args])


def test_catalog_lists_aliases(config_file):
    result = _invoke(config_file, "catalog")
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "phi-4-mini"
    assert any(line.strip().startswith("* phi-4-mini-cpu") for line in lines)
    assert not any(line.strip().startswith("* phi-4-mini-cuda") for line in lines)


def test_catalog_json(config_file):
    result = _invoke(config_file, "catalog", "--json")
    assert result.exit_code == 0, result.output
    ids = [v["id"] for v in json.loads(result.output)]
    assert "qwen-0.5b-npu" in ids


def test_select(config_file):
    result = _invoke(config_file, "select", "qwen-0.5b", hardware="npu")
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "qwen-0.5b-npu"


def test_select_no_compatible_variant(config_file):
    result = _invoke(config_file, "select", "npu-only")
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_cache_list(config_file, tmp_path):
    entry = tmp_path / "models" / "qwen-0.5b-cpu"
    entry.mkdir(parents=True)
    (entry / MARKER_FILE).write_text(json.dumps({"id": "qwen-0.5b-cpu"}))

    result = _invoke(config_file, "cache", "list")
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "qwen-0.5b-cpu"


def test_status_without_service(config_file):
    result = _invoke(config_file, "status")
    assert result.exit_code == 1
    assert "no service_command" in result.output


def test_malformed_catalog_is_reported(config_file, tmp_path, file_server):
    doc = json.loads(json.dumps(file_server.manifest))
    doc["variants"][0]["hardware"] = 5
    (tmp_path / "catalog.json").write_text(json.dumps(doc))

    result = _invoke(config_file, "catalog")
    assert result.exit_code == 1
    assert "Error: Catalog unavailable" in result.output
