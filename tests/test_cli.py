"""Tests for the intakeflow command line."""

import json
import sys
from pathlib import Path

import pytest

from intakeflow.cli.main import EXAMPLE_FLOW, init_project, main, validate_flows
from tests.conftest import TEST_FLOW

EXAMPLE_FLOWS_DIR = Path(__file__).parent.parent / "examples" / "flows"


class TestInitProject:
    """Tests for init_project."""

    def test_creates_project_layout(self, tmp_path):
        init_project(str(tmp_path))

        assert (tmp_path / "flows").is_dir()
        assert (tmp_path / "data").is_dir()
        assert "claim_ttl_minutes = 30" in (tmp_path / "settings.toml").read_text()
        assert json.loads((tmp_path / "flows" / "example.json").read_text()) == EXAMPLE_FLOW
        assert (tmp_path / ".env.example").exists()

    def test_keeps_existing_settings(self, tmp_path):
        (tmp_path / "settings.toml").write_text("port = 9000\n")
        init_project(str(tmp_path))
        assert (tmp_path / "settings.toml").read_text() == "port = 9000\n"

    def test_generated_flow_is_valid(self, tmp_path):
        init_project(str(tmp_path))
        assert validate_flows(str(tmp_path / "flows"))


class TestValidateFlows:
    """Tests for validate_flows."""

    def test_valid_directory(self, tmp_path):
        (tmp_path / "test.json").write_text(json.dumps(TEST_FLOW))
        assert validate_flows(str(tmp_path))

    def test_single_file(self, tmp_path):
        path = tmp_path / "test.json"
        path.write_text(json.dumps(TEST_FLOW))
        assert validate_flows(str(path))

    def test_broken_file(self, tmp_path):
        (tmp_path / "test.json").write_text(json.dumps(TEST_FLOW))
        (tmp_path / "broken.json").write_text("{")
        assert not validate_flows(str(tmp_path))

    def test_conflicting_versions(self, tmp_path):
        changed = {**TEST_FLOW, "title": "Changed title"}
        (tmp_path / "a.json").write_text(json.dumps(TEST_FLOW))
        (tmp_path / "b.json").write_text(json.dumps(changed))
        assert not validate_flows(str(tmp_path))

    def test_empty_directory(self, tmp_path):
        assert not validate_flows(str(tmp_path))

    def test_shipped_example_flows(self):
        assert validate_flows(str(EXAMPLE_FLOWS_DIR))


class TestMain:
    """Tests for argument handling in main."""

    def test_validate_failure_exits_nonzero(self, tmp_path, monkeypatch):
        (tmp_path / "broken.json").write_text("[]")
        monkeypatch.setattr(sys, "argv", ["intakeflow", "flows", "validate", str(tmp_path)])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1

    def test_init_command(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["intakeflow", "init", str(tmp_path / "project")])
        main()
        assert (tmp_path / "project" / "settings.toml").exists()

    def test_no_command_prints_help(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["intakeflow"])
        with pytest.raises(SystemExit):
            main()
        assert "usage: intakeflow" in capsys.readouterr().out
