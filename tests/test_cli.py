"""Tests for the motorbox CLI."""

import json
import sys

import pytest

from motorbox.__main__ import _build_parser, main


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("MOTORBOX_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    return tmp_path / "data"


def _run_cli(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["motorbox", *argv])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code


class TestParser:
    def test_skills_action_requires_name(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["skills", "approve"])

    def test_extract_requires_run_id(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["skills", "extract", "/ws"])

    def test_runs_status_choices(self):
        args = _build_parser().parse_args(["runs", "list", "--status", "running"])
        assert args.status == "running"


class TestCommands:
    def test_no_command_prints_help(self, monkeypatch, capsys):
        assert _run_cli(monkeypatch) == 1
        assert "usage" in capsys.readouterr().out

    def test_extract_then_approve(self, data_dir, tmp_path, monkeypatch, capsys, make_skill):
        workspace = tmp_path / "ws"
        make_skill(workspace / "skills", "weather")

        assert _run_cli(monkeypatch, "skills", "extract", str(workspace), "--run-id", "run-9") == 0
        assert json.loads(capsys.readouterr().out) == {"created": ["weather"], "updated": []}

        assert _run_cli(monkeypatch, "skills", "approve", "weather") == 0
        assert json.loads(capsys.readouterr().out)["trust"] == "approved"

        assert _run_cli(monkeypatch, "skills", "list") == 0
        assert json.loads(capsys.readouterr().out)["skills"] == ["weather"]

    def test_unknown_skill_exits_nonzero(self, data_dir, monkeypatch, capsys):
        assert _run_cli(monkeypatch, "skills", "read", "ghost") == 1
        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_runs_active_empty(self, data_dir, monkeypatch, capsys):
        assert _run_cli(monkeypatch, "runs", "active") == 0
        assert json.loads(capsys.readouterr().out) is None
        assert (data_dir / "motorbox.db").exists()

    def test_deps_install_malformed_policy(self, data_dir, tmp_path, monkeypatch, capsys):
        policy = tmp_path / "weather" / "policy.json"
        policy.parent.mkdir()
        policy.write_text("{not json")

        assert _run_cli(monkeypatch, "deps", "install", str(policy)) == 1
        assert "Error: cannot read policy file" in capsys.readouterr().err

    def test_deps_install_without_dependencies(self, data_dir, tmp_path, monkeypatch, capsys):
        policy = tmp_path / "weather" / "policy.json"
        policy.parent.mkdir()
        policy.write_text(json.dumps({"schemaVersion": 1}))

        assert _run_cli(monkeypatch, "deps", "install", str(policy)) == 0
        assert "No dependencies declared." in capsys.readouterr().out

    def test_missing_config_file(self, tmp_path, monkeypatch, capsys):
        assert _run_cli(monkeypatch, "--config", str(tmp_path / "nope.yaml"), "runs", "active") == 1
        assert "not found" in capsys.readouterr().err
