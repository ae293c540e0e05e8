"""Tests for the `branch-context` CLI."""

from __future__ import annotations

import json
import subprocess
import sys

import pytest
import yaml

from conftest import build_session


@pytest.fixture()
def tmp_cwd(tmp_path, monkeypatch):
    """Run test in a clean temporary directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture()
def session_file(tmp_cwd):
    session = build_session(
        [
            ("root", "system", "", None),
            ("u1", "user", "hello", "root"),
            ("a1", "assistant", "first reply", "u1"),
            ("a2", "assistant", "second reply", "u1"),
        ],
        active="a1",
    )
    path = tmp_cwd / "session.json"
    path.write_text(json.dumps(session.to_dict()))
    return path


def _run_cli(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "branch_context.cli.main", *args],
        capture_output=True,
        text=True,
    )


def test_no_command_prints_help(tmp_cwd):
    result = _run_cli()
    assert result.returncode != 0
    assert "usage" in result.stdout.lower()


def test_config_validate_defaults(tmp_cwd):
    result = _run_cli("config", "validate")
    assert result.returncode == 0
    assert "Config is valid." in result.stdout


def test_config_validate_reports_errors(tmp_cwd):
    (tmp_cwd / "branch-context.yaml").write_text("token_counter: magic\n")
    result = _run_cli("config", "validate")
    assert result.returncode == 1
    assert "token_counter" in result.stdout


def test_config_load_error(tmp_cwd):
    result = _run_cli("--config", "missing.yaml", "config", "validate")
    assert result.returncode == 1
    assert "Error loading config" in result.stderr


def test_navigate_writes_session(session_file):
    result = _run_cli("navigate", str(session_file), "next", "--node", "a1", "--write")
    assert result.returncode == 0
    assert "Active leaf: a2" in result.stdout
    assert "Branch a2: 2/2" in result.stdout
    saved = json.loads(session_file.read_text())
    assert saved["active_leaf_id"] == "a2"
    assert saved["nodes"]["u1"]["last_selected_child_id"] == "a2"


def test_navigate_unknown_node(session_file):
    result = _run_cli("navigate", str(session_file), "prev", "--node", "nope")
    assert result.returncode == 1


def test_path(session_file):
    result = _run_cli("path", str(session_file))
    assert result.returncode == 0
    lines = result.stdout.strip().splitlines()
    assert len(lines) == 3
    assert "[1/2] first reply" in lines[-1]


def test_assemble_json(session_file, tmp_cwd):
    (tmp_cwd / "branch-context.yaml").write_text(yaml.safe_dump({
        "agents": {
            "writer": {
                "preset_messages": [
                    {"id": "sys", "content": "Be brief."},
                    {"type": "chat_history"},
                ],
                "regex": [{"rules": [{"regex": "reply", "replacement": "answer"}]}],
            },
        },
    }))
    result = _run_cli("assemble", str(session_file), "--agent", "writer", "--json")
    assert result.returncode == 0, result.stderr
    data = json.loads(result.stdout)
    assert [m["content"] for m in data["messages"]] == ["Be brief.", "hello", "first answer"]
    assert any(entry["processor_id"] == "regex" for entry in data["logs"])


def test_assemble_unknown_agent(session_file):
    result = _run_cli("assemble", str(session_file), "--agent", "ghost")
    assert result.returncode == 1
    assert "Unknown agent" in result.stderr


def test_import_sillytavern(tmp_cwd):
    (tmp_cwd / "scripts.json").write_text(json.dumps([
        {"scriptName": "Strip OOC", "findRegex": "/\\(OOC:.*?\\)/g", "replaceString": "", "placement": [2]},
    ]))
    result = _run_cli("import-st", "scripts.json")
    assert result.returncode == 0
    data = yaml.safe_load(result.stdout)
    preset = data["regex"]["presets"][0]
    assert preset["name"] == "Strip OOC"
    assert preset["rules"][0]["apply_to"] == {"render": False, "request": True}
