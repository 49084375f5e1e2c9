"""Test the command-line entry point with the offline echo capability."""

import json

from promptchain.cli import load_graph, main


def _write_graph(tmp_path, tasks):
    path = tmp_path / "graph.json"
    path.write_text(json.dumps({"name": "cli-test", "tasks": tasks}))
    return path


def test_load_graph(tmp_path):
    path = _write_graph(tmp_path, [{"id": "a", "prompt": "hello"}])
    graph = load_graph(path)
    assert graph.name == "cli-test"
    assert graph.get("a").prompt == "hello"


def test_plan_command(tmp_path, capsys):
    path = _write_graph(tmp_path, [
        {"id": "a", "title": "first"},
        {"id": "b", "title": "second", "dependencies": ["a"]},
    ])
    assert main(["plan", str(path)]) == 0
    out = capsys.readouterr().out
    assert "Execution Plan" in out
    assert "a -> b" in out


def test_plan_command_reports_cycle(tmp_path, capsys):
    path = _write_graph(tmp_path, [
        {"id": "a", "dependencies": ["b"]},
        {"id": "b", "dependencies": ["a"]},
    ])
    assert main(["plan", str(path)]) == 1
    assert "Planning failed" in capsys.readouterr().out


def test_run_command_with_echo(tmp_path, capsys):
    path = _write_graph(tmp_path, [
        {"id": "a", "prompt": "describe the schema"},
        {"id": "b", "prompt": "build on {{a_output}}", "dependencies": ["a"]},
    ])
    assert main(["run", str(path), "--echo"]) == 0
    out = capsys.readouterr().out
    assert "completed" in out
