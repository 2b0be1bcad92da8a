"""
test_cli.py

End-to-end CLI runs against the simulated cloud, via Typer's CliRunner.
Each test works in its own temp directory so the state file and the
simulated cloud inventory never leak between tests.
"""

import json

import pytest
from typer.testing import CliRunner

from main import app

runner = CliRunner()

LAB = {
    "resources": [
        {"kind": "Address", "name": "web-ip", "attributes": {"instance": "${Instance.web.id}"}},
        {"kind": "Instance", "name": "web", "attributes": {"ami": "ami-0abc", "instance_type": "t2.micro"}},
    ],
    "outputs": {"public_ip": "${Address.web-ip.public_ip}"},
}


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "infrastructure.json").write_text(json.dumps(LAB), encoding="utf-8")
    return tmp_path


def _write(path, document):
    path.write_text(json.dumps(document), encoding="utf-8")


def _invoke(*args):
    result = runner.invoke(app, [*args])
    print(result.output)
    return result


def test_plan_json(workdir):
    result = _invoke("plan", "--json", "--state", "state.json")
    assert result.exit_code == 0

    data = json.loads(result.output)
    assert [a["resource"] for a in data["actions"]] == ["Instance.web", "Address.web-ip"]
    assert data["summary"]["create"] == 2
    assert not (workdir / "state.json").exists()


def test_apply_then_replan_is_clean(workdir):
    result = _invoke("apply", "--yes", "--state", "state.json")
    assert result.exit_code == 0
    assert "Apply complete" in result.output
    assert "198.51.100." in result.output

    state = json.loads(_invoke("state", "--json", "--state", "state.json").output)
    assert {(r["kind"], r["name"]) for r in state} == {("Instance", "web"), ("Address", "web-ip")}

    again = json.loads(_invoke("plan", "--json", "--state", "state.json").output)
    assert again["summary"]["no-op"] == 2
    assert again["summary"]["create"] == 0


def test_replace_changes_address_association(workdir):
    _invoke("apply", "--yes", "--state", "state.json")
    first = {r["name"]: r for r in json.loads(_invoke("state", "--json", "--state", "state.json").output)}

    changed = json.loads(json.dumps(LAB))
    changed["resources"][1]["attributes"]["ami"] = "ami-0def"
    _write(workdir / "infrastructure.json", changed)

    plan = json.loads(_invoke("plan", "--json", "--state", "state.json").output)
    actions = {a["resource"]: a["action"] for a in plan["actions"]}
    assert actions == {"Instance.web": "replace", "Address.web-ip": "update"}

    assert _invoke("apply", "--yes", "--state", "state.json").exit_code == 0
    second = {r["name"]: r for r in json.loads(_invoke("state", "--json", "--state", "state.json").output)}
    assert second["web"]["provider_id"] != first["web"]["provider_id"]
    assert second["web-ip"]["provider_id"] == first["web-ip"]["provider_id"]
    assert second["web-ip"]["attributes"]["instance"] == second["web"]["provider_id"]


def test_destroy(workdir):
    _invoke("apply", "--yes", "--state", "state.json")
    result = _invoke("destroy", "--yes", "--state", "state.json")
    assert result.exit_code == 0
    assert "All resources destroyed" in result.output
    assert json.loads(_invoke("state", "--json", "--state", "state.json").output) == []


def test_destroy_empty_state(workdir):
    result = _invoke("destroy", "--yes", "--state", "state.json")
    assert result.exit_code == 0
    assert "Nothing to destroy" in result.output


def test_cycle_is_reported(workdir):
    _write(workdir / "infrastructure.json", {"resources": [
        {"kind": "Address", "name": "a", "attributes": {"instance": "${Address.b.id}"}},
        {"kind": "Address", "name": "b", "attributes": {"instance": "${Address.a.id}"}},
    ]})
    result = _invoke("plan", "--state", "state.json")
    assert result.exit_code == 1
    assert "cycle" in result.output


def test_missing_document(workdir):
    result = _invoke("plan", "--file", "nope.json", "--state", "state.json")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_failed_apply_exits_non_zero(workdir):
    _write(workdir / "infrastructure.json", {"resources": [
        {"kind": "LocalExec", "name": "boom", "attributes": {"command": "exit 2"}},
        {"kind": "Instance", "name": "web", "attributes": {"ami": "ami-0abc", "instance_type": "t2.micro"}},
    ]})
    result = _invoke("apply", "--yes", "--state", "state.json")
    assert result.exit_code == 1
    state = json.loads(_invoke("state", "--json", "--state", "state.json").output)
    assert [r["name"] for r in state] == ["web"]


def test_graph(workdir):
    result = _invoke("graph")
    assert result.exit_code == 0
    assert "Instance.web → Address.web-ip" in result.output


def test_output_before_apply(workdir):
    result = _invoke("output", "--state", "state.json")
    assert result.exit_code == 0
    assert "public_ip" in result.output
