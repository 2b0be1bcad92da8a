"""
test_document.py

Desired-state documents: reference syntax, validation, outputs.
"""

import json

import pytest

from reconciler import DocumentError, Identity, Reference, StateRecord, load_document, parse_document, resolve_outputs
from reconciler.document import parse_reference, parse_value

LAB = {
    "resources": [
        {"kind": "Instance", "name": "web", "attributes": {"ami": "ami-0abc", "instance_type": "t2.micro"}},
        {"kind": "Address", "name": "web-ip", "attributes": {"instance": "${Instance.web.id}"}},
    ],
    "outputs": {"public_ip": "${Address.web-ip.public_ip}", "region": "lab-1"},
}


def test_reference_syntax():
    assert parse_reference("${Instance.web.id}") == Reference("Instance", "web", "id")
    assert parse_reference("${Address.web-ip.public_ip}") == Reference("Address", "web-ip", "public_ip")


@pytest.mark.parametrize("text", [
    "Instance.web.id",
    "${Instance.web}",
    "prefix ${Instance.web.id}",
    "${Instance.web.id} suffix",
])
def test_non_references_stay_literal(text):
    assert parse_reference(text) is None
    assert parse_value(text) == text


def test_nested_references_are_parsed():
    value = parse_value({"env": {"IP": "${Address.web-ip.public_ip}"}, "list": ["${Instance.web.id}", 3]})
    assert value["env"]["IP"] == Reference("Address", "web-ip", "public_ip")
    assert value["list"] == [Reference("Instance", "web", "id"), 3]


def test_specs_from_document():
    specs = parse_document(LAB).specs()
    assert [s.identity for s in specs] == [Identity("Instance", "web"), Identity("Address", "web-ip")]
    assert specs[1].attributes["instance"] == Reference("Instance", "web", "id")


def test_invalid_document():
    with pytest.raises(DocumentError):
        parse_document({"resources": [{"kind": "Instance"}]})


def test_invalid_name():
    with pytest.raises(DocumentError):
        parse_document({"resources": [{"kind": "Instance", "name": "has space"}]})


def test_load_document(tmp_path):
    path = tmp_path / "infrastructure.json"
    path.write_text(json.dumps(LAB), encoding="utf-8")
    assert len(load_document(str(path)).resources) == 2


def test_load_missing_document(tmp_path):
    with pytest.raises(DocumentError, match="not found"):
        load_document(str(tmp_path / "missing.json"))


def test_load_malformed_document(tmp_path):
    path = tmp_path / "infrastructure.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(DocumentError):
        load_document(str(path))


def test_outputs_resolve_against_state():
    ip = Identity("Address", "web-ip")
    records = {ip: StateRecord(ip, "eipalloc-1", {"public_ip": "198.51.100.7"})}
    outputs = resolve_outputs(parse_document(LAB).output_values(), records)
    assert outputs == {"public_ip": "198.51.100.7", "region": "lab-1"}


def test_outputs_of_missing_resources_are_none():
    outputs = resolve_outputs(parse_document(LAB).output_values(), {})
    assert outputs["public_ip"] is None
