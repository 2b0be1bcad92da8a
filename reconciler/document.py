"""
reconciler/document.py

Desired-state documents.

A document is a JSON file:

    {
      "resources": [
        {"kind": "KeyPair",  "name": "lab", "attributes": {"key_name": "lab", "public_key": "ssh-rsa AAAA..."}},
        {"kind": "Instance", "name": "web", "attributes": {"ami": "ami-0abc", "instance_type": "t2.micro",
                                                           "key_name": "${KeyPair.lab.key_name}"}},
        {"kind": "Address",  "name": "web-ip", "attributes": {"instance": "${Instance.web.id}"}}
      ],
      "outputs": {"public_ip": "${Address.web-ip.public_ip}"}
    }

A string that is exactly `${Kind.name.attribute}` is a reference; anything
else is a literal. Order of the resources list does not matter.
"""

import json
import re
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, Field, ValidationError

from reconciler.errors import DocumentError
from reconciler.model import Identity, Reference, ResourceSpec, substitute
from reconciler.state import StateRecord

REFERENCE_PATTERN = re.compile(r"^\$\{([A-Za-z]\w*)\.([A-Za-z0-9][\w-]*)\.([A-Za-z_]\w*)\}$")
NAME_PATTERN = r"^[A-Za-z0-9][\w-]*$"


class ResourceBlock(BaseModel):
    """One entry of the `resources` list."""
    kind:       str            = Field(..., pattern=r"^[A-Za-z][\w]*$", description="Resource kind, e.g. Instance")
    name:       str            = Field(..., pattern=NAME_PATTERN,       description="Unique name within the kind")
    attributes: Dict[str, Any] = Field(default_factory=dict)


class DesiredStateDocument(BaseModel):
    resources: List[ResourceBlock] = Field(default_factory=list)
    outputs:   Dict[str, Any]      = Field(default_factory=dict)

    def specs(self) -> List[ResourceSpec]:
        return [
            ResourceSpec(kind=b.kind, name=b.name, attributes=parse_value(b.attributes))
            for b in self.resources
        ]

    def output_values(self) -> Dict[str, Any]:
        return {name: parse_value(value) for name, value in self.outputs.items()}


def parse_reference(text: str):
    """Return the Reference for `${Kind.name.attr}`, or None for any other string."""
    match = REFERENCE_PATTERN.match(text)
    if not match:
        return None
    return Reference(*match.groups())


def parse_value(value: Any) -> Any:
    """Turn `${...}` strings (at any depth) into References."""
    if isinstance(value, str):
        reference = parse_reference(value)
        return reference if reference is not None else value
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    return value


def parse_document(data: Any) -> DesiredStateDocument:
    try:
        return DesiredStateDocument.model_validate(data)
    except ValidationError as ex:
        raise DocumentError(f"Invalid desired-state document: {ex}") from ex


def load_document(path: str) -> DesiredStateDocument:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as ex:
        raise DocumentError(f"Desired-state file not found: {path}") from ex
    except (OSError, ValueError) as ex:
        raise DocumentError(f"Cannot read desired-state file {path}: {ex}") from ex
    return parse_document(data)


def resolve_outputs(outputs: Mapping[str, Any], records: Mapping[Identity, StateRecord]) -> Dict[str, Any]:
    """
    Resolve output expressions against applied state.
    An output pointing at a resource that is not in state resolves to None.
    """
    def lookup(reference: Reference) -> Any:
        record = records.get(reference.target)
        if record is None:
            return None
        return record.attributes.get(reference.attribute)

    return {name: substitute(value, lookup) for name, value in outputs.items()}
