"""
reconciler/model.py

The Resource Model: identities, references, per-kind schemas and desired
resource specs.

A resource attribute value is either a literal (anything JSON can hold) or a
Reference to another resource's attribute. References may also sit inside
lists and dicts. When a referenced value is not known yet (a computed
attribute of a resource that has not been applied), resolution yields the
DEFERRED placeholder instead of a value.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple

from reconciler.errors import (
    DuplicateResource,
    MissingAttribute,
    UnknownAttribute,
    UnknownReference,
    UnknownResourceKind,
)


class Identity(NamedTuple):
    """(kind, name) — tuples sort lexicographically, which gives stable ordering."""
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, text: str) -> "Identity":
        kind, sep, name = text.partition(".")
        if not sep or not kind or not name:
            raise ValueError(f"Invalid resource identity '{text}' (expected Kind.name)")
        return cls(kind, name)


class Reference(NamedTuple):
    """Points at `attribute` of the resource (kind, name)."""
    kind: str
    name: str
    attribute: str

    @property
    def target(self) -> Identity:
        return Identity(self.kind, self.name)

    def __str__(self) -> str:
        return "${" + f"{self.kind}.{self.name}.{self.attribute}" + "}"


def ref(kind: str, name: str, attribute: str) -> Reference:
    return Reference(kind, name, attribute)


class _Deferred:
    """Placeholder for a value only known after apply. Use the DEFERRED singleton."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Deferred, ())


DEFERRED = _Deferred()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttributeSchema:
    immutable: bool = False   # changing it forces Replace
    computed: bool = False    # set by the provider after create, never by the user
    required: bool = False


@dataclass(frozen=True)
class ResourceSchema:
    kind: str
    attributes: Mapping[str, AttributeSchema]

    def get(self, name: str) -> AttributeSchema:
        return self.attributes[name]

    def has(self, name: str) -> bool:
        return name in self.attributes

    def is_immutable(self, name: str) -> bool:
        return name in self.attributes and self.attributes[name].immutable

    def is_computed(self, name: str) -> bool:
        return name in self.attributes and self.attributes[name].computed

    @property
    def inputs(self) -> List[str]:
        return sorted(n for n, a in self.attributes.items() if not a.computed)

    @property
    def computed(self) -> List[str]:
        return sorted(n for n, a in self.attributes.items() if a.computed)


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceSpec:
    """
    One desired resource. Attributes are frozen into a read-only mapping so a
    spec cannot change while a planning cycle holds it.
    """
    kind: str
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def identity(self) -> Identity:
        return Identity(self.kind, self.name)

    def references(self) -> List[Reference]:
        """Every Reference in the attribute values, nested ones included."""
        found: List[Reference] = []
        for value in self.attributes.values():
            _collect_references(value, found)
        return found


@dataclass(frozen=True)
class ResolvedSpec:
    """A spec whose references were substituted; values may still be DEFERRED."""
    kind: str
    name: str
    attributes: Dict[str, Any]

    @property
    def identity(self) -> Identity:
        return Identity(self.kind, self.name)

    @property
    def is_fully_known(self) -> bool:
        return not any(contains_deferred(v) for v in self.attributes.values())


def _collect_references(value: Any, found: List[Reference]) -> None:
    if isinstance(value, Reference):
        found.append(value)
    elif isinstance(value, dict):
        for item in value.values():
            _collect_references(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_references(item, found)


def contains_deferred(value: Any) -> bool:
    if value is DEFERRED:
        return True
    if isinstance(value, dict):
        return any(contains_deferred(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_deferred(v) for v in value)
    return False


def substitute(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every Reference in `value` with lookup(reference)."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, dict):
        return {k: substitute(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(v, lookup) for v in value]
    return value


def resolve(spec: ResourceSpec, lookup: Callable[[Reference], Any]) -> ResolvedSpec:
    """
    Substitute references in `spec`.

    `lookup` returns the referenced value, or DEFERRED when the value only
    becomes known once the target resource has been applied.
    """
    attributes = {name: substitute(value, lookup) for name, value in spec.attributes.items()}
    return ResolvedSpec(kind=spec.kind, name=spec.name, attributes=attributes)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate(specs: Iterable[ResourceSpec], schemas: Mapping[str, ResourceSchema]) -> Dict[Identity, ResourceSpec]:
    """
    Check a desired set against the kind schemas and index it by identity.

    Raises UnknownResourceKind, DuplicateResource, UnknownAttribute,
    MissingAttribute or UnknownReference on the first problem found. Specs
    are checked in identity order so the same input always reports the same
    error.
    """
    by_identity: Dict[Identity, ResourceSpec] = {}
    for spec in specs:
        if spec.identity in by_identity:
            raise DuplicateResource(f"Resource {spec.identity} is declared more than once", [spec.identity])
        by_identity[spec.identity] = spec

    for identity in sorted(by_identity):
        spec = by_identity[identity]
        schema = schemas.get(spec.kind)
        if schema is None:
            raise UnknownResourceKind(
                f"{identity}: no provider schema for kind '{spec.kind}'", [identity]
            )

        for name in spec.attributes:
            if not schema.has(name):
                raise UnknownAttribute(f"{identity}: unknown attribute '{name}'", [identity])
            if schema.is_computed(name):
                raise UnknownAttribute(
                    f"{identity}: attribute '{name}' is computed and cannot be set", [identity]
                )

        for name, attr in schema.attributes.items():
            if attr.required and name not in spec.attributes:
                raise MissingAttribute(f"{identity}: required attribute '{name}' is missing", [identity])

        for reference in spec.references():
            target = reference.target
            if target not in by_identity:
                raise UnknownReference(
                    f"{identity}: reference {reference} points at undeclared resource {target}",
                    [identity, target],
                )
            target_schema = schemas[target.kind]
            if not target_schema.has(reference.attribute):
                raise UnknownAttribute(
                    f"{identity}: reference {reference} names unknown attribute "
                    f"'{reference.attribute}' of {target.kind}",
                    [identity, target],
                )

    return by_identity
