"""
providers/base.py

Defines the abstract Provider interface.
Every resource kind (KeyPair, Instance, Address, LocalExec, ...) is backed by
one provider implementing this contract. This is the Strategy Pattern — the
engine doesn't care what a provider talks to, it just calls the same three
methods and records what comes back.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

from reconciler.model import AttributeSchema, ResourceSchema


class Provider(ABC):
    """
    Abstract base class for all resource providers.

    To add a new resource kind:
      1. Create providers/<something>.py
      2. Subclass Provider, set `kind` and `schema`
      3. Implement create / update / destroy
      4. Register it in providers/__init__.py

    That's it. The planner, executor, CLI and API layers need zero changes.

    Every method takes a `log=` callable for progress output. The CLI passes
    a Rich formatter, the API passes a queue writer for WebSocket streaming.
    """

    kind: str = ""
    schema: ResourceSchema = ResourceSchema(kind="", attributes={})

    @abstractmethod
    def create(self, attributes: Dict[str, Any], log=print) -> Tuple[str, Dict[str, Any]]:
        """
        Create the resource from fully resolved attributes.
        Returns (provider_id, computed_attributes).
        """
        ...

    @abstractmethod
    def update(self, provider_id: str, old: Dict[str, Any], new: Dict[str, Any], log=print) -> Dict[str, Any]:
        """
        Change mutable attributes in place. Only called when no immutable
        attribute changed. Returns the (possibly changed) computed attributes.
        """
        ...

    @abstractmethod
    def destroy(self, provider_id: str, log=print) -> None:
        """
        Delete the resource.
        Must be idempotent — safe to call for something already gone.
        """
        ...


def make_schema(kind: str, **attributes: AttributeSchema) -> ResourceSchema:
    return ResourceSchema(kind=kind, attributes=attributes)


# Shorthands for schema declarations
def immutable(required: bool = False) -> AttributeSchema:
    return AttributeSchema(immutable=True, required=required)


def mutable(required: bool = False) -> AttributeSchema:
    return AttributeSchema(required=required)


def computed() -> AttributeSchema:
    return AttributeSchema(computed=True)
