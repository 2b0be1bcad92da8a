"""
reconciler/planner.py

Turns a desired set + the last-known state into an ordered Plan.

Pure logic — no provider is ever called here. The Plan is the artifact a
caller renders for human review before authorising an apply.

Ordering:
  1. Create / UpdateInPlace / Replace / NoOp, in dependency order
     (dependencies first, ties broken by identity).
  2. Destroy, for resources that are in state but no longer desired, in
     reverse dependency order (dependents first).

Classification per resource:
  - no state record                      → Create
  - no differing attribute               → NoOp
  - only mutable attributes differ       → UpdateInPlace
  - any immutable attribute differs      → Replace (destroy, then create)

A reference to a *computed* attribute (e.g. an instance id) is only known at
plan time when its source is left untouched; otherwise it is DEFERRED and the
Executor re-resolves it once the source has been applied.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from reconciler.errors import PlanOrderViolation
from reconciler.graph import DependencyGraph, build_graph, graph_from_dependencies
from reconciler.model import (
    DEFERRED,
    Identity,
    Reference,
    ResourceSchema,
    ResourceSpec,
    contains_deferred,
    resolve,
    validate,
)
from reconciler.state import StateRecord

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    NOOP    = "no-op"
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    DESTROY = "destroy"


# Symbols used by the plan table and summaries
ACTION_SYMBOLS = {
    ActionType.NOOP:    " ",
    ActionType.CREATE:  "+",
    ActionType.UPDATE:  "~",
    ActionType.REPLACE: "-/+",
    ActionType.DESTROY: "-",
}


@dataclass(frozen=True)
class AttributeChange:
    old: Any
    new: Any
    forces_replacement: bool = False

    @property
    def known(self) -> bool:
        return not contains_deferred(self.new)


@dataclass
class PlannedAction:
    """
    One step of the plan.

    attributes   — desired attributes with references substituted; may hold
                   DEFERRED values. Empty for Destroy.
    prior        — the state record the action starts from (None for Create).
    waits_for    — identities whose actions must succeed before this one:
                   the resources it references, or for Destroy, the
                   resources that referenced it.
    """
    identity: Identity
    action: ActionType
    diff: Dict[str, AttributeChange] = field(default_factory=dict)
    spec: Optional[ResourceSpec] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    prior: Optional[StateRecord] = None
    waits_for: List[Identity] = field(default_factory=list)

    @property
    def is_change(self) -> bool:
        return self.action is not ActionType.NOOP

    def to_dict(self) -> dict:
        return {
            "resource": str(self.identity),
            "kind": self.identity.kind,
            "name": self.identity.name,
            "action": self.action.value,
            "diff": {
                name: {
                    "old": to_jsonable(change.old),
                    "new": to_jsonable(change.new),
                    "forces_replacement": change.forces_replacement,
                }
                for name, change in sorted(self.diff.items())
            },
            "waits_for": [str(i) for i in self.waits_for],
        }


@dataclass
class Plan:
    actions: List[PlannedAction]
    graph: DependencyGraph

    @property
    def changes(self) -> List[PlannedAction]:
        return [a for a in self.actions if a.is_change]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def get(self, identity: Identity) -> Optional[PlannedAction]:
        for action in self.actions:
            if action.identity == identity:
                return action
        return None

    def order(self) -> List[Identity]:
        return [a.identity for a in self.actions]

    def summary(self) -> Dict[str, int]:
        counts = {t.value: 0 for t in ActionType}
        for action in self.actions:
            counts[action.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "summary": self.summary(),
        }


def to_jsonable(value: Any) -> Any:
    """DEFERRED → "(known after apply)", references → their ${...} text."""
    if value is DEFERRED:
        return repr(DEFERRED)
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------

def diff_attributes(
    schema: ResourceSchema,
    desired: Mapping[str, Any],
    recorded: Mapping[str, Any],
) -> Dict[str, AttributeChange]:
    """
    Attribute-by-attribute diff of the user-settable attributes.

    An attribute dropped from the desired spec diffs as old → None; a
    DEFERRED value always counts as a change.
    """
    changes: Dict[str, AttributeChange] = {}
    names = {n for n in desired if not schema.is_computed(n)}
    names |= {n for n in recorded if schema.has(n) and not schema.is_computed(n)}
    for name in sorted(names):
        old = recorded.get(name)
        new = desired.get(name)
        if contains_deferred(new) or old != new:
            changes[name] = AttributeChange(old, new, schema.is_immutable(name))
    return changes


def classify(diff: Mapping[str, AttributeChange]) -> ActionType:
    if not diff:
        return ActionType.NOOP
    if any(c.forces_replacement for c in diff.values()):
        return ActionType.REPLACE
    return ActionType.UPDATE


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def plan(
    specs: Iterable[ResourceSpec],
    schemas: Mapping[str, ResourceSchema],
    prior: Mapping[Identity, StateRecord],
) -> Plan:
    """
    Compute the plan for reaching `specs` from the `prior` state records.

    Raises UnknownResourceKind, UnknownReference, UnknownAttribute,
    MissingAttribute, DuplicateResource, CyclicDependency or
    PlanOrderViolation; never returns a partial plan.
    """
    desired = validate(specs, schemas)
    graph = build_graph(desired)
    order = graph.topological_order()

    resolved: Dict[Identity, Dict[str, Any]] = {}
    planned: Dict[Identity, PlannedAction] = {}

    def lookup(reference: Reference) -> Any:
        target = reference.target
        if schemas[target.kind].is_computed(reference.attribute):
            source = planned.get(target)
            if source is None or source.action is not ActionType.NOOP:
                return DEFERRED
            return source.prior.attributes.get(reference.attribute, DEFERRED)
        if target not in resolved:
            return DEFERRED
        return resolved[target].get(reference.attribute)

    actions: List[PlannedAction] = []
    for identity in order:
        spec = desired[identity]
        schema = schemas[spec.kind]
        attributes = resolve(spec, lookup).attributes
        resolved[identity] = attributes
        record = prior.get(identity)

        if record is None:
            diff = {
                name: AttributeChange(None, value)
                for name, value in sorted(attributes.items())
            }
            action_type = ActionType.CREATE
        else:
            diff = diff_attributes(schema, attributes, record.attributes)
            action_type = classify(diff)

        action = PlannedAction(
            identity=identity,
            action=action_type,
            diff=diff,
            spec=spec,
            attributes=attributes,
            prior=record,
            waits_for=graph.dependencies_of(identity),
        )
        planned[identity] = action
        actions.append(action)

    actions.extend(_plan_destroys(desired, prior))
    _check_order(actions)

    result = Plan(actions=actions, graph=graph)
    logger.debug("plan: %s", result.summary())
    return result


def plan_destroy(prior: Mapping[Identity, StateRecord]) -> Plan:
    """Plan that removes everything in state, dependents first."""
    actions = _plan_destroys({}, prior)
    _check_order(actions)
    return Plan(actions=actions, graph=graph_from_dependencies({i: r.dependencies for i, r in prior.items()}))


def _plan_destroys(
    desired: Mapping[Identity, ResourceSpec],
    prior: Mapping[Identity, StateRecord],
) -> List[PlannedAction]:
    removed = {i: r for i, r in prior.items() if i not in desired}
    if not removed:
        return []

    recorded = graph_from_dependencies({i: r.dependencies for i, r in prior.items()})
    order = [i for i in reversed(recorded.topological_order()) if i in removed]

    actions = []
    for identity in order:
        record = removed[identity]
        diff = {
            name: AttributeChange(value, None)
            for name, value in sorted(record.attributes.items())
        }
        actions.append(PlannedAction(
            identity=identity,
            action=ActionType.DESTROY,
            diff=diff,
            prior=record,
            waits_for=recorded.dependents_of(identity),
        ))
    return actions


def _check_order(actions: List[PlannedAction]) -> None:
    """Every action must come after everything it waits for."""
    position = {a.identity: index for index, a in enumerate(actions)}
    for index, action in enumerate(actions):
        for dependency in action.waits_for:
            if dependency in position and position[dependency] >= index:
                raise PlanOrderViolation(
                    f"{action.identity} is scheduled before {dependency}, which it depends on",
                    [action.identity, dependency],
                )
