"""
reconciler

Declarative resource reconciler: desired specs + last-applied state
→ dependency-ordered plan → apply through injected providers.

Usage:
    from reconciler import plan, apply_plan, JsonStateStore
    from providers import default_providers, schemas_for

    providers = default_providers()
    store = JsonStateStore("state.json")
    p = plan(document.specs(), schemas_for(providers), store.load())
    report = apply_plan(p, providers, store)
"""

from reconciler.document import DesiredStateDocument, load_document, parse_document, resolve_outputs
from reconciler.errors import (
    CyclicDependency,
    DocumentError,
    DuplicateResource,
    MissingAttribute,
    PlanOrderViolation,
    PlanningError,
    ProviderError,
    ReconcilerError,
    StateStoreIOError,
    UnknownAttribute,
    UnknownReference,
    UnknownResourceKind,
)
from reconciler.executor import ApplyReport, Outcome, ResourceResult, apply_plan, plan_and_apply
from reconciler.graph import DependencyGraph, build_graph
from reconciler.model import (
    DEFERRED,
    AttributeSchema,
    Identity,
    Reference,
    ResolvedSpec,
    ResourceSchema,
    ResourceSpec,
    ref,
    resolve,
    validate,
)
from reconciler.planner import ActionType, AttributeChange, Plan, PlannedAction, plan, plan_destroy
from reconciler.state import JsonStateStore, MemoryStateStore, StateRecord, StateStore

__all__ = [
    "ActionType",
    "ApplyReport",
    "AttributeChange",
    "AttributeSchema",
    "CyclicDependency",
    "DEFERRED",
    "DependencyGraph",
    "DesiredStateDocument",
    "DocumentError",
    "DuplicateResource",
    "Identity",
    "JsonStateStore",
    "MemoryStateStore",
    "MissingAttribute",
    "Outcome",
    "Plan",
    "PlanOrderViolation",
    "PlannedAction",
    "PlanningError",
    "ProviderError",
    "ReconcilerError",
    "Reference",
    "ResolvedSpec",
    "ResourceResult",
    "ResourceSchema",
    "ResourceSpec",
    "StateRecord",
    "StateStore",
    "StateStoreIOError",
    "UnknownAttribute",
    "UnknownReference",
    "UnknownResourceKind",
    "apply_plan",
    "build_graph",
    "load_document",
    "parse_document",
    "plan",
    "plan_and_apply",
    "plan_destroy",
    "ref",
    "resolve",
    "resolve_outputs",
    "validate",
]
