"""
reconciler/errors.py

Every error the engine raises. The CLI and API decide how to render them.

Planning errors are fatal — no partial plan is ever returned — and always
carry the identities involved so the caller can point at the offending
resources.
"""

from typing import Iterable, Tuple


class ReconcilerError(Exception):
    """Base class. `identities` lists the resources involved (may be empty)."""

    def __init__(self, message: str, identities: Iterable = ()):
        super().__init__(message)
        self.identities: Tuple = tuple(identities)


# ---------------------------------------------------------------------------
# Planning errors
# ---------------------------------------------------------------------------

class PlanningError(ReconcilerError):
    """Raised while validating, graphing or planning. Always fatal."""


class UnknownReference(PlanningError):
    pass


class UnknownAttribute(PlanningError):
    pass


class UnknownResourceKind(PlanningError):
    pass


class MissingAttribute(PlanningError):
    pass


class DuplicateResource(PlanningError):
    pass


class CyclicDependency(PlanningError):
    """The identities in the cycle, in traversal order."""


class PlanOrderViolation(PlanningError):
    pass


class DocumentError(PlanningError):
    """The desired-state document could not be read or parsed."""


# ---------------------------------------------------------------------------
# Apply errors
# ---------------------------------------------------------------------------

class ProviderError(ReconcilerError):
    """A provider call failed. Recorded per resource, never aborts the apply."""


class StateStoreIOError(ReconcilerError):
    """The state backend could not be read or written. Aborts the apply."""
