"""
api/schemas.py

Pydantic models for all API request and response bodies.

Design philosophy:
  - Request models validate and document what the caller must send.
  - Response models are the single source of truth for what we return.
  - Engine objects (Plan, StateRecord, ApplyReport) are never returned
    directly — always these normalised shapes.
  - JobResponse is the central type: every mutation endpoint returns one.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from reconciler.document import DesiredStateDocument


# ---------------------------------------------------------------------------
# Job state machine
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    """
    Lifecycle of an async job (apply / destroy).

    Transitions (happy path):
        pending → running → succeeded

    Transitions (failure):
        pending → running → failed

    Transitions (cancel requested):
        pending → running → cancelled

    pending   : Job accepted, background thread not yet started.
    running   : Background thread is applying the plan.
    succeeded : Every resource was applied (or unchanged).
    failed    : A resource failed, or the apply aborted; see Job.error.
    cancelled : Cancellation was requested; in-flight resources finished,
                the rest were skipped.
    """
    PENDING   = "pending"
    RUNNING   = "running"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ApplyRequest(BaseModel):
    """Body for POST /apply — the desired state plus execution knobs."""
    document: DesiredStateDocument = Field(..., description="Desired-state document")
    workers:  int                  = Field(1, ge=1, le=32, description="Concurrent provider calls")

    class Config:
        json_schema_extra = {
            "example": {
                "document": {
                    "resources": [
                        {"kind": "Instance", "name": "web",
                         "attributes": {"ami": "ami-0abc", "instance_type": "t2.micro"}},
                        {"kind": "Address", "name": "web-ip",
                         "attributes": {"instance": "${Instance.web.id}"}},
                    ],
                    "outputs": {"public_ip": "${Address.web-ip.public_ip}"},
                },
                "workers": 1,
            }
        }


class DestroyRequest(BaseModel):
    """Body for POST /destroy."""
    workers: int = Field(1, ge=1, le=32, description="Concurrent provider calls")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class JobResponse(BaseModel):
    """
    Returned by every mutation endpoint (apply, destroy).

    The client should:
      1. Store job_id.
      2. Open WS ws://<host>/ws/{job_id} to stream real-time logs.
      3. Poll GET /jobs/{job_id} to check status after WS closes.
    """
    job_id:  str       = Field(..., description="UUID identifying this async operation")
    status:  JobStatus = Field(..., description="Current lifecycle state")
    message: str       = Field(..., description="Human-readable summary of current state")


class JobDetailResponse(BaseModel):
    """
    Full job record returned by GET /jobs/{job_id}.
    Superset of JobResponse — includes logs and the apply report.
    """
    job_id:   str            = Field(..., description="UUID")
    status:   JobStatus      = Field(..., description="Current lifecycle state")
    message:  str            = Field(..., description="Human-readable summary")
    logs:     List[str]      = Field(default_factory=list, description="All log lines emitted so far")
    error:    Optional[str]  = Field(None, description="Error message if status=failed")
    result:   Optional[dict] = Field(None, description="Apply report and resolved outputs")


class AttributeChangeModel(BaseModel):
    old: Any = None
    new: Any = None
    forces_replacement: bool = False


class PlanActionModel(BaseModel):
    """One row of the plan — mirrors PlannedAction.to_dict()."""
    resource:  str
    kind:      str
    name:      str
    action:    str
    diff:      Dict[str, AttributeChangeModel] = Field(default_factory=dict)
    waits_for: List[str]                       = Field(default_factory=list)


class PlanResponse(BaseModel):
    """Returned by POST /plan — no provider is called."""
    actions: List[PlanActionModel]
    summary: Dict[str, int]


class StateRecordModel(BaseModel):
    kind:         str
    name:         str
    provider_id:  str
    attributes:   Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str]      = Field(default_factory=list)


class StateResponse(BaseModel):
    resources: List[StateRecordModel]


class AttributeSchemaModel(BaseModel):
    immutable: bool
    computed:  bool
    required:  bool


class KindResponse(BaseModel):
    """One registered resource kind and its attribute schema."""
    kind:       str
    attributes: Dict[str, AttributeSchemaModel]
