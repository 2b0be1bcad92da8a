"""
api/app.py

FastAPI application for the reconciler.

Endpoints:
  GET  /healthz                  — liveness probe (no auth needed)
  GET  /kinds                    — registered resource kinds and their schemas
  POST /plan                     — plan a desired-state document, zero provider calls
  POST /apply                    — async apply                → 202 + job_id
  POST /destroy                  — async destroy of all state → 202 + job_id
  GET  /state                    — records in the state store
  GET  /jobs                     — list all jobs
  GET  /jobs/{job_id}            — full job detail (logs + report)
  POST /jobs/{job_id}/cancel     — stop starting new resources
  WS   /ws/{job_id}              — live log streaming over WebSocket

Protection (api/middleware.py):
  - Per-IP token-bucket rate limiting (reads: RATE_LIMIT_READ_RPM/min,
    writes: RATE_LIMIT_WRITE_RPM/min).
  - API-key header guard on all mutating endpoints (X-API-Key header).
  - Global + per-IP concurrency cap (MAX_CONCURRENT_JOBS / MAX_JOBS_PER_IP).
  - CORS locked to ALLOWED_ORIGINS (comma-separated env var).

Design decisions:
  - Planning runs inside the request: planning errors come back as 422
    before any job is created. The job plans again with the store session
    held, so two overlapping jobs never act on the same stale state.
  - Applies are async (background thread) and return 202 immediately.
  - The `log=` callable hook bridges the executor → async WebSocket.
  - The state store and providers are FastAPI dependencies, so tests (or a
    different deployment) can swap them with app.dependency_overrides.
"""

import asyncio
import json
import os
import queue
from typing import Dict, List

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from api.jobs import job_store, launch_job
from api.middleware import (
    RateLimitMiddleware,
    _get_client_ip,
    job_slots,
    require_api_key,
    write_audit,
)
from api.schemas import (
    ApplyRequest,
    AttributeSchemaModel,
    DestroyRequest,
    JobDetailResponse,
    JobResponse,
    JobStatus,
    KindResponse,
    PlanResponse,
    StateRecordModel,
    StateResponse,
)
from providers import Provider, SimulatedCloud, default_providers, schemas_for
from reconciler import (
    DesiredStateDocument,
    JsonStateStore,
    PlanningError,
    StateStore,
    StateStoreIOError,
    plan_and_apply,
    plan as make_plan,
    plan_destroy,
    resolve_outputs,
)

STATE_FILE = os.getenv("RECONCILER_STATE_FILE", "state.json")
CLOUD_FILE = os.getenv("RECONCILER_CLOUD_FILE")

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Reconciler API",
    description=(
        "REST + WebSocket API for the declarative reconciler.\n\n"
        "Plan desired-state documents, apply them in dependency order and "
        "stream real-time logs — all over HTTP.\n\n"
        "**Mutating endpoints require the `X-API-Key` header.**"
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ------------------------------------------------------------------
# CORS — lock down to the domains you actually need.
# Set ALLOWED_ORIGINS env var to a comma-separated list.
# Falls back to "*" only when not set (local dev).
# ------------------------------------------------------------------
_raw_origins = os.getenv("ALLOWED_ORIGINS", "*")
_allowed_origins = (
    [o.strip() for o in _raw_origins.split(",") if o.strip()]
    if _raw_origins != "*"
    else ["*"]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key"],
)

# Per-IP token-bucket rate limiter (reads + writes tracked separately)
app.add_middleware(RateLimitMiddleware)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_store = JsonStateStore(STATE_FILE)
_providers = default_providers(SimulatedCloud(CLOUD_FILE))


def get_store() -> StateStore:
    return _store


def get_providers() -> Dict[str, Provider]:
    return _providers


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_records(store: StateStore):
    try:
        return store.load()
    except StateStoreIOError as e:
        raise HTTPException(status_code=500, detail=str(e))


def _planning_422(e: PlanningError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"error": type(e).__name__, "message": str(e),
                "resources": [str(i) for i in e.identities]},
    )


def _plan_or_422(document: DesiredStateDocument, providers, store: StateStore):
    try:
        return make_plan(document.specs(), schemas_for(providers), _load_records(store))
    except PlanningError as e:
        raise _planning_422(e)


def _job_response(job) -> JobResponse:
    return JobResponse(job_id=job.job_id, status=job.status, message=job.message)


def _job_detail(job) -> JobDetailResponse:
    return JobDetailResponse(
        job_id=job.job_id,
        status=job.status,
        message=job.message,
        logs=job.logs,
        error=job.error,
        result=job.result,
    )


@app.get("/", include_in_schema=False)
def root():
    """Redirect / → /docs for convenience."""
    return RedirectResponse(url="/docs")


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------

@app.get("/healthz", tags=["Meta"], summary="Liveness probe")
def healthz():
    """Returns 200 OK. Used by load balancers and Docker HEALTHCHECK."""
    return {"status": "ok"}


@app.get("/kinds", response_model=List[KindResponse], tags=["Meta"], summary="Registered resource kinds")
def list_kinds(providers: Dict[str, Provider] = Depends(get_providers)):
    return [
        KindResponse(
            kind=kind,
            attributes={
                name: AttributeSchemaModel(immutable=a.immutable, computed=a.computed, required=a.required)
                for name, a in sorted(providers[kind].schema.attributes.items())
            },
        )
        for kind in sorted(providers)
    ]


# ---------------------------------------------------------------------------
# Plan  (zero provider calls)
# ---------------------------------------------------------------------------

@app.post(
    "/plan",
    response_model=PlanResponse,
    tags=["Operations"],
    summary="Preview the actions an apply would take",
)
def post_plan(
    document: DesiredStateDocument,
    store: StateStore = Depends(get_store),
    providers: Dict[str, Provider] = Depends(get_providers),
):
    """
    Plans `document` against the current state. Instant response — no
    provider is called.
    """
    return PlanResponse(**_plan_or_422(document, providers, store).to_dict())


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

@app.post(
    "/apply",
    response_model=JobResponse,
    status_code=202,
    tags=["Operations"],
    summary="Apply a desired-state document (async)",
    dependencies=[Depends(require_api_key)],
)
def post_apply(
    req: ApplyRequest,
    request: Request,
    store: StateStore = Depends(get_store),
    providers: Dict[str, Provider] = Depends(get_providers),
):
    """
    Plans synchronously (422 on planning errors), then applies in a
    background thread.

    Returns immediately with a `job_id`. The client should:
    1. Open `WS /ws/{job_id}` to stream real-time logs.
    2. Poll `GET /jobs/{job_id}` to check completion.

    **Requires X-API-Key header.**
    """
    caller_ip = _get_client_ip(request)
    # Reserved only once the body is valid; released when the job ends.
    job_slots.reserve(caller_ip)
    try:
        _plan_or_422(req.document, providers, store)
    except HTTPException:
        job_slots.release(caller_ip)
        raise

    write_audit("APPLY", caller_ip, f"resources={len(req.document.resources)}")
    specs = req.document.specs()
    schemas = schemas_for(providers)
    outputs = req.document.output_values()

    def _apply(log=print, cancel=None):
        # Planned again with the store held: another job may have applied since.
        report = plan_and_apply(
            lambda records: make_plan(specs, schemas, records),
            providers, store, log=log, max_workers=req.workers, cancel=cancel,
        )
        payload = report.to_dict()
        payload["outputs"] = resolve_outputs(outputs, report.records)
        return payload

    job = launch_job("apply", _apply, caller_ip=caller_ip)
    return _job_response(job)


# ---------------------------------------------------------------------------
# Destroy
# ---------------------------------------------------------------------------

@app.post(
    "/destroy",
    response_model=JobResponse,
    status_code=202,
    tags=["Operations"],
    summary="Destroy every resource in state (async)",
    dependencies=[Depends(require_api_key)],
)
def post_destroy(
    req: DestroyRequest,
    request: Request,
    store: StateStore = Depends(get_store),
    providers: Dict[str, Provider] = Depends(get_providers),
):
    """
    Destroys everything recorded in state, dependents first.

    ⚠ This is irreversible.

    **Requires X-API-Key header.**
    """
    caller_ip = _get_client_ip(request)
    job_slots.reserve(caller_ip)
    try:
        records = _load_records(store)
        plan_destroy(records)
    except PlanningError as e:
        job_slots.release(caller_ip)
        raise _planning_422(e)
    except HTTPException:
        job_slots.release(caller_ip)
        raise
    write_audit("DESTROY", caller_ip, f"resources={len(records)}")

    def _destroy(log=print, cancel=None):
        def _plan_current(current):
            result = plan_destroy(current)
            if not result.actions:
                log("🤷 State is empty. Nothing to destroy.")
            return result

        return plan_and_apply(_plan_current, providers, store, log=log,
                              max_workers=req.workers, cancel=cancel).to_dict()

    job = launch_job("destroy", _destroy, caller_ip=caller_ip)
    return _job_response(job)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@app.get("/state", response_model=StateResponse, tags=["Operations"], summary="Current state records")
def get_state(store: StateStore = Depends(get_store)):
    records = _load_records(store)
    return StateResponse(resources=[StateRecordModel(**records[i].to_dict()) for i in sorted(records)])


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@app.get(
    "/jobs",
    response_model=List[JobDetailResponse],
    tags=["Jobs"],
    summary="List all jobs",
)
def list_jobs():
    """Returns all jobs (completed and in-progress), newest first."""
    return [_job_detail(j) for j in job_store.all()]


@app.get(
    "/jobs/{job_id}",
    response_model=JobDetailResponse,
    tags=["Jobs"],
    summary="Get full details for a single job",
)
def get_job(job_id: str):
    """
    Returns the full job record including all accumulated log lines.

    Poll this endpoint after opening the WebSocket to confirm final status.
    """
    job = job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    return _job_detail(job)


@app.post(
    "/jobs/{job_id}/cancel",
    response_model=JobResponse,
    tags=["Jobs"],
    summary="Stop a running job from starting new resources",
    dependencies=[Depends(require_api_key)],
)
def cancel_job(job_id: str, request: Request):
    """
    Resources already being created/updated/destroyed finish; everything
    not started yet is reported as skipped-cancelled.
    """
    job = job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    if not job.cancel():
        raise HTTPException(status_code=409, detail=f"Job '{job_id}' has already finished.")
    write_audit("CANCEL", _get_client_ip(request), job_id)
    return _job_response(job)


# ---------------------------------------------------------------------------
# WebSocket — live log streaming
# ---------------------------------------------------------------------------

@app.websocket("/ws/{job_id}")
async def websocket_logs(websocket: WebSocket, job_id: str):
    """
    Stream a job's log lines. Every message is one JSON frame:

      {"type": "log",    "data": "<line>"}       one per executor log line
      {"type": "status", "data": "<JobStatus>"}  on connect and at the end
      {"type": "result", "data": {...}}          the apply report, if any
      {"type": "error",  "data": "<message>"}    the job error, if any
      {"type": "ping"}                           every 15 s of silence
      {"type": "done"}                           last frame

    Clients joining late get every earlier line replayed first. The job
    thread writes to a stdlib queue; reads go through run_in_executor()
    so the event loop is never blocked.
    """
    await websocket.accept()

    job = job_store.get(job_id)
    if not job:
        await websocket.send_text(
            json.dumps({"type": "error", "data": f"Job '{job_id}' not found."})
        )
        await websocket.close(code=4004)
        return

    loop = asyncio.get_running_loop()

    async def send(frame: dict) -> None:
        """Send a JSON frame, silently swallow disconnect errors."""
        try:
            await websocket.send_text(json.dumps(frame))
        except WebSocketDisconnect:
            pass

    async def finish() -> None:
        await send({"type": "status", "data": job.status.value})
        if job.result:
            await send({"type": "result", "data": job.result})
        if job.error:
            await send({"type": "error", "data": job.error})
        await send({"type": "done"})
        await websocket.close()

    # 1. Replay history. The queue holds every line too, so remember how
    #    many were replayed and skip that many when draining it below.
    history_snapshot = list(job.logs)
    history_count = len(history_snapshot)
    for line in history_snapshot:
        await send({"type": "log", "data": line})

    # 2. Already finished — final frames and close.
    if job.finished:
        await finish()
        return

    await send({"type": "status", "data": job.status.value})

    # 3. Still running — drain the queue in real time; ping on timeout.
    def _blocking_get() -> object:
        return job.log_queue.get(timeout=15)

    skipped = 0

    try:
        while True:
            try:
                item = await loop.run_in_executor(None, _blocking_get)
            except asyncio.CancelledError:
                break
            except queue.Empty:
                await send({"type": "ping"})
                continue

            if item is None:
                # Sentinel — background thread is finished.
                break

            if skipped < history_count:
                skipped += 1
                continue

            await send({"type": "log", "data": item})

    except WebSocketDisconnect:
        return

    # 4. Job finished while we were streaming.
    await finish()
