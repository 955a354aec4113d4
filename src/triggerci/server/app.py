from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from triggerci import events
from triggerci.errors import TriggerciError
from triggerci.loader import discover_workflows, load_workflows, workflow_to_dict
from triggerci.model import Event, RunStatus, WorkflowDefinition
from triggerci.triggers import TriggerMatcher

from .db import SessionLocal, create_tables, db_engine
from .models import Lease, Run
from .redisq import dequeue_run, drop_run, enqueue_run, lease_lock_key, r, requeue_run
from .settings import LEASE_SECONDS, WEBHOOK_SECRET, WORKFLOWS_DIR
from .webhooks import SIGNATURE_HEADER, verify_signature

log = logging.getLogger(__name__)

# -------------------- Lifespan --------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the tables on startup; release the DB pool and Redis client on shutdown."""
    await create_tables()
    log.info("control plane ready (workflows from %s)", WORKFLOWS_DIR)
    yield
    await r.aclose()
    await db_engine.dispose()


app = FastAPI(title="triggerci control plane", lifespan=lifespan)

TERMINAL = {s.value for s in (RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.CANCELLED)}

# -------------------- Schemas --------------------

class DispatchRequest(BaseModel):
    workflow: str
    ref: str = "refs/heads/main"
    inputs: dict[str, Any] = Field(default_factory=dict)

class CreatedRuns(BaseModel):
    run_ids: list[str]

class ClaimRequest(BaseModel):
    agent_id: str

class ClaimedRun(BaseModel):
    run_id: str
    workflow: str
    payload_json: dict[str, Any]
    lease_expires_at: str

class CompleteRequest(BaseModel):
    agent_id: str
    status: str  # success|failure|cancelled
    jobs: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    failed_job: str | None = None
    failed_step: str | None = None
    logs: str | None = None

class RunResponse(BaseModel):
    id: str
    workflow: str
    event_name: str
    status: str
    cancel_requested: bool
    jobs: dict[str, str]
    error: str | None
    failed_job: str | None
    failed_step: str | None
    created_at: datetime

# -------------------- Workflows --------------------

_matcher = TriggerMatcher()
_workflows: list[WorkflowDefinition] | None = None

def get_workflows() -> list[WorkflowDefinition]:
    global _workflows
    if _workflows is None:
        _workflows = load_workflows(discover_workflows(WORKFLOWS_DIR))
        log.info("loaded %d workflow(s) from %s", len(_workflows), WORKFLOWS_DIR)
    return _workflows

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def _parse_run_id(run_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(run_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Run not found") from None

async def _create_runs(event: Event, workflows: list[WorkflowDefinition]) -> list[str]:
    run_ids: list[str] = []
    async with SessionLocal() as s:
        async with s.begin():
            for wf in workflows:
                run = Run(
                    workflow=wf.name,
                    event_name=event.name,
                    status=RunStatus.QUEUED.value,
                    payload_json={"workflow": workflow_to_dict(wf), "event": event.to_dict()},
                    jobs_json={name: "pending" for name in wf.jobs},
                )
                s.add(run)
                await s.flush()
                run_ids.append(str(run.id))

    # push to Redis after DB commit
    for rid in run_ids:
        await enqueue_run(rid)
    return run_ids

# -------------------- Endpoints --------------------

@app.post("/webhooks", response_model=CreatedRuns)
async def webhook(request: Request):
    body = await request.body()
    if WEBHOOK_SECRET and not verify_signature(body, request.headers.get(SIGNATURE_HEADER), WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = events.from_webhook(dict(request.headers), body)
    except events.EventParseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    matched = [wf for wf in get_workflows() if _matcher.match(event, wf.triggers, workflow=wf.name)]
    return CreatedRuns(run_ids=await _create_runs(event, matched))

@app.post("/dispatch", response_model=CreatedRuns)
async def dispatch(req: DispatchRequest):
    wf = next((w for w in get_workflows() if w.name == req.workflow), None)
    if wf is None:
        raise HTTPException(status_code=404, detail=f"Unknown workflow {req.workflow!r}")
    event = events.dispatch(req.workflow, ref=req.ref, inputs=req.inputs)
    if not _matcher.match(event, wf.triggers, workflow=wf.name):
        raise HTTPException(status_code=409, detail=f"Workflow {req.workflow!r} has no workflow_dispatch trigger")
    return CreatedRuns(run_ids=await _create_runs(event, [wf]))

@app.post("/ticks", response_model=CreatedRuns)
async def tick():
    event = events.schedule_tick()
    matched = [wf for wf in get_workflows() if _matcher.match(event, wf.triggers, workflow=wf.name)]
    return CreatedRuns(run_ids=await _create_runs(event, matched))

@app.post("/leases/claim", response_model=ClaimedRun)
async def claim(req: ClaimRequest):
    while True:
        run_id = await dequeue_run(timeout_s=5)
        if not run_id:
            return Response(status_code=204)

        # Lock in Redis to reduce duplicate leasing during retries
        lock_key = lease_lock_key(run_id)
        if not await r.set(lock_key, req.agent_id, nx=True, ex=LEASE_SECONDS):
            continue

        expires_at = now_utc() + timedelta(seconds=LEASE_SECONDS)

        async with SessionLocal() as s:
            async with s.begin():
                run = await s.get(Run, uuid.UUID(run_id))
                if not run or run.status in TERMINAL:
                    # cancelled while queued, or gone
                    await r.delete(lock_key)
                    continue

                lease = await s.get(Lease, run.id)
                if lease and lease.expires_at > now_utc():
                    await r.delete(lock_key)
                    await requeue_run(run_id)
                    continue

                if lease:
                    lease.agent_id = req.agent_id
                    lease.leased_at = now_utc()
                    lease.expires_at = expires_at
                else:
                    s.add(Lease(run_id=run.id, agent_id=req.agent_id, leased_at=now_utc(), expires_at=expires_at))

                run.status = RunStatus.RUNNING.value

                return ClaimedRun(
                    run_id=run_id,
                    workflow=run.workflow,
                    payload_json=run.payload_json,
                    lease_expires_at=expires_at.isoformat(),
                )

@app.post("/leases/{run_id}/complete")
async def complete(run_id: str, req: CompleteRequest):
    if req.status not in TERMINAL:
        raise HTTPException(status_code=400, detail="status must be success|failure|cancelled")
    rid = _parse_run_id(run_id)

    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, rid)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")

            lease = await s.get(Lease, rid)
            if not lease:
                raise HTTPException(status_code=409, detail="No lease for run")
            if lease.agent_id != req.agent_id:
                raise HTTPException(status_code=403, detail="Lease owned by different agent")

            run.status = RunStatus.CANCELLED.value if run.cancel_requested else req.status
            run.jobs_json = dict(req.jobs) or run.jobs_json
            run.error = req.error
            run.failed_job = req.failed_job
            run.failed_step = req.failed_step
            run.logs = req.logs or None
            await s.delete(lease)

    await r.delete(lease_lock_key(run_id))
    return {"ok": True}

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Get run status, including whether cancellation was requested."""
    async with SessionLocal() as s:
        run = await s.get(Run, _parse_run_id(run_id))
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")

        return RunResponse(
            id=str(run.id),
            workflow=run.workflow,
            event_name=run.event_name,
            status=run.status,
            cancel_requested=run.cancel_requested,
            jobs=run.jobs_json,
            error=run.error,
            failed_job=run.failed_job,
            failed_step=run.failed_step,
            created_at=run.created_at,
        )

@app.post("/runs/{run_id}/cancel")
async def cancel(run_id: str):
    """Idempotent: a queued run is cancelled at once, a running one is flagged for its agent."""
    dequeue = False
    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, _parse_run_id(run_id))
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            if run.status not in TERMINAL:
                run.cancel_requested = True
                if run.status == RunStatus.QUEUED.value:
                    run.status = RunStatus.CANCELLED.value
                    run.jobs_json = {name: "cancelled" for name in run.jobs_json}
                    dequeue = True
            status = run.status
    if dequeue:
        await drop_run(str(run.id))
    return {"ok": True, "status": status}

@app.exception_handler(TriggerciError)
async def triggerci_error(request: Request, exc: TriggerciError):
    return JSONResponse(status_code=500, content={"detail": str(exc)})
