"""FastAPI server for job submission, approvals and audit export."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncGenerator
from typing import Any

import click
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from governor import __version__
from governor.agents.http import HttpAgent
from governor.audit.reader import AsyncAuditReader
from governor.config import GovernorConfig
from governor.engine.orchestrator import Orchestrator
from governor.errors import (
    DecisionConflictError,
    GovernorError,
    MalformedJobError,
    UnknownApprovalError,
    UnknownJobError,
)
from governor.models import AgentDescriptor, Decision, JobStatus
from governor.storage.database import Database

app = FastAPI(
    title="Agent Governor API",
    version=__version__,
    description="Governed multi-agent orchestration: jobs, approvals and audit",
)

_start_time = time.monotonic()
_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator, built from the default configuration on first use."""
    global _orchestrator
    if _orchestrator is None:
        config = GovernorConfig.load()
        _orchestrator = Orchestrator(config, Database(config.data_dir))
    return _orchestrator


class AgentRegistration(BaseModel):
    agent_id: str = Field(min_length=1)
    capabilities: list[str] = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    concurrency_limit: int = Field(default=1, ge=1)
    timeout: float = Field(default=30.0, gt=0)


class DecisionRequest(BaseModel):
    reviewer: str = Field(min_length=1)
    decision: Decision
    rationale: str = ""


_STATUS_CODES: list[tuple[type[GovernorError], int]] = [
    (MalformedJobError, 422),
    (UnknownJobError, 404),
    (UnknownApprovalError, 404),
    (DecisionConflictError, 409),
]


@app.exception_handler(GovernorError)
async def governor_error(request: Request, exc: GovernorError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/api/health")
async def health(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - _start_time
    return {
        "status": "ok",
        "version": __version__,
        "uptime_seconds": round(uptime, 1),
        "audit_seq": orch.audit.last_seq,
    }


@app.get("/api/status")
def status(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Jobs by status, agent load, circuits and drift."""
    return orch.status()


@app.post("/api/jobs", status_code=202)
def submit_job(
    request: dict[str, Any],
    background: BackgroundTasks,
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Submit a job; it runs in the background."""
    job = orch.submit(request)
    background.add_task(orch.run, job.job_id)
    return {"job_id": job.job_id, "status": job.status.value, "subtasks": sorted(job.subtasks)}


@app.get("/api/jobs")
def list_jobs(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    jobs = [job.to_dict(include_subtasks=False) for job in orch.jobs()]
    return {"jobs": jobs, "count": len(jobs)}


@app.get("/api/jobs/{job_id}")
def get_job(job_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orch.status(job_id)


@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"job_id": job_id, "status": orch.cancel(job_id).value}


@app.get("/api/agents")
def list_agents(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    stats = orch.registry.get_stats()
    circuits = orch.breakers.states()
    for agent_id, agent in stats["agents"].items():
        agent["circuit"] = circuits.get(agent_id, "closed")
    return stats


@app.post("/api/agents", status_code=201)
def register_agent(
    registration: AgentRegistration, orch: Orchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    """Register an HTTP agent endpoint."""
    descriptor = AgentDescriptor(
        agent_id=registration.agent_id,
        capabilities=frozenset(registration.capabilities),
        concurrency_limit=registration.concurrency_limit,
        endpoint=registration.endpoint,
    )
    orch.register_agent(descriptor, HttpAgent(registration.endpoint, timeout=registration.timeout))
    return descriptor.to_dict()


@app.delete("/api/agents/{agent_id}")
def deregister_agent(
    agent_id: str, orch: Orchestrator = Depends(get_orchestrator)
) -> JSONResponse:
    if not orch.deregister_agent(agent_id):
        return JSONResponse(status_code=404, content={"error": "UnknownAgent", "agent_id": agent_id})
    return JSONResponse(content={"agent_id": agent_id, "deregistered": True})


@app.get("/api/approvals")
def list_approvals(
    job_id: str | None = None, orch: Orchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    pending = [r.to_dict() for r in orch.pending_approvals(job_id)]
    return {"pending": pending, "count": len(pending)}


@app.post("/api/approvals/{subtask_id}")
def decide(
    subtask_id: str,
    decision: DecisionRequest,
    background: BackgroundTasks,
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Record a reviewer decision; the job resumes in the background."""
    record = orch.record_decision(
        subtask_id, decision.reviewer, decision.decision, decision.rationale, resume=False
    )
    request = orch.gate.get_request(subtask_id)
    if request is not None and orch.get_job(request.job_id).status == JobStatus.AWAITING_APPROVAL:
        background.add_task(orch.run, request.job_id)
    return record.to_dict()


@app.get("/api/audit")
async def export_audit(
    job_id: str | None = None,
    entity_id: str | None = None,
    event_type: str | None = None,
    since_seq: int = 0,
    limit: int | None = None,
    orch: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Stream audit entries as JSON lines, in sequence order."""
    filters: dict[str, Any] = {
        "job_id": job_id,
        "entity_id": entity_id,
        "event_type": event_type,
        "since_seq": since_seq,
        "limit": limit,
    }

    async def lines() -> AsyncGenerator[str, None]:
        if orch.db is None:
            for entry in orch.audit.query(**filters):
                yield json.dumps(entry.to_dict(), sort_keys=True) + "\n"
            return
        async with AsyncAuditReader(orch.db.db_path) as reader:
            async for entry in reader.iter_entries(**filters):
                yield json.dumps(entry.to_dict(), sort_keys=True) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@click.command()
@click.option("--port", default=3850, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Governor API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
