from __future__ import annotations

from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .history import RunHistory
from .orchestrator import Orchestrator
from .trigger import RawEvent

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    event_kind: str
    ref: str
    changed_files: list[str] = Field(default_factory=list)
    base_ref: Optional[str] = None

class EventResponse(BaseModel):
    run_id: str
    active: bool
    is_tag_ref: bool
    event_kind: str
    concurrency_key: str
    supersedes: Optional[str] = None
    reason: str = ""

class JobResponse(BaseModel):
    instance_id: str
    job: str
    name: str
    axis_binding: dict[str, Any] = Field(default_factory=dict)
    platform_tag: Optional[str] = None
    status: str
    reason: Optional[str] = None
    exit_code: Optional[int] = None
    detail: str = ""

class RunResponse(BaseModel):
    run_id: str
    workflow: str
    ref: str
    event_kind: str
    concurrency_key: str
    state: str  # running|finished
    outcome: Optional[str] = None
    superseded_by: Optional[str] = None
    jobs: list[JobResponse] = Field(default_factory=list)

class RunSummary(BaseModel):
    run_id: str
    ref: str
    event_kind: str
    concurrency_key: str
    outcome: str
    created_at: Optional[str] = None

# -------------------- App --------------------

def create_app(orchestrator: Orchestrator) -> FastAPI:
    app = FastAPI(title="releaseci control plane")
    app.state.orchestrator = orchestrator

    def history() -> Optional[RunHistory]:
        return orchestrator.history

    @app.post("/events", response_model=EventResponse, status_code=202)
    def post_event(req: EventRequest, background: BackgroundTasks):
        try:
            event = RawEvent(
                event_kind=req.event_kind,
                ref=req.ref,
                changed_files=tuple(req.changed_files),
                base_ref=req.base_ref,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        run = orchestrator.submit(event)
        # execution happens after the response is sent
        background.add_task(orchestrator.execute, run)

        return EventResponse(
            run_id=run.run_id,
            active=run.context.active,
            is_tag_ref=run.context.is_tag_ref,
            event_kind=run.context.event_kind.value,
            concurrency_key=str(run.key),
            supersedes=run.supersedes,
            reason=run.context.reason,
        )

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        live = orchestrator.get_run(run_id)
        if live is not None:
            data = live.to_dict()
            outcome = data["outcome"]["summary"] if data["outcome"] else None
            state = "running"
        else:
            h = history()
            data = h.get(run_id) if h is not None else None
            if data is None:
                raise HTTPException(status_code=404, detail="Run not found")
            outcome = data["outcome"]
            state = "finished"

        return RunResponse(
            run_id=data["run_id"],
            workflow=data["workflow"],
            ref=data["ref"],
            event_kind=data["event_kind"],
            concurrency_key=data["concurrency_key"],
            state=state,
            outcome=outcome,
            superseded_by=data["superseded_by"],
            jobs=[JobResponse(**j) for j in data["jobs"]],
        )

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs(concurrency_key: Optional[str] = None, limit: int = 50):
        h = history()
        if h is None:
            return []
        return [
            RunSummary(
                run_id=r["run_id"],
                ref=r["ref"],
                event_kind=r["event_kind"],
                concurrency_key=r["concurrency_key"],
                outcome=r["outcome"],
                created_at=r["created_at"],
            )
            for r in h.list_runs(concurrency_key=concurrency_key, limit=limit)
        ]

    return app


def app_from_env() -> FastAPI:
    """uvicorn --factory releaseci.service:app_from_env"""
    from . import settings
    from .runner import ShellTaskRunner, load_workflow

    wf = load_workflow(settings.WORKFLOW_PATH)
    secret_names = [s for j in wf.jobs for s in j.secrets]
    orchestrator = Orchestrator(
        wf,
        ShellTaskRunner("."),
        secrets=settings.load_secrets(secret_names),
        max_workers=settings.MAX_WORKERS,
        history=RunHistory(settings.DATABASE_URL),
    )
    return create_app(orchestrator)
