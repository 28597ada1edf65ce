"""FastAPI server — HTTP front end for plans, applies, workspaces and state."""

from __future__ import annotations

import logging
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from converge.config import SERVER_HOST, SERVER_PORT
from converge.engine import Engine
from converge.errors import (
    ConvergeError,
    GraphError,
    PartialApplyError,
    PlanError,
    ProviderError,
    ProviderNotFoundError,
    RecoverableError,
    ResourceNotFoundError,
    StateError,
    WorkspaceNotFoundError,
)
from converge.models import LifecyclePolicy, Plan

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Converge", version="0.1", description="Declarative infrastructure reconciliation engine")

# Speculative plans waiting for an explicit apply
plan_registry: dict[str, Plan] = {}

_engine: Engine | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = Engine()
    return _engine


def set_engine(engine: Engine | None):
    """Swap the engine behind the app (tests, embedding)."""
    global _engine
    _engine = engine
    plan_registry.clear()


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class ResourceSpec(BaseModel):
    type: str
    name: str
    index: int | str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    provider: str | None = None
    lifecycle: dict[str, Any] = Field(default_factory=dict)


class PlanRequest(BaseModel):
    resources: list[ResourceSpec] = Field(default_factory=list)
    destroy: bool = False
    targets: list[str] | None = None
    replace: list[str] | None = None
    refresh: bool = False


class ApplyRequest(BaseModel):
    plan_id: str | None = None
    resources: list[ResourceSpec] = Field(default_factory=list)
    targets: list[str] | None = None
    replace: list[str] | None = None
    parallelism: int | None = None


class DestroyRequest(BaseModel):
    resources: list[ResourceSpec] = Field(default_factory=list)
    targets: list[str] | None = None
    parallelism: int | None = None


class WorkspaceRequest(BaseModel):
    name: str


class ImportRequest(BaseModel):
    address: str
    provider_id: str
    provider: str | None = None
    lifecycle: dict[str, Any] = Field(default_factory=dict)


class MoveRequest(BaseModel):
    source: str
    destination: str


def _resources(specs: list[ResourceSpec]) -> list[dict]:
    return [s.model_dump() for s in specs]


# ---------------------------------------------------------------------------
# Error Mapping
# ---------------------------------------------------------------------------


def _status_for(error: ConvergeError) -> int:
    if isinstance(error, (GraphError, PlanError, ProviderNotFoundError)):
        return 422
    if isinstance(error, (WorkspaceNotFoundError, ResourceNotFoundError)):
        return 404
    if isinstance(error, (RecoverableError, StateError)):
        return 409
    if isinstance(error, ProviderError):
        return 502
    return 500


@app.exception_handler(ConvergeError)
async def converge_error_handler(request: Request, exc: ConvergeError) -> JSONResponse:
    status = _status_for(exc)
    if isinstance(exc, PartialApplyError):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": {"type": type(exc).__name__, "message": str(exc), "retryable": False}},
    )


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@app.get("/workspaces")
async def list_workspaces() -> list[str]:
    return get_engine().list_workspaces()


@app.post("/workspaces")
async def create_workspace(req: WorkspaceRequest) -> dict:
    snapshot = get_engine().new_workspace(req.name)
    return {"status": "created", "workspace": req.name, "lineage_id": snapshot.lineage_id}


@app.delete("/workspaces/{workspace}")
async def delete_workspace(workspace: str, force: bool = False) -> dict:
    await get_engine().delete_workspace(workspace, force=force)
    return {"status": "deleted", "workspace": workspace}


# ---------------------------------------------------------------------------
# Plan / Apply
# ---------------------------------------------------------------------------


@app.post("/workspaces/{workspace}/plan")
async def create_plan(workspace: str, req: PlanRequest) -> dict:
    """Speculative plan; keep its id to apply it later."""
    plan = await get_engine().plan(
        _resources(req.resources),
        workspace,
        destroy=req.destroy,
        targets=req.targets,
        replace=req.replace,
        refresh=req.refresh,
    )
    plan_registry[plan.id] = plan
    return plan.to_dict()


@app.get("/plans/{plan_id}")
async def get_plan(plan_id: str) -> dict:
    return _get_plan(plan_id).to_dict()


@app.post("/workspaces/{workspace}/apply")
async def apply(workspace: str, req: ApplyRequest) -> dict:
    """Apply a stored plan (``plan_id``) or plan-and-apply ``resources`` under one lock."""
    engine = get_engine()
    if req.plan_id:
        plan = _get_plan(req.plan_id)
        if plan.workspace_id != workspace:
            raise HTTPException(status_code=422, detail=f"Plan {plan.id} is for workspace '{plan.workspace_id}'")
        try:
            state = await engine.apply(plan, parallelism=req.parallelism)
        finally:
            plan_registry.pop(plan.id, None)
        return {"plan": plan.to_dict(), "state": state.to_dict()}

    result = await engine.plan_and_apply(
        _resources(req.resources),
        workspace,
        targets=req.targets,
        replace=req.replace,
        parallelism=req.parallelism,
    )
    return result.to_dict()


@app.post("/workspaces/{workspace}/destroy")
async def destroy(workspace: str, req: DestroyRequest) -> dict:
    result = await get_engine().destroy(
        _resources(req.resources), workspace, targets=req.targets, parallelism=req.parallelism
    )
    return result.to_dict()


@app.post("/workspaces/{workspace}/import")
async def import_resource(workspace: str, req: ImportRequest) -> dict:
    entry = await get_engine().import_resource(
        req.address,
        req.provider_id,
        workspace,
        provider_ref=req.provider,
        lifecycle=LifecyclePolicy.from_dict(req.lifecycle),
    )
    return entry.to_dict()


@app.post("/workspaces/{workspace}/refresh")
async def refresh(workspace: str) -> dict:
    snapshot, drift = await get_engine().refresh(workspace)
    return {"serial": snapshot.serial, "drift": drift}


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@app.get("/workspaces/{workspace}/state")
async def get_state(workspace: str) -> dict:
    return get_engine().state(workspace).to_dict()


@app.get("/workspaces/{workspace}/state/resources")
async def state_list(workspace: str) -> list[str]:
    return get_engine().state_list(workspace)


@app.get("/workspaces/{workspace}/state/resources/{address}")
async def state_show(workspace: str, address: str) -> dict:
    return get_engine().state_show(address, workspace).to_dict()


@app.delete("/workspaces/{workspace}/state/resources/{address}")
async def state_rm(workspace: str, address: str) -> dict:
    entry = await get_engine().state_rm(address, workspace)
    return {"status": "removed", "address": entry.address.key, "provider_id": entry.provider_id}


@app.post("/workspaces/{workspace}/state/mv")
async def state_mv(workspace: str, req: MoveRequest) -> dict:
    entry = await get_engine().state_mv(req.source, req.destination, workspace)
    return entry.to_dict()


@app.post("/workspaces/{workspace}/state/resources/{address}/taint")
async def taint(workspace: str, address: str) -> dict:
    return (await get_engine().taint(address, workspace)).to_dict()


@app.post("/workspaces/{workspace}/state/resources/{address}/untaint")
async def untaint(workspace: str, address: str) -> dict:
    return (await get_engine().untaint(address, workspace)).to_dict()


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


@app.get("/workspaces/{workspace}/lock")
async def get_lock(workspace: str) -> dict:
    lock = get_engine().lock_info(workspace)
    return {"locked": lock is not None, "lock": lock.to_dict() if lock else None}


@app.delete("/workspaces/{workspace}/lock")
async def force_unlock(workspace: str, operator: str = "operator") -> dict:
    """Operator-only: drop a lock left behind by a crashed holder."""
    removed = get_engine().force_unlock(workspace, operator)
    return {"status": "unlocked", "removed": removed.to_dict() if removed else None}


# ---------------------------------------------------------------------------
# Events (WebSocket + Polling)
# ---------------------------------------------------------------------------


@app.websocket("/events")
async def event_stream(websocket: WebSocket):
    """WebSocket stream of engine events."""
    await websocket.accept()
    bus = get_engine().event_bus
    queue = bus.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.debug("Event stream client disconnected")
    finally:
        bus.unsubscribe(queue)


@app.get("/events")
async def get_events(limit: int = 50, offset: int = 0, workspace: str | None = None) -> list[dict]:
    """Get recent events (polling fallback)."""
    events = get_engine().event_bus.recent(limit=limit, offset=offset)
    return [e.to_dict() for e in events if workspace is None or e.workspace == workspace]


@app.get("/audit")
async def get_audit(workspace: str | None = None) -> list[dict]:
    """Operator actions (force-unlock, state surgery, imports); never trimmed."""
    return [e.to_dict() for e in get_engine().event_bus.audit_trail(workspace)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_plan(plan_id: str) -> Plan:
    plan = plan_registry.get(plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail=f"Plan {plan_id} not found")
    return plan


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the Converge server."""
    logger.info(f"Starting Converge server on {SERVER_HOST}:{SERVER_PORT}")
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
