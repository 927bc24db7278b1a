"""HTTP routes for the playground, mounted under ``/api/playground``."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .engine import ExecutionEngine, TraceStore
from .errors import INTERNAL_ERROR_MESSAGE, ErrorKind, error_entry
from .node_registry import NodeCategory, NodeRegistry
from .schemas import ExecutionMode, ExecutionPlan, ExecutionTrace, PlanGraph
from .state import VirtualStateStore

logger = logging.getLogger(__name__)

router = APIRouter()


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def get_registry(request: Request) -> NodeRegistry:
    return request.app.state.engine.registry


def get_trace_store(request: Request) -> TraceStore:
    return request.app.state.trace_store


def internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"errors": [error_entry(ErrorKind.INTERNAL, INTERNAL_ERROR_MESSAGE)]},
    )


def dump_trace(trace: ExecutionTrace) -> Dict[str, Any]:
    return trace.model_dump(by_alias=True, mode="json")


async def _run(request: Request, body: Dict[str, Any], mode: ExecutionMode) -> JSONResponse:
    payload = dict(body)
    graph = payload.pop("graph", None)
    seed = payload.pop("seed", None)
    payload["mode"] = mode.value

    trace = await get_engine(request).run(payload, graph=graph, seed=seed)
    get_trace_store(request).put(trace)

    errors = [e.model_dump(by_alias=True, exclude_none=True) for e in trace.errors]
    if any(e["kind"] == ErrorKind.INTERNAL.value for e in errors):
        return internal_error_response()
    if not trace.steps and errors:
        return JSONResponse(status_code=400, content={"trace": dump_trace(trace), "errors": errors})
    return JSONResponse(status_code=200, content={"trace": dump_trace(trace)})


@router.post("/simulate")
async def simulate(request: Request, body: Dict[str, Any] = Body(...)):
    return await _run(request, body, ExecutionMode.SIMULATE)


@router.post("/execute")
async def execute(request: Request, body: Dict[str, Any] = Body(...)):
    return await _run(request, body, ExecutionMode.EXECUTE)


@router.post("/validate")
async def validate(request: Request, body: Dict[str, Any] = Body(...)):
    payload = dict(body)
    graph = payload.pop("graph", None)
    payload.pop("seed", None)
    actions = payload.get("actions")
    actions_count = len(actions) if isinstance(actions, list) else 0
    try:
        plan = ExecutionPlan.model_validate(payload)
        parsed_graph = PlanGraph.model_validate(graph) if graph is not None else None
    except ValidationError as e:
        errors = ExecutionEngine.parse_errors(e)
        return {"valid": False, "errors": errors, "warnings": [], "actionsCount": actions_count}
    report = get_engine(request).validator.validate(plan, parsed_graph)
    result = report.to_dict()
    result["actionsCount"] = len(plan.actions)
    return result


@router.get("/runs")
async def list_runs(request: Request, limit: int = 50):
    traces = get_trace_store(request).recent(limit)
    runs = [
        {
            "runId": t.run_id,
            "planId": t.plan_id,
            "mode": t.mode.value,
            "status": t.status.value,
            "stepsCount": len(t.steps),
            "errors": len(t.errors),
            "warnings": len(t.warnings),
            "startedAt": t.metadata.started_at,
            "executionTimeMs": t.metadata.execution_time_ms,
        }
        for t in traces
    ]
    return {"total": len(runs), "runs": runs}


@router.get("/runs/{run_id}")
async def get_run(request: Request, run_id: str):
    trace = get_trace_store(request).get(run_id)
    if trace is None:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return {"trace": dump_trace(trace)}


@router.get("/nodes")
async def list_nodes(request: Request, category: Optional[str] = None):
    registry = get_registry(request)
    if category is None:
        definitions = registry.definitions()
    else:
        try:
            definitions = registry.by_category(category)
        except ValueError:
            valid = ", ".join(c.value for c in NodeCategory)
            raise HTTPException(status_code=400, detail=f"unknown category '{category}' (expected {valid})")
    return {"total": len(definitions), "nodes": [d.to_dict() for d in definitions]}


@router.get("/nodes/{action_type}")
async def get_node(request: Request, action_type: str):
    definition = get_registry(request).get_definition(action_type)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"unknown action type '{action_type}'")
    return definition.to_dict()


@router.get("/state")
async def unified_state(request: Request):
    store = VirtualStateStore.from_settings(get_engine(request).settings)
    return await store.unified_state()


@router.get("/health")
async def health(request: Request):
    engine = get_engine(request)
    return {
        "status": "operational",
        "features": {
            "simulation": True,
            "execution": engine.ledger is not None,
            "tracing": True,
            "stateManagement": True,
        },
        "nodes": len(engine.registry),
    }
