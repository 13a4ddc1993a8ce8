import logging
import os

from fastapi import APIRouter, Depends

from services.action_executors import build_default_registry
from services.errors import NotFoundError, ValidationError
from services.execution_repository import ExecutionRepository, ExecutionStatus
from services.flow_engine import FlowExecutionEngine
from services.flow_statistics import FlowStatistics
from services.flow_store import FlowDefinitionStore
from services.scheduler import CeleryScheduler

logger = logging.getLogger(__name__)

router = APIRouter()

_flow_store = None
_engine = None
_statistics = None


# --- Dependencies (overridable via app.dependency_overrides) ---

def get_flow_store() -> FlowDefinitionStore:
    global _flow_store
    if _flow_store is None:
        _flow_store = FlowDefinitionStore()
    return _flow_store


def get_engine() -> FlowExecutionEngine:
    global _engine
    if _engine is None:
        # FLOW_SCHEDULER=asyncio keeps waits in the API process (single-node dev setups)
        scheduler = None if os.getenv("FLOW_SCHEDULER", "celery") == "asyncio" else CeleryScheduler()
        _engine = FlowExecutionEngine(
            flow_store=get_flow_store(),
            executions=ExecutionRepository(),
            executors=build_default_registry(),
            scheduler=scheduler,
        )
    return _engine


def get_statistics() -> FlowStatistics:
    global _statistics
    if _statistics is None:
        _statistics = FlowStatistics(flow_store=get_flow_store())
    return _statistics


def ok(data=None, **extra):
    return {"success": True, "data": data, **extra}


def _body_dict(payload) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be an object")
    return payload


# --- Flows ---

@router.get("/flows")
async def list_flows(user_id: str, enabled_only: bool = False, limit: int = None, offset: int = None,
                     store: FlowDefinitionStore = Depends(get_flow_store)):
    flows = await store.list_flows(user_id, enabled_only=enabled_only, limit=limit, offset=offset)
    total = await store.count(user_id, enabled_only=enabled_only)
    return ok([flow.to_dict(include_details=True) for flow in flows], total=total)


@router.post("/flows", status_code=201)
async def create_flow(user_id: str, payload: dict, store: FlowDefinitionStore = Depends(get_flow_store)):
    flow = await store.create(user_id, _body_dict(payload))
    logger.info(f"[FlowAPI] Created flow {flow.id} for {user_id}")
    return ok(flow.to_dict(include_details=True))


@router.get("/flows/next-priority")
async def next_priority(user_id: str, store: FlowDefinitionStore = Depends(get_flow_store)):
    return ok({"priority": await store.priorities.next_available_priority(user_id)})


@router.post("/flows/priorities/bulk-update")
async def bulk_update_priorities(user_id: str, payload: dict, store: FlowDefinitionStore = Depends(get_flow_store)):
    """Request Body: {"updates": [{"flow_id": "...", "priority": 1}, ...]}"""
    await store.priorities.bulk_reassign(user_id, _body_dict(payload).get("updates"))
    flows = await store.list_flows(user_id)
    return ok([flow.to_dict() for flow in flows])


@router.get("/flows/{flow_id}")
async def get_flow(flow_id: str, user_id: str, store: FlowDefinitionStore = Depends(get_flow_store)):
    flow = await store.get(flow_id, user_id)
    return ok(flow.to_dict(include_details=True))


@router.patch("/flows/{flow_id}")
async def update_flow(flow_id: str, user_id: str, payload: dict, store: FlowDefinitionStore = Depends(get_flow_store)):
    flow = await store.update(flow_id, user_id, _body_dict(payload))
    return ok(flow.to_dict(include_details=True))


@router.delete("/flows/{flow_id}")
async def delete_flow(flow_id: str, user_id: str, store: FlowDefinitionStore = Depends(get_flow_store)):
    if not await store.delete(flow_id, user_id):
        raise NotFoundError("Flow not found")
    return ok({"id": flow_id, "deleted": True})


@router.patch("/flows/{flow_id}/toggle")
async def toggle_flow(flow_id: str, user_id: str, payload: dict, store: FlowDefinitionStore = Depends(get_flow_store)):
    flow = await store.toggle_enabled(flow_id, user_id, _body_dict(payload).get("enabled"))
    return ok(flow.to_dict())


@router.put("/flows/{flow_id}/conditions")
async def replace_conditions(flow_id: str, user_id: str, payload: dict, store: FlowDefinitionStore = Depends(get_flow_store)):
    """Request Body: {"conditions": [{"condition_type": "lead_stage", "condition_value": "new"}, ...]}"""
    conditions = await store.replace_trigger_conditions(flow_id, user_id, _body_dict(payload).get("conditions"))
    return ok([condition.to_dict() for condition in conditions])


@router.put("/flows/{flow_id}/actions")
async def replace_actions(flow_id: str, user_id: str, payload: dict, store: FlowDefinitionStore = Depends(get_flow_store)):
    """Request Body: {"actions": [{"action_order": 1, "action_type": "email", "action_config": {...}}, ...]}"""
    actions = await store.replace_actions(flow_id, user_id, _body_dict(payload).get("actions"))
    return ok([action.to_dict() for action in actions])


@router.get("/flows/{flow_id}/executions")
async def list_flow_executions(flow_id: str, user_id: str, status: str = None, limit: int = None, offset: int = None,
                               store: FlowDefinitionStore = Depends(get_flow_store),
                               engine: FlowExecutionEngine = Depends(get_engine)):
    await store.get(flow_id, user_id)
    executions = await engine.list_executions(user_id, flow_id=flow_id, status=_status(status), limit=limit, offset=offset)
    return ok([execution.to_dict() for execution in executions])


@router.get("/flows/{flow_id}/statistics")
async def flow_statistics(flow_id: str, user_id: str, statistics: FlowStatistics = Depends(get_statistics)):
    return ok(await statistics.get_flow_statistics(flow_id, user_id))


@router.post("/flows/{flow_id}/test-run")
async def test_run_flow(flow_id: str, user_id: str, payload: dict = None, engine: FlowExecutionEngine = Depends(get_engine)):
    """Runs one flow against a sample context, skipping selection. Request Body: {"context": {...}}"""
    context = (payload or {}).get("context", payload or {})
    execution = await engine.run_flow(flow_id, user_id, _body_dict(context), is_test_run=True, background=True)
    return ok(execution.to_dict())


# --- Executions ---

def _status(value):
    if value is None:
        return None
    try:
        return ExecutionStatus(value).value
    except ValueError:
        raise ValidationError(f"Unknown execution status: {value}")


@router.get("/executions")
async def list_executions(user_id: str, flow_id: str = None, status: str = None, test_runs_only: bool = False,
                          limit: int = None, offset: int = None, engine: FlowExecutionEngine = Depends(get_engine)):
    executions = await engine.list_executions(
        user_id, flow_id=flow_id, status=_status(status), test_runs_only=test_runs_only, limit=limit, offset=offset
    )
    return ok([execution.to_dict() for execution in executions])


@router.get("/executions/statistics")
async def execution_statistics(user_id: str, flow_id: str = None, statistics: FlowStatistics = Depends(get_statistics)):
    return ok(await statistics.get_execution_statistics(user_id, flow_id=flow_id))


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str, user_id: str, engine: FlowExecutionEngine = Depends(get_engine)):
    execution = await engine.get_execution(execution_id, user_id)
    return ok(execution.to_dict(include_logs=True))


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, user_id: str, engine: FlowExecutionEngine = Depends(get_engine)):
    execution = await engine.cancel(execution_id, user_id)
    if not execution:
        raise NotFoundError("Execution not found or not running")
    return ok(execution.to_dict())


# --- Event intake ---

@router.post("/events")
async def receive_event(payload: dict, engine: FlowExecutionEngine = Depends(get_engine)):
    """
    Lead event from the CRM / telephony side.
    Request Body: {"user_id": "...", "context": {"contact_id": "...", "lead_stage": "new", ...}}
    """
    payload = _body_dict(payload)
    user_id = payload.get("user_id")
    if not user_id:
        raise ValidationError("user_id is required")
    context = _body_dict(payload.get("context") or {})

    execution = await engine.trigger(user_id, context, background=True)
    if not execution:
        return ok(None, matched=False)
    return ok(execution.to_dict(), matched=True)
