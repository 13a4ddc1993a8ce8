import asyncio
import logging

from celery import shared_task

from services.action_executors import build_default_registry
from services.execution_repository import ExecutionRepository
from services.flow_engine import FlowExecutionEngine
from services.flow_store import FlowDefinitionStore
from services.scheduler import CeleryScheduler

logger = logging.getLogger(__name__)

_engine = None


def get_worker_engine() -> FlowExecutionEngine:
    global _engine
    if _engine is None:
        _engine = FlowExecutionEngine(
            flow_store=FlowDefinitionStore(),
            executions=ExecutionRepository(),
            executors=build_default_registry(),
            scheduler=CeleryScheduler(),
        )
    return _engine


# --- Celery Tasks ---

@shared_task(name="resume_flow_execution")
def resume_execution_task(execution_id: str, action_order: int):
    """
    Celery task wrapper to continue an execution once its wait has elapsed
    """
    asyncio.run(resume_execution_async(execution_id, action_order))


async def resume_execution_async(execution_id: str, action_order: int):
    try:
        await get_worker_engine().resume(execution_id, action_order)
    except Exception as e:
        logger.error(f"[FlowTasks] Error resuming execution {execution_id} at action {action_order}: {e}")
        raise


@shared_task(name="resume_due_flow_executions")
def resume_due_executions_task():
    """
    Periodic sweep (celery beat) that resumes waits whose countdown task was lost
    """
    return asyncio.run(resume_due_executions_async())


async def resume_due_executions_async() -> int:
    try:
        return await get_worker_engine().resume_due()
    except Exception as e:
        logger.error(f"[FlowTasks] Error sweeping overdue executions: {e}")
        raise
