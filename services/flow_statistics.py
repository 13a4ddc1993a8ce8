import logging

from sqlalchemy import func, select

from database.models.execution import FlowActionLog, FlowExecution
from database.session import AsyncSessionLocal
from services.execution_repository import ActionOutcome, ExecutionStatus
from services.flow_store import FlowDefinitionStore

logger = logging.getLogger(__name__)


class FlowStatistics:
    """Read-only aggregates over executions and action logs, scoped to one owner."""

    def __init__(self, session_factory=AsyncSessionLocal, flow_store: FlowDefinitionStore = None):
        self.session_factory = session_factory
        self.flow_store = flow_store or FlowDefinitionStore(session_factory)

    async def get_execution_statistics(self, owner_id: str, flow_id: str = None) -> dict:
        """{"total": n, "running": n, "completed": n, "failed": n, "cancelled": n}"""
        async with self.session_factory() as session:
            stmt = (
                select(FlowExecution.status, func.count(FlowExecution.id))
                .where(FlowExecution.user_id == owner_id)
                .group_by(FlowExecution.status)
            )
            if flow_id:
                stmt = stmt.where(FlowExecution.flow_id == flow_id)
            rows = (await session.execute(stmt)).all()

        stats = {status.value: 0 for status in ExecutionStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(count for _, count in rows)
        return stats

    async def get_action_statistics(self, flow_id: str, owner_id: str) -> dict:
        """
        Outcome counts per action type across every execution of the flow.
        {"total": n, "by_action_type": {"email": {"success": n, "skipped": n, "failed": n}}}
        """
        async with self.session_factory() as session:
            stmt = (
                select(FlowActionLog.action_type, FlowActionLog.outcome, func.count(FlowActionLog.id))
                .join(FlowExecution, FlowActionLog.execution_id == FlowExecution.id)
                .where(FlowExecution.flow_id == flow_id, FlowExecution.user_id == owner_id)
                .group_by(FlowActionLog.action_type, FlowActionLog.outcome)
            )
            rows = (await session.execute(stmt)).all()

        by_action_type = {}
        for action_type, outcome, count in rows:
            counts = by_action_type.setdefault(action_type, {o.value: 0 for o in ActionOutcome})
            counts[outcome] = count
        return {"total": sum(count for _, _, count in rows), "by_action_type": by_action_type}

    async def get_flow_statistics(self, flow_id: str, owner_id: str) -> dict:
        flow = await self.flow_store.get(flow_id, owner_id)
        executions = await self.get_execution_statistics(owner_id, flow_id=flow_id)
        actions = await self.get_action_statistics(flow_id, owner_id)

        finished = executions["completed"] + executions["failed"]
        success_rate = round(executions["completed"] / finished * 100, 1) if finished else None
        logger.info(f"[FlowStatistics] Flow {flow_id}: {executions['total']} executions")

        return {
            "flow_id": flow.id,
            "flow_name": flow.name,
            "executions": executions,
            "actions": actions,
            "success_rate": success_rate,
        }
