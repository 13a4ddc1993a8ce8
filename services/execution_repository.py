import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from database.base import utcnow
from database.models.execution import FlowActionLog, FlowExecution
from database.session import AsyncSessionLocal
from services.errors import NotFoundError

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})


class ActionOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ExecutionRepository:
    """
    Persistence for executions and their action logs.
    Status changes are compare-and-swap: only a running execution can move,
    and it moves exactly once.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def create(self, **fields) -> FlowExecution:
        async with self.session_factory() as session:
            execution = FlowExecution(status=ExecutionStatus.RUNNING.value, **fields)
            session.add(execution)
            await session.commit()
            return execution

    async def get(self, execution_id: str) -> Optional[FlowExecution]:
        """Unscoped lookup for the engine's own resumptions."""
        async with self.session_factory() as session:
            return await session.get(FlowExecution, execution_id)

    async def get_for_owner(self, execution_id: str, owner_id: str) -> FlowExecution:
        async with self.session_factory() as session:
            stmt = (
                select(FlowExecution)
                .options(selectinload(FlowExecution.action_logs))
                .where(FlowExecution.id == execution_id, FlowExecution.user_id == owner_id)
            )
            result = await session.execute(stmt)
            execution = result.scalar_one_or_none()
            if not execution:
                raise NotFoundError("Execution not found")
            return execution

    async def list_for_owner(
        self,
        owner_id: str,
        flow_id: str = None,
        status: str = None,
        test_runs_only: bool = False,
        limit: int = None,
        offset: int = None,
    ):
        async with self.session_factory() as session:
            stmt = select(FlowExecution).where(FlowExecution.user_id == owner_id)
            if flow_id:
                stmt = stmt.where(FlowExecution.flow_id == flow_id)
            if status:
                stmt = stmt.where(FlowExecution.status == ExecutionStatus(status).value)
            if test_runs_only:
                stmt = stmt.where(FlowExecution.is_test_run.is_(True))

            stmt = stmt.order_by(FlowExecution.started_at.desc(), FlowExecution.id.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset is not None:
                stmt = stmt.offset(offset)
            result = await session.execute(stmt)
            return result.scalars().all()

    async def logs_for(self, execution_id: str):
        async with self.session_factory() as session:
            result = await session.execute(
                select(FlowActionLog)
                .where(FlowActionLog.execution_id == execution_id)
                .order_by(FlowActionLog.id.asc())
            )
            return result.scalars().all()

    async def append_log(
        self,
        execution_id: str,
        action_order: int,
        action_type: str,
        outcome: ActionOutcome,
        detail: dict,
        context_data: dict,
    ) -> bool:
        """
        Appends one action log entry and stores the updated context in the same
        transaction. Nothing is written once the execution has left `running`.
        """
        async with self.session_factory() as session:
            # The guarded update takes the row before the log is inserted
            result = await session.execute(
                update(FlowExecution)
                .where(FlowExecution.id == execution_id, FlowExecution.status == ExecutionStatus.RUNNING.value)
                .values(context_data=context_data)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.info(f"[ExecutionRepository] Dropped log for action {action_order}: execution {execution_id} is not running")
                return False

            session.add(FlowActionLog(
                execution_id=execution_id,
                action_order=action_order,
                action_type=action_type,
                outcome=ActionOutcome(outcome).value,
                detail=detail,
            ))
            await session.commit()
            return True

    async def suspend(self, execution_id: str, resume_payload: dict, context_data: dict) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(FlowExecution)
                .where(FlowExecution.id == execution_id, FlowExecution.status == ExecutionStatus.RUNNING.value)
                .values(resume_payload=resume_payload, context_data=context_data)
            )
            await session.commit()
            return result.rowcount == 1

    async def claim_resume(self, execution_id: str, action_order: int) -> Optional[FlowExecution]:
        """
        Takes ownership of a pending wait resumption. Returns the execution when
        this caller won the claim, None for stale or duplicate resumptions.
        """
        async with self.session_factory() as session:
            execution = await session.get(FlowExecution, execution_id)
            if not execution or execution.status != ExecutionStatus.RUNNING.value:
                return None
            payload = execution.resume_payload or {}
            if payload.get("action_order") != action_order:
                return None

            result = await session.execute(
                update(FlowExecution)
                .where(
                    FlowExecution.id == execution_id,
                    FlowExecution.status == ExecutionStatus.RUNNING.value,
                    FlowExecution.resume_payload.is_not(None),
                )
                .values(resume_payload=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            return execution

    async def due_resumptions(self, now: datetime) -> List[Tuple[str, int]]:
        """
        (execution_id, action_order) for every waiting execution whose resume
        time has passed. Lets a sweep pick up waits whose scheduled message
        was lost.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(FlowExecution.id, FlowExecution.resume_payload).where(
                    FlowExecution.status == ExecutionStatus.RUNNING.value,
                    FlowExecution.resume_payload.is_not(None),
                )
            )
            rows = result.all()

        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        due = []
        for execution_id, payload in rows:
            try:
                resume_at = datetime.fromisoformat(payload["resume_at"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"[ExecutionRepository] Execution {execution_id} has an unreadable resume payload: {payload}")
                continue
            if resume_at.tzinfo is None:
                resume_at = resume_at.replace(tzinfo=timezone.utc)
            if resume_at <= now:
                due.append((execution_id, payload["action_order"]))
        return due

    async def transition(

        self,
        execution_id: str,
        new_status: ExecutionStatus,
        owner_id: str = None,
        error_message: str = None,
    ) -> Optional[FlowExecution]:
        """
        running -> completed | failed | cancelled. Returns the updated execution,
        or None when it was not found, not owned, or already terminal.
        """
        new_status = ExecutionStatus(new_status)
        if new_status not in TERMINAL_STATUSES:
            raise ValueError(f"{new_status.value} is not a terminal status")

        async with self.session_factory() as session:
            stmt = (
                update(FlowExecution)
                .where(FlowExecution.id == execution_id, FlowExecution.status == ExecutionStatus.RUNNING.value)
                .values(
                    status=new_status.value,
                    completed_at=utcnow(),
                    error_message=error_message,
                    resume_payload=None,
                )
                .execution_options(synchronize_session=False)
            )
            if owner_id is not None:
                stmt = stmt.where(FlowExecution.user_id == owner_id)

            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount != 1:
                return None

            logger.info(f"[ExecutionRepository] Execution {execution_id} -> {new_status.value}")
            return await session.get(FlowExecution, execution_id, populate_existing=True)
