import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

from services.action_executors import ActionExecutorRegistry
from services.conditions import evaluate_action_gate
from services.errors import ExecutionError, FatalActionError
from services.execution_repository import ActionOutcome, ExecutionRepository, ExecutionStatus
from services.flow_schemas import ActionType
from services.flow_selector import FlowSelector
from services.flow_store import FlowDefinitionStore
from services.scheduler import AsyncioScheduler, Scheduler, utc_now

logger = logging.getLogger(__name__)

# Hard ceiling per collaborator dispatch so a hung service cannot stall an execution
ACTION_TIMEOUT_SECONDS = float(os.getenv("FLOW_ACTION_TIMEOUT_SECONDS", "120"))


class CancellationToken:
    """Per-execution signal checked before every step and before a wait resumes."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _action_snapshot(action) -> dict:
    return {
        "action_order": action.action_order,
        "action_type": action.action_type,
        "action_config": dict(action.action_config or {}),
        "condition_type": action.condition_type,
        "condition_value": action.condition_value,
    }


class FlowExecutionEngine:
    """
    Runs a selected flow's actions in order against the action executors.

    Each execution walks its action snapshot sequentially. `wait` hands the
    rest of the walk to the scheduler instead of sleeping, so other
    executions keep progressing. Action failures are recorded, not raised.
    """

    def __init__(
        self,
        flow_store: FlowDefinitionStore,
        executions: ExecutionRepository,
        executors: ActionExecutorRegistry,
        scheduler: Optional[Scheduler] = None,
        selector: Optional[FlowSelector] = None,
        clock: Callable[[], datetime] = utc_now,
        action_timeout: float = ACTION_TIMEOUT_SECONDS,
    ):
        self.flow_store = flow_store
        self.executions = executions
        self.executors = executors
        self.scheduler = scheduler or AsyncioScheduler(self.resume)
        self.selector = selector or FlowSelector(flow_store, clock=clock)
        self.clock = clock
        self.action_timeout = action_timeout
        self._tokens = {}
        self._background = set()

    # --- Entry points ---

    async def trigger(self, owner_id: str, event_context: dict, is_test_run: bool = False, background: bool = False):
        """
        Event source entry point: selects the owner's best matching flow and starts it.
        Returns the execution, or None when no flow matched.
        """
        logger.info(f"[FlowEngine] Event for owner {owner_id} | Keys: {sorted(event_context.keys())}")
        flow = await self.selector.select_flow(owner_id, event_context, self.clock())
        if not flow:
            return None
        return await self.start(flow, event_context, is_test_run=is_test_run, background=background)

    async def run_flow(self, flow_id: str, owner_id: str, event_context: dict, is_test_run: bool = True, background: bool = False):
        """Manually run a specific flow, bypassing selection. NotFoundError if not owned."""
        flow = await self.flow_store.get(flow_id, owner_id)
        return await self.start(flow, event_context, is_test_run=is_test_run, background=background)

    async def start(self, flow, event_context: dict, is_test_run: bool = False, background: bool = False):
        """
        Opens a running execution for `flow` and walks its actions.
        With background=True the walk continues as a task and the running
        execution is returned immediately.
        """
        actions = sorted((_action_snapshot(a) for a in flow.actions), key=lambda a: a["action_order"])
        context = {
            "trigger": event_context,
            "variables": {},
            "results": {},
            "last_outcome": None,
            "stop_on_failure": bool(flow.stop_on_failure),
        }

        execution = await self.executions.create(
            flow_id=flow.id,
            user_id=flow.user_id,
            flow_name=flow.name,
            contact_id=str(event_context["contact_id"]) if event_context.get("contact_id") is not None else None,
            trigger_context=event_context,
            context_data=context,
            actions_snapshot=actions,
            is_test_run=is_test_run,
        )
        self._tokens[execution.id] = CancellationToken()
        logger.info(f"[FlowEngine] Started execution {execution.id} of flow {flow.id} ({flow.name}) with {len(actions)} actions")

        if background:
            task = asyncio.ensure_future(self._walk(execution.id, actions, context, 0))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return execution

        await self._walk(execution.id, actions, context, 0)
        return await self.executions.get(execution.id)

    async def resume(self, execution_id: str, action_order: int):
        """
        Called by the scheduler when a wait elapses. Logs the wait as done and
        continues with the next action. No-op for cancelled, finished, stale or
        duplicate resumptions.
        """
        token = self._tokens.get(execution_id)
        if token and token.cancelled:
            logger.info(f"[FlowEngine] Resume of {execution_id} dropped: cancelled")
            return None

        execution = await self.executions.claim_resume(execution_id, action_order)
        if not execution:
            logger.info(f"[FlowEngine] Resume of {execution_id} at action {action_order} ignored (not running or already claimed)")
            return None

        self._tokens.setdefault(execution_id, CancellationToken())
        actions = execution.actions_snapshot or []
        context = dict(execution.context_data or {})
        position = next(i for i, a in enumerate(actions) if a["action_order"] == action_order)
        wait_action = actions[position]

        recorded = await self._record(
            execution_id,
            wait_action,
            ActionOutcome.SUCCESS,
            {"duration_minutes": wait_action["action_config"].get("duration_minutes"), "resumed_at": self.clock().isoformat()},
            context,
        )
        if not recorded:
            return None

        await self._walk(execution_id, actions, context, position + 1)
        return await self.executions.get(execution_id)

    async def resume_due(self, now: Optional[datetime] = None) -> int:
        """
        Resumes every wait whose time has passed, whether or not its scheduled
        resumption ever arrives. Returns how many executions were resumed.
        """
        now = now or self.clock()
        resumed = 0
        for execution_id, action_order in await self.executions.due_resumptions(now):
            if await self.resume(execution_id, action_order):
                resumed += 1
        if resumed:
            logger.info(f"[FlowEngine] Sweep resumed {resumed} overdue executions")
        return resumed

    async def cancel(self, execution_id: str, owner_id: str):
        """
        Cancels a running execution. Returns the cancelled execution, or None if
        it was not found, not owned, or already finished.
        """
        execution = await self.executions.transition(execution_id, ExecutionStatus.CANCELLED, owner_id=owner_id)
        if not execution:
            return None

        token = self._tokens.pop(execution_id, None)
        if token:
            token.cancel()
        self.scheduler.cancel(execution_id)
        logger.info(f"[FlowEngine] Execution {execution_id} cancelled by owner {owner_id}")
        return execution

    # --- Reads ---

    async def list_executions(self, owner_id: str, **filters):
        return await self.executions.list_for_owner(owner_id, **filters)

    async def get_execution(self, execution_id: str, owner_id: str):
        return await self.executions.get_for_owner(execution_id, owner_id)

    # --- Walk ---

    def _cancelled(self, execution_id: str) -> bool:
        token = self._tokens.get(execution_id)
        return token is None or token.cancelled

    async def _walk(self, execution_id: str, actions: list, context: dict, start: int):
        for action in actions[start:]:
            if self._cancelled(execution_id):
                logger.info(f"[FlowEngine] Execution {execution_id} stopped before action {action['action_order']}: cancelled")
                return

            order = action["action_order"]
            action_type = ActionType(action["action_type"])

            if not evaluate_action_gate(action, context, self.clock()):
                recorded = await self._record(
                    execution_id,
                    action,
                    ActionOutcome.SKIPPED,
                    {"reason": "condition_not_met", "condition_type": action.get("condition_type")},
                    context,
                )
                if not recorded:
                    return
                continue

            if action_type == ActionType.WAIT:
                await self._suspend(execution_id, action, context)
                return

            outcome, detail, fatal = await self._dispatch(execution_id, action_type, action, context)

            # The dispatch already happened, but once cancellation is observed nothing more is logged
            if self._cancelled(execution_id):
                logger.info(f"[FlowEngine] Execution {execution_id} cancelled during action {order}; result not recorded")
                return

            if not await self._record(execution_id, action, outcome, detail, context):
                return

            if outcome == ActionOutcome.FAILED and (fatal or context.get("stop_on_failure")):
                logger.warning(f"[FlowEngine] Execution {execution_id} aborted after action {order} failed")
                break

        await self._finish(execution_id, context)

    async def _suspend(self, execution_id: str, action: dict, context: dict):
        delay_seconds = float(action["action_config"]["duration_minutes"]) * 60
        resume_at = self.clock() + timedelta(seconds=delay_seconds)
        suspended = await self.executions.suspend(
            execution_id,
            {"action_order": action["action_order"], "resume_at": resume_at.isoformat()},
            context,
        )
        if not suspended:
            return
        # Whichever process claims the resumption creates a fresh token
        self._tokens.pop(execution_id, None)
        self.scheduler.schedule_resume(execution_id, action["action_order"], delay_seconds)
        logger.info(f"[FlowEngine] Execution {execution_id} waiting until {resume_at.isoformat()}")

    async def _dispatch(self, execution_id: str, action_type: ActionType, action: dict, context: dict):
        """Returns (outcome, detail, fatal)."""
        executor = self.executors.executor_for(action_type)
        executor_context = {
            "execution_id": execution_id,
            "action_order": action["action_order"],
            "trigger": context.get("trigger", {}),
            "variables": context.get("variables", {}),
        }
        try:
            result = await asyncio.wait_for(
                executor.execute(dict(action["action_config"]), executor_context),
                timeout=self.action_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[FlowEngine] {action_type.value} action {action['action_order']} of {execution_id} timed out")
            return ActionOutcome.FAILED, {"error": f"Action exceeded {self.action_timeout:g}s dispatch ceiling"}, False
        except FatalActionError as e:
            logger.error(f"[FlowEngine] Fatal {action_type.value} failure in {execution_id}: {e.message}")
            return ActionOutcome.FAILED, {"error": e.message, "fatal": True, **e.detail}, True
        except ExecutionError as e:
            logger.error(f"[FlowEngine] {action_type.value} failure in {execution_id}: {e.message}")
            return ActionOutcome.FAILED, {"error": e.message, **e.detail}, False
        except Exception as e:
            logger.exception(f"[FlowEngine] Unexpected error from {action_type.value} executor in {execution_id}")
            return ActionOutcome.FAILED, {"error": str(e)}, False

        outcome = ActionOutcome.SUCCESS if result.success else ActionOutcome.FAILED
        return outcome, result.detail or {}, False

    async def _record(self, execution_id: str, action: dict, outcome: ActionOutcome, detail: dict, context: dict) -> bool:
        """Appends the action log entry and folds the result into the context."""
        if self._cancelled(execution_id):
            return False

        order = action["action_order"]
        context.setdefault("results", {})[str(order)] = {
            "action_type": action["action_type"],
            "outcome": outcome.value,
            "detail": detail,
        }
        if outcome != ActionOutcome.SKIPPED:
            context["last_outcome"] = outcome.value
            context["last_error"] = detail.get("error") if outcome == ActionOutcome.FAILED else None
            if action["action_type"] == ActionType.AI_CALL.value and detail.get("outcome"):
                context.setdefault("variables", {})["call_outcome"] = detail["outcome"]
            if outcome == ActionOutcome.SUCCESS:
                context.setdefault("variables", {}).update(
                    {k: v for k, v in detail.items() if k not in ("error", "fatal")}
                )

        appended = await self.executions.append_log(
            execution_id, order, action["action_type"], outcome, detail, context
        )
        if not appended:
            # Someone else moved the execution out of running
            self._tokens.pop(execution_id, None)
        return appended

    async def _finish(self, execution_id: str, context: dict):
        failed = context.get("last_outcome") == ActionOutcome.FAILED.value
        status = ExecutionStatus.FAILED if failed else ExecutionStatus.COMPLETED
        error_message = context.get("last_error") if failed else None

        await self.executions.transition(execution_id, status, error_message=error_message)
        self._tokens.pop(execution_id, None)
        logger.info(f"[FlowEngine] Execution {execution_id} finished: {status.value}")
