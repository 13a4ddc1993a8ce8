import logging
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from database.base import utcnow
from database.models.flow import AutoEngagementFlow, FlowAction, FlowTriggerCondition
from database.session import AsyncSessionLocal
from services.business_hours import validate_business_hours
from services.errors import ConflictError, NotFoundError, ValidationError
from services.flow_schemas import (
    validate_actions,
    validate_name,
    validate_priority,
    validate_trigger_conditions,
)
from services.priority_resolver import PriorityResolver

logger = logging.getLogger(__name__)

_MISSING = object()


def _business_hours_from(data: dict):
    """
    Accepts either {"business_hours": {...} | None} or the flat
    use_custom_business_hours / business_hours_start / _end / _timezone keys.
    Returns _MISSING when the payload does not mention business hours.
    """
    if "business_hours" in data:
        return validate_business_hours(data["business_hours"])
    if "use_custom_business_hours" in data:
        if not data["use_custom_business_hours"]:
            return None
        return validate_business_hours({
            "start": data.get("business_hours_start"),
            "end": data.get("business_hours_end"),
            "timezone": data.get("business_hours_timezone"),
        })
    return _MISSING


def _apply_business_hours(flow: AutoEngagementFlow, hours):
    flow.business_hours_start = hours.start if hours else None
    flow.business_hours_end = hours.end if hours else None
    flow.business_hours_timezone = hours.timezone if hours else None


def _validate_bool(value, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field_name} field must be a boolean")
    return value


def _ordered(stmt):
    # Assigned priorities first (ascending), unassigned last in creation order
    return stmt.order_by(
        AutoEngagementFlow.priority.is_(None),
        AutoEngagementFlow.priority.asc(),
        AutoEngagementFlow.created_at.asc(),
        AutoEngagementFlow.id.asc(),
    )


class FlowDefinitionStore:
    """
    Owner-scoped persistence for flows and their trigger conditions and actions.
    Input is validated completely before a session is opened for writing, so a
    rejected call never leaves partial state behind.
    """

    def __init__(self, session_factory=AsyncSessionLocal, priority_resolver: Optional[PriorityResolver] = None):
        self.session_factory = session_factory
        self.priorities = priority_resolver or PriorityResolver(session_factory)

    async def _load(self, session, flow_id: str, owner_id: str) -> AutoEngagementFlow:
        stmt = (
            select(AutoEngagementFlow)
            .where(AutoEngagementFlow.id == flow_id, AutoEngagementFlow.user_id == owner_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        flow = result.scalar_one_or_none()
        if not flow:
            raise NotFoundError("Flow not found")
        return flow

    async def _ensure_owned(self, session, flow_id: str, owner_id: str):
        result = await session.execute(
            select(AutoEngagementFlow.id).where(
                AutoEngagementFlow.id == flow_id, AutoEngagementFlow.user_id == owner_id
            )
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError("Flow not found")

    # --- Reads ---

    async def get(self, flow_id: str, owner_id: str) -> AutoEngagementFlow:
        async with self.session_factory() as session:
            return await self._load(session, flow_id, owner_id)

    async def list_flows(self, owner_id: str, enabled_only: bool = False, limit: int = None, offset: int = None):
        async with self.session_factory() as session:
            stmt = select(AutoEngagementFlow).where(AutoEngagementFlow.user_id == owner_id)
            if enabled_only:
                stmt = stmt.where(AutoEngagementFlow.enabled.is_(True))
            stmt = _ordered(stmt)
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset is not None:
                stmt = stmt.offset(offset)
            result = await session.execute(stmt)
            return result.scalars().all()

    async def count(self, owner_id: str, enabled_only: bool = False) -> int:
        async with self.session_factory() as session:
            stmt = select(func.count(AutoEngagementFlow.id)).where(AutoEngagementFlow.user_id == owner_id)
            if enabled_only:
                stmt = stmt.where(AutoEngagementFlow.enabled.is_(True))
            result = await session.execute(stmt)
            return result.scalar_one()

    async def enabled_flows(self, owner_id: str) -> List[AutoEngagementFlow]:
        """Enabled flows in evaluation order."""
        return await self.list_flows(owner_id, enabled_only=True)

    # --- Writes ---

    async def create(self, owner_id: str, data: dict) -> AutoEngagementFlow:
        """
        Creates a flow, optionally with its trigger conditions and actions, in one transaction.
        Request Body: {
            "name": "...",
            "priority": 1,                 # optional, next free value when omitted
            "business_hours": {"start": "09:00:00", "end": "17:00:00", "timezone": "UTC"},
            "trigger_conditions": [...],
            "actions": [...]
        }
        """
        if not isinstance(data, dict):
            raise ValidationError("Flow payload must be an object")

        name = validate_name(data.get("name"))
        priority = validate_priority(data.get("priority"))
        hours = _business_hours_from(data)
        enabled = _validate_bool(data.get("enabled", True), "enabled")
        stop_on_failure = _validate_bool(data.get("stop_on_failure", False), "stop_on_failure")
        conditions = validate_trigger_conditions(data.get("trigger_conditions") or [])
        actions = validate_actions(data.get("actions") or [])

        async with self.priorities.lock_for(owner_id):
            async with self.session_factory() as session:
                if priority is None:
                    priority = await self.priorities.next_available_in(session, owner_id)
                elif not await self.priorities.is_available_in(session, owner_id, priority):
                    raise ConflictError(f"Priority {priority} is already assigned to another flow")

                flow = AutoEngagementFlow(
                    user_id=owner_id,
                    name=name,
                    description=data.get("description"),
                    enabled=enabled,
                    priority=priority,
                    stop_on_failure=stop_on_failure,
                )
                _apply_business_hours(flow, None if hours is _MISSING else hours)
                session.add(flow)

                try:
                    await session.flush()  # Get ID
                    session.add_all([
                        FlowTriggerCondition(flow_id=flow.id, position=index, **condition)
                        for index, condition in enumerate(conditions)
                    ])
                    session.add_all([FlowAction(flow_id=flow.id, **action) for action in actions])
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    logger.error(f"[FlowStore] Create rejected for owner {owner_id}: {e}")
                    raise ConflictError(f"Priority {priority} is already assigned to another flow")

                logger.info(f"[FlowStore] Created flow {flow.id} ({name}) priority={priority} for owner {owner_id}")
                return await self._load(session, flow.id, owner_id)

    async def update(self, flow_id: str, owner_id: str, fields: dict) -> AutoEngagementFlow:
        """Partial update of flow attributes. Conditions and actions have their own replace calls."""
        if not isinstance(fields, dict):
            raise ValidationError("Update payload must be an object")

        changes = {}
        if "name" in fields:
            changes["name"] = validate_name(fields["name"])
        if "description" in fields:
            changes["description"] = fields["description"]
        if "enabled" in fields:
            changes["enabled"] = _validate_bool(fields["enabled"], "enabled")
        if "stop_on_failure" in fields:
            changes["stop_on_failure"] = _validate_bool(fields["stop_on_failure"], "stop_on_failure")
        if "priority" in fields:
            changes["priority"] = validate_priority(fields["priority"])
        hours = _business_hours_from(fields)

        async with self.priorities.lock_for(owner_id):
            async with self.session_factory() as session:
                flow = await self._load(session, flow_id, owner_id)

                new_priority = changes.get("priority")
                if new_priority is not None and new_priority != flow.priority:
                    if not await self.priorities.is_available_in(session, owner_id, new_priority, flow_id):
                        raise ConflictError(f"Priority {new_priority} is already assigned to another flow")

                for key, value in changes.items():
                    setattr(flow, key, value)
                if hours is not _MISSING:
                    _apply_business_hours(flow, hours)
                flow.updated_at = utcnow()

                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    logger.error(f"[FlowStore] Update of flow {flow_id} rejected: {e}")
                    raise ConflictError(f"Priority {new_priority} is already assigned to another flow")

                logger.info(f"[FlowStore] Updated flow {flow_id}: {sorted(changes)}")
                return await self._load(session, flow_id, owner_id)

    async def toggle_enabled(self, flow_id: str, owner_id: str, enabled) -> AutoEngagementFlow:
        enabled = _validate_bool(enabled, "enabled")
        async with self.session_factory() as session:
            await self._ensure_owned(session, flow_id, owner_id)
            await session.execute(
                update(AutoEngagementFlow)
                .where(AutoEngagementFlow.id == flow_id)
                .values(enabled=enabled, updated_at=utcnow())
            )
            await session.commit()
            logger.info(f"[FlowStore] Flow {flow_id} {'enabled' if enabled else 'disabled'}")
            return await self._load(session, flow_id, owner_id)

    async def delete(self, flow_id: str, owner_id: str) -> bool:
        """
        Deletes a flow with its conditions and actions. Executions stay for audit.
        """
        async with self.priorities.lock_for(owner_id):
            async with self.session_factory() as session:
                try:
                    flow = await self._load(session, flow_id, owner_id)
                except NotFoundError:
                    return False

                await session.delete(flow)
                await session.commit()
                logger.info(f"[FlowStore] Deleted flow {flow_id} for owner {owner_id}")
                return True

    async def replace_trigger_conditions(self, flow_id: str, owner_id: str, conditions) -> List[FlowTriggerCondition]:
        """Discards the flow's condition set and installs the new one in a single transaction."""
        async with self.session_factory() as session:
            await self._ensure_owned(session, flow_id, owner_id)
            validated = validate_trigger_conditions(conditions)

            await session.execute(delete(FlowTriggerCondition).where(FlowTriggerCondition.flow_id == flow_id))
            session.add_all([
                FlowTriggerCondition(flow_id=flow_id, position=index, **condition)
                for index, condition in enumerate(validated)
            ])
            await session.execute(
                update(AutoEngagementFlow).where(AutoEngagementFlow.id == flow_id).values(updated_at=utcnow())
            )
            await session.commit()

            logger.info(f"[FlowStore] Replaced trigger conditions of flow {flow_id} ({len(validated)} conditions)")
            flow = await self._load(session, flow_id, owner_id)
            return list(flow.trigger_conditions)

    async def replace_actions(self, flow_id: str, owner_id: str, actions) -> List[FlowAction]:
        """Discards the flow's action list and installs the new one in a single transaction."""
        async with self.session_factory() as session:
            await self._ensure_owned(session, flow_id, owner_id)
            validated = validate_actions(actions)

            # Old rows go first so reused action orders never hit the unique constraint
            await session.execute(delete(FlowAction).where(FlowAction.flow_id == flow_id))
            await session.flush()
            session.add_all([FlowAction(flow_id=flow_id, **action) for action in validated])
            await session.execute(
                update(AutoEngagementFlow).where(AutoEngagementFlow.id == flow_id).values(updated_at=utcnow())
            )
            await session.commit()

            logger.info(f"[FlowStore] Replaced actions of flow {flow_id} ({len(validated)} actions)")
            flow = await self._load(session, flow_id, owner_id)
            return list(flow.actions)
