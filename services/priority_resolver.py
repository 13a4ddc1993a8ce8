import asyncio
import logging
from collections import defaultdict
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from database.base import utcnow
from database.models.flow import AutoEngagementFlow
from database.session import AsyncSessionLocal
from services.errors import ConflictError, NotFoundError, ValidationError
from services.flow_schemas import validate_priority

logger = logging.getLogger(__name__)


class PriorityResolver:
    """
    Owns the per-owner priority space: at most one flow per priority value.
    Every write that touches priorities runs under the owner's lock, and the
    (user_id, priority) unique constraint backs it up at the database.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory
        self._locks = defaultdict(asyncio.Lock)

    def lock_for(self, owner_id: str) -> asyncio.Lock:
        return self._locks[owner_id]

    async def assigned_priorities(self, session, owner_id: str, exclude_flow_ids: Iterable[str] = ()) -> set:
        stmt = select(AutoEngagementFlow.priority).where(
            AutoEngagementFlow.user_id == owner_id,
            AutoEngagementFlow.priority.is_not(None),
        )
        exclude_flow_ids = list(exclude_flow_ids)
        if exclude_flow_ids:
            stmt = stmt.where(AutoEngagementFlow.id.not_in(exclude_flow_ids))
        result = await session.execute(stmt)
        return set(result.scalars().all())

    async def next_available_in(self, session, owner_id: str) -> int:
        taken = await self.assigned_priorities(session, owner_id)
        candidate = 1
        while candidate in taken:
            candidate += 1
        return candidate

    async def is_available_in(self, session, owner_id: str, priority: int, exclude_flow_id: Optional[str] = None) -> bool:
        excluded = [exclude_flow_id] if exclude_flow_id else []
        return priority not in await self.assigned_priorities(session, owner_id, excluded)

    async def next_available_priority(self, owner_id: str) -> int:
        """Smallest positive integer not held by any of the owner's flows."""
        async with self.session_factory() as session:
            return await self.next_available_in(session, owner_id)

    async def is_priority_available(self, owner_id: str, priority: int, exclude_flow_id: Optional[str] = None) -> bool:
        async with self.session_factory() as session:
            return await self.is_available_in(session, owner_id, priority, exclude_flow_id)

    async def bulk_reassign(self, owner_id: str, updates: list):
        """
        Reassigns priorities for several flows at once, all-or-nothing.
        updates: [{"flow_id": "...", "priority": 1}, ...] ("id" is accepted for flow_id)
        """
        if not isinstance(updates, list) or not updates:
            raise ValidationError("Updates array is required")

        pairs = []
        for item in updates:
            if not isinstance(item, dict):
                raise ValidationError("Each update must be an object")
            flow_id = item.get("flow_id") or item.get("id")
            if not flow_id:
                raise ValidationError("Each update requires a flow id")
            priority = validate_priority(item.get("priority"))
            if priority is None:
                raise ValidationError("Each update requires a priority")
            pairs.append((flow_id, priority))

        priorities = [priority for _, priority in pairs]
        if len(priorities) != len(set(priorities)):
            raise ValidationError("Priority values must be unique")
        flow_ids = [flow_id for flow_id, _ in pairs]
        if len(flow_ids) != len(set(flow_ids)):
            raise ValidationError("Each flow may appear only once")

        async with self.lock_for(owner_id):
            async with self.session_factory() as session:
                # One batch lookup for ownership
                result = await session.execute(
                    select(AutoEngagementFlow.id).where(
                        AutoEngagementFlow.user_id == owner_id,
                        AutoEngagementFlow.id.in_(flow_ids),
                    )
                )
                owned = set(result.scalars().all())
                missing = next((flow_id for flow_id in flow_ids if flow_id not in owned), None)
                if missing:
                    raise NotFoundError(f"Flow {missing} not found")

                taken = await self.assigned_priorities(session, owner_id, flow_ids)
                clashes = sorted(priority for priority in priorities if priority in taken)
                if clashes:
                    raise ConflictError(f"Priority {clashes[0]} is already assigned to another flow")

                try:
                    # Release the batch's current values first so swaps never collide mid-way
                    await session.execute(
                        update(AutoEngagementFlow)
                        .where(AutoEngagementFlow.id.in_(flow_ids))
                        .values(priority=None)
                    )
                    now = utcnow()
                    for flow_id, priority in pairs:
                        await session.execute(
                            update(AutoEngagementFlow)
                            .where(AutoEngagementFlow.id == flow_id)
                            .values(priority=priority, updated_at=now)
                        )
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    logger.error(f"[PriorityResolver] Bulk reassignment rejected for owner {owner_id}: {e}")
                    raise ConflictError("Priority values collide with another flow")

        logger.info(f"[PriorityResolver] Reassigned {len(pairs)} priorities for owner {owner_id}")
