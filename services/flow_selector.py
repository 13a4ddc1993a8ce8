import logging
from datetime import datetime
from typing import Callable, Optional

from services.business_hours import is_within_business_hours
from services.conditions import evaluate_trigger_conditions
from services.flow_store import FlowDefinitionStore

logger = logging.getLogger(__name__)


class FlowSelector:
    """Picks the single flow that should react to an event."""

    def __init__(self, flow_store: FlowDefinitionStore, clock: Optional[Callable[[], datetime]] = None):
        self.flow_store = flow_store
        self.clock = clock

    async def candidate_flows(self, owner_id: str):
        return await self.flow_store.enabled_flows(owner_id)

    async def select_flow(self, owner_id: str, event_context: dict, now: Optional[datetime] = None):
        """
        Walks the owner's enabled flows in priority order and returns the first one
        that is inside its business hours and whose trigger conditions all hold.
        Returns None when nothing matches.
        """
        if now is None and self.clock:
            now = self.clock()

        flows = await self.candidate_flows(owner_id)
        logger.info(f"[FlowSelector] Evaluating {len(flows)} enabled flows for owner {owner_id}")

        for flow in flows:
            if not is_within_business_hours(flow, now):
                logger.info(f"[FlowSelector] Flow {flow.id} ({flow.name}) skipped: outside business hours.")
                continue
            if not evaluate_trigger_conditions(flow.trigger_conditions, event_context, now):
                logger.info(f"[FlowSelector] Flow {flow.id} ({flow.name}) skipped: trigger conditions not met.")
                continue

            logger.info(f"[FlowSelector] Selected flow {flow.id} ({flow.name}) priority={flow.priority}")
            return flow

        logger.info(f"[FlowSelector] No flow matched for owner {owner_id}")
        return None
