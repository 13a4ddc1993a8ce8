import unittest
import sys
import os
from datetime import datetime, timezone

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from flow_fixtures import FixedClock, OTHER_OWNER, OWNER, create_test_database
from services.flow_selector import FlowSelector
from services.flow_store import FlowDefinitionStore

NOON_UTC = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestFlowSelector(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db_engine, self.session_factory = await create_test_database()
        self.store = FlowDefinitionStore(self.session_factory)
        self.selector = FlowSelector(self.store, clock=FixedClock(NOON_UTC))

    async def asyncTearDown(self):
        await self.db_engine.dispose()

    async def test_lowest_matching_priority_wins(self):
        await self.store.create(OWNER, {
            "name": "qualified only",
            "priority": 1,
            "trigger_conditions": [{"condition_type": "lead_stage", "condition_value": "qualified"}],
        })
        await self.store.create(OWNER, {
            "name": "new leads",
            "priority": 2,
            "trigger_conditions": [{"condition_type": "lead_stage", "condition_value": "new"}],
        })
        await self.store.create(OWNER, {
            "name": "catch all",
            "priority": 3,
        })

        flow = await self.selector.select_flow(OWNER, {"lead_stage": "new"})
        self.assertEqual(flow.name, "new leads")

        flow = await self.selector.select_flow(OWNER, {"lead_stage": "lost"})
        self.assertEqual(flow.name, "catch all")

    async def test_disabled_flows_are_ignored(self):
        await self.store.create(OWNER, {"name": "off", "priority": 1, "enabled": False})
        await self.store.create(OWNER, {
            "name": "on",
            "priority": 2,
            "trigger_conditions": [{"condition_type": "tag", "condition_value": "vip"}],
        })
        flow = await self.selector.select_flow(OWNER, {"tags": ["VIP"]})
        self.assertEqual(flow.name, "on")

    async def test_business_hours_filter(self):
        await self.store.create(OWNER, {
            "name": "tokyo office",
            "priority": 1,
            # 12:00 UTC is 21:00 in Tokyo
            "business_hours": {"start": "09:00:00", "end": "17:00:00", "timezone": "Asia/Tokyo"},
        })
        await self.store.create(OWNER, {
            "name": "london office",
            "priority": 2,
            "business_hours": {"start": "09:00:00", "end": "17:00:00", "timezone": "Europe/London"},
        })
        flow = await self.selector.select_flow(OWNER, {})
        self.assertEqual(flow.name, "london office")

    async def test_no_match_returns_none(self):
        await self.store.create(OWNER, {
            "name": "score",
            "trigger_conditions": [{"condition_type": "lead_score", "condition_value": 80}],
        })
        self.assertIsNone(await self.selector.select_flow(OWNER, {"lead_score": 20}))
        self.assertIsNone(await self.selector.select_flow(OTHER_OWNER, {"lead_score": 99}))

    async def test_explicit_now_overrides_clock(self):
        await self.store.create(OWNER, {
            "name": "mornings",
            "business_hours": {"start": "06:00:00", "end": "10:00:00"},
        })
        self.assertIsNone(await self.selector.select_flow(OWNER, {}))
        morning = datetime(2024, 3, 4, 7, 30, tzinfo=timezone.utc)
        flow = await self.selector.select_flow(OWNER, {}, now=morning)
        self.assertEqual(flow.name, "mornings")


if __name__ == '__main__':
    unittest.main()
