import unittest
import sys
import os

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from flow_fixtures import (
    FakeExecutor,
    OTHER_OWNER,
    OWNER,
    build_components,
    call_action,
    create_test_database,
    email_action,
    fake_executors,
    wait_action,
)
from services.errors import ExecutionError, NotFoundError


class TestFlowStatistics(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db_engine, self.session_factory = await create_test_database()
        executors = fake_executors(email=FakeExecutor(ExecutionError("bounced")))
        self.store, self.engine, self.scheduler, _, self.statistics = build_components(
            self.session_factory, executors=executors
        )

    async def asyncTearDown(self):
        await self.db_engine.dispose()

    async def test_counts_per_status_and_action(self):
        flow = await self.store.create(OWNER, {"name": "stats", "actions": [call_action(1), email_action(2)]})
        waiting = await self.store.create(OWNER, {"name": "waiting", "actions": [wait_action(1)]})

        await self.engine.start(flow, {})   # email fails -> failed
        await self.engine.start(flow, {})   # email succeeds -> completed
        await self.engine.start(waiting, {})  # stays running

        overall = await self.statistics.get_execution_statistics(OWNER)
        self.assertEqual(overall["total"], 3)
        self.assertEqual(overall["failed"], 1)
        self.assertEqual(overall["completed"], 1)
        self.assertEqual(overall["running"], 1)
        self.assertEqual(overall["cancelled"], 0)

        per_flow = await self.statistics.get_execution_statistics(OWNER, flow_id=flow.id)
        self.assertEqual(per_flow["total"], 2)

        actions = await self.statistics.get_action_statistics(flow.id, OWNER)
        self.assertEqual(actions["total"], 4)
        self.assertEqual(actions["by_action_type"]["ai_call"], {"success": 2, "skipped": 0, "failed": 0})
        self.assertEqual(actions["by_action_type"]["email"], {"success": 1, "skipped": 0, "failed": 1})

        summary = await self.statistics.get_flow_statistics(flow.id, OWNER)
        self.assertEqual(summary["flow_name"], "stats")
        self.assertEqual(summary["success_rate"], 50.0)

    async def test_empty_and_foreign(self):
        flow = await self.store.create(OWNER, {"name": "idle"})
        summary = await self.statistics.get_flow_statistics(flow.id, OWNER)
        self.assertEqual(summary["executions"]["total"], 0)
        self.assertIsNone(summary["success_rate"])
        self.assertEqual(summary["actions"], {"total": 0, "by_action_type": {}})

        with self.assertRaises(NotFoundError):
            await self.statistics.get_flow_statistics(flow.id, OTHER_OWNER)


if __name__ == '__main__':
    unittest.main()
