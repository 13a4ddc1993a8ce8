"""
HTTP API tests for the auto-engagement endpoints
"""
import asyncio
import unittest
import sys
import os

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from httpx import ASGITransport, AsyncClient

from flow_fixtures import OTHER_OWNER, OWNER, build_components, create_test_database, email_action, wait_action
from main import app
from services.flow_routes import get_engine, get_flow_store, get_statistics

BASE = "/api/auto-engagement"


class TestAutoEngagementAPI(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db_engine, self.session_factory = await create_test_database()
        self.store, self.engine, self.scheduler, self.fakes, self.statistics = build_components(self.session_factory)

        app.dependency_overrides[get_flow_store] = lambda: self.store
        app.dependency_overrides[get_engine] = lambda: self.engine
        app.dependency_overrides[get_statistics] = lambda: self.statistics

        self.client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    async def asyncTearDown(self):
        await self.client.aclose()
        app.dependency_overrides.clear()
        await self.db_engine.dispose()

    async def create_flow(self, **payload):
        payload.setdefault("name", "flow")
        response = await self.client.post(f"{BASE}/flows", params={"user_id": OWNER}, json=payload)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    async def drain_background(self):
        await asyncio.gather(*list(self.engine._background))

    async def test_health(self):
        response = await self.client.get("/health")
        self.assertEqual(response.json(), {"status": "healthy"})

    async def test_create_and_get_flow(self):
        created = await self.create_flow(
            name="welcome",
            priority=1,
            trigger_conditions=[{"condition_type": "lead_stage", "condition_value": "new"}],
            actions=[email_action(1)],
        )
        self.assertEqual(created["priority"], 1)
        self.assertEqual(len(created["actions"]), 1)

        response = await self.client.get(f"{BASE}/flows/{created['id']}", params={"user_id": OWNER})
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["name"], "welcome")

        listed = (await self.client.get(f"{BASE}/flows", params={"user_id": OWNER})).json()
        self.assertEqual(listed["total"], 1)

    async def test_error_envelopes(self):
        await self.create_flow(name="first", priority=1)

        conflict = await self.client.post(f"{BASE}/flows", params={"user_id": OWNER}, json={"name": "second", "priority": 1})
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["success"], False)
        self.assertIn("Priority 1", conflict.json()["error"])

        invalid = await self.client.post(f"{BASE}/flows", params={"user_id": OWNER}, json={"name": ""})
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.json()["error"], "Flow name is required")

        missing = await self.client.get(f"{BASE}/flows/nope", params={"user_id": OWNER})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json(), {"success": False, "error": "Flow not found"})

        no_owner = await self.client.get(f"{BASE}/flows")
        self.assertEqual(no_owner.status_code, 400)

    async def test_update_toggle_delete(self):
        flow = await self.create_flow(name="editable")
        params = {"user_id": OWNER}

        response = await self.client.patch(f"{BASE}/flows/{flow['id']}", params=params, json={"description": "changed"})
        self.assertEqual(response.json()["data"]["description"], "changed")

        response = await self.client.patch(f"{BASE}/flows/{flow['id']}/toggle", params=params, json={"enabled": False})
        self.assertFalse(response.json()["data"]["enabled"])

        response = await self.client.delete(f"{BASE}/flows/{flow['id']}", params={"user_id": OTHER_OWNER})
        self.assertEqual(response.status_code, 404)
        response = await self.client.delete(f"{BASE}/flows/{flow['id']}", params=params)
        self.assertTrue(response.json()["data"]["deleted"])

    async def test_replace_actions_and_conditions(self):
        flow = await self.create_flow(name="seq", actions=[email_action(1)])
        params = {"user_id": OWNER}

        duplicate = await self.client.put(
            f"{BASE}/flows/{flow['id']}/actions", params=params,
            json={"actions": [email_action(1), wait_action(1)]},
        )
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.json()["error"], "Action orders must be unique within a flow")

        replaced = await self.client.put(
            f"{BASE}/flows/{flow['id']}/actions", params=params,
            json={"actions": [wait_action(1), email_action(2)]},
        )
        self.assertEqual([a["action_type"] for a in replaced.json()["data"]], ["wait", "email"])

        conditions = await self.client.put(
            f"{BASE}/flows/{flow['id']}/conditions", params=params,
            json={"conditions": [{"conditionType": "lead_score", "conditionValue": 60}]},
        )
        self.assertEqual(conditions.json()["data"][0]["condition_operator"], "greater_than")

    async def test_bulk_priority_update(self):
        a = await self.create_flow(name="a", priority=1)
        b = await self.create_flow(name="b", priority=2)

        response = await self.client.post(
            f"{BASE}/flows/priorities/bulk-update", params={"user_id": OWNER},
            json={"updates": [{"flow_id": a["id"], "priority": 2}, {"flow_id": b["id"], "priority": 1}]},
        )
        self.assertEqual([f["name"] for f in response.json()["data"]], ["b", "a"])

        next_priority = await self.client.get(f"{BASE}/flows/next-priority", params={"user_id": OWNER})
        self.assertEqual(next_priority.json()["data"]["priority"], 3)

    async def test_event_runs_matching_flow(self):
        await self.create_flow(
            name="new leads",
            trigger_conditions=[{"condition_type": "lead_stage", "condition_value": "new"}],
            actions=[email_action(1)],
        )

        unmatched = await self.client.post(f"{BASE}/events", json={"user_id": OWNER, "context": {"lead_stage": "won"}})
        self.assertEqual(unmatched.json(), {"success": True, "data": None, "matched": False})

        matched = await self.client.post(f"{BASE}/events", json={"user_id": OWNER, "context": {"lead_stage": "new"}})
        self.assertTrue(matched.json()["matched"])
        execution_id = matched.json()["data"]["id"]
        await self.drain_background()

        detail = await self.client.get(f"{BASE}/executions/{execution_id}", params={"user_id": OWNER})
        data = detail.json()["data"]
        self.assertEqual(data["status"], "completed")
        self.assertEqual([log["outcome"] for log in data["action_logs"]], ["success"])

        missing_owner = await self.client.post(f"{BASE}/events", json={"context": {}})
        self.assertEqual(missing_owner.status_code, 400)

    async def test_test_run_cancel_and_statistics(self):
        flow = await self.create_flow(name="waits", actions=[wait_action(1), email_action(2)])
        params = {"user_id": OWNER}

        run = await self.client.post(f"{BASE}/flows/{flow['id']}/test-run", params=params, json={"context": {"contact_id": 7}})
        execution = run.json()["data"]
        self.assertTrue(execution["is_test_run"])
        self.assertEqual(execution["contact_id"], "7")
        await self.drain_background()

        cancelled = await self.client.post(f"{BASE}/executions/{execution['id']}/cancel", params=params)
        self.assertEqual(cancelled.json()["data"]["status"], "cancelled")
        again = await self.client.post(f"{BASE}/executions/{execution['id']}/cancel", params=params)
        self.assertEqual(again.status_code, 404)

        listed = await self.client.get(f"{BASE}/flows/{flow['id']}/executions", params=params)
        self.assertEqual(len(listed.json()["data"]), 1)
        filtered = await self.client.get(f"{BASE}/executions", params={"user_id": OWNER, "status": "running"})
        self.assertEqual(filtered.json()["data"], [])
        bad_status = await self.client.get(f"{BASE}/executions", params={"user_id": OWNER, "status": "paused"})
        self.assertEqual(bad_status.status_code, 400)

        stats = await self.client.get(f"{BASE}/flows/{flow['id']}/statistics", params=params)
        self.assertEqual(stats.json()["data"]["executions"]["cancelled"], 1)
        overall = await self.client.get(f"{BASE}/executions/statistics", params=params)
        self.assertEqual(overall.json()["data"]["total"], 1)


if __name__ == '__main__':
    unittest.main()
