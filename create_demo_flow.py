import asyncio
import os
import sys

import httpx

BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
API = f"{BASE_URL}/api/auto-engagement"

# New lead: call, then a WhatsApp follow-up if nobody picked up, then an email a day later
DEMO_FLOW = {
    "name": "Demo: New Lead Follow-up",
    "description": "Call new leads, nudge on WhatsApp if unanswered, email the next day.",
    "business_hours": {"start": "09:00:00", "end": "18:00:00", "timezone": "UTC"},
    "trigger_conditions": [
        {"condition_type": "lead_stage", "condition_value": "new"},
        {"condition_type": "lead_score", "condition_operator": "greater_than", "condition_value": 40},
    ],
    "actions": [
        {"action_order": 1, "action_type": "ai_call", "action_config": {"agent_id": "demo-agent", "phone_number_id": "demo-number"}},
        {
            "action_order": 2,
            "action_type": "whatsapp_message",
            "action_config": {"whatsapp_phone_number_id": "demo-wa", "template_id": "missed_call"},
            "condition_type": "call_outcome",
            "condition_value": "no_answer",
        },
        {"action_order": 3, "action_type": "wait", "action_config": {"duration_minutes": 1440}},
        {"action_order": 4, "action_type": "email", "action_config": {"email_template_id": "welcome_pack"}},
    ],
}


async def create_demo(user_id: str):
    print("--- Setting up demo auto-engagement flow ---")

    async with httpx.AsyncClient() as client:
        resp = await client.post(f"{API}/flows", params={"user_id": user_id}, json=DEMO_FLOW)
        body = resp.json()

        if resp.status_code == 201:
            flow = body["data"]
            print(f"\n✅ SUCCESS! Flow '{flow['name']}' created (ID: {flow['id']}, priority {flow['priority']})")
            print("\nHOW TO TEST:")
            print(f"POST {API}/events")
            print(f'  {{"user_id": "{user_id}", "context": {{"contact_id": "c-1", "lead_stage": "new", "lead_score": 80}}}}')
        else:
            print(f"❌ FAILED to create flow ({resp.status_code}): {body.get('error', resp.text)}")


if __name__ == "__main__":
    asyncio.run(create_demo(sys.argv[1] if len(sys.argv) > 1 else "demo-user"))
