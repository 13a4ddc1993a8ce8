import asyncio
import json
import sys

from dotenv import load_dotenv

load_dotenv()

from database.session import AsyncSessionLocal
from database.models.execution import FlowExecution, FlowActionLog
from sqlalchemy import select


async def debug_latest_executions(user_id: str, limit: int = 5):
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            select(FlowExecution)
            .where(FlowExecution.user_id == user_id)
            .order_by(FlowExecution.started_at.desc())
            .limit(limit)
        )
        executions = res.scalars().all()

        if not executions:
            print("No executions found.")
            return

        for ex in executions:
            print(f"\n{'='*80}")
            print(f"EXECUTION: {ex.id}")
            print(f"Flow: {ex.flow_name} ({ex.flow_id})")
            print(f"Status: {ex.status}{' [test run]' if ex.is_test_run else ''}")
            print(f"Started: {ex.started_at} | Completed: {ex.completed_at}")
            print(f"Contact: {ex.contact_id}")
            if ex.resume_payload:
                print(f"Waiting: {json.dumps(ex.resume_payload)}")
            if ex.error_message:
                print(f"ERROR: {ex.error_message}")

            res_logs = await session.execute(
                select(FlowActionLog)
                .where(FlowActionLog.execution_id == ex.id)
                .order_by(FlowActionLog.id.asc())
            )
            logs = res_logs.scalars().all()
            print("--- ACTIONS ---")
            for log in logs:
                print(f"[{log.action_order}] {log.action_type} | {log.outcome}")
                print(f"    Detail: {json.dumps(log.detail, default=str)}")
            print(f"{'='*80}\n")


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python debug_executions.py <user_id> [limit]")
        sys.exit(1)
    asyncio.run(debug_latest_executions(sys.argv[1], int(sys.argv[2]) if len(sys.argv) > 2 else 5))
