import os
from celery import Celery
from dotenv import load_dotenv
# Pre-load all models to populate SQLAlchemy registry for worker
from database.models import flow, execution

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "autoengage_worker",
    broker=REDIS_URL,
    backend=REDIS_URL
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
)

# Explicitly import the module containing tasks
celery_app.conf.update(include=["services.flow_tasks"])

# Sweep for waits whose countdown task never arrived (broker restart, lost message)
celery_app.conf.beat_schedule = {
    "resume-due-flow-executions": {
        "task": "resume_due_flow_executions",
        "schedule": float(os.getenv("FLOW_RESUME_SWEEP_SECONDS", "60")),
    },
}
