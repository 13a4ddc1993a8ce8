from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

# Configure Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
from dotenv import load_dotenv

load_dotenv()

from services.errors import FlowEngineError
from services.flow_routes import router as flow_router
from celery_app import celery_app # Ensure Celery is loaded for task dispatch

app = FastAPI(title="Auto-Engagement API", description="Priority-ordered lead engagement flows (SQL + Celery)")

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex='.*', # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FlowEngineError)
async def flow_engine_error_handler(request: Request, exc: FlowEngineError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'Invalid request')}" if location else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.get("/")
def read_root():
    return {"status": "ok", "message": "Auto-Engagement API is running (PostgreSQL + Celery)"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.on_event("startup")
async def startup_event():
    # Auto-create tables (no migrations yet)
    from database.session import engine
    from database.base import Base
    from database.models import flow, execution
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


app.include_router(flow_router, prefix="/api/auto-engagement")
