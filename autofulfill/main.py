"""
Main application: FastAPI server + fulfillment worker.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Optional, List
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from autofulfill import config
from autofulfill.browser import BrowserManager
from autofulfill.credentials import CredentialError, FileCredentialResolver
from autofulfill.diagnostics import Diagnostics
from autofulfill.events import event_broker, EventType, WorkerState
from autofulfill.job_queue import InvalidTransitionError, JobNotFoundError, JobQueue
from autofulfill.models import JobStatus
from autofulfill.pipeline import FulfillmentPipeline
from autofulfill.session_pool import SessionPool
from autofulfill.verifier import ProductVerifier
from autofulfill.worker import FulfillmentWorker


RUN_WORKER = os.getenv("RUN_WORKER", "true").lower() == "true"

# Global instances, created at startup
browser_manager: Optional[BrowserManager] = None
session_pool: Optional[SessionPool] = None
job_queue: Optional[JobQueue] = None
pipeline: Optional[FulfillmentPipeline] = None
verifier: Optional[ProductVerifier] = None
resolver: Optional[FileCredentialResolver] = None
worker: Optional[FulfillmentWorker] = None
worker_task: Optional[asyncio.Task] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EnqueueRequest(_CamelModel):
    """Job intake payload."""
    source_order_ref: str = Field(alias="sourceOrderRef")
    account_ref: str = Field(alias="accountRef")
    product_ref: str = Field(alias="productRef")
    shipping_address_label: str = Field(default=config.SHIPPING_ADDRESS_LABEL, alias="shippingAddressLabel")
    attempt: int = 0


class VerifyRequest(_CamelModel):
    product_ref: str = Field(alias="productRef")


class ResubmitRequest(BaseModel):
    actor: str = "operator"


class HealthResponse(BaseModel):
    status: str
    worker_running: bool
    timestamp: str


class StatusResponse(BaseModel):
    state: str
    current_job: dict
    last_outcome: dict
    uptime_seconds: float
    worker_id: str
    worker_running: bool
    worker_paused: bool
    queued: int


class ReviewItem(BaseModel):
    job_id: str
    source_order_ref: str
    product_ref: str
    status: str
    attempt: int
    code: Optional[str] = None
    message: Optional[str] = None
    screenshot: Optional[str] = None
    updated_at: Optional[str] = None


async def startup():
    """Build the pipeline components and start the worker loop."""
    global browser_manager, session_pool, job_queue, pipeline, verifier, resolver, worker, worker_task

    await event_broker.emit(
        EventType.STEP,
        "application_startup",
        details={"worker_id": config.WORKER_ID, "run_worker": RUN_WORKER, "store": config.STORE_BASE_URL}
    )

    diagnostics = Diagnostics(config.ARTIFACTS_DIR)
    browser_manager = BrowserManager()
    session_pool = SessionPool(browser_manager, state_dir=config.SESSIONS_DIR)
    job_queue = JobQueue(config.JOBS_FILE)
    pipeline = FulfillmentPipeline(session_pool, diagnostics)
    verifier = ProductVerifier(browser_manager)
    resolver = FileCredentialResolver(config.CREDENTIALS_FILE, config.AES_SECRET_KEY)
    worker = FulfillmentWorker(job_queue, pipeline, resolver)

    if RUN_WORKER:
        worker_task = asyncio.create_task(worker.start())


async def shutdown():
    """Graceful shutdown: stop the worker, then close every session and the browser."""
    global worker_task

    await event_broker.emit(
        EventType.STEP,
        "application_shutdown",
        details={"message": "Graceful shutdown initiated"}
    )

    if worker:
        worker.stop()
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        worker_task = None

    if session_pool:
        await session_pool.release_all()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    await startup()
    yield
    await shutdown()


app = FastAPI(
    title="autofulfill",
    description="Automated purchase of marketplace orders on a retail site",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    running = bool(worker and worker.is_running)
    return HealthResponse(
        status="healthy" if running or not RUN_WORKER else "initializing",
        worker_running=running,
        timestamp=datetime.now(timezone.utc).isoformat()
    )


@app.get("/status", response_model=StatusResponse)
async def get_status():
    status = event_broker.get_status()
    queued = await job_queue.list(JobStatus.QUEUED) if job_queue else []
    return StatusResponse(
        state=status["state"],
        current_job=status["current_job"],
        last_outcome=status["last_outcome"],
        uptime_seconds=status["uptime_seconds"],
        worker_id=config.WORKER_ID,
        worker_running=bool(worker and worker.is_running),
        worker_paused=bool(worker and worker.is_paused),
        queued=len(queued),
    )


@app.get("/events")
async def events_stream():
    """SSE stream of structured JSON events."""
    async def event_generator():
        async for event in event_broker.subscribe():
            yield {
                "event": event.type.value,
                "data": event.to_json()
            }

    return EventSourceResponse(event_generator())


@app.get("/history")
async def get_event_history(limit: int = 50, job_id: Optional[str] = None):
    events = await event_broker.get_history(limit, job_id=job_id)
    return [
        {
            "ts": e.ts,
            "type": e.type.value,
            "step": e.step,
            "url": e.url,
            "details": e.details
        }
        for e in events
    ]


@app.post("/jobs")
async def enqueue_job(request: EnqueueRequest):
    job = await job_queue.enqueue(
        source_order_ref=request.source_order_ref,
        product_ref=request.product_ref,
        account_ref=request.account_ref,
        shipping_address_label=request.shipping_address_label,
        attempt=request.attempt,
    )
    return JSONResponse(content=job.to_dict(), status_code=202)


@app.get("/jobs")
async def list_jobs(status: Optional[JobStatus] = None):
    return [job.to_dict() for job in await job_queue.list(status)]


@app.get("/jobs/{job_id}")
async def get_job(job_id: str):
    try:
        job = await job_queue.get(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@app.post("/jobs/{job_id}/resubmit")
async def resubmit_job(job_id: str, request: ResubmitRequest = ResubmitRequest()):
    try:
        job = await job_queue.resubmit(job_id, actor=request.actor)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return job.to_dict()


@app.get("/review", response_model=List[ReviewItem])
async def review_queue():
    """Jobs waiting on an operator: permanent failures and manual review."""
    jobs = await job_queue.list(JobStatus.MANUAL_REVIEW) + await job_queue.list(JobStatus.FAILED_PERMANENT)
    items = []
    for job in jobs:
        failure = job.last_failure or {}
        items.append(ReviewItem(
            job_id=job.job_id,
            source_order_ref=job.source_order_ref,
            product_ref=job.product_ref,
            status=job.status.value,
            attempt=job.attempt,
            code=failure.get("code"),
            message=failure.get("message"),
            screenshot=failure.get("diagnosticRef"),
            updated_at=job.updated_at,
        ))
    return items


@app.post("/verify")
async def verify_product(request: VerifyRequest):
    """Operator tool: read price/availability for a product without buying it."""
    previous = event_broker.current_state
    event_broker.current_state = WorkerState.VERIFYING
    try:
        snapshot = await verifier.verify(request.product_ref)
    finally:
        event_broker.current_state = previous
    return snapshot.to_dict()


@app.post("/accounts/{account_ref}/verify")
async def verify_account(account_ref: str):
    """Sign in with the stored credentials and report whether it worked."""
    try:
        identity = resolver.resolve(account_ref)
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await pipeline.verify_credentials(account_ref, identity)
    if result.ok:
        return {"account": account_ref, "status": "healthy"}
    return JSONResponse(
        content={"account": account_ref, "status": "failed", **result.failure.to_dict()},
        status_code=422
    )


@app.post("/actions/pause")
async def pause_worker():
    if worker:
        worker.pause()
        await event_broker.emit(EventType.STATE_CHANGE, "worker_paused", details={"worker": config.WORKER_ID})
        return {"status": "paused"}
    raise HTTPException(status_code=400, detail="Worker not initialized")


@app.post("/actions/resume")
async def resume_worker():
    if worker:
        worker.resume()
        await event_broker.emit(EventType.STATE_CHANGE, "worker_resumed", details={"worker": config.WORKER_ID})
        return {"status": "resumed"}
    raise HTTPException(status_code=400, detail="Worker not initialized")


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        log_level="info",
        access_log=True
    )
