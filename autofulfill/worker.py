"""
Worker that drains the fulfillment job queue.
"""

import asyncio
from typing import Optional

from autofulfill import config
from autofulfill.credentials import CredentialError, FileCredentialResolver
from autofulfill.events import event_broker, EventType, WorkerState
from autofulfill.job_queue import InvalidTransitionError, JobQueue
from autofulfill.models import AutomationFailure, ErrorCode, FulfillmentJob, StepResult
from autofulfill.pipeline import FulfillmentPipeline


class FulfillmentWorker:
    """Claims one job at a time, runs it through the pipeline and reports the disposition."""

    def __init__(
        self,
        queue: JobQueue,
        pipeline: FulfillmentPipeline,
        resolver: FileCredentialResolver,
        worker_id: str = config.WORKER_ID,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        lease_seconds: float = config.JOB_LEASE_SECONDS,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.resolver = resolver
        self.worker_id = worker_id
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self._is_running = False
        self._is_paused = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    def pause(self) -> None:
        self._is_paused = True
        event_broker.current_state = WorkerState.PAUSED

    def resume(self) -> None:
        self._is_paused = False
        event_broker.current_state = WorkerState.IDLE

    def stop(self) -> None:
        self._is_running = False

    async def start(self) -> None:
        """Process jobs until stopped."""
        self._is_running = True

        await event_broker.emit(
            EventType.STEP,
            "worker_started",
            details={"worker": self.worker_id, "poll_interval": self.poll_interval}
        )

        await self.queue.recover_stale(self.lease_seconds, actor=self.worker_id)

        while self._is_running:
            while self._is_paused and self._is_running:
                await asyncio.sleep(1)

            try:
                processed = await self.run_once()
            except Exception as e:
                await event_broker.emit(
                    EventType.ERROR,
                    "worker_error",
                    details={"worker": self.worker_id, "error": str(e)}
                )
                processed = False

            if not processed:
                await self.pipeline.pool.evict_idle()
                await asyncio.sleep(self.poll_interval)

        await event_broker.emit(EventType.STEP, "worker_stopped", details={"worker": self.worker_id})

    async def run_once(self) -> bool:
        """Claim and process a single job. Returns False when the queue had nothing eligible."""
        event_broker.current_state = WorkerState.CLAIMING
        job = await self.queue.claim(self.worker_id)
        if job is None:
            event_broker.current_state = WorkerState.IDLE
            return False

        event_broker.current_job = {
            "job_id": job.job_id,
            "source_order_ref": job.source_order_ref,
            "product_ref": job.product_ref,
            "attempt": job.attempt + 1,
        }

        try:
            result = await self.process(job)
        except Exception as e:
            # The claim must still end in a reported outcome
            await event_broker.emit(
                EventType.ERROR,
                "worker_job_error",
                url=job.product_ref,
                details={"job_id": job.job_id, "worker": self.worker_id, "error": str(e)}
            )
            result = StepResult.failed(AutomationFailure(
                code=ErrorCode.UNKNOWN_FAILURE,
                message=f"{type(e).__name__}: {e}",
                retry_safe=False,
            ))

        if result.ok:
            try:
                stored = await self.queue.complete(job, result.value, actor=self.worker_id)
            except InvalidTransitionError:
                # Claim was recovered elsewhere while the purchase went through
                stored = await self.queue.record_late_outcome(job, result.value, actor=self.worker_id)
        else:
            stored = await self.queue.fail(job, result.failure, actor=self.worker_id)

        event_broker.last_outcome = {
            "job_id": stored.job_id,
            "status": stored.status.value,
            "outcome": stored.outcome,
            "failure": stored.last_failure,
        }
        event_broker.current_job = {}
        event_broker.current_state = WorkerState.IDLE
        return True

    async def process(self, job: FulfillmentJob) -> StepResult:
        try:
            identity = self.resolver.resolve(job.account_ref)
        except CredentialError as e:
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.CREDENTIALS_MISSING,
                message=str(e),
                retry_safe=False,
            ))
        return await self.pipeline.run(job, identity)
