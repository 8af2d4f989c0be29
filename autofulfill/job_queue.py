"""
File-backed fulfillment job queue.

Jobs live in one JSON file guarded by a thread lock and a FileLock, so
several worker processes on a host can claim from it. A source order never
has two jobs in Processing at the same time.
"""

import asyncio
import json
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from filelock import FileLock, Timeout

from autofulfill import config
from autofulfill.events import event_broker, EventType
from autofulfill.models import (
    AutomationFailure,
    ErrorCode,
    FulfillmentJob,
    JobStatus,
    MANUAL_REVIEW_CODES,
    PurchaseOutcome,
)


class JobNotFoundError(KeyError):
    pass


class InvalidTransitionError(ValueError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def disposition_for(failure: AutomationFailure, attempts_remaining: int) -> JobStatus:
    """Where a job goes after `failure`, given attempts left after this one."""
    if failure.retry_safe:
        return JobStatus.QUEUED if attempts_remaining > 0 else JobStatus.FAILED_PERMANENT
    if failure.code in MANUAL_REVIEW_CODES:
        return JobStatus.MANUAL_REVIEW
    return JobStatus.FAILED_PERMANENT


class JobQueue:
    """Claim/complete/fail over a JSON file of FulfillmentJobs."""

    def __init__(
        self,
        path: Path = config.JOBS_FILE,
        max_attempts: int = config.JOB_MAX_ATTEMPTS,
        backoff_seconds: float = config.RETRY_BACKOFF_SECONDS,
        poll_seconds: float = 0.05,
    ):
        self.path = Path(path)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.poll_seconds = poll_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._thread_lock = threading.Lock()
        self._file_lock = FileLock(str(self.path) + ".lock")

    # ------------------------------------------------------------------ storage

    async def _acquire(self) -> None:
        """Take both locks, polling so a lock held elsewhere never stalls the event loop."""
        while True:
            if self._thread_lock.acquire(blocking=False):
                try:
                    self._file_lock.acquire(timeout=0)
                    return
                except Timeout:
                    self._thread_lock.release()
            await asyncio.sleep(self.poll_seconds)

    @asynccontextmanager
    async def _locked(self, save: bool = True) -> AsyncIterator[Dict[str, FulfillmentJob]]:
        """Load all jobs under both locks and, when `save` is set, write them back on exit."""
        await self._acquire()
        try:
            jobs = self._load()
            yield jobs
            if save:
                self._save(jobs)
        finally:
            self._file_lock.release()
            self._thread_lock.release()

    def _load(self) -> Dict[str, FulfillmentJob]:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            data = json.load(f)
        return {item["job_id"]: FulfillmentJob.from_dict(item) for item in data if isinstance(item, dict)}

    def _save(self, jobs: Dict[str, FulfillmentJob]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump([job.to_dict() for job in jobs.values()], f, indent=2)
        tmp_path.replace(self.path)

    @staticmethod
    def _audit(job: FulfillmentJob, actor: str, action: str, **extra) -> Dict[str, object]:
        ts = _now().isoformat()
        entry = {"ts": ts, "actor": actor, "action": action, "status": job.status.value}
        entry.update({k: v for k, v in extra.items() if v is not None})
        job.history.append(entry)
        job.updated_at = ts
        return entry

    def _get(self, jobs: Dict[str, FulfillmentJob], job_id: str) -> FulfillmentJob:
        try:
            return jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id) from None

    # ------------------------------------------------------------------ intake

    async def enqueue(
        self,
        source_order_ref: str,
        product_ref: str,
        account_ref: str,
        shipping_address_label: str,
        attempt: int = 0,
        max_attempts: Optional[int] = None,
    ) -> FulfillmentJob:
        """Add a job. Returns the existing one if the order already has a live job."""
        async with self._locked() as jobs:
            for job in jobs.values():
                if job.source_order_ref == source_order_ref and not job.status.is_terminal:
                    return job

            job = FulfillmentJob(
                job_id=uuid.uuid4().hex,
                source_order_ref=source_order_ref,
                product_ref=product_ref,
                account_ref=account_ref,
                shipping_address_label=shipping_address_label,
                attempt=attempt,
                max_attempts=max_attempts or self.max_attempts,
            )
            self._audit(job, "intake", "enqueued")
            jobs[job.job_id] = job

        await event_broker.emit(
            EventType.JOB_ENQUEUED,
            "job_enqueued",
            url=job.product_ref,
            details={"job_id": job.job_id, "source_order_ref": source_order_ref}
        )
        return job

    # ------------------------------------------------------------------ worker side

    async def claim(self, worker_id: str) -> Optional[FulfillmentJob]:
        """Take the oldest eligible queued job, or None if there is nothing to do."""
        now = _now()
        async with self._locked() as jobs:
            busy_orders = {j.source_order_ref for j in jobs.values() if j.status == JobStatus.PROCESSING}
            eligible = [
                j for j in jobs.values()
                if j.status == JobStatus.QUEUED
                and j.source_order_ref not in busy_orders
                and (j.available_at is None or datetime.fromisoformat(j.available_at) <= now)
            ]
            if not eligible:
                return None

            job = min(eligible, key=lambda j: (j.available_at or j.created_at, j.created_at))
            job.status = JobStatus.PROCESSING
            job.claimed_by = worker_id
            job.claimed_at = now.isoformat()
            self._audit(job, worker_id, "claimed", attempt=job.attempt + 1)

        await event_broker.emit(
            EventType.JOB_CLAIMED,
            "job_claimed",
            url=job.product_ref,
            details={"job_id": job.job_id, "worker": worker_id, "attempt": job.attempt + 1}
        )
        return job

    async def complete(self, job: FulfillmentJob, outcome: PurchaseOutcome, actor: Optional[str] = None) -> FulfillmentJob:
        """Mark a claimed job Fulfilled and store its outcome."""
        async with self._locked() as jobs:
            stored = self._get(jobs, job.job_id)
            if stored.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(f"Job {job.job_id} is {stored.status.value}, not Processing")
            actor = actor or stored.claimed_by or "worker"
            stored.attempt += 1
            stored.status = JobStatus.FULFILLED
            stored.outcome = outcome.to_dict()
            stored.last_failure = None
            stored.claimed_by = None
            entry = self._audit(stored, actor, "fulfilled", external_order_id=outcome.external_order_id)

        await event_broker.emit(
            EventType.JOB_FULFILLED,
            "job_fulfilled",
            url=stored.product_ref,
            details={"job_id": stored.job_id, "source_order_ref": stored.source_order_ref, "audit": entry, **outcome.to_dict()}
        )
        return stored

    async def record_late_outcome(self, job: FulfillmentJob, outcome: PurchaseOutcome, actor: Optional[str] = None) -> FulfillmentJob:
        """
        Attach a confirmed purchase to a job this worker no longer holds.

        The status is left alone: a job recovered into manual review stays there,
        now carrying the order id an operator needs.
        """
        async with self._locked() as jobs:
            stored = self._get(jobs, job.job_id)
            stored.outcome = outcome.to_dict()
            entry = self._audit(
                stored, actor or job.claimed_by or "worker", "late_outcome",
                external_order_id=outcome.external_order_id,
            )

        await event_broker.emit(
            EventType.ACTION_REQUIRED,
            "job_late_outcome",
            url=stored.product_ref,
            details={"job_id": stored.job_id, "source_order_ref": stored.source_order_ref, "audit": entry, **outcome.to_dict()}
        )
        return stored

    async def fail(self, job: FulfillmentJob, failure: AutomationFailure, actor: Optional[str] = None) -> FulfillmentJob:
        """Count the attempt, then reschedule or move to a terminal state."""
        async with self._locked() as jobs:
            stored = self._get(jobs, job.job_id)
            if stored.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(f"Job {job.job_id} is {stored.status.value}, not Processing")
            actor = actor or stored.claimed_by or "worker"
            stored.attempt += 1
            stored.last_failure = failure.to_dict()
            stored.claimed_by = None
            stored.status = disposition_for(failure, stored.attempts_remaining)

            if stored.status == JobStatus.QUEUED:
                delay = self.backoff_seconds * (2 ** (stored.attempt - 1))
                stored.available_at = (_now() + timedelta(seconds=delay)).isoformat()
                action = "rescheduled"
            else:
                stored.available_at = None
                action = "failed" if stored.status == JobStatus.FAILED_PERMANENT else "manual_review"

            entry = self._audit(
                stored, actor, action,
                code=failure.code.value,
                message=failure.message,
                diagnostic_ref=failure.diagnostic_ref,
            )

        event_type = {
            JobStatus.QUEUED: EventType.JOB_RESCHEDULED,
            JobStatus.FAILED_PERMANENT: EventType.JOB_FAILED,
            JobStatus.MANUAL_REVIEW: EventType.JOB_MANUAL_REVIEW,
        }[stored.status]
        await event_broker.emit(
            event_type,
            f"job_{action}",
            url=stored.product_ref,
            details={
                "job_id": stored.job_id,
                "source_order_ref": stored.source_order_ref,
                "attempt": stored.attempt,
                "max_attempts": stored.max_attempts,
                "available_at": stored.available_at,
                "audit": entry,
                **failure.to_dict(),
            }
        )
        return stored

    # ------------------------------------------------------------------ operator side

    async def resubmit(self, job_id: str, actor: str = "operator") -> FulfillmentJob:
        """Put a failed or held job back in the queue with a fresh attempt budget."""
        async with self._locked() as jobs:
            stored = self._get(jobs, job_id)
            if stored.status not in (JobStatus.FAILED_PERMANENT, JobStatus.MANUAL_REVIEW):
                raise InvalidTransitionError(f"Job {job_id} is {stored.status.value}; only failed jobs can be resubmitted")
            stored.status = JobStatus.QUEUED
            stored.attempt = 0
            stored.available_at = None
            entry = self._audit(stored, actor, "resubmitted")

        await event_broker.emit(
            EventType.JOB_RESUBMITTED,
            "job_resubmitted",
            url=stored.product_ref,
            details={"job_id": job_id, "audit": entry}
        )
        return stored

    async def recover_stale(self, lease_seconds: float = config.JOB_LEASE_SECONDS, actor: str = "recovery") -> List[FulfillmentJob]:
        """
        Hold jobs whose worker vanished mid-run.

        The checkout may have been submitted before the worker died, so these go
        to manual review rather than back to the queue.
        """
        cutoff = _now() - timedelta(seconds=lease_seconds)
        recovered = []
        async with self._locked() as jobs:
            for job in jobs.values():
                if job.status != JobStatus.PROCESSING or not job.claimed_at:
                    continue
                if datetime.fromisoformat(job.claimed_at) > cutoff:
                    continue
                failure = AutomationFailure(
                    code=ErrorCode.UNKNOWN_FAILURE,
                    message=f"Claim by {job.claimed_by} expired without a reported outcome",
                    retry_safe=False,
                )
                job.attempt += 1
                job.status = JobStatus.MANUAL_REVIEW
                job.last_failure = failure.to_dict()
                job.claimed_by = None
                self._audit(job, actor, "manual_review", code=failure.code.value, message=failure.message)
                recovered.append(job)

        for job in recovered:
            await event_broker.emit(
                EventType.JOB_MANUAL_REVIEW,
                "job_lease_expired",
                url=job.product_ref,
                details={"job_id": job.job_id, **job.last_failure}
            )
        return recovered

    async def get(self, job_id: str) -> FulfillmentJob:
        async with self._locked(save=False) as jobs:
            return self._get(jobs, job_id)

    async def list(self, status: Optional[JobStatus] = None) -> List[FulfillmentJob]:
        async with self._locked(save=False) as loaded:
            jobs = list(loaded.values())
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        return sorted(jobs, key=lambda j: j.created_at)
