"""
Event hub: every pipeline event becomes a JSON log line on stdout, an entry
in the /history ring buffer and a message on the /events SSE stream.
"""

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Deque, Dict, List, Optional, Set


class EventType(str, Enum):
    STEP = "step"
    STATE_CHANGE = "state_change"
    ERROR = "error"
    ACTION_REQUIRED = "action_required"
    SCREENSHOT = "screenshot"
    VERIFICATION = "verification"
    JOB_ENQUEUED = "job_enqueued"
    JOB_CLAIMED = "job_claimed"
    JOB_FULFILLED = "job_fulfilled"
    JOB_RESCHEDULED = "job_rescheduled"
    JOB_FAILED = "job_failed"
    JOB_MANUAL_REVIEW = "job_manual_review"
    JOB_RESUBMITTED = "job_resubmitted"


class WorkerState(str, Enum):
    """Coarse worker activity shown on /status."""
    IDLE = "idle"
    CLAIMING = "claiming"
    AUTHENTICATING = "authenticating"
    CART_CLEAR = "cart_clear"
    ADD_TO_CART = "add_to_cart"
    PROCEED_TO_CHECKOUT = "proceed_to_checkout"
    ADDRESS_SELECTION = "address_selection"
    PLACE_ORDER = "place_order"
    CONFIRMATION_CHECK = "confirmation_check"
    VERIFYING = "verifying"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class Event:
    ts: str
    type: EventType
    step: str
    url: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = asdict(self)
        data["type"] = self.type.value
        # Decimals, dates and paths end up in details
        return json.dumps(data, default=str, ensure_ascii=False)


class EventBroker:
    """
    Fans events out to the log, the history buffer and SSE subscribers.

    Everything runs on the event loop thread and publishing never awaits,
    so no lock is needed. A subscriber whose queue is full is dropped
    instead of slowing the worker down.
    """

    def __init__(self, max_history: int = 200, queue_size: int = 100):
        self._history: Deque[Event] = deque(maxlen=max_history)
        self._subscribers: Set[asyncio.Queue] = set()
        self._queue_size = queue_size
        self._started_at = datetime.now(timezone.utc)

        self.current_state: WorkerState = WorkerState.IDLE
        self.current_job: Dict[str, Any] = {}
        self.last_outcome: Dict[str, Any] = {}

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self._started_at).total_seconds()

    async def emit(
        self,
        event_type: EventType,
        step: str,
        url: str = "",
        details: Optional[Dict[str, Any]] = None
    ) -> Event:
        event = Event(
            ts=datetime.now(timezone.utc).isoformat(),
            type=event_type,
            step=step,
            url=url,
            details=details or {}
        )
        await self.publish(event)
        return event

    async def publish(self, event: Event) -> None:
        print(event.to_json(), flush=True)
        self._history.append(event)

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._subscribers.discard(queue)

    async def subscribe(self) -> AsyncGenerator[Event, None]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    async def get_history(self, limit: int = 50, job_id: Optional[str] = None) -> List[Event]:
        """Most recent events, oldest first. `job_id` keeps only that job's events."""
        events = list(self._history)
        if job_id:
            events = [e for e in events if e.details.get("job_id") == job_id]
        return events[-limit:]

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.current_state.value,
            "current_job": self.current_job,
            "last_outcome": self.last_outcome,
            "uptime_seconds": self.uptime_seconds,
            "subscriber_count": len(self._subscribers),
        }


event_broker = EventBroker()
