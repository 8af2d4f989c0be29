"""
Fulfillment pipeline: session lease → authentication → checkout, under a job-level timeout.
"""

import asyncio
from typing import Any, Dict, Optional

from autofulfill.auth import AuthenticationFlow
from autofulfill.checkout import CheckoutFlow, CheckoutRequest
from autofulfill.config import Timeouts
from autofulfill.credentials import Identity
from autofulfill.diagnostics import Diagnostics
from autofulfill.events import event_broker, EventType
from autofulfill.models import AutomationFailure, ErrorCode, FulfillmentJob, PurchaseOutcome, StepResult
from autofulfill.session_pool import BrowserSession, SessionBusyError, SessionPool


class FulfillmentPipeline:
    """Runs one job end to end and always answers with a StepResult."""

    def __init__(
        self,
        pool: SessionPool,
        diagnostics: Diagnostics,
        timeouts: Optional[Timeouts] = None,
        auth: Optional[AuthenticationFlow] = None,
        checkout_factory=None,
    ):
        self.pool = pool
        self.diagnostics = diagnostics
        self.timeouts = timeouts or Timeouts.from_env()
        self.auth = auth or AuthenticationFlow(pool, diagnostics, timeouts=self.timeouts)
        self.checkout_factory = checkout_factory or (
            lambda: CheckoutFlow(diagnostics, timeouts=self.timeouts)
        )

    async def run(self, job: FulfillmentJob, identity: Identity) -> StepResult[PurchaseOutcome]:
        run_state: Dict[str, Any] = {}
        try:
            return await asyncio.wait_for(
                self._run(job, identity, run_state),
                timeout=self.timeouts.job_seconds
            )
        except asyncio.TimeoutError:
            # Captured in _run while the lease was still held
            screenshot = run_state.get("screenshot")
            flow = run_state.get("flow")
            await event_broker.emit(
                EventType.ERROR,
                "pipeline_timeout",
                url=job.product_ref,
                details={
                    "job_id": job.job_id,
                    "state": flow.current_state.value if flow and flow.current_state else None,
                    "order_submitted": bool(flow and flow.order_submitted),
                    "screenshot": screenshot,
                }
            )
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.PIPELINE_TIMEOUT,
                message=f"Pipeline exceeded {self.timeouts.job_seconds:.0f}s",
                retry_safe=True,
                diagnostic_ref=screenshot,
                state=flow.current_state.value if flow and flow.current_state else None,
            ))

    async def _run(
        self,
        job: FulfillmentJob,
        identity: Identity,
        run_state: Dict[str, Any]
    ) -> StepResult[PurchaseOutcome]:
        try:
            async with self.pool.lease(job.account_ref) as session:
                run_state["session"] = session
                try:
                    return await self._run_leased(session, job, identity, run_state)
                except asyncio.CancelledError:
                    run_state["screenshot"] = await self.diagnostics.capture(session.page, "pipeline_timeout")
                    raise
        except SessionBusyError as e:
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.SESSION_BUSY,
                message=str(e),
                retry_safe=True,
            ))
        except Exception as e:
            session = run_state.get("session")
            flow = run_state.get("flow")
            screenshot = await self.diagnostics.capture(session.page if session else None, "pipeline_error")
            submitted = bool(flow and flow.order_submitted)
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.UNKNOWN_FAILURE,
                message=f"{type(e).__name__}: {e}",
                retry_safe=not submitted,
                diagnostic_ref=screenshot,
                state=flow.current_state.value if flow and flow.current_state else None,
            ))

    async def _run_leased(
        self,
        session: BrowserSession,
        job: FulfillmentJob,
        identity: Identity,
        run_state: Dict[str, Any]
    ) -> StepResult[PurchaseOutcome]:
        result = await self._authenticate(session, identity)
        if not result.ok:
            return result

        flow = self.checkout_factory()
        run_state["flow"] = flow
        try:
            return await flow.run(
                session.page,
                CheckoutRequest(product_url=job.product_ref, address_label=job.shipping_address_label)
            )
        finally:
            await self.pool.persist(session)

    async def _authenticate(self, session, identity: Identity) -> StepResult[None]:
        result = await self.auth.ensure_authenticated(session, identity)
        if not result.ok and not result.failure.retry_safe:
            # The stored login state can't be trusted any more
            await self.pool.discard(session, forget_state=result.failure.code == ErrorCode.LOGIN_REJECTED)
        return result

    async def verify_credentials(self, account_ref: str, identity: Identity) -> StepResult[None]:
        """Sign in once to check that the stored credentials still work."""
        try:
            async with self.pool.lease(account_ref) as session:
                session.authenticated = False
                return await asyncio.wait_for(
                    self._authenticate(session, identity),
                    timeout=self.timeouts.job_seconds
                )
        except SessionBusyError as e:
            return StepResult.failed(AutomationFailure(code=ErrorCode.SESSION_BUSY, message=str(e), retry_safe=True))
        except asyncio.TimeoutError:
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.PIPELINE_TIMEOUT,
                message="Credential check timed out",
                retry_safe=True,
            ))
