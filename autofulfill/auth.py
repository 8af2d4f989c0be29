"""
Sign-in flow: email → password → remember device → submit, then classify the result.
"""

import asyncio
from typing import Optional

from playwright.async_api import Page, Error as PlaywrightError

from autofulfill import config
from autofulfill.config import Timeouts
from autofulfill.credentials import Identity
from autofulfill.diagnostics import Diagnostics
from autofulfill.events import event_broker, EventType, WorkerState
from autofulfill.markup import strategy
from autofulfill.models import AutomationFailure, ErrorCode, StepResult
from autofulfill.session_pool import BrowserSession, SessionPool

# Rejection messages that point at a temporary condition rather than bad credentials.
TRANSIENT_LOGIN_HINTS = (
    "try again later",
    "temporarily",
    "unusual activity",
    "something went wrong",
    "internal error",
    "しばらくしてから",
    "一時的",
    "問題が発生しました",
)


def is_transient_rejection(message: str) -> bool:
    text = message.lower()
    return any(hint in text for hint in TRANSIENT_LOGIN_HINTS)


class AuthenticationFlow:
    """Logs a session in and classifies the result."""

    def __init__(
        self,
        pool: SessionPool,
        diagnostics: Diagnostics,
        timeouts: Optional[Timeouts] = None,
        sign_in_url: str = config.SIGN_IN_URL,
    ):
        self.pool = pool
        self.diagnostics = diagnostics
        self.timeouts = timeouts or Timeouts.from_env()
        self.sign_in_url = sign_in_url

        self.email_field = strategy("signin_email")
        self.continue_button = strategy("signin_continue")
        self.password_field = strategy("signin_password")
        self.remember_me = strategy("signin_remember_me")
        self.submit_button = strategy("signin_submit")
        self.second_factor = strategy("second_factor")
        self.error_region = strategy("signin_error")

    async def ensure_authenticated(self, session: BrowserSession, identity: Identity) -> StepResult[None]:
        """Sign the session in unless it already is. Persists state on success."""
        if session.authenticated:
            return StepResult.success()

        event_broker.current_state = WorkerState.AUTHENTICATING
        page = session.page
        await page.goto(self.sign_in_url, wait_until="domcontentloaded", timeout=self.timeouts.page_load_ms)
        await asyncio.sleep(self.timeouts.settle_seconds)

        # A restored session is redirected away from the form
        email_ready = await self.email_field.first_visible(page, timeout=self.timeouts.selector_check_ms)
        password_ready = await self.password_field.first_visible(page, timeout=self.timeouts.selector_check_ms)
        if not email_ready and not password_ready:
            await event_broker.emit(
                EventType.STEP,
                "auth_session_reused",
                url=page.url,
                details={"account": session.account_ref, "restored": session.restored}
            )
            # Still screened: a restored session can land on a challenge page
            return await self._classify(session)

        await event_broker.emit(
            EventType.STEP,
            "auth_started",
            url=page.url,
            details={"account": session.account_ref}
        )

        if email_ready:
            await email_ready[1].fill(identity.login)
            await self.continue_button.click_first(page, timeout=self.timeouts.element_visible_ms)
            await asyncio.sleep(self.timeouts.settle_seconds)

        found = await self.password_field.wait_any(
            page, timeout=self.timeouts.element_visible_ms, poll_seconds=self.timeouts.poll_seconds
        )
        if found:
            password_ready = await self.password_field.first_visible(page, timeout=self.timeouts.selector_check_ms)
            if password_ready:
                await password_ready[1].fill(identity.secret)
            await self._remember_device(page)
            await self.submit_button.click_first(page, timeout=self.timeouts.element_visible_ms)
            await asyncio.sleep(self.timeouts.settle_seconds)

        return await self._classify(session)

    async def _remember_device(self, page: Page) -> None:
        found = await self.remember_me.first_visible(page, timeout=self.timeouts.selector_check_ms)
        if not found:
            return
        try:
            await found[1].check()
        except PlaywrightError:
            await event_broker.emit(EventType.STEP, "auth_remember_me_skipped", url=page.url)

    async def _classify(self, session: BrowserSession) -> StepResult[None]:
        """Check for a challenge first, then an error banner, else treat as signed in."""
        page = session.page

        challenge = await self.second_factor.first_visible(page, timeout=self.timeouts.selector_check_ms)
        if challenge:
            screenshot = await self.diagnostics.capture(page, "auth_second_factor")
            await event_broker.emit(
                EventType.ACTION_REQUIRED,
                "auth_second_factor_required",
                url=page.url,
                details={"account": session.account_ref, "selector": challenge[0].describe, "screenshot": screenshot}
            )
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.SECOND_FACTOR_REQUIRED,
                message="Verification challenge shown after sign-in. Manual intervention needed.",
                retry_safe=False,
                diagnostic_ref=screenshot,
                state="Authentication",
            ))

        if await self.error_region.first_visible(page, timeout=self.timeouts.selector_check_ms):
            reason = await self.error_region.first_text(page) or "Sign-in rejected"
            transient = is_transient_rejection(reason)
            screenshot = await self.diagnostics.capture(page, "auth_rejected")
            await event_broker.emit(
                EventType.ERROR,
                "auth_rejected",
                url=page.url,
                details={"account": session.account_ref, "reason": reason, "transient": transient, "screenshot": screenshot}
            )
            return StepResult.failed(AutomationFailure(
                code=ErrorCode.LOGIN_REJECTED,
                message=reason,
                retry_safe=transient,
                diagnostic_ref=screenshot,
                state="Authentication",
            ))

        return await self._succeed(session)

    async def _succeed(self, session: BrowserSession) -> StepResult[None]:
        session.authenticated = True
        await self.pool.persist(session)
        await event_broker.emit(
            EventType.STEP,
            "auth_succeeded",
            url=session.page.url,
            details={"account": session.account_ref}
        )
        return StepResult.success()
