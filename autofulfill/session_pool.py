"""
Per-account browser sessions with persisted login state.

At most one borrower holds an account's session at any time, both within
this process (asyncio lock) and across worker processes on the host
(lock file next to the persisted state).
"""

import asyncio
import hashlib
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Optional

from filelock import FileLock, Timeout
from playwright.async_api import BrowserContext, Page

from autofulfill import config
from autofulfill.browser import BrowserManager
from autofulfill.events import event_broker, EventType


class SessionBusyError(Exception):
    """The account's session stayed leased for longer than the acquire timeout."""

    def __init__(self, account_ref: str, waited: float):
        super().__init__(f"Session for account '{account_ref}' still busy after {waited:.0f}s")
        self.account_ref = account_ref


@dataclass
class BrowserSession:
    """A browsing context bound to one account identity."""
    account_ref: str
    context: BrowserContext
    page: Page
    last_used: float
    authenticated: bool = False
    restored: bool = False
    closed: bool = False
    borrowed: bool = field(default=False, repr=False)


class SessionPool:
    """Caches one session per account and hands it out to one borrower at a time."""

    def __init__(
        self,
        browser_manager: BrowserManager,
        state_dir: Path = config.SESSIONS_DIR,
        idle_seconds: float = config.SESSION_IDLE_SECONDS,
        acquire_timeout: float = config.SESSION_ACQUIRE_TIMEOUT_SECONDS,
        poll_seconds: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.browser_manager = browser_manager
        self.state_dir = Path(state_dir)
        self.idle_seconds = idle_seconds
        self.acquire_timeout = acquire_timeout
        self.poll_seconds = poll_seconds
        self._clock = clock
        self._sessions: Dict[str, BrowserSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._file_locks: Dict[str, FileLock] = {}

    # ------------------------------------------------------------------ paths

    def _slug(self, account_ref: str) -> str:
        readable = re.sub(r"[^A-Za-z0-9_.-]+", "_", account_ref)[:40]
        digest = hashlib.sha256(account_ref.encode()).hexdigest()[:12]
        return f"{readable}-{digest}"

    def state_path(self, account_ref: str) -> Path:
        return self.state_dir / f"{self._slug(account_ref)}.json"

    def _lock_path(self, account_ref: str) -> Path:
        return self.state_dir / f"{self._slug(account_ref)}.lock"

    # ------------------------------------------------------------------ leasing

    def is_borrowed(self, account_ref: str) -> bool:
        lock = self._locks.get(account_ref)
        return bool(lock and lock.locked())

    async def acquire(self, account_ref: str) -> BrowserSession:
        """Lease the account's session, waiting while another borrower holds it."""
        lock = self._locks.setdefault(account_ref, asyncio.Lock())
        started = self._clock()
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            raise SessionBusyError(account_ref, self.acquire_timeout) from None

        file_locked = False
        try:
            remaining = max(self.acquire_timeout - (self._clock() - started), 0.0)
            await self._acquire_file_lock(account_ref, remaining)
            file_locked = True
            session = await self._get_or_create(account_ref)
        except BaseException:
            if file_locked:
                self._file_locks[account_ref].release()
            lock.release()
            raise

        session.borrowed = True
        return session

    async def release(self, session: BrowserSession) -> None:
        """Return a leased session to the pool."""
        session.borrowed = False
        session.last_used = self._clock()

        file_lock = self._file_locks.get(session.account_ref)
        if file_lock is not None and file_lock.is_locked:
            file_lock.release()

        lock = self._locks.get(session.account_ref)
        if lock is not None and lock.locked():
            lock.release()

    @asynccontextmanager
    async def lease(self, account_ref: str) -> AsyncIterator[BrowserSession]:
        session = await self.acquire(account_ref)
        try:
            yield session
        finally:
            await self.release(session)

    async def _acquire_file_lock(self, account_ref: str, timeout: float) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        file_lock = self._file_locks.get(account_ref)
        if file_lock is None:
            file_lock = FileLock(str(self._lock_path(account_ref)))
            self._file_locks[account_ref] = file_lock

        deadline = self._clock() + timeout
        while True:
            try:
                file_lock.acquire(timeout=0)
                return
            except Timeout:
                if self._clock() >= deadline:
                    raise SessionBusyError(account_ref, self.acquire_timeout) from None
                await asyncio.sleep(self.poll_seconds)

    # ------------------------------------------------------------------ lifecycle

    async def _get_or_create(self, account_ref: str) -> BrowserSession:
        session = self._sessions.get(account_ref)
        if session is not None and not session.closed:
            idle = self._clock() - session.last_used
            if idle < self.idle_seconds and not session.page.is_closed():
                session.last_used = self._clock()
                return session
            await event_broker.emit(
                EventType.STEP,
                "session_stale",
                details={"account": account_ref, "idle_seconds": round(idle, 1)}
            )
            await self._close(session)

        state_file = self.state_path(account_ref)
        restored = state_file.exists()
        context = await self.browser_manager.new_context(
            storage_state=state_file if restored else None
        )
        page = await context.new_page()
        session = BrowserSession(
            account_ref=account_ref,
            context=context,
            page=page,
            last_used=self._clock(),
            restored=restored,
        )
        self._sessions[account_ref] = session

        await event_broker.emit(
            EventType.STEP,
            "session_created",
            details={"account": account_ref, "restored": restored}
        )
        return session

    async def persist(self, session: BrowserSession) -> bool:
        """Write the session's cookies/local storage so a later session can skip login."""
        if session.closed:
            return False
        state_file = self.state_path(session.account_ref)
        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            await session.context.storage_state(path=str(state_file))
        except Exception as e:
            await event_broker.emit(
                EventType.ERROR,
                "session_persist_failed",
                details={"account": session.account_ref, "error": str(e)}
            )
            return False
        return True

    async def discard(self, session: BrowserSession, forget_state: bool = False) -> None:
        """Close a session that can no longer be trusted (unrecoverable auth failure)."""
        await self._close(session)
        if self._sessions.get(session.account_ref) is session:
            del self._sessions[session.account_ref]
        if forget_state:
            self.state_path(session.account_ref).unlink(missing_ok=True)
        await event_broker.emit(
            EventType.STEP,
            "session_discarded",
            details={"account": session.account_ref, "forget_state": forget_state}
        )

    async def evict_idle(self) -> int:
        """Close sessions idle past the threshold that nobody is borrowing."""
        evicted = 0
        now = self._clock()
        for account_ref, session in list(self._sessions.items()):
            if self.is_borrowed(account_ref):
                continue
            if now - session.last_used >= self.idle_seconds:
                await self._close(session)
                del self._sessions[account_ref]
                evicted += 1
        return evicted

    async def _close(self, session: BrowserSession) -> None:
        if session.closed:
            return
        session.closed = True
        try:
            await session.context.close()
        except Exception as e:
            await event_broker.emit(
                EventType.ERROR,
                "session_close_failed",
                details={"account": session.account_ref, "error": str(e)}
            )

    async def release_all(self) -> None:
        """Close every session and the browser process. Called at worker shutdown."""
        for session in list(self._sessions.values()):
            await self._close(session)
        self._sessions = {}
        for file_lock in self._file_locks.values():
            if file_lock.is_locked:
                file_lock.release(force=True)
        self._file_locks = {}
        await self.browser_manager.shutdown()
