from pathlib import Path

import pytest

from autofulfill.auth import AuthenticationFlow, is_transient_rejection
from autofulfill.credentials import Identity
from autofulfill.models import ErrorCode

from fakes import HOME_URL, SIGN_IN_URL

LOGIN = "buyer@example.com"


@pytest.fixture
def auth(pool, diagnostics, fast_timeouts):
    return AuthenticationFlow(pool, diagnostics, timeouts=fast_timeouts, sign_in_url=SIGN_IN_URL)


async def test_sign_in_succeeds_and_persists_state(auth, pool, store):
    async with pool.lease("acct-1") as session:
        result = await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))

        assert result.ok
        assert session.authenticated
        assert session.page.filled["input[name='email']"] == LOGIN
        assert session.page.url == HOME_URL

    assert pool.state_path("acct-1").exists()
    assert store.sign_in_attempts == 1


async def test_authenticated_session_skips_sign_in(auth, pool, store):
    async with pool.lease("acct-1") as session:
        await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))
        await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))

    assert store.sign_in_attempts == 1


async def test_restored_state_is_reused_without_sign_in(auth, pool, store):
    async with pool.lease("acct-1") as session:
        await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))
        await pool.discard(session)

    async with pool.lease("acct-1") as session:
        assert session.restored
        result = await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))
        assert result.ok

    assert store.sign_in_attempts == 1


async def test_second_factor_challenge(auth, pool, store):
    store.second_factor = True

    async with pool.lease("acct-1") as session:
        result = await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))

    assert not result.ok
    assert result.failure.code == ErrorCode.SECOND_FACTOR_REQUIRED
    assert result.failure.retry_safe is False
    assert result.failure.diagnostic_ref
    assert Path(result.failure.diagnostic_ref).exists()
    assert not session.authenticated


async def test_restored_session_sent_to_challenge(auth, pool, store):
    async with pool.lease("acct-1") as session:
        await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))
        await pool.discard(session)
    store.session_challenge = True

    async with pool.lease("acct-1") as session:
        assert session.restored
        result = await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))

    assert result.failure.code == ErrorCode.SECOND_FACTOR_REQUIRED
    assert result.failure.retry_safe is False
    assert Path(result.failure.diagnostic_ref).exists()
    assert not session.authenticated
    assert store.sign_in_attempts == 1


async def test_wrong_password_is_permanent(auth, pool):
    async with pool.lease("acct-1") as session:
        result = await auth.ensure_authenticated(session, Identity(LOGIN, "wrong"))

    assert result.failure.code == ErrorCode.LOGIN_REJECTED
    assert result.failure.retry_safe is False
    assert result.failure.message == "Your password is incorrect"


async def test_temporary_rejection_is_retry_safe(auth, pool, store):
    store.login_error = "Something went wrong. Please try again later."

    async with pool.lease("acct-1") as session:
        result = await auth.ensure_authenticated(session, Identity(LOGIN, "hunter2"))

    assert result.failure.code == ErrorCode.LOGIN_REJECTED
    assert result.failure.retry_safe is True


@pytest.mark.parametrize("message,expected", [
    ("There was a problem. Please try again later.", True),
    ("問題が発生しました。しばらくしてから再度お試しください。", True),
    ("Your password is incorrect", False),
    ("We cannot find an account with that email address", False),
])
def test_is_transient_rejection(message, expected):
    assert is_transient_rejection(message) is expected
