from pathlib import Path

import pytest

from autofulfill.auth import AuthenticationFlow
from autofulfill.checkout import CheckoutFlow
from autofulfill.credentials import Identity
from autofulfill.models import ErrorCode, FulfillmentJob
from autofulfill.pipeline import FulfillmentPipeline
from autofulfill.session_pool import SessionPool

from fakes import CART_URL, PRODUCT_URL, SIGN_IN_URL

IDENTITY = Identity("buyer@example.com", "hunter2")


def make_pipeline(pool, diagnostics, timeouts):
    return FulfillmentPipeline(
        pool,
        diagnostics,
        timeouts=timeouts,
        auth=AuthenticationFlow(pool, diagnostics, timeouts=timeouts, sign_in_url=SIGN_IN_URL),
        checkout_factory=lambda: CheckoutFlow(diagnostics, timeouts=timeouts, cart_url=CART_URL),
    )


def make_job(label="Shopee Warehouse", order="SO-1"):
    return FulfillmentJob(
        job_id=f"job-{order}",
        source_order_ref=order,
        product_ref=PRODUCT_URL,
        account_ref="acct-1",
        shipping_address_label=label,
    )


@pytest.fixture
def pipeline(pool, diagnostics, fast_timeouts):
    return make_pipeline(pool, diagnostics, fast_timeouts)


async def test_job_is_purchased(pipeline, pool, store):
    result = await pipeline.run(make_job(), IDENTITY)

    assert result.ok
    assert result.value.external_order_id == "ORD-12345"
    assert store.orders[0][0] == [PRODUCT_URL]
    assert pool.state_path("acct-1").exists()
    assert not pool.is_borrowed("acct-1")


async def test_second_job_reuses_signed_in_session(pipeline, store):
    await pipeline.run(make_job(order="SO-1"), IDENTITY)
    await pipeline.run(make_job(order="SO-2"), IDENTITY)

    assert store.sign_in_attempts == 1
    assert len(store.orders) == 2


async def test_unknown_address(pipeline, store):
    result = await pipeline.run(make_job(label="Warehouse A"), IDENTITY)

    assert result.failure.code == ErrorCode.ADDRESS_NOT_FOUND
    assert result.failure.retry_safe is False
    assert store.orders == []


async def test_second_factor_stops_the_job(pipeline, pool, store):
    store.second_factor = True

    result = await pipeline.run(make_job(), IDENTITY)

    assert result.failure.code == ErrorCode.SECOND_FACTOR_REQUIRED
    assert result.failure.retry_safe is False
    assert Path(result.failure.diagnostic_ref).exists()
    assert store.cart == []
    # The challenged session is dropped so the next attempt starts clean
    assert pool._sessions == {}


async def test_rejected_login_forgets_saved_state(pipeline, pool, store):
    await pipeline.run(make_job(order="SO-1"), IDENTITY)
    assert pool.state_path("acct-1").exists()
    # Store-side session expiry
    pool._sessions["acct-1"].context.cookies.clear()

    result = await pipeline.verify_credentials("acct-1", Identity("buyer@example.com", "wrong"))

    assert result.failure.code == ErrorCode.LOGIN_REJECTED
    assert not pool.state_path("acct-1").exists()


async def test_job_timeout(pool, diagnostics, fast_timeouts, store):
    fast_timeouts.job_seconds = 0.3
    store.hang_urls.add(PRODUCT_URL)
    pipeline = make_pipeline(pool, diagnostics, fast_timeouts)

    result = await pipeline.run(make_job(), IDENTITY)

    assert result.failure.code == ErrorCode.PIPELINE_TIMEOUT
    assert result.failure.retry_safe is True
    assert result.failure.state == "AddToCart"
    assert result.failure.diagnostic_ref
    assert not pool.is_borrowed("acct-1")


async def test_timeout_screenshot_taken_before_lease_is_released(pool, diagnostics, fast_timeouts, store, monkeypatch):
    fast_timeouts.job_seconds = 0.3
    store.hang_urls.add(PRODUCT_URL)
    pipeline = make_pipeline(pool, diagnostics, fast_timeouts)
    leased_at_capture = []
    capture = diagnostics.capture

    async def recording_capture(page, stage):
        leased_at_capture.append((stage, pool.is_borrowed("acct-1")))
        return await capture(page, stage)

    monkeypatch.setattr(diagnostics, "capture", recording_capture)

    result = await pipeline.run(make_job(), IDENTITY)

    assert result.failure.code == ErrorCode.PIPELINE_TIMEOUT
    assert Path(result.failure.diagnostic_ref).exists()
    assert leased_at_capture == [("pipeline_timeout", True)]


async def test_session_busy(browser_manager, diagnostics, fast_timeouts, tmp_path):
    pool = SessionPool(browser_manager, state_dir=tmp_path / "s", acquire_timeout=0.05, poll_seconds=0.01)
    pipeline = make_pipeline(pool, diagnostics, fast_timeouts)

    async with pool.lease("acct-1"):
        result = await pipeline.run(make_job(), IDENTITY)

    assert result.failure.code == ErrorCode.SESSION_BUSY
    assert result.failure.retry_safe is True


async def test_verify_credentials(pipeline, store):
    result = await pipeline.verify_credentials("acct-1", IDENTITY)
    assert result.ok
    assert store.orders == []


async def test_single_matching_address_entry(pipeline, store):
    store.addresses = ["Warehouse A\n7-8-9 Koto, Tokyo"]
    job = make_job(label="Warehouse A")
    job.product_ref = "https://store.test/dp/B000EXAMPLE"

    result = await pipeline.run(job, IDENTITY)

    assert result.ok
    assert result.value.external_order_id == "ORD-12345"
    assert store.orders == [(["https://store.test/dp/B000EXAMPLE"], "Warehouse A\n7-8-9 Koto, Tokyo")]
