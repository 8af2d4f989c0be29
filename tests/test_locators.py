import pytest
from playwright.async_api import Error as PlaywrightError

from autofulfill.locators import Candidate, LocatorStrategy
from autofulfill.markup import SELECTORS, strategy

from fakes import FakeContext, FakeElement, FakePage, FakeStore


@pytest.fixture
def page():
    return FakePage(FakeContext(FakeStore(login="buyer@example.com", password="x")))


def _broken(page):
    raise PlaywrightError("Unexpected token in selector")


async def test_first_visible_skips_missing_and_hidden(page):
    page.show("https://store.test/", {
        "#hidden": [FakeElement("hidden", visible=False)],
        "#shown": [FakeElement("shown")],
    })
    lookup = LocatorStrategy.from_selectors("thing", ["#missing", "#hidden", "#shown"])

    found = await lookup.first_visible(page)

    assert found is not None
    assert found[0].describe == "#shown"


async def test_candidate_errors_fall_through(page):
    page.show("https://store.test/", {"#ok": [FakeElement("ok")]})
    lookup = LocatorStrategy("thing", [
        Candidate("broken", _broken),
        Candidate("#ok", lambda p: p.locator("#ok").first),
    ])

    assert await lookup.click_first(page) == "#ok"
    assert page.clicks == ["#ok"]


async def test_first_text_returns_first_non_empty(page):
    page.show("https://store.test/", {
        "#empty": [FakeElement("   ")],
        "#price": [FakeElement("  ¥3,500 ")],
    })
    lookup = LocatorStrategy.from_selectors("price", ["#none", "#empty", "#price"])

    assert await lookup.first_text(page) == "¥3,500"


async def test_click_first_returns_none_when_nothing_visible(page):
    page.show("https://store.test/", {})
    assert await strategy("place_order").click_first(page, timeout=10, check_timeout=10) is None
    assert page.clicks == []


async def test_wait_any_gives_up_after_timeout(page):
    page.show("https://store.test/", {})
    assert await strategy("order_confirmation").wait_any(page, timeout=30, poll_seconds=0.01) is None


async def test_wait_any_reports_matching_candidate(page):
    page.show("https://store.test/", {"h1:has-text('注文が確定しました')": [FakeElement("注文が確定しました")]})
    found = await strategy("order_confirmation").wait_any(page, timeout=30, poll_seconds=0.01)
    assert found == "h1:has-text('注文が確定しました')"


def test_every_markup_key_builds_a_strategy():
    for key, selectors in SELECTORS.items():
        lookup = strategy(key)
        assert lookup.name == key
        assert [c.describe for c in lookup.candidates] == selectors
