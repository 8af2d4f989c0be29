"""
Ordered candidate locators: try alternatives in sequence, first success wins.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from playwright.async_api import Page, Locator, Error as PlaywrightError


@dataclass(frozen=True)
class Candidate:
    """One way of finding an element. `locate` is only called when the candidate is tried."""
    describe: str
    locate: Callable[[Page], Locator]


class LocatorStrategy:
    """An ordered list of candidates for one semantic element."""

    def __init__(self, name: str, candidates: Sequence[Candidate]):
        self.name = name
        self.candidates: List[Candidate] = list(candidates)

    @classmethod
    def from_selectors(cls, name: str, selectors: Sequence[str]) -> "LocatorStrategy":
        return cls(name, [_selector_candidate(s) for s in selectors])

    def __repr__(self) -> str:
        return f"LocatorStrategy({self.name!r}, {len(self.candidates)} candidates)"

    async def first_visible(
        self,
        page: Page,
        timeout: int = 150
    ) -> Optional[Tuple[Candidate, Locator]]:
        """Return the first candidate whose element is visible right now."""
        for candidate in self.candidates:
            try:
                locator = candidate.locate(page)
                if await locator.is_visible(timeout=timeout):
                    return candidate, locator
            except PlaywrightError:
                continue
        return None

    async def first_text(self, page: Page, timeout: int = 150) -> Optional[str]:
        """Return the first non-empty text among the candidates."""
        for candidate in self.candidates:
            try:
                locator = candidate.locate(page)
                if await locator.count() == 0:
                    continue
                text = await locator.text_content(timeout=timeout)
            except PlaywrightError:
                continue
            if text and text.strip():
                return text.strip()
        return None

    async def click_first(
        self,
        page: Page,
        timeout: int = 8000,
        check_timeout: int = 150
    ) -> Optional[str]:
        """Click the first visible candidate. Returns its description, or None."""
        for candidate in self.candidates:
            try:
                locator = candidate.locate(page)
                if await locator.is_visible(timeout=check_timeout):
                    await locator.click(timeout=timeout)
                    return candidate.describe
            except PlaywrightError:
                continue
        return None

    async def wait_any(
        self,
        page: Page,
        timeout: int = 10000,
        poll_seconds: float = 0.3
    ) -> Optional[str]:
        """Poll until any candidate is visible. Returns its description, or None on timeout."""
        loop = asyncio.get_running_loop()
        end_time = loop.time() + (timeout / 1000)

        while True:
            found = await self.first_visible(page)
            if found:
                return found[0].describe
            if loop.time() >= end_time:
                return None
            await asyncio.sleep(poll_seconds)


def _selector_candidate(selector: str) -> Candidate:
    return Candidate(describe=selector, locate=lambda page: page.locator(selector).first)
