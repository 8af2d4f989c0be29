"""
Read-only product verification: price, availability, condition, delivery estimate.
"""

import asyncio
import calendar
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from playwright.async_api import Page, Error as PlaywrightError

from autofulfill.browser import BrowserManager
from autofulfill.config import Timeouts
from autofulfill.events import event_broker, EventType
from autofulfill.markup import SELECTORS, strategy
from autofulfill.models import ProductSnapshot

CURRENCY_SYMBOLS = {
    "¥": "¥",
    "￥": "¥",
    "円": "¥",
    "$": "$",
    "€": "€",
    "£": "£",
}

IN_STOCK_PHRASES = ("in stock", "left in stock", "在庫あり", "残り", "通常")
OUT_OF_STOCK_PHRASES = ("unavailable", "out of stock", "在庫切れ", "お取り扱いできません", "一時的に在庫切れ")

USED_PATTERN = re.compile(r"\bused\b|中古|refurbished|整備済み", re.IGNORECASE)

MONTHS = {name.lower(): index for index, name in enumerate(calendar.month_name) if name}
MONTHS.update({name.lower(): index for index, name in enumerate(calendar.month_abbr) if name})
MONTHS["sept"] = 9

MONTH_DAY_EN = re.compile(r"([A-Za-z]{3,})\.?\s+(\d{1,2})(?!\d)")
MONTH_DAY_JA = re.compile(r"(\d{1,2})\s*月\s*(\d{1,2})\s*日")
BARE_DAY = re.compile(r"(?<![\d月])(\d{1,2})\s*日|\b(\d{1,2})(?:st|nd|rd|th)\b")

CATALOG_ID_IN_URL = re.compile(r"/(?:dp|gp/product|gp/aw/d|d)/([A-Z0-9]{10})(?![A-Za-z0-9])")
CATALOG_ID_TOKEN = re.compile(r"(?<![A-Za-z0-9])([A-Z0-9]{10})(?![A-Za-z0-9])")


def parse_price(text: Optional[str]) -> Tuple[Optional[Decimal], Optional[str]]:
    """Parse '¥3,500' into (Decimal('3500'), '¥'). Returns (None, None) when nothing parses."""
    if not text:
        return None, None

    currency = None
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            currency = code
            break

    number = re.search(r"\d[\d.,]*", text)
    if not number:
        return None, currency
    digits = number.group(0).replace(",", "")
    try:
        return Decimal(digits), currency
    except InvalidOperation:
        return None, currency


def parse_availability(text: Optional[str]) -> bool:
    """True only when the text says in stock; anything unrecognised counts as unavailable."""
    if not text:
        return False
    lowered = text.lower()
    if any(phrase in lowered for phrase in OUT_OF_STOCK_PHRASES):
        return False
    return any(phrase in lowered for phrase in IN_STOCK_PHRASES)


def parse_condition(text: Optional[str]) -> bool:
    """True for new items. Missing condition text means new."""
    if not text:
        return True
    if USED_PATTERN.search(text):
        return False
    return True


def parse_points(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = re.search(r"(\d[\d,]*)\s*(?:pt|ポイント|points?)", text, re.IGNORECASE) or re.search(r"\d[\d,]*", text)
    if not match:
        return None
    value = int((match.group(1) if match.groups() else match.group(0)).replace(",", ""))
    return value or None


def _next_valid_date(year: int, month: int, day: int) -> date:
    """The first date on or after (year, month) whose month has `day`."""
    while True:
        if day <= calendar.monthrange(year, month)[1]:
            return date(year, month, day)
        month += 1
        if month > 12:
            month, year = 1, year + 1


def parse_delivery_date(text: Optional[str], today: Optional[date] = None) -> Optional[date]:
    """
    Turn a delivery message into a date.

    An explicit month/day ("October 21", "10月21日") wins. A bare day of month
    ("21日", "the 21st") is placed in the current month, or the next month when
    that day has already passed. Results never land before `today`.
    """
    if not text:
        return None
    today = today or date.today()

    month_day = None
    match = MONTH_DAY_JA.search(text)
    if match:
        month_day = (int(match.group(1)), int(match.group(2)))
    else:
        for match in MONTH_DAY_EN.finditer(text):
            month = MONTHS.get(match.group(1).lower())
            if month:
                month_day = (month, int(match.group(2)))
                break

    if month_day:
        month, day = month_day
        if not 1 <= month <= 12 or not 1 <= day <= 31:
            return None
        candidate = _next_valid_date(today.year, month, day)
        if candidate < today:
            candidate = _next_valid_date(today.year + 1, month, day)
        return candidate

    match = BARE_DAY.search(text)
    if match:
        day = int(match.group(1) or match.group(2))
        if not 1 <= day <= 31:
            return None
        year, month = today.year, today.month
        if day < today.day:
            month += 1
            if month > 12:
                month, year = 1, year + 1
        return _next_valid_date(year, month, day)

    return None


def catalog_id_from_url(url: str) -> Optional[str]:
    match = CATALOG_ID_IN_URL.search(url or "")
    return match.group(1) if match else None


def catalog_id_from_details(text: Optional[str]) -> Optional[str]:
    """Pick the id out of a details row such as 'ASIN : B0C1234567'."""
    if not text or "asin" not in text.lower():
        return None
    text = text.replace("：", ":")
    _, _, value = text.partition(":") if ":" in text else ("", "", text)
    match = CATALOG_ID_TOKEN.search(value.strip()) or CATALOG_ID_TOKEN.search(text)
    return match.group(1) if match else None


class ProductVerifier:
    """Loads a product page and reads a ProductSnapshot. Never retries, never raises for page errors."""

    def __init__(self, browser_manager: BrowserManager, timeouts: Optional[Timeouts] = None):
        self.browser_manager = browser_manager
        self.timeouts = timeouts or Timeouts.from_env()

        self.title = strategy("title")
        self.price = strategy("price")
        self.availability = strategy("availability")
        self.condition = strategy("condition")
        self.delivery = strategy("delivery")
        self.points = strategy("points")

    async def verify(self, product_url: str) -> ProductSnapshot:
        """Open a throwaway context, read the product page and close it again."""
        context = await self.browser_manager.new_context()
        try:
            page = await context.new_page()
            return await self.verify_on_page(page, product_url)
        finally:
            try:
                await context.close()
            except PlaywrightError:
                pass

    async def verify_on_page(self, page: Page, product_url: str, today: Optional[date] = None) -> ProductSnapshot:
        try:
            await page.goto(product_url, wait_until="domcontentloaded", timeout=self.timeouts.page_load_ms)
        except PlaywrightError as e:
            await event_broker.emit(
                EventType.VERIFICATION,
                "verify_load_failed",
                url=product_url,
                details={"error": str(e)}
            )
            return ProductSnapshot(url=product_url, catalog_id=catalog_id_from_url(product_url), error=str(e))

        await asyncio.sleep(self.timeouts.settle_seconds)
        snapshot = await self.read_snapshot(page, product_url, today=today)

        await event_broker.emit(
            EventType.VERIFICATION,
            "verify_complete",
            url=product_url,
            details=snapshot.to_dict()
        )
        return snapshot

    async def read_snapshot(self, page: Page, product_url: str, today: Optional[date] = None) -> ProductSnapshot:
        check = self.timeouts.selector_check_ms
        price_text = await self.price.first_text(page, timeout=check)
        availability_text = await self.availability.first_text(page, timeout=check)
        condition_text = await self.condition.first_text(page, timeout=check)
        delivery_text = await self.delivery.first_text(page, timeout=check)
        points_text = await self.points.first_text(page, timeout=check)
        title = await self.title.first_text(page, timeout=check)

        price, currency = parse_price(price_text)
        return ProductSnapshot(
            url=product_url,
            price=price,
            currency=currency,
            is_available=parse_availability(availability_text),
            is_new=parse_condition(condition_text),
            catalog_id=await self._read_catalog_id(page, product_url),
            title=title,
            estimated_delivery=parse_delivery_date(delivery_text, today=today),
            points_earned=parse_points(points_text),
            shipping_text=delivery_text,
        )

    async def _read_catalog_id(self, page: Page, product_url: str) -> Optional[str]:
        for selector in SELECTORS["details_rows"]:
            try:
                rows = page.locator(selector)
                count = await rows.count()
                for i in range(count):
                    found = catalog_id_from_details(await rows.nth(i).text_content())
                    if found:
                        return found
            except PlaywrightError:
                continue
        return catalog_id_from_url(product_url)
