"""
Checkout state machine.
Handles: Cart Clear → Add to Cart → Proceed to Checkout → Address → Place Order → Confirmation
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from playwright.async_api import Page, Locator, Error as PlaywrightError

from autofulfill import config
from autofulfill.config import Timeouts
from autofulfill.diagnostics import Diagnostics
from autofulfill.events import event_broker, EventType, WorkerState
from autofulfill.markup import SELECTORS, strategy
from autofulfill.models import AutomationFailure, ErrorCode, PurchaseOutcome, StepResult
from autofulfill.verifier import parse_price, parse_points

# Upper bound on delete clicks while emptying the cart
MAX_CART_LINES = 25

STORE_ORDER_ID = re.compile(r"\b\d{3}-\d{7}-\d{7}\b")
# The token after the label must contain a digit, so prose like "Status: pending" is skipped
LABELLED_ORDER_ID = re.compile(r"(?:#|:|：)\s*((?=[A-Za-z-]*\d)[A-Za-z0-9][A-Za-z0-9-]*)")
BARE_ORDER_ID = re.compile(r"[A-Za-z0-9][A-Za-z0-9-]*")


class CheckoutState(str, Enum):
    CART_CLEAR = "CartClear"
    ADD_TO_CART = "AddToCart"
    PROCEED_TO_CHECKOUT = "ProceedToCheckout"
    ADDRESS_SELECTION = "AddressSelection"
    PLACE_ORDER = "PlaceOrder"
    CONFIRMATION_CHECK = "ConfirmationCheck"


WORKER_STATES = {
    CheckoutState.CART_CLEAR: WorkerState.CART_CLEAR,
    CheckoutState.ADD_TO_CART: WorkerState.ADD_TO_CART,
    CheckoutState.PROCEED_TO_CHECKOUT: WorkerState.PROCEED_TO_CHECKOUT,
    CheckoutState.ADDRESS_SELECTION: WorkerState.ADDRESS_SELECTION,
    CheckoutState.PLACE_ORDER: WorkerState.PLACE_ORDER,
    CheckoutState.CONFIRMATION_CHECK: WorkerState.CONFIRMATION_CHECK,
}


@dataclass(frozen=True)
class CheckoutRequest:
    product_url: str
    address_label: str


def _normalize(text: str) -> str:
    return " ".join(text.split())


def select_address(label: str, entries: Sequence[str], max_delta: int) -> Optional[int]:
    """
    Pick the address entry for `label`.

    An entry (or one of its lines) equal to the label wins over any fuzzy match.
    Otherwise the closest entry containing the label is chosen, but only when it
    is at most `max_delta` characters longer than the label.
    """
    wanted = _normalize(label)
    if not wanted:
        return None

    candidates: List[Tuple[int, List[str]]] = []
    for index, text in enumerate(entries):
        lines = [_normalize(line) for line in (text or "").splitlines() if line.strip()]
        candidates.append((index, [_normalize(text or "")] + lines))

    for index, labels in candidates:
        if wanted in labels:
            return index

    best: Optional[Tuple[int, int]] = None
    for index, labels in candidates:
        for text in labels:
            if wanted in text:
                delta = len(text) - len(wanted)
                if delta <= max_delta and (best is None or delta < best[1]):
                    best = (index, delta)
    return best[0] if best else None


def parse_order_id(text: Optional[str]) -> Optional[str]:
    """Read an order id from confirmation text ('Order #: 503-1234567-1234567', 'ORD-12345')."""
    if not text:
        return None
    text = text.strip()
    match = STORE_ORDER_ID.search(text)
    if match:
        return match.group(0)
    match = LABELLED_ORDER_ID.search(text)
    if match:
        return match.group(1)
    if BARE_ORDER_ID.fullmatch(text) and any(c.isdigit() for c in text):
        return text
    return None


class CheckoutFlow:
    """
    Strictly ordered purchase flow on an authenticated page.

    Each state must succeed before the next runs. A failing state captures a
    screenshot and returns a failure tagged with its name; earlier states are
    not rolled back. A PurchaseOutcome is only produced after a confirmation
    marker and an order id have both been read.
    """

    def __init__(
        self,
        diagnostics: Diagnostics,
        timeouts: Optional[Timeouts] = None,
        cart_url: str = config.CART_URL,
        address_max_delta: int = config.ADDRESS_MATCH_MAX_DELTA,
    ):
        self.diagnostics = diagnostics
        self.timeouts = timeouts or Timeouts.from_env()
        self.cart_url = cart_url
        self.address_max_delta = address_max_delta

        self._current_state: Optional[CheckoutState] = None
        self._order_submitted = False

        self.cart_delete = strategy("cart_delete")
        self.add_to_cart = strategy("add_to_cart")
        self.cart_confirm = strategy("cart_confirm")
        self.proceed_to_checkout = strategy("proceed_to_checkout")
        self.address_entries = strategy("address_entries")
        self.address_confirm = strategy("address_confirm")
        self.place_order = strategy("place_order")
        self.order_confirmation = strategy("order_confirmation")
        self.order_id = strategy("order_id")
        self.order_total = strategy("order_total")
        self.order_shipping = strategy("order_shipping")
        self.order_points_used = strategy("order_points_used")

    @property
    def current_state(self) -> Optional[CheckoutState]:
        return self._current_state

    @property
    def order_submitted(self) -> bool:
        """True once a place-order control has been clicked in this run."""
        return self._order_submitted

    def _update_state(self, state: CheckoutState) -> None:
        self._current_state = state
        event_broker.current_state = WORKER_STATES[state]

    async def run(self, page: Page, request: CheckoutRequest) -> StepResult[PurchaseOutcome]:
        steps = [
            (CheckoutState.CART_CLEAR, self._step_cart_clear),
            (CheckoutState.ADD_TO_CART, self._step_add_to_cart),
            (CheckoutState.PROCEED_TO_CHECKOUT, self._step_proceed_to_checkout),
            (CheckoutState.ADDRESS_SELECTION, self._step_select_address),
            (CheckoutState.PLACE_ORDER, self._step_place_order),
            (CheckoutState.CONFIRMATION_CHECK, self._step_confirmation_check),
        ]

        await event_broker.emit(
            EventType.STEP,
            "checkout_started",
            url=request.product_url,
            details={"address_label": request.address_label}
        )

        result: StepResult = StepResult.success()
        for state, step in steps:
            self._update_state(state)
            try:
                result = await asyncio.wait_for(step(page, request), timeout=self.timeouts.state_seconds)
            except asyncio.TimeoutError:
                result = await self._state_timed_out(page, state)
            except Exception as e:
                result = await self._fail(
                    page, state, ErrorCode.UNKNOWN_FAILURE,
                    f"Unexpected error in {state.value}: {e}",
                    retry_safe=not self._order_submitted,
                )
            if not result.ok:
                event_broker.current_state = WorkerState.ERROR
                return result

        return result

    async def _fail(
        self,
        page: Page,
        state: CheckoutState,
        code: ErrorCode,
        message: str,
        retry_safe: bool
    ) -> StepResult:
        """Screenshot, report and build the failure for `state`."""
        screenshot = await self.diagnostics.capture(page, f"checkout_{state.value}")
        await event_broker.emit(
            EventType.ERROR,
            f"checkout_{state.value}_failed",
            url=page.url if page and not page.is_closed() else "",
            details={"code": code.value, "error": message, "retry_safe": retry_safe, "screenshot": screenshot}
        )
        return StepResult.failed(AutomationFailure(
            code=code,
            message=message,
            retry_safe=retry_safe,
            diagnostic_ref=screenshot,
            state=state.value,
        ))

    async def _state_timed_out(self, page: Page, state: CheckoutState) -> StepResult:
        message = f"{state.value} timed out after {self.timeouts.state_seconds:.0f}s"
        if state == CheckoutState.CART_CLEAR:
            await event_broker.emit(EventType.STEP, "cart_clear_timeout", url=page.url, details={"message": message})
            return StepResult.success()
        if state == CheckoutState.ADD_TO_CART:
            return await self._fail(page, state, ErrorCode.ADD_TO_CART_FAILED, message, retry_safe=True)
        if state in (CheckoutState.PROCEED_TO_CHECKOUT, CheckoutState.ADDRESS_SELECTION):
            return await self._fail(page, state, ErrorCode.CHECKOUT_FAILED, message, retry_safe=True)
        if state == CheckoutState.PLACE_ORDER and not self._order_submitted:
            return await self._fail(page, state, ErrorCode.PLACE_ORDER_FAILED, message, retry_safe=True)
        return await self._fail(page, state, ErrorCode.ORDER_CONFIRMATION_FAILED, message, retry_safe=False)

    # ------------------------------------------------------------------ states

    async def _step_cart_clear(self, page: Page, request: CheckoutRequest) -> StepResult:
        """Empty the cart. Best-effort: an empty cart is the usual case."""
        try:
            await page.goto(self.cart_url, wait_until="domcontentloaded", timeout=self.timeouts.page_load_ms)
        except PlaywrightError as e:
            await event_broker.emit(EventType.STEP, "cart_clear_skipped", url=self.cart_url, details={"error": str(e)})
            return StepResult.success()
        await asyncio.sleep(self.timeouts.settle_seconds)

        removed = 0
        for _ in range(MAX_CART_LINES):
            clicked = await self.cart_delete.click_first(
                page,
                timeout=self.timeouts.element_visible_ms,
                check_timeout=self.timeouts.selector_check_ms
            )
            if not clicked:
                break
            removed += 1
            await asyncio.sleep(self.timeouts.settle_seconds)

        await event_broker.emit(EventType.STEP, "cart_cleared", url=page.url, details={"removed": removed})
        return StepResult.success()

    async def _step_add_to_cart(self, page: Page, request: CheckoutRequest) -> StepResult:
        state = CheckoutState.ADD_TO_CART
        try:
            await page.goto(request.product_url, wait_until="domcontentloaded", timeout=self.timeouts.page_load_ms)
        except PlaywrightError as e:
            return await self._fail(page, state, ErrorCode.ADD_TO_CART_FAILED, f"Product page failed to load: {e}", retry_safe=True)

        await self.add_to_cart.wait_any(page, timeout=self.timeouts.element_visible_ms, poll_seconds=self.timeouts.poll_seconds)
        clicked = await self.add_to_cart.click_first(
            page,
            timeout=self.timeouts.element_visible_ms,
            check_timeout=self.timeouts.selector_check_ms
        )
        if not clicked:
            return await self._fail(page, state, ErrorCode.ADD_TO_CART_FAILED, "Add to cart control not found", retry_safe=True)

        confirmed = await self.cart_confirm.wait_any(
            page, timeout=self.timeouts.element_visible_ms, poll_seconds=self.timeouts.poll_seconds
        )
        if not confirmed:
            await asyncio.sleep(self.timeouts.settle_seconds)

        await event_broker.emit(
            EventType.STEP,
            "added_to_cart",
            url=page.url,
            details={"selector": clicked, "confirmation": confirmed}
        )
        return StepResult.success()

    async def _step_proceed_to_checkout(self, page: Page, request: CheckoutRequest) -> StepResult:
        state = CheckoutState.PROCEED_TO_CHECKOUT
        try:
            await page.goto(self.cart_url, wait_until="domcontentloaded", timeout=self.timeouts.page_load_ms)
        except PlaywrightError as e:
            return await self._fail(page, state, ErrorCode.CHECKOUT_FAILED, f"Cart failed to load: {e}", retry_safe=True)

        await self.proceed_to_checkout.wait_any(page, timeout=self.timeouts.element_visible_ms, poll_seconds=self.timeouts.poll_seconds)
        clicked = await self.proceed_to_checkout.click_first(
            page,
            timeout=self.timeouts.element_visible_ms,
            check_timeout=self.timeouts.selector_check_ms
        )
        if not clicked:
            return await self._fail(page, state, ErrorCode.CHECKOUT_FAILED, "Proceed to checkout control not found", retry_safe=True)

        await asyncio.sleep(self.timeouts.settle_seconds)
        await event_broker.emit(EventType.STEP, "checkout_opened", url=page.url, details={"selector": clicked})
        return StepResult.success()

    async def _read_address_entries(self, page: Page) -> Tuple[Optional[Locator], List[str]]:
        for selector in SELECTORS["address_entries"]:
            try:
                entries = page.locator(selector)
                count = await entries.count()
                if count:
                    return entries, [await entries.nth(i).inner_text() for i in range(count)]
            except PlaywrightError:
                continue
        return None, []

    async def _step_select_address(self, page: Page, request: CheckoutRequest) -> StepResult:
        state = CheckoutState.ADDRESS_SELECTION
        await self.address_entries.wait_any(page, timeout=self.timeouts.address_list_ms, poll_seconds=self.timeouts.poll_seconds)
        entries, texts = await self._read_address_entries(page)
        if entries is None:
            await event_broker.emit(EventType.STEP, "address_list_absent", url=page.url)
            return StepResult.success()

        index = select_address(request.address_label, texts, self.address_max_delta)
        if index is None:
            return await self._fail(
                page, state, ErrorCode.ADDRESS_NOT_FOUND,
                f"No address entry matches '{request.address_label}' ({len(texts)} entries)",
                retry_safe=False,
            )

        try:
            await entries.nth(index).click(timeout=self.timeouts.element_visible_ms)
        except PlaywrightError as e:
            return await self._fail(page, state, ErrorCode.CHECKOUT_FAILED, f"Address entry click failed: {e}", retry_safe=True)

        await self.address_confirm.click_first(
            page,
            timeout=self.timeouts.element_visible_ms,
            check_timeout=self.timeouts.selector_check_ms
        )
        await asyncio.sleep(self.timeouts.settle_seconds)
        await event_broker.emit(
            EventType.STEP,
            "address_selected",
            url=page.url,
            details={"label": request.address_label, "entry": _normalize(texts[index])[:120]}
        )
        return StepResult.success()

    async def _step_place_order(self, page: Page, request: CheckoutRequest) -> StepResult:
        state = CheckoutState.PLACE_ORDER
        await self.place_order.wait_any(page, timeout=self.timeouts.checkout_load_ms, poll_seconds=self.timeouts.poll_seconds)
        clicked = await self.place_order.click_first(
            page,
            timeout=self.timeouts.element_visible_ms,
            check_timeout=self.timeouts.selector_check_ms
        )
        if not clicked:
            return await self._fail(page, state, ErrorCode.PLACE_ORDER_FAILED, "Place order control not found", retry_safe=True)

        self._order_submitted = True
        await event_broker.emit(EventType.STEP, "order_submitted", url=page.url, details={"selector": clicked})
        return StepResult.success()

    async def _step_confirmation_check(self, page: Page, request: CheckoutRequest) -> StepResult[PurchaseOutcome]:
        state = CheckoutState.CONFIRMATION_CHECK
        await asyncio.sleep(self.timeouts.confirm_settle_seconds)

        marker = await self.order_confirmation.wait_any(
            page, timeout=self.timeouts.order_confirm_ms, poll_seconds=self.timeouts.poll_seconds
        )
        if not marker:
            return await self._fail(
                page, state, ErrorCode.ORDER_CONFIRMATION_FAILED,
                "Order submitted but no confirmation was shown; the purchase may or may not exist",
                retry_safe=False,
            )

        order_id = parse_order_id(await self.order_id.first_text(page, timeout=self.timeouts.selector_check_ms))
        if not order_id:
            return await self._fail(
                page, state, ErrorCode.ORDER_ID_NOT_FOUND,
                "Order confirmed but the order id could not be read",
                retry_safe=False,
            )

        final_price, currency = parse_price(await self.order_total.first_text(page, timeout=self.timeouts.selector_check_ms))
        shipping_cost, _ = parse_price(await self.order_shipping.first_text(page, timeout=self.timeouts.selector_check_ms))
        points_used = parse_points(await self.order_points_used.first_text(page, timeout=self.timeouts.selector_check_ms))

        outcome = PurchaseOutcome(
            external_order_id=order_id,
            final_price=final_price,
            currency=currency,
            shipping_cost=shipping_cost,
            points_used=points_used,
        )
        await event_broker.emit(
            EventType.STEP,
            "order_confirmed",
            url=page.url,
            details={"marker": marker, **outcome.to_dict()}
        )
        return StepResult.success(outcome)
