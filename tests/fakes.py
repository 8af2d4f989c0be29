"""
In-memory stand-ins for the slice of Playwright's async API the pipeline uses,
and a small fixture store that renders its pages into them.

Elements are keyed by the exact selector strings in autofulfill.markup, so a
page "contains" an element when the store put it under that selector.
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

BASE_URL = "https://store.test"
SIGN_IN_URL = f"{BASE_URL}/ap/signin"
CART_URL = f"{BASE_URL}/gp/cart/view.html"
HOME_URL = f"{BASE_URL}/"
CHECKOUT_URL = f"{BASE_URL}/gp/buy/spc/handlers/display.html"
THANK_YOU_URL = f"{BASE_URL}/gp/buy/thankyou/handlers/display.html"
PRODUCT_URL = f"{BASE_URL}/dp/B0C1234567"


@dataclass
class FakeElement:
    text: str = ""
    visible: bool = True
    on_click: Optional[Callable[["FakePage"], None]] = None
    value: str = ""
    checked: bool = False


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str, index: Optional[int] = None):
        self.page = page
        self.selector = selector
        self.index = index

    def _elements(self) -> List[FakeElement]:
        return self.page.elements.get(self.selector, [])

    def _element(self) -> Optional[FakeElement]:
        elements = self._elements()
        index = self.index or 0
        return elements[index] if index < len(elements) else None

    def _require(self, timeout) -> FakeElement:
        element = self._element()
        if element is None or not element.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.selector}")
        return element

    @property
    def first(self) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, 0)

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, index)

    async def count(self) -> int:
        return len(self._elements())

    async def is_visible(self, timeout=None) -> bool:
        element = self._element()
        return bool(element and element.visible)

    async def click(self, timeout=None) -> None:
        element = self._require(timeout)
        self.page.clicks.append(self.selector)
        if element.on_click:
            element.on_click(self.page)

    async def fill(self, value: str, timeout=None) -> None:
        element = self._require(timeout)
        element.value = value
        self.page.filled[self.selector] = value

    async def check(self, timeout=None) -> None:
        self._require(timeout).checked = True

    async def text_content(self, timeout=None) -> str:
        element = self._element()
        if element is None:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.selector}")
        return element.text

    async def inner_text(self, timeout=None) -> str:
        return await self.text_content(timeout=timeout)


class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.url = "about:blank"
        self.elements: Dict[str, List[FakeElement]] = {}
        self.clicks: List[str] = []
        self.filled: Dict[str, str] = {}
        self.screenshots: List[str] = []
        self._closed = False

    def show(self, url: str, elements: Dict[str, List[FakeElement]]) -> None:
        self.url = url
        self.elements = elements

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def goto(self, url: str, wait_until=None, timeout=None) -> None:
        if self._closed:
            raise PlaywrightError("Target page, context or browser has been closed")
        await self.context.store.navigate(self, url)

    async def screenshot(self, path: str, full_page: bool = False) -> None:
        Path(path).write_bytes(b"\x89PNG\r\n\x1a\n")
        self.screenshots.append(path)

    def is_closed(self) -> bool:
        return self._closed


class FakeContext:
    def __init__(self, store: "FakeStore", storage_state=None):
        self.store = store
        self.cookies: Dict[str, str] = {}
        if storage_state:
            self.cookies = json.loads(Path(storage_state).read_text()).get("cookies", {})
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def storage_state(self, path=None) -> dict:
        state = {"cookies": dict(self.cookies), "origins": []}
        if path:
            Path(path).write_text(json.dumps(state))
        return state

    async def close(self) -> None:
        self.closed = True
        for page in self.pages:
            page._closed = True


class FakeBrowserManager:
    """Hands out FakeContexts bound to one FakeStore."""

    def __init__(self, store: "FakeStore"):
        self.store = store
        self.contexts: List[FakeContext] = []
        self.shut_down = False

    async def new_context(self, storage_state=None) -> FakeContext:
        context = FakeContext(self.store, storage_state)
        self.contexts.append(context)
        return context

    async def shutdown(self) -> None:
        self.shut_down = True


class FakeStore:
    """
    A tiny storefront: sign-in (with optional challenge or rejection), product
    page, cart, checkout with an address book, and an order confirmation page.
    """

    def __init__(self, login: str, password: str):
        self.login = login
        self.password = password

        self.second_factor = False
        self.session_challenge = False
        self.login_error: Optional[str] = None

        self.product_title = "Acme Figure (Limited)"
        self.price_text = "¥3,500"
        self.availability_text = "在庫あり。"
        self.delivery_text = "10月21日 火曜日にお届け"
        self.product_available = True

        self.addresses = ["Shopee Warehouse\n1-2-3 Minato, Tokyo", "Home\n4-5-6 Shibuya, Tokyo"]
        self.checkout_available = True
        self.place_order_available = True
        self.confirm_order = True
        self.order_id_text: Optional[str] = "ORD-12345"
        self.total_text = "¥3,500"
        self.shipping_text = "¥0"

        self.hang_urls: set = set()
        self.broken_urls: set = set()

        self.cart: List[str] = []
        self.selected_address: Optional[str] = None
        self.orders: List[Tuple[List[str], Optional[str]]] = []
        self.sign_in_attempts = 0

    async def navigate(self, page: FakePage, url: str) -> None:
        if url in self.hang_urls:
            await asyncio.sleep(3600)
        if url in self.broken_urls:
            raise PlaywrightError(f"net::ERR_CONNECTION_RESET at {url}")

        if url == SIGN_IN_URL:
            self._render_sign_in(page)
        elif url == CART_URL:
            self._render_cart(page)
        elif url.startswith(f"{BASE_URL}/dp/"):
            self._render_product(page, url)
        else:
            page.show(url, {})

    # ---------------------------------------------------------------- sign-in

    def _signed_in(self, page: FakePage) -> bool:
        return page.context.cookies.get("session-token") == self.login

    def _render_home(self, page: FakePage) -> None:
        page.show(HOME_URL, {"#nav-link-accountList": [FakeElement("Hello, buyer")]})

    def _render_sign_in(self, page: FakePage) -> None:
        if self._signed_in(page) and self.session_challenge:
            page.show(f"{BASE_URL}/ap/cvf/request", {"#cvf-page-content": [FakeElement("Verify it's you")]})
            return
        if self._signed_in(page):
            self._render_home(page)
            return
        page.show(SIGN_IN_URL, {
            "input[name='email']": [FakeElement()],
            "input#continue": [FakeElement(on_click=self._render_password)],
        })

    def _render_password(self, page: FakePage) -> None:
        page.show(SIGN_IN_URL, {
            "input[name='password']": [FakeElement()],
            "input[name='rememberMe']": [FakeElement()],
            "input#signInSubmit": [FakeElement(on_click=self._submit_sign_in)],
        })

    def _submit_sign_in(self, page: FakePage) -> None:
        self.sign_in_attempts += 1
        email = page.filled.get("input[name='email']")
        password = page.filled.get("input[name='password']")

        if self.login_error:
            page.show(SIGN_IN_URL, {"#auth-error-message-box": [FakeElement(self.login_error)]})
            return
        if email != self.login or password != self.password:
            page.show(SIGN_IN_URL, {"#auth-error-message-box": [FakeElement("Your password is incorrect")]})
            return
        if self.second_factor:
            page.show(f"{BASE_URL}/ap/mfa", {
                "#auth-mfa-otpcode": [FakeElement()],
                "#auth-mfa-form": [FakeElement("Enter the one-time code")],
            })
            return

        page.context.cookies["session-token"] = email
        self._render_home(page)

    # ---------------------------------------------------------------- product

    def _render_product(self, page: FakePage, url: str) -> None:
        elements = {
            "#productTitle": [FakeElement(self.product_title)],
            "span.a-price span.a-offscreen": [FakeElement(self.price_text)],
            "#availability": [FakeElement(self.availability_text)],
            "#deliveryMessageMirId": [FakeElement(self.delivery_text)],
            "#detailBullets_feature_div li": [
                FakeElement("Manufacturer : Acme"),
                FakeElement("ASIN : B0C1234567"),
            ],
        }
        if self.product_available:
            elements["#add-to-cart-button"] = [FakeElement(on_click=lambda p: self._add_to_cart(p, url))]
        page.show(url, elements)

    def _add_to_cart(self, page: FakePage, url: str) -> None:
        self.cart.append(url)
        page.elements["#attach-sidesheet"] = [FakeElement("Added to cart")]

    # ---------------------------------------------------------------- cart / checkout

    def _render_cart(self, page: FakePage) -> None:
        elements = {}
        if self.cart:
            elements["input[value='Delete']"] = [FakeElement(on_click=self._delete_line) for _ in self.cart]
            if self.checkout_available:
                elements["input[name='proceedToRetailCheckout']"] = [FakeElement(on_click=self._render_checkout)]
        page.show(CART_URL, elements)

    def _delete_line(self, page: FakePage) -> None:
        self.cart.pop(0)
        self._render_cart(page)

    def _render_checkout(self, page: FakePage) -> None:
        elements = {}
        if self.addresses:
            elements[".address-book-entry"] = [
                FakeElement(text, on_click=lambda p, t=text: self._select_address(t))
                for text in self.addresses
            ]
            elements["#shipToThisAddressButton"] = [FakeElement("Use this address")]
        if self.place_order_available:
            elements["input[name='placeYourOrder1']"] = [FakeElement(on_click=self._place_order)]
        page.show(CHECKOUT_URL, elements)

    def _select_address(self, text: str) -> None:
        self.selected_address = text

    def _place_order(self, page: FakePage) -> None:
        self.orders.append((list(self.cart), self.selected_address))
        self.cart = []
        if not self.confirm_order:
            page.show(THANK_YOU_URL, {})
            return
        page.show(THANK_YOU_URL, {
            "#checkoutThankYouHeader": [FakeElement("注文が確定しました")],
            "span.order-id": [FakeElement(self.order_id_text)] if self.order_id_text else [],
            "#grand-total-price": [FakeElement(self.total_text)],
            "#shipping-cost": [FakeElement(self.shipping_text)],
        })
