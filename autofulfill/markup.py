"""
Store page markup: candidate selectors for every element the pipeline touches.

Selectors change as the store changes its pages; keep the most reliable ones first.
"""

from typing import Dict, List

from autofulfill.locators import LocatorStrategy


SELECTORS: Dict[str, List[str]] = {
    # ---------------------------------------------------------------- sign-in
    "signin_email": [
        "input[name='email']",
        "#ap_email",
        "#ap_email_login",
    ],
    "signin_continue": [
        "input#continue",
        "#continue input",
        "span#continue input",
    ],
    "signin_password": [
        "input[name='password']",
        "#ap_password",
    ],
    "signin_remember_me": [
        "input[name='rememberMe']",
        "#rememberMe",
    ],
    "signin_submit": [
        "input#signInSubmit",
        "#signInSubmit input",
        "#auth-signin-button",
    ],
    # Second factor / verification challenge
    "second_factor": [
        "#auth-mfa-otpcode",
        "#auth-mfa-otpcode-input",
        "input[name='otpCode']",
        "#auth-mfa-form",
        "input[name='code']",
        "#cvf-page-content",
        "#channelDetailsForOtp",
    ],
    "signin_error": [
        "#auth-error-message-box",
        "#auth-warning-message-box",
        "#auth-email-missing-alert",
        "#auth-password-missing-alert",
        ".a-alert-error .a-alert-content",
    ],
    # ---------------------------------------------------------------- product
    "title": [
        "#productTitle",
        "#title",
    ],
    "price": [
        "#priceblock_ourprice",
        "#priceblock_dealprice",
        "#corePrice_feature_div .a-offscreen",
        "#corePriceDisplay_desktop_feature_div .a-offscreen",
        "span.a-price span.a-offscreen",
    ],
    "availability": [
        "#availability",
        "#availability span",
        "#outOfStock",
    ],
    "condition": [
        "#conditionInfo",
        "#olp_feature_div",
        "#usedBuySection",
    ],
    "delivery": [
        "#mir-layout-DELIVERY_BLOCK-slot-PRIMARY_DELIVERY_MESSAGE_LARGE",
        "#mir-layout-DELIVERY_BLOCK-slot-PRIMARY_DELIVERY_MESSAGE",
        "#deliveryMessageMirId",
        "#ddmDeliveryMessage",
    ],
    "points": [
        "#loyalty-points",
        "#apex_offerDisplay_desktop_summary",
        "#ppd-wallet-points-text",
    ],
    # Rows of the product details table / bullets (catalog id lives here)
    "details_rows": [
        "#productDetails_detailBullets_sections1 tr",
        "#productDetails_techSpec_section_1 tr",
        "#detailBullets_feature_div li",
        "#detail_bullets_id li",
    ],
    # ---------------------------------------------------------------- cart
    "cart_delete": [
        "input[value='Delete']",
        "input[value='削除']",
        "input[data-action='delete']",
        "span[data-action='delete'] input",
        "[data-feature-id='delete'] input",
    ],
    "add_to_cart": [
        "#add-to-cart-button",
        "input#add-to-cart-button",
        "input[name='submit.add-to-cart']",
        "#buy-now-button",
        "input[name='submit.buy-now']",
        "[data-feature-id='addToCart'] button",
    ],
    "cart_confirm": [
        "#attach-sidesheet",
        "#sw-atc-details-single-container",
        "#huc-v2-order-row-confirm-text",
        "#NATC_SMART_WAGON_CONF_MSG_SUCCESS",
        "#hlb-view-cart-announce",
    ],
    "proceed_to_checkout": [
        "input[name='proceedToRetailCheckout']",
        "input#proceedToRetailCheckout",
        "a#hlb-ptc-btn-native",
        "#sc-buy-box-ptc-button input",
        "[data-feature-id='proceed-to-checkout-action'] input",
    ],
    # ---------------------------------------------------------------- checkout
    "address_entries": [
        ".address-book-entry",
        "div#address-book-entry-0",
        "[data-testid='Address_selectShipToThisAddress']",
    ],
    "address_confirm": [
        "#shipToThisAddressButton",
        "input[data-testid='Address_selectShipToThisAddress']",
        "#orderSummaryPrimaryActionBtn input",
    ],
    "place_order": [
        "input.place-your-order-button",
        "input[name='placeYourOrder1']",
        "input#submitOrderButtonId",
        "#submitOrderButtonId input",
        "#bottomSubmitOrderButtonId input",
        "#turbo-checkout-pyo-button",
    ],
    # Confirmation marker, English and Japanese storefronts
    "order_confirmation": [
        "#checkoutThankYouHeader",
        "#widget-purchaseConfirmationStatus",
        "[data-testid='order-confirmation']",
        "h1:has-text('Order placed, thank you')",
        "h4:has-text('Order placed, thank you')",
        "h1:has-text('注文が確定しました')",
        "h4:has-text('注文が確定しました')",
        "h1:has-text('ご注文ありがとうございます')",
    ],
    "order_id": [
        "span.order-id",
        ".order-number",
        "#order-number",
        "[data-test-id='order-summary-primary-actions']",
        "#orderDetails bdi",
    ],
    "order_total": [
        "#grand-total-price",
        ".grand-total-price",
        "#subtotals-marketplace-spp-bottom .a-color-price",
        "span.a-price span.a-offscreen",
    ],
    "order_shipping": [
        "#shipping-cost",
        "#subtotals-marketplace-table tr:has-text('Shipping') .a-text-right",
        "#subtotals-marketplace-table tr:has-text('配送料') .a-text-right",
    ],
    "order_points_used": [
        "#points-used",
        "#subtotals-marketplace-table tr:has-text('ポイント') .a-text-right",
    ],
}


def strategy(key: str) -> LocatorStrategy:
    """Build the locator strategy for a markup key."""
    return LocatorStrategy.from_selectors(key, SELECTORS[key])
