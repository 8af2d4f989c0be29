"""
Domain values for the fulfillment pipeline: jobs, snapshots, outcomes and failures.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Generic, TypeVar

T = TypeVar("T")


class JobStatus(str, Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    FULFILLED = "Fulfilled"
    FAILED_PERMANENT = "FailedPermanent"
    MANUAL_REVIEW = "ManualReviewRequired"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.FULFILLED, JobStatus.FAILED_PERMANENT, JobStatus.MANUAL_REVIEW)


class ErrorCode(str, Enum):
    SECOND_FACTOR_REQUIRED = "SecondFactorRequired"
    LOGIN_REJECTED = "LoginRejected"
    ADD_TO_CART_FAILED = "AddToCartFailed"
    CHECKOUT_FAILED = "CheckoutFailed"
    ADDRESS_NOT_FOUND = "AddressNotFound"
    PLACE_ORDER_FAILED = "PlaceOrderFailed"
    ORDER_CONFIRMATION_FAILED = "OrderConfirmationFailed"
    ORDER_ID_NOT_FOUND = "OrderIdNotFound"
    PIPELINE_TIMEOUT = "PipelineTimeout"
    SESSION_BUSY = "SessionBusy"
    CREDENTIALS_MISSING = "CredentialsMissing"
    UNKNOWN_FAILURE = "UnknownFailure"


# Codes that stop automatic handling and go to a human when they are not retried.
# Anything else that is not retried is a permanent failure.
MANUAL_REVIEW_CODES = frozenset({
    ErrorCode.SECOND_FACTOR_REQUIRED,
    ErrorCode.ORDER_CONFIRMATION_FAILED,
    ErrorCode.ORDER_ID_NOT_FOUND,
    ErrorCode.UNKNOWN_FAILURE,
})


@dataclass(frozen=True)
class AutomationFailure:
    """A classified failure, created at the step that detected it."""
    code: ErrorCode
    message: str
    retry_safe: bool
    diagnostic_ref: Optional[str] = None
    state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "diagnosticRef": self.diagnostic_ref,
            "retrySafe": self.retry_safe,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationFailure":
        return cls(
            code=ErrorCode(data["code"]),
            message=data.get("message", ""),
            retry_safe=bool(data.get("retrySafe", False)),
            diagnostic_ref=data.get("diagnosticRef"),
            state=data.get("state"),
        )


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """Outcome of one pipeline step: a value on success, a failure otherwise."""
    ok: bool
    value: Optional[T] = None
    failure: Optional[AutomationFailure] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "StepResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, failure: AutomationFailure) -> "StepResult[T]":
        return cls(ok=False, failure=failure)


@dataclass(frozen=True)
class PurchaseOutcome:
    """Result of a confirmed checkout."""
    external_order_id: str
    final_price: Optional[Decimal] = None
    currency: Optional[str] = None
    shipping_cost: Optional[Decimal] = None
    points_used: Optional[int] = None

    def __post_init__(self):
        if not self.external_order_id:
            raise ValueError("PurchaseOutcome requires an external order id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "externalOrderId": self.external_order_id,
            "finalPrice": str(self.final_price) if self.final_price is not None else None,
            "currency": self.currency,
            "shippingCost": str(self.shipping_cost) if self.shipping_cost is not None else None,
            "pointsUsed": self.points_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PurchaseOutcome":
        def _decimal(value):
            return Decimal(value) if value is not None else None

        return cls(
            external_order_id=data["externalOrderId"],
            final_price=_decimal(data.get("finalPrice")),
            currency=data.get("currency"),
            shipping_cost=_decimal(data.get("shippingCost")),
            points_used=data.get("pointsUsed"),
        )


@dataclass(frozen=True)
class ProductSnapshot:
    """Read-only result of a product verification pass."""
    url: str
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    is_available: bool = False
    is_new: bool = True
    catalog_id: Optional[str] = None
    title: Optional[str] = None
    estimated_delivery: Optional[date] = None
    points_earned: Optional[int] = None
    shipping_text: Optional[str] = None
    scraped_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    error: Optional[str] = None

    @property
    def confident(self) -> bool:
        """True when the page loaded and a price was read."""
        return self.error is None and self.price is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productUrl": self.url,
            "price": str(self.price) if self.price is not None else None,
            "currency": self.currency,
            "isAvailable": self.is_available,
            "isNew": self.is_new,
            "estimatedDelivery": self.estimated_delivery.isoformat() if self.estimated_delivery else None,
            "pointsEarned": self.points_earned,
            "shippingText": self.shipping_text,
            "title": self.title,
            "asin": self.catalog_id,
            "scrapedAt": self.scraped_at,
            "confident": self.confident,
            "error": self.error,
        }


@dataclass
class FulfillmentJob:
    """One unit of work: purchase a product on behalf of a source order."""
    job_id: str
    source_order_ref: str
    product_ref: str
    account_ref: str
    shipping_address_label: str
    attempt: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.QUEUED
    available_at: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: Optional[str] = None
    outcome: Optional[Dict[str, Any]] = None
    last_failure: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempt, 0)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FulfillmentJob":
        data = dict(data)
        data["status"] = JobStatus(data.get("status", JobStatus.QUEUED.value))
        return cls(**data)
