"""
Receipt models and schemas.

Parsed App Store receipts, subscription kinds and evaluation results.
"""
from pydantic import BaseModel, ConfigDict
from typing import Optional, Tuple, List, Dict, Any, Union, Literal
from datetime import datetime, timedelta
from enum import Enum


# ========== Enums ==========

class ReceiptEnvironment(str, Enum):
    """Validation authority environment."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


# ========== Receipt Models ==========

class ReceiptItem(BaseModel):
    """One transaction record inside a validated receipt."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    transaction_id: str
    original_transaction_id: Optional[str] = None
    quantity: int = 1
    purchase_date: datetime
    original_purchase_date: Optional[datetime] = None
    subscription_expiration_date: Optional[datetime] = None
    cancellation_date: Optional[datetime] = None
    is_trial_period: bool = False
    is_in_intro_offer_period: bool = False
    web_order_line_item_id: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation_date is not None


class ParsedReceipt(BaseModel):
    """Trust-verified receipt returned by the validation authority."""
    model_config = ConfigDict(frozen=True)

    environment: ReceiptEnvironment
    bundle_id: Optional[str] = None
    request_date: Optional[datetime] = None
    items: Tuple[ReceiptItem, ...] = ()
    pending_renewals: Tuple[Dict[str, Any], ...] = ()

    def items_for(self, product_id: str) -> List[ReceiptItem]:
        """Return every transaction recorded for a product."""
        return [item for item in self.items if item.product_id == product_id]


class AppleVerificationResponse(BaseModel):
    """Apple verifyReceipt response body."""
    status: int
    environment: Optional[str] = None
    receipt: Optional[Dict[str, Any]] = None
    latest_receipt_info: Optional[list] = None
    pending_renewal_info: Optional[list] = None
    is_retryable: bool = False


# ========== Subscription Kinds ==========

class AutoRenewable(BaseModel):
    """Auto-renewable subscription, expiry comes from the receipt."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["auto_renewable"] = "auto_renewable"


class NonRenewing(BaseModel):
    """Non-renewing subscription valid for a fixed duration after purchase."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["non_renewing"] = "non_renewing"
    valid_duration: timedelta


SubscriptionKind = Union[AutoRenewable, NonRenewing]


# ========== Evaluation Results ==========

class Purchased(BaseModel):
    """Subscription is active until expiry_date."""
    model_config = ConfigDict(frozen=True)

    state: Literal["purchased"] = "purchased"
    expiry_date: datetime
    items: Tuple[ReceiptItem, ...] = ()


class Expired(BaseModel):
    """Subscription was purchased but lapsed at expiry_date."""
    model_config = ConfigDict(frozen=True)

    state: Literal["expired"] = "expired"
    expiry_date: datetime
    items: Tuple[ReceiptItem, ...] = ()


class NotPurchased(BaseModel):
    """No entitlement for the product exists in the receipt."""
    model_config = ConfigDict(frozen=True)

    state: Literal["not_purchased"] = "not_purchased"


SubscriptionStatus = Union[Purchased, Expired, NotPurchased]


# ========== Errors ==========

class ReceiptError(Exception):
    """Base exception for receipt handling."""


class ReceiptFetchError(ReceiptError):
    """Raised when the signed receipt cannot be obtained."""


class ReceiptValidationError(ReceiptError):
    """Raised when the validation authority cannot confirm a receipt."""

    def __init__(
        self,
        detail: str,
        status: Optional[int] = None,
        is_retryable: bool = False
    ):
        super().__init__(detail)
        self.detail = detail
        self.status = status
        self.is_retryable = is_retryable


class ReceiptVerificationError(ReceiptError):
    """Raised by the fetch-validate pipeline, wrapping the underlying failure."""

    def __init__(self, cause: ReceiptError):
        super().__init__(str(cause))
        self.cause = cause
