"""
Purchase and restore models.

Defines platform purchase details, purchase outcomes, restore outcomes
and the purchase error taxonomy.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Tuple, Union, Literal
from datetime import datetime
from enum import Enum

from reconciler.receipts.models import AutoRenewable, ReceiptItem, SubscriptionKind


# ========== Enums ==========

class PurchaseErrorCode(str, Enum):
    """Causes a platform purchase or restore can fail with."""
    CLIENT_INVALID = "client_invalid"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_INVALID = "payment_invalid"
    PAYMENT_NOT_ALLOWED = "payment_not_allowed"
    PRODUCT_NOT_AVAILABLE = "product_not_available"
    CLOUD_PERMISSION_DENIED = "cloud_permission_denied"
    CLOUD_NETWORK_FAILURE = "cloud_network_failure"
    CLOUD_SERVICE_REVOKED = "cloud_service_revoked"
    DEFERRED = "deferred"
    UNKNOWN = "unknown"


# ========== Purchase Models ==========

class Purchase(BaseModel):
    """Purchase details reported by the platform."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = 1
    transaction_id: Optional[str] = None
    original_purchase_date: Optional[datetime] = None
    needs_finish_transaction: bool = False


class PurchaseOutcome(BaseModel):
    """Result of a purchase whose entitlement was verified."""
    product_id: str
    expiry_date: datetime
    receipt_items: Tuple[ReceiptItem, ...] = ()


class PurchaseRequest(BaseModel):
    """Purchase request body."""
    quantity: int = Field(default=1, ge=1)
    kind: SubscriptionKind = Field(default_factory=AutoRenewable, discriminator="kind")


# ========== Restore Models ==========

class RestoreFailure(BaseModel):
    """One failed restoration with an optional diagnostic message."""
    cause: PurchaseErrorCode
    message: Optional[str] = None


class Restored(BaseModel):
    """Every restoration succeeded."""
    outcome: Literal["restored"] = "restored"
    purchases: Tuple[Purchase, ...]


class PartiallyFailed(BaseModel):
    """
    At least one restoration failed.

    Takes precedence over successes, so some purchases may still have
    been restored.
    """
    outcome: Literal["partially_failed"] = "partially_failed"
    failures: Tuple[RestoreFailure, ...]


class NothingToRestore(BaseModel):
    """The platform had no prior purchases to restore."""
    outcome: Literal["nothing_to_restore"] = "nothing_to_restore"


RestoreOutcome = Union[Restored, PartiallyFailed, NothingToRestore]


# ========== Errors ==========

class PurchaseError(Exception):
    """Base exception for purchase and restore failures."""


class NetworkUnavailableError(PurchaseError):
    """Raised before any platform call when the network is unreachable."""

    def __init__(self):
        super().__init__("Network is not reachable")


class PurchaseFailedError(PurchaseError):
    """Raised when the platform rejects a purchase."""

    def __init__(self, code: PurchaseErrorCode, cause: Optional[Exception] = None):
        super().__init__(f"Purchase failed: {code.value}")
        self.code = code
        self.cause = cause


class ReceiptVerificationFailedError(PurchaseError):
    """Raised when the receipt could not be verified after a purchase."""

    def __init__(self, product_id: str, cause: Exception):
        super().__init__(f"Receipt verification failed for {product_id}: {cause}")
        self.product_id = product_id
        self.cause = cause


class SubscriptionExpiredError(PurchaseError):
    """Raised when the purchased subscription is already expired."""

    def __init__(
        self,
        product_id: str,
        expiry_date: datetime,
        items: Tuple[ReceiptItem, ...] = ()
    ):
        super().__init__(f"Subscription {product_id} expired at {expiry_date.isoformat()}")
        self.product_id = product_id
        self.expiry_date = expiry_date
        self.items = items


class NotPurchasedError(PurchaseError):
    """Raised when the receipt holds no entitlement for the product."""

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} was never purchased")
        self.product_id = product_id
