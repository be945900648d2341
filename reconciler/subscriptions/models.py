"""
Subscription reconciliation models and schemas.

Defines the per-product snapshot held by the reconciliation set and the
API response models.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Tuple, List
from datetime import datetime

from reconciler.receipts.models import (
    Purchased,
    ReceiptItem,
    SubscriptionStatus
)
from reconciler.purchases.models import PurchaseOutcome


# ========== Reconciled Item ==========

class ReconciledItem(BaseModel):
    """
    Latest known status of one subscription product.

    Equality and hashing use product_id only, so storing an item for a
    product that is already present replaces it.
    """
    model_config = ConfigDict(frozen=True)

    product_id: str
    expiry_date: Optional[datetime] = None
    receipt_items: Tuple[ReceiptItem, ...] = ()
    subscribed: bool = False

    def __eq__(self, other):
        if not isinstance(other, ReconciledItem):
            return NotImplemented
        return self.product_id == other.product_id

    def __hash__(self):
        return hash(self.product_id)

    @classmethod
    def from_status(cls, product_id: str, status: SubscriptionStatus) -> "ReconciledItem":
        """Build a snapshot from an evaluated subscription status."""
        if status.state == "not_purchased":
            return cls.unverified(product_id)
        return cls(
            product_id=product_id,
            expiry_date=status.expiry_date,
            receipt_items=status.items,
            subscribed=isinstance(status, Purchased)
        )

    @classmethod
    def from_outcome(cls, outcome: PurchaseOutcome) -> "ReconciledItem":
        """Build a subscribed snapshot from a verified purchase."""
        return cls(
            product_id=outcome.product_id,
            expiry_date=outcome.expiry_date,
            receipt_items=outcome.receipt_items,
            subscribed=True
        )

    @classmethod
    def unverified(cls, product_id: str) -> "ReconciledItem":
        """Snapshot used when the product could not be verified."""
        return cls(product_id=product_id)


# ========== API Models ==========

class VerifySubscriptionsRequest(BaseModel):
    """Request to run the verification sweep."""
    product_ids: Optional[List[str]] = Field(
        default=None,
        description="Products to verify (defaults to the tracked products)"
    )


class SubscriptionsResponse(BaseModel):
    """Current reconciliation set."""
    items: List[ReconciledItem]
    fully_processed: bool = Field(
        description="True when every tracked product has been reconciled"
    )


# ========== Errors ==========

class CloudUnavailableError(Exception):
    """Raised when the cloud account is unavailable for verification."""

    def __init__(self):
        super().__init__("Cloud account is not available")
