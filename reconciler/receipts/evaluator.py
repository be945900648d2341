"""
Subscription evaluation.

Pure functions deciding a product's status from a validated receipt.
"""
from typing import Optional, List, Tuple
from datetime import datetime, timezone

from reconciler.receipts.models import (
    AutoRenewable,
    Expired,
    NonRenewing,
    NotPurchased,
    ParsedReceipt,
    Purchased,
    ReceiptItem,
    SubscriptionKind,
    SubscriptionStatus
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _expiry_of(item: ReceiptItem, kind: SubscriptionKind) -> Optional[datetime]:
    if isinstance(kind, NonRenewing):
        return _as_utc(item.purchase_date + kind.valid_duration)
    return _as_utc(item.subscription_expiration_date)


def evaluate_subscription(
    receipt: ParsedReceipt,
    product_id: str,
    kind: SubscriptionKind = AutoRenewable(),
    as_of: Optional[datetime] = None
) -> SubscriptionStatus:
    """
    Determine whether a subscription is active, expired or never purchased.

    Cancelled transactions are ignored. When several renewals exist the one
    with the latest expiry governs, while every matching item is returned
    latest first.

    Args:
        receipt: Validated receipt
        product_id: Subscription product to evaluate
        kind: Auto-renewable, or non-renewing with a validity duration
        as_of: Reference instant (defaults to the receipt's request date,
            then to the current time); naive values are read as UTC

    Returns:
        Purchased, Expired or NotPurchased
    """
    candidates = [
        item for item in receipt.items_for(product_id)
        if not item.is_cancelled
    ]

    dated: List[Tuple[datetime, ReceiptItem]] = []
    for item in candidates:
        expiry = _expiry_of(item, kind)
        if expiry is not None:
            dated.append((expiry, item))

    if not dated:
        return NotPurchased()

    dated.sort(key=lambda pair: pair[0], reverse=True)
    expiry_date = dated[0][0]
    items = tuple(item for _, item in dated)

    # Naive instants are taken as UTC
    reference = _as_utc(as_of or receipt.request_date or datetime.now(timezone.utc))

    if expiry_date > reference:
        return Purchased(expiry_date=expiry_date, items=items)
    return Expired(expiry_date=expiry_date, items=items)
