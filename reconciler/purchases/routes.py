"""
Purchase API routes.

Drives platform purchases and restores and feeds verified purchases into
the reconciliation set.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Optional
import structlog

from reconciler.purchases.models import (
    NetworkUnavailableError,
    NotPurchasedError,
    PurchaseFailedError,
    PurchaseOutcome,
    PurchaseRequest,
    ReceiptVerificationFailedError,
    RestoreOutcome,
    SubscriptionExpiredError
)
from reconciler.purchases.service import PurchaseService
from reconciler.subscriptions.service import ReconciliationService
from reconciler.subscriptions.routes import get_reconciliation_service


logger = structlog.get_logger()
router = APIRouter(prefix="/purchases", tags=["purchases"])


def get_purchase_service(request: Request) -> PurchaseService:
    """Dependency to get the application's purchase service."""
    service = getattr(request.app.state, "purchase_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Purchase platform not configured"
        )
    return service


# ========== Restore ==========

@router.post("/restore", response_model=RestoreOutcome)
async def restore_purchases(
    purchase_service: PurchaseService = Depends(get_purchase_service)
):
    """
    Restore previously purchased products.

    Returns the restore outcome; a partial failure is reported in the body,
    not as an error status.

    **Errors:**
    - 503: Network unreachable or purchase platform not configured
    """
    try:
        outcome = await purchase_service.restore()
    except NetworkUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )

    logger.info("restore_request_completed", outcome=outcome.outcome)
    return outcome


# ========== Purchase ==========

@router.post("/{product_id}", response_model=PurchaseOutcome)
async def purchase_subscription(
    product_id: str,
    body: Optional[PurchaseRequest] = None,
    purchase_service: PurchaseService = Depends(get_purchase_service),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Purchase a subscription and verify the resulting entitlement.

    **Flow:**
    1. Platform purchase sheet completes the payment
    2. Receipt is fetched and validated
    3. Verified subscription is recorded in the reconciliation set

    **Errors:**
    - 402: Platform rejected the purchase
    - 409: Receipt shows the subscription expired or never purchased
    - 502: Receipt could not be verified
    - 503: Network unreachable or purchase platform not configured
    """
    request = body or PurchaseRequest()

    try:
        outcome = await purchase_service.purchase(
            product_id,
            kind=request.kind,
            quantity=request.quantity
        )
    except NetworkUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    except PurchaseFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": str(e), "code": e.code.value}
        )
    except ReceiptVerificationFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )
    except SubscriptionExpiredError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "expiry_date": e.expiry_date.isoformat()}
        )
    except NotPurchasedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e)}
        )

    reconciliation_service.record_purchase(outcome)
    return outcome
