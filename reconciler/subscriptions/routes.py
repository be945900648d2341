"""
Subscription reconciliation API routes.

Exposes the reconciliation set, the verification sweep and sign-out clear.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Optional
import structlog

from reconciler.subscriptions.models import (
    CloudUnavailableError,
    SubscriptionsResponse,
    VerifySubscriptionsRequest
)
from reconciler.subscriptions.service import ReconciliationService


logger = structlog.get_logger()
router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_reconciliation_service(request: Request) -> ReconciliationService:
    """Dependency to get the application's reconciliation service."""
    return request.app.state.reconciliation_service


def _response(service: ReconciliationService) -> SubscriptionsResponse:
    items = sorted(service.snapshot(), key=lambda item: item.product_id)
    return SubscriptionsResponse(
        items=items,
        fully_processed=service.is_fully_processed()
    )


@router.get("", response_model=SubscriptionsResponse)
async def list_subscriptions(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Return the current reconciliation set."""
    return _response(service)


@router.post("/verify", response_model=SubscriptionsResponse)
async def verify_subscriptions(
    body: Optional[VerifySubscriptionsRequest] = None,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Verify subscriptions against the current receipt.

    Verifies the tracked products, or the products named in the request,
    and returns the resulting set.

    **Errors:**
    - 503: Cloud account unavailable
    """
    product_ids = body.product_ids if body else None

    try:
        await service.verify_all(product_ids)
    except CloudUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )

    return _response(service)


@router.delete("", response_model=SubscriptionsResponse)
async def clear_subscriptions(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Clear the reconciliation set (sign-out)."""
    service.clear()
    return _response(service)
