"""
Subscription Reconciler - FastAPI Application

Verifies subscription receipts and serves the reconciled subscription set.
"""
from fastapi import FastAPI
from typing import FrozenSet, Optional
import structlog
import logging

from reconciler.config import settings
from reconciler.adapters import (
    FileReceiptFetcher,
    StaticCloudAccountMonitor,
    StaticNetworkMonitor
)
from reconciler.ports import PurchaseGateway
from reconciler.purchases.routes import router as purchases_router
from reconciler.purchases.service import PurchaseService
from reconciler.receipts.service import ReceiptService
from reconciler.receipts.validator import AppleReceiptValidator
from reconciler.subscriptions.models import ReconciledItem
from reconciler.subscriptions.routes import router as subscriptions_router
from reconciler.subscriptions.service import ReconciliationService
from reconciler.subscriptions.state import SubscriptionSet


# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def log_subscriptions(items: FrozenSet[ReconciledItem]) -> None:
    """Log every published reconciliation set."""
    logger.info(
        "subscriptions_published",
        total=len(items),
        subscribed=sorted(item.product_id for item in items if item.subscribed)
    )


def build_reconciliation_service() -> ReconciliationService:
    """Wire the reconciliation service from settings."""
    subscriptions = SubscriptionSet()
    subscriptions.subscribe(log_subscriptions)

    receipts = ReceiptService(
        fetcher=FileReceiptFetcher(settings.receipt_path),
        validator=AppleReceiptValidator(
            environment=settings.receipt_environment,
            shared_secret=settings.apple_shared_secret,
            bundle_id=settings.bundle_id
        )
    )

    return ReconciliationService(
        subscriptions=subscriptions,
        receipts=receipts,
        network=StaticNetworkMonitor(settings.network_available),
        cloud=StaticCloudAccountMonitor(settings.cloud_account_available),
        tracked_product_ids=settings.tracked_product_ids
    )


def build_purchase_service(
    reconciliation_service: ReconciliationService,
    gateway: PurchaseGateway
) -> PurchaseService:
    """Wire a purchase service sharing the reconciliation receipt pipeline."""
    return PurchaseService(
        network=reconciliation_service.network,
        gateway=gateway,
        receipts=reconciliation_service.receipts
    )


def create_app(
    reconciliation_service: ReconciliationService,
    purchase_service: Optional[PurchaseService] = None
) -> FastAPI:
    """
    Create the FastAPI application around a reconciliation service.

    Purchase endpoints answer 503 until a purchase service is supplied.
    """
    application = FastAPI(
        title=settings.app_name,
        description="Subscription receipt verification and reconciliation",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None
    )
    application.state.reconciliation_service = reconciliation_service
    application.state.purchase_service = purchase_service

    # Include routers
    application.include_router(subscriptions_router)
    application.include_router(purchases_router)

    @application.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": settings.app_name,
            "version": "0.1.0",
            "status": "operational",
            "environment": settings.environment,
            "receipt_environment": settings.receipt_environment.value
        }

    @application.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @application.on_event("startup")
    async def startup_event():
        """Run on application startup."""
        logger.info(
            "application_starting",
            environment=settings.environment,
            receipt_environment=settings.receipt_environment.value,
            tracked_products=sorted(reconciliation_service.tracked_product_ids)
        )

    @application.on_event("shutdown")
    async def shutdown_event():
        """Run on application shutdown."""
        logger.info("application_shutting_down")
        await reconciliation_service.receipts.wait_for_background()

    return application


# Create FastAPI app
app = create_app(build_reconciliation_service())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reconciler.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level
    )
