"""
Purchase and restore service.

Drives platform purchases and restores, confirming entitlement through
the receipt verification pipeline.
"""
import structlog
from typing import Union

from reconciler.purchases.models import (
    NetworkUnavailableError,
    NothingToRestore,
    NotPurchasedError,
    PartiallyFailed,
    Purchase,
    PurchaseErrorCode,
    PurchaseFailedError,
    PurchaseOutcome,
    ReceiptVerificationFailedError,
    RestoreFailure,
    RestoreOutcome,
    Restored,
    SubscriptionExpiredError
)
from reconciler.receipts.models import (
    AutoRenewable,
    Expired,
    Purchased,
    ReceiptVerificationError,
    SubscriptionKind
)
from reconciler.receipts.service import ReceiptService
from reconciler.ports import NetworkMonitor, PlatformError, PurchaseGateway


logger = structlog.get_logger()


# Store error codes as reported by the platform
PLATFORM_ERROR_CODES = {
    1: PurchaseErrorCode.CLIENT_INVALID,
    2: PurchaseErrorCode.PAYMENT_CANCELLED,
    3: PurchaseErrorCode.PAYMENT_INVALID,
    4: PurchaseErrorCode.PAYMENT_NOT_ALLOWED,
    5: PurchaseErrorCode.PRODUCT_NOT_AVAILABLE,
    6: PurchaseErrorCode.CLOUD_PERMISSION_DENIED,
    7: PurchaseErrorCode.CLOUD_NETWORK_FAILURE,
    8: PurchaseErrorCode.CLOUD_SERVICE_REVOKED,
}

PLATFORM_ERROR_NAMES = {
    "client_invalid": PurchaseErrorCode.CLIENT_INVALID,
    "payment_cancelled": PurchaseErrorCode.PAYMENT_CANCELLED,
    "payment_invalid": PurchaseErrorCode.PAYMENT_INVALID,
    "payment_not_allowed": PurchaseErrorCode.PAYMENT_NOT_ALLOWED,
    "store_product_not_available": PurchaseErrorCode.PRODUCT_NOT_AVAILABLE,
    "cloud_service_permission_denied": PurchaseErrorCode.CLOUD_PERMISSION_DENIED,
    "cloud_service_network_connection_failed": PurchaseErrorCode.CLOUD_NETWORK_FAILURE,
    "cloud_service_revoked": PurchaseErrorCode.CLOUD_SERVICE_REVOKED,
    "deferred": PurchaseErrorCode.DEFERRED,
}


def map_platform_error(error: PlatformError) -> PurchaseErrorCode:
    """
    Map a platform failure onto a purchase error code.

    Accepts numeric store codes (as ints or digit strings) and their
    snake_case, UPPER_SNAKE or camelCase names. Anything unrecognised maps
    to UNKNOWN.
    """
    code: Union[int, str] = error.code
    if isinstance(code, str):
        code = code.strip()
        if code.isdigit():
            code = int(code)
    if isinstance(code, int):
        return PLATFORM_ERROR_CODES.get(code, PurchaseErrorCode.UNKNOWN)

    if code.isupper():
        code = code.lower()
    name = "".join("_" + c.lower() if c.isupper() else c for c in code).lstrip("_")
    return PLATFORM_ERROR_NAMES.get(name, PurchaseErrorCode.UNKNOWN)


class PurchaseService:
    """
    Service for purchasing and restoring subscriptions.

    Purchases are non-atomic: the platform transaction is finished only
    after the receipt confirms the entitlement. Results are returned to the
    caller; nothing is stored here.
    """

    def __init__(
        self,
        network: NetworkMonitor,
        gateway: PurchaseGateway,
        receipts: ReceiptService
    ):
        """
        Initialize purchase service.

        Args:
            network: Network reachability oracle
            gateway: Platform purchase capability
            receipts: Receipt verification pipeline
        """
        self.network = network
        self.gateway = gateway
        self.receipts = receipts

    async def purchase(
        self,
        product_id: str,
        kind: SubscriptionKind = AutoRenewable(),
        quantity: int = 1
    ) -> PurchaseOutcome:
        """
        Purchase a subscription and verify the resulting entitlement.

        Args:
            product_id: Subscription product id
            kind: Subscription kind used for verification
            quantity: Quantity to purchase

        Returns:
            PurchaseOutcome for the active subscription

        Raises:
            NetworkUnavailableError: If the network is unreachable
            PurchaseFailedError: If the platform rejected the purchase
            ReceiptVerificationFailedError: If the receipt could not be verified
            SubscriptionExpiredError: If the subscription is already expired
            NotPurchasedError: If the receipt holds no entitlement
        """
        if not self.network.is_connected():
            logger.warning("purchase_network_unavailable", product_id=product_id)
            raise NetworkUnavailableError()

        try:
            purchase = await self.gateway.purchase(product_id, quantity=quantity, atomically=False)
        except PlatformError as e:
            code = map_platform_error(e)
            logger.warning(
                "purchase_failed",
                product_id=product_id,
                code=code.value,
                platform_code=e.code,
                error=str(e)
            )
            raise PurchaseFailedError(code, cause=e) from e

        try:
            status = await self.receipts.verify_subscription(product_id, kind=kind)
        except ReceiptVerificationError as e:
            logger.warning(
                "purchase_verification_failed",
                product_id=product_id,
                error=str(e)
            )
            self.receipts.refresh_receipt_in_background()
            raise ReceiptVerificationFailedError(product_id, e.cause) from e

        if isinstance(status, Purchased):
            await self._finish(purchase)
            logger.info(
                "purchase_verified",
                product_id=product_id,
                expiry_date=status.expiry_date.isoformat()
            )
            return PurchaseOutcome(
                product_id=product_id,
                expiry_date=status.expiry_date,
                receipt_items=status.items
            )

        if isinstance(status, Expired):
            logger.info(
                "purchase_subscription_expired",
                product_id=product_id,
                expiry_date=status.expiry_date.isoformat()
            )
            raise SubscriptionExpiredError(product_id, status.expiry_date, status.items)

        logger.info("purchase_not_found_in_receipt", product_id=product_id)
        raise NotPurchasedError(product_id)

    async def restore(self) -> RestoreOutcome:
        """
        Restore previously purchased products.

        Restored transactions that need finishing are finished. Failures take
        precedence: any failure yields PartiallyFailed even if some purchases
        were restored.

        Returns:
            Restored, PartiallyFailed or NothingToRestore

        Raises:
            NetworkUnavailableError: If the network is unreachable
        """
        if not self.network.is_connected():
            logger.warning("restore_network_unavailable")
            raise NetworkUnavailableError()

        results = await self.gateway.restore_purchases(atomically=False)

        for purchase in results.restored:
            await self._finish(purchase)

        if results.failures:
            failures = tuple(
                RestoreFailure(cause=map_platform_error(error), message=message)
                for error, message in results.failures
            )
            logger.warning(
                "restore_partially_failed",
                restored=len(results.restored),
                failed=len(failures)
            )
            return PartiallyFailed(failures=failures)

        if results.restored:
            logger.info("restore_completed", restored=len(results.restored))
            return Restored(purchases=tuple(results.restored))

        logger.info("restore_nothing_to_restore")
        return NothingToRestore()

    async def _finish(self, purchase: Purchase) -> None:
        if purchase.needs_finish_transaction:
            await self.gateway.finish_transaction(purchase)
