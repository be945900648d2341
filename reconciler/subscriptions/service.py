"""
Subscription reconciliation service.

Verifies tracked subscriptions against the receipt and reconciles each
result into the observable subscription set.
"""
import asyncio
import structlog
from typing import Optional, Iterable, FrozenSet, Set

from reconciler.receipts.models import ReceiptVerificationError
from reconciler.receipts.service import ReceiptService
from reconciler.subscriptions.models import CloudUnavailableError, ReconciledItem
from reconciler.subscriptions.state import SubscriptionSet
from reconciler.purchases.models import PurchaseOutcome
from reconciler.ports import NetworkMonitor, CloudAccountMonitor


logger = structlog.get_logger()


class ReconciliationService:
    """
    Service owning the reconciliation set.

    Each product is verified independently; a sweep is not atomic across
    products and can be re-run at any time, overwriting previous entries.
    """

    def __init__(
        self,
        subscriptions: SubscriptionSet,
        receipts: ReceiptService,
        network: NetworkMonitor,
        cloud: CloudAccountMonitor,
        tracked_product_ids: Iterable[str] = ()
    ):
        """
        Initialize reconciliation service.

        Args:
            subscriptions: Observable set this service mutates
            receipts: Receipt verification pipeline
            network: Network reachability oracle
            cloud: Cloud account availability oracle
            tracked_product_ids: Products verified by default
        """
        self.subscriptions = subscriptions
        self.receipts = receipts
        self.network = network
        self.cloud = cloud
        self.tracked_product_ids: Set[str] = set(tracked_product_ids)

    async def verify_all(self, product_ids: Optional[Iterable[str]] = None) -> None:
        """
        Verify every product and upsert each result as it completes.

        Args:
            product_ids: Products to verify (defaults to the tracked products)

        Raises:
            CloudUnavailableError: If the cloud account is unavailable
        """
        targets = set(self.tracked_product_ids if product_ids is None else product_ids)

        if not self.cloud.is_available():
            logger.warning("verify_all_cloud_unavailable", products=sorted(targets))
            raise CloudUnavailableError()

        self.tracked_product_ids = targets
        logger.info("verify_all_started", products=sorted(targets))

        await asyncio.gather(*(self._verify_product(product_id) for product_id in targets))

        logger.info(
            "verify_all_completed",
            products=len(targets),
            subscribed=sum(1 for item in self.subscriptions.snapshot() if item.subscribed)
        )

    async def _verify_product(self, product_id: str) -> None:
        if not self.network.is_connected():
            logger.info("verify_product_offline", product_id=product_id)
            self.subscriptions.upsert(ReconciledItem.unverified(product_id))
            return

        try:
            status = await self.receipts.verify_subscription(product_id)
        except ReceiptVerificationError as e:
            logger.warning(
                "verify_product_failed",
                product_id=product_id,
                error=str(e)
            )
            self.subscriptions.upsert(ReconciledItem.unverified(product_id))
            self.receipts.refresh_receipt_in_background()
            return

        self.subscriptions.upsert(ReconciledItem.from_status(product_id, status))

    def upsert(self, item: ReconciledItem) -> None:
        """Insert or replace the snapshot for item.product_id."""
        self.subscriptions.upsert(item)

    def record_purchase(self, outcome: PurchaseOutcome) -> ReconciledItem:
        """
        Reflect a verified purchase in the running state.

        Args:
            outcome: Successful purchase outcome

        Returns:
            The stored ReconciledItem
        """
        item = ReconciledItem.from_outcome(outcome)
        self.tracked_product_ids.add(outcome.product_id)
        self.subscriptions.upsert(item)
        return item

    def clear(self) -> None:
        """Drop every reconciled item (e.g. on sign-out)."""
        self.subscriptions.clear()
        logger.info("subscriptions_cleared")

    def snapshot(self) -> FrozenSet[ReconciledItem]:
        return self.subscriptions.snapshot()

    def is_fully_processed(self) -> bool:
        """True when the set holds an item for every tracked product."""
        return len(self.subscriptions) == len(self.tracked_product_ids)
