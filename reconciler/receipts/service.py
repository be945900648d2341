"""
Receipt verification service.

Fetches the signed receipt, validates it with the authority and evaluates
subscription status for a product.
"""
import asyncio
import structlog
from typing import Optional, Set
from datetime import datetime

from reconciler.receipts.models import (
    AutoRenewable,
    ParsedReceipt,
    ReceiptError,
    ReceiptVerificationError,
    SubscriptionKind,
    SubscriptionStatus
)
from reconciler.receipts.evaluator import evaluate_subscription
from reconciler.ports import ReceiptFetcher, ReceiptValidator


logger = structlog.get_logger()


class ReceiptService:
    """
    Runs the fetch, validate and evaluate pipeline.

    Never retries. After a failure callers schedule a forced refetch with
    refresh_receipt_in_background so the next attempt sees a fresh receipt.
    """

    def __init__(self, fetcher: ReceiptFetcher, validator: ReceiptValidator):
        """
        Initialize receipt service.

        Args:
            fetcher: Signed receipt source
            validator: Validation authority client
        """
        self.fetcher = fetcher
        self.validator = validator
        self._background: Set[asyncio.Task] = set()

    async def verify_receipt(self, force_refresh: bool = False) -> ParsedReceipt:
        """
        Fetch and validate the current receipt.

        Raises:
            ReceiptVerificationError: If fetching or validation fails
        """
        try:
            receipt = await self.fetcher.fetch_receipt(force_refresh=force_refresh)
            return await self.validator.validate(receipt)
        except ReceiptError as e:
            raise ReceiptVerificationError(e) from e

    async def verify_subscription(
        self,
        product_id: str,
        kind: SubscriptionKind = AutoRenewable(),
        as_of: Optional[datetime] = None
    ) -> SubscriptionStatus:
        """
        Verify the receipt and evaluate one subscription.

        Args:
            product_id: Subscription product id
            kind: Subscription kind
            as_of: Reference instant for expiry comparison

        Returns:
            SubscriptionStatus for the product

        Raises:
            ReceiptVerificationError: If the receipt could not be verified
        """
        receipt = await self.verify_receipt()
        status = evaluate_subscription(receipt, product_id, kind=kind, as_of=as_of)

        logger.info(
            "subscription_evaluated",
            product_id=product_id,
            state=status.state
        )

        return status

    def refresh_receipt_in_background(self) -> asyncio.Task:
        """
        Schedule a forced receipt refetch without waiting for it.

        The outcome is only logged.

        Returns:
            The scheduled task
        """
        task = asyncio.create_task(self._refresh_receipt())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _refresh_receipt(self) -> None:
        try:
            await self.fetcher.fetch_receipt(force_refresh=True)
            logger.info("receipt_refreshed")
        except ReceiptError as e:
            logger.warning("receipt_refresh_failed", error=str(e))

    async def wait_for_background(self) -> None:
        """Wait for pending refetches, used on shutdown."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
