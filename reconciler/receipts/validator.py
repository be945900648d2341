"""
Apple App Store receipt validation.

Sends signed receipts to Apple's verifyReceipt endpoint and parses the
trust-verified response into a ParsedReceipt.
"""
import httpx
import structlog
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

from pydantic import ValidationError

from reconciler.receipts.models import (
    AppleVerificationResponse,
    ParsedReceipt,
    ReceiptEnvironment,
    ReceiptItem,
    ReceiptValidationError
)
from reconciler.config import settings


logger = structlog.get_logger()


# Apple verifyReceipt URLs
APPLE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

VERIFY_URLS = {
    ReceiptEnvironment.SANDBOX: APPLE_SANDBOX_URL,
    ReceiptEnvironment.PRODUCTION: APPLE_PRODUCTION_URL,
}

# Documented verifyReceipt status codes
STATUS_MESSAGES = {
    21000: "The request to the App Store was not made using the HTTP POST request method",
    21001: "This status code is no longer sent by the App Store",
    21002: "The data in the receipt-data property was malformed or missing",
    21003: "The receipt could not be authenticated",
    21004: "The shared secret you provided does not match the shared secret on file for your account",
    21005: "The receipt server was temporarily unable to provide the receipt",
    21006: "This receipt is valid but the subscription has expired",
    21007: "This receipt is from the test environment, but it was sent to the production environment",
    21008: "This receipt is from the production environment, but it was sent to the test environment",
    21009: "Internal data access error",
    21010: "The user account cannot be found or has been deleted",
}


def describe_status(status: int) -> str:
    """Human readable meaning of a verifyReceipt status code."""
    if status in STATUS_MESSAGES:
        return STATUS_MESSAGES[status]
    if 21100 <= status <= 21199:
        return "Internal data access error"
    return f"Unknown receipt status {status}"


def parse_ms_date(value: Any) -> Optional[datetime]:
    """Convert a *_date_ms field to an aware UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class AppleReceiptValidator:
    """
    Validates receipts against Apple's verifyReceipt endpoint.

    The endpoint is fixed by configuration; a receipt from the other
    environment is rejected, never redirected.
    """

    def __init__(
        self,
        environment: Optional[ReceiptEnvironment] = None,
        shared_secret: Optional[str] = None,
        bundle_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Apple receipt validator.

        Args:
            environment: Validation environment (defaults to settings)
            shared_secret: Apple shared secret for subscription receipts
            bundle_id: Expected app bundle id, checked when set
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.environment = environment or settings.receipt_environment
        self.verify_url = VERIFY_URLS[self.environment]
        self.shared_secret = shared_secret or settings.apple_shared_secret
        self.bundle_id = bundle_id or settings.bundle_id
        self.timeout = timeout or settings.validation_timeout_seconds
        self.transport = transport

    async def validate(self, receipt: str) -> ParsedReceipt:
        """
        Validate a signed receipt.

        Args:
            receipt: Base64-encoded receipt data

        Returns:
            ParsedReceipt with every transaction the authority reported

        Raises:
            ReceiptValidationError: On transport failure, rejection by the
                authority or a bundle id mismatch
        """
        response = await self._verify_with_apple(receipt)

        if response.status != 0:
            detail = describe_status(response.status)
            logger.warning(
                "receipt_validation_failed",
                status=response.status,
                retryable=response.is_retryable,
                detail=detail
            )
            raise ReceiptValidationError(
                detail,
                status=response.status,
                is_retryable=response.is_retryable
            )

        if not response.receipt:
            logger.error("receipt_validation_failed", detail="missing receipt")
            raise ReceiptValidationError("Malformed response: missing receipt")

        parsed = self._parse_receipt(response)

        if self.bundle_id and parsed.bundle_id != self.bundle_id:
            logger.warning(
                "receipt_bundle_id_mismatch",
                expected=self.bundle_id,
                actual=parsed.bundle_id
            )
            raise ReceiptValidationError(
                f"Bundle id mismatch: expected {self.bundle_id}, got {parsed.bundle_id}"
            )

        logger.info(
            "receipt_validated",
            environment=parsed.environment.value,
            items=len(parsed.items)
        )

        return parsed

    async def _verify_with_apple(self, receipt: str) -> AppleVerificationResponse:
        """
        Call Apple's verification API.

        Args:
            receipt: Base64-encoded receipt

        Returns:
            AppleVerificationResponse
        """
        payload = {
            "receipt-data": receipt,
            "exclude-old-transactions": settings.exclude_old_transactions
        }

        # Add shared secret for subscription verification
        if self.shared_secret:
            payload["password"] = self.shared_secret

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    self.verify_url,
                    json=payload,
                    timeout=self.timeout
                )

                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("receipt_validation_transport_error", error=str(e))
            raise ReceiptValidationError(f"Transport error: {e}") from e
        except ValueError as e:
            logger.error("receipt_validation_decode_error", error=str(e))
            raise ReceiptValidationError("Malformed response: body is not JSON") from e

        if not isinstance(data, dict):
            raise ReceiptValidationError("Malformed response: body is not an object")

        try:
            return AppleVerificationResponse(
                status=data.get("status", -1),
                environment=data.get("environment"),
                receipt=data.get("receipt"),
                latest_receipt_info=data.get("latest_receipt_info"),
                pending_renewal_info=data.get("pending_renewal_info"),
                is_retryable=data.get("is-retryable", False)
            )
        except ValidationError as e:
            logger.error("receipt_validation_decode_error", error=str(e))
            raise ReceiptValidationError(f"Malformed response: {e}") from e

    def _parse_receipt(self, response: AppleVerificationResponse) -> ParsedReceipt:
        """
        Build a ParsedReceipt from Apple's response.

        Transactions come from receipt.in_app and latest_receipt_info;
        the latter wins when both report the same transaction.

        Args:
            response: Apple verification response

        Returns:
            ParsedReceipt
        """
        receipt = response.receipt or {}
        records: Dict[str, ReceiptItem] = {}

        try:
            for raw in self._transactions(receipt.get("in_app"), response.latest_receipt_info):
                item = self._parse_item(raw)
                records[item.transaction_id] = item

            request_date = parse_ms_date(receipt.get("request_date_ms"))
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.error("receipt_parse_failed", error=str(e))
            raise ReceiptValidationError(f"Malformed receipt: {e}") from e

        environment = self.environment
        if response.environment:
            environment = (
                ReceiptEnvironment.SANDBOX
                if response.environment.lower() == "sandbox"
                else ReceiptEnvironment.PRODUCTION
            )

        return ParsedReceipt(
            environment=environment,
            bundle_id=receipt.get("bundle_id"),
            request_date=request_date,
            items=tuple(records.values()),
            pending_renewals=tuple(response.pending_renewal_info or ())
        )

    @staticmethod
    def _transactions(*groups: Optional[List[Dict[str, Any]]]):
        for group in groups:
            for raw in group or ():
                yield raw

    @staticmethod
    def _parse_item(raw: Dict[str, Any]) -> ReceiptItem:
        return ReceiptItem(
            product_id=raw["product_id"],
            transaction_id=str(raw["transaction_id"]),
            original_transaction_id=raw.get("original_transaction_id"),
            quantity=int(raw.get("quantity", 1)),
            purchase_date=parse_ms_date(raw["purchase_date_ms"]),
            original_purchase_date=parse_ms_date(raw.get("original_purchase_date_ms")),
            subscription_expiration_date=parse_ms_date(raw.get("expires_date_ms")),
            cancellation_date=parse_ms_date(raw.get("cancellation_date_ms")),
            is_trial_period=raw.get("is_trial_period") == "true",
            is_in_intro_offer_period=raw.get("is_in_intro_offer_period") == "true",
            web_order_line_item_id=raw.get("web_order_line_item_id")
        )
