"""
Capabilities supplied from outside the reconciler.

Connectivity, receipt retrieval, receipt validation and the platform
purchase sheet are injected into the services through these protocols.
"""
from typing import Protocol, Optional, Union, List, Tuple, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from reconciler.receipts.models import ParsedReceipt
from reconciler.purchases.models import Purchase


@runtime_checkable
class NetworkMonitor(Protocol):
    """Reports whether the network is reachable."""

    def is_connected(self) -> bool:
        ...


@runtime_checkable
class CloudAccountMonitor(Protocol):
    """Reports whether the user's cloud account is available."""

    def is_available(self) -> bool:
        ...


@runtime_checkable
class ReceiptFetcher(Protocol):
    """Obtains the signed receipt, raising ReceiptFetchError on failure."""

    async def fetch_receipt(self, force_refresh: bool = False) -> str:
        ...


@runtime_checkable
class ReceiptValidator(Protocol):
    """Validates a signed receipt, raising ReceiptValidationError on failure."""

    async def validate(self, receipt: str) -> ParsedReceipt:
        ...


class PlatformError(Exception):
    """
    Failure reported by the platform purchase capability.

    Args:
        code: Platform error code, either the numeric store error code
            or its symbolic name
        message: Optional diagnostic message
    """

    def __init__(self, code: Union[int, str], message: Optional[str] = None):
        super().__init__(message or str(code))
        self.code = code
        self.message = message


class RestoreResults(BaseModel):
    """Raw outcome of a platform bulk restore."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    restored: List[Purchase] = Field(default_factory=list)
    failures: List[Tuple[PlatformError, Optional[str]]] = Field(default_factory=list)


@runtime_checkable
class PurchaseGateway(Protocol):
    """Platform purchase and restore capability."""

    async def purchase(
        self,
        product_id: str,
        quantity: int = 1,
        atomically: bool = False
    ) -> Purchase:
        ...

    async def restore_purchases(self, atomically: bool = False) -> RestoreResults:
        ...

    async def finish_transaction(self, purchase: Purchase) -> None:
        ...
