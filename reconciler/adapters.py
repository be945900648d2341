"""
Settings-backed implementations of the external capabilities.

Used when the service runs standalone; embedding applications supply
their own monitors and fetchers.
"""
import asyncio
import base64
import structlog
from pathlib import Path
from typing import Optional

from reconciler.receipts.models import ReceiptFetchError


logger = structlog.get_logger()


class StaticNetworkMonitor:
    """Network reachability fixed at construction."""

    def __init__(self, connected: bool = True):
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected


class StaticCloudAccountMonitor:
    """Cloud account availability fixed at construction."""

    def __init__(self, available: bool = True):
        self.available = available

    def is_available(self) -> bool:
        return self.available


class FileReceiptFetcher:
    """
    Reads the signed receipt from disk.

    The encoded receipt is cached; a forced refresh re-reads the file.
    """

    def __init__(self, path: str):
        """
        Initialize file receipt fetcher.

        Args:
            path: Path to the raw receipt file
        """
        self.path = Path(path)
        self._cached: Optional[str] = None

    async def fetch_receipt(self, force_refresh: bool = False) -> str:
        """
        Return the base64-encoded receipt.

        Raises:
            ReceiptFetchError: If the file is missing, unreadable or empty
        """
        if self._cached is not None and not force_refresh:
            return self._cached

        try:
            data = await asyncio.to_thread(self.path.read_bytes)
        except OSError as e:
            logger.warning("receipt_read_failed", path=str(self.path), error=str(e))
            raise ReceiptFetchError(f"Cannot read receipt at {self.path}: {e}") from e

        if not data:
            raise ReceiptFetchError(f"Receipt at {self.path} is empty")

        self._cached = base64.b64encode(data).decode("ascii")
        logger.info("receipt_loaded", path=str(self.path), refreshed=force_refresh)
        return self._cached
