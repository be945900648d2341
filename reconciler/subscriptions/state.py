"""
Observable reconciliation set.

Holds the latest ReconciledItem per product and publishes the full set to
listeners after every mutation.
"""
import threading
import structlog
from typing import Callable, Dict, FrozenSet, List, Optional

from reconciler.subscriptions.models import ReconciledItem


logger = structlog.get_logger()


Listener = Callable[[FrozenSet[ReconciledItem]], None]


class SubscriptionSet:
    """
    Keyed set of ReconciledItem with current-value publishing.

    Mutations and their publish happen under one lock, so listeners see
    publishes in the order the mutations were applied.
    """

    def __init__(self):
        self._items: Dict[str, ReconciledItem] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener and emit the current set to it.

        Args:
            listener: Called with the full set after every mutation

        Returns:
            Callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)
            self._notify(listener, self._snapshot())

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def upsert(self, item: ReconciledItem) -> None:
        """Insert the item, replacing any item with the same product id."""
        with self._lock:
            self._items[item.product_id] = item
            self._publish()

    def clear(self) -> None:
        """Remove every item."""
        with self._lock:
            self._items.clear()
            self._publish()

    def snapshot(self) -> FrozenSet[ReconciledItem]:
        with self._lock:
            return self._snapshot()

    def get(self, product_id: str) -> Optional[ReconciledItem]:
        with self._lock:
            return self._items.get(product_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, product_id: object) -> bool:
        with self._lock:
            return product_id in self._items

    def _snapshot(self) -> FrozenSet[ReconciledItem]:
        return frozenset(self._items.values())

    def _publish(self) -> None:
        snapshot = self._snapshot()
        for listener in list(self._listeners):
            self._notify(listener, snapshot)

    @staticmethod
    def _notify(listener: Listener, snapshot: FrozenSet[ReconciledItem]) -> None:
        try:
            listener(snapshot)
        except Exception as e:
            logger.error("subscription_listener_failed", error=str(e))
