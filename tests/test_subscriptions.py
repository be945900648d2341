"""
Tests for subscription reconciliation.

Tests the observable subscription set and the verification sweep.
"""
import pytest
import threading
import httpx
from unittest.mock import Mock, AsyncMock
from datetime import datetime, timezone

from reconciler.receipts.models import (
    Expired,
    NotPurchased,
    ParsedReceipt,
    Purchased,
    ReceiptEnvironment,
    ReceiptFetchError,
    ReceiptItem,
    ReceiptValidationError
)
from reconciler.receipts.service import ReceiptService
from reconciler.receipts.validator import AppleReceiptValidator
from reconciler.subscriptions.models import CloudUnavailableError, ReconciledItem
from reconciler.subscriptions.service import ReconciliationService
from reconciler.subscriptions.state import SubscriptionSet
from reconciler.purchases.models import PurchaseOutcome


EXPIRY_2030 = datetime(2030, 1, 1, tzinfo=timezone.utc)


# ========== Fixtures ==========

@pytest.fixture
def monthly_item():
    """Active sub.monthly renewal expiring 2030-01-01."""
    return ReceiptItem(
        product_id="sub.monthly",
        transaction_id="txn_monthly_1",
        purchase_date=datetime(2029, 12, 1, tzinfo=timezone.utc),
        subscription_expiration_date=EXPIRY_2030
    )


@pytest.fixture
def yearly_item():
    """Lapsed sub.yearly renewal."""
    return ReceiptItem(
        product_id="sub.yearly",
        transaction_id="txn_yearly_1",
        purchase_date=datetime(2020, 1, 1, tzinfo=timezone.utc),
        subscription_expiration_date=datetime(2021, 1, 1, tzinfo=timezone.utc)
    )


@pytest.fixture
def parsed_receipt(monthly_item, yearly_item):
    return ParsedReceipt(
        environment=ReceiptEnvironment.SANDBOX,
        items=(monthly_item, yearly_item)
    )


@pytest.fixture
def mock_fetcher():
    fetcher = Mock()
    fetcher.fetch_receipt = AsyncMock(return_value="base64_encoded_receipt")
    return fetcher


@pytest.fixture
def mock_validator(parsed_receipt):
    validator = Mock()
    validator.validate = AsyncMock(return_value=parsed_receipt)
    return validator


@pytest.fixture
def network():
    monitor = Mock()
    monitor.is_connected.return_value = True
    return monitor


@pytest.fixture
def cloud():
    monitor = Mock()
    monitor.is_available.return_value = True
    return monitor


@pytest.fixture
def subscriptions():
    return SubscriptionSet()


@pytest.fixture
def receipt_service(mock_fetcher, mock_validator):
    return ReceiptService(mock_fetcher, mock_validator)


@pytest.fixture
def reconciliation_service(subscriptions, receipt_service, network, cloud):
    return ReconciliationService(
        subscriptions=subscriptions,
        receipts=receipt_service,
        network=network,
        cloud=cloud,
        tracked_product_ids={"sub.monthly"}
    )


# ========== Reconciled Item ==========

def test_reconciled_item_identity_is_product_id():
    """Test items with the same product id are equal regardless of fields."""
    a = ReconciledItem(product_id="sub.monthly", subscribed=True, expiry_date=EXPIRY_2030)
    b = ReconciledItem(product_id="sub.monthly")

    assert a == b
    assert hash(a) == hash(b)
    assert len({a, b}) == 1
    assert a != ReconciledItem(product_id="sub.yearly")


def test_reconciled_item_from_statuses(monthly_item):
    """Test snapshots derived from each subscription status."""
    purchased = ReconciledItem.from_status(
        "sub.monthly", Purchased(expiry_date=EXPIRY_2030, items=(monthly_item,))
    )
    expired = ReconciledItem.from_status(
        "sub.monthly", Expired(expiry_date=EXPIRY_2030, items=(monthly_item,))
    )
    missing = ReconciledItem.from_status("sub.monthly", NotPurchased())

    assert purchased.subscribed is True
    assert purchased.expiry_date == EXPIRY_2030
    assert purchased.receipt_items == (monthly_item,)
    assert expired.subscribed is False
    assert expired.expiry_date == EXPIRY_2030
    assert missing.subscribed is False
    assert missing.expiry_date is None
    assert missing.receipt_items == ()


# ========== Subscription Set ==========

def test_upsert_twice_keeps_second_values(subscriptions):
    """Test upserting the same product id replaces the stored snapshot."""
    subscriptions.upsert(ReconciledItem(product_id="sub.monthly", subscribed=False))
    subscriptions.upsert(ReconciledItem(product_id="sub.monthly", subscribed=True, expiry_date=EXPIRY_2030))

    assert len(subscriptions) == 1
    stored = subscriptions.get("sub.monthly")
    assert stored.subscribed is True
    assert stored.expiry_date == EXPIRY_2030


def test_clear_empties_set(subscriptions):
    """Test clear leaves an empty set regardless of prior state."""
    subscriptions.upsert(ReconciledItem(product_id="sub.monthly"))
    subscriptions.upsert(ReconciledItem(product_id="sub.yearly"))

    subscriptions.clear()

    assert len(subscriptions) == 0
    assert subscriptions.snapshot() == frozenset()
    assert "sub.monthly" not in subscriptions


def test_subscribe_emits_current_value_then_every_mutation(subscriptions):
    """Test listeners receive the current set and each later mutation."""
    published = []
    subscriptions.upsert(ReconciledItem(product_id="sub.monthly"))

    subscriptions.subscribe(published.append)
    subscriptions.upsert(ReconciledItem(product_id="sub.yearly"))
    subscriptions.clear()

    assert [len(snapshot) for snapshot in published] == [1, 2, 0]
    assert {item.product_id for item in published[1]} == {"sub.monthly", "sub.yearly"}


def test_unsubscribe_stops_publishing(subscriptions):
    """Test a removed listener receives no further publishes."""
    published = []
    unsubscribe = subscriptions.subscribe(published.append)

    unsubscribe()
    subscriptions.upsert(ReconciledItem(product_id="sub.monthly"))

    assert len(published) == 1


def test_failing_listener_does_not_block_others(subscriptions):
    """Test a raising listener neither aborts the mutation nor other listeners."""
    published = []
    subscriptions.subscribe(Mock(side_effect=[None, RuntimeError("boom")]))
    subscriptions.subscribe(published.append)

    subscriptions.upsert(ReconciledItem(product_id="sub.monthly"))

    assert "sub.monthly" in subscriptions
    assert len(published[-1]) == 1


def test_concurrent_upserts_publish_in_order(subscriptions):
    """Test upserts from many threads are all kept and published one at a time."""
    published = []
    subscriptions.subscribe(published.append)
    start = threading.Barrier(20)

    def worker(index):
        start.wait()
        subscriptions.upsert(ReconciledItem(product_id=f"sub.{index}"))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(subscriptions) == 20
    assert len(subscriptions.snapshot()) == 20
    # Initial value plus one publish per upsert, each growing by exactly one
    assert [len(snapshot) for snapshot in published] == list(range(21))
    for previous, current in zip(published, published[1:]):
        assert previous < current


# ========== Verification Sweep ==========

@pytest.mark.asyncio
async def test_verify_all_end_to_end(reconciliation_service, subscriptions):
    """Test an active subscription is reconciled as subscribed."""
    await reconciliation_service.verify_all({"sub.monthly"})

    snapshot = subscriptions.snapshot()
    assert snapshot == {ReconciledItem(product_id="sub.monthly")}

    item = subscriptions.get("sub.monthly")
    assert item.expiry_date == EXPIRY_2030
    assert item.subscribed is True
    assert [i.transaction_id for i in item.receipt_items] == ["txn_monthly_1"]
    assert reconciliation_service.is_fully_processed() is True


@pytest.mark.asyncio
async def test_verify_all_one_item_per_product(reconciliation_service, subscriptions):
    """Test every product gets exactly one entry, including unknown ones."""
    products = {"sub.monthly", "sub.yearly", "sub.weekly"}

    await reconciliation_service.verify_all(products)

    assert {item.product_id for item in subscriptions.snapshot()} == products
    assert subscriptions.get("sub.monthly").subscribed is True
    assert subscriptions.get("sub.yearly").subscribed is False
    assert subscriptions.get("sub.yearly").expiry_date == datetime(2021, 1, 1, tzinfo=timezone.utc)
    assert subscriptions.get("sub.weekly").expiry_date is None
    assert reconciliation_service.is_fully_processed() is True


@pytest.mark.asyncio
async def test_verify_all_publishes_per_product(reconciliation_service, subscriptions):
    """Test each product's completion publishes separately."""
    published = []
    subscriptions.subscribe(published.append)

    await reconciliation_service.verify_all({"sub.monthly", "sub.yearly"})

    # Initial value plus one publish per product
    assert len(published) == 3
    assert len(published[-1]) == 2


@pytest.mark.asyncio
async def test_verify_all_defaults_to_tracked_products(reconciliation_service, subscriptions):
    """Test the tracked products are verified when none are given."""
    await reconciliation_service.verify_all()

    assert {item.product_id for item in subscriptions.snapshot()} == {"sub.monthly"}


@pytest.mark.asyncio
async def test_verify_all_cloud_unavailable(reconciliation_service, subscriptions, cloud, mock_validator):
    """Test the sweep fails fast when the cloud account is unavailable."""
    cloud.is_available.return_value = False

    with pytest.raises(CloudUnavailableError):
        await reconciliation_service.verify_all({"sub.monthly"})

    assert len(subscriptions) == 0
    mock_validator.validate.assert_not_called()


@pytest.mark.asyncio
async def test_cloud_unavailable_keeps_tracked_products(reconciliation_service, cloud):
    """Test a rejected sweep leaves the tracked products untouched."""
    cloud.is_available.return_value = False

    with pytest.raises(CloudUnavailableError):
        await reconciliation_service.verify_all({"sub.yearly", "sub.weekly"})

    assert reconciliation_service.tracked_product_ids == {"sub.monthly"}


@pytest.mark.asyncio
async def test_verify_all_offline_upserts_unverified(reconciliation_service, subscriptions, network, mock_validator):
    """Test unreachable network records not-subscribed items without validating."""
    network.is_connected.return_value = False

    await reconciliation_service.verify_all({"sub.monthly", "sub.yearly"})

    assert len(subscriptions) == 2
    assert all(not item.subscribed and item.expiry_date is None for item in subscriptions.snapshot())
    mock_validator.validate.assert_not_called()
    assert reconciliation_service.is_fully_processed() is True


@pytest.mark.asyncio
async def test_verify_all_validation_failure_refreshes_receipt(
    reconciliation_service,
    receipt_service,
    subscriptions,
    mock_fetcher,
    mock_validator
):
    """Test a validation failure upserts an unverified item and forces a refetch."""
    mock_validator.validate.side_effect = ReceiptValidationError("The receipt could not be authenticated", status=21003)

    await reconciliation_service.verify_all({"sub.monthly"})
    await receipt_service.wait_for_background()

    item = subscriptions.get("sub.monthly")
    assert item.subscribed is False
    assert item.receipt_items == ()
    mock_fetcher.fetch_receipt.assert_any_call(force_refresh=True)


@pytest.mark.asyncio
async def test_verify_all_fetch_failure_upserts_unverified(
    reconciliation_service,
    receipt_service,
    subscriptions,
    mock_fetcher
):
    """Test a missing receipt is treated like a validation failure."""
    mock_fetcher.fetch_receipt.side_effect = ReceiptFetchError("no receipt")

    await reconciliation_service.verify_all({"sub.monthly"})
    await receipt_service.wait_for_background()

    assert subscriptions.get("sub.monthly").subscribed is False
    mock_fetcher.fetch_receipt.assert_any_call(force_refresh=True)


@pytest.mark.asyncio
async def test_verify_all_wrongly_typed_response_upserts_unverified(
    subscriptions,
    mock_fetcher,
    network,
    cloud
):
    """Test a wrongly typed authority body takes the validation failure path."""
    validator = AppleReceiptValidator(
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"status": 0, "receipt": "bad"})
        )
    )
    receipts = ReceiptService(mock_fetcher, validator)
    service = ReconciliationService(
        subscriptions=subscriptions,
        receipts=receipts,
        network=network,
        cloud=cloud
    )

    await service.verify_all({"sub.monthly"})
    await receipts.wait_for_background()

    item = subscriptions.get("sub.monthly")
    assert item.subscribed is False
    assert item.expiry_date is None
    assert service.is_fully_processed() is True
    mock_fetcher.fetch_receipt.assert_any_call(force_refresh=True)


@pytest.mark.asyncio
async def test_refresh_failure_does_not_affect_upsert(
    reconciliation_service,
    receipt_service,
    subscriptions,
    mock_fetcher,
    mock_validator
):
    """Test the background refetch outcome is discarded."""
    mock_validator.validate.side_effect = ReceiptValidationError("Transport error")
    mock_fetcher.fetch_receipt.side_effect = ["base64_encoded_receipt", ReceiptFetchError("still missing")]

    await reconciliation_service.verify_all({"sub.monthly"})
    await receipt_service.wait_for_background()

    assert subscriptions.get("sub.monthly") is not None
    assert mock_fetcher.fetch_receipt.call_count == 2


@pytest.mark.asyncio
async def test_verify_all_is_rerunnable(reconciliation_service, subscriptions, mock_validator, parsed_receipt):
    """Test a second sweep overwrites earlier entries."""
    network_failure = ReceiptValidationError("Transport error")
    mock_validator.validate.side_effect = [network_failure, parsed_receipt]

    await reconciliation_service.verify_all({"sub.monthly"})
    assert subscriptions.get("sub.monthly").subscribed is False

    await reconciliation_service.verify_all({"sub.monthly"})
    await reconciliation_service.receipts.wait_for_background()
    assert subscriptions.get("sub.monthly").subscribed is True
    assert len(subscriptions) == 1


def test_is_fully_processed_counts_tracked_products(reconciliation_service):
    """Test partial completion is not fully processed."""
    reconciliation_service.tracked_product_ids = {"sub.monthly", "sub.yearly"}
    reconciliation_service.upsert(ReconciledItem(product_id="sub.monthly"))

    assert reconciliation_service.is_fully_processed() is False

    reconciliation_service.upsert(ReconciledItem(product_id="sub.yearly"))
    assert reconciliation_service.is_fully_processed() is True


def test_record_purchase_upserts_subscribed_item(reconciliation_service, subscriptions, monthly_item):
    """Test a verified purchase can be fed into the running state."""
    outcome = PurchaseOutcome(
        product_id="sub.monthly",
        expiry_date=EXPIRY_2030,
        receipt_items=(monthly_item,)
    )

    item = reconciliation_service.record_purchase(outcome)

    assert item.subscribed is True
    assert subscriptions.get("sub.monthly").expiry_date == EXPIRY_2030


def test_service_clear(reconciliation_service, subscriptions):
    """Test clearing through the service empties the set."""
    reconciliation_service.upsert(ReconciledItem(product_id="sub.monthly"))

    reconciliation_service.clear()

    assert reconciliation_service.snapshot() == frozenset()
