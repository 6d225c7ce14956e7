#!/usr/bin/env python3
"""
Pytest Configuration and Shared Fixtures

Provides in-memory fakes of the external collaborators (platform purchase
store, receipt validator, remote database) and a fully wired reconciler.
"""

import pytest
import asyncio
import tempfile
import sys
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription.device_fingerprint import DeviceFingerprint, DeviceProfile
from subscription.errors import RemoteSyncError
from subscription.local_store import JsonFileStore
from subscription.models import (
    IAP_PRODUCT_IDS,
    PurchaseRecord,
    RemoteSubscription,
    StoreProduct,
    ValidationResult,
    to_millis,
)
from subscription.purchase_store import PlatformPurchaseStore, PurchaseStoreAdapter
from subscription.receipt_validator import ReceiptValidator
from subscription.reconciler import EntitlementReconciler
from subscription.remote_sync import RemoteSyncClient, millis_to_iso
from subscription.subscription_service import SubscriptionService
from subscription.usage_meter import DeviceUsageMeter


# ============================================================================
# ASYNCIO CONFIGURATION
# ============================================================================
# Note: pytest-asyncio is configured with asyncio_mode = "auto" in pyproject.toml
# The event loop is automatically managed per-function by default


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Settable wall clock"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 3, 14, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakePlatformStore(PlatformPurchaseStore):
    """In-memory platform purchase store"""

    def __init__(self):
        self.purchases: List[PurchaseRecord] = []
        self.connect_errors: List[Exception] = []
        self.connect_calls = 0
        self.connect_delay = 0.0
        self.disconnect_calls = 0
        self.list_error: Optional[Exception] = None
        self.list_delay = 0.0
        self.list_calls = 0
        self.list_completed = 0
        self.request_result: Optional[PurchaseRecord] = None
        self.request_error: Optional[Exception] = None
        self.products: List[StoreProduct] = []
        self.products_error: Optional[Exception] = None
        self.product_requests: List[List[str]] = []
        self.finished: List[PurchaseRecord] = []
        self.purchase_listeners = []
        self.error_listeners = []
        self.events: List[str] = []

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.events.append("disconnect")

    async def list_active_purchases(self, only_active: bool = True) -> List[PurchaseRecord]:
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_error:
            raise self.list_error
        self.list_completed += 1
        return list(self.purchases)

    async def request_purchase(self, product_id: str) -> PurchaseRecord:
        if self.request_error:
            raise self.request_error
        return self.request_result

    async def get_products(self, product_ids: List[str]) -> List[StoreProduct]:
        self.product_requests.append(list(product_ids))
        if self.products_error:
            raise self.products_error
        return list(self.products)

    async def finish_transaction(self, purchase: PurchaseRecord) -> None:
        self.finished.append(purchase)

    def add_purchase_listener(self, listener) -> None:
        self.purchase_listeners.append(listener)

    def remove_purchase_listener(self, listener) -> None:
        self.purchase_listeners.remove(listener)
        self.events.append("remove_purchase_listener")

    def add_error_listener(self, listener) -> None:
        self.error_listeners.append(listener)

    def remove_error_listener(self, listener) -> None:
        self.error_listeners.remove(listener)
        self.events.append("remove_error_listener")

    def emit_purchase(self, purchase: PurchaseRecord):
        for listener in list(self.purchase_listeners):
            listener(purchase)

    def emit_error(self, error: Exception):
        for listener in list(self.error_listeners):
            listener(error)


class FakeValidator(ReceiptValidator):
    """Validator returning a configurable result"""

    def __init__(self):
        self.result = ValidationResult(valid=True)
        self.error: Optional[Exception] = None
        self.calls: List[PurchaseRecord] = []

    async def validate(self, purchase: PurchaseRecord) -> ValidationResult:
        self.calls.append(purchase)
        if self.error:
            raise self.error
        return self.result


class InMemoryRemoteSync(RemoteSyncClient):
    """Remote database keeping rows in dictionaries"""

    def __init__(self):
        self.subscriptions: Dict[str, RemoteSubscription] = {}
        self.usage: Dict[tuple, float] = {}
        self.subscription_upserts: List[dict] = []
        self.usage_upserts: List[dict] = []
        self.fail_upsert = False
        self.fail_lookup = False
        self.fail_usage = False

    async def upsert_subscription(self, plan_id, is_active, start_date, end_date, tx_id) -> bool:
        self.subscription_upserts.append({
            "plan_id": plan_id,
            "is_active": is_active,
            "start_date": start_date,
            "end_date": end_date,
            "tx_id": tx_id,
        })
        if self.fail_upsert:
            raise RemoteSyncError("remote write failed")
        if not tx_id:
            return False
        self.subscriptions[tx_id] = RemoteSubscription(
            plan_id=plan_id,
            is_active=is_active,
            start_date=millis_to_iso(start_date),
            end_date=millis_to_iso(end_date),
            original_transaction_id=tx_id,
        )
        return True

    async def upsert_daily_usage(self, date, count, start_date, end_date, tx_id) -> bool:
        if self.fail_usage:
            raise RemoteSyncError("usage write failed")
        if not tx_id:
            return False
        self.usage_upserts.append({"date": date, "count": count, "tx_id": tx_id})
        self.usage[(tx_id, date)] = count
        return True

    async def get_latest_subscription(self, tx_id):
        if self.fail_lookup:
            raise RemoteSyncError("remote lookup failed")
        if not tx_id:
            return None
        return self.subscriptions.get(tx_id)

    async def get_daily_usage(self, date, tx_id):
        if not tx_id:
            return None
        return self.usage.get((tx_id, date))


# ============================================================================
# TEMPORARY DIRECTORIES
# ============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def local_store(temp_dir):
    """File backed key-value store in a temporary directory"""
    return JsonFileStore(str(temp_dir / "storage"))


# ============================================================================
# COLLABORATOR FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def platform_store():
    return FakePlatformStore()


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def remote():
    return InMemoryRemoteSync()


@pytest.fixture
def device_profile():
    return DeviceProfile(platform="ios", os_version="17.4", screen_width=393, screen_height=852)


@pytest.fixture
def device_meter(local_store, device_profile, clock):
    return DeviceUsageMeter(
        local_store,
        DeviceFingerprint(local_store, device_profile),
        daily_limit=100,
        clock=clock,
    )


@pytest.fixture
def service(local_store, remote, device_meter, clock):
    """SubscriptionService in development mode with a fixed clock"""
    return SubscriptionService(
        local_store,
        remote,
        device_meter=device_meter,
        development=True,
        clock=clock,
    )


@pytest.fixture
def notices():
    """Collected user-facing notices"""
    return []


@pytest.fixture
async def reconciler(platform_store, validator, remote, service, notices, monotonic):
    """Reconciler wired to in-memory fakes"""
    instance = EntitlementReconciler(
        store=PurchaseStoreAdapter(platform_store),
        validator=validator,
        remote=remote,
        subscriptions=service,
        on_notice=notices.append,
        throttle_seconds=120,
        restore_timeout=0.5,
        init_retry_delay=0,
        clock=monotonic,
    )
    yield instance
    await instance.cleanup()
    await service.wait_for_pending_syncs()


# ============================================================================
# SAMPLE DATA FIXTURES
# ============================================================================

@pytest.fixture
def make_purchase(clock):
    """Factory for purchase records"""
    def _make(
        product_key: str = "PRO_MONTHLY",
        transaction_id: str = "1000000001",
        transaction_date: Optional[int] = None,
    ) -> PurchaseRecord:
        return PurchaseRecord(
            product_id=IAP_PRODUCT_IDS[product_key],
            transaction_id=transaction_id,
            transaction_date=transaction_date or to_millis(clock.now),
            receipt="MIIT...base64-receipt",
        )
    return _make


# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (may require network)"
    )
