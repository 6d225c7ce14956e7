"""
Purchase Store Adapter

Wraps the platform in-app purchase API (App Store / Play Store bridge)
behind a small async interface. The platform store itself is an abstract
collaborator supplied by the host application.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from subscription.errors import StoreError, StoreNotReadyError
from subscription.models import PurchaseRecord, StoreProduct
from utils.logger import logger


PurchaseListener = Callable[[PurchaseRecord], None]
ErrorListener = Callable[[StoreError], None]


class PlatformPurchaseStore(ABC):
    """
    Abstract platform purchase API.

    Implementations raise StoreError subclasses: StoreNotAvailableError when
    purchasing is impossible on this device and PurchaseCancelledError when
    the user dismisses the purchase sheet.
    """

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def list_active_purchases(self, only_active: bool = True) -> List[PurchaseRecord]:
        """Purchases the platform currently considers active (may be stale)"""
        pass

    @abstractmethod
    async def request_purchase(self, product_id: str) -> PurchaseRecord:
        pass

    @abstractmethod
    async def get_products(self, product_ids: List[str]) -> List[StoreProduct]:
        """Store listing for the given subscription product identifiers"""
        pass

    @abstractmethod
    async def finish_transaction(self, purchase: PurchaseRecord) -> None:
        """Acknowledge a purchase so the platform stops redelivering it"""
        pass

    @abstractmethod
    def add_purchase_listener(self, listener: PurchaseListener) -> None:
        pass

    @abstractmethod
    def remove_purchase_listener(self, listener: PurchaseListener) -> None:
        pass

    @abstractmethod
    def add_error_listener(self, listener: ErrorListener) -> None:
        pass

    @abstractmethod
    def remove_error_listener(self, listener: ErrorListener) -> None:
        pass


class PurchaseStoreAdapter:
    """
    Connection-aware facade over a PlatformPurchaseStore.

    Store operations before connect() raise StoreNotReadyError instead of
    reaching the platform bridge.
    """

    def __init__(self, platform_store: PlatformPurchaseStore):
        self._store = platform_store
        self._connected = False
        self._purchase_listener: Optional[PurchaseListener] = None
        self._error_listener: Optional[ErrorListener] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            return
        await self._store.connect()
        self._connected = True
        logger.info("Purchase store connected")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        await self._store.disconnect()
        logger.info("Purchase store disconnected")

    def _require_ready(self):
        if not self._connected:
            raise StoreNotReadyError()

    async def list_active_purchases(self, only_active: bool = True) -> List[PurchaseRecord]:
        self._require_ready()
        return await self._store.list_active_purchases(only_active=only_active)

    async def request_purchase(self, product_id: str) -> PurchaseRecord:
        self._require_ready()
        return await self._store.request_purchase(product_id)

    async def get_products(self, product_ids: List[str]) -> List[StoreProduct]:
        self._require_ready()
        return await self._store.get_products(product_ids)

    async def finish_transaction(self, purchase: PurchaseRecord) -> None:
        self._require_ready()
        await self._store.finish_transaction(purchase)

    def subscribe(self, on_purchase: PurchaseListener, on_error: ErrorListener) -> None:
        """Register the async purchase and error event handlers (replacing any previous ones)"""
        self.unsubscribe()
        self._purchase_listener = on_purchase
        self._error_listener = on_error
        self._store.add_purchase_listener(on_purchase)
        self._store.add_error_listener(on_error)

    def unsubscribe(self) -> None:
        if self._purchase_listener is not None:
            self._store.remove_purchase_listener(self._purchase_listener)
            self._purchase_listener = None
        if self._error_listener is not None:
            self._store.remove_error_listener(self._error_listener)
            self._error_listener = None

    async def cleanup(self) -> None:
        """Unregister event listeners, then close the connection"""
        self.unsubscribe()
        try:
            await self.disconnect()
        except StoreError as e:
            logger.warning(f"Error while disconnecting purchase store: {e}")
