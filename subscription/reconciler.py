"""
Entitlement Reconciler

Derives the authoritative subscription snapshot from three independently
failing sources: the platform purchase store, the receipt validation
backend and the remote subscription database. The reconciler owns all
concurrency control:

- initialize() is single-flight: concurrent callers share one attempt
- reconcile() drops overlapping calls instead of queueing them
- restore() and the purchase listener exclude each other
- purchase events are processed one at a time from a queue

Any path that cannot establish a validated entitlement ends on the free
plan.
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional, Tuple, FrozenSet

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_fixed,
    retry_if_not_exception_type,
    before_sleep_log,
)

from config import settings
from subscription.errors import (
    StoreError,
    StoreErrorCode,
    StoreNotAvailableError,
    PurchaseCancelledError,
    UnknownProductError,
)
from subscription.device_fingerprint import DeviceFingerprint, DeviceProfile
from subscription.local_store import JsonFileStore
from subscription.models import (
    IAP_PRODUCT_IDS,
    PlanId,
    PurchaseRecord,
    StoreProduct,
    SubscriptionSnapshot,
    ValidationResult,
    plan_for_product,
    simulation_products,
)
from subscription.notifications import NoticeCallback, NoticeKind, emit_notice
from subscription.purchase_store import PlatformPurchaseStore, PurchaseStoreAdapter
from subscription.receipt_validator import ReceiptValidator, HttpReceiptValidator
from subscription.remote_sync import RemoteSyncClient, create_remote_sync_client
from subscription.subscription_service import SubscriptionService
from subscription.usage_meter import DeviceUsageMeter
from utils.logger import logger


def select_latest_purchase(purchases: Iterable[PurchaseRecord]) -> Optional[PurchaseRecord]:
    """
    Most recent purchase by transaction date.

    Ties keep the first purchase seen. Other active purchases are ignored.
    """
    purchases = list(purchases)
    if not purchases:
        return None

    if len({p.product_id for p in purchases}) > 1:
        logger.warning(
            f"Multiple active products found ({', '.join(p.product_id for p in purchases)}), "
            "using the most recent purchase"
        )

    latest = purchases[0]
    for purchase in purchases[1:]:
        if purchase.transaction_date > latest.transaction_date:
            latest = purchase
    return latest


class EntitlementReconciler:
    """
    Orchestrates store, validator, remote sync and local cache.

    Args:
        store: Connection-aware purchase store adapter
        validator: Receipt validator
        remote: Remote sync client used for the plan comparison
        subscriptions: Local cache and commit path
        on_notice: Optional callback receiving user-facing notices
        development: Serve catalog products when the store lists none
    """

    def __init__(
        self,
        store: PurchaseStoreAdapter,
        validator: ReceiptValidator,
        remote: RemoteSyncClient,
        subscriptions: SubscriptionService,
        on_notice: Optional[NoticeCallback] = None,
        throttle_seconds: float = settings.RECONCILE_THROTTLE_SECONDS,
        restore_timeout: float = settings.RESTORE_TIMEOUT_SECONDS,
        init_retry_delay: float = settings.INIT_RETRY_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        development: bool = settings.is_development,
    ):
        self._store = store
        self._validator = validator
        self._remote = remote
        self._subscriptions = subscriptions
        self._on_notice = on_notice
        self._throttle_seconds = throttle_seconds
        self._restore_timeout = restore_timeout
        self._init_retry_delay = init_retry_delay
        self._clock = clock
        self.development = development

        self._is_initialized = False
        self._is_available = False
        self._init_task: Optional[asyncio.Future] = None

        self._is_reconciling = False
        self._last_check: Optional[float] = None

        self.is_processing_restore = False
        self._processed: set = set()

        self._events: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

        # False after the store refused to list purchases (not signed in)
        self.account_accessible = True

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def is_available(self) -> bool:
        return self._is_available

    @property
    def processed_purchases(self) -> FrozenSet[str]:
        return frozenset(self._processed)

    def _notify(self, kind: NoticeKind, message: Optional[str] = None):
        emit_notice(self._on_notice, kind, message)

    # ============ Initialization ============

    async def initialize(self) -> bool:
        """
        Connect the purchase store.

        Concurrent callers await the same attempt and get the same result.

        Returns:
            True when purchases are available, False when the store is
            unavailable or could not be connected
        """
        if self._is_initialized:
            return self._is_available

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize_once())

        task = self._init_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _initialize_once(self) -> bool:
        logger.info("Initializing purchase store...")
        try:
            await self._connect_with_retry()
        except StoreNotAvailableError:
            logger.info("In-app purchases not available, subscription features disabled")
            self._is_available = False
            return False
        except Exception as e:
            logger.error(f"Purchase store initialization failed: {e}")
            self._is_available = False
            return False

        self._start_event_channel()
        self._is_initialized = True
        self._is_available = True
        logger.info("Purchase store initialized")
        return True

    async def _connect_with_retry(self):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._init_retry_delay),
            retry=retry_if_not_exception_type(StoreNotAvailableError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._store.connect()

    # ============ Event channel ============

    def _start_event_channel(self):
        self._events = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume_events())
        self._store.subscribe(self._on_purchase_event, self._on_error_event)

    def _on_purchase_event(self, purchase: PurchaseRecord):
        if self._events is not None:
            self._events.put_nowait(("purchase", purchase))

    def _on_error_event(self, error: Exception):
        if self._events is not None:
            self._events.put_nowait(("error", error))

    async def _consume_events(self):
        events = self._events
        while True:
            kind, payload = await events.get()
            try:
                if kind == "purchase":
                    await self._handle_purchase_event(payload)
                else:
                    self._handle_error_event(payload)
            except Exception as e:
                logger.error(f"Unhandled error while processing {kind} event: {e}")
                self._notify(NoticeKind.GENERIC)
            finally:
                events.task_done()

    async def drain_events(self) -> None:
        """Wait until every queued purchase event has been processed"""
        if self._events is not None:
            await self._events.join()

    async def _handle_purchase_event(self, purchase: PurchaseRecord):
        key = purchase.purchase_key
        if key in self._processed:
            logger.info(f"Purchase {key} already processed, ignoring")
            return
        if self.is_processing_restore:
            logger.info(f"Restore in progress, ignoring purchase event {key}")
            return

        self._processed.add(key)

        plan_id, validation = await self._resolve_plan(purchase)
        if plan_id == PlanId.FREE:
            self._processed.discard(key)
            logger.warning(f"Purchase {key} could not be verified, leaving it unfinished")
            self._notify(NoticeKind.ENTITLEMENT_REVERTED)
            return

        current = await self._subscriptions.get_current_subscription()
        # Redelivery of the purchase already backing the current plan
        is_relaunch_restore = (
            current.original_transaction_id == purchase.transaction_id
            and current.plan_id == plan_id
        )

        snapshot = await self._commit(
            plan_id,
            preserve_usage=is_relaunch_restore,
            transaction_id=purchase.transaction_id,
            expires_at=validation.expires_at,
        )
        await self._finish(purchase)

        if not self._grants(snapshot, plan_id):
            self._processed.discard(key)
            self._notify(NoticeKind.ENTITLEMENT_REVERTED)
        elif not is_relaunch_restore:
            self._notify(NoticeKind.PURCHASE_COMPLETED)

    def _handle_error_event(self, error: Exception):
        code = getattr(error, "code", None)
        if isinstance(error, PurchaseCancelledError) or code == StoreErrorCode.USER_CANCELLED:
            logger.info("Purchase cancelled by user")
            return

        logger.warning(f"Purchase error event: {error}")
        if code == StoreErrorCode.NETWORK:
            self._notify(NoticeKind.NETWORK)
        else:
            self._notify(NoticeKind.GENERIC, getattr(error, "message", None))

    # ============ Shared pipeline ============

    async def _resolve_plan(self, purchase: PurchaseRecord) -> Tuple[PlanId, ValidationResult]:
        """Validate a purchase and map it to a plan (free when either step fails)"""
        try:
            validation = await self._validator.validate(purchase)
        except Exception as e:
            logger.error(f"Receipt validation error: {e}")
            return PlanId.FREE, ValidationResult(valid=False, reason=str(e))

        if not validation.valid:
            logger.info(f"Purchase of {purchase.product_id} is not valid ({validation.reason})")
            return PlanId.FREE, validation

        try:
            return plan_for_product(purchase.product_id), validation
        except UnknownProductError as e:
            logger.error(str(e))
            return PlanId.FREE, ValidationResult(valid=False, reason="unknown_product")

    async def _is_plan_change(self, plan_id: PlanId, transaction_id: Optional[str]) -> bool:
        """
        Compare the detected plan with the stored one.

        Purchases compare against the remote record for their transaction id,
        falling back to the local snapshot when it is backed by the same
        transaction. Raises RemoteSyncError when the lookup fails.
        """
        local = await self._subscriptions.get_current_subscription()
        if not transaction_id:
            return local.plan_id != plan_id

        remote = await self._remote.get_latest_subscription(transaction_id)
        if remote is not None:
            return remote.plan_id != plan_id.value
        if local.original_transaction_id == transaction_id:
            return local.plan_id != plan_id
        return True

    async def _apply_detected_plan(
        self,
        plan_id: PlanId,
        transaction_id: Optional[str],
        expires_at: Optional[int],
    ) -> Optional[SubscriptionSnapshot]:
        """Commit the detected plan, resetting usage only on a plan change"""
        try:
            plan_changed = await self._is_plan_change(plan_id, transaction_id)
        except Exception as e:
            logger.error(f"Could not compare with stored subscription, falling back to free: {e}")
            return await self._commit_free_fallback(transaction_id)

        if plan_changed:
            logger.info(f"Plan change detected: now {plan_id.value}")

        return await self._commit(
            plan_id,
            preserve_usage=not plan_changed,
            transaction_id=transaction_id,
            expires_at=expires_at,
        )

    async def _commit(
        self,
        plan_id: PlanId,
        *,
        preserve_usage: bool,
        transaction_id: Optional[str],
        expires_at: Optional[int] = None,
    ) -> Optional[SubscriptionSnapshot]:
        try:
            return await self._subscriptions.set_subscription(
                plan_id.value,
                is_active=True,
                preserve_usage=preserve_usage,
                transaction_id=transaction_id,
                expires_at=expires_at,
            )
        except Exception as e:
            logger.error(f"Subscription commit failed, falling back to free: {e}")
            return await self._commit_free_fallback(transaction_id)

    async def _commit_free_fallback(self, transaction_id: Optional[str] = None) -> Optional[SubscriptionSnapshot]:
        """Local-only free commit keeping today's usage"""
        try:
            return await self._subscriptions.set_subscription(
                PlanId.FREE.value,
                is_active=True,
                preserve_usage=True,
                transaction_id=transaction_id,
                sync_remote=False,
            )
        except Exception as e:
            logger.error(f"Free fallback commit failed: {e}")
            return None

    @staticmethod
    def _grants(snapshot: Optional[SubscriptionSnapshot], plan_id: PlanId) -> bool:
        return snapshot is not None and snapshot.plan_id == plan_id and snapshot.is_active

    async def _finish(self, purchase: PurchaseRecord):
        try:
            await self._store.finish_transaction(purchase)
        except Exception as e:
            logger.warning(f"Could not finish transaction {purchase.transaction_id}: {e}")

    # ============ Reconciliation ============

    async def reconcile(self, throttle: bool = False) -> None:
        """
        Re-derive the subscription from the store, validator and remote state.

        Overlapping calls return immediately. With throttle set, a call
        within the throttle window of the last successful run is skipped.
        """
        if throttle and self._last_check is not None:
            if self._clock() - self._last_check < self._throttle_seconds:
                logger.debug("Subscription checked recently, skipping")
                return

        if self._is_reconciling:
            logger.info("Reconciliation already in progress, skipping")
            return

        self._is_reconciling = True
        try:
            await self._reconcile_locked()
        except Exception as e:
            logger.error(f"Reconciliation failed, reverting to free: {e}")
            await self._commit_free_fallback()
        finally:
            self._is_reconciling = False

    async def _reconcile_locked(self):
        if not self._is_initialized:
            await self.initialize()

        if not self._is_available:
            logger.info("Purchase store unavailable, keeping free plan")
            await self._commit_free_fallback()
            self._last_check = self._clock()
            return

        try:
            purchases = await self._store.list_active_purchases(only_active=True)
        except Exception as e:
            logger.warning(f"Could not list active purchases (store account not signed in?): {e}")
            self.account_accessible = False
            await self._commit_free_fallback()
            self._last_check = self._clock()
            return

        self.account_accessible = True
        purchase = select_latest_purchase(purchases)

        if purchase is None:
            plan_id, transaction_id, expires_at = PlanId.FREE, None, None
        else:
            plan_id, validation = await self._resolve_plan(purchase)
            transaction_id, expires_at = purchase.transaction_id, validation.expires_at

        await self._apply_detected_plan(plan_id, transaction_id, expires_at)
        self._last_check = self._clock()

    # ============ Products ============

    async def get_subscription_products(self) -> List[StoreProduct]:
        """
        List the subscription products sold in the app.

        Development builds fall back to products built from the plan catalog
        when the store is unavailable or has none registered. Production
        builds get an empty list instead.
        """
        if not self._is_initialized and not await self.initialize():
            logger.info("Purchase store unavailable, no store products")
            return self._simulation_products()

        try:
            products = await self._store.get_products(list(IAP_PRODUCT_IDS.values()))
        except Exception as e:
            logger.error(f"Failed to load subscription products: {e}")
            return self._simulation_products()

        if not products:
            logger.warning("Store returned no subscription products")
            return self._simulation_products()
        return products

    def _simulation_products(self) -> List[StoreProduct]:
        if not self.development:
            return []
        logger.info("Using catalog products for development")
        return simulation_products()

    # ============ Purchase ============

    async def purchase(self, product_id: str) -> Optional[PurchaseRecord]:
        """
        Buy a subscription product.

        Returns:
            The purchase when it produced an active entitlement, None when
            the user cancelled or anything failed (reported via notices)
        """
        if not self._is_initialized and not await self.initialize():
            self._notify(NoticeKind.STORE_UNAVAILABLE)
            return None

        try:
            plan_for_product(product_id)
        except UnknownProductError as e:
            logger.error(str(e))
            self._notify(NoticeKind.GENERIC)
            return None

        try:
            record = await self._store.request_purchase(product_id)
        except PurchaseCancelledError:
            logger.info(f"Purchase of {product_id} cancelled by user")
            return None
        except StoreError as e:
            logger.error(f"Purchase of {product_id} failed: {e}")
            self._notify(NoticeKind.NETWORK if e.code == StoreErrorCode.NETWORK else NoticeKind.GENERIC)
            return None
        except Exception as e:
            logger.error(f"Purchase of {product_id} failed: {e}")
            self._notify(NoticeKind.GENERIC)
            return None

        key = record.purchase_key
        if key in self._processed:
            # The listener picked this purchase up first
            await self.drain_events()
            current = await self._subscriptions.get_current_subscription()
            if current.original_transaction_id == record.transaction_id and not current.is_free:
                return record
            return None

        self._processed.add(key)

        plan_id, validation = await self._resolve_plan(record)
        if plan_id == PlanId.FREE:
            # Unfinished, so the store redelivers it for another attempt
            self._processed.discard(key)
            logger.warning(f"Purchase {key} could not be verified, leaving it unfinished")
            self._notify(NoticeKind.ENTITLEMENT_REVERTED)
            return None

        snapshot = await self._commit(
            plan_id,
            preserve_usage=False,
            transaction_id=record.transaction_id,
            expires_at=validation.expires_at,
        )
        await self._finish(record)

        if not self._grants(snapshot, plan_id):
            self._processed.discard(key)
            self._notify(NoticeKind.ENTITLEMENT_REVERTED)
            return None

        self._notify(NoticeKind.PURCHASE_COMPLETED)
        return record

    # ============ Restore ============

    async def restore(self) -> bool:
        """
        Recover the most recent active entitlement.

        Only the latest purchase is considered. Returns True when it yields
        an active paid plan (or was already handled in this session).
        """
        if not self._is_initialized and not await self.initialize():
            self._notify(NoticeKind.STORE_UNAVAILABLE)
            return False

        if self.is_processing_restore:
            logger.info("Restore already in progress")
            return False

        self.is_processing_restore = True
        try:
            # Let an event already being handled finish; queued ones are skipped
            await self.drain_events()
            return await self._restore_latest()
        except Exception as e:
            logger.error(f"Restore failed: {e}")
            self._notify(NoticeKind.GENERIC)
            return False
        finally:
            self.is_processing_restore = False

    async def _restore_latest(self) -> bool:
        try:
            purchases = await asyncio.wait_for(
                self._store.list_active_purchases(only_active=True),
                timeout=self._restore_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Restore timed out after {self._restore_timeout}s")
            self._notify(NoticeKind.NETWORK)
            return False
        except StoreError as e:
            logger.warning(f"Could not list purchases for restore: {e}")
            self.account_accessible = False
            self._notify(NoticeKind.LOGIN_REQUIRED)
            return False

        self.account_accessible = True
        latest = select_latest_purchase(purchases)
        if latest is None:
            logger.info("No purchases to restore")
            self._notify(NoticeKind.NOTHING_TO_RESTORE)
            return False

        key = latest.purchase_key
        if key in self._processed:
            logger.info(f"Purchase {key} already processed in this session")
            self._notify(NoticeKind.RESTORE_COMPLETED)
            return True

        self._processed.add(key)
        plan_id, validation = await self._resolve_plan(latest)
        snapshot = await self._apply_detected_plan(plan_id, latest.transaction_id, validation.expires_at)

        if plan_id == PlanId.FREE or not self._grants(snapshot, plan_id):
            self._processed.discard(key)
            self._notify(NoticeKind.ENTITLEMENT_REVERTED)
            return False

        self._notify(NoticeKind.RESTORE_COMPLETED)
        return True

    # ============ Teardown ============

    async def cleanup(self) -> None:
        """Unregister listeners, disconnect the store and stop event processing"""
        await self._store.cleanup()

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass

        self._consumer = None
        self._events = None
        self._is_initialized = False
        self._is_available = False
        logger.info("Entitlement reconciler cleaned up")


def build_reconciler(
    platform_store: PlatformPurchaseStore,
    on_notice: Optional[NoticeCallback] = None,
    storage_dir: Optional[str] = None,
    device_profile: Optional[DeviceProfile] = None,
) -> EntitlementReconciler:
    """
    Wire a reconciler and its collaborators from settings.

    Args:
        platform_store: The host's PlatformPurchaseStore implementation
        on_notice: Optional callback for user-facing notices
        storage_dir: Override for the local storage directory
        device_profile: DeviceProfile reported by the host, used for
            anonymous usage metering
    """
    store = JsonFileStore(storage_dir)
    remote = create_remote_sync_client()
    meter = DeviceUsageMeter(store, DeviceFingerprint(store, device_profile))
    subscriptions = SubscriptionService(store, remote, device_meter=meter)

    return EntitlementReconciler(
        store=PurchaseStoreAdapter(platform_store),
        validator=HttpReceiptValidator(),
        remote=remote,
        subscriptions=subscriptions,
        on_notice=on_notice,
    )
