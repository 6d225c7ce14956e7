"""
Local subscription cache and commit path.

The SubscriptionService owns the one authoritative SubscriptionSnapshot
stored under ``user_subscription``. Every plan change goes through
set_subscription(), which writes the remote subscription record first
(failures propagate so the caller can fail closed) and only then replaces
the local snapshot.

Translation usage is metered here as well:
- A translation to N target languages costs N / max_languages units
- The counter resets whenever the local calendar day changes
- Anonymous free users are additionally capped by the device meter
"""

import asyncio
import dataclasses
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from config import settings
from subscription.errors import RemoteSyncError, UnknownPlanError
from subscription.local_store import KeyValueStore
from subscription.models import (
    PlanId,
    DailyUsage,
    SubscriptionSnapshot,
    get_plan,
    iso_to_millis,
    local_date_string,
    to_millis,
)
from subscription.remote_sync import RemoteSyncClient
from subscription.usage_meter import DeviceUsageMeter
from utils.logger import logger


SUBSCRIPTION_KEY = "user_subscription"
# Transaction id of a commit that was kept local (remote write skipped)
LOCAL_ONLY_KEY = "subscription_local_only"


class SubscriptionService:
    """
    Reads and commits the local subscription snapshot.

    While a commit is in flight ``is_updating`` is set and readers are
    served the last snapshot known to be committed instead of waiting.
    """

    def __init__(
        self,
        store: KeyValueStore,
        remote: RemoteSyncClient,
        device_meter: Optional[DeviceUsageMeter] = None,
        development: bool = settings.is_development,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._remote = remote
        self._device_meter = device_meter
        self._development = development
        self._clock = clock

        self.is_updating = False
        self._last_known: Optional[SubscriptionSnapshot] = None
        self._pending_syncs: Set[asyncio.Task] = set()

    # ============ Local cache ============

    def _read_local(self) -> Optional[SubscriptionSnapshot]:
        data = self._store.get_item(SUBSCRIPTION_KEY)
        if not data:
            return None
        try:
            return SubscriptionSnapshot.from_dict(data)
        except (UnknownPlanError, ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable subscription snapshot: {e}")
            return None

    def _write_local(self, snapshot: SubscriptionSnapshot):
        self._store.set_item(SUBSCRIPTION_KEY, snapshot.to_dict())
        self._last_known = snapshot

    def _coerce_expired(self, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        now = self._clock()
        return SubscriptionSnapshot(
            plan_id=PlanId.FREE,
            is_active=True,
            start_date=to_millis(now),
            end_date=0,
            daily_usage=DailyUsage(date=local_date_string(now), count=0.0),
            is_trial_used=snapshot.is_trial_used,
            original_transaction_id=snapshot.original_transaction_id,
        )

    async def get_current_subscription(self) -> SubscriptionSnapshot:
        """
        Current entitlement.

        A snapshot backed by a transaction id is checked against the remote
        record for that id, and a plan changed or revoked remotely is adopted.
        The local snapshot stands when the remote cannot be reached. A missing
        snapshot yields the free default and an expired one is downgraded to
        free on the spot, without waiting for reconciliation.
        """
        if self.is_updating and self._last_known is not None:
            return self._last_known

        snapshot = self._read_local()
        if snapshot is None:
            snapshot = SubscriptionSnapshot.default(self._clock())
            self._persist_quietly(snapshot)
        else:
            snapshot = await self._merge_remote(snapshot)

        if snapshot.is_expired(self._clock()):
            logger.info(f"Subscription {snapshot.plan_id.value} expired, reverting to free")
            snapshot = self._coerce_expired(snapshot)
            self._persist_quietly(snapshot)

        self._last_known = snapshot
        return snapshot

    async def _merge_remote(self, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        """Adopt the remote record for the snapshot's transaction id when it differs"""
        tx_id = snapshot.original_transaction_id
        if not tx_id or self.is_updating:
            return snapshot
        # A local-only commit is newer than whatever the remote still holds
        if tx_id == self._local_only_transaction():
            return snapshot

        try:
            remote = await self._remote.get_latest_subscription(tx_id)
        except RemoteSyncError as e:
            logger.warning(f"Could not read remote subscription, using local snapshot: {e}")
            return snapshot

        if remote is None:
            return snapshot
        if remote.plan_id == snapshot.plan_id.value and remote.is_active == snapshot.is_active:
            return snapshot

        try:
            plan = get_plan(remote.plan_id)
            start_date = iso_to_millis(remote.start_date) or snapshot.start_date
            end_date = 0 if plan.id == PlanId.FREE else iso_to_millis(remote.end_date)
        except (UnknownPlanError, ValueError) as e:
            logger.warning(f"Ignoring unreadable remote subscription for {tx_id}: {e}")
            return snapshot

        logger.info(
            f"Remote subscription for {tx_id} is {plan.id.value} "
            f"(active={remote.is_active}), replacing local {snapshot.plan_id.value}"
        )
        now = self._clock()
        adopted = dataclasses.replace(
            snapshot,
            plan_id=plan.id,
            is_active=remote.is_active,
            start_date=start_date,
            end_date=end_date,
            daily_usage=DailyUsage(date=local_date_string(now), count=0.0),
        )
        self._persist_quietly(adopted)
        return adopted

    def _local_only_transaction(self) -> Optional[str]:
        data = self._store.get_item(LOCAL_ONLY_KEY)
        if not data:
            return None
        return data.get("transactionId")

    def _mark_local_only(self, transaction_id: Optional[str]):
        if transaction_id:
            self._store.set_item(LOCAL_ONLY_KEY, {"transactionId": transaction_id})
        else:
            self._store.remove_item(LOCAL_ONLY_KEY)

    def _persist_quietly(self, snapshot: SubscriptionSnapshot):
        """Write a snapshot derived on read; a failure only costs recomputing it next time"""
        if self.is_updating:
            return
        try:
            self._store.set_item(SUBSCRIPTION_KEY, snapshot.to_dict())
        except OSError as e:
            logger.warning(f"Could not persist subscription snapshot: {e}")

    # ============ Commit path ============

    async def set_subscription(
        self,
        plan_id: str,
        *,
        is_active: bool = True,
        preserve_usage: bool = False,
        transaction_id: Optional[str] = None,
        expires_at: Optional[int] = None,
        sync_remote: bool = True,
    ) -> SubscriptionSnapshot:
        """
        Commit a new subscription snapshot.

        Args:
            plan_id: Target plan
            is_active: Whether the plan grants its capabilities
            preserve_usage: Keep today's usage count (steady state) instead
                of resetting it (plan change)
            transaction_id: Original transaction id backing the plan
            expires_at: Explicit expiry in epoch millis from validation
            sync_remote: Write the remote subscription record first

        Raises:
            UnknownPlanError: if plan_id is not in the catalog
            RemoteSyncError: if the remote write fails (local state is untouched)
        """
        plan = get_plan(plan_id)
        now = self._clock()
        today = local_date_string(now)
        start_date = to_millis(now)

        if plan.id == PlanId.FREE:
            end_date = 0
        elif expires_at:
            end_date = expires_at
        else:
            end_date = plan.end_date_from(start_date)

        self.is_updating = True
        try:
            if sync_remote:
                await self._remote.upsert_subscription(
                    plan.id.value, is_active, start_date, end_date, transaction_id
                )

            # Read after the remote write so increments made meanwhile are kept
            previous = self._read_local()
            usage_count = 0.0
            if preserve_usage and previous is not None:
                usage_count = previous.usage_for(today)
                if sync_remote and transaction_id:
                    usage_count = max(usage_count, await self._remote_usage(today, transaction_id))

            snapshot = SubscriptionSnapshot(
                plan_id=plan.id,
                is_active=is_active,
                start_date=start_date,
                end_date=end_date,
                daily_usage=DailyUsage(date=today, count=usage_count),
                is_trial_used=previous.is_trial_used if previous else False,
                original_transaction_id=transaction_id,
            )
            self._write_local(snapshot)
            self._mark_local_only(None if sync_remote else transaction_id)
        finally:
            self.is_updating = False

        logger.info(
            f"Subscription set to {plan.id.value} "
            f"(active={is_active}, usage={'preserved' if preserve_usage else 'reset'})"
        )
        if sync_remote and transaction_id:
            self._schedule_usage_sync(snapshot)
        return snapshot

    async def _remote_usage(self, day: str, transaction_id: str) -> float:
        try:
            remote_count = await self._remote.get_daily_usage(day, transaction_id)
        except RemoteSyncError as e:
            logger.warning(f"Could not read remote usage: {e}")
            return 0.0
        return remote_count or 0.0

    # ============ Usage ============

    async def record_translation(self, language_count: int = 1) -> bool:
        """
        Meter one translation to language_count target languages.

        Returns:
            True if the translation is allowed and was counted, False when
            a daily limit is reached
        """
        snapshot = await self.get_current_subscription()
        plan = snapshot.plan
        today = local_date_string(self._clock())

        used = snapshot.usage_for(today)
        increment = language_count / plan.max_languages

        if used + increment > plan.daily_translations:
            logger.info(f"Daily limit reached for {plan.id.value}: {used:.2f}/{plan.daily_translations}")
            return False

        if snapshot.is_free and not snapshot.original_transaction_id and self._device_meter:
            check = self._device_meter.increment_with_limit(increment)
            if not check.allowed:
                logger.info(f"Device usage limit reached ({check.reason})")
                return False

        updated = dataclasses.replace(snapshot, daily_usage=DailyUsage(date=today, count=used + increment))
        try:
            self._write_local(updated)
        except OSError as e:
            logger.error(f"Error incrementing daily usage: {e}")
            return False

        logger.debug(f"Daily usage incremented by {increment:.3f} ({language_count} languages)")
        if updated.original_transaction_id:
            self._schedule_usage_sync(updated)
        return True

    async def get_daily_usage(self) -> Dict[str, float]:
        snapshot = await self.get_current_subscription()
        used = snapshot.usage_for(local_date_string(self._clock()))
        limit = snapshot.plan.daily_translations
        return {"used": used, "limit": limit, "remaining": max(0.0, limit - used)}

    async def is_premium_user(self) -> bool:
        snapshot = await self.get_current_subscription()
        return not snapshot.is_free and snapshot.is_active

    async def get_max_languages(self) -> int:
        """Total selectable languages: the plan's target languages plus the source"""
        snapshot = await self.get_current_subscription()
        return snapshot.plan.max_languages + 1

    async def should_show_ads(self) -> bool:
        snapshot = await self.get_current_subscription()
        return snapshot.plan.has_ads

    # ============ Development helpers ============

    async def reset_daily_usage(self) -> None:
        """Development only: zero today's usage"""
        await self.set_daily_usage(0.0)

    async def set_daily_usage(self, count: float) -> None:
        """Development only: force today's usage count"""
        if not self._development:
            logger.warning("set_daily_usage is only available in development")
            return
        snapshot = await self.get_current_subscription()
        today = local_date_string(self._clock())
        self._write_local(dataclasses.replace(snapshot, daily_usage=DailyUsage(date=today, count=float(count))))
        logger.info(f"Daily usage set to {count}")

    # ============ Background usage sync ============

    def _schedule_usage_sync(self, snapshot: SubscriptionSnapshot):
        task = asyncio.create_task(self._sync_usage(
            snapshot.daily_usage.date,
            snapshot.daily_usage.count,
            snapshot.start_date,
            snapshot.end_date,
            snapshot.original_transaction_id,
        ))
        self._pending_syncs.add(task)
        task.add_done_callback(self._pending_syncs.discard)

    async def _sync_usage(self, day: str, count: float, start_date: int, end_date: int, tx_id: Optional[str]):
        try:
            await self._remote.upsert_daily_usage(day, count, start_date, end_date, tx_id)
        except Exception as e:
            logger.warning(f"Daily usage sync failed: {e}")

    async def wait_for_pending_syncs(self) -> None:
        """Wait for scheduled usage syncs to finish"""
        if self._pending_syncs:
            await asyncio.gather(*list(self._pending_syncs), return_exceptions=True)
