"""
Remote Sync Client

Mirrors subscription state and daily usage into the remote database,
keyed by the store's original transaction identifier instead of a user
account. Calls without a transaction id are no-ops, which keeps pure
free users (who never purchased) entirely local.

Subscription writes propagate failures as RemoteSyncError so the caller
can fail closed. Usage writes are best effort and scheduled by the caller.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Any, List, Dict

from supabase import create_client, Client

from config import settings
from subscription.errors import RemoteSyncError
from subscription.models import RemoteSubscription
from utils.logger import logger


SUBSCRIPTIONS_TABLE_NAME = "user_subscriptions"
DAILY_USAGE_TABLE_NAME = "daily_usage"
TRANSACTION_ID_COLUMN = "original_transaction_identifier_ios"


def millis_to_iso(value: int) -> Optional[str]:
    """Epoch millis to an ISO-8601 UTC timestamp; 0 (no expiry) maps to None"""
    if not value:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


class RemoteSyncClient(ABC):
    """Interface to the remote subscription and usage tables"""

    @abstractmethod
    async def upsert_subscription(
        self,
        plan_id: str,
        is_active: bool,
        start_date: int,
        end_date: int,
        tx_id: Optional[str],
    ) -> bool:
        """
        Record the subscription state for tx_id.

        Returns:
            True when a row was written or already matched, False when
            skipped because there is no transaction id

        Raises:
            RemoteSyncError: if the remote write fails
        """
        pass

    @abstractmethod
    async def upsert_daily_usage(
        self,
        date: str,
        count: float,
        start_date: int,
        end_date: int,
        tx_id: Optional[str],
    ) -> bool:
        """Record the usage count for (tx_id, date)"""
        pass

    @abstractmethod
    async def get_latest_subscription(self, tx_id: Optional[str]) -> Optional[RemoteSubscription]:
        """
        Latest active subscription row for tx_id.

        Returns None when there is no transaction id or no row; raises
        RemoteSyncError when the lookup itself fails.
        """
        pass

    @abstractmethod
    async def get_daily_usage(self, date: str, tx_id: Optional[str]) -> Optional[float]:
        """Usage recorded remotely for (tx_id, date), or None when unknown"""
        pass


class DisabledRemoteSync(RemoteSyncClient):
    """Used when no remote database is configured: every call is a no-op"""

    async def upsert_subscription(self, plan_id, is_active, start_date, end_date, tx_id) -> bool:
        return False

    async def upsert_daily_usage(self, date, count, start_date, end_date, tx_id) -> bool:
        return False

    async def get_latest_subscription(self, tx_id):
        return None

    async def get_daily_usage(self, date, tx_id):
        return None


class SupabaseSyncClient(RemoteSyncClient):
    """
    RemoteSyncClient backed by supabase-py.

    The supabase client is synchronous, so every request runs in a worker
    thread to keep the event loop responsive.
    """

    def __init__(self, url: str, key: str, client: Optional[Client] = None):
        self._url = url
        self._key = key
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(supabase_url=self._url, supabase_key=self._key)
        return self._client

    async def _execute(self, query, action: str) -> List[Dict[str, Any]]:
        try:
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            raise RemoteSyncError(f"Failed to {action}: {e}") from e
        return response.data or []

    async def upsert_subscription(
        self,
        plan_id: str,
        is_active: bool,
        start_date: int,
        end_date: int,
        tx_id: Optional[str],
    ) -> bool:
        if not tx_id:
            logger.info("No transaction ID, skipping subscription sync")
            return False

        current = await self.get_latest_subscription(tx_id)
        if current and current.plan_id == plan_id and current.is_active == is_active:
            return True

        now = datetime.now(timezone.utc).isoformat()

        await self._execute(
            self.client.table(SUBSCRIPTIONS_TABLE_NAME)
            .update({"is_active": False, "updated_at": now})
            .eq(TRANSACTION_ID_COLUMN, tx_id)
            .eq("is_active", True),
            "deactivate previous subscriptions",
        )
        await self._execute(
            self.client.table(SUBSCRIPTIONS_TABLE_NAME).insert({
                "plan_id": plan_id,
                "is_active": is_active,
                TRANSACTION_ID_COLUMN: tx_id,
                "start_date": millis_to_iso(start_date) or now,
                "end_date": millis_to_iso(end_date),
            }),
            "insert subscription",
        )

        logger.info(f"Subscription synced: {plan_id} (active={is_active})")
        return True

    async def upsert_daily_usage(
        self,
        date: str,
        count: float,
        start_date: int,
        end_date: int,
        tx_id: Optional[str],
    ) -> bool:
        if not tx_id:
            return False

        await self._execute(
            self.client.table(DAILY_USAGE_TABLE_NAME).upsert(
                {
                    TRANSACTION_ID_COLUMN: tx_id,
                    "date": date,
                    "usage_count": count,
                    "start_date": millis_to_iso(start_date),
                    "end_date": millis_to_iso(end_date),
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                on_conflict=f"{TRANSACTION_ID_COLUMN},date",
            ),
            "sync daily usage",
        )
        logger.debug(f"Daily usage synced: {date} {count}")
        return True

    async def get_latest_subscription(self, tx_id: Optional[str]) -> Optional[RemoteSubscription]:
        if not tx_id:
            return None

        rows = await self._execute(
            self.client.table(SUBSCRIPTIONS_TABLE_NAME)
            .select("*")
            .eq(TRANSACTION_ID_COLUMN, tx_id)
            .eq("is_active", True)
            .order("created_at", desc=True)
            .limit(1),
            "fetch subscription",
        )
        if not rows:
            return None
        return RemoteSubscription.from_row(rows[0])

    async def get_daily_usage(self, date: str, tx_id: Optional[str]) -> Optional[float]:
        if not tx_id:
            return None

        rows = await self._execute(
            self.client.table(DAILY_USAGE_TABLE_NAME)
            .select("usage_count")
            .eq(TRANSACTION_ID_COLUMN, tx_id)
            .eq("date", date)
            .limit(1),
            "fetch daily usage",
        )
        if not rows:
            return None
        return float(rows[0].get("usage_count") or 0)


def create_remote_sync_client() -> RemoteSyncClient:
    """Build the remote sync client from settings"""
    if not settings.remote_sync_configured:
        logger.warning("Remote database not configured, subscription sync disabled")
        return DisabledRemoteSync()
    return SupabaseSyncClient(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
