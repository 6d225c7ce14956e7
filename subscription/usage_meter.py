"""
Anonymous device usage metering.

Free users who never made a purchase have no transaction id to key a
remote usage record, so their daily allowance is enforced purely on the
device. This check has no network dependency and works fully offline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, Optional

from config import settings
from subscription.device_fingerprint import DeviceFingerprint
from subscription.local_store import KeyValueStore
from subscription.models import local_date_string
from utils.logger import logger


DEVICE_USAGE_KEY = "device_usage_tracking"


@dataclass
class DeviceUsageRecord:
    device_id: str
    daily_usage: Dict[str, float] = field(default_factory=dict)
    total_usage: float = 0.0
    first_install_date: str = ""
    last_usage_date: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "dailyUsage": dict(self.daily_usage),
            "totalUsage": self.total_usage,
            "firstInstallDate": self.first_install_date,
            "lastUsageDate": self.last_usage_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceUsageRecord":
        return cls(
            device_id=data.get("deviceId", ""),
            daily_usage={k: float(v) for k, v in (data.get("dailyUsage") or {}).items()},
            total_usage=float(data.get("totalUsage", 0) or 0),
            first_install_date=data.get("firstInstallDate", ""),
            last_usage_date=data.get("lastUsageDate", ""),
        )


@dataclass
class UsageCheck:
    """Result of a metered increment"""
    allowed: bool
    remaining_daily: Optional[float] = None
    reason: Optional[str] = None


class DeviceUsageMeter:
    """Daily capped counter keyed by the stable device fingerprint"""

    def __init__(
        self,
        store: KeyValueStore,
        fingerprint: DeviceFingerprint,
        daily_limit: float = settings.DEVICE_DAILY_LIMIT,
        retention_days: int = settings.DEVICE_USAGE_RETENTION_DAYS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._fingerprint = fingerprint
        self.daily_limit = daily_limit
        self.retention_days = retention_days
        self._clock = clock

    def _today(self) -> str:
        return local_date_string(self._clock())

    def _new_record(self, device_id: str) -> DeviceUsageRecord:
        today = self._today()
        return DeviceUsageRecord(
            device_id=device_id,
            first_install_date=today,
            last_usage_date=today,
        )

    def load(self) -> DeviceUsageRecord:
        """Load this device's usage record, starting fresh for a different device"""
        device_id = self._fingerprint.get_stable_device_id()
        data = self._store.get_item(DEVICE_USAGE_KEY)
        if not data:
            return self._new_record(device_id)

        record = DeviceUsageRecord.from_dict(data)
        if record.device_id != device_id:
            logger.info("Stored device usage belongs to another device, starting fresh")
            return self._new_record(device_id)
        return record

    def increment_with_limit(self, amount: float = 1.0) -> UsageCheck:
        """
        Add amount to today's usage unless it would exceed the daily cap.

        Returns:
            UsageCheck with the remaining allowance for today
        """
        try:
            record = self.load()
            today = self._today()
            used = record.daily_usage.get(today, 0.0)

            if used + amount > self.daily_limit:
                return UsageCheck(
                    allowed=False,
                    remaining_daily=max(0.0, self.daily_limit - used),
                    reason="daily_limit_exceeded",
                )

            record.daily_usage[today] = used + amount
            record.total_usage += amount
            record.last_usage_date = today
            self._store.set_item(DEVICE_USAGE_KEY, record.to_dict())

            return UsageCheck(
                allowed=True,
                remaining_daily=self.daily_limit - record.daily_usage[today],
            )
        except Exception as e:
            logger.error(f"Failed to increment device usage: {e}")
            return UsageCheck(allowed=False, reason="system_error")

    def get_stats(self) -> Dict[str, Any]:
        """Today's usage against the cap plus the lifetime total"""
        try:
            record = self.load()
            used = record.daily_usage.get(self._today(), 0.0)
            return {
                "daily": {
                    "used": used,
                    "limit": self.daily_limit,
                    "remaining": max(0.0, self.daily_limit - used),
                },
                "total": record.total_usage,
            }
        except Exception as e:
            logger.error(f"Failed to get device usage stats: {e}")
            return {
                "daily": {"used": 0.0, "limit": self.daily_limit, "remaining": self.daily_limit},
                "total": 0.0,
            }

    def cleanup_old_usage(self) -> int:
        """Drop daily entries older than the retention window, returning how many were removed"""
        record = self.load()
        cutoff = local_date_string(self._clock() - timedelta(days=self.retention_days))

        stale = [day for day in record.daily_usage if day < cutoff]
        for day in stale:
            del record.daily_usage[day]

        try:
            self._store.set_item(DEVICE_USAGE_KEY, record.to_dict())
        except Exception as e:
            logger.error(f"Failed to cleanup old usage data: {e}")
            return 0
        return len(stale)
