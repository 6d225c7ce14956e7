"""
Device Fingerprinting for anonymous usage metering

Generates a stable device identifier from coarse device traits:
- Platform (ios / android)
- OS version
- Screen dimensions

The fingerprint is:
- Stable across app reinstalls on the same device
- Regenerable without storing a hardware UUID
- Privacy-preserving (one-way hash)
"""

import hashlib
import os
import platform
import secrets
import time
from dataclasses import dataclass
from typing import Optional, List, Tuple

from subscription.local_store import KeyValueStore
from utils.logger import logger


DEVICE_ID_KEY = "stable_device_id"
FALLBACK_DEVICE_ID_KEY = "fallback_device_id"


def _get_app_salt() -> str:
    """
    Get the application salt from environment variable.

    In production, set POLYLINGO_FINGERPRINT_SALT. The fallback keeps
    development builds working.
    """
    env_salt = os.environ.get("POLYLINGO_FINGERPRINT_SALT")
    if env_salt:
        return env_salt
    return "POLYLINGO_DEV_SALT"


APP_SALT = _get_app_salt()


@dataclass(frozen=True)
class DeviceProfile:
    """Device traits reported by the host application"""
    platform: str
    os_version: str
    screen_width: int
    screen_height: int

    @classmethod
    def detect(cls) -> "DeviceProfile":
        """Best-effort profile for hosts that cannot report screen dimensions"""
        return cls(
            platform=platform.system().lower(),
            os_version=platform.release(),
            screen_width=0,
            screen_height=0,
        )


class DeviceFingerprint:
    """
    Resolve the stable device id used to key anonymous usage records.

    The id is generated once, stored under ``stable_device_id`` and reused.
    Regenerating on a reinstall yields the same value because it only
    depends on the device profile.
    """

    def __init__(self, store: KeyValueStore, profile: Optional[DeviceProfile] = None):
        self._store = store
        self._profile = profile
        self._device_id: Optional[str] = None

    def generate(self) -> str:
        """
        Hash the device profile.

        Returns:
            32-character hexadecimal fingerprint string
        """
        profile = self._profile or DeviceProfile.detect()
        components = [
            ("platform", profile.platform),
            ("os_version", str(profile.os_version)),
            ("screen", f"{profile.screen_width}x{profile.screen_height}"),
        ]
        return self._hash_components(components)

    def get_stable_device_id(self) -> str:
        """Return the stored device id, creating it on first use"""
        if self._device_id:
            return self._device_id

        try:
            stored_id = self._store.get_item(DEVICE_ID_KEY)
            if not stored_id:
                stored_id = f"device_{self.generate()}"
                self._store.set_item(DEVICE_ID_KEY, stored_id)
        except Exception as e:
            logger.warning(f"Failed to get device ID, using fallback: {e}")
            stored_id = self._get_fallback_id()

        self._device_id = stored_id
        return stored_id

    def _get_fallback_id(self) -> str:
        fallback_id = None
        try:
            fallback_id = self._store.get_item(FALLBACK_DEVICE_ID_KEY)
        except Exception as e:
            logger.warning(f"Could not read fallback device ID: {e}")

        if not fallback_id:
            fallback_id = f"fallback_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
            try:
                self._store.set_item(FALLBACK_DEVICE_ID_KEY, fallback_id)
            except Exception as e:
                logger.warning(f"Could not persist fallback device ID: {e}")
        return fallback_id

    @staticmethod
    def _hash_components(components: List[Tuple[str, str]]) -> str:
        """Create a stable salted hash from (name, value) pairs"""
        components = sorted(components, key=lambda x: x[0])
        composite = "|".join(f"{name}:{value}" for name, value in components)
        salted = f"{APP_SALT}|{composite}"
        return hashlib.sha256(salted.encode()).hexdigest()[:32]
