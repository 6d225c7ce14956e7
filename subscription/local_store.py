"""
Local persistent key-value store.

Every value is a JSON document kept in its own file under the storage
directory, so a corrupt entry never takes the others down with it.
"""

import json
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from config import settings
from utils.logger import logger


class KeyValueStore(ABC):
    """Minimal durable store used for the subscription snapshot and device metering"""

    @abstractmethod
    def get_item(self, key: str) -> Optional[Any]:
        """Return the decoded value for key, or None when absent"""
        pass

    @abstractmethod
    def set_item(self, key: str, value: Any) -> None:
        """Persist value under key, replacing any previous value"""
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass


class JsonFileStore(KeyValueStore):
    """
    File backed store writing one ``<key>.json`` file per entry.

    Writes go to a temporary file that is renamed over the target, so a
    crash mid-write leaves the previous value intact.
    """

    _SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")

    def __init__(self, storage_dir: Optional[str] = None):
        self.storage_dir = Path(storage_dir or settings.STORAGE_DIR)
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure the storage directory exists"""
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not self._SAFE_KEY.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.storage_dir / f"{key}.json"

    def get_item(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read stored value for {key}: {e}")
            return None

    def set_item(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        tmp_path = path.with_suffix(".json.tmp")

        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, indent=2)
        os.replace(tmp_path, path)

    def remove_item(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
