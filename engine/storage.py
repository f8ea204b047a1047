"""
Durable key/value storage used by the coverage store.
Values are JSON strings; keys are namespaced per identity by the caller.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable

from engine.config import StoreConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class DurableStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class InMemoryStorage:
    """Process-local storage, mainly for tests and one-shot runs"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)


class JsonFileStorage:
    """
    Storage backed by a single JSON document on disk.

    Every write rewrites the whole document to a temporary file and swaps it
    in with os.replace, so readers never observe a half-written file.
    """

    def __init__(self, file_path: Optional[Path] = None):
        self.file_path = Path(file_path or StoreConfig.STORE_FILE)
        self._lock = threading.Lock()

    def _load_json(self) -> Dict[str, str]:
        """Load the store document, return empty dict if missing or unreadable"""
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Store file %s is unreadable (%s); treating it as empty", self.file_path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Store file %s does not hold an object; treating it as empty", self.file_path)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save_json(self, data: Dict[str, str]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.file_path)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load_json().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load_json()
            data[key] = value
            self._save_json(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._load_json()
            if key in data:
                del data[key]
                self._save_json(data)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._load_json())
