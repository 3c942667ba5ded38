"""
Cross-tick strategy state.

Plugin strategies keep small counters (e.g. a consecutive-loss streak) per
strategy and symbol. The pipeline only sees the ``StateStore`` interface; the
backend is chosen by whoever builds the ``StateStoreProvider``:

- InMemoryStateProvider: one dict per (strategy, symbol), used by backtests
- JsonFileStateProvider: ``{base_dir}/{strategy_id}/{symbol}.json`` for live loops
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from edgelab.config.settings import get_settings
from edgelab.core.exceptions import EdgeLabStateError

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Key-value state bound to one strategy and symbol."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Read-only copy of all keys."""
        ...


class InMemoryStateStore(StateStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._data)


class JsonFileStateStore(StateStore):
    """
    Write-through JSON file store.

    A missing or corrupt file reads as empty state; write failures raise
    EdgeLabStateError.
    """

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self._path):
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read strategy state file %s: %s", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            directory = os.path.dirname(self._path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise EdgeLabStateError(f"Could not write strategy state file {self._path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._read()


class StateStoreProvider(ABC):
    """Hands out the store for a (strategy id, symbol) pair."""

    @abstractmethod
    def for_strategy(self, strategy_id: str, symbol: str) -> StateStore:
        ...


class InMemoryStateProvider(StateStoreProvider):
    def __init__(self):
        self._stores: Dict[Tuple[str, str], InMemoryStateStore] = {}

    def for_strategy(self, strategy_id: str, symbol: str) -> StateStore:
        key = (strategy_id, symbol)
        if key not in self._stores:
            self._stores[key] = InMemoryStateStore()
        return self._stores[key]


class JsonFileStateProvider(StateStoreProvider):
    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or get_settings().state_dir

    def for_strategy(self, strategy_id: str, symbol: str) -> StateStore:
        return JsonFileStateStore(os.path.join(self.base_dir, strategy_id, f"{symbol}.json"))
