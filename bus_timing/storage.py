# Persisted key/value store backing favorites, recents, theme and the stop cache.

import json
import logging
import os
from pathlib import Path
import threading
from typing import Any, Dict, Optional, Protocol, runtime_checkable

log = logging.getLogger(__name__)

FAVORITES_KEY = "favorites"
RECENT_SEARCHES_KEY = "recent_searches"
THEME_KEY = "theme"
STOPS_CACHE_KEY = "sg_bus_stops_cache"
STOPS_CACHE_TIME_KEY = "sg_bus_stops_time"
API_KEY_KEY = "LTA_API_KEY"


@runtime_checkable
class Storage(Protocol):
    """What the client and controller need from a key/value store."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


_MISSING = object()


class MemoryStorage:
    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            previous = self._data.get(key, _MISSING)
            self._data[key] = value
            try:
                self._flush()
            except OSError:
                self._restore(key, previous)
                raise

    def remove(self, key: str) -> None:
        with self._lock:
            previous = self._data.pop(key, _MISSING)
            if previous is _MISSING:
                return
            try:
                self._flush()
            except OSError:
                self._restore(key, previous)
                raise

    def _restore(self, key: str, previous: Any) -> None:
        # Memory never runs ahead of what was persisted.
        if previous is _MISSING:
            self._data.pop(key, None)
        else:
            self._data[key] = previous

    def _flush(self) -> None:
        pass


class JsonFileStorage(MemoryStorage):
    """Storage persisted as a single JSON object on disk.

    A missing or unreadable file starts empty. Writes go to a temp file
    that replaces the original, so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        super().__init__(self._read())

    def _read(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            log.warning("Ignoring unreadable storage file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            log.warning("Ignoring storage file %s: not a JSON object", self.path)
            return {}
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(self._data, fh)
        os.replace(tmp, self.path)
