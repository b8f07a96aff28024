"""LRU cache of oracle metrics per configuration with optional on-disk persistence."""
from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from tuner.metrics import Metrics
from tuner.space import ParameterSpace

LOGGER = logging.getLogger(__name__)

CACHE_NAMESPACE = "tuner.result_cache"
CACHE_MAX_AGE_SECONDS = 24 * 60 * 60
DEFAULT_CAPACITY = 1000


@dataclass
class JsonFileStore:
    """Key-value store keeping one JSON document per namespace under ``root``."""

    root: Path

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / (re.sub(r"[^A-Za-z0-9_.-]", "_", key) + ".json")

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


def _sorted_payload(value: object) -> object:
    if isinstance(value, Mapping):
        return {str(key): _sorted_payload(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_sorted_payload(item) for item in value]
    return value


def cache_namespace(request_context: Optional[Mapping[str, object]] = None) -> str:
    """Namespace for persisted metrics, separated by the oracle's fixed request parameters."""

    if not request_context:
        return CACHE_NAMESPACE
    blob = json.dumps(_sorted_payload(request_context), sort_keys=True, default=str)
    return f"{CACHE_NAMESPACE}.{hashlib.sha256(blob.encode('utf-8')).hexdigest()[:12]}"


class ResultCache:
    """Bounded LRU of raw oracle metrics keyed by canonical configuration.

    Scores are not stored: callers re-score hits with their own scorer.
    Hit/miss counters are left to the caller so that a disabled cache can still
    report misses without consulting the entries.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        space: Optional[ParameterSpace] = None,
        store: Optional[JsonFileStore] = None,
        namespace: str = CACHE_NAMESPACE,
        max_age: float = CACHE_MAX_AGE_SECONDS,
        autosave_every: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity <= 0:
            raise ValueError("Cache capacity must be positive")
        self.capacity = int(capacity)
        self.space = space
        self.store = store
        self.namespace = namespace
        self.max_age = float(max_age)
        self.autosave_every = int(autosave_every)
        self._clock = clock
        self._entries: "OrderedDict[str, Metrics]" = OrderedDict()
        self._puts_since_save = 0
        self.hits = 0
        self.misses = 0
        self.api_calls_saved = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, config: object) -> bool:
        return self.key(config) in self._entries

    def key(self, config: Optional[Mapping[str, object]]) -> str:
        payload = self.space.canonical(config) if self.space is not None else (config or {})
        return json.dumps(_sorted_payload(payload), sort_keys=True, separators=(",", ":"), default=str)

    def get(self, config: Mapping[str, object]) -> Optional[Metrics]:
        key = self.key(config)
        metrics = self._entries.get(key)
        if metrics is not None:
            self._entries.move_to_end(key)
        return metrics

    def put(self, config: Mapping[str, object], metrics: Metrics) -> None:
        key = self.key(config)
        self._entries[key] = metrics
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            LOGGER.debug("Evicted cache entry %s", evicted)
        self._puts_since_save += 1
        if self.store is not None and self.autosave_every > 0 and self._puts_since_save >= self.autosave_every:
            self.save()

    def record_hit(self) -> None:
        self.hits += 1
        self.api_calls_saved += 1

    def record_miss(self) -> None:
        self.misses += 1

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        self.api_calls_saved = 0

    def stats(self) -> Dict[str, object]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "api_calls_saved": self.api_calls_saved,
            "hit_rate": (self.hits / lookups) if lookups else 0.0,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self) -> bool:
        if self.store is None:
            return False
        payload = {
            "entries": [[key, metrics.to_dict()] for key, metrics in self._entries.items()],
            "hits": self.hits,
            "misses": self.misses,
            "apiCallsSaved": self.api_calls_saved,
            "timestamp": self._clock(),
        }
        try:
            self.store.set(self.namespace, json.dumps(payload))
        except OSError as exc:
            LOGGER.warning("Failed to persist result cache: %s", exc)
            return False
        self._puts_since_save = 0
        LOGGER.debug("Saved %d cache entries to %s", len(self._entries), self.namespace)
        return True

    def load(self) -> bool:
        """Restore persisted entries; stale or unreadable data leaves the cache empty."""

        if self.store is None:
            return False
        try:
            raw = self.store.get(self.namespace)
            if raw is None:
                return False
            payload = json.loads(raw)
            age = self._clock() - float(payload["timestamp"])
            if age > self.max_age:
                LOGGER.info("Discarding result cache older than %.1f hours", age / 3600.0)
                self.store.delete(self.namespace)
                return False
            entries: "OrderedDict[str, Metrics]" = OrderedDict()
            for key, value in payload["entries"]:
                entries[str(key)] = Metrics.from_payload(value)
            hits = int(payload.get("hits", 0))
            misses = int(payload.get("misses", 0))
            saved = int(payload.get("apiCallsSaved", 0))
        except Exception as exc:
            LOGGER.warning("Ignoring unreadable result cache: %s", exc)
            return False

        while len(entries) > self.capacity:
            entries.popitem(last=False)
        self._entries = entries
        self.hits, self.misses, self.api_calls_saved = hits, misses, saved
        LOGGER.info("Loaded %d cached results from %s", len(entries), self.namespace)
        return True


__all__ = ["CACHE_NAMESPACE", "JsonFileStore", "ResultCache", "cache_namespace"]
