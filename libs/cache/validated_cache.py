from __future__ import annotations

import json
from typing import Any, Callable, Optional, Tuple

from prometheus_client import Counter
from pydantic import ValidationError

from libs.core import logging as core_logging
from libs.core.models import CacheEntry

from .stores import CacheStore
from .validation import ValidationConfig, create_entry, level_for_source, smart_validate

LOGGER = core_logging.get_logger("validated_cache")

CACHE_LOOKUPS = Counter("llm_cache_lookups_total", "Validated cache lookups", ["outcome"])

DEFAULT_CACHE_TTL_S = 60 * 60


class ValidatedCache:
    """Cache facade that only hands out entries passing validation.

    An entry that fails validation, or cannot be decoded, is deleted and
    reported as a miss.
    """

    def __init__(
        self,
        store: CacheStore,
        config: ValidationConfig | None = None,
        prefix: str = "cache:",
    ) -> None:
        self.store = store
        self.config = config or ValidationConfig()
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _lookup(self, key: str, source: str) -> Tuple[bool, Any]:
        full_key = self._key(key)
        raw = self.store.get(full_key)
        if raw is None:
            CACHE_LOOKUPS.labels("miss").inc()
            return False, None
        try:
            entry = CacheEntry.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            self._purge(full_key, f"undecodable: {exc}")
            return False, None
        result = smart_validate(entry, source, self.config)
        if not result.is_valid:
            self._purge(full_key, result.reason or "invalid")
            return False, None
        CACHE_LOOKUPS.labels("hit").inc()
        return True, result.data

    def get(self, key: str, source: str = "unknown") -> Optional[Any]:
        return self._lookup(key, source)[1]

    def set(self, key: str, data: Any, source: str = "unknown", ttl_s: int = DEFAULT_CACHE_TTL_S) -> CacheEntry:
        entry = create_entry(data, level_for_source(source), ttl_s * 1000, secret=self.config.secret)
        self.store.set_with_ttl(self._key(key), entry.model_dump_json(), ttl_s)
        return entry

    def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Any],
        source: str = "unknown",
        ttl_s: int = DEFAULT_CACHE_TTL_S,
    ) -> Any:
        """Return the cached value, loading and storing it on a miss. ``None`` is cached like any other value."""
        found, cached = self._lookup(key, source)
        if found:
            return cached
        data = fetch()
        self.set(key, data, source, ttl_s)
        return data

    def delete(self, key: str) -> None:
        self.store.delete(self._key(key))

    def clear(self) -> int:
        return self.store.clear(self.prefix)

    def _purge(self, full_key: str, reason: str) -> None:
        CACHE_LOOKUPS.labels("invalid").inc()
        LOGGER.warning("cache_entry_invalid", key=full_key, reason=reason)
        self.store.delete(full_key)
