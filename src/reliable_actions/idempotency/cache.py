"""
Idempotency cache.

Remembers the result of every executed action under its idempotency key so
that a repeated request returns the cached result instead of repeating the
side effect. Records expire after a TTL chosen per action, the least recently
used fifth of the cache is evicted when it is full, and concurrent requests
for the same key share one in-flight execution.
"""

import asyncio
import inspect
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from ..events import EventBus
from ..models import ActionCategory, ActionDescriptor
from ..monitoring.metrics import MetricsRegistry
from ..persistence import RecordStore
from .keys import derive_key


logger = logging.getLogger(__name__)


EVENT_SOURCE = "idempotency"


@dataclass
class IdempotencyConfig:
    """Configuration for the idempotency cache. Durations are seconds."""
    default_ttl: float = 24 * 60 * 60
    decision_ttl: float = 30 * 60
    classification_ttl: float = 60 * 60
    ttl_by_action_type: Dict[str, float] = field(default_factory=dict)
    categories: Dict[str, ActionCategory] = field(default_factory=dict)
    max_size: int = 10000
    eviction_fraction: float = 0.2
    hot_threshold: int = 5
    sweep_interval: float = 60 * 60

    def __post_init__(self):
        if self.max_size < 1:
            raise ValueError("max_size must be >= 1")
        if not 0 < self.eviction_fraction <= 1:
            raise ValueError("eviction_fraction must be in (0, 1]")


@dataclass
class IdempotencyRecord:
    """Cached outcome of one executed action."""
    key: str
    cached_result: Any
    created_at: float
    expires_at: float
    hit_count: int = 0
    hot: bool = False
    last_accessed_at: Optional[float] = None
    source_action_type: Optional[str] = None
    source_target: Optional[str] = None
    correlation_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "cached_result": self.cached_result,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "hit_count": self.hit_count,
            "hot": self.hot,
            "last_accessed_at": self.last_accessed_at,
            "source_action_type": self.source_action_type,
            "source_target": self.source_target,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdempotencyRecord":
        return cls(
            key=data["key"],
            cached_result=data.get("cached_result"),
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            hit_count=data.get("hit_count", 0),
            hot=data.get("hot", False),
            last_accessed_at=data.get("last_accessed_at"),
            source_action_type=data.get("source_action_type"),
            source_target=data.get("source_target"),
            correlation_id=data.get("correlation_id"),
        )


@dataclass(frozen=True)
class LookupResult:
    """Outcome of a cache lookup."""
    hit: bool
    result: Any = None
    record: Optional[IdempotencyRecord] = None


class IdempotencyCache:
    """
    At-most-once execution per idempotency key.

    Thread-safe for lookups and records; ``wrap`` must run on one event loop.
    """

    def __init__(
        self,
        config: Optional[IdempotencyConfig] = None,
        store: Optional[RecordStore] = None,
        metrics: Optional[MetricsRegistry] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize idempotency cache.

        Args:
            config: Cache configuration
            store: Persistence hook for hot records (none when omitted)
            metrics: Registry receiving cache counters
            events: Event bus receiving cache events
            clock: Wall clock in epoch seconds
        """
        self.config = config or IdempotencyConfig()
        self.store = store
        self.metrics = metrics
        self.events = events
        self._clock = clock

        self._records: "OrderedDict[str, IdempotencyRecord]" = OrderedDict()
        self._lock = threading.RLock()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._pending_saves: Dict[str, IdempotencyRecord] = {}
        self._pending_removals: Set[str] = set()

        self.running = False
        self.sweep_task: Optional[asyncio.Task] = None

        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "hits": 0,
            "misses": 0,
            "duplicates_prevented": 0,
            "expired_cleaned": 0,
            "evictions": 0,
            "invalidations": 0,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # TTL policy

    def category_of(self, action: ActionDescriptor) -> ActionCategory:
        category = self.config.categories.get(action.action_type)
        if category is not None:
            return category
        hinted = action.context.get("category")
        if hinted in {c.value for c in ActionCategory}:
            return ActionCategory(hinted)
        return ActionCategory.OTHER

    def ttl_for(self, action: Optional[ActionDescriptor] = None, ttl: Optional[float] = None) -> float:
        """
        TTL for a new record.

        Explicit ttl, else the action type override, else the category TTL,
        else the default.
        """
        if ttl is not None:
            return ttl
        if action is None:
            return self.config.default_ttl
        if action.action_type in self.config.ttl_by_action_type:
            return self.config.ttl_by_action_type[action.action_type]

        category = self.category_of(action)
        if category == ActionCategory.DECISION:
            return self.config.decision_ttl
        if category == ActionCategory.CLASSIFICATION:
            return self.config.classification_ttl
        return self.config.default_ttl

    # Core operations

    def lookup(self, key: str) -> LookupResult:
        """
        Look up a key.

        Expired records are removed and reported as a miss. A hit bumps the
        record's hit count and LRU position.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(key)

            if record is None:
                self.stats["misses"] += 1
                outcome = LookupResult(hit=False)
            elif record.is_expired(now):
                del self._records[key]
                self._pending_removals.add(key)
                self.stats["expired_cleaned"] += 1
                self.stats["misses"] += 1
                outcome = LookupResult(hit=False)
            else:
                record.hit_count += 1
                record.last_accessed_at = now
                self._records.move_to_end(key)
                if not record.hot and record.hit_count >= self.config.hot_threshold:
                    record.hot = True
                    logger.debug(f"Idempotency record became hot: {key[:16]}")
                if record.hot and self.store is not None:
                    self._pending_saves[key] = record
                self.stats["hits"] += 1
                self.stats["duplicates_prevented"] += 1
                outcome = LookupResult(hit=True, result=record.cached_result, record=record)

        if outcome.hit:
            logger.debug(f"Idempotency hit: {key[:16]} (hits={outcome.record.hit_count})")
            self._count("hits_total")
        else:
            logger.debug(f"Idempotency miss: {key[:16]}")
            self._count("misses_total")
        return outcome

    def record(self, key: str, result: Any, ttl: Optional[float] = None,
               action: Optional[ActionDescriptor] = None) -> IdempotencyRecord:
        """Insert or overwrite the record for a key."""
        now = self._clock()
        entry = IdempotencyRecord(
            key=key,
            cached_result=result,
            created_at=now,
            expires_at=now + self.ttl_for(action, ttl),
            last_accessed_at=now,
            source_action_type=action.action_type if action else None,
            source_target=action.target if action else None,
            correlation_id=action.correlation_id if action else None,
        )

        with self._lock:
            if key not in self._records and len(self._records) >= self.config.max_size:
                self._evict_lru()
            self._records[key] = entry
            self._records.move_to_end(key)
            size = len(self._records)

        self._set_size_gauge(size)
        self._publish("recorded", key=key, expires_at=entry.expires_at,
                      action_type=entry.source_action_type, target=entry.source_target)
        return entry

    def _evict_lru(self) -> None:
        count = max(1, int(self.config.max_size * self.config.eviction_fraction))
        evicted = 0
        while self._records and evicted < count:
            key, _ = self._records.popitem(last=False)
            self._pending_removals.add(key)
            evicted += 1

        self.stats["evictions"] += evicted
        self._count("evictions_total", evicted)
        logger.info(f"Idempotency cache full, evicted {evicted} least recently used records")
        self._publish("evicted", count=evicted)

    async def wrap(
        self,
        action: ActionDescriptor,
        executor: Callable[[], Any],
        ttl: Optional[float] = None
    ) -> Any:
        """
        Execute ``executor`` at most once per idempotency key.

        Args:
            action: Action whose key guards the execution
            executor: Zero-argument callable (sync or async)
            ttl: Explicit TTL for the new record

        Returns:
            The executor's result, or the cached result on a hit

        Raises:
            Exception: Whatever the executor raised; failures are not cached
        """
        key = derive_key(action)

        outcome = self.lookup(key)
        if outcome.hit:
            self._publish("hit", key=key, **action.summary())
            await self.flush()
            return outcome.result

        inflight = self._inflight.get(key)
        if inflight is not None:
            with self._lock:
                self.stats["duplicates_prevented"] += 1
            logger.debug(f"Joining in-flight execution for {key[:16]}")
            return await asyncio.shield(inflight)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = executor()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unjoined future does not log a warning
            future.exception()
            raise
        finally:
            self._inflight.pop(key, None)

        self.record(key, result, ttl, action)
        future.set_result(result)
        await self.flush()
        return result

    # Invalidation

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._records.pop(key, None) is not None
            if removed:
                self._pending_removals.add(key)
                self._pending_saves.pop(key, None)
                self.stats["invalidations"] += 1
        if removed:
            self._publish("invalidated", key=key)
        return removed

    def invalidate_by_predicate(self, predicate: Callable[[IdempotencyRecord], bool]) -> int:
        with self._lock:
            keys = [key for key, record in self._records.items() if predicate(record)]
        count = sum(1 for key in keys if self.invalidate(key))
        if count:
            logger.info(f"Invalidated {count} idempotency records")
        return count

    def invalidate_by_target(self, target: str) -> int:
        return self.invalidate_by_predicate(lambda r: r.source_target == target)

    def invalidate_by_action_type(self, action_type: str) -> int:
        return self.invalidate_by_predicate(lambda r: r.source_action_type == action_type)

    def invalidate_by_correlation_id(self, correlation_id: str) -> int:
        return self.invalidate_by_predicate(lambda r: r.correlation_id == correlation_id)

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._pending_removals.update(self._records.keys())
            self._pending_saves.clear()
            self._records.clear()
        self._set_size_gauge(0)
        logger.info(f"Cleared {count} idempotency records")
        return count

    # Queries

    def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        """Peek at a record without counting a hit."""
        with self._lock:
            return self._records.get(key)

    def find_keys(self, action_type: Optional[str] = None, target: Optional[str] = None,
                  correlation_id: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                key for key, r in self._records.items()
                if (action_type is None or r.source_action_type == action_type)
                and (target is None or r.source_target == target)
                and (correlation_id is None or r.correlation_id == correlation_id)
            ]

    def get_expiring_soon(self, within: float = 60 * 60) -> List[IdempotencyRecord]:
        """Unexpired records expiring in the next ``within`` seconds, soonest first."""
        now = self._clock()
        with self._lock:
            soon = [r for r in self._records.values() if now < r.expires_at <= now + within]
        return sorted(soon, key=lambda r: r.expires_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            record = self._records.get(key)
        return record is not None and not record.is_expired(self._clock())

    # Expiry

    def sweep(self) -> int:
        """Remove every expired record. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                del self._records[key]
                self._pending_saves.pop(key, None)
            self._pending_removals.update(expired)
            self.stats["expired_cleaned"] += len(expired)
            size = len(self._records)

        self._set_size_gauge(size)
        if expired:
            logger.info(f"Swept {len(expired)} expired idempotency records")
        return len(expired)

    async def start(self) -> None:
        """Restore persisted records and start the periodic sweep."""
        if self.running:
            return
        self.running = True
        if self.store is not None:
            await self.load()
        self.sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Idempotency cache started")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.sweep_task:
            self.sweep_task.cancel()
            await asyncio.gather(self.sweep_task, return_exceptions=True)
            self.sweep_task = None
        await self.flush()
        logger.info("Idempotency cache stopped")

    async def _sweep_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                self.sweep()
                await self.flush()
            except Exception as e:
                logger.error(f"Error in idempotency sweep: {e}")

    # Persistence

    async def load(self) -> int:
        """Restore unexpired records from the store. Returns the number restored."""
        if self.store is None:
            return 0

        stored = await self.store.load_all()
        now = self._clock()
        restored = 0
        for key, data in stored.items():
            record = IdempotencyRecord.from_dict(data)
            if record.is_expired(now):
                await self.store.remove(key)
                continue
            with self._lock:
                if key not in self._records and len(self._records) >= self.config.max_size:
                    self._evict_lru()
                self._records[key] = record
            restored += 1

        logger.info(f"Restored {restored} idempotency records from store")
        return restored

    async def flush(self) -> None:
        """Write queued hot records and removals to the store."""
        if self.store is None:
            return

        with self._lock:
            saves = self._pending_saves
            removals = self._pending_removals
            self._pending_saves = {}
            self._pending_removals = set()

        try:
            for key in removals:
                await self.store.remove(key)
            for key, record in saves.items():
                await self.store.save(key, record.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist idempotency records: {e}")

    # Statistics

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self.stats)
            size = len(self._records)
            hot = sum(1 for r in self._records.values() if r.hot)

        lookups = stats["hits"] + stats["misses"]
        return {
            **stats,
            "size": size,
            "hot_entries": hot,
            "hit_rate": stats["hits"] / lookups if lookups else 0.0,
        }

    def reset_statistics(self) -> None:
        with self._lock:
            self.stats = self._empty_stats()

    def cache_info(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._records)
            created = [r.created_at for r in self._records.values()]
            in_flight = len(self._inflight)

        return {
            "current_size": size,
            "max_size": self.config.max_size,
            "utilization_percent": size / self.config.max_size * 100,
            "oldest_entry": min(created) if created else None,
            "newest_entry": max(created) if created else None,
            "in_flight": in_flight,
        }

    def _count(self, name: str, amount: float = 1.0) -> None:
        if self.metrics is not None:
            self.metrics.counter(f"idempotency_{name}").increment(amount)

    def _set_size_gauge(self, size: int) -> None:
        if self.metrics is not None:
            self.metrics.gauge("idempotency_size", "Records in the idempotency cache").set(size)

    def _publish(self, event_type: str, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(EVENT_SOURCE, event_type, payload)


__all__ = [
    "IdempotencyConfig",
    "IdempotencyRecord",
    "LookupResult",
    "IdempotencyCache",
]
