from __future__ import annotations

import asyncio
import hashlib
import inspect
from dataclasses import dataclass
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Protocol, TypeVar, Union

import redis
from pydantic import ValidationError

from libs.core import logging as core_logging
from libs.core.models import IdempotencyRecord, IdempotencyResult, Step, utcnow
from libs.core.persistence import SqlPersistence, make_session_factory

from .validation import canonical_json

LOGGER = core_logging.get_logger("idempotency")

T = TypeVar("T")

DEFAULT_TTL_MS: Dict[str, int] = {
    Step.match.value: 15 * 60 * 1000,
    Step.resume.value: 30 * 60 * 1000,
    Step.interview.value: 30 * 60 * 1000,
}
FALLBACK_TTL_MS = 15 * 60 * 1000


class IdempotencyStore(Protocol):
    def get(self, key: str) -> Optional[IdempotencyRecord]: ...

    def create_if_absent(self, key: str, record: IdempotencyRecord) -> bool: ...


class InMemoryIdempotencyStore:
    def __init__(self) -> None:
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._records.get(key)

    def create_if_absent(self, key: str, record: IdempotencyRecord) -> bool:
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and not existing.is_expired():
                return False
            self._records[key] = record
            return True


class RedisIdempotencyStore:
    """Records live under their key with a PX expiry; SET NX decides the race."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        raw = self.client.get(key)
        if raw is None:
            return None
        try:
            return IdempotencyRecord.model_validate_json(raw)
        except ValidationError:
            LOGGER.warning("idempotency_record_undecodable", key=key)
            return None

    def create_if_absent(self, key: str, record: IdempotencyRecord) -> bool:
        return bool(self.client.set(key, record.model_dump_json(), nx=True, px=record.ttl_ms))


class SqlIdempotencyStore(SqlPersistence):
    @classmethod
    def from_url(cls, database_url: str) -> "SqlIdempotencyStore":
        return cls(make_session_factory(database_url))


def hash_request_body(request_body: Any) -> str:
    if request_body is None:
        return "no-body"
    return hashlib.sha256(canonical_json(request_body).encode("utf-8")).hexdigest()[:16]


def generate_idempotency_key(owner_id: str, step: Step | str, request_body: Any = None) -> str:
    step_value = step.value if isinstance(step, Step) else str(step)
    return f"idem:{owner_id}:{step_value}:{hash_request_body(request_body)}"


def default_ttl_ms(step: Step | str) -> int:
    step_value = step.value if isinstance(step, Step) else str(step)
    return DEFAULT_TTL_MS.get(step_value, FALLBACK_TTL_MS)


@dataclass
class IdempotencyConfig:
    owner_id: str
    step: Union[Step, str]
    request_body: Any = None
    ttl_ms: Optional[int] = None


class IdempotentOutcome(NamedTuple):
    result: Any
    is_replay: bool
    key: str


class IdempotencyGuard:
    def __init__(self, store: IdempotencyStore) -> None:
        self.store = store

    def check(
        self,
        owner_id: str,
        step: Step | str,
        request_body: Any = None,
        ttl_ms: int | None = None,
    ) -> IdempotencyResult:
        key = generate_idempotency_key(owner_id, step, request_body)
        replay = IdempotencyResult(key=key, is_replay=True, should_process=False)
        try:
            existing = self.store.get(key)
            if existing is not None and not existing.is_expired():
                LOGGER.info("idempotency_replay", key=key, owner_id=owner_id)
                return replay
            record = IdempotencyRecord(
                key=key,
                owner_id=owner_id,
                step=step.value if isinstance(step, Step) else str(step),
                created_at=utcnow(),
                ttl_ms=ttl_ms if ttl_ms is not None else default_ttl_ms(step),
            )
            created = self.store.create_if_absent(key, record)
        except Exception:  # noqa: BLE001
            # Store errors are reported as replays.
            LOGGER.exception("idempotency_check_failed", key=key, owner_id=owner_id)
            return replay
        if not created:
            LOGGER.info("idempotency_race_lost", key=key, owner_id=owner_id)
            return replay
        return IdempotencyResult(key=key, is_replay=False, should_process=True)


_default_guard: Optional[IdempotencyGuard] = None


def default_guard() -> IdempotencyGuard:
    global _default_guard
    if _default_guard is None:
        _default_guard = IdempotencyGuard(InMemoryIdempotencyStore())
    return _default_guard


async def with_idempotency(
    config: IdempotencyConfig,
    handler: Callable[[], Union[T, Awaitable[T]]],
    guard: IdempotencyGuard | None = None,
) -> IdempotentOutcome:
    """Run ``handler`` unless the same request was already accepted within its TTL."""
    active_guard = guard or default_guard()
    check = await asyncio.to_thread(
        active_guard.check, config.owner_id, config.step, config.request_body, config.ttl_ms
    )
    if not check.should_process:
        return IdempotentOutcome(result=None, is_replay=True, key=check.key)
    result = handler()
    if inspect.isawaitable(result):
        result = await result
    return IdempotentOutcome(result=result, is_replay=False, key=check.key)


def resolve_idempotency_store(
    database_url: str | None = None, redis_url: str | None = None
) -> IdempotencyStore:
    if database_url:
        return SqlIdempotencyStore.from_url(database_url)
    if redis_url:
        client = redis.Redis.from_url(redis_url, decode_responses=True)
        try:
            client.ping()
        except redis.RedisError as exc:
            LOGGER.warning("idempotency_redis_unavailable", redis_url=redis_url, error=str(exc))
            return InMemoryIdempotencyStore()
        return RedisIdempotencyStore(client)
    return InMemoryIdempotencyStore()
